"""Domain models for queued requests and endpoint tiers."""
