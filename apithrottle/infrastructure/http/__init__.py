"""Rate-limited HTTP API client."""
