"""apithrottle: client-side outbound request governor.

Queues outbound API calls by endpoint priority, paces them under a
requests-per-second and concurrency ceiling, and retries throttled (429)
calls with exponential backoff and jitter.
"""

__version__ = "0.1.0"
