"""API Resilience Implementations.

Contains the request queue, the pacing/concurrency gate, and the
retry executor with exponential backoff for throttled calls.
Bounded Context: API Resilience
"""

from apithrottle.infrastructure.resilience.api_retry import (
    RetryExecutor,
    TooManyRequestsError,
    compute_backoff_delay_ms,
    is_throttling_error,
    retry_after_ms,
)
from apithrottle.infrastructure.resilience.endpoint_classifier import EndpointClassifier
from apithrottle.infrastructure.resilience.rate_limiter import (
    ApiRateLimiter,
    api_rate_limiter,
    configure,
    enqueue,
    get_rate_limiter,
)
from apithrottle.infrastructure.resilience.request_queue import RequestQueue

__all__ = [
    "ApiRateLimiter",
    "EndpointClassifier",
    "RequestQueue",
    "RetryExecutor",
    "TooManyRequestsError",
    "api_rate_limiter",
    "compute_backoff_delay_ms",
    "configure",
    "enqueue",
    "get_rate_limiter",
    "is_throttling_error",
    "retry_after_ms",
]
