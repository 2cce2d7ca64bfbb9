"""Defines common Value Objects used across the governor.

These objects represent simple values like request ids and the
per-endpoint tier (priority + retry budget), plus the built-in defaults.
"""

from dataclasses import dataclass
from typing import NewType, Dict, TypedDict

# === Core Value Objects ===

RequestId = NewType("RequestId", str)  # Short id used in logs and events

DEFAULT_ENDPOINT_KEY = "default"

# Base delay (ms) before the first retry; doubled on every further retry
DEFAULT_RETRY_DELAY_MS = 1000.0
# Upper bound (exclusive, ms) of the random jitter added to every backoff
DEFAULT_MAX_JITTER_MS = 1000.0

DEFAULT_MAX_CONCURRENT_REQUESTS = 3
DEFAULT_REQUESTS_PER_SECOND = 5.0
DEFAULT_POLL_INTERVAL_SECONDS = 0.1


@dataclass(frozen=True)
class EndpointConfig:
    """Tier assigned to a class of endpoints: higher priority dispatches first."""
    priority: int
    max_retries: int


class LimiterOptions(TypedDict, total=False):
    """Options accepted by ApiRateLimiter.configure()."""
    max_concurrent_requests: int
    requests_per_second: float
    endpoint_configs: Dict[str, EndpointConfig]


DEFAULT_ENDPOINT_CONFIGS: Dict[str, EndpointConfig] = {
    # High priority
    '/auth': EndpointConfig(priority=10, max_retries=3),
    '/users': EndpointConfig(priority=8, max_retries=3),
    # Medium priority
    '/leads': EndpointConfig(priority=5, max_retries=2),
    '/stores': EndpointConfig(priority=5, max_retries=2),
    '/calendar': EndpointConfig(priority=5, max_retries=2),
    # Low priority
    '/analytics': EndpointConfig(priority=3, max_retries=1),
    '/dashboard': EndpointConfig(priority=2, max_retries=1),
    DEFAULT_ENDPOINT_KEY: EndpointConfig(priority=1, max_retries=1),
}
