"""Domain Events related to queued API requests.

Emitted by the rate limiter when a request is enqueued, dispatched,
retried, or settled.
"""

from dataclasses import dataclass, field
import time
from typing import Optional


@dataclass
class DomainEvent:
    """Base class for domain events."""
    pass


@dataclass
class RequestEnqueued(DomainEvent):
    """A call entered the queue."""
    endpoint: str
    priority: int
    queue_size: int
    request_id: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class RequestDispatched(DomainEvent):
    """A call left the queue and is now in flight."""
    endpoint: str
    priority: int
    attempt_number: int
    in_flight: int
    request_id: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class RequestSucceeded(DomainEvent):
    """The call's thunk completed successfully."""
    endpoint: str
    attempt_number: int
    latency_ms: float
    request_id: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class RequestFailed(DomainEvent):
    """The call failed definitively (non-retryable or retry budget exhausted)."""
    endpoint: str
    attempt_number: int
    error_type: str
    error_message: str
    throttled: bool = False
    request_id: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class RetryScheduled(DomainEvent):
    """A throttled call will be put back at the head of the queue after a delay."""
    endpoint: str
    attempt_number: int
    delay_seconds: float
    retry_after_seconds: float = 0.0
    request_id: Optional[str] = None
    timestamp: float = field(default_factory=time.time)
