"""The unit of work held by the request queue."""

import asyncio
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from apithrottle.domain.models.common import DEFAULT_RETRY_DELAY_MS, RequestId


class RequestState(str, Enum):
    """Lifecycle of a QueuedRequest.

    PENDING -> IN_FLIGHT -> RESOLVED | REJECTED | WAITING_RETRY -> PENDING
    """
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    WAITING_RETRY = "waiting_retry"
    RESOLVED = "resolved"
    REJECTED = "rejected"


def _new_request_id() -> RequestId:
    return RequestId(uuid.uuid4().hex[:8])


@dataclass(eq=False)
class QueuedRequest:
    """A pending call plus the future its caller is awaiting."""
    execute: Callable[[], Awaitable[Any]]
    future: "asyncio.Future[Any]"
    priority: int
    endpoint: str
    max_retries: int
    retry_count: int = 0
    retry_delay_ms: float = DEFAULT_RETRY_DELAY_MS
    state: RequestState = RequestState.PENDING
    request_id: RequestId = field(default_factory=_new_request_id)

    @property
    def attempts(self) -> int:
        return self.retry_count + 1

    def resolve(self, result: Any) -> None:
        self.state = RequestState.RESOLVED
        # Caller may have been cancelled while we were working
        if not self.future.done():
            self.future.set_result(result)

    def reject(self, error: BaseException) -> None:
        self.state = RequestState.REJECTED
        if not self.future.done():
            self.future.set_exception(error)
