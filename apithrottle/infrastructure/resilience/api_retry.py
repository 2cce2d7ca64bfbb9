"""Runs queued requests and retries throttled ones with exponential backoff.

Only throttling failures (HTTP 429 or equivalent) are retried. Anything
else, and any throttling failure past the endpoint's retry budget, is
handed back to the caller as the original exception object.
"""

import asyncio
import inspect
import logging
import math
import random
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Mapping, Optional, Union

import httpx

from apithrottle.domain.events.api_events import DomainEvent, RequestFailed, RequestSucceeded, RetryScheduled
from apithrottle.domain.models.common import DEFAULT_MAX_JITTER_MS
from apithrottle.domain.models.request import QueuedRequest, RequestState

logger = logging.getLogger(__name__)

TOO_MANY_REQUESTS = 429
RETRY_AFTER_HEADER = "retry-after"
# Longest server-suggested wait honoured; a retrying request keeps its slot meanwhile
MAX_RETRY_AFTER_MS = 5 * 60 * 1000.0


# --- Custom Exceptions ---
class TooManyRequestsError(Exception):
    """Throttling failure for callers whose transport is not httpx.

    Carries the same shape the limiter inspects on httpx errors: a
    status code and an optional Retry-After header value.
    """
    status_code = TOO_MANY_REQUESTS

    def __init__(self, message: str = "Too Many Requests", retry_after: Optional[Union[str, float]] = None):
        self.retry_after = retry_after
        self.headers = {} if retry_after is None else {"Retry-After": str(retry_after)}
        super().__init__(message)


# --- Error Inspection ---

def _status_of(obj: Any) -> Optional[int]:
    for attr in ("status_code", "status"):
        value = getattr(obj, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def get_status_code(error: BaseException) -> Optional[int]:
    """Extracts an HTTP status from an error or the response it carries."""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    response = getattr(error, "response", None)
    if response is not None:
        status = _status_of(response)
        if status is not None:
            return status
    return _status_of(error)


def is_throttling_error(error: BaseException) -> bool:
    return get_status_code(error) == TOO_MANY_REQUESTS


def _header_value(headers: Any, name: str) -> Optional[str]:
    if headers is None:
        return None
    if isinstance(headers, httpx.Headers):
        return headers.get(name)
    if isinstance(headers, Mapping):
        for key, value in headers.items():
            if str(key).lower() == name:
                return None if value is None else str(value)
    return None


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> float:
    """Converts a Retry-After header value to milliseconds.

    Accepts delta-seconds ('120') or an HTTP-date. Unparseable, missing,
    non-finite or past values yield 0; longer waits are capped at
    MAX_RETRY_AFTER_MS.
    """
    if value is None:
        return 0.0
    value = value.strip()
    if not value:
        return 0.0
    try:
        seconds = float(value)
    except ValueError:
        pass
    else:
        if not math.isfinite(seconds):
            logger.debug(f"Ignoring non-finite Retry-After value: {value!r}")
            return 0.0
        return min(MAX_RETRY_AFTER_MS, max(0.0, seconds * 1000.0))
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.debug(f"Ignoring unparseable Retry-After value: {value!r}")
        return 0.0
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    current = now or datetime.now(timezone.utc)
    return min(MAX_RETRY_AFTER_MS, max(0.0, (retry_at - current).total_seconds() * 1000.0))


def retry_after_ms(error: BaseException) -> float:
    """Server-suggested wait carried by a throttling error, in milliseconds."""
    response = getattr(error, "response", None)
    value = _header_value(getattr(response, "headers", None), RETRY_AFTER_HEADER)
    if value is None:
        value = _header_value(getattr(error, "headers", None), RETRY_AFTER_HEADER)
    return parse_retry_after(value)


def compute_backoff_delay_ms(
    retry_delay_ms: float,
    retry_count: int,
    server_wait_ms: float = 0.0,
    jitter_ms: float = 0.0,
) -> float:
    """max(server_wait, retry_delay * 2**retry_count) + jitter."""
    exponential_delay = retry_delay_ms * (2 ** retry_count)
    return max(server_wait_ms, exponential_delay) + jitter_ms


# --- Retry Executor ---

class RetryExecutor:
    """Executes one QueuedRequest and settles or reschedules it.

    `requeue` puts a request back at the head of the queue and restarts
    processing; `emit` publishes domain events.
    """

    def __init__(
        self,
        requeue: Callable[[QueuedRequest], None],
        emit: Optional[Callable[[DomainEvent], None]] = None,
        max_jitter_ms: float = DEFAULT_MAX_JITTER_MS,
        rand: Callable[[], float] = random.random,
    ):
        self._requeue = requeue
        self._emit = emit or (lambda event: None)
        self.max_jitter_ms = max_jitter_ms
        self._rand = rand

    def jitter_ms(self) -> float:
        """Uniform in [0, max_jitter_ms)."""
        return self._rand() * self.max_jitter_ms

    async def execute(self, request: QueuedRequest) -> None:
        """Runs the request. Never raises, except on cancellation."""
        request.state = RequestState.IN_FLIGHT
        start_time = time.perf_counter()
        try:
            result = request.execute()
            if inspect.isawaitable(result):
                result = await result
        except asyncio.CancelledError:
            request.future.cancel()
            raise
        except Exception as e:
            await self._handle_failure(request, e)
            return

        latency_ms = (time.perf_counter() - start_time) * 1000
        logger.debug(f"{request.endpoint} [{request.request_id}] succeeded on attempt {request.attempts} in {latency_ms:.0f}ms")
        self._emit(RequestSucceeded(
            endpoint=request.endpoint, attempt_number=request.attempts,
            latency_ms=latency_ms, request_id=request.request_id,
        ))
        request.resolve(result)

    async def _handle_failure(self, request: QueuedRequest, error: Exception) -> None:
        throttled = is_throttling_error(error)
        if not throttled or request.retry_count >= request.max_retries:
            if throttled:
                logger.warning(
                    f"Rate limit exceeded for {request.endpoint} [{request.request_id}]; "
                    f"retry budget of {request.max_retries} exhausted"
                )
            else:
                logger.error(f"Request to {request.endpoint} [{request.request_id}] failed: {type(error).__name__}: {error}")
            self._emit(RequestFailed(
                endpoint=request.endpoint, attempt_number=request.attempts,
                error_type=type(error).__name__, error_message=str(error),
                throttled=throttled, request_id=request.request_id,
            ))
            request.reject(error)
            return

        server_wait_ms = retry_after_ms(error)
        delay_ms = compute_backoff_delay_ms(
            request.retry_delay_ms, request.retry_count, server_wait_ms, self.jitter_ms()
        )
        logger.warning(
            f"Rate limit exceeded for {request.endpoint}. Retrying in {delay_ms / 1000:.1f}s "
            f"(retry {request.retry_count + 1}/{request.max_retries})"
        )
        request.state = RequestState.WAITING_RETRY
        self._emit(RetryScheduled(
            endpoint=request.endpoint, attempt_number=request.attempts,
            delay_seconds=delay_ms / 1000, retry_after_seconds=server_wait_ms / 1000,
            request_id=request.request_id,
        ))
        try:
            await asyncio.sleep(delay_ms / 1000)
        except asyncio.CancelledError:
            request.future.cancel()
            raise

        request.retry_count += 1
        request.state = RequestState.PENDING
        self._requeue(request)
