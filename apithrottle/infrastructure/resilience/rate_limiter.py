"""Process-wide governor for outbound API requests.

Controls the frequency of outgoing requests to prevent hitting server-side
rate limits:

1. Requests are queued and dispatched by endpoint priority.
2. Dispatches are spaced at least 1/requests_per_second apart and no more
   than max_concurrent_requests are in flight at once.
3. Throttled (429) requests are retried with exponential backoff and jitter.

All state lives on one event loop and is mutated only in scheduling order,
so the single-loop guard (`_processing`) is the only coordination needed.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set, TypeVar, Union

from apithrottle.domain.events.api_events import DomainEvent, RequestDispatched, RequestEnqueued
from apithrottle.domain.interfaces.request_governor import RequestGovernor
from apithrottle.domain.models.common import (
    DEFAULT_MAX_CONCURRENT_REQUESTS,
    DEFAULT_MAX_JITTER_MS,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_REQUESTS_PER_SECOND,
    DEFAULT_RETRY_DELAY_MS,
    EndpointConfig,
)
from apithrottle.domain.models.request import QueuedRequest, RequestState
from apithrottle.infrastructure.resilience.api_retry import RetryExecutor
from apithrottle.infrastructure.resilience.endpoint_classifier import EndpointClassifier
from apithrottle.infrastructure.resilience.request_queue import RequestQueue

logger = logging.getLogger(__name__)

T = TypeVar("T")
EventListener = Callable[[DomainEvent], None]


def _positive(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValueError(f"{name} must be a positive number, got {value!r}")


class ApiRateLimiter(RequestGovernor):
    """Priority queue + pacing/concurrency gate + retry executor."""

    def __init__(
        self,
        max_concurrent_requests: int = DEFAULT_MAX_CONCURRENT_REQUESTS,
        requests_per_second: float = DEFAULT_REQUESTS_PER_SECOND,
        endpoint_configs: Optional[Mapping[str, Union[EndpointConfig, Mapping[str, Any]]]] = None,
        base_retry_delay_ms: float = DEFAULT_RETRY_DELAY_MS,
        max_jitter_ms: float = DEFAULT_MAX_JITTER_MS,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ):
        """Initializes the rate limiter.

        Args:
            max_concurrent_requests: Ceiling on requests dispatched but not yet settled.
            requests_per_second: Ceiling on the dispatch rate, process-wide.
            endpoint_configs: Endpoint tiers; built-in tiers are used if None.
            base_retry_delay_ms: Backoff before the first retry, doubled per retry.
            max_jitter_ms: Upper bound of the random delay added to each backoff.
            poll_interval: Seconds between checks while at the concurrency ceiling.
        """
        _positive("max_concurrent_requests", max_concurrent_requests)
        _positive("requests_per_second", requests_per_second)
        self.max_concurrent_requests = max_concurrent_requests
        self.requests_per_second = requests_per_second
        self.base_retry_delay_ms = base_retry_delay_ms
        self.poll_interval = poll_interval
        self._initial_settings = (max_concurrent_requests, requests_per_second, endpoint_configs)
        self._classifier = EndpointClassifier(endpoint_configs)
        self._queue = RequestQueue()
        self._executor = RetryExecutor(
            requeue=self._requeue_front,
            emit=self._dispatch_event,
            max_jitter_ms=max_jitter_ms,
        )
        self._listeners: List[EventListener] = []
        self._tasks: Set["asyncio.Task[None]"] = set()
        self._loop_task: Optional["asyncio.Task[None]"] = None
        self._bound_loop: Optional[asyncio.AbstractEventLoop] = None
        self._generation = 0
        self._reset_runtime_state()
        logger.info(
            f"ApiRateLimiter initialized: {max_concurrent_requests} concurrent, "
            f"{requests_per_second} req/s, {len(self._classifier.configs)} endpoint tiers"
        )

    def _reset_runtime_state(self) -> None:
        # Tasks from an earlier generation no longer count towards _in_flight
        self._generation += 1
        self._processing = False
        self._in_flight = 0
        self._peak_in_flight = 0
        self._last_request_time: Optional[float] = None
        self._counters = {"dispatched": 0, "retried": 0, "resolved": 0, "rejected": 0}

    # --- Properties ---

    @property
    def min_request_interval(self) -> float:
        """Seconds between consecutive dispatches."""
        return 1.0 / self.requests_per_second

    @property
    def classifier(self) -> EndpointClassifier:
        return self._classifier

    @property
    def endpoint_configs(self) -> Dict[str, EndpointConfig]:
        return self._classifier.configs

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def is_processing(self) -> bool:
        return self._processing

    # --- Public API ---

    def enqueue(self, endpoint: str, execute_request: Callable[[], Awaitable[T]]) -> "asyncio.Future[T]":
        """Queues a call and returns a future for its eventual result.

        Must be called from a running event loop. The future resolves with the
        call's result or raises the call's original exception.
        """
        loop = asyncio.get_running_loop()
        self._bind_loop(loop)

        config = self._classifier.classify(endpoint)
        request = QueuedRequest(
            execute=execute_request,
            future=loop.create_future(),
            priority=config.priority,
            endpoint=endpoint,
            max_retries=config.max_retries,
            retry_delay_ms=self.base_retry_delay_ms,
        )
        self._queue.push(request)
        logger.debug(
            f"Enqueued {endpoint} [{request.request_id}] priority={config.priority} "
            f"max_retries={config.max_retries} (queue size {len(self._queue)})"
        )
        self._dispatch_event(RequestEnqueued(
            endpoint=endpoint, priority=config.priority,
            queue_size=len(self._queue), request_id=request.request_id,
        ))
        self._ensure_processing()
        return request.future

    def configure(
        self,
        max_concurrent_requests: Optional[int] = None,
        requests_per_second: Optional[float] = None,
        endpoint_configs: Optional[Mapping[str, Union[EndpointConfig, Mapping[str, Any]]]] = None,
    ) -> None:
        """Updates the ceilings that are given and merges endpoint tiers.

        Raises:
            ValueError: If a given ceiling is not positive or a tier is invalid.
        """
        if max_concurrent_requests is not None:
            _positive("max_concurrent_requests", max_concurrent_requests)
        if requests_per_second is not None:
            _positive("requests_per_second", requests_per_second)
        # Build before assigning anything so a bad tier leaves config untouched
        classifier = self._classifier.merged(endpoint_configs) if endpoint_configs else self._classifier

        if max_concurrent_requests is not None:
            self.max_concurrent_requests = max_concurrent_requests
        if requests_per_second is not None:
            self.requests_per_second = requests_per_second
        self._classifier = classifier
        logger.info(
            f"ApiRateLimiter configured: {self.max_concurrent_requests} concurrent, "
            f"{self.requests_per_second} req/s, {len(self._classifier.configs)} endpoint tiers"
        )

    def stats(self) -> Dict[str, Any]:
        return {
            "queued": len(self._queue),
            "in_flight": self._in_flight,
            "peak_in_flight": self._peak_in_flight,
            "processing": self._processing,
            **self._counters,
        }

    async def wait_idle(self, timeout: Optional[float] = None) -> None:
        """Waits until nothing is queued, in flight, or backing off."""
        async def _poll() -> None:
            while self._queue or self._in_flight or self._processing:
                await asyncio.sleep(self.poll_interval)

        if timeout is None:
            await _poll()
        else:
            await asyncio.wait_for(_poll(), timeout)

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def reset(self) -> None:
        """Drops queued work, counters, listeners and configure() overrides."""
        for request in self._queue.clear():
            if not request.future.done() and not request.future.get_loop().is_closed():
                request.future.cancel()
        for task in list(self._tasks) + ([self._loop_task] if self._loop_task else []):
            if not task.done() and not task.get_loop().is_closed():
                task.cancel()
        self._tasks.clear()
        self._loop_task = None
        self._bound_loop = None
        self._listeners.clear()
        self.max_concurrent_requests, self.requests_per_second, endpoint_configs = self._initial_settings
        self._classifier = EndpointClassifier(endpoint_configs)
        self._reset_runtime_state()
        logger.debug("ApiRateLimiter reset")

    # --- Processing Loop ---

    def _bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._bound_loop is loop:
            return
        if self._bound_loop is not None:
            # Work queued on another loop can never complete here
            logger.warning(
                f"ApiRateLimiter used from a new event loop; discarding state from the previous one "
                f"(queued: {self._queue.endpoints()})"
            )
            self._queue.clear()
            self._tasks.clear()
            self._loop_task = None
            self._reset_runtime_state()
        self._bound_loop = loop

    def _ensure_processing(self) -> None:
        if self._processing or not self._queue:
            return
        self._processing = True
        self._loop_task = asyncio.get_running_loop().create_task(self._process_queue())

    def _time_until_next_slot(self) -> float:
        if self._last_request_time is None:
            return 0.0
        return max(0.0, self._last_request_time + self.min_request_interval - time.monotonic())

    async def _process_queue(self) -> None:
        try:
            while self._queue:
                if self._in_flight >= self.max_concurrent_requests:
                    await asyncio.sleep(self.poll_interval)
                    continue

                wait_time = self._time_until_next_slot()
                if wait_time > 0:
                    await asyncio.sleep(wait_time)

                request = self._queue.pop()
                if request is None:
                    continue
                if request.future.cancelled():
                    logger.debug(f"Skipping cancelled request {request.endpoint} [{request.request_id}]")
                    continue
                self._dispatch(request)
        finally:
            self._processing = False

    def _dispatch(self, request: QueuedRequest) -> None:
        self._last_request_time = time.monotonic()
        self._in_flight += 1
        self._peak_in_flight = max(self._peak_in_flight, self._in_flight)
        self._counters["dispatched"] += 1
        request.state = RequestState.IN_FLIGHT
        logger.debug(
            f"Dispatching {request.endpoint} [{request.request_id}] attempt {request.attempts} "
            f"({self._in_flight}/{self.max_concurrent_requests} in flight)"
        )
        self._dispatch_event(RequestDispatched(
            endpoint=request.endpoint, priority=request.priority,
            attempt_number=request.attempts, in_flight=self._in_flight,
            request_id=request.request_id,
        ))
        task = asyncio.get_running_loop().create_task(self._run_request(request, self._generation))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_request(self, request: QueuedRequest, generation: int) -> None:
        try:
            await self._executor.execute(request)
        finally:
            if generation == self._generation:
                self._in_flight -= 1
                if request.state == RequestState.RESOLVED:
                    self._counters["resolved"] += 1
                elif request.state == RequestState.REJECTED:
                    self._counters["rejected"] += 1

    def _requeue_front(self, request: QueuedRequest) -> None:
        self._queue.push_front(request)
        self._counters["retried"] += 1
        self._ensure_processing()

    def _dispatch_event(self, event: DomainEvent) -> None:
        logger.debug(f"EVENT: {event}")
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Event listener {listener!r} failed: {e}", exc_info=True)


# --- Process-wide Singleton ---

api_rate_limiter = ApiRateLimiter()


def get_rate_limiter() -> ApiRateLimiter:
    return api_rate_limiter


def enqueue(endpoint: str, execute_request: Callable[[], Awaitable[T]]) -> "asyncio.Future[T]":
    """Queues a call on the process-wide limiter."""
    return api_rate_limiter.enqueue(endpoint, execute_request)


def configure(
    max_concurrent_requests: Optional[int] = None,
    requests_per_second: Optional[float] = None,
    endpoint_configs: Optional[Mapping[str, Union[EndpointConfig, Mapping[str, Any]]]] = None,
) -> None:
    """Reconfigures the process-wide limiter."""
    api_rate_limiter.configure(
        max_concurrent_requests=max_concurrent_requests,
        requests_per_second=requests_per_second,
        endpoint_configs=endpoint_configs,
    )
