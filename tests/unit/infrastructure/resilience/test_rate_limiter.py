import asyncio
import time

import httpx
import pytest

from apithrottle.domain.events.api_events import RequestDispatched, RequestFailed, RetryScheduled
from apithrottle.domain.models.common import EndpointConfig
from apithrottle.infrastructure.resilience import rate_limiter as rate_limiter_module
from apithrottle.infrastructure.resilience.api_retry import TooManyRequestsError
from apithrottle.infrastructure.resilience.rate_limiter import ApiRateLimiter


def test_enqueue_resolves_with_thunk_result(fast_limiter: ApiRateLimiter):
    async def scenario():
        before = fast_limiter.in_flight

        async def thunk():
            return {"id": 7}

        result = await fast_limiter.enqueue("/users", thunk)
        return before, result, fast_limiter.in_flight

    before, result, after = asyncio.run(scenario())

    assert result == {"id": 7}
    assert before == after == 0
    assert fast_limiter.stats()["resolved"] == 1


def test_non_throttling_failure_rejects_on_first_attempt(fast_limiter: ApiRateLimiter, recorded_events):
    error = ValueError("boom")
    calls = []

    async def thunk():
        calls.append(1)
        raise error

    async def scenario():
        return await fast_limiter.enqueue("/users", thunk)

    with pytest.raises(ValueError) as excinfo:
        asyncio.run(scenario())

    assert excinfo.value is error
    assert len(calls) == 1
    failures = [e for e in recorded_events if isinstance(e, RequestFailed)]
    assert len(failures) == 1 and failures[0].attempt_number == 1
    assert not any(isinstance(e, RetryScheduled) for e in recorded_events)


def test_server_errors_are_not_retried(fast_limiter: ApiRateLimiter):
    request = httpx.Request("GET", "https://api.example.com/leads")
    error = httpx.HTTPStatusError("boom", request=request, response=httpx.Response(503, request=request))
    calls = []

    async def thunk():
        calls.append(1)
        raise error

    async def scenario():
        return await fast_limiter.enqueue("/leads", thunk)

    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(scenario())
    assert len(calls) == 1


def test_throttled_request_attempted_max_retries_plus_one_times(fast_limiter: ApiRateLimiter):
    """/leads allows 2 retries, so 3 attempts, then the last error surfaces."""
    errors = []

    async def thunk():
        errors.append(TooManyRequestsError(f"attempt {len(errors) + 1}"))
        raise errors[-1]

    async def scenario():
        return await fast_limiter.enqueue("/leads", thunk)

    with pytest.raises(TooManyRequestsError) as excinfo:
        asyncio.run(scenario())

    assert len(errors) == 3
    assert excinfo.value is errors[-1]
    stats = fast_limiter.stats()
    assert stats["retried"] == 2
    assert stats["rejected"] == 1
    assert stats["in_flight"] == 0


def test_throttled_request_succeeds_on_third_attempt_with_growing_waits(fast_limiter: ApiRateLimiter, recorded_events):
    attempts = []

    async def thunk():
        attempts.append(1)
        if len(attempts) < 3:
            raise TooManyRequestsError()
        return "done"

    async def scenario():
        return await fast_limiter.enqueue("/calendar/events", thunk)

    assert asyncio.run(scenario()) == "done"
    assert len(attempts) == 3
    delays = [e.delay_seconds for e in recorded_events if isinstance(e, RetryScheduled)]
    assert len(delays) == 2
    assert delays[0] < delays[1]


def test_backoff_delays_are_non_decreasing(recorded_events, fast_limiter: ApiRateLimiter):
    fast_limiter.configure(endpoint_configs={"/bulk": {"priority": 1, "max_retries": 4}})

    async def thunk():
        raise TooManyRequestsError()

    async def scenario():
        return await fast_limiter.enqueue("/bulk/import", thunk)

    with pytest.raises(TooManyRequestsError):
        asyncio.run(scenario())

    delays = [e.delay_seconds for e in recorded_events if isinstance(e, RetryScheduled)]
    assert delays == sorted(delays)
    assert delays == pytest.approx([0.001, 0.002, 0.004, 0.008])


def test_retry_after_is_honoured_when_longer_than_backoff(fast_limiter: ApiRateLimiter, recorded_events):
    attempts = []

    async def thunk():
        attempts.append(1)
        if len(attempts) == 1:
            raise TooManyRequestsError(retry_after="0.05")
        return "ok"

    async def scenario():
        return await fast_limiter.enqueue("/users", thunk)

    started = time.monotonic()
    assert asyncio.run(scenario()) == "ok"
    assert time.monotonic() - started >= 0.045
    retry = next(e for e in recorded_events if isinstance(e, RetryScheduled))
    assert retry.delay_seconds == pytest.approx(0.05)
    assert retry.retry_after_seconds == pytest.approx(0.05)


def test_higher_priority_request_dispatched_first(fast_limiter: ApiRateLimiter):
    fast_limiter.configure(max_concurrent_requests=1)
    started = []

    def thunk_for(label):
        async def thunk():
            started.append(label)
            return label
        return thunk

    async def scenario():
        analytics = fast_limiter.enqueue("/analytics", thunk_for("/analytics"))
        users = fast_limiter.enqueue("/users", thunk_for("/users"))
        return await asyncio.gather(analytics, users)

    assert asyncio.run(scenario()) == ["/analytics", "/users"]
    assert started == ["/users", "/analytics"]


def test_equal_priority_requests_run_in_arrival_order(fast_limiter: ApiRateLimiter):
    fast_limiter.configure(max_concurrent_requests=1)
    started = []

    def thunk_for(label):
        async def thunk():
            started.append(label)
        return thunk

    async def scenario():
        futures = [fast_limiter.enqueue(label, thunk_for(label)) for label in ["/leads/1", "/stores/1", "/calendar/1"]]
        await asyncio.gather(*futures)

    asyncio.run(scenario())
    assert started == ["/leads/1", "/stores/1", "/calendar/1"]


def test_retried_request_goes_back_to_the_front(fast_limiter: ApiRateLimiter):
    """A throttled /dashboard call resumes before an /auth call that arrived meanwhile."""
    fast_limiter.configure(max_concurrent_requests=1)
    order = []
    pending = {}

    async def auth():
        order.append("/auth")

    async def dashboard():
        order.append("/dashboard")
        if "auth" not in pending:
            pending["auth"] = fast_limiter.enqueue("/auth", auth)
            raise TooManyRequestsError()
        return "dashboard"

    async def scenario():
        result = await fast_limiter.enqueue("/dashboard", dashboard)
        await pending["auth"]
        return result

    assert asyncio.run(scenario()) == "dashboard"
    assert order == ["/dashboard", "/dashboard", "/auth"]


def test_in_flight_never_exceeds_concurrency_ceiling(fast_limiter: ApiRateLimiter):
    fast_limiter.configure(max_concurrent_requests=2)
    active = {"now": 0, "max": 0}

    async def thunk():
        active["now"] += 1
        active["max"] = max(active["max"], active["now"])
        await asyncio.sleep(0.02)
        active["now"] -= 1

    async def scenario():
        await asyncio.gather(*(fast_limiter.enqueue(f"/leads/{i}", thunk) for i in range(8)))

    asyncio.run(scenario())

    assert active["max"] == 2
    stats = fast_limiter.stats()
    assert stats["peak_in_flight"] == 2
    assert stats["dispatched"] == 8
    assert stats["in_flight"] == 0


def test_dispatches_are_spaced_by_requests_per_second(fast_limiter: ApiRateLimiter):
    fast_limiter.configure(requests_per_second=1)
    started = []

    async def thunk():
        started.append(time.monotonic())

    async def scenario():
        await asyncio.gather(fast_limiter.enqueue("/leads/1", thunk), fast_limiter.enqueue("/leads/2", thunk))

    asyncio.run(scenario())

    assert len(started) == 2
    assert started[1] - started[0] >= 0.9


def test_configure_merges_tiers_and_only_overwrites_given_ceilings(fast_limiter: ApiRateLimiter):
    fast_limiter.configure(endpoint_configs={"/reports": {"priority": 4, "max_retries": 2}})

    assert fast_limiter.classifier.classify("/reports/weekly") == EndpointConfig(4, 2)
    assert fast_limiter.classifier.classify("/users") == EndpointConfig(8, 3)
    assert fast_limiter.max_concurrent_requests == 3
    assert fast_limiter.requests_per_second == 1000

    fast_limiter.configure(requests_per_second=4)
    assert fast_limiter.min_request_interval == pytest.approx(0.25)
    assert fast_limiter.max_concurrent_requests == 3


@pytest.mark.parametrize(
    "options",
    [
        {"max_concurrent_requests": 0},
        {"requests_per_second": -1},
        {"endpoint_configs": {"/x": {"priority": "high", "max_retries": 1}}},
    ],
)
def test_invalid_configuration_is_rejected(fast_limiter: ApiRateLimiter, options):
    with pytest.raises(ValueError):
        fast_limiter.configure(**options)
    assert fast_limiter.requests_per_second == 1000
    assert fast_limiter.max_concurrent_requests == 3
    assert "/x" not in fast_limiter.endpoint_configs


def test_invalid_tier_leaves_ceilings_untouched(fast_limiter: ApiRateLimiter):
    with pytest.raises(ValueError):
        fast_limiter.configure(requests_per_second=7, endpoint_configs={"/x": {"priority": 1, "max_retries": -2}})
    assert fast_limiter.requests_per_second == 1000


def test_listener_failures_do_not_break_processing(fast_limiter: ApiRateLimiter):
    def broken_listener(event):
        raise RuntimeError("listener bug")

    fast_limiter.add_listener(broken_listener)

    async def thunk():
        return "still fine"

    async def scenario():
        return await fast_limiter.enqueue("/users", thunk)

    assert asyncio.run(scenario()) == "still fine"


def test_dispatch_events_report_attempts(fast_limiter: ApiRateLimiter, recorded_events):
    attempts = []

    async def thunk():
        attempts.append(1)
        if len(attempts) == 1:
            raise TooManyRequestsError()

    async def scenario():
        await fast_limiter.enqueue("/users", thunk)

    asyncio.run(scenario())
    dispatched = [e.attempt_number for e in recorded_events if isinstance(e, RequestDispatched)]
    assert dispatched == [1, 2]


def test_wait_idle_returns_after_all_work_settles(fast_limiter: ApiRateLimiter):
    done = []

    async def thunk():
        await asyncio.sleep(0.01)
        done.append(1)

    async def scenario():
        for i in range(5):
            fast_limiter.enqueue(f"/stores/{i}", thunk)
        await fast_limiter.wait_idle(timeout=5)
        return fast_limiter.stats()

    stats = asyncio.run(scenario())
    assert len(done) == 5
    assert stats["queued"] == 0 and stats["in_flight"] == 0 and stats["processing"] is False


def test_enqueue_requires_running_event_loop(fast_limiter: ApiRateLimiter):
    async def thunk():
        return None

    with pytest.raises(RuntimeError):
        fast_limiter.enqueue("/users", thunk)


def test_limiter_can_be_reused_across_event_loops(fast_limiter: ApiRateLimiter):
    async def thunk():
        return "again"

    async def scenario():
        return await fast_limiter.enqueue("/users", thunk)

    assert asyncio.run(scenario()) == "again"
    assert asyncio.run(scenario()) == "again"


def test_reset_while_request_in_flight_keeps_accounting_sound(fast_limiter: ApiRateLimiter):
    async def slow():
        await asyncio.sleep(0.05)

    async def scenario():
        stale = fast_limiter.enqueue("/users", slow)
        await asyncio.sleep(0.01)
        fast_limiter.reset()
        await asyncio.sleep(0.01)
        in_flight_after_reset = fast_limiter.in_flight

        fast_limiter.configure(max_concurrent_requests=1, requests_per_second=1000)
        active = {"now": 0, "max": 0}

        async def tracked():
            active["now"] += 1
            active["max"] = max(active["max"], active["now"])
            await asyncio.sleep(0.01)
            active["now"] -= 1

        await asyncio.gather(*(fast_limiter.enqueue(f"/leads/{i}", tracked) for i in range(3)))
        return stale, in_flight_after_reset, active["max"]

    stale, in_flight_after_reset, max_active = asyncio.run(scenario())

    assert stale.cancelled()
    assert in_flight_after_reset == 0
    assert max_active == 1
    assert fast_limiter.in_flight == 0


def test_infinite_retry_after_does_not_stall_the_queue(fast_limiter: ApiRateLimiter):
    fast_limiter.configure(max_concurrent_requests=1)
    attempts = []

    async def throttled_once():
        attempts.append(1)
        if len(attempts) == 1:
            raise TooManyRequestsError(retry_after="inf")
        return "users"

    async def leads():
        return "leads"

    async def scenario():
        users = fast_limiter.enqueue("/users", throttled_once)
        queued = fast_limiter.enqueue("/leads", leads)
        return await asyncio.wait_for(asyncio.gather(users, queued), timeout=2)

    assert asyncio.run(scenario()) == ["users", "leads"]
    assert len(attempts) == 2


def test_reset_restores_default_tiers(fast_limiter: ApiRateLimiter):
    fast_limiter.configure(endpoint_configs={"/reports": EndpointConfig(4, 2)})
    fast_limiter.reset()
    assert "/reports" not in fast_limiter.endpoint_configs
    assert fast_limiter.stats()["dispatched"] == 0


def test_module_level_enqueue_uses_shared_limiter():
    rate_limiter_module.configure(requests_per_second=100)

    async def thunk():
        return "shared"

    async def scenario():
        return await rate_limiter_module.enqueue("/users", thunk)

    assert asyncio.run(scenario()) == "shared"
    assert rate_limiter_module.get_rate_limiter() is rate_limiter_module.api_rate_limiter
    assert rate_limiter_module.api_rate_limiter.stats()["resolved"] == 1
