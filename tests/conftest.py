import os

import pytest
from typer.testing import CliRunner

from apithrottle import main
from apithrottle.infrastructure.config import settings
from apithrottle.infrastructure.resilience.rate_limiter import ApiRateLimiter, get_rate_limiter


@pytest.fixture(scope="session")
def runner():
    """Provides a Typer CliRunner instance."""
    return CliRunner()


@pytest.fixture
def fast_limiter():
    """A limiter with millisecond-scale pacing, backoff and no jitter."""
    return ApiRateLimiter(
        max_concurrent_requests=3,
        requests_per_second=1000,
        base_retry_delay_ms=1,
        max_jitter_ms=0,
        poll_interval=0.001,
    )


@pytest.fixture
def recorded_events(fast_limiter):
    """Collects every domain event emitted by fast_limiter."""
    events = []
    fast_limiter.add_listener(events.append)
    return events


@pytest.fixture(autouse=True)
def reset_shared_state(monkeypatch):
    """Isolates the process-wide limiter, configuration store and CLI wiring."""
    for key in list(os.environ):
        if key.startswith(settings.ENV_PREFIX):
            monkeypatch.delenv(key)
    monkeypatch.setattr(settings, "_config", {})
    yield
    get_rate_limiter().reset()
    settings.clear_test_config()
    main._dependencies.clear()
