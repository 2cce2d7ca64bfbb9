"""Main entry point for the apithrottle CLI.

Sets up the Typer CLI application, wires dependencies (Composition Root),
and exposes commands to inspect endpoint tiers and to drive requests
through the rate limiter.
"""

import asyncio
import logging
import sys
import time
from collections import Counter
from contextvars import ContextVar
from typing import Any, Coroutine, Dict, List, Optional, Tuple

import httpx
import typer
from typing_extensions import Annotated

from apithrottle import __version__
from apithrottle.domain.events.api_events import DomainEvent, RequestDispatched, RequestEnqueued
from apithrottle.domain.interfaces.user_interface import UserInterface
from apithrottle.infrastructure.cli.display import ConsoleDisplay
from apithrottle.infrastructure.config.settings import (
    get_api_base_url,
    get_api_token,
    get_config,
    get_limiter_options,
    load_configuration,
)
from apithrottle.infrastructure.http.api_client import ApiClient
from apithrottle.infrastructure.monitoring.logger_setup import DEFAULT_LOG_FORMAT, resolve_log_level, setup_logging
from apithrottle.infrastructure.resilience.rate_limiter import ApiRateLimiter, get_rate_limiter

logger = logging.getLogger(__name__)

# --- Dependency Wiring ---

_dependencies: Dict[str, Any] = {}


def create_dependencies() -> Dict[str, Any]:
    """Loads configuration, sets up logging and configures the shared limiter."""
    dependencies: Dict[str, Any] = {'ui': ConsoleDisplay()}
    try:
        load_configuration()
        setup_logging(
            log_level=resolve_log_level(get_config('logging.level', 'WARNING')),
            log_format=get_config('logging.format', DEFAULT_LOG_FORMAT),
            log_file=get_config('logging.file'),
        )
        limiter = get_rate_limiter()
        limiter.configure(**get_limiter_options())
        dependencies['rate_limiter'] = limiter
        logger.info("Dependencies initialized.")
        return dependencies
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}", exc_info=True)
        dependencies['ui'].display_error(f"Invalid configuration: {e}")
        sys.exit(1)


def get_dependencies() -> Dict[str, Any]:
    if not _dependencies:
        _dependencies.update(create_dependencies())
    return _dependencies


def create_api_client(base_url: str, token: Optional[str]) -> ApiClient:
    return ApiClient(base_url=base_url, token=token, limiter=get_dependencies()['rate_limiter'])


# --- Typer App Definition ---
app = typer.Typer(
    name="apithrottle",
    help="Queue, pace and retry outbound API calls by endpoint priority.",
    add_completion=False,
)


def run_async(coro: Coroutine[Any, Any, Any]) -> Any:
    """Runs an async command body from a sync Typer command."""
    try:
        return asyncio.run(coro)
    except Exception as e:
        logger.error(f"Error executing async command: {e}", exc_info=True)
        get_dependencies()['ui'].display_error(f"Command execution failed: {e}")
        raise typer.Exit(code=1)


# --- CLI Commands ---

@app.command()
def classify(
    endpoints: Annotated[List[str], typer.Argument(help="Endpoint labels or request paths to classify.")],
):
    """Show which priority tier each endpoint falls into."""
    deps = get_dependencies()
    limiter: ApiRateLimiter = deps['rate_limiter']
    rows = []
    for endpoint in endpoints:
        key = limiter.classifier.match(endpoint)
        tier = limiter.classifier.classify(endpoint)
        rows.append((endpoint, key or "default", tier.priority, tier.max_retries))
    deps['ui'].display_table("Endpoint tiers", ["Endpoint", "Matched key", "Priority", "Max retries"], rows)


@app.command(name="show-config")
def show_config():
    """Show the limiter's ceilings and endpoint tiers."""
    deps = get_dependencies()
    ui: UserInterface = deps['ui']
    limiter: ApiRateLimiter = deps['rate_limiter']
    ui.display_info(
        f"max_concurrent_requests={limiter.max_concurrent_requests}, "
        f"requests_per_second={limiter.requests_per_second}"
    )
    configs = sorted(limiter.endpoint_configs.items(), key=lambda item: item[1].priority, reverse=True)
    ui.display_table(
        "Endpoint tiers",
        ["Key", "Priority", "Max retries"],
        [(key, config.priority, config.max_retries) for key, config in configs],
    )


# Request ids enqueued by the current fetch task; listeners run synchronously inside enqueue()
_fetch_request_ids: ContextVar[Optional[List[str]]] = ContextVar("_fetch_request_ids", default=None)


async def _fetch_all(client: ApiClient, paths: List[str], limiter: ApiRateLimiter) -> List[Tuple[str, str, str, int, str]]:
    attempts: Counter = Counter()

    def count_dispatch(event: DomainEvent) -> None:
        if isinstance(event, RequestEnqueued):
            request_ids = _fetch_request_ids.get()
            if request_ids is not None:
                request_ids.append(event.request_id)
        elif isinstance(event, RequestDispatched):
            attempts[event.request_id] += 1

    async def fetch(path: str) -> Tuple[str, str, float, int, str]:
        request_ids: List[str] = []
        _fetch_request_ids.set(request_ids)
        started = time.perf_counter()
        try:
            response = await client.get(path)
            outcome, status = "ok", str(response.status_code)
        except httpx.HTTPStatusError as e:
            outcome, status = "failed", str(e.response.status_code)
        except httpx.RequestError as e:
            outcome, status = f"error: {type(e).__name__}", "-"
        elapsed = time.perf_counter() - started
        return path, status, elapsed, sum(attempts[request_id] for request_id in request_ids), outcome

    limiter.add_listener(count_dispatch)
    try:
        async with client:
            results = await asyncio.gather(*(fetch(path) for path in paths))
    finally:
        limiter.remove_listener(count_dispatch)
    return [(path, status, f"{elapsed:.2f}s", count, outcome) for path, status, elapsed, count, outcome in results]


@app.command()
def get(
    paths: Annotated[List[str], typer.Argument(help="Request paths, e.g. /users /analytics/summary.")],
    base_url: Annotated[Optional[str], typer.Option("--base-url", "-u", help="API root URL. Defaults to api.base_url.")] = None,
    token: Annotated[Optional[str], typer.Option("--token", "-t", help="Bearer token. Defaults to api.token.")] = None,
    concurrency: Annotated[Optional[int], typer.Option("--concurrency", "-c", min=1, help="Max requests in flight.")] = None,
    rps: Annotated[Optional[float], typer.Option("--rps", min=0.001, help="Max dispatches per second.")] = None,
):
    """GET each path through the rate limiter and report the outcome."""
    deps = get_dependencies()
    ui: UserInterface = deps['ui']
    limiter: ApiRateLimiter = deps['rate_limiter']

    resolved_base_url = base_url or get_api_base_url()
    if not resolved_base_url:
        ui.display_error("No API base URL. Pass --base-url or set api.base_url / APITHROTTLE_API_BASE_URL.")
        raise typer.Exit(code=2)
    limiter.configure(max_concurrent_requests=concurrency, requests_per_second=rps)

    client = create_api_client(resolved_base_url, token or get_api_token())
    rows = run_async(_fetch_all(client, paths, limiter))
    ui.display_table("Results", ["Path", "Status", "Elapsed", "Attempts", "Outcome"], rows)
    ui.display_stats(limiter.stats())
    if any(row[4] != "ok" for row in rows):
        raise typer.Exit(code=1)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"apithrottle {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: Annotated[
        Optional[bool],
        typer.Option("--version", callback=_version_callback, is_eager=True, help="Show the version and exit."),
    ] = None,
):
    """Client-side request governor for rate-limited APIs."""


# --- Main Execution Guard ---

def cli_entry_point():
    """Function called by the console script entry point in pyproject.toml."""
    app()


if __name__ == "__main__":
    cli_entry_point()
