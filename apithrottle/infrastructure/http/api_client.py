"""HTTP API client whose every call goes through the request governor.

Wraps httpx.AsyncClient with bearer-token auth and JSON defaults. Each
call is enqueued under its request path, so the path picks the priority
tier, and non-2xx responses surface as httpx.HTTPStatusError, which the
limiter inspects for 429 / Retry-After.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from apithrottle.domain.interfaces.request_governor import RequestGovernor
from apithrottle.infrastructure.resilience.rate_limiter import get_rate_limiter

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


class ApiClient:
    """Rate-limited JSON API client."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        limiter: Optional[RequestGovernor] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        """Initializes the client.

        Args:
            base_url: Root URL every request path is joined to.
            token: Optional bearer token sent as the Authorization header.
            limiter: Governor to route calls through (process-wide one if None).
            transport: Optional httpx transport, e.g. httpx.MockTransport in tests.
            timeout: Per-request timeout in seconds.
        """
        if not base_url:
            raise ValueError("API base URL not provided.")
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.base_url = base_url
        self.limiter = limiter or get_rate_limiter()
        self._client = httpx.AsyncClient(base_url=base_url, headers=headers, transport=transport, timeout=timeout)
        logger.info(f"ApiClient initialized for {base_url} (auth: {'yes' if token else 'no'})")

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Enqueues `method path` on the governor and awaits the response.

        Raises:
            httpx.HTTPStatusError: On a non-2xx response (after any 429 retries).
            httpx.RequestError: On transport failures; these are not retried.
        """
        return await self.limiter.enqueue(path, lambda: self._send(method, path, **kwargs))

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        logger.debug(f"API Request: {method.upper()} {path}")
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.RequestError as e:
            logger.warning(f"Network error calling {method.upper()} {path}, server may be unavailable: {e}")
            raise

        logger.debug(f"API Response: {response.status_code} {path}")
        if response.status_code == 401:
            logger.warning(f"401 Unauthorized for {path}: token missing, expired or invalid")
        elif response.status_code == 429:
            logger.warning(f"Rate limit exceeded (429 Too Many Requests) for {path}")
        elif response.is_error:
            logger.error(f"API Response Error: {path} {response.status_code}")
        response.raise_for_status()
        return response

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", path, params=params, **kwargs)

    async def post(self, path: str, json: Any = None, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", path, json=json, **kwargs)

    async def put(self, path: str, json: Any = None, **kwargs: Any) -> httpx.Response:
        return await self.request("PUT", path, json=json, **kwargs)

    async def patch(self, path: str, json: Any = None, **kwargs: Any) -> httpx.Response:
        return await self.request("PATCH", path, json=json, **kwargs)

    async def delete(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self.request("DELETE", path, **kwargs)
