"""Interface for outbound request governors.

Defines the contract the HTTP client and the CLI rely on, so that a
different scheduling strategy can be plugged in without touching callers.
"""

import abc
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, TypeVar, Union

from apithrottle.domain.models.common import EndpointConfig

T = TypeVar("T")


class RequestGovernor(abc.ABC):
    """Abstract Base Class for components that schedule outbound calls."""

    @abc.abstractmethod
    def enqueue(self, endpoint: str, execute_request: Callable[[], Awaitable[T]]) -> "Awaitable[T]":
        """Schedules a call and returns an awaitable for its eventual result.

        Args:
            endpoint: Logical endpoint label used to pick the priority tier.
            execute_request: Zero-argument callable returning an awaitable.

        Returns:
            An awaitable resolving to the call's result, or raising the
            call's original exception.
        """
        pass

    @abc.abstractmethod
    def configure(
        self,
        max_concurrent_requests: Optional[int] = None,
        requests_per_second: Optional[float] = None,
        endpoint_configs: Optional[Mapping[str, Union[EndpointConfig, Mapping[str, Any]]]] = None,
    ) -> None:
        """Updates ceilings and merges endpoint tiers."""
        pass

    @abc.abstractmethod
    def stats(self) -> Dict[str, Any]:
        """Returns a snapshot of queue and counter state."""
        pass
