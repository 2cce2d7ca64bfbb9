"""Interface for presenting results to the user.

Defines the contract for displaying information, errors, warnings and
tabular results, allowing different UI implementations.
"""

import abc
from typing import Any, Dict, List, Sequence


class UserInterface(abc.ABC):
    """Abstract Base Class for user interaction."""

    @abc.abstractmethod
    def display_output(self, output: str, **kwargs: Any) -> None:
        """Displays standard output to the user."""
        pass

    @abc.abstractmethod
    def display_error(self, error_message: str, **kwargs: Any) -> None:
        """Displays an error message to the user."""
        pass

    @abc.abstractmethod
    def display_warning(self, warning_message: str, **kwargs: Any) -> None:
        """Displays a warning message to the user."""
        pass

    @abc.abstractmethod
    def display_info(self, info_message: str, **kwargs: Any) -> None:
        """Displays an informational message to the user."""
        pass

    @abc.abstractmethod
    def display_table(self, title: str, columns: Sequence[str], rows: List[Sequence[Any]]) -> None:
        """Displays rows of values under the given column headings.

        Args:
            title: Table caption.
            columns: Column headings.
            rows: One sequence of cell values per row.
        """
        pass

    def display_stats(self, stats: Dict[str, Any]) -> None:
        """Displays limiter counters. Optional for implementations."""
        pass
