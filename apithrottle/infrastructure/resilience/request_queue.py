"""Priority-ordered holding area for requests that have not been dispatched."""

import logging
from typing import List, Optional

from apithrottle.domain.models.request import QueuedRequest

logger = logging.getLogger(__name__)


class RequestQueue:
    """Ordered by descending priority, FIFO among equal priorities.

    Retried requests go back to the head via push_front() without a re-sort,
    ahead of anything already queued. A later push() re-sorts the whole
    queue, so higher-priority work enqueued afterwards can overtake them.
    """

    def __init__(self):
        self._items: List[QueuedRequest] = []

    def push(self, request: QueuedRequest) -> None:
        self._items.append(request)
        # list.sort is stable: equal priorities keep insertion order
        self._items.sort(key=lambda item: item.priority, reverse=True)

    def push_front(self, request: QueuedRequest) -> None:
        self._items.insert(0, request)

    def pop(self) -> Optional[QueuedRequest]:
        """Removes and returns the head, or None when empty."""
        if not self._items:
            return None
        return self._items.pop(0)

    def endpoints(self) -> List[str]:
        """Snapshot of queued endpoint labels in dispatch order."""
        return [item.endpoint for item in self._items]

    def clear(self) -> List[QueuedRequest]:
        """Empties the queue and returns what was in it."""
        dropped, self._items = self._items, []
        if dropped:
            logger.debug(f"Cleared {len(dropped)} queued request(s)")
        return dropped

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)
