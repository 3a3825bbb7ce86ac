from __future__ import annotations

import threading
from typing import Callable, Generic, Optional, TypeVar

T = TypeVar("T")


class LatestFrameQueue(Generic[T]):
    """Single-slot hand-off between a decode thread and a processing worker.

    ``offer`` never blocks: when the slot is taken or the queue is closed the
    new item is dropped and counted.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._item: Optional[T] = None
        self._has_item = False
        self._closed = False
        self._dropped = 0

    @property
    def dropped(self) -> int:
        with self._cond:
            return self._dropped

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def __len__(self) -> int:
        with self._cond:
            return 1 if self._has_item else 0

    def is_accepting(self) -> bool:
        with self._cond:
            return not self._closed and not self._has_item

    def offer(self, item: T) -> bool:
        with self._cond:
            if self._closed or self._has_item:
                self._dropped += 1
                return False
            self._item = item
            self._has_item = True
            self._cond.notify()
            return True

    def offer_lazy(self, make_item: Callable[[], Optional[T]]) -> bool:
        # Skip building the item when it would be dropped anyway.
        if not self.is_accepting():
            with self._cond:
                self._dropped += 1
            return False
        item = make_item()
        if item is None:
            return False
        return self.offer(item)

    def get(self, timeout: Optional[float] = None) -> Optional[T]:
        """Return the pending item, or None once closed (or on timeout)."""
        with self._cond:
            if not self._cond.wait_for(lambda: self._has_item or self._closed, timeout=timeout):
                return None
            if not self._has_item:
                return None
            item = self._item
            self._item = None
            self._has_item = False
            return item

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._item = None
            self._has_item = False
            self._cond.notify_all()

    def clear(self) -> bool:
        """Discard the pending item, if any, without closing the queue."""
        with self._cond:
            had_item = self._has_item
            self._item = None
            self._has_item = False
            return had_item
