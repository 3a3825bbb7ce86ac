from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List

logger = logging.getLogger("crowdcount.output.hub")

CAMERA_STATUS = "camera_status"
ZONE_STATUS = "zone_status"
LOCATION_STATUS = "location_status"

Subscriber = Callable[[str, Dict[str, Any]], None]


class StatusHub:
    """In-process fan-out of status events to subscribers.

    Subscribers run on the publishing thread (a camera worker or the
    orchestrator), so they should hand work off rather than block.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: List[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, event: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for cb in subscribers:
            try:
                cb(event, payload)
            except Exception:
                logger.exception("Subscriber failed while handling %s", event)
