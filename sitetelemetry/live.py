# sitetelemetry/live.py
# In-process fan-out of accepted readings to live subscribers (websockets).

import logging
import threading
from collections import defaultdict
from typing import Any, Callable, Protocol, Sequence
from uuid import UUID

from . import models

logger = logging.getLogger(__name__)

Subscriber = Callable[[dict[str, Any]], None]


class Publisher(Protocol):
    def publish(self, site_id: UUID, readings: Sequence[models.SensorReading]) -> int: ...


def reading_message(reading: models.SensorReading) -> dict[str, Any]:
    return {
        "type": "reading",
        "stream_id": str(reading.stream_id),
        "time": reading.time.isoformat(),
        "value": reading.value,
        "quality_code": reading.quality_code,
        "message_id": reading.message_id,
    }


class LiveHub:
    """Site-keyed subscriber registry. Safe to publish from worker threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[UUID, list[Subscriber]] = defaultdict(list)

    def subscribe(self, site_id: UUID, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers[site_id].append(callback)

        def unsubscribe() -> None:
            with self._lock:
                subs = self._subscribers.get(site_id, [])
                if callback in subs:
                    subs.remove(callback)
                if not subs:
                    self._subscribers.pop(site_id, None)

        return unsubscribe

    def subscriber_count(self, site_id: UUID) -> int:
        with self._lock:
            return len(self._subscribers.get(site_id, []))

    def publish(self, site_id: UUID, readings: Sequence[models.SensorReading]) -> int:
        """Push each reading to every subscriber of ``site_id``; returns deliveries."""
        with self._lock:
            subs = list(self._subscribers.get(site_id, []))
        if not subs or not readings:
            return 0

        delivered = 0
        messages = [reading_message(r) for r in readings]
        for callback in subs:
            for message in messages:
                try:
                    callback(message)
                except Exception:
                    # a broken subscriber must not block the others
                    logger.exception("Live subscriber failed for site %s", site_id)
                    break
                delivered += 1
        return delivered


hub = LiveHub()
