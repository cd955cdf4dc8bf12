"""Event batch: events wait here until a heartbeat packs them into a request."""
from __future__ import annotations

import json
import logging

from beacon.clock import Clock, hour_dow
from beacon.models import Event
from beacon.storage import EVENT_KEY, JsonStore

logger = logging.getLogger(__name__)


class EventBatcher:
    def __init__(self, store: JsonStore, clock: Clock | None = None,
                 key: str = EVENT_KEY) -> None:
        self.store = store
        self.clock = clock or Clock()
        self.key = key
        stored = store.get(key, [])
        if not isinstance(stored, list):
            logger.warning("Discarding malformed %s blob", key)
            stored = []
        self._events: list[dict] = [e for e in stored if isinstance(e, dict)]

    def __len__(self) -> int:
        return len(self._events)

    @property
    def events(self) -> list[dict]:
        return list(self._events)

    def add(self, event) -> Event | None:
        """Stamp and append an event.

        Events without a key, or with values that cannot be stored as JSON,
        are dropped.
        """
        e = Event.from_value(event)
        if e is None:
            logger.debug("Event must have key property: %s", event)
            return None
        e.timestamp = self.clock.millis()
        e.hour, e.dow = hour_dow(e.timestamp)
        record = e.to_dict()
        try:
            json.dumps(record)
        except (TypeError, ValueError) as err:
            logger.debug("Dropping event %s, not JSON serializable: %s", e.key, err)
            return None
        logger.debug("Adding event %s", e.key)
        self._events.append(record)
        self.store.set(self.key, self._events)
        return e

    def drain(self, max_events: int) -> list[dict]:
        """Remove and return up to max_events events, oldest first."""
        if not self._events:
            return []
        batch = self._events[:max_events]
        self._events = self._events[max_events:]
        self.store.set(self.key, self._events)
        return batch

    def restore(self, events: list[dict]) -> None:
        """Put drained events back at the front, e.g. when no request could be built."""
        if not events:
            return
        self._events = list(events) + self._events
        self.store.set(self.key, self._events)
