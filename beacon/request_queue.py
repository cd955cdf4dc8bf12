"""Bounded, persisted queue of outbound requests.

At most one request is in flight. The in-flight request stays at the head
of the queue (and on disk) until the transport confirms it, so a crash
mid-delivery loses nothing. A failed delivery leaves it at the head and
arms a fail-timeout before the next attempt.
"""
from __future__ import annotations

import json
import logging

from beacon import SDK_NAME, __version__
from beacon.clock import Clock, hour_dow
from beacon.storage import QUEUE_KEY, JsonStore

logger = logging.getLogger(__name__)


class RequestQueue:
    def __init__(self, store: JsonStore, queue_size: int = 1000, fail_timeout: int = 60,
                 clock: Clock | None = None, key: str = QUEUE_KEY,
                 required: tuple[str, ...] = ("app_key", "device_id"),
                 stamp: bool = True) -> None:
        self.store = store
        self.queue_size = queue_size
        self.fail_timeout = fail_timeout
        self.clock = clock or Clock()
        self.key = key
        self.required = required
        self.stamp = stamp
        self.fail_until = 0.0
        self._in_flight: dict | None = None

        stored = store.get(key, [])
        if not isinstance(stored, list):
            logger.warning("Discarding malformed %s blob", key)
            stored = []
        self._items: list[dict] = [r for r in stored if isinstance(r, dict)]

    def __len__(self) -> int:
        return len(self._items)

    @property
    def items(self) -> list[dict]:
        return list(self._items)

    @property
    def processing(self) -> bool:
        return self._in_flight is not None

    def head(self) -> dict | None:
        return self._items[0] if self._items else None

    def enqueue(self, request: dict) -> bool:
        missing = [k for k in self.required if not request.get(k)]
        if missing:
            logger.debug("Dropping request without %s", ", ".join(missing))
            return False

        try:
            json.dumps(request)
        except (TypeError, ValueError) as e:
            logger.debug("Dropping request that is not JSON serializable: %s", e)
            return False

        if self.stamp:
            request.setdefault("sdk_name", SDK_NAME)
            request.setdefault("sdk_version", __version__)
            if not request.get("timestamp"):
                request["timestamp"] = self.clock.millis()
            if "hour" not in request or "dow" not in request:
                hour, dow = hour_dow(request["timestamp"])
                request.setdefault("hour", hour)
                request.setdefault("dow", dow)

        while len(self._items) >= self.queue_size:
            if not self._evict_oldest():
                break
        self._items.append(request)
        logger.debug("Queued request %s", request)
        self._persist()
        return True

    def _evict_oldest(self) -> bool:
        for i, item in enumerate(self._items):
            if item is not self._in_flight:
                dropped = self._items.pop(i)
                logger.debug("Queue full, evicted %s", dropped)
                return True
        return False

    def ready(self, now: float | None = None) -> bool:
        now = self.clock.now() if now is None else now
        return bool(self._items) and self._in_flight is None and now >= self.fail_until

    def peek_and_lock(self) -> dict | None:
        if self._in_flight is not None or not self._items:
            return None
        self._in_flight = self._items[0]
        return self._in_flight

    def confirm(self, request: dict) -> None:
        for i, item in enumerate(self._items):
            if item is request:
                del self._items[i]
                break
        self._in_flight = None
        self._persist()

    def requeue(self, request: dict, now: float | None = None) -> None:
        now = self.clock.now() if now is None else now
        for i, item in enumerate(self._items):
            if item is request:
                del self._items[i]
                break
        self._items.insert(0, request)
        self._in_flight = None
        self.fail_until = now + self.fail_timeout
        self._persist()

    def _persist(self) -> None:
        self.store.set(self.key, self._items)
