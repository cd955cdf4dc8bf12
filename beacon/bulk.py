"""Bulk import: report historical data for many devices from one process.

Requests and per-device events are packed into ``/i/bulk`` payloads of up
to ``bulk_size`` requests each. Delivery follows the same rules as the
regular client: one payload in flight, fail-timeout after a failure.
"""
from __future__ import annotations

import functools
import json
import logging
import math
import threading
from concurrent.futures import Executor
from typing import Any, Callable

from beacon import __version__
from beacon.aggregator import Aggregator, ForwardBulk, ForwardEvent, ForwardRequest, Forwarder
from beacon.clock import Clock, hour_dow, is_valid_timestamp
from beacon.config import Config
from beacon.consent import BULK_FEATURES, ConsentGate
from beacon.models import RATING_EVENT, USER_DETAIL_FIELDS, VIEW_EVENT, Event, pick
from beacon.request_queue import RequestQueue
from beacon.scheduler import DeliveryScheduler
from beacon.storage import JsonStore
from beacon.transport import BULK_API_PATH, HttpTransport
from beacon.userdata import CustomProperties

logger = logging.getLogger(__name__)

BULK_SDK_NAME = "python_native_beacon_bulk"
REQUESTS_KEY = "beacon_bulk_requests"
EVENTS_KEY = "beacon_bulk_events"
BULK_QUEUE_KEY = "beacon_bulk_queue"
SESSION_BEAT = 60           # longest duration reported by one session beat
EMPTY_TICKS = 3             # consecutive idle ticks before on_empty fires


class BulkSender:
    def __init__(self, config: Config, *, bulk_size: int = 50,
                 interval: float = 5.0, persist: bool = False,
                 store: JsonStore | None = None,
                 transport: HttpTransport | None = None,
                 clock: Clock | None = None,
                 executor: Executor | None = None,
                 channel=None, secondary: bool = False) -> None:
        if not config.app_key:
            raise ValueError("app_key is missing")
        if not config.url and transport is None:
            raise ValueError("url is missing")
        if bulk_size < 1:
            raise ValueError(f"bulk_size must be positive, got {bulk_size}")

        self.config = config
        self.bulk_size = bulk_size
        self.clock = clock or Clock()
        self._lock = threading.RLock()
        self._users: list[BulkUser] = []
        self._on_empty: Callable[[], None] | None = None
        self._empty_count = 0
        self.forwarder = Forwarder(channel) if secondary else None
        self.aggregator = Aggregator(self, channel) if channel is not None and not secondary else None

        self.store = store or JsonStore(config.storage_path, persist=persist)
        requests = self.store.get(REQUESTS_KEY, [])
        events = self.store.get(EVENTS_KEY, {})
        self._requests: list[dict] = requests if isinstance(requests, list) else []
        self._events: dict[str, list[dict]] = events if isinstance(events, dict) else {}
        self.bulk_queue = RequestQueue(
            self.store,
            queue_size=config.queue_size,
            fail_timeout=config.fail_timeout,
            clock=self.clock,
            key=BULK_QUEUE_KEY,
            required=("app_key",),
            stamp=False,
        )

        housekeeping = [self._pack]
        if self.aggregator is not None:
            housekeeping.insert(0, self.aggregator.pump)
        self.scheduler = DeliveryScheduler(
            self.bulk_queue,
            transport or HttpTransport(
                config.url,
                api_path=BULK_API_PATH,
                force_post=config.force_post,
                post_threshold=config.post_threshold,
                timeout=config.timeout,
            ),
            clock=self.clock,
            interval=interval,
            executor=executor,
            lock=self._lock,
            housekeeping=housekeeping,
            enabled=config.enabled,
        )

    # ── Adding data ─────────────────────────────────────────────────

    def _prepare(self, query: dict) -> dict | None:
        if not query.get("device_id"):
            logger.debug("device_id is missing: %s", query)
            return None
        try:
            json.dumps(query)
        except (TypeError, ValueError) as e:
            logger.debug("Dropping request that is not JSON serializable: %s", e)
            return None
        query = dict(query)
        query.setdefault("app_key", self.config.app_key)
        ts = query.get("timestamp")
        if ts and not is_valid_timestamp(ts):
            logger.debug("incorrect timestamp format: %s", query)
        query["sdk_name"] = BULK_SDK_NAME
        query["sdk_version"] = __version__
        if not ts:
            query["timestamp"] = self.clock.millis()
        try:
            hour, dow = hour_dow(query["timestamp"])
        except (TypeError, ValueError, OverflowError, OSError):
            hour, dow = hour_dow(self.clock.millis())
        query.setdefault("hour", hour)
        query.setdefault("dow", dow)
        return query

    def add_request(self, query: dict) -> "BulkSender":
        if self.forwarder is not None:
            self.forwarder.send(ForwardRequest(dict(query)))
            return self
        with self._lock:
            prepared = self._prepare(query)
            if prepared is not None:
                logger.debug("Adding request %s", prepared)
                self._requests.append(prepared)
                self.store.set(REQUESTS_KEY, self._requests)
        return self

    def add_bulk_request(self, queries: list[dict]) -> "BulkSender":
        if self.forwarder is not None:
            self.forwarder.send(ForwardBulk([dict(q) for q in queries]))
            return self
        with self._lock:
            for query in queries:
                prepared = self._prepare(query)
                if prepared is not None:
                    self._requests.append(prepared)
            self.store.set(REQUESTS_KEY, self._requests)
        return self

    def add_event(self, device_id: str, event) -> "BulkSender":
        if not device_id:
            logger.debug("device_id is missing")
            return self
        e = Event.from_value(event, keep_timestamp=True)
        if e is None:
            logger.debug("Event must have key property: %s", event)
            return self
        try:
            json.dumps(e.to_dict())
        except (TypeError, ValueError) as err:
            logger.debug("Dropping event %s, not JSON serializable: %s", e.key, err)
            return self
        if self.forwarder is not None:
            self.forwarder.send(ForwardEvent(e.to_dict(), device_id))
            return self
        with self._lock:
            if not e.timestamp:
                e.timestamp = self.clock.millis()
            e.hour, e.dow = hour_dow(e.timestamp)
            self._events.setdefault(device_id, []).append(e.to_dict())
            self.store.set(EVENTS_KEY, self._events)
        return self

    def add_user(self, device_id: str, **kwargs) -> "BulkUser":
        user = BulkUser(self, device_id, **kwargs)
        with self._lock:
            self._users.append(user)
        return user

    # forwarded from secondary processes
    def accept_request(self, request: dict) -> None:
        self.add_request(request)

    def accept_raw(self, request: dict) -> None:
        self.add_request(request)

    def accept_bulk(self, requests: list[dict]) -> None:
        self.add_bulk_request(requests)

    def accept_event(self, event: dict, device_id: str | None = None) -> None:
        self.add_event(device_id, event)

    def change_id(self, device_id: str, merge: bool = False) -> None:
        logger.debug("Bulk mode has no own device id, ignoring change to %s", device_id)

    # ── Processing ──────────────────────────────────────────────────

    def start(self, on_empty: Callable[[], None] | None = None) -> "BulkSender":
        """Start processing; on_empty fires after three idle heartbeats in a row."""
        if self.forwarder is None:
            self._on_empty = on_empty
            self.scheduler.start()
        return self

    def stop(self) -> "BulkSender":
        self.scheduler.stop()
        return self

    def tick(self) -> None:
        self.scheduler.tick()

    def flush(self, max_requests: int | None = None) -> int:
        return self.scheduler.flush(max_requests)

    def queue_size(self) -> int:
        """Number of bulk payloads still to be sent, counting unpacked data."""
        with self._lock:
            event_count = sum(len(events) for events in self._events.values())
            return (
                math.ceil(event_count / self.config.max_events)
                + math.ceil(len(self._requests) / self.bulk_size)
                + len(self.bulk_queue)
            )

    def _pack(self) -> None:
        for user in self._users:
            user._sync_consent()

        empty = True
        changed = False
        for device_id, events in self._events.items():
            if not events:
                continue
            changed = True
            batch = events[:self.config.max_events]
            del events[:self.config.max_events]
            self.add_request({"device_id": device_id, "events": batch})
        if changed:
            empty = False
            self._events = {d: e for d, e in self._events.items() if e}
            self.store.set(EVENTS_KEY, self._events)

        if self._requests:
            empty = False
            chunk = self._requests[:self.bulk_size]
            self._requests = self._requests[self.bulk_size:]
            self.bulk_queue.enqueue({
                "app_key": self.config.app_key,
                "requests": json.dumps(chunk, separators=(",", ":")),
            })
            self.store.set(REQUESTS_KEY, self._requests)

        if len(self.bulk_queue):
            empty = False

        if empty:
            self._empty_count += 1
            if self._empty_count >= EMPTY_TICKS:
                self._empty_count = 0
                if self._on_empty is not None:
                    self._on_empty()
        else:
            self._empty_count = 0


class BulkUser:
    """One device's data in a bulk import. Every method returns self."""

    def __init__(self, sender: BulkSender, device_id: str,
                 require_consent: bool = False,
                 country_code: str | None = None,
                 city: str | None = None,
                 ip_address: str | None = None) -> None:
        if not device_id:
            raise ValueError("device_id is missing")
        self.sender = sender
        self.device_id = device_id
        self.country_code = country_code
        self.city = city
        self.ip_address = ip_address
        self._session_start = 0
        self.consent = ConsentGate(
            require_consent=require_consent,
            features=BULK_FEATURES,
            clock=sender.clock,
            sync_window=sender.config.consent_sync_window,
        )
        self._custom = CustomProperties(self._save_custom)

    # ── Consent ─────────────────────────────────────────────────────

    def group_features(self, groups: dict) -> "BulkUser":
        with self.sender._lock:
            self.consent.group_features(groups)
        return self

    def check_consent(self, feature: str) -> bool:
        return self.consent.check(feature)

    def add_consent(self, feature) -> "BulkUser":
        with self.sender._lock:
            self.consent.add(feature)
        return self

    def remove_consent(self, feature) -> "BulkUser":
        with self.sender._lock:
            self.consent.remove(feature)
        return self

    def _sync_consent(self) -> None:
        if self.consent.sync_due():
            changes = self.consent.take_staged()
            self.sender.add_bulk_request([self._query({"consent": changes})])

    def _query(self, extra: dict | None = None) -> dict[str, Any]:
        query = dict(extra or {})
        query.setdefault("device_id", self.device_id)
        if self.ip_address and self.consent.check("location"):
            query["ip_address"] = self.ip_address
        return query

    # ── Reporting ───────────────────────────────────────────────────

    def begin_session(self, metrics: dict | None = None, seconds: int = 0,
                      timestamp: int | None = None) -> "BulkUser":
        """Start a session and report its length as beats of at most 60 seconds.

        With a timestamp, each beat is stamped at the session start plus the
        seconds reported so far.
        """
        if not self.consent.check("sessions"):
            self.consent.defer("sessions", functools.partial(
                self.begin_session, metrics, seconds, timestamp))
            return self
        bulk = []
        query = self._query({"begin_session": 1, "metrics": metrics or {}})
        if self.consent.check("location"):
            if self.country_code:
                query["country_code"] = self.country_code
            if self.city:
                query["city"] = self.city
        else:
            query["location"] = ""
        if timestamp:
            self._session_start = timestamp
            query["timestamp"] = timestamp
        bulk.append(query)

        remaining = int(seconds or 0)
        reported = 0
        while remaining > 0:
            beat = min(remaining, SESSION_BEAT)
            reported += beat
            remaining -= beat
            query = self._query({"session_duration": beat})
            if timestamp:
                query["timestamp"] = timestamp + reported
            bulk.append(query)
        self.sender.add_bulk_request(bulk)
        return self

    def add_event(self, event) -> "BulkUser":
        if self.consent.check("events"):
            self.sender.add_event(self.device_id, event)
        return self

    def user_details(self, user: dict) -> "BulkUser":
        if self.consent.check("users"):
            details = pick(user or {}, USER_DETAIL_FIELDS)
            self.sender.add_request(self._query({"user_details": details}))
        return self

    def report_conversion(self, campaign_id: str | None = None,
                          campaign_user_id: str | None = None,
                          timestamp: int | None = None) -> "BulkUser":
        if not self.consent.check("attribution"):
            return self
        query = self._query()
        if campaign_id:
            query["campaign_id"] = campaign_id
        if campaign_user_id:
            query["campaign_user"] = campaign_user_id
        if timestamp or self._session_start:
            query["timestamp"] = timestamp or self._session_start
        self.sender.add_request(query)
        return self

    def report_view(self, view_name: str, platform: str | None = None,
                    timestamp: int | None = None, duration: int | None = None,
                    landing: bool = False, exit: bool = False,
                    bounce: bool = False) -> "BulkUser":
        if not self.consent.check("views"):
            self.consent.defer("views", functools.partial(
                self.report_view, view_name, platform, timestamp, duration,
                landing, exit, bounce))
            return self
        segmentation: dict[str, Any] = {"name": view_name, "visit": 1, "segment": platform}
        if landing:
            segmentation["start"] = 1
        if exit:
            segmentation["exit"] = 1
        if bounce:
            segmentation["bounce"] = 1
        event: dict[str, Any] = {"key": VIEW_EVENT, "count": 1, "segmentation": segmentation}
        if duration is not None:
            event["dur"] = duration
        query = self._query({"events": [event]})
        if timestamp:
            query["timestamp"] = timestamp
        self.sender.add_request(query)
        return self

    def report_rating(self, rating: int, platform: str | None = None,
                      app_version: str | None = None,
                      timestamp: int | None = None) -> "BulkUser":
        if self.consent.check("star-rating"):
            event = {
                "key": RATING_EVENT,
                "count": 1,
                "segmentation": {"rating": rating, "app_version": app_version,
                                 "platform": platform},
            }
            query = self._query({"events": [event]})
            if timestamp:
                query["timestamp"] = timestamp
            self.sender.add_request(query)
        return self

    def report_crash(self, crash: dict, timestamp: int | None = None) -> "BulkUser":
        if self.consent.check("crashes"):
            query = self._query({"crash": crash})
            if timestamp:
                query["timestamp"] = timestamp
            self.sender.add_request(query)
        return self

    # ── Custom user properties ──────────────────────────────────────

    def _save_custom(self, data: dict) -> None:
        if self.consent.check("users"):
            self.sender.add_request(self._query({"user_details": {"custom": data}}))

    def custom_set(self, key: str, value) -> "BulkUser":
        self._custom.set(key, value)
        return self

    def custom_set_once(self, key: str, value) -> "BulkUser":
        self._custom.set_once(key, value)
        return self

    def custom_unset(self, key: str) -> "BulkUser":
        self._custom.unset(key)
        return self

    def custom_increment(self, key: str) -> "BulkUser":
        self._custom.increment(key)
        return self

    def custom_increment_by(self, key: str, value) -> "BulkUser":
        self._custom.increment_by(key, value)
        return self

    def custom_multiply(self, key: str, value) -> "BulkUser":
        self._custom.multiply(key, value)
        return self

    def custom_max(self, key: str, value) -> "BulkUser":
        self._custom.max(key, value)
        return self

    def custom_min(self, key: str, value) -> "BulkUser":
        self._custom.min(key, value)
        return self

    def custom_push(self, key: str, value) -> "BulkUser":
        self._custom.push(key, value)
        return self

    def custom_push_unique(self, key: str, value) -> "BulkUser":
        self._custom.push_unique(key, value)
        return self

    def custom_pull(self, key: str, value) -> "BulkUser":
        self._custom.pull(key, value)
        return self

    def custom_save(self) -> "BulkUser":
        self._custom.save()
        return self
