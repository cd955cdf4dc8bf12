"""Beacon client: the object an application talks to.

One instance owns all mutable state (request queue, event batch, consent,
session and timers). Public calls take the instance lock, so they can be
made from any thread while the heartbeat runs in the background.

Usage::

    beacon = Beacon(Config(url="https://stats.example.com", app_key="KEY"))
    beacon.start()
    beacon.begin_session()
    beacon.add_event({"key": "purchase", "count": 1, "sum": 9.99})
"""
from __future__ import annotations

import functools
import logging
import sys
import threading
from concurrent.futures import Executor

from beacon.aggregator import (
    Aggregator,
    ChangeId,
    ForwardEvent,
    ForwardRaw,
    ForwardRequest,
    Forwarder,
)
from beacon.batcher import EventBatcher
from beacon.clock import Clock
from beacon.config import Config
from beacon.consent import ConsentGate
from beacon.crash import build_report
from beacon.metrics import MetricsProvider
from beacon.models import (
    USER_DETAIL_FIELDS,
    VIEW_EVENT,
    BeginSession,
    ConsentSync,
    Conversion,
    Crash,
    DeviceIdMerge,
    EndSession,
    Event,
    EventBatch,
    Payload,
    SessionDuration,
    UserDetails,
    generate_device_id,
    pick,
)
from beacon.request_queue import RequestQueue
from beacon.scheduler import DeliveryScheduler
from beacon.session import SessionTracker
from beacon.storage import ID_KEY, JsonStore
from beacon.transport import HttpTransport
from beacon.userdata import CustomProperties

logger = logging.getLogger(__name__)

PRIMARY = "primary"
SECONDARY = "secondary"


def _synchronized(method):
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            return method(self, *args, **kwargs)
    return wrapper


class Beacon:
    def __init__(self, config: Config | None = None, *,
                 store: JsonStore | None = None,
                 transport: HttpTransport | None = None,
                 clock: Clock | None = None,
                 executor: Executor | None = None,
                 metrics: MetricsProvider | None = None,
                 channel=None,
                 role: str = PRIMARY) -> None:
        self.config = config or Config()
        if self.config.debug:
            logging.getLogger("beacon").setLevel(logging.DEBUG)
        if role not in (PRIMARY, SECONDARY):
            raise ValueError(f"role must be {PRIMARY!r} or {SECONDARY!r}, got {role!r}")
        if role == SECONDARY and channel is None:
            raise ValueError("a secondary Beacon needs a channel to the primary")

        self.role = role
        self.clock = clock or Clock()
        self._lock = threading.RLock()
        self._start_time = self.clock.seconds()
        self._crash_logs: list[str] = []
        self._crash_segments: dict | None = None
        self._previous_excepthook = None

        self.consent = ConsentGate(
            require_consent=self.config.require_consent,
            clock=self.clock,
            sync_window=self.config.consent_sync_window,
        )
        self.session = SessionTracker(self.clock)
        self.metrics = metrics or MetricsProvider(self.config.metrics, self.config.app_version)
        self.user_data = CustomProperties(self._save_custom_properties)

        self.forwarder: Forwarder | None = None
        self.aggregator: Aggregator | None = None
        self.store: JsonStore | None = None
        self.queue: RequestQueue | None = None
        self.batcher: EventBatcher | None = None
        self.scheduler: DeliveryScheduler | None = None

        if role == SECONDARY:
            self.forwarder = Forwarder(channel)
            self.device_id = self.config.device_id
            return

        if not self.config.url:
            logger.warning("No server URL configured, requests will only be queued")

        self.store = store or JsonStore(self.config.storage_path, persist=self.config.persist)
        self.device_id = (
            self.config.device_id
            or self.store.get(ID_KEY, None)
            or generate_device_id()
        )
        self.store.set(ID_KEY, self.device_id)

        self.queue = RequestQueue(
            self.store,
            queue_size=self.config.queue_size,
            fail_timeout=self.config.fail_timeout,
            clock=self.clock,
        )
        self.batcher = EventBatcher(self.store, self.clock)

        housekeeping = []
        if channel is not None:
            self.aggregator = Aggregator(self, channel)
            housekeeping.append(self.aggregator.pump)
        housekeeping += [self._extend_session, self._drain_events, self._sync_consent]

        self.scheduler = DeliveryScheduler(
            self.queue,
            transport or HttpTransport(
                self.config.url,
                force_post=self.config.force_post,
                post_threshold=self.config.post_threshold,
                timeout=self.config.timeout,
            ),
            consent=self.consent,
            clock=self.clock,
            interval=self.config.interval,
            executor=executor,
            lock=self._lock,
            housekeeping=housekeeping,
            enabled=self.config.enabled,
        )
        logger.debug("Beacon initialized for device %s", self.device_id)

    @property
    def is_primary(self) -> bool:
        return self.role == PRIMARY

    # ── Heartbeat control ───────────────────────────────────────────

    def start(self) -> None:
        if not self.is_primary:
            return
        if not self.config.url:
            logger.warning("Please provide server URL")
            return
        self.scheduler.start()

    def stop(self) -> None:
        if self.is_primary:
            self.scheduler.stop()

    def close(self) -> None:
        """Stop the heartbeat and write every cached blob to disk."""
        if self.is_primary:
            self.scheduler.shutdown()
            self.store.force_store()

    def tick(self) -> None:
        if self.is_primary:
            self.scheduler.tick()

    def flush(self, max_requests: int | None = None) -> int:
        if not self.is_primary:
            return 0
        return self.scheduler.flush(max_requests)

    # ── Consent ─────────────────────────────────────────────────────

    @_synchronized
    def group_features(self, groups: dict) -> None:
        self.consent.group_features(groups)

    def check_consent(self, feature: str) -> bool:
        return self.consent.check(feature)

    @_synchronized
    def add_consent(self, feature: str | list[str]) -> None:
        self.consent.add(feature)

    @_synchronized
    def remove_consent(self, feature: str | list[str]) -> None:
        self.consent.remove(feature)

    # ── Sessions ────────────────────────────────────────────────────

    @_synchronized
    def begin_session(self, no_heartbeat: bool = False) -> None:
        if not self.consent.check("sessions"):
            self.consent.defer("sessions", functools.partial(self.begin_session, no_heartbeat))
            return
        if self.session.begin(auto_extend=not no_heartbeat):
            self._to_queue(BeginSession(self.metrics.collect()))

    @_synchronized
    def session_duration(self, seconds: int) -> None:
        if self.consent.check("sessions") and self.session.active:
            logger.debug("Session extended by %ss", seconds)
            self._to_queue(SessionDuration(seconds))

    @_synchronized
    def end_session(self, seconds: int | None = None) -> None:
        if not self.consent.check("sessions") or not self.session.active:
            return
        self._report_view_duration()
        duration = self.session.end(seconds)
        self._to_queue(EndSession(duration))

    @_synchronized
    def stop_time(self) -> None:
        self.session.stop_time()

    @_synchronized
    def start_time(self) -> None:
        self.session.start_time()

    @_synchronized
    def change_id(self, new_id: str, merge: bool = False) -> None:
        """Switch device id; merge links old-id history to the new id server-side."""
        if not self.is_primary:
            self.forwarder.send(ChangeId(new_id, merge))
            return
        if not new_id:
            logger.debug("change_id called without an id")
            return
        if new_id == self.device_id:
            return
        auto_extend = self.session.state.auto_extend
        if not merge:
            self.end_session()
            self.session.clear_timed_events()
        old_id = self.device_id
        self.device_id = new_id
        self.store.set(ID_KEY, new_id)
        logger.debug("Changing id from %s to %s", old_id, new_id)
        if merge:
            self._to_queue(DeviceIdMerge(old_id))
        else:
            self.begin_session(no_heartbeat=not auto_extend)

    # ── Events and views ────────────────────────────────────────────

    @_synchronized
    def add_event(self, event) -> None:
        if self.consent.check("events"):
            self._add_event(event)

    @_synchronized
    def start_event(self, key: str) -> None:
        if not key:
            logger.debug("Timed event must have a key")
            return
        self.session.start_event(key)

    @_synchronized
    def end_event(self, event) -> None:
        if isinstance(event, str):
            event = {"key": event}
        elif isinstance(event, Event):
            event = event.to_dict()
        if not isinstance(event, dict) or not event.get("key"):
            logger.debug("Event must have key property")
            return
        duration = self.session.end_event(event["key"])
        if duration is None:
            return
        self.add_event({**event, "dur": duration})

    @_synchronized
    def track_view(self, name: str | None = None) -> None:
        self._report_view_duration()
        if not name:
            return
        self.session.open_view(name)
        if self.consent.check("views"):
            self._add_event({
                "key": VIEW_EVENT,
                "segmentation": {"name": name, "visit": 1, "segment": self.metrics.platform},
            })
        else:
            self.consent.defer("views", functools.partial(self._replay_view, name))

    def track_pageview(self, name: str | None = None) -> None:
        self.track_view(name)

    def _replay_view(self, name: str) -> None:
        self.session.close_view()
        self.track_view(name)

    def _report_view_duration(self) -> None:
        closed = self.session.close_view()
        if closed is None:
            return
        name, duration = closed
        if self.consent.check("views"):
            self._add_event({
                "key": VIEW_EVENT,
                "dur": duration,
                "segmentation": {"name": name, "segment": self.metrics.platform},
            })

    def _add_event(self, event) -> None:
        # internal views come through here without the "events" check
        if self.is_primary:
            self.batcher.add(event)
            return
        e = Event.from_value(event)
        if e is None:
            logger.debug("Event must have key property: %s", event)
            return
        self.forwarder.send(ForwardEvent(e.to_dict()))

    # ── Users, attribution and crashes ──────────────────────────────

    @_synchronized
    def user_details(self, user: dict) -> None:
        if self.consent.check("users"):
            logger.debug("Adding user details %s", user)
            self._to_queue(UserDetails(pick(user or {}, USER_DETAIL_FIELDS)))

    def _save_custom_properties(self, data: dict) -> None:
        with self._lock:
            if self.consent.check("users") and data:
                self._to_queue(UserDetails({"custom": data}))

    @_synchronized
    def report_conversion(self, campaign_id: str | None = None,
                          campaign_user_id: str | None = None) -> None:
        if not self.consent.check("attribution"):
            return
        if not campaign_id:
            logger.debug("No campaign data found")
            return
        self._to_queue(Conversion(campaign_id, campaign_user_id))

    @_synchronized
    def add_log(self, record: str) -> None:
        """Add a breadcrumb sent with the next crash report."""
        if self.consent.check("crashes"):
            self._crash_logs.append(record)

    def log_error(self, err, segments: dict | None = None) -> None:
        """Report an exception the application caught and handled itself."""
        self._record_error(err, nonfatal=True, segments=segments)

    def track_errors(self, segments: dict | None = None) -> None:
        """Report uncaught exceptions as fatal crashes, then defer to the old hook."""
        self._crash_segments = segments
        if self._previous_excepthook is not None:
            return
        self._previous_excepthook = sys.excepthook
        sys.excepthook = self._excepthook

    def _excepthook(self, exc_type, exc, tb) -> None:
        try:
            self._record_error(exc, nonfatal=False)
            if self.is_primary:
                self.store.force_store()
        finally:
            previous = self._previous_excepthook or sys.__excepthook__
            previous(exc_type, exc, tb)

    @_synchronized
    def _record_error(self, err, nonfatal: bool, segments: dict | None = None) -> None:
        if err is None or not self.consent.check("crashes"):
            return
        if segments is None:
            segments = self._crash_segments
        report = build_report(
            err,
            self.metrics.collect(),
            run_seconds=self.clock.seconds() - self._start_time,
            nonfatal=nonfatal,
            logs=self._crash_logs,
            segments=segments,
        )
        self._crash_logs = []
        self._to_queue(Crash(report))

    # ── Raw requests ────────────────────────────────────────────────

    @_synchronized
    def request(self, request: dict) -> None:
        """Queue a caller-built request that already has app_key and device_id."""
        if not request or not request.get("app_key") or not request.get("device_id"):
            logger.debug("app_key or device_id is missing")
            return
        if self.is_primary:
            self.queue.enqueue(dict(request))
        else:
            self.forwarder.send(ForwardRaw(dict(request)))

    # ── Forwarded messages (primary only) ───────────────────────────

    def accept_request(self, request: dict) -> None:
        self._to_queue(dict(request))

    def accept_raw(self, request: dict) -> None:
        self.request(request)

    def accept_bulk(self, requests: list[dict]) -> None:
        for request in requests:
            self._to_queue(dict(request))

    def accept_event(self, event: dict, device_id: str | None = None) -> None:
        self._add_event(event)

    # ── Queueing ────────────────────────────────────────────────────

    def _to_queue(self, payload: Payload | dict) -> bool:
        """Hand a request to the queue (or the primary). False when it was dropped."""
        if isinstance(payload, Payload):
            try:
                params = payload.to_params()
            except (TypeError, ValueError) as e:
                logger.debug("Dropping %s request, not JSON serializable: %s", payload.kind.value, e)
                return False
        else:
            params = payload
        if not self.is_primary:
            self.forwarder.send(ForwardRequest(params))
            return True
        if not self.config.app_key or not self.device_id:
            logger.debug("app_key or device_id is missing")
            return False
        params["app_key"] = self.config.app_key
        params["device_id"] = self.device_id
        if self.config.country_code:
            params["country_code"] = self.config.country_code
        if self.config.city:
            params["city"] = self.config.city
        if self.config.ip_address is not None:
            params["ip_address"] = self.config.ip_address
        return self.queue.enqueue(params)

    # ── Housekeeping jobs run on every tick ─────────────────────────

    def _extend_session(self) -> None:
        elapsed = self.session.due_extension(self.config.session_update)
        if elapsed is not None:
            self.session_duration(elapsed)

    def _drain_events(self) -> None:
        events = self.batcher.drain(self.config.max_events)
        if events and not self._to_queue(EventBatch(events)):
            self.batcher.restore(events)

    def _sync_consent(self) -> None:
        if self.consent.sync_due():
            self._to_queue(ConsentSync(self.consent.take_staged()))
