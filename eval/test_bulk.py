"""Tests for bulk import: packing, session beats and per-user reporting."""
import json
from concurrent.futures import Executor, Future

import pytest

from beacon.bulk import BULK_SDK_NAME, BulkSender
from beacon.clock import Clock
from beacon.config import Config
from beacon.models import RATING_EVENT, VIEW_EVENT
from beacon.transport import DeliveryResult


# ── Helpers ─────────────────────────────────────────────────────────


class FakeClock(Clock):
    def __init__(self):
        super().__init__()
        self.t = 1_700_000_000.0

    def now(self) -> float:
        return self.t


class InlineExecutor(Executor):
    def submit(self, fn, *args, **kwargs):
        future = Future()
        future.set_result(fn(*args, **kwargs))
        return future


class FakeTransport:
    def __init__(self):
        self.sent = []

    def send(self, params):
        self.sent.append(params)
        return DeliveryResult(ok=True, status=200, body={"result": "Success"})


def _make_sender(bulk_size=50, **config):
    config.setdefault("url", "https://stats.example.com")
    config.setdefault("app_key", "KEY")
    transport = FakeTransport()
    sender = BulkSender(Config(**config), bulk_size=bulk_size, transport=transport,
                        clock=FakeClock(), executor=InlineExecutor())
    return sender, transport


def _payload(params):
    return json.loads(params["requests"])


# ── Tests ───────────────────────────────────────────────────────────


def test_requires_app_key_and_url():
    """BulkSender refuses to start without an app key or server URL."""
    with pytest.raises(ValueError):
        BulkSender(Config(url="https://stats.example.com"))
    with pytest.raises(ValueError):
        BulkSender(Config(app_key="KEY"))


def test_request_is_stamped_with_bulk_sdk_fields():
    """Bulk requests carry app_key, bulk sdk name, timestamp, hour and dow."""
    sender, _ = _make_sender()
    sender.add_request({"device_id": "d1", "begin_session": 1})
    request = sender._requests[0]
    assert request["app_key"] == "KEY"
    assert request["sdk_name"] == BULK_SDK_NAME
    assert "timestamp" in request and "hour" in request and "dow" in request


def test_request_without_device_id_is_skipped():
    """Entries without a device_id are skipped, the rest are kept."""
    sender, _ = _make_sender()
    sender.add_bulk_request([{"device_id": "d1"}, {"begin_session": 1}, {"device_id": "d2"}])
    assert [r["device_id"] for r in sender._requests] == ["d1", "d2"]


def test_requests_packed_into_bulk_size_chunks():
    """120 requests go out as bulk payloads of 50, 50 and 20."""
    sender, transport = _make_sender(bulk_size=50)
    sender.add_bulk_request([{"device_id": f"d{i}"} for i in range(120)])

    for _ in range(3):
        sender.tick()

    assert [len(_payload(p)) for p in transport.sent] == [50, 50, 20]
    assert all(p["app_key"] == "KEY" for p in transport.sent)
    assert _payload(transport.sent[0])[0]["device_id"] == "d0"
    assert sender.queue_size() == 0


def test_events_become_per_device_requests():
    """Per-device events turn into event requests of at most max_events."""
    sender, transport = _make_sender(max_events=10)
    for i in range(12):
        sender.add_event("d1", {"key": "click", "segmentation": {"i": i}})
    sender.add_event("d2", {"key": "open", "timestamp": 1_600_000_000})

    sender.tick()

    requests = _payload(transport.sent[0])
    by_device = {}
    for r in requests:
        by_device.setdefault(r["device_id"], []).append(r["events"])
    assert [len(batch) for batch in by_device["d1"]] == [10]
    assert by_device["d2"][0][0]["timestamp"] == 1_600_000_000

    sender.tick()
    assert len(_payload(transport.sent[1])[0]["events"]) == 2


def test_queue_size_counts_unpacked_data():
    """queue_size counts event batches, request chunks and pending payloads."""
    sender, _ = _make_sender(bulk_size=50, max_events=10)
    for i in range(25):
        sender.add_event("d1", {"key": "click"})
    sender.add_bulk_request([{"device_id": f"d{i}"} for i in range(120)])
    assert sender.queue_size() == 3 + 3


def test_on_empty_fires_after_three_idle_ticks():
    """on_empty fires on the third consecutive idle tick."""
    sender, _ = _make_sender()
    calls = []
    sender._on_empty = lambda: calls.append(1)

    sender.tick()
    sender.tick()
    assert calls == []
    sender.tick()
    assert calls == [1]


def test_activity_resets_idle_count():
    """Any packed data resets the idle tick counter."""
    sender, _ = _make_sender()
    calls = []
    sender._on_empty = lambda: calls.append(1)

    sender.tick()
    sender.tick()
    sender.add_request({"device_id": "d1"})
    sender.tick()
    sender.tick()
    sender.tick()
    assert calls == []


def test_session_seconds_split_into_beats():
    """150 seconds become beats of 60, 60 and 30 at cumulative offsets."""
    sender, _ = _make_sender()
    user = sender.add_user("d1")
    ts = 1_700_000_000

    user.begin_session({"_os": "Linux"}, seconds=150, timestamp=ts)

    requests = sender._requests
    assert requests[0]["begin_session"] == 1
    assert requests[0]["timestamp"] == ts
    assert requests[0]["metrics"] == {"_os": "Linux"}
    beats = [(r["session_duration"], r["timestamp"]) for r in requests[1:]]
    assert beats == [(60, ts + 60), (60, ts + 120), (30, ts + 150)]


def test_session_without_location_consent_clears_location():
    """Without location consent the session sends an empty location."""
    sender, _ = _make_sender()
    user = sender.add_user("d1", require_consent=True, country_code="LV", city="Riga")
    user.add_consent("sessions")

    user.begin_session()
    assert sender._requests[0]["location"] == ""

    user.add_consent("location")
    sender._requests.clear()
    user.begin_session()
    assert sender._requests[0]["country_code"] == "LV"
    assert "location" not in sender._requests[0]


def test_deferred_session_replays_on_consent():
    """A session blocked by consent is replayed once sessions are granted."""
    sender, _ = _make_sender()
    user = sender.add_user("d1", require_consent=True)
    user.begin_session(seconds=30)
    assert sender._requests == []

    user.add_consent("sessions")
    assert [("begin_session" in r) for r in sender._requests] == [True, False]


def test_report_view_and_rating():
    """Views and star ratings are sent as their internal events."""
    sender, _ = _make_sender()
    user = sender.add_user("d1")
    user.report_view("home", platform="web", duration=12, landing=True)
    user.report_rating(5, platform="web", app_version="1.2")

    view = sender._requests[0]["events"][0]
    assert view["key"] == VIEW_EVENT
    assert view["dur"] == 12
    assert view["segmentation"] == {"name": "home", "visit": 1, "segment": "web", "start": 1}
    rating = sender._requests[1]["events"][0]
    assert rating["key"] == RATING_EVENT
    assert rating["segmentation"]["rating"] == 5


def test_user_methods_chain():
    """Custom property methods chain and save as one user_details request."""
    sender, _ = _make_sender()
    user = sender.add_user("d1")
    result = (user.custom_set("plan", "pro")
              .custom_increment_by("score", 5)
              .custom_push_unique("tags", "beta")
              .custom_save())
    assert result is user
    details = sender._requests[0]["user_details"]
    assert details == {"custom": {
        "plan": "pro",
        "score": {"$inc": 5},
        "tags": {"$addToSet": ["beta"]},
    }}


def test_consent_changes_synced_as_request():
    """Staged consent is sent as a request for the user after the quiet window."""
    sender, _ = _make_sender()
    user = sender.add_user("d1", require_consent=True)
    user.add_consent(["events", "views"])

    sender.clock.t += 1.0
    sender._pack()

    consent = [r for r in _payload(sender.bulk_queue.items[0]) if "consent" in r]
    assert consent[0]["consent"] == {"events": True, "views": True}
    assert consent[0]["device_id"] == "d1"


def test_crash_requires_consent():
    """Crash reports need crashes consent."""
    sender, _ = _make_sender()
    user = sender.add_user("d1", require_consent=True)
    user.report_crash({"_error": "boom"})
    assert sender._requests == []
    user.add_consent("crashes").report_crash({"_error": "boom"}, timestamp=1_700_000_000)
    assert sender._requests[0]["crash"] == {"_error": "boom"}


class RecordingLock:
    def __init__(self):
        self.entered = 0

    def __enter__(self):
        self.entered += 1
        return self

    def __exit__(self, *exc):
        return False


def test_consent_changes_take_sender_lock():
    """Consent changes on a user are serialized with the heartbeat's packing."""
    sender, _ = _make_sender()
    user = sender.add_user("d1", require_consent=True)
    sender._lock = RecordingLock()

    user.add_consent("events").remove_consent("events").group_features({"all": ["events"]})

    assert sender._lock.entered == 3


def test_unserializable_bulk_data_is_skipped():
    """Requests and events that cannot be encoded never reach the packed payload."""
    sender, transport = _make_sender()
    sender.add_request({"device_id": "d1", "blob": object()})
    sender.add_event("d1", {"key": "bad", "segmentation": {"s": {1}}})
    sender.add_request({"device_id": "d2"})

    sender.tick()

    assert [r["device_id"] for r in _payload(transport.sent[0])] == ["d2"]
