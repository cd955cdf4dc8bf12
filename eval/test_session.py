"""Tests for session, timed-event and view duration accounting."""
from beacon.clock import Clock
from beacon.session import SessionTracker


class FakeClock(Clock):
    def __init__(self):
        super().__init__()
        self.t = 1_700_000_000.0

    def now(self) -> float:
        return self.t


def _make_tracker():
    clock = FakeClock()
    return SessionTracker(clock), clock


def test_begin_twice_is_noop():
    """A second begin while active is refused."""
    tracker, _ = _make_tracker()
    assert tracker.begin()
    assert not tracker.begin()


def test_extension_only_after_session_update():
    """Extension is due only after session_update seconds."""
    tracker, clock = _make_tracker()
    tracker.begin()
    clock.t += 60
    assert tracker.due_extension(60) is None
    clock.t += 1
    assert tracker.due_extension(60) == 61
    # beat was reset
    assert tracker.due_extension(60) is None


def test_no_extension_without_auto_extend():
    """Sessions without auto-extend are never due."""
    tracker, clock = _make_tracker()
    tracker.begin(auto_extend=False)
    clock.t += 600
    assert tracker.due_extension(60) is None


def test_end_reports_elapsed_or_override():
    """end returns elapsed seconds or the caller's override."""
    tracker, clock = _make_tracker()
    tracker.begin()
    clock.t += 42
    assert tracker.end() == 42
    assert not tracker.active
    assert tracker.end() is None

    tracker.begin()
    assert tracker.end(7) == 7


def test_paused_time_is_frozen():
    """Elapsed time does not grow while paused."""
    tracker, clock = _make_tracker()
    tracker.begin()
    clock.t += 10
    tracker.stop_time()
    clock.t += 100
    assert tracker.elapsed() == 10
    assert tracker.due_extension(5) is None

    tracker.start_time()
    clock.t += 5
    assert tracker.elapsed() == 15


def test_double_stop_time_keeps_first_offset():
    """A second stop_time keeps the offset from the first."""
    tracker, clock = _make_tracker()
    tracker.begin()
    clock.t += 10
    tracker.stop_time()
    clock.t += 50
    tracker.stop_time()
    tracker.start_time()
    assert tracker.elapsed() == 10


def test_timed_event_duration():
    """A timed event's duration is the seconds between start and end."""
    tracker, clock = _make_tracker()
    assert tracker.start_event("upload")
    assert not tracker.start_event("upload")
    clock.t += 3
    assert tracker.end_event("upload") == 3
    assert tracker.end_event("upload") is None


def test_end_event_without_start():
    """end_event for an unknown key returns None."""
    tracker, _ = _make_tracker()
    assert tracker.end_event("never") is None


def test_view_duration_excludes_paused_time():
    """View duration leaves out paused time."""
    tracker, clock = _make_tracker()
    tracker.open_view("home")
    clock.t += 4
    tracker.stop_time()
    clock.t += 30
    tracker.start_time()
    clock.t += 2
    assert tracker.close_view() == ("home", 6)
    assert tracker.close_view() is None
