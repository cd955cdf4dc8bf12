"""Session liveness, timed events and current-view duration accounting.

The tracker only keeps state and does the arithmetic; the Beacon decides
what to queue from the numbers it returns. All durations are whole seconds.
"""
from __future__ import annotations

import logging

from beacon.clock import Clock
from beacon.models import SessionState

logger = logging.getLogger(__name__)


class SessionTracker:
    def __init__(self, clock: Clock | None = None) -> None:
        self.clock = clock or Clock()
        self.state = SessionState()
        self.timed_events: dict[str, int] = {}
        self.current_view: str | None = None
        self._view_start = 0
        self._view_stored = 0

    @property
    def active(self) -> bool:
        return self.state.started

    @property
    def paused(self) -> bool:
        return not self.state.track_time

    def begin(self, auto_extend: bool = True) -> bool:
        """Mark the session started. False when one is already running."""
        if self.state.started:
            return False
        self.state.started = True
        self.state.auto_extend = auto_extend
        self.state.last_beat = self.clock.seconds()
        logger.debug("Session started")
        return True

    def elapsed(self) -> int:
        """Seconds since the last beat, frozen while time tracking is paused."""
        if self.paused:
            return self.state.stored_duration
        return self.clock.seconds() - self.state.last_beat

    def due_extension(self, session_update: int) -> int | None:
        """Seconds to report if the session should be extended now, else None."""
        s = self.state
        if not (s.started and s.auto_extend and s.track_time):
            return None
        now = self.clock.seconds()
        elapsed = now - s.last_beat
        if elapsed <= session_update:
            return None
        s.last_beat = now
        return elapsed

    def end(self, seconds: int | None = None) -> int | None:
        """Close the session and return its unreported duration."""
        if not self.state.started:
            return None
        duration = self.elapsed() if seconds is None else seconds
        self.state.started = False
        logger.debug("Ending session after %ss", duration)
        return duration

    # ── Pausing ─────────────────────────────────────────────────────

    def stop_time(self) -> None:
        if self.paused:
            return
        now = self.clock.seconds()
        self.state.track_time = False
        self.state.stored_duration = now - self.state.last_beat
        self._view_stored = now - self._view_start

    def start_time(self) -> None:
        if not self.paused:
            return
        now = self.clock.seconds()
        self.state.track_time = True
        self.state.last_beat = now - self.state.stored_duration
        self._view_start = now - self._view_stored
        self._view_stored = 0

    # ── Timed events ────────────────────────────────────────────────

    def start_event(self, key: str) -> bool:
        if key in self.timed_events:
            logger.debug("Timed event with key %s already started", key)
            return False
        self.timed_events[key] = self.clock.seconds()
        return True

    def end_event(self, key: str) -> int | None:
        """Duration of a timed event, or None when it was never started."""
        started = self.timed_events.pop(key, None)
        if started is None:
            logger.debug("Timed event with key %s was not started", key)
            return None
        return self.clock.seconds() - started

    def clear_timed_events(self) -> None:
        self.timed_events = {}

    # ── Views ───────────────────────────────────────────────────────

    def open_view(self, name: str) -> None:
        self.current_view = name
        self._view_start = self.clock.seconds()
        self._view_stored = 0

    def close_view(self) -> tuple[str, int] | None:
        """Forget the current view and return (name, seconds spent on it)."""
        if self.current_view is None:
            return None
        name = self.current_view
        if self.paused:
            duration = self._view_stored
        else:
            duration = self.clock.seconds() - self._view_start
        self.current_view = None
        return name, duration
