"""Wall-clock helpers shared by the queue, batcher and session tracker."""
from __future__ import annotations

import threading
import time
from datetime import datetime


class Clock:
    """Source of time for one Beacon instance.

    millis() never returns the same value twice, so requests and events
    created within the same millisecond keep a stable order on the server.
    """

    def __init__(self) -> None:
        self._last_ms = 0
        self._lock = threading.Lock()

    def now(self) -> float:
        return time.time()

    def seconds(self) -> int:
        return int(self.now())

    def millis(self) -> int:
        ts = int(self.now() * 1000)
        with self._lock:
            if self._last_ms >= ts:
                self._last_ms += 1
            else:
                self._last_ms = ts
            return self._last_ms


def hour_dow(timestamp: int | float) -> tuple[int, int]:
    """Local hour and day of week (Sunday = 0) for a 10 or 13 digit timestamp."""
    ts = float(timestamp)
    if len(str(int(ts))) == 13:
        ts /= 1000.0
    dt = datetime.fromtimestamp(ts)
    return dt.hour, (dt.weekday() + 1) % 7


def is_valid_timestamp(timestamp) -> bool:
    """True for second (10 digit) or millisecond (13 digit) unix timestamps."""
    try:
        return len(str(int(timestamp))) in (10, 13)
    except (TypeError, ValueError):
        return False
