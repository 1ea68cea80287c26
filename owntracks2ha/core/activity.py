import threading
import time
from typing import Callable


class ActivityClock:
    """
    Thread-safe record of the last time traffic was seen on the source broker.
    Written by concurrent message handlers and read by the idle watcher.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._last_activity = clock()

    def touch(self) -> None:
        now = self._clock()
        with self._lock:
            self._last_activity = now

    @property
    def last_activity(self) -> float:
        with self._lock:
            return self._last_activity

    def idle_seconds(self) -> float:
        now = self._clock()
        with self._lock:
            return now - self._last_activity
