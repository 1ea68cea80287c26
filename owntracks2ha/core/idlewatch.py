import threading
from typing import Callable
from loguru import logger

from .activity import ActivityClock


class IdleWatcher:
    """
    Periodically checks the activity clock and fires a callback once the
    source broker has been silent for longer than the configured threshold.
    The timer chain stops itself after firing.
    """

    def __init__(
        self,
        activity: ActivityClock,
        idle_timeout_seconds: float,
        on_idle: Callable[[], None],
        poll_interval_seconds: float = 5.0,
    ):
        self._activity = activity
        self._idle_timeout = idle_timeout_seconds
        self._on_idle = on_idle
        self._poll_interval = poll_interval_seconds
        self._timer: threading.Timer | None = None
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self.fired = False

    def start(self):
        """Starts the idle watch timer."""
        logger.debug(
            f"Starting idle watcher: timeout {self._idle_timeout}s, "
            f"poll interval {self._poll_interval}s."
        )
        self._stop_event.clear()
        self._schedule_next_check()

    def stop(self):
        """Stops the idle watch timer."""
        self._stop_event.set()
        with self._lock:
            if self._timer:
                self._timer.cancel()
                self._timer = None

    def _schedule_next_check(self):
        with self._lock:
            if self._stop_event.is_set():
                return
            self._timer = threading.Timer(self._poll_interval, self._run_check)
            self._timer.daemon = True
            self._timer.start()

    def _run_check(self):
        idle = self._activity.idle_seconds()
        if idle > self._idle_timeout:
            logger.info(
                f"No messages received for {self._idle_timeout:g} seconds. Exiting."
            )
            self.fired = True
            self._stop_event.set()
            try:
                self._on_idle()
            except Exception:
                logger.exception("Idle callback raised an unexpected error.")
            return

        logger.debug(f"Idle check passed ({idle:.1f}s since last activity).")
        self._schedule_next_check()
