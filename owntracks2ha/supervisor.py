import signal
import threading
from loguru import logger

from .bridge import BridgeController
from .core.idlewatch import IdleWatcher
from .exceptions import ConnectError

EXIT_OK = 0
EXIT_FAILURE = 1

ONCE_SETTLE_SECONDS = 5.0
IDLE_POLL_SECONDS = 5.0
DISCONNECT_GRACE_MS = 250


class LifecycleSupervisor:
    """
    Decides when the bridge should terminate.

    - daemon: run until a signal or the idle watcher requests a stop.
    - once: give in-flight messages a settle interval, then stop.
    - idle-exit: stop once no traffic was seen for the idle threshold.
      Combines with either run mode.
    """

    def __init__(
        self,
        bridge: BridgeController,
        settle_seconds: float = ONCE_SETTLE_SECONDS,
        idle_poll_seconds: float = IDLE_POLL_SECONDS,
        handle_signals: bool = False,
    ):
        self.bridge = bridge
        self.config = bridge.config
        self.settle_seconds = settle_seconds
        self.idle_poll_seconds = idle_poll_seconds
        self.handle_signals = handle_signals
        self._stop_requested = threading.Event()
        self._idle_watcher: IdleWatcher | None = None

    def request_stop(self, reason: str = "Stop requested") -> None:
        if not self._stop_requested.is_set():
            logger.info(f"{reason}. Shutting down...")
        self._stop_requested.set()

    def install_signal_handlers(self) -> None:
        def _on_signal(signum, frame):
            self.request_stop(f"Received {signal.Signals(signum).name}")

        signal.signal(signal.SIGTERM, _on_signal)
        signal.signal(signal.SIGINT, _on_signal)

    def run(self) -> int:
        """Starts the bridge, blocks according to the run mode and returns the exit code."""
        try:
            self.bridge.start()
        except ConnectError as e:
            logger.critical(f"Fatal startup failure: {e}")
            self.bridge.stop(DISCONNECT_GRACE_MS)
            return EXIT_FAILURE
        except KeyboardInterrupt:
            logger.info("Keyboard interruption detected during startup. Shutting down...")
            self.bridge.stop(DISCONNECT_GRACE_MS)
            return EXIT_OK

        # Default SIGINT handling stays active while connecting.
        if self.handle_signals:
            self.install_signal_handlers()

        if self.config.idle_exit_enabled:
            self._idle_watcher = IdleWatcher(
                self.bridge.activity,
                self.config.idle_timeout_seconds,
                on_idle=lambda: self.request_stop("Idle timeout reached"),
                poll_interval_seconds=self.idle_poll_seconds,
            )
            self._idle_watcher.start()

        try:
            if self.config.run_mode == "once":
                self._wait_once()
            else:
                logger.info("Waiting for messages (daemon mode)...")
                while not self._stop_requested.wait(1.0):
                    pass
        except KeyboardInterrupt:
            logger.info("Keyboard interruption detected. Shutting down...")
        finally:
            if self._idle_watcher:
                self._idle_watcher.stop()
            self.bridge.stop(DISCONNECT_GRACE_MS)

        return EXIT_OK

    def _wait_once(self):
        logger.info("Run mode is 'once'. Waiting for a single message...")
        if not self._stop_requested.wait(self.settle_seconds):
            logger.info("Exiting after processing initial messages.")
