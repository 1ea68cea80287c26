import enum
import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable
from loguru import logger
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_when_event_set,
    wait_fixed,
)

from .config import BridgeConfig
from .core.activity import ActivityClock
from .core.message import Message
from .core.transform import encode_target, pretty, transform_payload
from .exceptions import DecodeError, InvalidRecordError, PublishError, SubscribeError
from .interfaces import IBrokerSession
from .routing.router import TopicRouter

SUBSCRIBE_ATTEMPTS = 5
SUBSCRIBE_RETRY_DELAY = 1.0
DISPATCH_POLL_INTERVAL = 0.5


class BridgeState(enum.Enum):
    INIT = "init"
    CONNECTING_SOURCE = "connecting_source"
    CONNECTING_TARGET = "connecting_target"
    SUBSCRIBING = "subscribing"
    RUNNING = "running"
    DRAINING = "draining"
    TERMINATED = "terminated"


class BridgeController:
    """
    Owns the source and target sessions and forwards every mapped message
    from one to the other after running it through the payload transform.
    """

    def __init__(
        self,
        config: BridgeConfig,
        source: IBrokerSession,
        target: IBrokerSession,
        activity: ActivityClock | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.source = source
        self.target = target
        self.router = TopicRouter(config.mappings)
        self.activity = activity or ActivityClock()
        self.activity.touch()

        self._sleep = sleep
        self._state = BridgeState.INIT
        self._state_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._dispatcher: threading.Thread | None = None
        self._executor: ThreadPoolExecutor | None = None

        self._stats_lock = threading.Lock()
        self.stats = {"received": 0, "forwarded": 0, "dropped": 0}
        self._abandoned = 0

    @property
    def state(self) -> BridgeState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: BridgeState):
        with self._state_lock:
            self._state = state
        logger.debug(f"Bridge state -> {state.name}")

    def _count(self, key: str):
        with self._stats_lock:
            self.stats[key] += 1

    def _abandon(self):
        with self._stats_lock:
            self.stats["dropped"] += 1
            self._abandoned += 1

    # --- Startup ---

    def start(self) -> None:
        """
        Connects both brokers, subscribes to every mapped source topic and
        starts dispatching messages.

        Raises:
            ConnectError: if either broker cannot be reached. This is fatal.
        """
        logger.info("Starting the Bridge...")
        timeout = self.config.connect_timeout_seconds

        self._set_state(BridgeState.CONNECTING_SOURCE)
        self.source.connect()
        self.source.wait_until_connected(timeout)

        self._set_state(BridgeState.CONNECTING_TARGET)
        self.target.connect()
        self.target.wait_until_connected(timeout)

        self._set_state(BridgeState.SUBSCRIBING)
        subscribed = self.subscribe_all()
        logger.info(f"Subscribed to {len(subscribed)} of {len(self.router)} topics.")

        self.activity.touch()
        self._start_dispatcher()
        self._set_state(BridgeState.RUNNING)
        logger.success("Bridge is running.")

    def subscribe_all(self) -> set[str]:
        """Subscribes to every mapped source topic. A failing topic never blocks the rest."""
        subscribed = set()
        for topic in self.router.source_topics:
            if self._subscribe_with_retry(topic):
                subscribed.add(topic)
        return subscribed

    def _subscribe_with_retry(self, topic: str) -> bool:
        logger.info(f"Subscribing to topic: {topic}")
        retrier = Retrying(
            stop=stop_after_attempt(SUBSCRIBE_ATTEMPTS) | stop_when_event_set(self._stop_event),
            wait=wait_fixed(SUBSCRIBE_RETRY_DELAY),
            retry=retry_if_exception_type(SubscribeError),
            before_sleep=self._log_subscribe_retry,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            retrier(self._subscribe_once, topic)
        except SubscribeError as e:
            attempts = retrier.statistics.get("attempt_number", SUBSCRIBE_ATTEMPTS)
            logger.error(f"Giving up on topic {topic} after {attempts} attempts: {e}")
            return False

        logger.success(f"Successfully subscribed to topic: {topic}")
        return True

    def _subscribe_once(self, topic: str) -> None:
        # Waiting for the session does not use up an attempt.
        while not self.source.is_connected():
            if self._stop_event.is_set():
                raise SubscribeError("Bridge is stopping.")
            logger.info(f"Client not connected yet. Waiting to subscribe: {topic}")
            self._sleep(SUBSCRIBE_RETRY_DELAY)
        self.source.subscribe(topic, self.config.qos)

    @staticmethod
    def _log_subscribe_retry(retry_state: RetryCallState):
        topic = retry_state.args[0]
        logger.warning(
            f"Subscription attempt {retry_state.attempt_number} failed for topic {topic}: "
            f"{retry_state.outcome.exception()}"
        )

    # --- Message pipeline ---

    def _start_dispatcher(self):
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.max_workers, thread_name_prefix="handler"
        )
        self._dispatcher = threading.Thread(
            target=self._dispatch_loop, name="dispatcher", daemon=True
        )
        self._dispatcher.start()

    def _dispatch_loop(self):
        """Drains the source channel and hands each message to the worker pool."""
        while not self._stop_event.is_set():
            try:
                message: Message = self.source.messages.get(timeout=DISPATCH_POLL_INTERVAL)
            except queue.Empty:
                continue
            try:
                future = self._executor.submit(self.handle_message, message)
                future.add_done_callback(self._on_handler_done)
            except RuntimeError:
                self._abandon()
                logger.warning(f"Dropping message from {message.topic}: bridge is shutting down.")
                return

    def _on_handler_done(self, future: Future):
        if future.cancelled():
            self._abandon()

    def _discard_undispatched(self):
        while True:
            try:
                self.source.messages.get_nowait()
            except queue.Empty:
                return
            self._abandon()

    def handle_message(self, message: Message) -> bool:
        """
        Transforms one inbound message and publishes it to its mapped topic.
        Returns True if the message was forwarded. Never raises.
        """
        self.activity.touch()
        self._count("received")
        logger.info(
            f"Received message from source topic: {message.topic}, payload: {message.payload_text()}"
        )
        try:
            forwarded = self._forward(message)
        except Exception:
            logger.exception(f"An unexpected error occurred while handling a message from {message.topic}.")
            forwarded = False

        self._count("forwarded" if forwarded else "dropped")
        return forwarded

    def _forward(self, message: Message) -> bool:
        try:
            source_record, target_record = transform_payload(message.payload)
        except DecodeError as e:
            logger.error(f"Error parsing JSON: {e}")
            return False
        except InvalidRecordError as e:
            logger.warning(str(e))
            return False

        target_topic = self.router.get_target_topic(message.topic)
        if target_topic is None:
            return False

        if self.config.debug:
            logger.debug(f"[DEBUG] Original data from {message.topic}:\n{pretty(source_record)}")
            logger.debug(f"[DEBUG] Converted data to {target_topic}:\n{pretty(target_record)}")

        payload = encode_target(target_record)
        try:
            self.target.publish(target_topic, self.config.qos, payload)
        except PublishError as e:
            logger.error(f"Failed to publish message to {target_topic}: {e}")
            return False

        logger.success(f"Successfully published to {target_topic}: {payload.decode('utf-8')}")
        return True

    # --- Shutdown ---

    def stop(self, grace_ms: int = 250) -> None:
        """
        Stops dispatching, lets the handlers already running finish and
        disconnects both brokers. Queued messages that no handler picked up
        yet are dropped.
        """
        with self._state_lock:
            if self._state in (BridgeState.DRAINING, BridgeState.TERMINATED):
                return
            self._state = BridgeState.DRAINING

        logger.info("Shutting down the bridge...")
        self._stop_event.set()

        if self._dispatcher:
            self._dispatcher.join(timeout=DISPATCH_POLL_INTERVAL * 4)
        if self._executor:
            self._executor.shutdown(wait=True, cancel_futures=True)

        self._discard_undispatched()
        with self._stats_lock:
            abandoned = self._abandoned
        if abandoned:
            logger.warning(f"Dropped {abandoned} queued messages during shutdown.")

        self.source.disconnect(grace_ms)
        self.target.disconnect(grace_ms)

        self._set_state(BridgeState.TERMINATED)
        with self._stats_lock:
            stats = dict(self.stats)
        logger.success(
            f"Bridge shut down successfully. Received {stats['received']}, "
            f"forwarded {stats['forwarded']}, dropped {stats['dropped']}."
        )
