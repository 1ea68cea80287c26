import enum
import queue
import ssl
import threading
import time
import paho.mqtt.client as mqtt
from loguru import logger

from ..config import BrokerConfig
from ..core.message import Message
from ..exceptions import ConnectError, PublishError, SubscribeError
from ..interfaces import IBrokerSession

CONNECT_POLL_INTERVAL = 0.5


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def broker_url(host: str, port: int, use_tls: bool) -> str:
    scheme = "mqtts" if use_tls else "mqtt"
    return f"{scheme}://{host}:{port}"


def create_tls_context() -> ssl.SSLContext:
    """Default CA verification, TLS 1.3 minimum, no legacy protocol negotiation."""
    context = ssl.create_default_context()
    context.minimum_version = ssl.TLSVersion.TLSv1_3
    return context


class MqttSession(IBrokerSession):
    """
    Handles the connection lifecycle of one MQTT broker.

    Reconnection after the initial connect is left to paho's network loop.
    Messages are put on the `messages` channel in arrival order, with no
    ordering guarantee across topics.
    """

    def __init__(
        self,
        config: BrokerConfig,
        name: str,
        ack_timeout: float = 10.0,
        client: mqtt.Client | None = None,
    ):
        self.config = config
        self.name = name
        self.url = broker_url(config.host, config.port, config.use_tls)
        self.ack_timeout = ack_timeout
        self.messages: "queue.Queue[Message]" = queue.Queue()

        self._state = ConnectionState.DISCONNECTED
        self._state_lock = threading.Lock()
        self._connected = threading.Event()
        self._disconnected = threading.Event()
        self._suback = threading.Condition()
        self._suback_results: dict[int, list] = {}
        self._loop_started = False

        self.client = client or mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2, client_id=config.client_id
        )
        self._configure_client()

    def _configure_client(self):
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_subscribe = self._on_subscribe
        self.client.on_message = self._on_message
        self.client.reconnect_delay_set(min_delay=1, max_delay=120)

        if self.config.use_tls:
            self.client.tls_set_context(create_tls_context())

        if self.config.has_credentials:
            self.client.username_pw_set(self.config.username, self.config.password)
        elif self.config.has_partial_credentials:
            logger.warning(
                f"{self.name}: username and password must both be set to authenticate. "
                "Connecting without credentials."
            )

    @property
    def state(self) -> ConnectionState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: ConnectionState):
        with self._state_lock:
            self._state = state

    # --- Lifecycle ---

    def connect(self) -> None:
        logger.info(f"Connecting to {self.name} MQTT broker: {self.url}")
        self._set_state(ConnectionState.CONNECTING)
        self._disconnected.clear()
        try:
            self.client.connect(
                self.config.host, self.config.port, self.config.keepalive
            )
        except OSError as e:
            # gaierror, ConnectionRefusedError, TimeoutError and SSLError
            self._set_state(ConnectionState.DISCONNECTED)
            logger.critical(
                f"{self.name} MQTT connection failed: Could not reach broker at {self.url}. "
                f"Error: {e}. Check configuration or broker status."
            )
            raise ConnectError(f"{self.name} MQTT connection failed: {e}") from e

        self.client.loop_start()
        self._loop_started = True

    def wait_until_connected(self, timeout: float | None = None) -> None:
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self._connected.wait(CONNECT_POLL_INTERVAL):
            if deadline is not None and time.monotonic() >= deadline:
                raise ConnectError(
                    f"{self.name} MQTT broker at {self.url} did not accept the "
                    f"connection within {timeout:g}s."
                )
            logger.info(f"Waiting for {self.name} MQTT connection to establish...")
        logger.success(f"Connected to {self.name} MQTT broker")

    def is_connected(self) -> bool:
        return self._connected.is_set()

    def disconnect(self, grace_ms: int = 250) -> None:
        logger.info(f"{self.name}: Disconnecting from broker...")
        try:
            if self.is_connected():
                self.client.disconnect()
                if not self._disconnected.wait(grace_ms / 1000):
                    logger.warning(
                        f"{self.name}: Broker did not confirm disconnection within {grace_ms}ms."
                    )
            if self._loop_started:
                self.client.loop_stop()
                self._loop_started = False
        except Exception as e:
            logger.warning(f"{self.name}: Exception during disconnection: {e}")
        finally:
            self._connected.clear()
            self._set_state(ConnectionState.DISCONNECTED)

    # --- Operations ---

    def subscribe(self, topic: str, qos: int) -> None:
        result, mid = self.client.subscribe(topic, qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise SubscribeError(
                f"Subscribe request for '{topic}' was rejected: {mqtt.error_string(result)}"
            )

        with self._suback:
            acknowledged = self._suback.wait_for(
                lambda: mid in self._suback_results, timeout=self.ack_timeout
            )
            reason_codes = self._suback_results.pop(mid, [])

        if not acknowledged:
            raise SubscribeError(
                f"No subscription acknowledgment for '{topic}' within {self.ack_timeout:g}s."
            )
        failures = [rc for rc in reason_codes if rc.is_failure]
        if failures:
            raise SubscribeError(f"Broker refused subscription to '{topic}': {failures[0]}")

    def publish(self, topic: str, qos: int, payload: bytes) -> None:
        """
        Publishes and blocks until the broker acknowledges. While the client
        is reconnecting, waits up to the acknowledgment timeout for the
        session to come back before publishing.
        """
        if not self._connected.wait(self.ack_timeout):
            raise PublishError(
                f"{self.name} broker not connected; could not publish to '{topic}' "
                f"within {self.ack_timeout:g}s."
            )

        info = self.client.publish(topic, payload, qos=qos, retain=False)
        if info.rc == mqtt.MQTT_ERR_NO_CONN and qos > 0:
            # paho keeps QoS 1/2 messages queued and sends them after reconnecting
            logger.warning(
                f"{self.name}: connection lost while publishing to '{topic}'. "
                "Message queued for delivery after reconnect."
            )
            return
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise PublishError(
                f"Publish to '{topic}' was rejected: {mqtt.error_string(info.rc)}"
            )
        try:
            info.wait_for_publish(timeout=self.ack_timeout)
        except (RuntimeError, ValueError) as e:
            raise PublishError(f"Publish to '{topic}' failed: {e}") from e
        if not info.is_published():
            raise PublishError(
                f"No publish acknowledgment for '{topic}' within {self.ack_timeout:g}s."
            )

    # --- Callbacks ---

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        if reason_code == 0:
            self._set_state(ConnectionState.CONNECTED)
            self._disconnected.clear()
            self._connected.set()
            logger.debug(f"{self.name}: MQTT session established with {self.url}")
        else:
            logger.warning(
                f"{self.name}: MQTT connection failed with code: {reason_code}. "
                "The client will try again automatically."
            )

    def _on_disconnect(self, client, userdata, flags, reason_code, properties):
        self._connected.clear()
        self._disconnected.set()
        if reason_code == 0:
            self._set_state(ConnectionState.DISCONNECTED)
            logger.info(f"{self.name}: MQTT client disconnected successfully.")
        else:
            self._set_state(ConnectionState.CONNECTING)
            logger.warning(
                f"{self.name}: Unexpected MQTT disconnection. Reason code: {reason_code}"
            )

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties):
        with self._suback:
            self._suback_results[mid] = list(reason_code_list)
            self._suback.notify_all()

    def _on_message(self, client, userdata, msg):
        self.messages.put(Message(topic=msg.topic, payload=msg.payload))
