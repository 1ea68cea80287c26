import queue
from abc import ABC, abstractmethod

from .core.message import Message


class IConnectable(ABC):
    """Defines a contract for components that have a connect/disconnect lifecycle."""

    @abstractmethod
    def connect(self) -> None:
        """Establishes the connection to the endpoint. Raises ConnectError on failure."""
        raise NotImplementedError

    @abstractmethod
    def wait_until_connected(self, timeout: float | None = None) -> None:
        """Blocks until the connection is reported as established."""
        raise NotImplementedError

    @abstractmethod
    def is_connected(self) -> bool:
        """Non-blocking connection state query."""
        raise NotImplementedError

    @abstractmethod
    def disconnect(self, grace_ms: int = 250) -> None:
        """Best-effort graceful close, waiting at most grace_ms."""
        raise NotImplementedError


class IBrokerSession(IConnectable):
    """
    Defines a contract for one session with a publish/subscribe broker.
    Inbound messages are delivered on the `messages` channel.
    """

    messages: "queue.Queue[Message]"

    @abstractmethod
    def subscribe(self, topic: str, qos: int) -> None:
        """Subscribes to a topic. Raises SubscribeError on failure."""
        raise NotImplementedError

    @abstractmethod
    def publish(self, topic: str, qos: int, payload: bytes) -> None:
        """
        Publishes and waits for the broker acknowledgment. Raises PublishError on failure.
        A QoS 1/2 message the client keeps queued across a reconnect is not a failure.
        """
        raise NotImplementedError
