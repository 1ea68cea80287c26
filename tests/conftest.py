from __future__ import annotations

import queue
import threading
import time

import pytest

from owntracks2ha.config import BridgeConfig
from owntracks2ha.core.message import Message
from owntracks2ha.exceptions import ConnectError, SubscribeError
from owntracks2ha.interfaces import IBrokerSession


class FakeSession(IBrokerSession):
    """In-memory broker session that records every call."""

    def __init__(self, name: str = "fake"):
        self.name = name
        self.messages: queue.Queue[Message] = queue.Queue()
        self.connected = False
        self.connect_error: Exception | None = None
        self.subscribe_failures: dict[str, int] = {}
        self.subscribe_attempts: dict[str, int] = {}
        self.subscribed: set[str] = set()
        self.published: list[tuple[str, int, bytes]] = []
        self.publish_error: Exception | None = None
        self.publish_delay = 0.0
        self._publish_lock = threading.Lock()
        self.disconnect_calls: list[int] = []
        # number of is_connected() calls that report False before connecting
        self.connected_after_polls = 0

    def connect(self) -> None:
        if self.connect_error:
            raise self.connect_error
        self.connected = True

    def wait_until_connected(self, timeout: float | None = None) -> None:
        if not self.connected:
            raise ConnectError(f"{self.name} never connected")

    def is_connected(self) -> bool:
        if self.connected_after_polls > 0:
            self.connected_after_polls -= 1
            return False
        return self.connected

    def subscribe(self, topic: str, qos: int) -> None:
        self.subscribe_attempts[topic] = self.subscribe_attempts.get(topic, 0) + 1
        remaining = self.subscribe_failures.get(topic, 0)
        if remaining > 0:
            self.subscribe_failures[topic] = remaining - 1
            raise SubscribeError(f"refused {topic}")
        self.subscribed.add(topic)

    def publish(self, topic: str, qos: int, payload: bytes) -> None:
        if self.publish_delay:
            time.sleep(self.publish_delay)
        if self.publish_error:
            raise self.publish_error
        with self._publish_lock:
            self.published.append((topic, qos, payload))

    def disconnect(self, grace_ms: int = 250) -> None:
        self.disconnect_calls.append(grace_ms)
        self.connected = False

    def deliver(self, topic: str, payload: bytes) -> None:
        self.messages.put(Message(topic=topic, payload=payload))


def make_config(**overrides) -> BridgeConfig:
    raw = {
        "source_broker": "source.example.org",
        "target_broker": "target.example.org",
        "mappings": {"owntracks/u/d": "home/u/d"},
        "qos": 1,
    }
    raw.update(overrides)
    return BridgeConfig.from_dict(raw)


@pytest.fixture
def source() -> FakeSession:
    return FakeSession("source")


@pytest.fixture
def target() -> FakeSession:
    return FakeSession("target")


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def fake_sleep(sleeps):
    return sleeps.append

