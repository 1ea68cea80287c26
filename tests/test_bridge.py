from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor

import pytest
from loguru import logger

from conftest import FakeSession, make_config
from owntracks2ha.bridge import SUBSCRIBE_ATTEMPTS, BridgeController, BridgeState
from owntracks2ha.core.activity import ActivityClock
from owntracks2ha.core.message import Message
from owntracks2ha.exceptions import ConnectError, PublishError

VALID = b'{"acc":5,"alt":120,"batt":80,"lat":37.5,"lon":127.0}'


class FakeClock:
    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def bridge(source, target, fake_sleep):
    return BridgeController(make_config(), source, target, sleep=fake_sleep)


# ===========================================================================
# Message handling
# ===========================================================================


class TestHandleMessage:
    def test_forwards_example_payload(self, bridge, target):
        assert bridge.handle_message(Message("owntracks/u/d", VALID)) is True
        assert target.published == [
            (
                "home/u/d",
                1,
                b'{"gps_accuracy":5,"altitude":120,"battery_level":80,'
                b'"latitude":37.5,"longitude":127.0}',
            )
        ]

    @pytest.mark.parametrize(
        "payload",
        [
            b'{"acc":5,"alt":120,"batt":80,"lat":0,"lon":127.0}',
            b'{"acc":5,"alt":120,"batt":80,"lat":37.5,"lon":0.0}',
            b'{"acc":99,"alt":9999,"batt":1,"lat":0,"lon":0}',
        ],
    )
    def test_zero_coordinates_are_never_published(self, bridge, target, payload):
        assert bridge.handle_message(Message("owntracks/u/d", payload)) is False
        assert target.published == []

    def test_unmapped_topic_is_dropped(self, bridge, target):
        assert bridge.handle_message(Message("owntracks/other/d", VALID)) is False
        assert target.published == []

    def test_decode_error_is_dropped(self, bridge, target):
        assert bridge.handle_message(Message("owntracks/u/d", b"{broken")) is False
        assert target.published == []

    def test_publish_error_does_not_propagate(self, bridge, target):
        target.publish_error = PublishError("no ack")
        assert bridge.handle_message(Message("owntracks/u/d", VALID)) is False

    def test_unexpected_error_does_not_propagate(self, bridge, target):
        target.publish_error = RuntimeError("boom")
        assert bridge.handle_message(Message("owntracks/u/d", VALID)) is False

    def test_processing_continues_after_a_failure(self, bridge, target):
        bridge.handle_message(Message("owntracks/u/d", b"garbage"))
        bridge.handle_message(Message("owntracks/u/d", VALID))
        assert len(target.published) == 1

    def test_any_arrival_counts_as_activity(self, source, target):
        clock = FakeClock()
        bridge = BridgeController(make_config(), source, target, activity=ActivityClock(clock))
        clock.now = 500.0
        bridge.handle_message(Message("owntracks/unmapped", b"garbage"))
        assert bridge.activity.last_activity == 500.0

    def test_stats_track_outcomes(self, bridge):
        bridge.handle_message(Message("owntracks/u/d", VALID))
        bridge.handle_message(Message("owntracks/u/d", b"nope"))
        assert bridge.stats == {"received": 2, "forwarded": 1, "dropped": 1}

    def test_concurrent_handlers_keep_stats_consistent(self, source, target):
        config = make_config(max_workers=4)
        bridge = BridgeController(config, source, target)
        before = bridge.activity.last_activity
        messages = [
            Message("owntracks/u/d", VALID if i % 3 else b"garbage") for i in range(200)
        ]

        with ThreadPoolExecutor(max_workers=config.max_workers) as pool:
            results = list(pool.map(bridge.handle_message, messages))

        forwarded = sum(results)
        assert forwarded == 133
        assert bridge.stats == {"received": 200, "forwarded": 133, "dropped": 67}
        assert len(target.published) == 133
        assert bridge.activity.last_activity >= before


# ===========================================================================
# Subscribe retry
# ===========================================================================


class TestSubscribe:
    def test_succeeds_on_fifth_attempt(self, bridge, source, sleeps):
        source.connected = True
        source.subscribe_failures["owntracks/u/d"] = 4

        assert bridge.subscribe_all() == {"owntracks/u/d"}
        assert source.subscribe_attempts["owntracks/u/d"] == SUBSCRIBE_ATTEMPTS == 5
        assert sleeps == [1.0, 1.0, 1.0, 1.0]

    def test_gives_up_after_five_attempts_and_continues(self, source, target, fake_sleep):
        config = make_config(mappings={"a/1": "b/1", "a/2": "b/2", "a/3": "b/3"})
        bridge = BridgeController(config, source, target, sleep=fake_sleep)
        source.connected = True
        source.subscribe_failures["a/2"] = 100

        assert bridge.subscribe_all() == {"a/1", "a/3"}
        assert source.subscribe_attempts == {"a/1": 1, "a/2": 5, "a/3": 1}
        assert "a/2" not in source.subscribed

    def test_waiting_for_connection_does_not_consume_attempts(self, bridge, source, sleeps):
        source.connected = True
        source.connected_after_polls = 7

        assert bridge.subscribe_all() == {"owntracks/u/d"}
        assert source.subscribe_attempts["owntracks/u/d"] == 1
        assert len(sleeps) == 7

    def test_stop_cuts_retries_short(self, source, target):
        def stop_during_backoff(_):
            bridge._stop_event.set()

        bridge = BridgeController(make_config(), source, target, sleep=stop_during_backoff)
        source.connected = True
        source.subscribe_failures["owntracks/u/d"] = 100
        messages = []
        sink = logger.add(messages.append, level="ERROR", format="{message}")
        try:
            assert bridge.subscribe_all() == set()
        finally:
            logger.remove(sink)

        assert source.subscribe_attempts["owntracks/u/d"] == 2
        assert any("after 2 attempts" in m for m in messages)


# ===========================================================================
# Lifecycle
# ===========================================================================


class TestLifecycle:
    def test_start_reaches_running_and_stop_terminates(self, bridge, source, target):
        bridge.start()
        try:
            assert bridge.state is BridgeState.RUNNING
            assert source.subscribed == {"owntracks/u/d"}
        finally:
            bridge.stop()

        assert bridge.state is BridgeState.TERMINATED
        assert source.disconnect_calls == [250]
        assert target.disconnect_calls == [250]

    def test_source_connect_failure_is_fatal(self, bridge, source, target):
        source.connect_error = ConnectError("unreachable")
        with pytest.raises(ConnectError):
            bridge.start()
        assert bridge.state is BridgeState.CONNECTING_SOURCE
        assert target.connected is False

    def test_target_connect_failure_is_fatal(self, bridge, target):
        target.connect_error = ConnectError("unreachable")
        with pytest.raises(ConnectError):
            bridge.start()
        assert bridge.state is BridgeState.CONNECTING_TARGET

    def test_messages_on_channel_are_forwarded(self, bridge, source, target):
        bridge.start()
        try:
            source.deliver("owntracks/u/d", VALID)
            deadline = time.monotonic() + 5
            while not target.published and time.monotonic() < deadline:
                time.sleep(0.01)
        finally:
            bridge.stop()

        assert [topic for topic, _, _ in target.published] == ["home/u/d"]

    def test_stop_is_idempotent(self, bridge, source):
        bridge.start()
        bridge.stop()
        bridge.stop()
        assert source.disconnect_calls == [250]

    def test_stop_drops_queued_backlog(self, bridge, source, target):
        target.publish_delay = 0.05
        bridge.start()
        for _ in range(100):
            source.deliver("owntracks/u/d", VALID)
        time.sleep(0.1)
        bridge.stop()

        assert bridge.stats["dropped"] > 0
        assert bridge.stats["forwarded"] + bridge.stats["dropped"] == 100
        assert bridge.stats["received"] == bridge.stats["forwarded"]
        assert source.messages.empty()


def test_fake_session_is_a_broker_session():
    from owntracks2ha.interfaces import IBrokerSession

    assert isinstance(FakeSession(), IBrokerSession)
