"""Tests for event fan-out and sequencing."""

from __future__ import annotations

import logging

from chatrelay.runtime.event_bus import EventBus, EventEmitter
from chatrelay.runtime.protocol import EventKind, UIEvent


def _event(kind: EventKind = EventKind.USER_MESSAGE_ADDED) -> UIEvent:
    return UIEvent(kind=kind, message_id="msg_1", turn_id="turn_1", payload={"text": "hi"})


def test_subscribers_receive_events_in_order():
    bus = EventBus()
    seen: list[str] = []
    bus.subscribe(lambda e: seen.append(f"a:{e.kind.value}"))
    bus.subscribe(lambda e: seen.append(f"b:{e.kind.value}"))

    bus.publish(_event())

    assert seen == ["a:user_message_added", "b:user_message_added"]


def test_kind_filter_and_unsubscribe():
    bus = EventBus()
    approvals: list[UIEvent] = []
    unsubscribe = bus.subscribe(approvals.append, kinds={EventKind.TOOL_APPROVAL_PROPOSED})

    bus.publish(_event())
    bus.publish(_event(EventKind.TOOL_APPROVAL_PROPOSED))
    unsubscribe()
    unsubscribe()
    bus.publish(_event(EventKind.TOOL_APPROVAL_PROPOSED))

    assert [e.kind for e in approvals] == [EventKind.TOOL_APPROVAL_PROPOSED]


def test_failing_subscriber_is_logged_and_skipped(caplog):
    bus = EventBus()
    seen: list[UIEvent] = []

    def boom(event: UIEvent) -> None:
        raise RuntimeError("render failed")

    bus.subscribe(boom)
    bus.subscribe(seen.append)

    with caplog.at_level(logging.ERROR, logger="chatrelay.runtime.event_bus"):
        bus.publish(_event())

    assert len(seen) == 1
    assert "Event subscriber failed" in caplog.text


def test_emitter_stamps_sequence_and_timestamp():
    bus = EventBus()
    seen: list[UIEvent] = []
    bus.subscribe(seen.append)
    emitter = EventEmitter(bus)

    first = emitter.emit(EventKind.USER_MESSAGE_ADDED, message_id="m", turn_id="t", payload={"text": "x"})
    second = emitter.emit(EventKind.ASSISTANT_RESPONSE_STARTED, message_id="m", turn_id="t")

    assert [e.sequence for e in seen] == [1, 2]
    assert seen == [first, second]
    assert second.payload == {}
    assert first.timestamp > 0
    assert first.to_dict() == {
        "kind": "user_message_added",
        "message_id": "m",
        "turn_id": "t",
        "payload": {"text": "x"},
        "sequence": 1,
        "timestamp": first.timestamp,
    }
    assert emitter.sink is bus
