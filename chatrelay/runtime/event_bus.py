from __future__ import annotations

import logging
import threading
from typing import Any, Callable

from .ids import now_ts_ms
from .protocol import EventKind, EventSink, UIEvent

logger = logging.getLogger(__name__)

Subscriber = Callable[[UIEvent], None]


class EventBus:
    """
    In-process fan-out of UI events.

    Subscribers are called synchronously in publish order. A subscriber that raises is
    logged and skipped; it never breaks the publishing turn.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[tuple[Subscriber, frozenset[EventKind] | None]] = []

    def subscribe(self, callback: Subscriber, *, kinds: set[EventKind] | None = None) -> Callable[[], None]:
        entry = (callback, frozenset(kinds) if kinds else None)
        with self._lock:
            self._subscribers.append(entry)

        def _unsubscribe() -> None:
            with self._lock:
                try:
                    self._subscribers.remove(entry)
                except ValueError:
                    pass

        return _unsubscribe

    def publish(self, event: UIEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback, kinds in subscribers:
            if kinds is not None and event.kind not in kinds:
                continue
            try:
                callback(event)
            except Exception:
                logger.exception("Event subscriber failed for %s", event.kind.value)


class EventEmitter:
    """Stamps events with a monotonically increasing sequence and a timestamp, then publishes them."""

    def __init__(self, sink: EventSink) -> None:
        self._sink = sink
        self._lock = threading.Lock()
        self._sequence = 0

    @property
    def sink(self) -> EventSink:
        return self._sink

    def emit(
        self,
        kind: EventKind,
        *,
        message_id: str,
        turn_id: str,
        payload: dict[str, Any] | None = None,
    ) -> UIEvent:
        with self._lock:
            self._sequence += 1
            event = UIEvent(
                kind=kind,
                message_id=message_id,
                turn_id=turn_id,
                payload=dict(payload or {}),
                sequence=self._sequence,
                timestamp=now_ts_ms(),
            )
        try:
            self._sink.publish(event)
        except Exception:
            logger.exception("Event sink failed for %s", kind.value)
        return event
