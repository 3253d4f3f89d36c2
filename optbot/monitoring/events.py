from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

LOGGER = logging.getLogger(__name__)

EVENT_KINDS = frozenset(
    {
        "block_transition",
        "trade_action",
        "order_failed",
        "instrument_snapshot",
        "parameter_update",
        "parameter_error",
        "stalled",
        "invariant_violation",
        "cycle_complete",
    }
)

ERROR_KINDS = frozenset({"order_failed", "parameter_error", "stalled", "invariant_violation"})


@dataclass(slots=True)
class StatusEvent:
    kind: str
    session_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if self.kind not in EVENT_KINDS:
            raise ValueError(f"Unknown status event kind '{self.kind}'")

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "session_id": self.session_id,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
        }


class EventSink(Protocol):
    def publish(self, event: StatusEvent) -> None:
        ...


class NullSink:
    def publish(self, event: StatusEvent) -> None:
        return None


class EventRecorder:
    """Bounded in-memory buffer of recent events, read by the dashboard and tests."""

    def __init__(self, maxlen: int = 500):
        self._events: deque[StatusEvent] = deque(maxlen=max(1, int(maxlen)))
        self._lock = threading.Lock()

    def publish(self, event: StatusEvent) -> None:
        with self._lock:
            self._events.append(event)

    def events(self, kind: str | None = None, session_id: str | None = None) -> list[StatusEvent]:
        with self._lock:
            items = list(self._events)
        return [
            item
            for item in items
            if (kind is None or item.kind == kind) and (session_id is None or item.session_id == session_id)
        ]

    def kinds(self) -> list[str]:
        return [item.kind for item in self.events()]

    def recent(self, limit: int = 50) -> list[dict[str, Any]]:
        return [item.to_dict() for item in self.events()[-limit:]]


class FanOutSink:
    def __init__(self, *sinks: EventSink):
        self.sinks = list(sinks)

    def publish(self, event: StatusEvent) -> None:
        for sink in self.sinks:
            try:
                sink.publish(event)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Event sink %s failed for %s", type(sink).__name__, event.kind)
