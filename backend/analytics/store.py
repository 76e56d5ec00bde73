from __future__ import annotations

import time
from typing import Any

EVENT_TYPES = (
    "decision_created",
    "random_selection",
    "vote_submitted",
    "decision_completed",
    "decision_closed",
    "decision_expired",
)

_events: list[dict[str, Any]] = []


def record_event(event_type: str, decision_id: str, data: dict[str, Any] | None = None) -> None:
    _events.append({
        "type": event_type,
        "decision_id": decision_id,
        "timestamp": time.time(),
        **(data or {}),
    })


def get_events(event_type: str | None = None) -> list[dict[str, Any]]:
    if event_type is None:
        return _events
    return [e for e in _events if e["type"] == event_type]


def clear_events() -> None:
    _events.clear()
