from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable

from ..decisions.models import Decision, utcnow
from .broadcaster import Subscription

logger = logging.getLogger(__name__)

DECISION_EVENT = "decision"
PING_EVENT = "ping"


def format_event(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


def decision_event(decision: Decision) -> str:
    return format_event(DECISION_EVENT, decision.model_dump(mode="json"))


async def decision_event_stream(
    subscription: Subscription,
    initial: Iterable[Decision],
    is_disconnected: Callable[[], Awaitable[bool]],
    heartbeat_seconds: float,
) -> AsyncIterator[str]:
    """Yield SSE frames for one group.

    The subscription must be opened before *initial* is read so that no
    change slips between the two; a snapshot may therefore arrive twice,
    which consumers tolerate. Idle periods produce ``ping`` frames.
    """
    try:
        for decision in initial:
            yield decision_event(decision)

        while True:
            if await is_disconnected():
                return
            try:
                snapshot = await asyncio.wait_for(subscription.get(), timeout=heartbeat_seconds)
            except asyncio.TimeoutError:
                yield format_event(PING_EVENT, {"timestamp": utcnow().isoformat()})
                continue
            except StopAsyncIteration:
                return
            yield decision_event(snapshot)
    finally:
        subscription.close()
        logger.debug("Closed decision stream for group %s", subscription.group_id)


async def parse_sse(lines: AsyncIterator[str]) -> AsyncIterator[tuple[str, str]]:
    """Turn raw SSE lines into ``(event, data)`` pairs."""
    event = "message"
    data: list[str] = []
    async for raw in lines:
        line = raw.rstrip("\r")
        if not line:
            if data:
                yield event, "\n".join(data)
            event, data = "message", []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if field == "event":
            event = value
        elif field == "data":
            data.append(value)
    if data:
        yield event, "\n".join(data)
