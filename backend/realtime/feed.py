"""
Client-side view of a group's decisions.

Live snapshots arrive at least once and possibly out of order. Each one is a
full replacement for its decision, keyed by id; anything older than what is
already held is dropped.

``LiveDecisionSource`` is the single place that decides where data comes
from: the live stream while it is connected, otherwise periodic polling of
the plain fetch. The two are kept in separate feeds and never blended.
"""
from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, Iterable

from ..decisions.config import DEFAULT_DECISION_CONFIG, DecisionConfig
from ..decisions.errors import ServiceUnavailableError
from ..decisions.models import Decision

logger = logging.getLogger(__name__)

# A subscription may yield ``None`` as a keep-alive; it confirms the
# connection without carrying a snapshot.
SubscribeFn = Callable[[str], AsyncIterator["Decision | None"]]
FetchFn = Callable[[str], Awaitable[list[Decision]]]


class DecisionFeed:
    def __init__(self) -> None:
        self._decisions: dict[str, Decision] = {}

    def apply(self, snapshot: Decision) -> bool:
        """Store *snapshot* unless a newer one is already held."""
        held = self._decisions.get(snapshot.id)
        if held is not None and snapshot.updated_at < held.updated_at:
            logger.debug("Dropped stale snapshot of %s", snapshot.id)
            return False
        self._decisions[snapshot.id] = snapshot
        return True

    def replace_all(self, snapshots: Iterable[Decision]) -> None:
        self._decisions = {d.id: d for d in snapshots}

    def get(self, decision_id: str) -> Decision | None:
        return self._decisions.get(decision_id)

    def decisions(self) -> list[Decision]:
        return sorted(self._decisions.values(), key=lambda d: d.created_at, reverse=True)

    def clear(self) -> None:
        self._decisions.clear()

    def __len__(self) -> int:
        return len(self._decisions)


class LiveDecisionSource:
    def __init__(
        self,
        group_id: str,
        subscribe: SubscribeFn,
        fetch: FetchFn,
        config: DecisionConfig = DEFAULT_DECISION_CONFIG,
        poll_interval: float | None = None,
        reconnect_delay: float | None = None,
    ) -> None:
        self.group_id = group_id
        self._subscribe = subscribe
        self._fetch = fetch
        self.poll_interval = poll_interval if poll_interval is not None else config.poll_interval_seconds
        self.reconnect_delay = (
            reconnect_delay if reconnect_delay is not None else config.reconnect_delay_seconds
        )
        self.live = DecisionFeed()
        self.polled = DecisionFeed()
        self.last_error: str | None = None
        self._connected = False
        self._reconnect_requested = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def connected(self) -> bool:
        return self._connected

    def current(self) -> list[Decision]:
        """The authoritative view: live when connected, polled otherwise."""
        return self.live.decisions() if self._connected else self.polled.decisions()

    def reconnect(self) -> None:
        """Cut the current polling wait short and retry the live stream."""
        self._reconnect_requested.set()

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self._connected = False

    async def run(self) -> None:
        while True:
            await self._consume_live()
            await self._poll_until_retry()

    async def _consume_live(self) -> None:
        self.live.clear()
        try:
            async for snapshot in self._subscribe(self.group_id):
                if not self._connected:
                    self._connected = True
                    self.last_error = None
                    logger.info("Live decision stream connected for group %s", self.group_id)
                if snapshot is not None:
                    self.live.apply(snapshot)
            logger.info("Live decision stream for group %s ended", self.group_id)
        except ServiceUnavailableError as exc:
            self.last_error = exc.message
            logger.warning("Live decision stream unavailable for group %s, polling instead", self.group_id)
        except Exception as exc:
            self.last_error = str(exc) or type(exc).__name__
            logger.exception("Live decision stream for group %s failed, polling instead", self.group_id)
        finally:
            self._connected = False

    async def _poll_once(self) -> None:
        try:
            self.polled.replace_all(await self._fetch(self.group_id))
        except ServiceUnavailableError as exc:
            self.last_error = exc.message
            logger.warning("Polling decisions for group %s failed", self.group_id, exc_info=True)
        except Exception as exc:
            self.last_error = str(exc) or type(exc).__name__
            logger.exception("Polling decisions for group %s failed unexpectedly", self.group_id)

    async def _poll_until_retry(self) -> None:
        loop = asyncio.get_running_loop()
        retry_at = loop.time() + self.reconnect_delay
        while True:
            await self._poll_once()
            remaining = retry_at - loop.time()
            if remaining <= 0:
                return
            try:
                await asyncio.wait_for(
                    self._reconnect_requested.wait(),
                    timeout=min(self.poll_interval, remaining),
                )
            except asyncio.TimeoutError:
                continue
            self._reconnect_requested.clear()
            return
