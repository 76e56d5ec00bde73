from __future__ import annotations

import asyncio
import logging

from ..decisions.models import Decision

logger = logging.getLogger(__name__)

_CLOSED = object()

# Pending snapshots per subscriber before the oldest are dropped
DEFAULT_MAX_PENDING = 256


class Subscription:
    """Snapshots published for one group, in arrival order.

    Iterate with ``async for`` or call ``get()``. ``close()`` detaches the
    subscription from the broadcaster and ends iteration; it never touches
    decision state. A subscriber that falls more than ``max_pending``
    snapshots behind loses the oldest ones.
    """

    def __init__(
        self,
        broadcaster: "DecisionBroadcaster",
        group_id: str,
        max_pending: int = DEFAULT_MAX_PENDING,
    ) -> None:
        self.group_id = group_id
        self._broadcaster = broadcaster
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_pending)
        self.closed = False
        self.dropped = 0

    def _put(self, item: object) -> None:
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except asyncio.QueueFull:
                self._queue.get_nowait()
                self.dropped += 1

    def _deliver(self, decision: Decision) -> None:
        if self.closed:
            return
        if self._queue.full():
            logger.warning("Subscriber to group %s is behind, dropping oldest snapshot", self.group_id)
        self._put(decision.model_copy(deep=True))

    async def get(self) -> Decision:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Decision:
        return await self.get()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._broadcaster._detach(self)
        self._put(_CLOSED)


class DecisionBroadcaster:
    def __init__(self, max_pending: int = DEFAULT_MAX_PENDING) -> None:
        self.max_pending = max_pending
        self._subscribers: dict[str, set[Subscription]] = {}

    def subscribe(self, group_id: str) -> Subscription:
        subscription = Subscription(self, group_id, self.max_pending)
        self._subscribers.setdefault(group_id, set()).add(subscription)
        logger.debug("Subscribed to group %s (%d listeners)", group_id, self.subscriber_count(group_id))
        return subscription

    def publish(self, decision: Decision) -> int:
        """Send a full snapshot of *decision* to its group's subscribers.

        Personal decisions have no audience and are not published. Returns
        the number of subscribers reached.
        """
        if not decision.group_id:
            return 0
        listeners = list(self._subscribers.get(decision.group_id, ()))
        for subscription in listeners:
            subscription._deliver(decision)
        return len(listeners)

    def subscriber_count(self, group_id: str) -> int:
        return len(self._subscribers.get(group_id, ()))

    def _detach(self, subscription: Subscription) -> None:
        listeners = self._subscribers.get(subscription.group_id)
        if listeners is None:
            return
        listeners.discard(subscription)
        if not listeners:
            del self._subscribers[subscription.group_id]

    def clear(self) -> None:
        for listeners in list(self._subscribers.values()):
            for subscription in list(listeners):
                subscription.close()
        self._subscribers.clear()


broadcaster = DecisionBroadcaster()
