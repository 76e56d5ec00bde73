from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from .models import Ballot, Decision, DecisionStatus

logger = logging.getLogger(__name__)


class DecisionRepository:
    """Async decision storage with conditional single-step updates.

    Every mutator checks its precondition and writes without suspending in
    between, which is what serializes competing ``complete`` / ``close`` /
    vote calls on the same decision. Callers always receive copies.
    """

    def __init__(self) -> None:
        self._decisions: dict[str, Decision] = {}

    async def insert(self, decision: Decision) -> Decision:
        if decision.id in self._decisions:
            raise ValueError(f"Decision {decision.id} already exists")
        self._decisions[decision.id] = decision.model_copy(deep=True)
        return decision.model_copy(deep=True)

    async def get(self, decision_id: str) -> Decision | None:
        decision = self._decisions.get(decision_id)
        return decision.model_copy(deep=True) if decision else None

    async def find(
        self,
        *,
        group_id: str | None = None,
        collection_id: str | None = None,
        status: DecisionStatus | None = None,
    ) -> list[Decision]:
        found = [
            d for d in self._decisions.values()
            if (group_id is None or d.group_id == group_id)
            and (collection_id is None or d.collection_id == collection_id)
            and (status is None or d.status == status)
        ]
        found.sort(key=lambda d: d.created_at, reverse=True)
        return [d.model_copy(deep=True) for d in found]

    async def all(self) -> list[Decision]:
        return await self.find()

    async def put_ballot(
        self, decision_id: str, user_id: str, ballot: Ballot, now: datetime,
    ) -> Decision | None:
        """Replace *user_id*'s ballot if the decision is still active.

        Returns ``None`` when the decision is missing or no longer active.
        """
        current = self._decisions.get(decision_id)
        if current is None or current.status != DecisionStatus.active:
            return None
        votes = dict(current.votes)
        votes[user_id] = ballot.model_copy()
        updated = current.model_copy(update={"votes": votes, "updated_at": now}, deep=True)
        self._decisions[decision_id] = updated
        return updated.model_copy(deep=True)

    async def update_if(
        self,
        decision_id: str,
        *,
        expected_status: DecisionStatus,
        expected_updated_at: datetime | None = None,
        changes: dict[str, Any],
    ) -> Decision | None:
        """Compare-and-swap on status (and optionally ``updated_at``).

        Returns the updated decision, or ``None`` if the precondition no
        longer holds.
        """
        current = self._decisions.get(decision_id)
        if current is None or current.status != expected_status:
            return None
        if expected_updated_at is not None and current.updated_at != expected_updated_at:
            return None
        updated = current.model_copy(update=changes, deep=True)
        self._decisions[decision_id] = updated
        return updated.model_copy(deep=True)

    def clear(self) -> None:
        self._decisions.clear()


decision_repository = DecisionRepository()


def clear_decisions() -> None:
    decision_repository.clear()
