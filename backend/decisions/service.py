from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Sequence

import numpy as np

from ..analytics.aggregator import compute_group_analytics
from ..analytics.statistics import build_statistics
from ..analytics.store import record_event
from ..catalog.directory import Catalog, Collection, Group, catalog
from ..realtime.broadcaster import DecisionBroadcaster, broadcaster
from ..weights.store import SelectionStore, selection_store
from .config import DEFAULT_DECISION_CONFIG, DecisionConfig
from .errors import (
    AlreadyResolvedError,
    CollectionNotFoundError,
    DecisionNotFoundError,
    EmptyCandidateSetError,
    ExpiredError,
    GroupNotFoundError,
    NotActiveError,
    NotAuthorizedError,
    NotParticipantError,
    NoVotesError,
    RestaurantNotInCollectionError,
    ServiceUnavailableError,
)
from .lifecycle import is_overdue, list_visible, validate_rankings
from .models import (
    Ballot,
    Decision,
    DecisionHistory,
    DecisionMethod,
    DecisionResult,
    DecisionScope,
    DecisionStatistics,
    DecisionStatus,
    as_utc,
    utcnow,
)
from .repository import DecisionRepository, decision_repository
from .selector import SelectionOutcome, select
from .tally import tally

logger = logging.getLogger(__name__)


def _timestamp(now: datetime | None) -> datetime:
    return as_utc(now) if now else utcnow()


class DecisionService:
    """Runs the decision lifecycle on top of the stores.

    The scoring, weighting and guard logic lives in pure modules; this class
    loads state, calls them, writes the outcome with a conditional update
    and publishes the new snapshot.
    """

    def __init__(
        self,
        repository: DecisionRepository | None = None,
        selections: SelectionStore | None = None,
        directory: Catalog | None = None,
        publisher: DecisionBroadcaster | None = None,
        config: DecisionConfig = DEFAULT_DECISION_CONFIG,
        rng: np.random.Generator | None = None,
    ) -> None:
        self.repository = repository or decision_repository
        self.selections = selections or selection_store
        self.directory = directory or catalog
        self.publisher = publisher or broadcaster
        self.config = config
        self.rng = rng

    # ── Lookups ──────────────────────────────────────────────────────────

    async def _collection(self, collection_id: str) -> Collection:
        collection = await self.directory.get_collection(collection_id)
        if collection is None:
            raise CollectionNotFoundError(collection_id=collection_id)
        return collection

    async def _group(self, group_id: str | None) -> Group:
        group = await self.directory.get_group(group_id) if group_id else None
        if group is None:
            raise GroupNotFoundError(group_id=group_id)
        return group

    async def _load(self, decision_id: str) -> Decision:
        decision = await self.repository.get(decision_id)
        if decision is None:
            raise DecisionNotFoundError(decision_id=decision_id)
        return decision

    async def _authorize(self, decision: Decision, acting_user_id: str) -> None:
        if decision.scope == DecisionScope.group:
            group = await self._group(decision.group_id)
            if not group.is_admin(acting_user_id):
                raise NotAuthorizedError()
        elif acting_user_id != decision.created_by:
            raise NotAuthorizedError(
                "Only the person who started this decision can complete or close it."
            )

    def _announce(self, event_type: str, decision: Decision, **data) -> None:
        record_event(event_type, decision.id, {
            "method": decision.method.value,
            "scope": decision.scope.value,
            "group_id": decision.group_id,
            "collection_id": decision.collection_id,
            **data,
        })
        self.publisher.publish(decision)

    async def _expire_if_due(self, decision: Decision, now: datetime) -> Decision:
        """Mark an overdue active decision as expired; no-op otherwise."""
        if not is_overdue(decision, now):
            return decision
        updated = await self.repository.update_if(
            decision.id,
            expected_status=DecisionStatus.active,
            changes={"status": DecisionStatus.expired, "updated_at": now},
        )
        if updated is None:
            return await self._load(decision.id)
        logger.info("Decision %s expired (deadline %s)", decision.id, decision.deadline.isoformat())
        self._announce("decision_expired", updated, ballots=len(updated.votes))
        return updated

    # ── Creation ─────────────────────────────────────────────────────────

    async def _draft(
        self,
        *,
        scope: DecisionScope,
        collection_id: str,
        method: DecisionMethod,
        user_id: str,
        visit_date: datetime,
        group_id: str | None,
        participants: Sequence[str] | None,
        deadline_hours: int | None,
        now: datetime,
    ) -> tuple[Decision, Collection]:
        """Validate a new decision and build it as active; nothing is stored."""
        if method == DecisionMethod.manual:
            raise ValueError("manual decisions are created with record_manual()")

        collection = await self._collection(collection_id)
        if not collection.restaurant_ids:
            raise EmptyCandidateSetError()

        if scope == DecisionScope.group:
            group = await self._group(group_id)
            if not group.is_member(user_id):
                raise NotParticipantError("You are not a member of this group.")
            roster = list(dict.fromkeys(participants)) if participants else group.participants
        else:
            group_id = None
            roster = [user_id]

        hours = self.config.default_deadline_hours if deadline_hours is None else deadline_hours
        hours = max(self.config.min_deadline_hours, min(hours, self.config.max_deadline_hours))

        decision = Decision(
            id=uuid.uuid4().hex,
            scope=scope,
            collection_id=collection_id,
            group_id=group_id,
            created_by=user_id,
            method=method,
            status=DecisionStatus.active,
            deadline=now + timedelta(hours=hours),
            visit_date=visit_date,
            participants=roster,
            created_at=now,
            updated_at=now,
        )
        return decision, collection

    async def _draw(
        self, decision: Decision, collection: Collection, now: datetime,
    ) -> tuple[Decision, SelectionOutcome]:
        """Run the weighted pick and return *decision* resolved with it."""
        outcome = await select(
            collection.id, collection.restaurant_ids, now,
            store=self.selections, rng=self.rng,
        )
        resolved = decision.model_copy(update={
            "status": DecisionStatus.completed,
            "deadline": now,
            "result": DecisionResult(
                restaurant_id=outcome.restaurant_id,
                selected_at=now,
                reasoning=outcome.reasoning,
                weights=outcome.weights,
            ),
        })
        return resolved, outcome

    async def _store_new(
        self, decision: Decision, outcome: SelectionOutcome | None = None,
    ) -> Decision:
        stored = await self.repository.insert(decision)
        logger.info(
            "Created %s %s decision %s on collection %s",
            stored.scope.value, stored.method.value, stored.id, stored.collection_id,
        )
        self._announce("decision_created", stored)
        if outcome is not None:
            record_event("random_selection", stored.id, {
                "collection_id": stored.collection_id,
                "restaurant_id": outcome.restaurant_id,
                "weight": outcome.weight,
                "previous_selections": outcome.previous_selections,
            })
        return stored

    async def create(
        self,
        *,
        scope: DecisionScope,
        collection_id: str,
        method: DecisionMethod,
        user_id: str,
        visit_date: datetime,
        group_id: str | None = None,
        participants: Sequence[str] | None = None,
        deadline_hours: int | None = None,
        now: datetime | None = None,
    ) -> Decision:
        now = _timestamp(now)
        decision, collection = await self._draft(
            scope=scope,
            collection_id=collection_id,
            method=method,
            user_id=user_id,
            visit_date=visit_date,
            group_id=group_id,
            participants=participants,
            deadline_hours=deadline_hours,
            now=now,
        )
        if method == DecisionMethod.random:
            decision, outcome = await self._draw(decision, collection, now)
            return await self._store_new(decision, outcome)
        return await self._store_new(decision)

    async def random_select(
        self,
        collection_id: str,
        user_id: str,
        visit_date: datetime,
        now: datetime | None = None,
    ) -> tuple[Decision, SelectionOutcome]:
        """One-shot personal pick, stored as a completed random decision."""
        now = _timestamp(now)
        decision, collection = await self._draft(
            scope=DecisionScope.personal,
            collection_id=collection_id,
            method=DecisionMethod.random,
            user_id=user_id,
            visit_date=visit_date,
            group_id=None,
            participants=None,
            deadline_hours=None,
            now=now,
        )
        decision, outcome = await self._draw(decision, collection, now)
        return await self._store_new(decision, outcome), outcome

    async def record_manual(
        self,
        *,
        collection_id: str,
        restaurant_id: str,
        user_id: str,
        visit_date: datetime,
        scope: DecisionScope = DecisionScope.personal,
        group_id: str | None = None,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> Decision:
        """Store a restaurant the user already chose as a completed decision.

        Manual entries are history only; they do not change selection weights.
        """
        now = _timestamp(now)
        collection = await self._collection(collection_id)
        if restaurant_id not in collection.restaurant_ids:
            raise RestaurantNotInCollectionError(restaurant_id=restaurant_id)

        participants = [user_id]
        if scope == DecisionScope.group:
            group = await self._group(group_id)
            if not group.is_member(user_id):
                raise NotParticipantError("You are not a member of this group.")
        else:
            group_id = None

        decision = Decision(
            id=uuid.uuid4().hex,
            scope=scope,
            collection_id=collection_id,
            group_id=group_id,
            created_by=user_id,
            method=DecisionMethod.manual,
            status=DecisionStatus.completed,
            deadline=visit_date,
            visit_date=visit_date,
            participants=participants,
            result=DecisionResult(
                restaurant_id=restaurant_id,
                selected_at=now,
                reasoning=notes or "Manually entered decision",
            ),
            created_at=now,
            updated_at=now,
        )
        stored = await self.repository.insert(decision)
        logger.info("Recorded manual decision %s for %s", stored.id, restaurant_id)
        self._announce("decision_created", stored)
        return stored

    # ── Reads ────────────────────────────────────────────────────────────

    async def get(self, decision_id: str, now: datetime | None = None) -> Decision:
        decision = await self._load(decision_id)
        return await self._expire_if_due(decision, _timestamp(now))

    async def list_group_decisions(
        self,
        group_id: str,
        now: datetime | None = None,
        visible_only: bool = False,
    ) -> list[Decision]:
        now = _timestamp(now)
        await self._group(group_id)
        decisions = [
            await self._expire_if_due(d, now)
            for d in await self.repository.find(group_id=group_id)
        ]
        return list_visible(decisions, now, self.config) if visible_only else decisions

    async def history(
        self,
        *,
        scope: DecisionScope | None = None,
        collection_id: str | None = None,
        group_id: str | None = None,
        restaurant_id: str | None = None,
        user_id: str | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> DecisionHistory:
        limit = limit or self.config.history_limit
        decisions = await self.repository.find(
            group_id=group_id, collection_id=collection_id, status=DecisionStatus.completed,
        )
        matches = [
            d for d in decisions
            if (scope is None or d.scope == scope)
            and (restaurant_id is None or (d.result and d.result.restaurant_id == restaurant_id))
            and (user_id is None or user_id in d.participants)
            and (start_date is None or d.visit_date >= as_utc(start_date))
            and (end_date is None or d.visit_date <= as_utc(end_date))
        ]
        matches.sort(key=lambda d: (d.visit_date, d.created_at), reverse=True)
        return DecisionHistory(
            decisions=matches[offset:offset + limit],
            total=len(matches),
            limit=limit,
            offset=offset,
        )

    async def statistics(self, collection_id: str, now: datetime | None = None) -> DecisionStatistics:
        now = _timestamp(now)
        collection = await self._collection(collection_id)
        records = await self.selections.get_records(collection_id, collection.restaurant_ids)
        completed = await self.repository.find(
            collection_id=collection_id, status=DecisionStatus.completed,
        )
        return build_statistics(
            collection_id, collection.restaurant_ids, records, len(completed), now,
        )

    async def group_analytics(self, group_id: str) -> dict:
        group = await self._group(group_id)
        decisions = await self.repository.find(group_id=group_id)
        return compute_group_analytics(group_id, decisions, group.participants)

    # ── Voting ───────────────────────────────────────────────────────────

    async def submit_vote(
        self,
        decision_id: str,
        user_id: str,
        rankings: Sequence[str],
        now: datetime | None = None,
    ) -> Decision:
        now = _timestamp(now)
        decision = await self._load(decision_id)

        if user_id not in decision.participants:
            raise NotParticipantError()
        if decision.status != DecisionStatus.active:
            raise NotActiveError()
        if is_overdue(decision, now):
            await self._expire_if_due(decision, now)
            raise ExpiredError()

        collection = await self._collection(decision.collection_id)
        ranked = validate_rankings(rankings, collection.restaurant_ids, self.config.max_rankings)

        existing = decision.votes.get(user_id)
        if existing is not None and existing.rankings == ranked:
            return decision

        updated = await self.repository.put_ballot(
            decision_id, user_id, Ballot(submitted_at=now, rankings=ranked), now,
        )
        if updated is None:
            raise NotActiveError()

        logger.info("Vote from %s recorded on decision %s", user_id, decision_id)
        self._announce("vote_submitted", updated, user_id=user_id, replaced=existing is not None)
        return updated

    async def complete(
        self,
        decision_id: str,
        acting_user_id: str,
        now: datetime | None = None,
    ) -> Decision:
        """Tally the ballots and resolve the decision.

        The write only succeeds if nothing changed since the ballots were
        read; a vote landing in between triggers a fresh tally.
        """
        now = _timestamp(now)
        for attempt in range(1, self.config.complete_retries + 1):
            decision = await self._load(decision_id)
            if decision.status != DecisionStatus.active:
                raise AlreadyResolvedError()
            if is_overdue(decision, now):
                await self._expire_if_due(decision, now)
                raise ExpiredError()
            await self._authorize(decision, acting_user_id)
            if not decision.votes:
                raise NoVotesError()

            ballots = {uid: ballot.rankings for uid, ballot in decision.votes.items()}
            ranked_ids = sorted({rid for rankings in ballots.values() for rid in rankings})
            records = await self.selections.get_records(decision.collection_id, ranked_ids)
            outcome = tally(ballots, {rid: r.selection_count for rid, r in records.items()})

            updated = await self.repository.update_if(
                decision_id,
                expected_status=DecisionStatus.active,
                expected_updated_at=decision.updated_at,
                changes={
                    "status": DecisionStatus.completed,
                    "result": DecisionResult(
                        restaurant_id=outcome.winner_id,
                        selected_at=now,
                        reasoning=outcome.reasoning,
                        weights=outcome.points_by_restaurant(),
                    ),
                    "updated_at": now,
                },
            )
            if updated is not None:
                logger.info(
                    "Decision %s completed: %s with %d points", decision_id, outcome.winner_id, outcome.points,
                )
                self._announce(
                    "decision_completed", updated,
                    ballots=outcome.ballot_count,
                    restaurant_id=outcome.winner_id,
                    tie_break=outcome.tie_break,
                )
                return updated

            logger.warning("Decision %s changed while completing (attempt %d)", decision_id, attempt)

        current = await self._load(decision_id)
        if current.status != DecisionStatus.active:
            raise AlreadyResolvedError()
        raise ServiceUnavailableError(
            "Votes kept arriving while the decision was being completed. Please try again."
        )

    async def close(
        self,
        decision_id: str,
        acting_user_id: str,
        now: datetime | None = None,
    ) -> Decision:
        now = _timestamp(now)
        decision = await self._load(decision_id)
        if decision.status != DecisionStatus.active:
            raise AlreadyResolvedError()
        if is_overdue(decision, now):
            await self._expire_if_due(decision, now)
            raise AlreadyResolvedError("This decision expired before it was closed.")
        await self._authorize(decision, acting_user_id)

        updated = await self.repository.update_if(
            decision_id,
            expected_status=DecisionStatus.active,
            changes={"status": DecisionStatus.closed, "updated_at": now},
        )
        if updated is None:
            raise AlreadyResolvedError()

        logger.info("Decision %s closed by %s", decision_id, acting_user_id)
        self._announce("decision_closed", updated, ballots=len(updated.votes))
        return updated


decision_service = DecisionService()
