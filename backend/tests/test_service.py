from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from backend.analytics.store import clear_events, get_events
from backend.catalog.directory import Catalog, Collection, Group
from backend.decisions.errors import (
    AlreadyResolvedError,
    CollectionNotFoundError,
    DecisionNotFoundError,
    EmptyCandidateSetError,
    ExpiredError,
    InvalidRankingsError,
    NotActiveError,
    NotAuthorizedError,
    NotParticipantError,
    NoVotesError,
    RestaurantNotInCollectionError,
)
from backend.decisions.models import DecisionMethod, DecisionScope, DecisionStatus
from backend.decisions.repository import DecisionRepository
from backend.decisions.service import DecisionService
from backend.realtime.broadcaster import DecisionBroadcaster
from backend.weights.store import SelectionStore

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
VISIT = NOW + timedelta(days=1)


@pytest.fixture
def directory():
    d = Catalog()
    d.put_collection(Collection(id="c1", name="Friday lunch", restaurant_ids=["r1", "r2", "r3"]))
    d.put_collection(Collection(id="empty", name="Nothing yet"))
    d.put_group(Group(id="g1", name="Team", admin_ids=["alice"], member_ids=["bob", "carol"]))
    return d


@pytest.fixture
def publisher():
    return DecisionBroadcaster()


@pytest.fixture
def service(directory, publisher):
    clear_events()
    return DecisionService(
        repository=DecisionRepository(),
        selections=SelectionStore(),
        directory=directory,
        publisher=publisher,
        rng=np.random.default_rng(0),
    )


async def _group_vote(service, **kwargs):
    return await service.create(
        scope=DecisionScope.group,
        collection_id="c1",
        method=DecisionMethod.tiered,
        user_id="alice",
        group_id="g1",
        visit_date=VISIT,
        now=NOW,
        **kwargs,
    )


# ── Creation ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_random_decision_is_completed_on_creation(service):
    decision = await service.create(
        scope=DecisionScope.personal,
        collection_id="c1",
        method=DecisionMethod.random,
        user_id="alice",
        visit_date=VISIT,
        now=NOW,
    )
    assert decision.status == DecisionStatus.completed
    assert decision.result is not None
    assert decision.result.restaurant_id in {"r1", "r2", "r3"}
    assert decision.result.reasoning.startswith("Selected using weighted random algorithm.")
    assert decision.deadline == NOW
    assert decision.participants == ["alice"]

    record = await service.selections.get_record("c1", decision.result.restaurant_id)
    assert record.selection_count == 1


@pytest.mark.asyncio
async def test_random_select_returns_outcome(service):
    decision, outcome = await service.random_select("c1", "bob", VISIT, now=NOW)
    assert decision.result.restaurant_id == outcome.restaurant_id
    assert outcome.weight == 1.0
    assert outcome.previous_selections == 0
    assert [e["type"] for e in get_events()] == ["decision_created", "random_selection"]


@pytest.mark.asyncio
async def test_empty_collection_is_rejected(service):
    with pytest.raises(EmptyCandidateSetError):
        await service.random_select("empty", "alice", VISIT, now=NOW)


@pytest.mark.asyncio
async def test_unknown_collection_is_rejected(service):
    with pytest.raises(CollectionNotFoundError):
        await service.random_select("missing", "alice", VISIT, now=NOW)


@pytest.mark.asyncio
async def test_group_decision_defaults_to_whole_group(service):
    decision = await _group_vote(service)
    assert decision.status == DecisionStatus.active
    assert decision.participants == ["alice", "bob", "carol"]
    assert decision.deadline == NOW + timedelta(hours=24)
    assert decision.result is None


@pytest.mark.asyncio
async def test_deadline_hours_are_clamped(service):
    decision = await _group_vote(service, deadline_hours=1000)
    assert decision.deadline == NOW + timedelta(hours=336)


@pytest.mark.asyncio
async def test_zero_deadline_hours_clamps_to_minimum(service):
    decision = await _group_vote(service, deadline_hours=0)
    assert decision.deadline == NOW + timedelta(hours=1)


@pytest.mark.asyncio
async def test_naive_now_is_treated_as_utc(service):
    naive_now = NOW.replace(tzinfo=None)
    decision = await _group_vote(service)
    fetched = await service.get(decision.id, now=naive_now + timedelta(hours=1))
    assert fetched.status == DecisionStatus.active
    assert decision.created_at.tzinfo is not None


@pytest.mark.asyncio
async def test_outsider_cannot_start_group_decision(service):
    with pytest.raises(NotParticipantError):
        await service.create(
            scope=DecisionScope.group,
            collection_id="c1",
            method=DecisionMethod.tiered,
            user_id="mallory",
            group_id="g1",
            visit_date=VISIT,
            now=NOW,
        )


@pytest.mark.asyncio
async def test_creation_is_broadcast_to_group(service, publisher):
    subscription = publisher.subscribe("g1")
    decision = await _group_vote(service)
    snapshot = await asyncio.wait_for(subscription.get(), timeout=1)
    assert snapshot.id == decision.id
    subscription.close()


# ── Voting ───────────────────────────────────────────────────────────────


class TestVoting:
    @pytest.mark.asyncio
    async def test_same_vote_twice_keeps_one_ballot(self, service):
        decision = await _group_vote(service)
        later = NOW + timedelta(hours=1)
        await service.submit_vote(decision.id, "bob", ["r1", "r2"], now=later)
        again = await service.submit_vote(decision.id, "bob", ["r1", "r2"], now=later)
        assert list(again.votes) == ["bob"]
        assert len(get_events("vote_submitted")) == 1

    @pytest.mark.asyncio
    async def test_new_rankings_replace_ballot(self, service):
        decision = await _group_vote(service)
        await service.submit_vote(decision.id, "bob", ["r1"], now=NOW)
        updated = await service.submit_vote(decision.id, "bob", ["r3", "r2"], now=NOW)
        assert updated.votes["bob"].rankings == ["r3", "r2"]
        assert len(updated.votes) == 1

    @pytest.mark.asyncio
    async def test_non_participant_rejected(self, service):
        decision = await _group_vote(service, participants=["alice", "bob"])
        with pytest.raises(NotParticipantError):
            await service.submit_vote(decision.id, "carol", ["r1"], now=NOW)

    @pytest.mark.asyncio
    async def test_invalid_rankings_rejected(self, service):
        decision = await _group_vote(service)
        with pytest.raises(InvalidRankingsError):
            await service.submit_vote(decision.id, "bob", ["r1", "nowhere"], now=NOW)

    @pytest.mark.asyncio
    async def test_vote_after_close_is_not_active(self, service):
        decision = await _group_vote(service)
        await service.close(decision.id, "alice", now=NOW)
        with pytest.raises(NotActiveError):
            await service.submit_vote(decision.id, "bob", ["r1"], now=NOW)

    @pytest.mark.asyncio
    async def test_vote_after_deadline_expires_decision(self, service):
        decision = await _group_vote(service, deadline_hours=2)
        with pytest.raises(ExpiredError):
            await service.submit_vote(decision.id, "bob", ["r1"], now=NOW + timedelta(hours=3))
        stored = await service.repository.get(decision.id)
        assert stored.status == DecisionStatus.expired
        assert stored.result is None

    @pytest.mark.asyncio
    async def test_unknown_decision(self, service):
        with pytest.raises(DecisionNotFoundError):
            await service.submit_vote("nope", "bob", ["r1"], now=NOW)


# ── Completion and closing ───────────────────────────────────────────────


class TestResolution:
    @pytest.mark.asyncio
    async def test_complete_without_votes(self, service):
        decision = await _group_vote(service)
        with pytest.raises(NoVotesError):
            await service.complete(decision.id, "alice", now=NOW)

    @pytest.mark.asyncio
    async def test_complete_tallies_ballots(self, service):
        decision = await _group_vote(service)
        await service.submit_vote(decision.id, "alice", ["r1", "r2", "r3"], now=NOW)
        await service.submit_vote(decision.id, "bob", ["r1", "r3"], now=NOW)
        await service.submit_vote(decision.id, "carol", ["r2", "r1"], now=NOW)

        done = await service.complete(decision.id, "alice", now=NOW + timedelta(hours=1))

        assert done.status == DecisionStatus.completed
        assert done.result.restaurant_id == "r1"
        assert done.result.weights == {"r1": 8.0, "r2": 5.0, "r3": 3.0}
        assert "8 points from 3 ballots" in done.result.reasoning

    @pytest.mark.asyncio
    async def test_only_admin_can_complete(self, service):
        decision = await _group_vote(service)
        await service.submit_vote(decision.id, "bob", ["r1"], now=NOW)
        with pytest.raises(NotAuthorizedError):
            await service.complete(decision.id, "bob", now=NOW)

    @pytest.mark.asyncio
    async def test_complete_twice_is_already_resolved(self, service):
        decision = await _group_vote(service)
        await service.submit_vote(decision.id, "bob", ["r2"], now=NOW)
        await service.complete(decision.id, "alice", now=NOW)
        with pytest.raises(AlreadyResolvedError):
            await service.complete(decision.id, "alice", now=NOW)

    @pytest.mark.asyncio
    async def test_complete_random_decision_is_already_resolved(self, service):
        decision, _ = await service.random_select("c1", "alice", VISIT, now=NOW)
        with pytest.raises(AlreadyResolvedError):
            await service.complete(decision.id, "alice", now=NOW)

    @pytest.mark.asyncio
    async def test_complete_after_deadline(self, service):
        decision = await _group_vote(service, deadline_hours=1)
        await service.submit_vote(decision.id, "bob", ["r2"], now=NOW)
        with pytest.raises(ExpiredError):
            await service.complete(decision.id, "alice", now=NOW + timedelta(hours=2))
        assert len(get_events("decision_expired")) == 1

    @pytest.mark.asyncio
    async def test_close_leaves_no_result(self, service):
        decision = await _group_vote(service)
        await service.submit_vote(decision.id, "bob", ["r2"], now=NOW)
        closed = await service.close(decision.id, "alice", now=NOW)
        assert closed.status == DecisionStatus.closed
        assert closed.result is None
        with pytest.raises(AlreadyResolvedError):
            await service.close(decision.id, "alice", now=NOW)

    @pytest.mark.asyncio
    async def test_member_cannot_close(self, service):
        decision = await _group_vote(service)
        with pytest.raises(NotAuthorizedError):
            await service.close(decision.id, "carol", now=NOW)

    @pytest.mark.asyncio
    async def test_concurrent_complete_and_close_resolve_once(self, service):
        decision = await _group_vote(service)
        await service.submit_vote(decision.id, "bob", ["r2"], now=NOW)
        results = await asyncio.gather(
            service.complete(decision.id, "alice", now=NOW),
            service.close(decision.id, "alice", now=NOW),
            return_exceptions=True,
        )
        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], AlreadyResolvedError)


# ── Manual entries, reads and history ────────────────────────────────────


@pytest.mark.asyncio
async def test_manual_decision_does_not_touch_weights(service):
    decision = await service.record_manual(
        collection_id="c1", restaurant_id="r2", user_id="alice", visit_date=NOW, now=NOW,
    )
    assert decision.method == DecisionMethod.manual
    assert decision.status == DecisionStatus.completed
    assert decision.result.reasoning == "Manually entered decision"
    assert await service.selections.get_record("c1", "r2") is None


@pytest.mark.asyncio
async def test_manual_decision_requires_collection_restaurant(service):
    with pytest.raises(RestaurantNotInCollectionError):
        await service.record_manual(
            collection_id="c1", restaurant_id="r9", user_id="alice", visit_date=NOW,
        )


@pytest.mark.asyncio
async def test_get_expires_overdue_decision(service):
    decision = await _group_vote(service, deadline_hours=1)
    fetched = await service.get(decision.id, now=NOW + timedelta(hours=2))
    assert fetched.status == DecisionStatus.expired


@pytest.mark.asyncio
async def test_group_listing_hides_stale_decisions(service):
    old = await service.record_manual(
        collection_id="c1", restaurant_id="r1", user_id="alice",
        visit_date=NOW - timedelta(hours=25), scope=DecisionScope.group, group_id="g1", now=NOW,
    )
    fresh = await _group_vote(service)

    everything = await service.list_group_decisions("g1", now=NOW)
    visible = await service.list_group_decisions("g1", now=NOW, visible_only=True)

    assert {d.id for d in everything} == {old.id, fresh.id}
    assert [d.id for d in visible] == [fresh.id]


@pytest.mark.asyncio
async def test_history_filters_and_paginates(service):
    for day in range(3):
        await service.record_manual(
            collection_id="c1", restaurant_id="r1", user_id="alice",
            visit_date=NOW - timedelta(days=day), now=NOW,
        )
    await service.record_manual(
        collection_id="c1", restaurant_id="r2", user_id="bob", visit_date=NOW, now=NOW,
    )

    page = await service.history(restaurant_id="r1", limit=2)
    assert page.total == 3
    assert len(page.decisions) == 2
    assert page.decisions[0].visit_date == NOW

    by_user = await service.history(user_id="bob")
    assert by_user.total == 1


@pytest.mark.asyncio
async def test_statistics_follow_selections(service):
    await service.selections.record_selection("c1", "r1", NOW - timedelta(days=4))
    stats = await service.statistics("c1", now=NOW)

    assert stats.total_selections == 1
    assert [s.restaurant_id for s in stats.restaurant_stats] == ["r2", "r3", "r1"]
    r1 = stats.restaurant_stats[-1]
    assert r1.current_weight == pytest.approx(0.3)
    assert r1.days_until_full_weight == 26
