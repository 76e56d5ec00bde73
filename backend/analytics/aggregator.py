from __future__ import annotations

from collections import Counter
from typing import Any, Iterable

from ..decisions.models import Decision, DecisionMethod, DecisionStatus
from .store import EVENT_TYPES


def compute_analytics(events: list[dict[str, Any]]) -> dict[str, Any]:
    type_counter: Counter[str] = Counter(e["type"] for e in events)
    event_totals = {t: type_counter.get(t, 0) for t in EVENT_TYPES}

    created = [e for e in events if e["type"] == "decision_created"]
    method_counter: Counter[str] = Counter(e.get("method", "unknown") for e in created)

    # Ballots per completed tiered decision
    tiered_done = [
        e for e in events
        if e["type"] == "decision_completed" and e.get("method") == DecisionMethod.tiered.value
    ]
    ballots = [e.get("ballots", 0) for e in tiered_done]
    avg_ballots = round(sum(ballots) / len(ballots), 1) if ballots else 0.0

    tiered_created = method_counter.get(DecisionMethod.tiered.value, 0)
    completion_rate = (
        round(len(tiered_done) / tiered_created * 100, 1) if tiered_created else 0.0
    )

    return {
        "total_events": len(events),
        "event_totals": event_totals,
        "decisions_by_method": dict(method_counter),
        "tiered": {
            "created": tiered_created,
            "completed": len(tiered_done),
            "completion_rate": completion_rate,
            "avg_ballots": avg_ballots,
        },
    }


def compute_group_analytics(
    group_id: str,
    decisions: Iterable[Decision],
    member_ids: Iterable[str] = (),
) -> dict[str, Any]:
    completed = [
        d for d in decisions
        if d.group_id == group_id and d.status == DecisionStatus.completed and d.result
    ]

    # Most selected restaurants
    restaurant_counter: Counter[str] = Counter(d.result.restaurant_id for d in completed)
    popular = [
        {"restaurant_id": rid, "selection_count": c}
        for rid, c in sorted(restaurant_counter.items(), key=lambda kv: (-kv[1], kv[0]))[:10]
    ]

    # Monthly trends by visit date, last 12 months
    month_counter: Counter[str] = Counter(d.visit_date.strftime("%Y-%m") for d in completed)
    trends = [{"month": m, "count": c} for m, c in sorted(month_counter.items())][-12:]

    method_counter: Counter[str] = Counter(d.method.value for d in completed)

    # Participation = ballots cast in completed tiered decisions
    tiered = [d for d in completed if d.method == DecisionMethod.tiered]
    ballot_counter: Counter[str] = Counter()
    for d in tiered:
        for user_id in d.votes:
            ballot_counter[user_id] += 1
    members = list(dict.fromkeys([*member_ids, *ballot_counter]))
    participation = [
        {
            "user_id": uid,
            "ballots": ballot_counter.get(uid, 0),
            "participation_rate": (
                round(ballot_counter.get(uid, 0) / len(tiered) * 100, 1) if tiered else 0.0
            ),
        }
        for uid in members
    ]
    participation.sort(key=lambda p: (-p["ballots"], p["user_id"]))

    return {
        "group_id": group_id,
        "total_decisions": len(completed),
        "popular_restaurants": popular,
        "monthly_trends": trends,
        "decisions_by_method": dict(method_counter),
        "member_participation": participation,
    }
