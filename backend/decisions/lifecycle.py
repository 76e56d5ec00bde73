from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, Sequence

from .config import DEFAULT_DECISION_CONFIG, DecisionConfig
from .errors import InvalidRankingsError
from .models import Decision, DecisionMethod, DecisionStatus

# Valid status transitions
TRANSITIONS: dict[DecisionStatus, frozenset[DecisionStatus]] = {
    DecisionStatus.active: frozenset(
        {DecisionStatus.completed, DecisionStatus.expired, DecisionStatus.closed}
    ),
    DecisionStatus.completed: frozenset(),  # Terminal state
    DecisionStatus.expired: frozenset(),  # Terminal state
    DecisionStatus.closed: frozenset(),  # Terminal state
}


def can_transition(current: DecisionStatus, new: DecisionStatus) -> bool:
    return new in TRANSITIONS.get(current, frozenset())


def is_overdue(decision: Decision, now: datetime) -> bool:
    """True when an active tiered decision is past its voting deadline."""
    return (
        decision.status == DecisionStatus.active
        and decision.method == DecisionMethod.tiered
        and now > decision.deadline
    )


def validate_rankings(
    rankings: Sequence[str],
    collection_restaurant_ids: Iterable[str],
    max_rankings: int = DEFAULT_DECISION_CONFIG.max_rankings,
) -> list[str]:
    """Return *rankings* as a list or raise ``InvalidRankingsError``."""
    if not rankings:
        raise InvalidRankingsError("Please rank at least one restaurant.")
    if len(rankings) > max_rankings:
        raise InvalidRankingsError(
            f"You can rank at most {max_rankings} restaurants.",
            submitted=len(rankings),
        )
    if len(set(rankings)) != len(rankings):
        raise InvalidRankingsError("Each restaurant can only be ranked once.")
    allowed = set(collection_restaurant_ids)
    unknown = [rid for rid in rankings if rid not in allowed]
    if unknown:
        raise InvalidRankingsError(
            "Some ranked restaurants are not in this collection.",
            unknown=unknown,
        )
    return list(rankings)


def is_visible(
    decision: Decision,
    now: datetime,
    config: DecisionConfig = DEFAULT_DECISION_CONFIG,
) -> bool:
    if decision.status == DecisionStatus.active:
        return True
    if decision.status == DecisionStatus.completed:
        return now - decision.visit_date <= timedelta(hours=config.visibility_window_hours)
    return False


def list_visible(
    decisions: Iterable[Decision],
    now: datetime,
    config: DecisionConfig = DEFAULT_DECISION_CONFIG,
) -> list[Decision]:
    """Filter decisions for the primary list.

    Active decisions always show; completed ones only until a day after the
    planned visit; expired and closed ones only appear in history.
    """
    return [d for d in decisions if is_visible(d, now, config)]
