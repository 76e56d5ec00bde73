"""
Ranked-choice tally for tiered decisions.

Each ballot ranks up to three restaurants. Positions earn 3, 2 and 1 points;
the restaurant with the most points wins. Ties are broken, in order, by:

1. more first-choice votes,
2. fewer past selections in the collection (prefer something new),
3. restaurant id, so identical input always yields the identical winner.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Sequence

from .errors import NoWinnerError

POSITION_POINTS = (3, 2, 1)


@dataclass(frozen=True)
class RestaurantScore:
    restaurant_id: str
    points: int = 0
    first: int = 0
    second: int = 0
    third: int = 0


@dataclass(frozen=True)
class TallyResult:
    winner_id: str
    points: int
    margin: int
    runner_up_id: str | None
    ballot_count: int
    scores: tuple[RestaurantScore, ...]
    tie_break: str | None
    reasoning: str

    def points_by_restaurant(self) -> dict[str, float]:
        return {s.restaurant_id: float(s.points) for s in self.scores}


def score_ballots(ballots: Mapping[str, Sequence[str]]) -> dict[str, RestaurantScore]:
    totals: dict[str, list[int]] = {}
    for user_id in sorted(ballots):
        for position, rid in enumerate(ballots[user_id][: len(POSITION_POINTS)]):
            row = totals.setdefault(rid, [0, 0, 0, 0])
            row[0] += POSITION_POINTS[position]
            row[position + 1] += 1
    return {
        rid: RestaurantScore(rid, points=r[0], first=r[1], second=r[2], third=r[3])
        for rid, r in totals.items()
    }


def _plural(n: int, word: str) -> str:
    return f"{n} {word}" if n == 1 else f"{n} {word}s"


def _tie_break_rule(
    winner: RestaurantScore,
    runner_up: RestaurantScore | None,
    counts: Mapping[str, int],
) -> str | None:
    if runner_up is None or winner.points != runner_up.points:
        return None
    if winner.first != runner_up.first:
        return "first_choice"
    if counts.get(winner.restaurant_id, 0) != counts.get(runner_up.restaurant_id, 0):
        return "novelty"
    return "restaurant_id"


def _reasoning(
    winner: RestaurantScore,
    runner_up: RestaurantScore | None,
    ballot_count: int,
    tie_break: str | None,
    counts: Mapping[str, int],
) -> str:
    base = (
        f"Most popular choice among group members: "
        f"{_plural(winner.points, 'point')} from {_plural(ballot_count, 'ballot')}"
    )
    if runner_up is None:
        return f"{base}."
    if tie_break is None:
        margin = winner.points - runner_up.points
        return f"{base}, {_plural(margin, 'point')} ahead of the next choice."
    if tie_break == "first_choice":
        return (
            f"{base}, tied on points and ahead on first-choice votes "
            f"({winner.first} vs {runner_up.first})."
        )
    if tie_break == "novelty":
        return (
            f"{base}, tied on points and first choices; picked less often before "
            f"({counts.get(winner.restaurant_id, 0)} vs {counts.get(runner_up.restaurant_id, 0)})."
        )
    return f"{base}, tied with another restaurant on every measure."


def tally(
    ballots: Mapping[str, Sequence[str]],
    selection_counts: Mapping[str, int] | None = None,
) -> TallyResult:
    """Score *ballots* and pick a winner.

    ``selection_counts`` maps restaurant id to how often it was picked in
    the collection before; it only matters for ties.
    """
    if not ballots:
        raise NoWinnerError()

    counts = selection_counts or {}
    scores = score_ballots(ballots)
    ranked = sorted(
        scores.values(),
        key=lambda s: (-s.points, -s.first, counts.get(s.restaurant_id, 0), s.restaurant_id),
    )
    if not ranked:
        raise NoWinnerError("None of the ballots rank a restaurant.")

    winner = ranked[0]
    runner_up = ranked[1] if len(ranked) > 1 else None
    rule = _tie_break_rule(winner, runner_up, counts)

    return TallyResult(
        winner_id=winner.restaurant_id,
        points=winner.points,
        margin=winner.points - runner_up.points if runner_up else winner.points,
        runner_up_id=runner_up.restaurant_id if runner_up else None,
        ballot_count=len(ballots),
        scores=tuple(ranked),
        tie_break=rule,
        reasoning=_reasoning(winner, runner_up, len(ballots), rule, counts),
    )
