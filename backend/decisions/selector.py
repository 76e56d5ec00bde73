from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Sequence

import numpy as np

from ..weights.decay import compute_weight
from ..weights.store import SelectionStore
from .errors import EmptyCandidateSetError
from .models import as_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Candidate:
    restaurant_id: str
    weight: float
    selection_count: int = 0


@dataclass(frozen=True)
class SelectionOutcome:
    restaurant_id: str
    weight: float
    previous_selections: int
    weights: dict[str, float] = field(default_factory=dict)

    @property
    def reasoning(self) -> str:
        return format_selection_reasoning(self.weight, self.previous_selections)


def format_selection_reasoning(weight: float, previous_selections: int) -> str:
    return (
        f"Selected using weighted random algorithm. Weight: {weight:.2f}, "
        f"Previous selections: {previous_selections}"
    )


def weighted_draw(
    candidates: Sequence[Candidate],
    rng: np.random.Generator,
) -> Candidate:
    """Pick one candidate with probability proportional to its weight.

    Walks the cumulative weights in the given order and returns the first
    candidate whose cumulative weight exceeds a uniform draw in
    ``[0, total)``. Falls back to a uniform pick when the weights sum to
    nothing usable.
    """
    if not candidates:
        raise EmptyCandidateSetError()

    weights = np.array([c.weight for c in candidates], dtype=float)
    cumulative = np.cumsum(weights)
    total = float(cumulative[-1])

    if total <= 0.0 or not math.isfinite(total):
        logger.warning("Degenerate weights (total=%r), using uniform selection", total)
        return candidates[int(rng.integers(len(candidates)))]

    draw = rng.random() * total
    index = int(np.searchsorted(cumulative, draw, side="right"))
    # Floating error can push the draw onto the last boundary
    return candidates[min(index, len(candidates) - 1)]


async def select(
    collection_id: str,
    restaurant_ids: Sequence[str],
    now: datetime | None = None,
    *,
    store: SelectionStore,
    rng: np.random.Generator | None = None,
) -> SelectionOutcome:
    """Draw a restaurant from *restaurant_ids* and record the pick.

    The weights and counts reported in the outcome are the ones the draw
    used, taken from a single snapshot of the selection history.
    """
    now = as_utc(now) if now else utcnow()
    rng = rng or np.random.default_rng()

    ordered = list(dict.fromkeys(restaurant_ids))
    if not ordered:
        raise EmptyCandidateSetError()

    records = await store.get_records(collection_id, ordered)
    candidates = [
        Candidate(
            restaurant_id=rid,
            weight=compute_weight(records[rid].last_selected_at if rid in records else None, now),
            selection_count=records[rid].selection_count if rid in records else 0,
        )
        for rid in ordered
    ]

    chosen = weighted_draw(candidates, rng)
    await store.record_selection(collection_id, chosen.restaurant_id, now)

    logger.info(
        "Random selection in %s picked %s (weight=%.2f, previous=%d)",
        collection_id, chosen.restaurant_id, chosen.weight, chosen.selection_count,
    )
    return SelectionOutcome(
        restaurant_id=chosen.restaurant_id,
        weight=chosen.weight,
        previous_selections=chosen.selection_count,
        weights={c.restaurant_id: c.weight for c in candidates},
    )
