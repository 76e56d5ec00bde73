from __future__ import annotations

from datetime import datetime

import pandas as pd

from ..decisions.models import DecisionStatistics, RestaurantStat
from ..weights.decay import compute_weight, days_until_full_weight
from ..weights.store import SelectionRecord


def build_statistics(
    collection_id: str,
    restaurant_ids: list[str],
    records: dict[str, SelectionRecord],
    total_decisions: int,
    now: datetime,
) -> DecisionStatistics:
    """Per-restaurant selection stats for a collection, heaviest weight first.

    Weights are computed at *now*, so the numbers describe the odds the next
    random pick would use.
    """
    frame = pd.DataFrame({
        "restaurant_id": restaurant_ids,
        "selection_count": [
            records[rid].selection_count if rid in records else 0 for rid in restaurant_ids
        ],
        "current_weight": [
            compute_weight(records[rid].last_selected_at if rid in records else None, now)
            for rid in restaurant_ids
        ],
    }, columns=["restaurant_id", "selection_count", "current_weight"])

    if frame.empty:
        return DecisionStatistics(
            collection_id=collection_id,
            total_decisions=total_decisions,
            total_selections=0,
            average_weight=0.0,
            restaurant_stats=[],
        )

    frame = frame.sort_values(
        ["current_weight", "restaurant_id"], ascending=[False, True], kind="mergesort",
    )

    stats: list[RestaurantStat] = []
    for row in frame.itertuples(index=False):
        record = records.get(row.restaurant_id)
        last = record.last_selected_at if record else None
        stats.append(RestaurantStat(
            restaurant_id=row.restaurant_id,
            selection_count=int(row.selection_count),
            last_selected=last,
            current_weight=round(float(row.current_weight), 4),
            days_until_full_weight=days_until_full_weight(last, now),
        ))

    return DecisionStatistics(
        collection_id=collection_id,
        total_decisions=total_decisions,
        total_selections=int(frame["selection_count"].sum()),
        average_weight=round(float(frame["current_weight"].mean()), 4),
        restaurant_stats=stats,
    )
