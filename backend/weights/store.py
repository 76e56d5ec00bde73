from __future__ import annotations

import logging
from datetime import datetime

from pydantic import BaseModel, Field

from ..decisions.models import UtcDatetime
from .decay import compute_weight

logger = logging.getLogger(__name__)


class SelectionRecord(BaseModel):
    collection_id: str
    restaurant_id: str
    selection_count: int = Field(default=0, ge=0)
    last_selected_at: UtcDatetime | None = None


class SelectionStore:
    """Per (collection, restaurant) selection history.

    ``record_selection`` is the only mutator. It increments the counter and
    stamps the timestamp in one step with no suspension point in between,
    so concurrent selections on the same collection never lose an update.
    """

    def __init__(self) -> None:
        self._records: dict[tuple[str, str], SelectionRecord] = {}

    async def get_record(self, collection_id: str, restaurant_id: str) -> SelectionRecord | None:
        record = self._records.get((collection_id, restaurant_id))
        return record.model_copy() if record else None

    async def get_records(
        self, collection_id: str, restaurant_ids: list[str],
    ) -> dict[str, SelectionRecord]:
        """Snapshot the records for *restaurant_ids*; missing ones are omitted."""
        found: dict[str, SelectionRecord] = {}
        for rid in restaurant_ids:
            record = self._records.get((collection_id, rid))
            if record is not None:
                found[rid] = record.model_copy()
        return found

    async def list_records(self, collection_id: str) -> list[SelectionRecord]:
        return [
            r.model_copy()
            for (cid, _), r in self._records.items()
            if cid == collection_id
        ]

    async def get_weight(self, collection_id: str, restaurant_id: str, now: datetime) -> float:
        record = self._records.get((collection_id, restaurant_id))
        return compute_weight(record.last_selected_at if record else None, now)

    async def record_selection(
        self, collection_id: str, restaurant_id: str, timestamp: datetime,
    ) -> SelectionRecord:
        key = (collection_id, restaurant_id)
        current = self._records.get(key)
        count = current.selection_count + 1 if current else 1
        updated = SelectionRecord(
            collection_id=collection_id,
            restaurant_id=restaurant_id,
            selection_count=count,
            last_selected_at=timestamp,
        )
        self._records[key] = updated
        logger.debug(
            "Recorded selection of %s in %s (count=%d)", restaurant_id, collection_id, count,
        )
        return updated.model_copy()

    def clear(self) -> None:
        self._records.clear()


selection_store = SelectionStore()


def clear_selection_records() -> None:
    selection_store.clear()
