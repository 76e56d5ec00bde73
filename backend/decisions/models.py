from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated

from pydantic import AfterValidator, BaseModel, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive timestamps are taken to be UTC; aware ones are converted to it."""
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


class DecisionScope(str, Enum):
    personal = "personal"
    group = "group"


class DecisionMethod(str, Enum):
    random = "random"
    tiered = "tiered"
    manual = "manual"


class DecisionStatus(str, Enum):
    active = "active"
    completed = "completed"
    expired = "expired"
    closed = "closed"


TERMINAL_STATUSES = frozenset(
    {DecisionStatus.completed, DecisionStatus.expired, DecisionStatus.closed}
)


class Ballot(BaseModel):
    submitted_at: UtcDatetime
    rankings: list[str]


class DecisionResult(BaseModel):
    restaurant_id: str
    selected_at: UtcDatetime
    reasoning: str
    weights: dict[str, float] = Field(default_factory=dict)


class Decision(BaseModel):
    id: str
    scope: DecisionScope
    collection_id: str
    group_id: str | None = None
    created_by: str
    method: DecisionMethod
    status: DecisionStatus
    deadline: UtcDatetime
    visit_date: UtcDatetime
    participants: list[str] = Field(default_factory=list)
    votes: dict[str, Ballot] = Field(default_factory=dict)
    result: DecisionResult | None = None
    created_at: UtcDatetime
    updated_at: UtcDatetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


# ── Request bodies ───────────────────────────────────────────────────────


class CreateDecisionRequest(BaseModel):
    scope: DecisionScope = DecisionScope.personal
    collection_id: str = Field(..., min_length=1)
    method: DecisionMethod = DecisionMethod.random
    user_id: str = Field(..., min_length=1)
    group_id: str | None = None
    participants: list[str] | None = None
    visit_date: UtcDatetime
    deadline_hours: int | None = Field(default=None, ge=1, le=336)

    @model_validator(mode="after")
    def _check_scope(self) -> "CreateDecisionRequest":
        if self.scope == DecisionScope.group and not self.group_id:
            raise ValueError("group_id is required for group decisions")
        if self.method == DecisionMethod.manual:
            raise ValueError("manual decisions are recorded via /decisions/manual")
        return self


class VoteRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    rankings: list[str]


class ActingUserRequest(BaseModel):
    acting_user_id: str = Field(..., min_length=1)


class RandomSelectRequest(BaseModel):
    collection_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    visit_date: UtcDatetime


class ManualDecisionRequest(BaseModel):
    collection_id: str = Field(..., min_length=1)
    restaurant_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    visit_date: UtcDatetime
    scope: DecisionScope = DecisionScope.personal
    group_id: str | None = None
    notes: str | None = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def _check_scope(self) -> "ManualDecisionRequest":
        if self.scope == DecisionScope.group and not self.group_id:
            raise ValueError("group_id is required for group decisions")
        return self


# ── Responses ────────────────────────────────────────────────────────────


class RandomSelectResponse(BaseModel):
    decision_id: str
    restaurant_id: str
    reasoning: str
    weight: float
    previous_selections: int


class RestaurantStat(BaseModel):
    restaurant_id: str
    selection_count: int
    last_selected: UtcDatetime | None = None
    current_weight: float
    days_until_full_weight: int


class DecisionStatistics(BaseModel):
    collection_id: str
    total_decisions: int
    total_selections: int
    average_weight: float
    restaurant_stats: list[RestaurantStat]


class DecisionList(BaseModel):
    decisions: list[Decision]


class DecisionHistory(BaseModel):
    decisions: list[Decision]
    total: int
    limit: int
    offset: int
