from __future__ import annotations

import logging
from datetime import datetime

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse

from .analytics.aggregator import compute_analytics
from .analytics.store import get_events
from .decisions.config import DEFAULT_DECISION_CONFIG
from .decisions.errors import DecisionError, ServiceUnavailableError
from .decisions.models import (
    ActingUserRequest,
    CreateDecisionRequest,
    Decision,
    DecisionHistory,
    DecisionList,
    DecisionScope,
    DecisionStatistics,
    ManualDecisionRequest,
    RandomSelectRequest,
    RandomSelectResponse,
    VoteRequest,
    as_utc,
)
from .decisions.service import decision_service
from .realtime.broadcaster import broadcaster
from .realtime.sse import decision_event_stream

logger = logging.getLogger(__name__)

app = FastAPI(title="Restaurant Decision API", version="1.0.0")


# ── Error mapping ────────────────────────────────────────────────────────


@app.exception_handler(DecisionError)
async def decision_error_handler(request: Request, exc: DecisionError) -> JSONResponse:
    logger.info("%s %s rejected: %s", request.method, request.url.path, exc.code)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(ServiceUnavailableError)
async def unavailable_handler(request: Request, exc: ServiceUnavailableError) -> JSONResponse:
    logger.warning("%s %s unavailable: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers={"Retry-After": "5"},
    )


# ── Public endpoints ─────────────────────────────────────────────────────


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


# ── Decisions ────────────────────────────────────────────────────────────


@app.post("/decisions", response_model=Decision)
async def create_decision(body: CreateDecisionRequest) -> Decision:
    return await decision_service.create(
        scope=body.scope,
        collection_id=body.collection_id,
        method=body.method,
        user_id=body.user_id,
        visit_date=body.visit_date,
        group_id=body.group_id,
        participants=body.participants,
        deadline_hours=body.deadline_hours,
    )


@app.get("/decisions", response_model=DecisionStatistics)
async def decision_statistics(collection_id: str = Query(..., min_length=1)) -> DecisionStatistics:
    return await decision_service.statistics(collection_id)


@app.get("/decisions/history", response_model=DecisionHistory)
async def decision_history(
    scope: DecisionScope | None = None,
    collection_id: str | None = None,
    group_id: str | None = None,
    restaurant_id: str | None = None,
    user_id: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    limit: int = Query(default=DEFAULT_DECISION_CONFIG.history_limit, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> DecisionHistory:
    start_date = as_utc(start_date) if start_date else None
    end_date = as_utc(end_date) if end_date else None
    if start_date and end_date and start_date > end_date:
        raise HTTPException(status_code=400, detail="start_date must not be after end_date")
    return await decision_service.history(
        scope=scope,
        collection_id=collection_id,
        group_id=group_id,
        restaurant_id=restaurant_id,
        user_id=user_id,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        offset=offset,
    )


@app.post("/decisions/random-select", response_model=RandomSelectResponse)
async def random_select(body: RandomSelectRequest) -> RandomSelectResponse:
    decision, outcome = await decision_service.random_select(
        body.collection_id, body.user_id, body.visit_date,
    )
    return RandomSelectResponse(
        decision_id=decision.id,
        restaurant_id=outcome.restaurant_id,
        reasoning=outcome.reasoning,
        weight=outcome.weight,
        previous_selections=outcome.previous_selections,
    )


@app.post("/decisions/manual", response_model=Decision)
async def manual_decision(body: ManualDecisionRequest) -> Decision:
    return await decision_service.record_manual(
        collection_id=body.collection_id,
        restaurant_id=body.restaurant_id,
        user_id=body.user_id,
        visit_date=body.visit_date,
        scope=body.scope,
        group_id=body.group_id,
        notes=body.notes,
    )


@app.get("/decisions/{decision_id}", response_model=Decision)
async def get_decision(decision_id: str) -> Decision:
    return await decision_service.get(decision_id)


@app.post("/decisions/{decision_id}/votes", response_model=Decision)
async def submit_vote(decision_id: str, body: VoteRequest) -> Decision:
    return await decision_service.submit_vote(decision_id, body.user_id, body.rankings)


@app.put("/decisions/{decision_id}/votes", response_model=Decision)
async def complete_decision(decision_id: str, body: ActingUserRequest) -> Decision:
    return await decision_service.complete(decision_id, body.acting_user_id)


@app.delete("/decisions/{decision_id}/votes", response_model=Decision)
async def close_decision(decision_id: str, body: ActingUserRequest) -> Decision:
    return await decision_service.close(decision_id, body.acting_user_id)


# ── Groups ───────────────────────────────────────────────────────────────


@app.get("/groups/{group_id}/decisions", response_model=DecisionList)
async def group_decisions(group_id: str, visible_only: bool = False) -> DecisionList:
    decisions = await decision_service.list_group_decisions(group_id, visible_only=visible_only)
    return DecisionList(decisions=decisions)


@app.get("/groups/{group_id}/decisions/stream")
async def stream_group_decisions(group_id: str, request: Request) -> StreamingResponse:
    """Push every change to the group's decisions as Server-Sent Events.

    Each ``decision`` event carries a full snapshot. ``ping`` events keep
    idle connections open.
    """
    subscription = broadcaster.subscribe(group_id)
    try:
        initial = await decision_service.list_group_decisions(group_id)
    except Exception:
        subscription.close()
        raise

    return StreamingResponse(
        decision_event_stream(
            subscription,
            initial,
            request.is_disconnected,
            DEFAULT_DECISION_CONFIG.stream_heartbeat_seconds,
        ),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@app.get("/groups/{group_id}/analytics")
async def group_analytics(group_id: str) -> dict:
    return await decision_service.group_analytics(group_id)


# ── Engine analytics ─────────────────────────────────────────────────────


@app.get("/analytics")
def analytics() -> dict:
    return compute_analytics(get_events())
