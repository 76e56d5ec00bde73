from __future__ import annotations

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from backend.app import app
from backend.catalog.directory import Collection, Group, catalog, clear_catalog
from backend.decisions.errors import ServiceUnavailableError
from backend.decisions.models import Decision, DecisionMethod, DecisionScope, DecisionStatus
from backend.decisions.repository import clear_decisions
from backend.realtime.client import DecisionApiClient
from backend.realtime.feed import LiveDecisionSource
from backend.realtime.sse import decision_event, format_event

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _decision(decision_id="d1") -> Decision:
    return Decision(
        id=decision_id,
        scope=DecisionScope.group,
        collection_id="c1",
        group_id="g1",
        created_by="alice",
        method=DecisionMethod.tiered,
        status=DecisionStatus.active,
        deadline=NOW + timedelta(hours=24),
        visit_date=NOW + timedelta(days=1),
        participants=["alice"],
        created_at=NOW,
        updated_at=NOW,
    )


def _api(handler) -> DecisionApiClient:
    transport = httpx.MockTransport(handler)
    return DecisionApiClient(
        "http://decisions.test",
        client=httpx.AsyncClient(transport=transport, base_url="http://decisions.test"),
    )


# ── Fetch ────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_fetch_group_decisions():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/groups/g1/decisions"
        return httpx.Response(200, json={"decisions": [_decision().model_dump(mode="json")]})

    api = _api(handler)
    decisions = await api.fetch_group_decisions("g1")
    assert [d.id for d in decisions] == ["d1"]


@pytest.mark.asyncio
async def test_fetch_failure_is_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ServiceUnavailableError):
        await _api(handler).fetch_group_decisions("g1")


@pytest.mark.asyncio
async def test_fetch_server_error_is_transient():
    api = _api(lambda request: httpx.Response(502))
    with pytest.raises(ServiceUnavailableError):
        await api.fetch_group_decisions("g1")


@pytest.mark.asyncio
async def test_fetch_against_app():
    clear_catalog()
    clear_decisions()
    catalog.put_collection(Collection(id="c1", name="Lunch", restaurant_ids=["r1"]))
    catalog.put_group(Group(id="g1", name="Team", admin_ids=["alice"]))

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://app.test") as http:
        await http.post("/decisions", json={
            "scope": "group", "collection_id": "c1", "method": "tiered",
            "user_id": "alice", "group_id": "g1", "visit_date": NOW.isoformat(),
        })
        decisions = await DecisionApiClient("http://app.test", client=http).fetch_group_decisions("g1")

    assert len(decisions) == 1
    assert decisions[0].method == DecisionMethod.tiered


# ── Stream ───────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_stream_yields_snapshots_and_keepalives():
    body = decision_event(_decision()) + format_event("ping", {"timestamp": NOW.isoformat()})

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/groups/g1/decisions/stream"
        return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

    items = [item async for item in _api(handler).stream_group_decisions("g1")]
    assert items[0] is None
    assert items[1].id == "d1"
    assert items[2] is None
    assert len(items) == 3


@pytest.mark.asyncio
async def test_stream_error_is_transient():
    api = _api(lambda request: httpx.Response(503))
    with pytest.raises(ServiceUnavailableError):
        async for _ in api.stream_group_decisions("g1"):
            pass


@pytest.mark.asyncio
async def test_live_source_uses_client_calls():
    api = _api(lambda request: httpx.Response(200, json={"decisions": []}))
    source = api.live_source("g1")
    assert isinstance(source, LiveDecisionSource)
    assert source.group_id == "g1"
    await api.aclose()


@pytest.mark.asyncio
async def test_malformed_stream_frame_is_transient():
    body = "event: decision\ndata: {not json\n\n"
    api = _api(lambda request: httpx.Response(
        200, text=body, headers={"content-type": "text/event-stream"},
    ))
    items = []
    with pytest.raises(ServiceUnavailableError):
        async for item in api.stream_group_decisions("g1"):
            items.append(item)
    assert items == [None]


@pytest.mark.asyncio
async def test_invalid_snapshot_frame_is_transient():
    body = 'event: decision\ndata: {"id": "d1"}\n\n'
    api = _api(lambda request: httpx.Response(
        200, text=body, headers={"content-type": "text/event-stream"},
    ))
    with pytest.raises(ServiceUnavailableError):
        async for _ in api.stream_group_decisions("g1"):
            pass


@pytest.mark.asyncio
async def test_malformed_list_is_transient():
    api = _api(lambda request: httpx.Response(200, json={"unexpected": []}))
    with pytest.raises(ServiceUnavailableError):
        await api.fetch_group_decisions("g1")
