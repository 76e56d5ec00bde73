from __future__ import annotations

import json
import logging
from typing import AsyncIterator

import httpx
from pydantic import ValidationError

from ..decisions.config import DEFAULT_DECISION_CONFIG, DecisionConfig
from ..decisions.errors import ServiceUnavailableError
from ..decisions.models import Decision
from .feed import LiveDecisionSource
from .sse import DECISION_EVENT, PING_EVENT, parse_sse

logger = logging.getLogger(__name__)


def _decode_snapshot(data: str) -> Decision:
    try:
        return Decision.model_validate(json.loads(data))
    except (json.JSONDecodeError, ValidationError) as exc:
        raise ServiceUnavailableError(f"Malformed decision snapshot: {exc}") from exc


class DecisionApiClient:
    """HTTP access to a group's decisions: plain fetch and the live stream.

    Transport failures surface as ``ServiceUnavailableError`` so that
    ``LiveDecisionSource`` can fall back to polling.
    """

    def __init__(
        self,
        base_url: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._owns_client = client is None

    async def fetch_group_decisions(self, group_id: str) -> list[Decision]:
        try:
            response = await self._client.get(f"/groups/{group_id}/decisions")
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ServiceUnavailableError(f"Could not load decisions: {exc}") from exc
        try:
            return [Decision.model_validate(d) for d in response.json()["decisions"]]
        except (json.JSONDecodeError, KeyError, TypeError, ValidationError) as exc:
            raise ServiceUnavailableError(f"Malformed decision list: {exc}") from exc

    async def stream_group_decisions(self, group_id: str) -> AsyncIterator[Decision | None]:
        """Yield snapshots from the SSE stream; ``None`` marks a keep-alive."""
        try:
            async with self._client.stream(
                "GET",
                f"/groups/{group_id}/decisions/stream",
                timeout=httpx.Timeout(None, connect=10.0),
            ) as response:
                response.raise_for_status()
                yield None
                async for event, data in parse_sse(response.aiter_lines()):
                    if event == DECISION_EVENT:
                        yield _decode_snapshot(data)
                    elif event == PING_EVENT:
                        yield None
        except httpx.HTTPError as exc:
            raise ServiceUnavailableError(f"Live decision stream failed: {exc}") from exc

    def live_source(
        self, group_id: str, config: DecisionConfig = DEFAULT_DECISION_CONFIG,
    ) -> LiveDecisionSource:
        return LiveDecisionSource(
            group_id,
            subscribe=self.stream_group_decisions,
            fetch=self.fetch_group_decisions,
            config=config,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
