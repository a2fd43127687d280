"""Event sources feeding a ``PlanningController``.

``LocalPlanSource`` runs the negotiation engine in process;
``RemotePlanSource`` posts to a plan server and decodes its event stream.
"""

import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator, Optional

import httpx
from pydantic import ValidationError

from parley.exceptions import TransportError
from parley.lib.sse import EVENT_DELIMITER, data_payload, iter_records
from parley.models.plan_request import PlanRequest
from parley.models.session_event import SessionEvent
from parley.services.negotiation_engine import NegotiationEngine


logger = logging.getLogger(__name__)


class PlanSource(ABC):
    """Turns a plan request into an ordered event stream."""

    @abstractmethod
    def stream(self, request: PlanRequest) -> AsyncIterator[SessionEvent]:
        """Yield the events of one turn-loop run for ``request``."""
        pass


def decode_event_record(record: str) -> Optional[SessionEvent]:
    """Decode one ``data: <json>`` record, returning None if it is unusable."""
    payload = data_payload(record.strip())
    if payload is None:
        return None
    try:
        return SessionEvent.from_json(payload)
    except (ValueError, ValidationError) as e:
        logger.warning(f"Skipping malformed event record: {e}")
        return None


class LocalPlanSource(PlanSource):
    """Runs each request through an in-process ``NegotiationEngine``."""

    def __init__(self, engine: NegotiationEngine):
        self.engine = engine

    async def stream(self, request: PlanRequest) -> AsyncIterator[SessionEvent]:
        async for event in self.engine.negotiate(request):
            yield event


class RemotePlanSource(PlanSource):
    """Consumes the event stream of a remote plan server.

    Args:
        base_url: Server root, e.g. ``http://localhost:8000``
        client: Optional httpx client; one is created and owned otherwise
        timeout: Read timeout for the event stream
    """

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 300.0
    ):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=10.0))

    async def stream(self, request: PlanRequest) -> AsyncIterator[SessionEvent]:
        try:
            async with self._client.stream(
                "POST",
                f"{self.base_url}/api/plan",
                json=request.to_payload(),
                headers={"Accept": "text/event-stream"},
            ) as response:
                if not response.is_success:
                    await response.aread()
                    raise TransportError(_error_detail(response))

                async for record in iter_records(response.aiter_bytes(), EVENT_DELIMITER):
                    event = decode_event_record(record)
                    if event is not None:
                        yield event
        except httpx.HTTPError as e:
            raise TransportError(f"Failed to start planning: {e}") from e

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _error_detail(response: httpx.Response) -> str:
    try:
        detail = response.json().get("error")
    except (ValueError, AttributeError):
        detail = None
    return detail or f"Failed to start planning: HTTP {response.status_code}"
