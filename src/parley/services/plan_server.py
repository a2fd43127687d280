"""
HTTP surface for Parley.

Exposes the negotiation engine as a FastAPI application:

- ``POST /api/plan`` runs one turn loop and streams its events as
  ``text/event-stream`` records
- ``GET /api/models`` lists provider models, grouped by provider
- ``GET /health`` reports liveness
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from parley import __version__
from parley.exceptions import ProviderError
from parley.lib.config import ParleyConfig
from parley.lib.logging_config import get_audit_logger
from parley.models.plan_request import PlanRequest, missing_required_fields
from parley.models.session_event import SessionEvent
from parley.services.completion_provider import (
    CompletionProvider,
    OpenRouterProvider,
    group_models_by_provider,
)
from parley.services.negotiation_engine import NegotiationEngine


logger = logging.getLogger(__name__)
audit_logger = get_audit_logger()

MISSING_FIELDS_ERROR = "Missing required fields"
MISSING_API_KEY_ERROR = "OpenRouter API key not configured"
MODELS_FETCH_ERROR = "Failed to fetch models"

EVENT_STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


async def encode_events(events: AsyncIterator[SessionEvent], session_label: str) -> AsyncIterator[str]:
    """Serialize events as transport records, logging early disconnects."""
    delivered = 0
    finished = False
    try:
        async for event in events:
            delivered += 1
            finished = event.is_terminal
            yield event.to_record()
    finally:
        if not finished:
            logger.info(f"Event stream {session_label} closed after {delivered} events without a terminal event")


def create_app(
    config: Optional[ParleyConfig] = None,
    provider: Optional[CompletionProvider] = None
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        config: Parley configuration; defaults are used when omitted
        provider: Completion provider; an ``OpenRouterProvider`` built from
            ``config.provider`` is created and owned by the app otherwise
    """
    config = config or ParleyConfig()
    owns_provider = provider is None
    provider = provider or OpenRouterProvider.from_config(config.provider)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Plan server started")
        yield
        if owns_provider:
            await provider.aclose()
        logger.info("Plan server stopped")

    app = FastAPI(title="Parley", version=__version__, lifespan=lifespan)
    app.state.config = config
    app.state.provider = provider

    if config.server.enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.server.cors_origins or ["*"],
            allow_methods=["GET", "POST"],
            allow_headers=["*"],
        )

    @app.post("/api/plan")
    async def plan(request: Request):
        api_key = config.provider.api_key
        if not api_key:
            logger.error("Plan request rejected: no provider API key configured")
            return _error(MISSING_API_KEY_ERROR, 500)

        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            body = None

        if missing_required_fields(body):
            return _error(MISSING_FIELDS_ERROR, 400)

        try:
            plan_request = PlanRequest.model_validate(body)
        except ValidationError as e:
            logger.warning(f"Invalid plan request: {e}")
            return _error(f"Invalid request: {e.errors()[0]['msg']}", 400)

        engine = NegotiationEngine.from_config(provider, config, api_key=api_key)
        session = engine.create_session(plan_request)
        audit_logger.log_session_event(
            "plan_requested",
            session.session_id,
            action="intervene" if plan_request.human_input else "plan",
            metadata={"history_length": len(plan_request.history)},
        )

        return StreamingResponse(
            encode_events(engine.stream(session, plan_request.human_input), session.session_id),
            media_type="text/event-stream",
            headers=EVENT_STREAM_HEADERS,
        )

    @app.get("/api/models")
    async def models():
        api_key = config.provider.api_key
        if not api_key:
            return _error(MISSING_API_KEY_ERROR, 500)

        try:
            available = await provider.list_models(api_key)
        except ProviderError as e:
            logger.error(f"Error fetching models: {e}")
            return _error(MODELS_FETCH_ERROR, 500)

        grouped = group_models_by_provider(available)
        return {
            "models": [m.model_dump() for m in available],
            "grouped": {
                name: [m.model_dump() for m in entries]
                for name, entries in grouped.items()
            },
        }

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "version": __version__,
            "provider_configured": bool(config.provider.api_key),
        }

    return app
