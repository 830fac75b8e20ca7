"""HTTP surface: create a planning session, stream its events over SSE, abort it."""

import logging
from collections.abc import AsyncIterator
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse

from src.codec import concept_from_dict, layout_from_dict
from src.orchestrator import PlanningService

logger = logging.getLogger(__name__)


class StartPlanningRequest(BaseModel):
    concept: dict[str, Any]
    layout_manifest: dict[str, Any] = Field(alias="layoutManifest")
    cached_intelligence: dict[str, Any] | None = Field(default=None, alias="cachedIntelligence")


def create_app(service: PlanningService) -> FastAPI:
    """FastAPI app bound to one PlanningService."""
    app = FastAPI(title="Dual Plan", version="0.1.0")
    app.state.service = service

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/api/planning/start")
    async def start_planning(body: StartPlanningRequest) -> dict[str, str]:
        try:
            concept = concept_from_dict(body.concept)
            layout = layout_from_dict(body.layout_manifest)
        except (KeyError, TypeError, ValueError) as exc:
            raise HTTPException(status_code=422, detail=f"Invalid planning request: {exc}") from exc
        session_id = await service.create_session(concept, layout, body.cached_intelligence)
        return {"sessionId": session_id}

    @app.get("/api/planning/stream/{session_id}")
    async def stream_planning(session_id: str, request: Request) -> EventSourceResponse:
        try:
            events = service.stream(session_id)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Unknown session: {session_id}") from None
        except RuntimeError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc

        async def event_generator() -> AsyncIterator[dict]:
            async for event in events:
                if await request.is_disconnected():
                    logger.info("Client disconnected from session %s", session_id)
                    break
                yield {"data": event.to_frame()}

        return EventSourceResponse(event_generator())

    @app.delete("/api/planning/{session_id}")
    async def abort_planning(session_id: str) -> dict[str, bool]:
        return {"aborted": await service.abort(session_id)}

    return app
