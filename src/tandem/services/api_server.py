"""HTTP surface for the orchestrator."""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, Any, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from .. import __version__
from ..lib.errors import OrchestrationError
from ..models.routing import PrivacyTier
from .conversation_log import ChunkPublished, LogSubscription, TurnAppended
from .orchestrator import Orchestrator


logger = logging.getLogger(__name__)

# Error code -> HTTP status; unlisted codes map to 400
ERROR_STATUS = {
    "unknown_session": 404,
    "unknown_action": 404,
    "unknown_task": 404,
    "session_archived": 409,
    "session_locked": 409,
    "already_resolved": 409,
    "action_expired": 410,
    "no_capable_adapter": 503,
    "inference_timeout": 504,
    "inference_failed": 502,
}

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class CreateSessionRequest(BaseModel):
    """Request schema for opening a session."""

    project_id: str = Field(..., min_length=1, max_length=200, description="Project the session belongs to")
    local_only: bool = Field(default=False, description="Never route this session to remote backends")
    prefer_tier: Optional[PrivacyTier] = Field(None, description="Preferred backend tier")

    class Config:
        """Pydantic configuration."""

        use_enum_values = True


class SubmitTurnRequest(BaseModel):
    """Request schema for submitting a turn."""

    author: str = Field(default="user", description="user, chinga_bava or tanganaka_san")
    content: str = Field(default="", max_length=100000, description="Turn text")
    intent: Optional[Dict[str, Any]] = Field(None, description="Structured intent")
    in_reply_to: Optional[int] = Field(None, ge=1, description="Sequence number the turn answers")


class DecisionRequest(BaseModel):
    """Request schema for approving or rejecting an action."""

    approved: bool = Field(..., description="Approve (true) or reject (false)")
    decided_by: str = Field(default="user", description="Who decided")


def _sse_event(event: str, data: Dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


def _event_payload(event) -> Dict[str, Any]:
    if isinstance(event, TurnAppended):
        return event.turn.to_record()
    if isinstance(event, ChunkPublished):
        return {
            "session_id": event.session_id,
            "parent_sequence": event.parent_sequence,
            "attempt": event.attempt,
            "index": event.chunk.index,
            "text": event.chunk.text,
        }
    return {}


def create_app(orchestrator: Orchestrator, manage_lifecycle: bool = True) -> FastAPI:
    """
    Build the FastAPI application around an orchestrator.

    Args:
        orchestrator: Engine to expose
        manage_lifecycle: Start and shut down the orchestrator with the app
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            await orchestrator.start()
            await orchestrator.executor.start()
        yield
        if manage_lifecycle:
            await orchestrator.executor.stop()
            await orchestrator.shutdown()

    app = FastAPI(
        title="Tandem Orchestrator",
        description="Two-agent conversation orchestrator with capability-based model routing",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator

    @app.exception_handler(OrchestrationError)
    async def orchestration_error_handler(request: Request, exc: OrchestrationError) -> JSONResponse:
        status = ERROR_STATUS.get(exc.code, 400)
        if status >= 500:
            logger.warning(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
        return JSONResponse(status_code=status, content=jsonable_encoder({"error": exc.to_dict()}))

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={"error": {"code": "invalid_request", "message": str(exc), "retryable": False}}
        )

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {
            "status": "ok",
            "version": __version__,
            "orchestrator": orchestrator.owner_id,
            "sessions": len(orchestrator.list_sessions()),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/backends")
    async def list_backends() -> Dict[str, Any]:
        return {"backends": orchestrator.describe_backends()}

    @app.post("/sessions", status_code=201)
    async def open_session(body: CreateSessionRequest) -> Dict[str, Any]:
        default = orchestrator.router.default_policy
        policy = default.model_copy(update={
            "local_only": body.local_only or default.local_only,
            "prefer_tier": body.prefer_tier or default.prefer_tier,
        })
        session = await orchestrator.open_session(body.project_id, policy)
        return session.model_dump(mode="json")

    @app.get("/sessions")
    async def list_sessions(include_archived: bool = False) -> Dict[str, Any]:
        sessions = orchestrator.list_sessions(include_archived)
        return {"sessions": [s.model_dump(mode="json") for s in sessions]}

    @app.get("/sessions/{session_id}")
    async def get_session(session_id: str) -> Dict[str, Any]:
        return orchestrator.get_session(session_id).model_dump(mode="json")

    @app.delete("/sessions/{session_id}")
    async def archive_session(session_id: str) -> Dict[str, Any]:
        session = await orchestrator.archive_session(session_id)
        return session.model_dump(mode="json")

    @app.post("/sessions/{session_id}/turns")
    async def submit_turn(session_id: str, body: SubmitTurnRequest) -> Dict[str, Any]:
        interaction = await orchestrator.submit_turn(
            session_id,
            body.author,
            body.content,
            intent=body.intent,
            in_reply_to=body.in_reply_to
        )
        return interaction.model_dump(mode="json")

    @app.get("/sessions/{session_id}/turns")
    async def read_turns(session_id: str, from_seq: int = 1, to_seq: Optional[int] = None) -> Dict[str, Any]:
        turns = orchestrator.read_range(session_id, from_seq, to_seq)
        return {"session_id": session_id, "turns": [t.to_record() for t in turns]}

    @app.get("/sessions/{session_id}/tasks")
    async def list_tasks(session_id: str) -> Dict[str, Any]:
        tasks = orchestrator.list_tasks(session_id)
        return {"session_id": session_id, "tasks": [t.model_dump(mode="json") for t in tasks]}

    @app.get("/sessions/{session_id}/actions")
    async def pending_actions(session_id: str) -> Dict[str, Any]:
        actions = orchestrator.pending_actions(session_id)
        return {"session_id": session_id, "actions": [a.model_dump(mode="json") for a in actions]}

    @app.get("/sessions/{session_id}/events")
    async def stream_events(session_id: str, request: Request, replay_from: Optional[int] = None) -> StreamingResponse:
        """
        Server-sent events for a session.

        Events:
          - turn: An appended turn
          - chunk: A partial inference chunk for a pending response
          - done: The session was archived or the stream closed
        """
        subscription = orchestrator.subscribe(session_id, replay_from)
        return StreamingResponse(
            _event_stream(subscription, request),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    @app.get("/actions/{action_id}")
    async def get_action(action_id: str) -> Dict[str, Any]:
        return orchestrator.get_action(action_id).model_dump(mode="json")

    @app.post("/actions/{action_id}/decision")
    async def decide_action(action_id: str, body: DecisionRequest) -> JSONResponse:
        decision = await orchestrator.decide_action(action_id, body.approved, body.decided_by)
        status = 200 if decision.accepted else ERROR_STATUS.get(decision.error_code, 400)
        return JSONResponse(status_code=status, content=decision.model_dump(mode="json"))

    return app


async def _event_stream(subscription: LogSubscription, request: Request):
    try:
        while True:
            try:
                event = await subscription.get(timeout=1.0)
            except asyncio.TimeoutError:
                if await request.is_disconnected():
                    break
                continue
            except StopAsyncIteration:
                break
            yield _sse_event(event.event_type, _event_payload(event))
        yield _sse_event("done", {})
    finally:
        subscription.close()
