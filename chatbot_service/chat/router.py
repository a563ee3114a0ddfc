from __future__ import annotations

import json
import logging
import uuid
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from ..errors import AppError
from .orchestrator import ChatOrchestrator

logger = logging.getLogger(__name__)

router_chat = APIRouter(prefix="/chat", tags=["chat"])

# Transport-level ceiling; the configured business limit is enforced by moderation.
_MESSAGE_HARD_LIMIT = 4000


def get_orchestrator(request: Request) -> ChatOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Chat service not initialized")
    return orchestrator


class CreateSessionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str | None = Field(default=None, max_length=64)


class CreateSessionResponse(BaseModel):
    session_id: str
    user_id: str | None
    created_at: str


class ChatMessageRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_id: uuid.UUID
    message: str = Field(min_length=1, max_length=_MESSAGE_HARD_LIMIT)
    user_id: str | None = Field(default=None, max_length=64)


class ChatMessageResponse(BaseModel):
    reply: str
    session_id: str
    intent: str
    entities: dict[str, Any]
    metadata: dict[str, Any]


class FeedbackRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    rating: int | None = Field(default=None, ge=1, le=5)
    helpful: bool | None = None
    resolved: bool | None = None
    comments: str | None = Field(default=None, max_length=1000)


@router_chat.get("/health")
async def chat_health(orchestrator: ChatOrchestrator = Depends(get_orchestrator)) -> dict[str, str]:
    alive = await orchestrator.llm.health()
    return {
        "status": "ok" if alive else "degraded",
        "llm": "ok" if alive else "unreachable",
        "model": orchestrator.llm.config.model,
    }


@router_chat.post("/session", response_model=CreateSessionResponse, status_code=201)
async def create_session(
    body: CreateSessionRequest,
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> CreateSessionResponse:
    payload = await orchestrator.create_session(user_id=body.user_id)
    return CreateSessionResponse(**payload)


@router_chat.post("/message", response_model=ChatMessageResponse)
async def send_message(
    body: ChatMessageRequest,
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> ChatMessageResponse:
    result = await orchestrator.send_message(
        session_id=str(body.session_id),
        message=body.message,
        user_id=body.user_id,
    )
    return ChatMessageResponse(**result.to_dict())


def _sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


@router_chat.post("/message/stream")
async def send_message_stream(
    body: ChatMessageRequest,
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> StreamingResponse:
    """SSE streaming endpoint.

    Each event is a JSON object:
    - ``{"token": "..."}`` partial reply text
    - ``{"done": true, "session_id": "..."}`` stream complete, turn persisted
    - ``{"error": "...", "error_code": "..."}`` turn failed
    """
    session_id = str(body.session_id)

    async def event_stream():
        stream = orchestrator.stream_message(
            session_id=session_id, message=body.message, user_id=body.user_id
        )
        try:
            async for token in stream:
                yield _sse({"token": token})
            yield _sse({"done": True, "session_id": session_id})
        except AppError as exc:
            yield _sse({"error": exc.message, "error_code": exc.error_code})
        except Exception as exc:
            logger.error("SSE stream error: %s", exc)
            yield _sse({"error": "Internal server error", "error_code": "internal_error"})
        finally:
            await stream.aclose()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
            "Connection": "keep-alive",
        },
    )


@router_chat.get("/history/{session_id}")
async def history(
    session_id: uuid.UUID,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=100),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    return await orchestrator.get_history(str(session_id), page=page, limit=limit)


@router_chat.delete("/session/{session_id}")
async def end_session(
    session_id: uuid.UUID,
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    session = await orchestrator.end_session(str(session_id))
    return {
        "session_id": session["session_id"],
        "status": session["status"],
        "ended_at": session["ended_at"],
        "duration": session["duration"],
    }


@router_chat.post("/session/{session_id}/escalate")
async def escalate_session(
    session_id: uuid.UUID,
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    session = await orchestrator.escalate_session(str(session_id))
    return {"session_id": session["session_id"], "status": session["status"]}


@router_chat.post("/feedback/{session_id}")
async def submit_feedback(
    session_id: uuid.UUID,
    body: FeedbackRequest,
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    return await orchestrator.submit_feedback(
        str(session_id), body.model_dump(exclude_none=True)
    )


@router_chat.get("/sessions")
async def user_sessions(
    user_id: str = Query(min_length=1, max_length=64),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    return await orchestrator.user_sessions(user_id, page=page, limit=limit)
