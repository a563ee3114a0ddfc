from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncGenerator, AsyncIterator

from ..config import ChatConfig
from ..errors import ExternalServiceError, ModerationError, SessionClosedError
from ..metrics import STAGE_FAILURES, TURN_COUNT, TURN_LATENCY
from ..utils import get_logger
from .knowledge.db_store import KnowledgeEntry
from .llm_client import Completion, CompletionClient
from .memory import (
    ChatSession,
    Message,
    Role,
    SessionContext,
    SessionManager,
    deep_merge,
)
from .pipeline import (
    Entities,
    IntentResult,
    ModerationGate,
    assemble_messages,
    build_system_instruction,
    classify_intent,
    context_patch,
    extract_entities,
)

logger = get_logger("chat_orchestrator")


class TurnState(str, Enum):
    IDLE = "idle"
    SESSION_RESOLVED = "session_resolved"
    MODERATED = "moderated"
    CLASSIFIED = "classified"
    KNOWLEDGE_GATHERED = "knowledge_gathered"
    PROMPT_BUILT = "prompt_built"
    GENERATED = "generated"
    PERSISTED = "persisted"
    FAILED = "failed"


@dataclass
class TurnResult:
    reply: str
    session_id: str
    intent: str
    entities: dict[str, Any]
    metadata: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "reply": self.reply,
            "session_id": self.session_id,
            "intent": self.intent,
            "entities": self.entities,
            "metadata": self.metadata,
        }


@dataclass
class _Turn:
    """Transient values of one turn; never outlives the call that created it."""

    session_id: str
    state: TurnState = TurnState.IDLE
    session: ChatSession | None = None
    text: str = ""
    intent: IntentResult | None = None
    entities: Entities = field(default_factory=Entities)
    knowledge: list[KnowledgeEntry] = field(default_factory=list)
    prompt: list[dict[str, str]] = field(default_factory=list)
    completion: Completion | None = None

    def advance(self, state: TurnState) -> None:
        logger.debug("Turn %s: %s -> %s", self.session_id, self.state.value, state.value)
        self.state = state

    def fail(self) -> None:
        STAGE_FAILURES.labels(stage=self.state.value).inc()
        logger.debug("Turn %s: %s -> failed", self.session_id, self.state.value)
        self.state = TurnState.FAILED


class SessionLocks:
    """One ``asyncio.Lock`` per session id, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, session_id: str) -> AsyncIterator[None]:
        lock, users = self._locks.get(session_id, (asyncio.Lock(), 0))
        self._locks[session_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[session_id]
            if users <= 1:
                del self._locks[session_id]
            else:
                self._locks[session_id] = (lock, users - 1)


class ChatOrchestrator:
    def __init__(
        self,
        *,
        sessions: SessionManager,
        retriever: Any,
        llm: CompletionClient,
        moderation: ModerationGate,
        config: ChatConfig | None = None,
    ) -> None:
        self.sessions = sessions
        self.retriever = retriever
        self.llm = llm
        self.moderation = moderation
        self.config = config or ChatConfig()
        self.locks = SessionLocks()

    # ── Session lifecycle ────────────────────────────────────────────────────

    async def create_session(self, *, user_id: str | None = None) -> dict[str, Any]:
        session = await self.sessions.create(user_id=user_id)
        return {
            "session_id": session.session_id,
            "user_id": session.user_id,
            "created_at": session.created_at.isoformat(),
        }

    async def get_history(
        self, session_id: str, *, page: int = 1, limit: int = 50
    ) -> dict[str, Any]:
        return await self.sessions.history(session_id, page=page, limit=limit)

    async def end_session(self, session_id: str) -> dict[str, Any]:
        async with self.locks.hold(session_id):
            session = await self.sessions.end(session_id)
        return session.to_dict()

    async def escalate_session(self, session_id: str) -> dict[str, Any]:
        async with self.locks.hold(session_id):
            session = await self.sessions.escalate(session_id)
        return session.to_dict()

    async def submit_feedback(self, session_id: str, feedback: dict[str, Any]) -> dict[str, Any]:
        session = await self.sessions.submit_feedback(session_id, feedback)
        return {"session_id": session.session_id, "feedback": session.feedback}

    async def user_sessions(
        self, user_id: str, *, page: int = 1, limit: int = 20
    ) -> dict[str, Any]:
        return await self.sessions.user_sessions(user_id, page=page, limit=limit)

    # ── Turn pipeline ────────────────────────────────────────────────────────

    async def send_message(
        self, *, session_id: str, message: str, user_id: str | None = None
    ) -> TurnResult:
        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(
                self._run_turn(session_id=session_id, message=message, user_id=user_id),
                timeout=self.config.turn_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            TURN_COUNT.labels(outcome="timeout").inc()
            logger.error(
                "Chat turn timed out after %.0fs session_id=%s",
                self.config.turn_timeout_seconds,
                session_id,
            )
            raise ExternalServiceError("Chat turn timed out", status_code=504) from exc
        except Exception:
            TURN_COUNT.labels(outcome="failed").inc()
            raise
        TURN_COUNT.labels(outcome="persisted").inc()
        TURN_LATENCY.observe(time.perf_counter() - started)
        return result

    async def _run_turn(
        self, *, session_id: str, message: str, user_id: str | None
    ) -> TurnResult:
        turn = _Turn(session_id=session_id)
        async with self.locks.hold(session_id):
            try:
                await self._prepare(turn, message, user_id)
                turn.completion = await self.llm.complete_with_retry(turn.prompt)
                turn.advance(TurnState.GENERATED)
                self.moderation.check_response(turn.completion.content)
                await self._persist(turn, turn.completion.content, turn.completion.to_metadata())
            except Exception:
                turn.fail()
                raise

        completion = turn.completion
        assert turn.intent is not None
        logger.info(
            "Message processed session_id=%s intent=%s tokens=%s response_time_ms=%d",
            session_id,
            turn.intent.intent.value,
            completion.tokens.get("total"),
            completion.response_time_ms,
        )
        return TurnResult(
            reply=completion.content,
            session_id=session_id,
            intent=turn.intent.intent.value,
            entities=turn.entities.to_dict(),
            metadata=completion.to_metadata(),
        )

    async def stream_message(
        self, *, session_id: str, message: str, user_id: str | None = None
    ) -> AsyncGenerator[str, None]:
        """Run the turn up to prompt assembly, then yield reply fragments.

        The turn is persisted only after the provider stream completes; a
        consumer that stops early leaves the session untouched.
        """
        turn = _Turn(session_id=session_id)
        async with self.locks.hold(session_id):
            started = time.perf_counter()
            fragments: list[str] = []
            try:
                await self._prepare(turn, message, user_id)
                stream = self.llm.stream(turn.prompt)
                try:
                    async for fragment in stream:
                        fragments.append(fragment)
                        yield fragment
                finally:
                    await stream.aclose()
                turn.advance(TurnState.GENERATED)
                reply = "".join(fragments)
                self.moderation.check_response(reply)
                await self._persist(
                    turn,
                    reply,
                    {
                        "model": self.llm.config.model,
                        "response_time_ms": int((time.perf_counter() - started) * 1000),
                        "streamed": True,
                    },
                )
            except Exception:
                turn.fail()
                TURN_COUNT.labels(outcome="failed").inc()
                raise
            TURN_COUNT.labels(outcome="persisted").inc()
            TURN_LATENCY.observe(time.perf_counter() - started)

    async def _prepare(self, turn: _Turn, message: str, user_id: str | None) -> None:
        """IDLE through PROMPT_BUILT."""
        turn.session = await self._resolve_session(turn.session_id, user_id)
        turn.advance(TurnState.SESSION_RESOLVED)

        verdict = self.moderation.moderate(message)
        if not verdict.allowed:
            raise ModerationError("Message rejected by moderation", reason=verdict.reason or "")
        turn.text = verdict.sanitized_text
        turn.advance(TurnState.MODERATED)

        turn.intent = classify_intent(turn.text, turn.session.context.purpose)
        turn.entities = extract_entities(turn.text)
        turn.advance(TurnState.CLASSIFIED)

        turn.knowledge = await self.retriever.retrieve(
            turn.text, turn.intent.intent.value, turn.entities
        )
        turn.advance(TurnState.KNOWLEDGE_GATHERED)

        context = SessionContext.from_dict(
            deep_merge(
                turn.session.context.to_dict(), context_patch(turn.intent, turn.entities)
            )
        )
        turn.prompt = assemble_messages(
            system_instruction=build_system_instruction(context),
            knowledge=turn.knowledge,
            history=turn.session.recent_history(self.config.history_window),
            user_message=turn.text,
        )
        turn.advance(TurnState.PROMPT_BUILT)

    async def _resolve_session(self, session_id: str, user_id: str | None) -> ChatSession:
        session = await self.sessions.get(session_id)
        if session is None:
            logger.info("No session for id=%s, creating one", session_id)
            return await self.sessions.create(user_id=user_id, session_id=session_id)
        if not session.is_active:
            raise SessionClosedError(
                f"Session {session_id} is {session.status}; start a new session"
            )
        return session

    async def _persist(self, turn: _Turn, reply: str, generation: dict[str, Any]) -> None:
        assert turn.intent is not None
        intent = turn.intent.intent.value
        entities = turn.entities.to_dict()
        await self.sessions.append_message(
            turn.session_id,
            Message(
                role=Role.USER.value,
                content=turn.text,
                metadata={
                    "intent": intent,
                    "entities": entities,
                    "confidence": turn.intent.confidence,
                },
            ),
        )
        await self.sessions.append_message(
            turn.session_id,
            Message(
                role=Role.ASSISTANT.value,
                content=reply,
                metadata={
                    "intent": intent,
                    "entities": entities,
                    "confidence": turn.intent.confidence,
                    "sources": [k.title for k in turn.knowledge],
                    **generation,
                },
            ),
        )
        await self.sessions.update_state(
            turn.session_id, {"current_topic": intent, "last_intent": intent}
        )
        patch = context_patch(turn.intent, turn.entities)
        if patch:
            await self.sessions.update_context(turn.session_id, patch)
        turn.advance(TurnState.PERSISTED)
