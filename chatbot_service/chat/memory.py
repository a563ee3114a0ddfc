from __future__ import annotations

import asyncio
import copy
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from functools import partial
from typing import Any, Callable

from ..errors import NotFoundError
from ..metrics import CACHE_ERRORS
from ..utils import get_logger, parse_datetime, utcnow

logger = get_logger("chat_memory")


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    ENDED = "ended"
    ESCALATED = "escalated"


class Purpose(str, Enum):
    GENERAL = "general"
    BUILD_HELP = "build_help"
    SUPPORT = "support"
    PRODUCT_INQUIRY = "product_inquiry"


class ExperienceLevel(str, Enum):
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    EXPERT = "expert"


@dataclass(frozen=True)
class Message:
    role: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "metadata": self.metadata,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Message":
        return cls(
            role=d["role"],
            content=d["content"],
            metadata=d.get("metadata") or {},
            timestamp=parse_datetime(d.get("timestamp")) or utcnow(),
        )

    def to_prompt_message(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class UserProfile:
    experience_level: str = ExperienceLevel.BEGINNER.value
    preferences: dict[str, Any] = field(default_factory=dict)


@dataclass
class SessionContext:
    purpose: str = Purpose.GENERAL.value
    user_profile: UserProfile = field(default_factory=UserProfile)

    def to_dict(self) -> dict[str, Any]:
        return {
            "purpose": self.purpose,
            "user_profile": {
                "experience_level": self.user_profile.experience_level,
                "preferences": self.user_profile.preferences,
            },
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any] | None) -> "SessionContext":
        d = d or {}
        profile = d.get("user_profile") or {}
        return cls(
            purpose=d.get("purpose") or Purpose.GENERAL.value,
            user_profile=UserProfile(
                experience_level=profile.get("experience_level")
                or ExperienceLevel.BEGINNER.value,
                preferences=dict(profile.get("preferences") or {}),
            ),
        )


@dataclass
class SessionState:
    current_topic: str | None = None
    last_intent: str | None = None
    pending_actions: list[Any] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_topic": self.current_topic,
            "last_intent": self.last_intent,
            "pending_actions": list(self.pending_actions),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any] | None) -> "SessionState":
        d = d or {}
        return cls(
            current_topic=d.get("current_topic"),
            last_intent=d.get("last_intent"),
            pending_actions=list(d.get("pending_actions") or []),
        )


@dataclass
class ChatSession:
    """One conversation.

    ``messages`` holds the most recent turns only (bounded by the session
    manager's history size); the full transcript is read through
    ``SessionManager.history``.
    """

    session_id: str
    user_id: str | None = None
    context: SessionContext = field(default_factory=SessionContext)
    state: SessionState = field(default_factory=SessionState)
    messages: list[Message] = field(default_factory=list)
    status: str = SessionStatus.ACTIVE.value
    feedback: dict[str, Any] | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    ended_at: datetime | None = None
    duration: int | None = None

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE.value

    def recent_history(self, limit: int) -> list[Message]:
        return self.messages[-limit:] if limit > 0 else []

    def header_dict(self) -> dict[str, Any]:
        """Serializable form without context and messages (cached separately)."""
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "state": self.state.to_dict(),
            "status": self.status,
            "feedback": self.feedback,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "duration": self.duration,
        }

    def to_dict(self) -> dict[str, Any]:
        d = self.header_dict()
        d["context"] = self.context.to_dict()
        d["messages"] = [m.to_dict() for m in self.messages]
        return d

    @classmethod
    def from_parts(
        cls,
        header: dict[str, Any],
        context: dict[str, Any] | None,
        messages: list[dict[str, Any]] | None = None,
    ) -> "ChatSession":
        return cls(
            session_id=header["session_id"],
            user_id=header.get("user_id"),
            context=SessionContext.from_dict(context),
            state=SessionState.from_dict(header.get("state")),
            messages=[Message.from_dict(m) for m in messages or []],
            status=header.get("status") or SessionStatus.ACTIVE.value,
            feedback=header.get("feedback"),
            created_at=parse_datetime(header.get("created_at")) or utcnow(),
            updated_at=parse_datetime(header.get("updated_at")) or utcnow(),
            ended_at=parse_datetime(header.get("ended_at")),
            duration=header.get("duration"),
        )


def new_session_id() -> str:
    return str(uuid.uuid4())


def deep_merge(base: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    """Return ``base`` with ``patch`` merged in; nested dicts merge, other values replace."""
    out = copy.deepcopy(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = deep_merge(out[key], value)
        else:
            out[key] = copy.deepcopy(value)
    return out


# ── Redis cache tier ──────────────────────────────────────────────────────────

class SessionCache:
    """Redis-backed accelerator for session reads.

    Three keys per session, each with its own TTL:
      ``{prefix}session:{id}``          header blob (state, status, timestamps)
      ``{prefix}context:{id}``          context blob
      ``{prefix}session:{id}:history``  recent messages, newest first

    Every operation swallows Redis errors after logging them: the durable
    store is the source of truth and the cache may vanish at any time.
    Constructed with ``redis_client=None`` the cache is disabled and every
    method is a no-op.
    """

    def __init__(
        self,
        redis_client: Any | None,
        *,
        ttl_seconds: int = 3600,
        history_size: int = 20,
        key_prefix: str = "chat:",
    ) -> None:
        self._r = redis_client
        self.ttl_seconds = ttl_seconds
        self.history_size = history_size
        self._prefix = key_prefix

    @property
    def enabled(self) -> bool:
        return self._r is not None

    def session_key(self, session_id: str) -> str:
        return f"{self._prefix}session:{session_id}"

    def context_key(self, session_id: str) -> str:
        return f"{self._prefix}context:{session_id}"

    def history_key(self, session_id: str) -> str:
        return f"{self._prefix}session:{session_id}:history"

    def _keys(self, session_id: str) -> tuple[str, str, str]:
        return (
            self.session_key(session_id),
            self.context_key(session_id),
            self.history_key(session_id),
        )

    async def _guard(self, op: str, fn: Callable[[], Any], default: Any = None) -> Any:
        if not self.enabled:
            return default
        try:
            return await fn()
        except Exception as exc:
            CACHE_ERRORS.labels(op=op).inc()
            logger.warning("Session cache %s failed, using durable store. reason=%s", op, exc)
            return default

    async def load(self, session_id: str) -> ChatSession | None:
        async def _load() -> ChatSession | None:
            raw_header = await self._r.get(self.session_key(session_id))
            if raw_header is None:
                return None
            raw_context = await self._r.get(self.context_key(session_id))
            if raw_context is None:
                return None
            raw_history = await self._r.lrange(
                self.history_key(session_id), 0, self.history_size - 1
            )
            messages = [json.loads(m) for m in reversed(raw_history or [])]
            return ChatSession.from_parts(
                json.loads(raw_header), json.loads(raw_context), messages
            )

        return await self._guard("load", _load)

    async def store(self, session: ChatSession, *, with_history: bool = True) -> None:
        async def _store() -> None:
            sid = session.session_id
            await self._r.setex(
                self.session_key(sid), self.ttl_seconds, json.dumps(session.header_dict())
            )
            await self._r.setex(
                self.context_key(sid), self.ttl_seconds, json.dumps(session.context.to_dict())
            )
            if with_history:
                key = self.history_key(sid)
                await self._r.delete(key)
                recent = session.recent_history(self.history_size)
                if recent:
                    # LPUSH leaves the last pushed value at the head: newest first.
                    await self._r.lpush(key, *[json.dumps(m.to_dict()) for m in recent])
                    await self._r.expire(key, self.ttl_seconds)

        await self._guard("store", _store)

    async def store_header(self, session: ChatSession) -> None:
        async def _store() -> None:
            await self._r.setex(
                self.session_key(session.session_id),
                self.ttl_seconds,
                json.dumps(session.header_dict()),
            )

        await self._guard("store_header", _store)

    async def store_context(self, session_id: str, context: SessionContext) -> None:
        async def _store() -> None:
            await self._r.setex(
                self.context_key(session_id), self.ttl_seconds, json.dumps(context.to_dict())
            )

        await self._guard("store_context", _store)

    async def push_history(self, session_id: str, message: Message) -> None:
        async def _push() -> None:
            key = self.history_key(session_id)
            await self._r.lpush(key, json.dumps(message.to_dict()))
            await self._r.ltrim(key, 0, self.history_size - 1)
            await self._r.expire(key, self.ttl_seconds)

        await self._guard("push_history", _push)

    async def refresh(self, session_id: str) -> None:
        async def _refresh() -> None:
            for key in self._keys(session_id):
                if await self._r.exists(key):
                    await self._r.expire(key, self.ttl_seconds)

        await self._guard("refresh", _refresh)

    async def evict(self, session_id: str) -> None:
        async def _evict() -> None:
            await self._r.delete(*self._keys(session_id))

        await self._guard("evict", _evict)

    async def ping(self) -> bool:
        async def _ping() -> bool:
            return bool(await self._r.ping())

        return bool(await self._guard("ping", _ping, default=False))


# ── Session manager (cache-aside over the durable store) ──────────────────────

class SessionManager:
    """Sole writer of both session tiers.

    Writes go to the durable repository first, then to the cache. Reads try
    the cache and fall back to the repository, re-populating the cache on a
    durable hit. Repository calls are synchronous SQLAlchemy work and run in
    the default executor so the event loop never blocks on the database.
    """

    def __init__(self, repository: Any, cache: SessionCache | None = None) -> None:
        self.repository = repository
        self.cache = cache if cache is not None else SessionCache(None)

    @property
    def history_size(self) -> int:
        return self.cache.history_size

    async def _run(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(fn, *args, **kwargs))

    async def create(
        self, *, user_id: str | None = None, session_id: str | None = None
    ) -> ChatSession:
        session = ChatSession(session_id=session_id or new_session_id(), user_id=user_id)
        await self._run(self.repository.insert_session, session)
        await self.cache.store(session)
        logger.info(
            "Chat session created session_id=%s user_id=%s", session.session_id, user_id
        )
        return session

    async def get(self, session_id: str) -> ChatSession | None:
        cached = await self.cache.load(session_id)
        if cached is not None:
            await self.cache.refresh(session_id)
            return cached
        session = await self._run(
            self.repository.get_session, session_id, recent_messages=self.history_size
        )
        if session is None:
            return None
        await self.cache.store(session)
        return session

    async def append_message(self, session_id: str, message: Message) -> None:
        await self._run(self.repository.append_message, session_id, message)
        await self.cache.push_history(session_id, message)
        await self.cache.refresh(session_id)

    async def update_state(self, session_id: str, patch: dict[str, Any]) -> ChatSession:
        session = await self._run(self.repository.merge_json, session_id, "state", patch)
        await self.cache.store_header(session)
        return session

    async def update_context(self, session_id: str, patch: dict[str, Any]) -> ChatSession:
        session = await self._run(self.repository.merge_json, session_id, "context", patch)
        await self.cache.store_context(session_id, session.context)
        return session

    async def refresh(self, session_id: str) -> None:
        await self.cache.refresh(session_id)

    async def end(self, session_id: str) -> ChatSession:
        session = await self._run(
            self.repository.transition_status, session_id, SessionStatus.ENDED.value
        )
        await self.cache.evict(session_id)
        logger.info(
            "Chat session ended session_id=%s status=%s duration=%s",
            session_id,
            session.status,
            session.duration,
        )
        return session

    async def escalate(self, session_id: str) -> ChatSession:
        session = await self._run(
            self.repository.transition_status, session_id, SessionStatus.ESCALATED.value
        )
        await self.cache.store_header(session)
        return session

    async def submit_feedback(self, session_id: str, feedback: dict[str, Any]) -> ChatSession:
        session = await self._run(self.repository.set_feedback, session_id, feedback)
        await self.cache.store_header(session)
        return session

    async def history(
        self, session_id: str, *, page: int = 1, limit: int = 50
    ) -> dict[str, Any]:
        offset = (page - 1) * limit
        messages, total = await self._run(
            self.repository.list_messages, session_id, offset=offset, limit=limit
        )
        return {
            "messages": messages,
            "pagination": _pagination(page=page, limit=limit, total=total),
        }

    async def user_sessions(
        self, user_id: str, *, page: int = 1, limit: int = 20
    ) -> dict[str, Any]:
        offset = (page - 1) * limit
        sessions, total = await self._run(
            self.repository.list_by_user, user_id, offset=offset, limit=limit
        )
        return {
            "sessions": sessions,
            "pagination": _pagination(page=page, limit=limit, total=total),
        }

    async def require(self, session_id: str) -> ChatSession:
        session = await self.get(session_id)
        if session is None:
            raise NotFoundError(f"Session not found: {session_id}")
        return session


def _pagination(*, page: int, limit: int, total: int) -> dict[str, int]:
    return {
        "current": page,
        "page_size": limit,
        "total": total,
        "pages": (total + limit - 1) // limit if limit > 0 else 0,
    }
