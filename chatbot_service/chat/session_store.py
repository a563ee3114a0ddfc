"""chat/session_store.py: durable session and message persistence.

Two tables, created on startup via ``metadata.create_all``:
  chat_sessions  one row per conversation (context/state/feedback as JSON)
  chat_messages  append-only transcript, ordered by insertion

This is the source of truth for sessions; the Redis tier in ``memory.py``
only accelerates reads. All methods are synchronous and are driven from
``SessionManager`` through the default executor.

Usage:
    from chatbot_service.chat.session_store import init_session_store
    repository = init_session_store(engine)
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Tuple

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    func,
    insert,
    select,
    text,
    create_engine,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from ..errors import AppError, DatabaseError, NotFoundError
from ..utils import ensure_utc, utcnow
from .memory import ChatSession, Message, SessionStatus, deep_merge

logger = logging.getLogger(__name__)

@contextmanager
def _db_errors(op: str) -> Iterator[None]:
    try:
        yield
    except AppError:
        raise
    except SQLAlchemyError as exc:
        logger.error("Session store %s failed: %s", op, exc)
        raise DatabaseError(f"Session store {op} failed") from exc


class SessionRepository:
    """SQLAlchemy Core repository for chat sessions and their messages."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self.metadata = MetaData()
        self.sessions = Table(
            "chat_sessions",
            self.metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("session_id", String(64), nullable=False, unique=True),
            Column("user_id", String(64), nullable=True, index=True),
            Column("context", JSON, nullable=False),
            Column("state", JSON, nullable=False),
            Column("status", String(16), nullable=False),
            Column("feedback", JSON, nullable=True),
            Column("created_at", DateTime(timezone=True), nullable=False),
            Column("updated_at", DateTime(timezone=True), nullable=False),
            Column("ended_at", DateTime(timezone=True), nullable=True),
            Column("duration", Integer, nullable=True),
        )
        self.messages = Table(
            "chat_messages",
            self.metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("session_id", String(64), nullable=False, index=True),
            Column("role", String(16), nullable=False),
            Column("content", Text, nullable=False),
            Column("meta", JSON, nullable=False),
            Column("created_at", DateTime(timezone=True), nullable=False),
        )

    def create_schema(self) -> None:
        self.metadata.create_all(self.engine)

    # ── Row mapping ──────────────────────────────────────────────────────────

    def _to_session(self, row: Any, messages: List[Message] | None = None) -> ChatSession:
        header = {
            "session_id": row["session_id"],
            "user_id": row["user_id"],
            "state": row["state"],
            "status": row["status"],
            "feedback": row["feedback"],
            "created_at": ensure_utc(row["created_at"]),
            "updated_at": ensure_utc(row["updated_at"]),
            "ended_at": ensure_utc(row["ended_at"]) if row["ended_at"] else None,
            "duration": row["duration"],
        }
        session = ChatSession.from_parts(header, row["context"])
        session.messages = messages or []
        return session

    @staticmethod
    def _to_message(row: Any) -> Message:
        return Message(
            role=row["role"],
            content=row["content"],
            metadata=row["meta"] or {},
            timestamp=ensure_utc(row["created_at"]),
        )

    def _session_row(self, conn: Any, session_id: str) -> Any:
        return (
            conn.execute(
                select(self.sessions).where(self.sessions.c.session_id == session_id)
            )
            .mappings()
            .first()
        )

    def _require_row(self, conn: Any, session_id: str) -> Any:
        row = self._session_row(conn, session_id)
        if row is None:
            raise NotFoundError(f"Session not found: {session_id}")
        return row

    def _recent_messages(self, conn: Any, session_id: str, limit: int) -> List[Message]:
        if limit <= 0:
            return []
        rows = (
            conn.execute(
                select(self.messages)
                .where(self.messages.c.session_id == session_id)
                .order_by(self.messages.c.id.desc())
                .limit(limit)
            )
            .mappings()
            .all()
        )
        return [self._to_message(r) for r in reversed(rows)]

    # ── Sessions ─────────────────────────────────────────────────────────────

    def insert_session(self, session: ChatSession) -> None:
        with _db_errors("insert_session"):
            try:
                with self.engine.begin() as conn:
                    conn.execute(
                        insert(self.sessions).values(
                            session_id=session.session_id,
                            user_id=session.user_id,
                            context=session.context.to_dict(),
                            state=session.state.to_dict(),
                            status=session.status,
                            feedback=session.feedback,
                            created_at=session.created_at,
                            updated_at=session.updated_at,
                        )
                    )
            except IntegrityError as exc:
                raise AppError(
                    f"Session already exists: {session.session_id}",
                    status_code=409,
                    error_code="session_exists",
                ) from exc

    def get_session(
        self, session_id: str, *, recent_messages: int = 20
    ) -> ChatSession | None:
        with _db_errors("get_session"):
            with self.engine.connect() as conn:
                row = self._session_row(conn, session_id)
                if row is None:
                    return None
                messages = self._recent_messages(conn, session_id, recent_messages)
        return self._to_session(row, messages)

    def merge_json(self, session_id: str, column: str, patch: Dict[str, Any]) -> ChatSession:
        """Deep-merge ``patch`` into the ``state`` or ``context`` column."""
        if column not in ("state", "context"):
            raise ValueError(f"Not a mergeable column: {column}")
        with _db_errors(f"update_{column}"):
            with self.engine.begin() as conn:
                row = self._require_row(conn, session_id)
                merged = deep_merge(row[column] or {}, patch)
                conn.execute(
                    update(self.sessions)
                    .where(self.sessions.c.session_id == session_id)
                    .values(**{column: merged, "updated_at": utcnow()})
                )
                row = self._require_row(conn, session_id)
        return self._to_session(row)

    def set_feedback(self, session_id: str, feedback: Dict[str, Any]) -> ChatSession:
        with _db_errors("set_feedback"):
            with self.engine.begin() as conn:
                self._require_row(conn, session_id)
                conn.execute(
                    update(self.sessions)
                    .where(self.sessions.c.session_id == session_id)
                    .values(feedback=feedback, updated_at=utcnow())
                )
                row = self._require_row(conn, session_id)
        return self._to_session(row)

    def transition_status(self, session_id: str, status: str) -> ChatSession:
        """Move an active session to ``status``.

        A session that is no longer active is returned unchanged. Ending a
        session stamps ``ended_at`` and ``duration`` in whole seconds.
        """
        with _db_errors("transition_status"):
            with self.engine.begin() as conn:
                row = self._require_row(conn, session_id)
                if row["status"] != SessionStatus.ACTIVE.value:
                    return self._to_session(row)
                now = utcnow()
                values: Dict[str, Any] = {"status": status, "updated_at": now}
                if status == SessionStatus.ENDED.value:
                    values["ended_at"] = now
                    values["duration"] = int(
                        (now - ensure_utc(row["created_at"])).total_seconds()
                    )
                conn.execute(
                    update(self.sessions)
                    .where(self.sessions.c.session_id == session_id)
                    .values(**values)
                )
                row = self._require_row(conn, session_id)
        return self._to_session(row)

    def list_by_user(
        self, user_id: str, *, offset: int = 0, limit: int = 20
    ) -> Tuple[List[Dict[str, Any]], int]:
        with _db_errors("list_by_user"):
            with self.engine.connect() as conn:
                total = conn.execute(
                    select(func.count())
                    .select_from(self.sessions)
                    .where(self.sessions.c.user_id == user_id)
                ).scalar_one()
                rows = (
                    conn.execute(
                        select(self.sessions)
                        .where(self.sessions.c.user_id == user_id)
                        .order_by(self.sessions.c.updated_at.desc(), self.sessions.c.id.desc())
                        .offset(offset)
                        .limit(limit)
                    )
                    .mappings()
                    .all()
                )
        return [self._to_session(r).to_dict() for r in rows], int(total)

    # ── Messages ─────────────────────────────────────────────────────────────

    def append_message(self, session_id: str, message: Message) -> None:
        with _db_errors("append_message"):
            with self.engine.begin() as conn:
                self._require_row(conn, session_id)
                conn.execute(
                    insert(self.messages).values(
                        session_id=session_id,
                        role=message.role,
                        content=message.content,
                        meta=message.metadata,
                        created_at=message.timestamp,
                    )
                )
                conn.execute(
                    update(self.sessions)
                    .where(self.sessions.c.session_id == session_id)
                    .values(updated_at=utcnow())
                )

    def list_messages(
        self, session_id: str, *, offset: int = 0, limit: int = 50
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Return one page of the transcript (oldest first) and the total count."""
        with _db_errors("list_messages"):
            with self.engine.connect() as conn:
                self._require_row(conn, session_id)
                total = conn.execute(
                    select(func.count())
                    .select_from(self.messages)
                    .where(self.messages.c.session_id == session_id)
                ).scalar_one()
                rows = (
                    conn.execute(
                        select(self.messages)
                        .where(self.messages.c.session_id == session_id)
                        .order_by(self.messages.c.id.asc())
                        .offset(offset)
                        .limit(limit)
                    )
                    .mappings()
                    .all()
                )
        return [self._to_message(r).to_dict() for r in rows], int(total)

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True


# ── Engine & module-level singleton ───────────────────────────────────────────


def create_db_engine(database_url: str) -> Engine:
    """Engine shared by the session and knowledge repositories."""
    kwargs: Dict[str, Any] = {"pool_pre_ping": True, "future": True}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, **kwargs)


def init_session_store(engine: Engine) -> SessionRepository:
    """Build a SessionRepository on ``engine`` and create its tables."""
    repository = SessionRepository(engine)
    repository.create_schema()
    logger.info("SessionRepository initialized.")
    return repository
