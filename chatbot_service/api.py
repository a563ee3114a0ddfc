from __future__ import annotations

import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any

import redis.asyncio as aioredis
from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .chat.knowledge import KnowledgeRetriever, init_knowledge_repository
from .chat.llm_client import CompletionClient
from .chat.memory import SessionCache, SessionManager
from .chat.orchestrator import ChatOrchestrator
from .chat.pipeline import ModerationGate
from .chat.router import router_chat
from .chat.session_store import create_db_engine, init_session_store
from .config import ChatbotConfig, load_chatbot_config
from .errors import AppError
from .metrics import REQUEST_COUNT, REQUEST_LATENCY, render_metrics
from .rate_limit import build_rate_limiter
from .utils import get_logger

logger = get_logger("api")

_RATE_LIMITED_PREFIX = "/chat/message"


class HealthResponse(BaseModel):
    status: str
    service: str


class ErrorResponse(BaseModel):
    error_code: str
    message: str
    request_id: str | None = None


def error_response(
    *,
    status_code: int,
    error_code: str,
    message: str,
    request_id: str | None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            error_code=error_code, message=message, request_id=request_id
        ).model_dump(),
    )


async def _connect_redis(cfg: ChatbotConfig) -> Any | None:
    if not cfg.cache.redis_url:
        logger.info("REDIS_URL not set: session cache disabled, durable store only")
        return None
    client = aioredis.from_url(
        cfg.cache.redis_url,
        decode_responses=True,
        socket_timeout=cfg.cache.socket_timeout_seconds,
        socket_connect_timeout=cfg.cache.socket_timeout_seconds,
    )
    try:
        await client.ping()
    except Exception as exc:
        logger.warning("Redis unreachable at startup, session cache disabled. reason=%s", exc)
        await client.aclose()
        return None
    logger.info("Redis session cache connected")
    return client


@asynccontextmanager
async def lifespan(app: FastAPI):
    cfg = load_chatbot_config()
    app.state.config = cfg
    app.state.shutting_down = False

    engine = create_db_engine(cfg.database.url)
    session_repo = init_session_store(engine)
    knowledge_repo = init_knowledge_repository(engine, seed=cfg.knowledge.seed_on_startup)
    redis_client = await _connect_redis(cfg)

    llm = CompletionClient(cfg.llm)
    sessions = SessionManager(
        session_repo,
        SessionCache(
            redis_client,
            ttl_seconds=cfg.cache.session_ttl_seconds,
            history_size=cfg.cache.history_size,
            key_prefix=cfg.cache.key_prefix,
        ),
    )
    retriever = KnowledgeRetriever(
        knowledge_repo,
        config=cfg.knowledge,
        embedder=llm.embed if cfg.knowledge.use_embeddings else None,
    )
    app.state.engine = engine
    app.state.redis = redis_client
    app.state.sessions = sessions
    app.state.llm = llm
    app.state.orchestrator = ChatOrchestrator(
        sessions=sessions,
        retriever=retriever,
        llm=llm,
        moderation=ModerationGate(cfg.moderation),
        config=cfg.chat,
    )
    app.state.rate_limiter = build_rate_limiter(
        backend=cfg.api.rate_limit_backend,
        redis_client=redis_client,
        key_prefix=cfg.api.redis_key_prefix,
    )

    yield

    # Graceful shutdown
    app.state.shutting_down = True
    await llm.aclose()
    if redis_client is not None:
        try:
            await redis_client.aclose()
        except Exception as exc:
            logger.warning("Redis close failed: %s", exc)
    engine.dispose()


app = FastAPI(
    title="Chatbot Service API",
    version="1.0.0",
    description=(
        "Conversational pipeline for the PC-building assistant: sessions, "
        "moderated message turns, knowledge-grounded completions and SSE streaming."
    ),
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(load_chatbot_config().api.cors_allow_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router_chat)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    rid = request.headers.get("x-request-id", str(uuid.uuid4()))
    request.state.request_id = rid
    started = time.time()
    request_path = request.url.path
    if request.method.upper() == "OPTIONS":
        return await call_next(request)

    if request.method.upper() == "POST" and request_path.startswith(_RATE_LIMITED_PREFIX):
        limiter = getattr(app.state, "rate_limiter", None)
        cfg = getattr(app.state, "config", None)
        if limiter is not None and cfg is not None:
            client = request.client.host if request.client else "unknown"
            if not await limiter.allow(f"message:{client}", cfg.api.rate_limit_per_minute):
                return error_response(
                    status_code=429,
                    error_code="rate_limit_exceeded",
                    message="Too many messages, please slow down",
                    request_id=rid,
                )

    if bool(getattr(app.state, "shutting_down", False)):
        return error_response(
            status_code=503,
            error_code="service_shutting_down",
            message="Service is shutting down",
            request_id=rid,
        )

    response = await call_next(request)
    response.headers["x-request-id"] = rid
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "no-referrer"
    response.headers.setdefault("Cache-Control", "no-store")

    latency_ms = round((time.time() - started) * 1000.0, 2)
    logger.info(
        f"request path={request_path} status={response.status_code} latency_ms={latency_ms}",
        extra={"request_id": rid},
    )
    REQUEST_COUNT.labels(
        path=request_path, method=request.method, status=str(response.status_code)
    ).inc()
    REQUEST_LATENCY.labels(path=request_path, method=request.method).observe(
        (time.time() - started)
    )
    return response


@app.get("/health")
def health() -> HealthResponse:
    return HealthResponse(status="ok", service="chatbot")


async def _probe_database() -> str:
    loop = asyncio.get_running_loop()
    repo = app.state.sessions.repository
    await loop.run_in_executor(None, repo.ping)
    return "ok"


async def _probe_cache() -> str:
    cache = app.state.sessions.cache
    if not cache.enabled:
        return "disabled"
    return "ok" if await cache.ping() else "unreachable"


async def _probe_llm() -> str:
    return "ok" if await app.state.llm.health() else "unreachable"


@app.get("/ready")
async def ready():
    if getattr(app.state, "sessions", None) is None:
        return JSONResponse(status_code=503, content={"status": "degraded", "service": "not_ready"})

    results = await asyncio.gather(
        _probe_database(), _probe_cache(), _probe_llm(), return_exceptions=True
    )
    checks = {
        name: (r if isinstance(r, str) else "error")
        for name, r in zip(("database", "cache", "llm"), results)
    }
    if checks["database"] != "ok":
        return JSONResponse(
            status_code=503,
            content={"status": "degraded", "service": "not_ready", "checks": checks},
        )
    status = "ok" if all(v in ("ok", "disabled") for v in checks.values()) else "degraded"
    return {"status": status, "service": "ready", "checks": checks}


@app.get("/metrics")
def metrics() -> Response:
    payload, content_type = render_metrics()
    return Response(content=payload, media_type=content_type)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    rid = getattr(request.state, "request_id", None)
    if exc.is_client_error:
        logger.info(f"{exc.error_code}: {exc.message}", extra={"request_id": rid})
    else:
        logger.error(f"{exc.error_code}: {exc.message}", extra={"request_id": rid})
    return error_response(
        status_code=exc.status_code,
        error_code=exc.error_code,
        message=exc.message,
        request_id=rid,
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    rid = getattr(request.state, "request_id", None)
    first = exc.errors()[0] if exc.errors() else {}
    where = ".".join(str(x) for x in first.get("loc", ()))
    return error_response(
        status_code=400,
        error_code="validation_error",
        message=f"{where}: {first.get('msg', 'invalid request')}",
        request_id=rid,
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    rid = getattr(request.state, "request_id", None)
    return error_response(
        status_code=exc.status_code,
        error_code="http_error",
        message=str(exc.detail),
        request_id=rid,
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = getattr(request.state, "request_id", None)
    logger.exception(f"Unhandled exception: {exc}", extra={"request_id": rid})
    return error_response(
        status_code=500,
        error_code="internal_error",
        message="Internal server error",
        request_id=rid,
    )
