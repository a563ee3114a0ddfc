"""
apps/backend/main.py

Production entrypoint for the chatbot API server.

Usage
-----
    python -m apps.backend.main
    python -m apps.backend.main --port 9000 --workers 2
    python -m apps.backend.main --reload --log-level debug

Docker
------
    CMD ["python", "-m", "apps.backend.main"]

The FastAPI application lives in chatbot_service/api.py; this module only
parses arguments, builds the log config and starts uvicorn.

Session locks are per process, so concurrent turns on one session are only
serialized when every request for that session reaches the same worker.
Run a single worker unless the load balancer pins sessions.
"""

from __future__ import annotations

import argparse
import logging

import uvicorn

from apps.backend.settings import settings

logger = logging.getLogger("backend.startup")


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="chatbot API server",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--host", default=settings.host, help="Bind address")
    parser.add_argument("--port", type=int, default=settings.port, help="Bind port")
    parser.add_argument(
        "--workers",
        type=int,
        default=settings.workers,
        help="Uvicorn worker processes (forced to 1 when --reload is set)",
    )
    parser.add_argument(
        "--log-level",
        default=settings.log_level,
        choices=["critical", "error", "warning", "info", "debug", "trace"],
    )
    parser.add_argument(
        "--timeout-graceful-shutdown",
        type=int,
        default=settings.timeout_graceful_shutdown,
        dest="timeout_graceful_shutdown",
        help="Seconds to wait for in-flight turns on SIGTERM",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        default=settings.reload,
        help="Enable hot-reload (development only)",
    )
    return parser.parse_args(argv)


def build_log_config(log_format: str, log_level: str) -> dict:
    """uvicorn log config routed through the service's own formatter."""
    level = log_level.upper()
    formatter: dict = (
        {"()": "chatbot_service.utils.JsonLogFormatter"}
        if log_format == "json"
        else {"format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s"}
    )
    stdout = {"class": "logging.StreamHandler", "formatter": "default", "stream": "ext://sys.stdout"}
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"default": formatter},
        "handlers": {"default": stdout},
        "loggers": {
            name: {"handlers": ["default"], "level": level, "propagate": False}
            for name in ("uvicorn", "uvicorn.error", "uvicorn.access")
        },
        "root": {"handlers": ["default"], "level": level},
    }


def run(
    *,
    host: str,
    port: int,
    workers: int,
    log_level: str,
    timeout_graceful_shutdown: int,
    reload: bool,
    log_format: str,
) -> None:
    if reload and workers > 1:
        logger.warning("--reload is set: forcing workers=1")
        workers = 1
    if workers > 1:
        logger.warning(
            "workers=%d: per-session turn ordering holds only with sticky routing", workers
        )

    logger.info(
        "Starting chatbot API | host=%s port=%d workers=%d log_level=%s "
        "graceful_shutdown=%ds reload=%s",
        host,
        port,
        workers,
        log_level,
        timeout_graceful_shutdown,
        reload,
    )

    uvicorn_kwargs: dict = dict(
        app="chatbot_service.api:app",
        host=host,
        port=port,
        log_level=log_level,
        log_config=build_log_config(log_format, log_level),
        timeout_graceful_shutdown=timeout_graceful_shutdown,
        reload=reload,
        access_log=True,
    )
    # --workers is mutually exclusive with --reload in uvicorn
    if not reload:
        uvicorn_kwargs["workers"] = workers

    uvicorn.run(**uvicorn_kwargs)


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    run(
        host=args.host,
        port=args.port,
        workers=args.workers,
        log_level=args.log_level,
        timeout_graceful_shutdown=args.timeout_graceful_shutdown,
        reload=args.reload,
        log_format=settings.log_format,
    )


if __name__ == "__main__":
    main()
