"""
errors.py: typed error taxonomy shared by the pipeline and the HTTP layer.

Callers can always tell "your input was rejected" (ValidationError family)
from "the system is degraded" (ExternalServiceError / DatabaseError).
"""

from __future__ import annotations


class AppError(Exception):
    status_code: int = 500
    error_code: str = "internal_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error_code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code

    @property
    def is_client_error(self) -> bool:
        return 400 <= self.status_code < 500


class ValidationError(AppError):
    status_code = 400
    error_code = "validation_error"


class ModerationError(ValidationError):
    """Message rejected by the moderation gate; ``reason`` is the verdict reason."""

    status_code = 422
    error_code = "message_rejected"

    def __init__(self, message: str, *, reason: str) -> None:
        super().__init__(message)
        self.reason = reason


class NotFoundError(AppError):
    status_code = 404
    error_code = "not_found"


class SessionClosedError(AppError):
    status_code = 409
    error_code = "session_closed"


class ExternalServiceError(AppError):
    """Provider or dependent-service failure.

    ``upstream_status`` is the HTTP status returned by the provider when one
    was received; without it the failure is classified as unavailable (503).
    """

    error_code = "external_service_error"

    def __init__(
        self,
        message: str,
        *,
        upstream_status: int | None = None,
        status_code: int | None = None,
    ) -> None:
        if status_code is None:
            status_code = 502 if upstream_status is not None else 503
        super().__init__(message, status_code=status_code)
        self.upstream_status = upstream_status


class DatabaseError(AppError):
    status_code = 500
    error_code = "database_error"
