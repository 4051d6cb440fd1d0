from __future__ import annotations

from typing import Any


class AppError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None, *, detail: Any = None) -> None:
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)


class ValidationError(AppError):
    status_code = 400
    default_message = "Validation error"


class NotFoundError(AppError):
    status_code = 404
    default_message = "Resource not found"


class ConflictError(AppError):
    status_code = 409
    default_message = "Conflict"


class InvalidStateError(ConflictError):
    default_message = "Invalid state transition"


class DependencyFailure(AppError):
    status_code = 503
    default_message = "Dependency unavailable"


class HandlerFailure(AppError):
    status_code = 500
    default_message = "Job handler failed"
