from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.core.config import Settings, get_settings
from app.core.errors import AppError
from app.schemas.common import ErrorResponse

logger = logging.getLogger("app.errors")


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, _handle_app_error)
    app.add_exception_handler(StarletteHTTPException, _handle_http_exception)
    app.add_exception_handler(RequestValidationError, _handle_request_validation)
    app.add_exception_handler(Exception, _handle_unexpected)


def error_envelope(request: Request, *, status_code: int, message: str, detail: Any = None) -> JSONResponse:
    error = None
    if detail is not None and not _settings(request).is_production:
        error = jsonable_encoder(detail)
    body = ErrorResponse(message=message, error=error)
    content = body.model_dump(exclude={"error"} if error is None else None)
    return JSONResponse(status_code=status_code, content=content)


async def _handle_app_error(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request failed path=%s error=%s", request.url.path, exc.message)
    return error_envelope(request, status_code=exc.status_code, message=exc.message, detail=exc.detail)


async def _handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    detail = None if isinstance(exc.detail, str) else exc.detail
    return error_envelope(request, status_code=exc.status_code, message=message, detail=detail)


async def _handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_envelope(
        request,
        status_code=status.HTTP_400_BAD_REQUEST,
        message="Validation error",
        detail=exc.errors(),
    )


async def _handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled error path=%s", request.url.path)
    return error_envelope(
        request,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        message="Internal server error",
        detail=str(exc),
    )


def _settings(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    return settings if settings is not None else get_settings()
