"""
FastAPI Middleware for the Client Verification Portal API

CORS for the admin UI, per-request logging with a correlation id, and the
exception handlers that render every failure as ``{"error": {...}}``.
"""

import os
import time
import uuid
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from api.models import ErrorDetail, ErrorResponse
from config_manager import ConfigurationError
from errors import PortalError
from text_utils import sanitize_for_logging

logger = logging.getLogger(__name__)

# Admin UI dev servers
DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]

EXPOSED_HEADERS = ["X-Request-ID", "X-Processing-Time-MS", "Content-Disposition"]

# Path prefixes whose last segment is a verification token
TOKEN_PATH_PREFIXES = ("/api/verify/",)


def setup_cors(app: FastAPI) -> None:
    """Allow the admin UI origin(s); CORS_ORIGINS is a comma-separated override."""
    configured = os.getenv("CORS_ORIGINS", "")
    allowed_origins: List[str] = [
        origin.strip() for origin in configured.split(",") if origin.strip()
    ] or DEFAULT_CORS_ORIGINS

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=EXPOSED_HEADERS,
    )


def _loggable_path(path: str) -> str:
    path = sanitize_for_logging(path)
    for prefix in TOKEN_PATH_PREFIXES:
        if path.startswith(prefix):
            return f"{prefix}<token>"
    return path


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs each request and its outcome under one request id.

    The id comes from the caller's X-Request-ID header when present and is
    echoed back with the processing time.
    """

    async def dispatch(self, request: Request, call_next: Callable):
        started = time.perf_counter()
        request_id = sanitize_for_logging(request.headers.get("X-Request-ID", "")) or uuid.uuid4().hex
        request.state.request_id = request_id
        path = _loggable_path(request.url.path)

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "%s %s failed after %dms: %s request_id=%s",
                request.method, path, int((time.perf_counter() - started) * 1000),
                sanitize_for_logging(str(exc)), request_id,
            )
            raise

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Processing-Time-MS"] = str(elapsed_ms)
        logger.info(
            "%s %s -> %d in %dms request_id=%s",
            request.method, path, response.status_code, elapsed_ms, request_id,
        )
        return response


def create_error_response(
    code: str,
    message: str,
    status_code: int = 500,
    field: Optional[str] = None,
    suggestion: Optional[str] = None,
) -> JSONResponse:
    """Build the standard error body.

    Args:
        code: Error code for programmatic handling
        message: Human-readable message
        status_code: HTTP status code
        field: Field that caused the error (optional)
        suggestion: How to fix the error (optional)

    Returns:
        JSONResponse with ``{"error": {...}}``; empty optional keys are omitted
    """
    body = ErrorResponse(error=ErrorDetail(
        code=code,
        message=message,
        field=field,
        suggestion=suggestion,
        timestamp=datetime.now(timezone.utc).isoformat(),
    ))
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


async def portal_error_handler(request: Request, exc: PortalError) -> JSONResponse:
    """Domain errors carry their own status, code, field and suggestion."""
    logger.info(
        "Domain error: code=%s status=%d message=%s request_id=%s",
        exc.code, exc.status_code, sanitize_for_logging(str(exc)), _request_id(request),
    )
    return create_error_response(
        code=exc.code,
        message=str(exc),
        status_code=exc.status_code,
        field=exc.field,
        suggestion=exc.suggestion,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Request schema failures: the first offending field is reported."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path", "form")]
    field = ".".join(location) or None
    message = first.get("msg", "Invalid request")

    return create_error_response(
        code="VALIDATION_ERROR",
        message=f"{field}: {message}" if field else message,
        status_code=422,
        field=field,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    logger.warning(
        "HTTP exception: status=%d detail=%s request_id=%s",
        exc.status_code, sanitize_for_logging(str(exc.detail)), _request_id(request),
    )
    return create_error_response(
        code=f"HTTP_{exc.status_code}",
        message=exc.detail if isinstance(exc.detail, str) else str(exc.detail),
        status_code=exc.status_code,
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything unhandled becomes a 500 without internal details.

    A broken configuration is reported as 503 so operators can tell it
    apart from a code failure.
    """
    logger.exception(
        "Unhandled exception: type=%s request_id=%s", type(exc).__name__, _request_id(request)
    )

    if isinstance(exc, ConfigurationError):
        return create_error_response(
            code="CONFIGURATION_ERROR",
            message="Service configuration is invalid. Please contact administrator.",
            status_code=503,
        )

    return create_error_response(
        code="INTERNAL_ERROR",
        message="An unexpected error occurred. Please try again later.",
        status_code=500,
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register the error renderers on the application."""
    app.add_exception_handler(PortalError, portal_error_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
