"""
FastAPI Middleware for the Enforcement Ingest API

CORS, per-request logging with request ids, and the mapping of session
and storage errors onto the standard error body:

    {"error": {"code": "...", "message": "...", "timestamp": "..."}}
"""

import os
import re
import time
import logging
import secrets
from datetime import datetime, timezone
from typing import Callable, List, Optional

from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError
from starlette.middleware.base import BaseHTTPMiddleware

from ingestion.errors import FatalIngestionError
from ingestion.html_utils import sanitize_for_logging
from ingestion.tracker import (
    InvalidTransitionError,
    SessionNotFoundError,
    TerminalStateError,
    TrackerError,
)

logger = logging.getLogger(__name__)

LOCAL_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:8000",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:8000",
]

_SESSION_PATH = re.compile(r'^/api/v1/sessions/([^/]+)')


def setup_cors(app: FastAPI, origins: Optional[List[str]] = None) -> None:
    """Allow dashboards to poll session status from the browser.

    CORS_ORIGINS (comma-separated) wins over the origins argument; local
    development origins are the fallback.
    """
    from_env = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=from_env or origins or LOCAL_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Processing-Time-MS"],
    )


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs each request with its request id and, when present, the session id."""

    async def dispatch(self, request: Request, call_next: Callable):
        started = time.perf_counter()
        request_id = request.headers.get("X-Request-ID") or secrets.token_hex(8)
        request.state.request_id = request_id

        path = sanitize_for_logging(request.url.path)
        match = _SESSION_PATH.match(request.url.path)
        session_part = f" session={sanitize_for_logging(match.group(1))}" if match else ""

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                f"✗ {request.method} {path}{session_part} failed after "
                f"{_elapsed_ms(started)}ms: {sanitize_for_logging(str(exc))} [{request_id}]"
            )
            raise

        elapsed = _elapsed_ms(started)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Processing-Time-MS"] = str(elapsed)
        logger.info(f"{request.method} {path}{session_part} -> {response.status_code} in {elapsed}ms [{request_id}]")
        return response


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def create_error_response(
    code: str,
    message: str,
    status_code: int = 500,
    field: Optional[str] = None,
    suggestion: Optional[str] = None,
) -> JSONResponse:
    """Standard error body; field and suggestion are included only when given."""
    error_detail = {
        "code": code,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if field:
        error_detail["field"] = field
    if suggestion:
        error_detail["suggestion"] = suggestion
    return JSONResponse(status_code=status_code, content={"error": error_detail})


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


async def tracker_exception_handler(request: Request, exc: TrackerError) -> JSONResponse:
    """Unknown sessions are 404; refused state changes are 409."""
    logger.warning(f"Session error {type(exc).__name__}: {sanitize_for_logging(str(exc))} [{_request_id(request)}]")

    if isinstance(exc, SessionNotFoundError):
        return create_error_response("SESSION_NOT_FOUND", str(exc), status_code=404)
    if isinstance(exc, (InvalidTransitionError, TerminalStateError)):
        return create_error_response(
            "INVALID_TRANSITION",
            str(exc),
            status_code=409,
            suggestion="Check the session status before changing it",
        )
    return create_error_response("SESSION_ERROR", str(exc), status_code=409)


async def storage_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """The database or the crawl's storage went away; callers may retry later."""
    logger.error(f"✗ Storage unavailable: {sanitize_for_logging(str(exc))} [{_request_id(request)}]")
    code = "INGESTION_HALTED" if isinstance(exc, FatalIngestionError) else "DATABASE_UNAVAILABLE"
    return create_error_response(
        code,
        "The enforcement database is unavailable. Please retry later.",
        status_code=503,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    logger.warning(f"HTTP {exc.status_code}: {sanitize_for_logging(detail)} [{_request_id(request)}]")
    return create_error_response(f"HTTP_{exc.status_code}", detail, status_code=exc.status_code)


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything unmapped becomes a 500 without internal details."""
    from config_manager import ConfigurationError

    logger.error(
        f"✗ Unhandled {type(exc).__name__}: {sanitize_for_logging(str(exc))} [{_request_id(request)}]"
    )
    if isinstance(exc, ConfigurationError):
        return create_error_response(
            "CONFIGURATION_ERROR",
            "Service configuration is invalid. Please contact administrator.",
            status_code=503,
        )
    return create_error_response(
        "INTERNAL_ERROR",
        "An unexpected error occurred. Please try again later.",
        status_code=500,
    )


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(Exception, global_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(TrackerError, tracker_exception_handler)
    app.add_exception_handler(OperationalError, storage_exception_handler)
    app.add_exception_handler(FatalIngestionError, storage_exception_handler)
