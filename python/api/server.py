"""
FastAPI Enforcement Ingest API Server

Provides REST API endpoints for starting, inspecting and steering
ingestion sessions.

Usage:
    uvicorn api.server:app --reload --port 8000
"""

import os
import time
import logging
import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from functools import partial
from typing import Any, Callable, List, Optional

from fastapi import FastAPI, HTTPException, Depends, Query, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from api.models import (
    StartSessionRequest,
    StartSessionResponse,
    SessionResponse,
    CancelResponse,
    BatchResponse,
    LogEntryResponse,
    HealthResponse,
    ErrorResponse,
)
from api.middleware import (
    setup_cors,
    setup_exception_handlers,
    RequestLoggingMiddleware,
)
from config_manager import get_config, ConfigManager, ConfigurationError
from database.connection import DatabaseSettings, init_db, close_db
from ingestion.adapters import available_adapters
from ingestion.event_log import get_event_logger, setup_logging
from ingestion.metrics import configure_monitoring, get_ingest_metrics
from ingestion.progress import ProgressEvent, ProgressPublisher
from ingestion.service import IngestionService

logger = logging.getLogger(__name__)

# Environment variables with defaults
CONFIG_PATH = os.getenv("CONFIG_PATH", "config.yaml")

# Global state
_service: Optional[IngestionService] = None
_config: Optional[ConfigManager] = None
_startup_time: Optional[datetime] = None
_executor = ThreadPoolExecutor(max_workers=4)  # For blocking database calls


def get_service() -> IngestionService:
    """Dependency to get the ingestion service instance."""
    if _service is None:
        raise HTTPException(
            status_code=503, detail="Ingestion service not initialized. Service is starting up."
        )
    return _service


def get_config_instance() -> ConfigManager:
    """Dependency to get the config instance."""
    global _config
    if _config is None:
        _config = get_config(CONFIG_PATH)
    return _config


async def _run_blocking(func: Callable, *args: Any, **kwargs: Any) -> Any:
    """Run a blocking service call off the event loop."""
    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(_executor, partial(func, *args, **kwargs))


def _log_progress(event: ProgressEvent) -> None:
    logger.debug(f"Progress {event.session_id}: {event.event} page={event.page} {event.counters}")


# Create FastAPI application
app = FastAPI(
    title="Enforcement Ingest API",
    description="API for crawling regulator enforcement listings into the enforcement database",
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

# Setup middleware
setup_cors(app)
app.add_middleware(RequestLoggingMiddleware)
setup_exception_handlers(app)


@app.on_event("startup")
async def startup():
    """Load configuration, connect to the database and build the service."""
    global _service, _config, _startup_time

    logger.info("🚀 Starting Enforcement Ingest API...")
    start_time = time.time()

    try:
        _config = get_config(CONFIG_PATH)
        setup_logging(_config.logging)
        configure_monitoring(
            slow_operation_threshold_ms=_config.performance.slow_operation_threshold_ms,
            warning_threshold_ms=_config.performance.slow_operation_threshold_ms / 2,
        )
        logger.info(f"✓ Configuration loaded from {CONFIG_PATH}")

        loop = asyncio.get_event_loop()
        provider = await loop.run_in_executor(_executor, partial(init_db, DatabaseSettings.from_config(_config.database), create_tables=True))
        logger.info("✓ Database ready")

        event_logger = None
        if _config.logging.event_log_enabled:
            event_logger = get_event_logger(_config.logging.event_log_dir)

        publisher = ProgressPublisher(maxsize=_config.performance.progress_queue_size)
        publisher.subscribe(_log_progress)
        _service = IngestionService(provider, _config, publisher=publisher, event_logger=event_logger)

        _startup_time = datetime.now(timezone.utc)
        logger.info("✓ API ready in %.2f seconds", time.time() - start_time)

    except ConfigurationError as e:
        logger.error(f"✗ Configuration error: {e}")
        raise
    except Exception as e:
        logger.error(f"✗ Startup error: {e}")
        raise


@app.on_event("shutdown")
async def shutdown():
    """Stop accepting crawls and close the database."""
    logger.info("Shutting down Enforcement Ingest API...")
    if _service is not None:
        _service.shutdown(wait=False)
    close_db()


# ============================================
# SESSIONS
# ============================================

@app.post(
    "/api/v1/sessions",
    status_code=202,
    response_model=StartSessionResponse,
    responses={
        202: {"model": StartSessionResponse, "description": "Session accepted"},
        422: {"model": ErrorResponse, "description": "Invalid source or limits"},
    },
    summary="Start an ingestion session",
    description="Create a session and crawl it in the background. "
                "Repeating the request with the same session_id returns the existing session.",
)
async def start_session(
    request: StartSessionRequest,
    service: IngestionService = Depends(get_service),
):
    """Start crawling a source."""
    try:
        source_config = service.default_source_config(**request.source_overrides())
        limits = service.default_limits(**request.limit_overrides())
        if request.end_page is not None and request.max_pages is None:
            limits.max_pages = request.end_page - limits.start_page + 1
        session_id = await _run_blocking(
            service.start_session,
            source_config,
            limits,
            session_id=request.session_id,
            initiated_by=request.initiated_by,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    summary = await _run_blocking(service.get_session, session_id)
    base = f"/api/v1/sessions/{session_id}"
    return StartSessionResponse(
        session_id=session_id,
        status=summary.status,
        links={"self": base, "cancel": f"{base}/cancel", "logs": f"{base}/logs"},
    )


@app.get("/api/v1/sessions", response_model=List[SessionResponse], summary="List recent sessions")
async def list_sessions(
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    service: IngestionService = Depends(get_service),
):
    """Most recent sessions first, optionally filtered by status."""
    sessions = await _run_blocking(service.list_sessions, status=status, limit=limit)
    return [SessionResponse(**s.to_dict()) for s in sessions]


@app.get(
    "/api/v1/sessions/{session_id}",
    response_model=SessionResponse,
    responses={404: {"model": ErrorResponse, "description": "Unknown session"}},
    summary="Get session status",
)
async def get_session(session_id: str, service: IngestionService = Depends(get_service)):
    """Session status with partial counters and derived metrics."""
    summary = await _run_blocking(service.get_session, session_id)
    return SessionResponse(**summary.to_dict())


@app.post(
    "/api/v1/sessions/{session_id}/cancel",
    response_model=CancelResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Unknown session"},
        409: {"model": ErrorResponse, "description": "Session already finished"},
    },
    summary="Cancel a session",
)
async def cancel_session(session_id: str, service: IngestionService = Depends(get_service)):
    """Cancel a session; the page being processed finishes first."""
    cancelled = await _run_blocking(service.cancel_session, session_id)
    summary = await _run_blocking(service.get_session, session_id)
    return CancelResponse(session_id=session_id, cancelled=cancelled, status=summary.status)


@app.post("/api/v1/sessions/{session_id}/pause", response_model=SessionResponse, summary="Pause a session")
async def pause_session(session_id: str, service: IngestionService = Depends(get_service)):
    summary = await _run_blocking(service.pause_session, session_id)
    return SessionResponse(**summary.to_dict())


@app.post("/api/v1/sessions/{session_id}/resume", response_model=SessionResponse, summary="Resume a paused session")
async def resume_session(session_id: str, service: IngestionService = Depends(get_service)):
    summary = await _run_blocking(service.resume_session, session_id)
    return SessionResponse(**summary.to_dict())


@app.post("/api/v1/sessions/{session_id}/retry", response_model=SessionResponse, summary="Retry a failed session")
async def retry_session(session_id: str, service: IngestionService = Depends(get_service)):
    summary = await _run_blocking(service.retry_session, session_id)
    return SessionResponse(**summary.to_dict())


@app.get("/api/v1/sessions/{session_id}/batches", response_model=List[BatchResponse], summary="List batches")
async def list_batches(session_id: str, service: IngestionService = Depends(get_service)):
    batches = await _run_blocking(service.list_batches, session_id)
    return [BatchResponse(**b.to_dict()) for b in batches]


@app.get("/api/v1/sessions/{session_id}/logs", response_model=List[LogEntryResponse], summary="List log entries")
async def list_logs(
    session_id: str,
    level: Optional[str] = Query(default=None),
    event_type: Optional[str] = Query(default=None),
    limit: int = Query(default=500, ge=1, le=5000),
    service: IngestionService = Depends(get_service),
):
    entries = await _run_blocking(
        service.list_logs, session_id, level=level, event_type=event_type, limit=limit
    )
    return [LogEntryResponse(**entry) for entry in entries]


# ============================================
# OPERATIONS
# ============================================

@app.get(
    "/api/v1/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Service and database status",
)
async def health_check():
    """Report service health. Always HTTP 200; problems are reported in the body."""
    try:
        service = get_service()
        database_ok = await _run_blocking(service.provider.health_check)

        memory_usage_mb = None
        try:
            import psutil
            process = psutil.Process()
            memory_usage_mb = round(process.memory_info().rss / (1024 * 1024), 2)
        except (ImportError, OSError):
            pass

        uptime_seconds = None
        if _startup_time:
            uptime = datetime.now(timezone.utc) - _startup_time
            uptime_seconds = int(uptime.total_seconds())

        return HealthResponse(
            status="healthy" if database_ok else "degraded",
            database="ok" if database_ok else "unavailable",
            adapters=available_adapters(),
            memory_usage_mb=memory_usage_mb,
            uptime_seconds=uptime_seconds,
            operations=get_ingest_metrics()["operations"],
        )
    except Exception as e:
        return HealthResponse(
            status="error",
            database="unknown",
            error_message=str(e.detail) if isinstance(e, HTTPException) else str(e),
        )


@app.get("/metrics", include_in_schema=False)
async def metrics():
    """Prometheus exposition of the ingest counters."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Root redirect to docs
@app.get("/", include_in_schema=False)
async def root():
    """Redirect root to API documentation."""
    from fastapi.responses import RedirectResponse

    return RedirectResponse(url="/api/docs")


if __name__ == "__main__":
    import uvicorn

    api_config = get_config_instance().api
    uvicorn.run(
        app,
        host=os.getenv("API_HOST", api_config.host),
        port=int(os.getenv("API_PORT", str(api_config.port))),
    )
