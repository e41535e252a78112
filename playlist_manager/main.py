"""FastAPI application for bulk YouTube playlist management.

Web service entry point. Wires the action log store, the quota ledger, the
bulk orchestrator and the playlist browser in the lifespan, and renders
every error through the {"ok": false, "error": {...}} envelope.

Background Tasks:
    quota_reconcile_loop: drains the quota outbox and runs ledger maintenance
    every QUOTA_RECONCILE_INTERVAL_SECONDS.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

import httpx
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from playlist_manager import database
from playlist_manager.config import get_database_url, get_quota_database_url
from playlist_manager.database import create_engine_for_url, create_session_factory
from playlist_manager.exceptions import PlaylistManagerError
from playlist_manager.models import Base
from playlist_manager.routes import bulk, playlists, quota
from playlist_manager.schemas.common import ErrorBody, ErrorResponse
from playlist_manager.services.bulk_orchestrator import BulkOrchestrator, quota_reconcile_loop
from playlist_manager.services.credential_service import build_provider_factory
from playlist_manager.services.playlist_browser import PlaylistBrowser
from playlist_manager.services.quota_ledger import QuotaLedger
from playlist_manager.utils.logging import configure_logging, get_logger

log = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage startup/shutdown of services and the reconcile task.

    Startup:
    - Configure structlog
    - Create the action log engine (DATABASE_URL) and the quota engine
      (QUOTA_DATABASE_URL, same engine when equal)
    - Ensure the quota tables exist
    - Start quota_reconcile_loop

    Shutdown:
    - Cancel the reconcile task
    - Close the shared HTTP client and dispose engines
    """
    configure_logging()

    database_url = get_database_url()
    engine = database.engine or create_engine_for_url(database_url)
    session_factory = database.async_session_factory or create_session_factory(engine)

    if engine.dialect.name == "sqlite":
        # Local development without migrations
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    quota_url = get_quota_database_url() or database_url
    quota_engine = engine if quota_url == database_url else create_engine_for_url(quota_url)

    ledger = QuotaLedger(quota_engine)
    await ledger.ensure_schema()

    http_client = httpx.AsyncClient(timeout=30.0)
    provider_factory = build_provider_factory(session_factory, http_client)

    orchestrator = BulkOrchestrator(session_factory, ledger, provider_factory)
    app.state.ledger = ledger
    app.state.orchestrator = orchestrator
    app.state.browser = PlaylistBrowser(ledger, provider_factory)

    reconcile_task = asyncio.create_task(quota_reconcile_loop(orchestrator))
    log.info("application_started", quota_store=quota_engine.dialect.name)

    yield  # Application runs here

    log.info("shutting_down_quota_reconcile")
    reconcile_task.cancel()
    try:
        await reconcile_task
    except asyncio.CancelledError:
        log.info("quota_reconcile_task_cancelled")

    await http_client.aclose()
    if quota_engine is not engine:
        await quota_engine.dispose()
    await engine.dispose()


def _error_response(status_code: int, code: str, message: str) -> JSONResponse:
    body = ErrorResponse(error=ErrorBody(code=code, message=message))
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def handle_app_error(request: Request, exc: PlaylistManagerError) -> JSONResponse:
    message = getattr(exc, "message", None) or str(exc)
    if exc.status_code >= 500:
        log.error("request_failed", path=request.url.path, code=exc.code, error=str(exc))
    else:
        log.warning("request_rejected", path=request.url.path, code=exc.code, error=message)
    return _error_response(exc.status_code, exc.code, message)


async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = "; ".join(
        f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}"
        for error in exc.errors()
    )
    log.warning("request_invalid", path=request.url.path, errors=details)
    return _error_response(
        status.HTTP_400_BAD_REQUEST, "invalid_request", details or "Invalid request"
    )


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    log.error(
        "request_unhandled_error",
        path=request.url.path,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )
    return _error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR, "internal_error", "Internal server error"
    )


def create_app() -> FastAPI:
    application = FastAPI(
        title="YouTube Playlist Manager",
        description="Bulk playlist add/remove/move with idempotent replay and quota tracking",
        version="0.1.0",
        lifespan=lifespan,
    )
    application.add_exception_handler(PlaylistManagerError, handle_app_error)
    application.add_exception_handler(RequestValidationError, handle_validation_error)
    application.add_exception_handler(Exception, handle_unexpected_error)

    application.include_router(bulk.router)
    application.include_router(quota.router)
    application.include_router(playlists.router)

    @application.get("/health", status_code=status.HTTP_200_OK)
    async def health_check() -> JSONResponse:
        """Liveness probe for deployment validation."""
        return JSONResponse(content={"status": "healthy", "service": "playlist-manager"})

    return application


app = create_app()
