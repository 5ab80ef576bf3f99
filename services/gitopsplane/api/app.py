"""
FastAPI application factory for the gitopsplane API server.

Uses lifespan handler for startup/shutdown with async resource management.
"""

import asyncio
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from gitopsplane.config import Settings, load_settings
from gitopsplane.db.session import Database
from gitopsplane.errors import (
    ConstraintViolationError,
    InvalidTransitionError,
    NotFoundError,
    StoreUnavailableError,
)
from gitopsplane.logging_config import configure_logging, get_logger
from gitopsplane.reclaimer import run_reclaimer

from .health import router as health_router
from .routers.operations import router as operations_router

logger = get_logger(__name__)

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Application lifespan handler for startup and shutdown."""
    settings: Settings = app.state.settings
    database: Database = app.state.database

    configure_logging(
        json_logs=settings.json_logs, log_level=settings.log_level, app_name=settings.app_name
    )
    logger.info("Starting gitopsplane API server", version=VERSION)

    await database.connect()

    reclaimer_task = None
    if settings.operations.reclaimer_enabled:
        reclaimer_task = asyncio.create_task(run_reclaimer(database, settings.operations))

    yield

    if reclaimer_task is not None:
        reclaimer_task.cancel()
        try:
            await reclaimer_task
        except asyncio.CancelledError:
            pass

    logger.info("Shutting down gitopsplane API server")
    await database.close()


def create_app(settings: Settings | None = None, database: Database | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or load_settings()

    app = FastAPI(
        title="gitopsplane API",
        description="GitOps control-plane core: topology records and operation lifecycle",
        version=VERSION,
        lifespan=lifespan,
        docs_url=f"{settings.api_prefix}/docs",
        openapi_url=f"{settings.api_prefix}/openapi.json",
    )
    app.state.settings = settings
    app.state.database = database or Database(settings.database_url, echo=settings.debug)

    # Request ID middleware
    @app.middleware("http")
    async def add_request_id(request: Request, call_next):  # type: ignore[no-untyped-def]
        """Ensure every request has a request ID for logging correlation."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        structlog.contextvars.bind_contextvars(request_id=request_id)

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        return response

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})

    @app.exception_handler(ConstraintViolationError)
    async def constraint_handler(request: Request, exc: ConstraintViolationError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})

    @app.exception_handler(InvalidTransitionError)
    async def transition_handler(request: Request, exc: InvalidTransitionError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})

    @app.exception_handler(StoreUnavailableError)
    async def store_handler(request: Request, exc: StoreUnavailableError) -> JSONResponse:
        logger.error("Store unavailable", error=str(exc), path=str(request.url.path))
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Store unavailable"},
        )

    # Health endpoints (no prefix)
    app.include_router(health_router)
    app.include_router(operations_router, prefix=settings.api_prefix)

    return app
