"""branchpod service: branch-scoped dev servers and consoles over HTTP."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from branchpod import __version__
from branchpod.config import Settings, load_settings
from branchpod.deps import Orchestrator
from branchpod.errors import (
    BranchpodError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    SpawnFailureError,
)
from branchpod.routes import (
    commands_router,
    consoles_router,
    health_router,
    servers_router,
    worktrees_router,
)
from branchpod.sentry import configure_logging, init_sentry
from branchpod.validation import ValidationError

logger = structlog.get_logger()

SHUTDOWN_TIMEOUT_SECONDS = 10.0

ERROR_STATUS: dict[type[BranchpodError], int] = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ConflictError: status.HTTP_409_CONFLICT,
    SpawnFailureError: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ExternalServiceError: status.HTTP_502_BAD_GATEWAY,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Reconcile the registry on startup, stop background work on shutdown."""
    orchestrator: Orchestrator = app.state.orchestrator
    logger.info(
        "Starting branchpod",
        environment=orchestrator.settings.environment,
        version=__version__,
    )
    await orchestrator.startup()

    yield

    logger.info("Shutting down branchpod")
    try:
        await asyncio.wait_for(orchestrator.shutdown(), timeout=SHUTDOWN_TIMEOUT_SECONDS)
        logger.info("Graceful shutdown completed")
    except TimeoutError:
        logger.warning("Shutdown timed out", timeout=SHUTDOWN_TIMEOUT_SECONDS)


async def _branchpod_error_handler(_request: Request, exc: Exception) -> JSONResponse:
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, code in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            status_code = code
            break
    if status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
        logger.error("Request failed", error=str(exc), error_type=type(exc).__name__)
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


async def _validation_error_handler(_request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


def create_app(
    settings: Settings | None = None,
    orchestrator: Orchestrator | None = None,
) -> FastAPI:
    """Build the FastAPI app with its own orchestrator.

    Used as a uvicorn factory (``branchpod.main:create_app``) and by tests,
    which pass an orchestrator wired with fakes.
    """
    if orchestrator is not None:
        settings = orchestrator.settings
    settings = settings or load_settings()

    init_sentry(settings, release=f"branchpod@{__version__}")
    configure_logging(
        "branchpod",
        log_level="DEBUG" if settings.debug else settings.log_level,
        json_format=not settings.is_development(),
    )

    app = FastAPI(
        title="branchpod",
        description="Branch-scoped development servers and console sessions",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator or Orchestrator.build(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    Instrumentator().instrument(app).expose(app)

    app.add_exception_handler(BranchpodError, _branchpod_error_handler)
    app.add_exception_handler(ValidationError, _validation_error_handler)

    app.include_router(health_router)
    app.include_router(servers_router)
    app.include_router(consoles_router)
    app.include_router(commands_router)
    app.include_router(worktrees_router)

    return app
