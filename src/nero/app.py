"""FastAPI application factory."""

# Import timezone enforcement (sets TZ=UTC)
import asyncio
from contextlib import asynccontextmanager
from typing import Awaitable, Callable

import httpx
import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from nero.api.routes import generation, webhooks
from nero.core import timezone  # noqa: F401
from nero.core.config import Settings, configure_logging
from nero.core.database import setup_db_session
from nero.services.exceptions import (
    AuthenticationError,
    InsufficientBalanceError,
    InvalidGenerationRequest,
    MaterializationError,
    ProviderConfigurationError,
    ProviderRequestError,
    ProviderTransientError,
    ServiceError,
    TaskAccessDeniedError,
    TaskNotFoundError,
    UserNotFoundError,
)
from nero.services.generation.service import create_generation_service
from nero.uow import create_uow_factory
from nero.workers.sweeper import run_sweeper_worker

logger = structlog.get_logger()

# Checked in order; subclasses before their bases
ERROR_STATUS_CODES: list[tuple[type[ServiceError], int]] = [
    (AuthenticationError, status.HTTP_401_UNAUTHORIZED),
    (InsufficientBalanceError, status.HTTP_402_PAYMENT_REQUIRED),
    (TaskAccessDeniedError, status.HTTP_403_FORBIDDEN),
    (TaskNotFoundError, status.HTTP_404_NOT_FOUND),
    (UserNotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidGenerationRequest, status.HTTP_400_BAD_REQUEST),
    (MaterializationError, status.HTTP_502_BAD_GATEWAY),
    (ProviderRequestError, status.HTTP_502_BAD_GATEWAY),
    (ProviderTransientError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (ProviderConfigurationError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def status_code_for(exc: ServiceError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Translate service errors into JSON error responses."""
    status_code = status_code_for(exc)

    log = logger.warning if status_code < 500 else logger.error
    log(
        "request.failed",
        path=request.url.path,
        status_code=status_code,
        error=str(exc),
        error_type=type(exc).__name__,
    )

    content: dict = {"detail": str(exc)}
    if isinstance(exc, InsufficientBalanceError):
        content["required"] = exc.required
        content["available"] = exc.available

    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def create_resilient_worker(
    coro_func: Callable[[], Awaitable[None]], worker_name: str, shutdown_event: asyncio.Event
):
    """Create a worker with automatic restart on failure.

    Args:
        coro_func: Zero-argument callable returning the worker coroutine
        worker_name: Human-readable worker name for logging
        shutdown_event: Event to signal graceful shutdown

    Returns:
        Initial task handle (will be auto-recreated on crash)
    """
    RESTART_DELAY = 1  # Fixed 1 second delay between restarts

    def on_worker_done(task: asyncio.Task):
        if shutdown_event.is_set():
            logger.info("worker.shutdown_complete", worker=worker_name)
            return

        # Cancelled task means normal shutdown
        if task.cancelled():
            logger.info("worker.cancelled", worker=worker_name)
            return

        exc = task.exception()
        if exc:
            logger.error(
                "worker.crashed",
                worker=worker_name,
                error=str(exc),
                error_type=type(exc).__name__,
                retry_in_seconds=RESTART_DELAY,
                exc_info=exc,
            )
        else:
            # Worker stopped cleanly (unexpected for infinite loop workers)
            logger.warning(
                "worker.stopped_unexpectedly",
                worker=worker_name,
                retry_in_seconds=RESTART_DELAY,
            )

        async def restart_worker():
            await asyncio.sleep(RESTART_DELAY)

            # Check again if shutdown was requested during sleep
            if shutdown_event.is_set():
                return

            logger.info("worker.restarting", worker=worker_name)
            new_task = asyncio.create_task(coro_func())
            new_task.add_done_callback(on_worker_done)

        asyncio.create_task(restart_worker())

    task = asyncio.create_task(coro_func())
    task.add_done_callback(on_worker_done)
    return task


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Handles startup and shutdown tasks:
    - Startup: Configure logging, create the database session factory, the
      shared HTTP client and the generation service, start the sweeper
    - Shutdown: Stop the sweeper, close the HTTP client
    """
    settings: Settings = app.state.settings

    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)

    # Shared by the provider client and the image fetcher; per-call timeouts apply
    http_client = httpx.AsyncClient()
    generation_service = create_generation_service(settings, uow_factory, http_client)

    # Store in app.state for access in routes
    app.state.session_factory = session_factory
    app.state.uow_factory = uow_factory
    app.state.http_client = http_client
    app.state.generation_service = generation_service

    shutdown_event = asyncio.Event()
    sweeper_task = None
    if settings.sweeper_enabled:
        sweeper_task = create_resilient_worker(
            lambda: run_sweeper_worker(generation_service, settings), "sweeper", shutdown_event
        )

    logger.info(
        "application.startup",
        db_url=settings.database_url.split("@")[-1],
        sweeper_enabled=settings.sweeper_enabled,
    )

    yield

    logger.info("application.shutdown")
    shutdown_event.set()

    if sweeper_task is not None:
        sweeper_task.cancel()
        await asyncio.gather(sweeper_task, return_exceptions=True)

    await http_client.aclose()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        settings: Settings to use instead of loading them from the environment

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="Nero Generation API",
        description="Asynchronous image generation task lifecycle",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ServiceError, service_error_handler)  # type: ignore[arg-type]

    app.include_router(generation.router)
    app.include_router(webhooks.router)

    # Health check endpoint with database validation
    @app.get("/health")
    async def health_check(response: Response):
        """Health check endpoint with database connectivity test.

        Returns:
            200: {"status": "healthy"} if database connection succeeds
            503: {"status": "unhealthy", "error": {...}} if database connection fails
        """
        try:
            async with app.state.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()

            logger.debug("health_check.success")
            return {"status": "healthy"}

        except Exception as e:
            logger.error(
                "health_check.failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {
                "status": "unhealthy",
                "error": {
                    "type": type(e).__name__,
                    "message": str(e),
                },
            }

    return app


# Create app instance for uvicorn
app = create_app()
