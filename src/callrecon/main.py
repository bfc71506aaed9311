"""
FastAPI application entry point.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from callrecon.config import get_settings
from callrecon.reconciliation.duration import DurationResolver
from callrecon.reconciliation.service import ReconciliationService
from callrecon.shared.database import get_database_manager
from callrecon.shared.exceptions import (
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from callrecon.shared.logging import get_logger, setup_logging
from callrecon.telephony.credentials import SettingsCredentialResolver
from callrecon.telephony.exotel import ExotelClient
from callrecon.webhooks.router import router as webhook_router

import callrecon.contacts.models  # noqa: F401
import callrecon.telephony.models  # noqa: F401

logger = get_logger(__name__)


async def _duration_sync_supervisor(service: ReconciliationService) -> None:
    """Periodically backfill durations the retry chain could not resolve."""
    settings = get_settings()

    logger.info(
        "Duration sync supervisor starting",
        extra={
            "interval_seconds": settings.duration_sync_interval_seconds,
            "batch_size": settings.duration_sync_batch_size,
        },
    )

    while True:
        try:
            await service.sync_missing_durations(
                limit=settings.duration_sync_batch_size,
                max_age_days=settings.duration_sync_max_age_days,
            )
        except asyncio.CancelledError:
            logger.info("Duration sync supervisor cancelled; stopping")
            raise
        except Exception:
            logger.exception("Duration sync tick failed")

        await asyncio.sleep(settings.duration_sync_interval_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    setup_logging()
    settings = get_settings()

    logger.info("Application starting", extra={"env": settings.app_env})

    db_manager = get_database_manager()
    exotel = ExotelClient()
    service = ReconciliationService(
        db_manager.session,
        DurationResolver(exotel, SettingsCredentialResolver(db_manager.session)),
        retry_delays=settings.duration_retry_delays,
        stale_timeout_seconds=settings.stale_call_timeout_seconds,
    )
    app.state.reconciliation_service = service

    sync_task: asyncio.Task[None] | None = None
    if settings.duration_sync_enabled:
        sync_task = asyncio.create_task(_duration_sync_supervisor(service))
        logger.info("Duration sync enabled; background task created")

    yield

    logger.info("Shutting down application")

    if sync_task is not None:
        sync_task.cancel()
        try:
            await sync_task
        except asyncio.CancelledError:
            pass
        logger.info("Duration sync background task stopped")

    await service.shutdown()
    await exotel.aclose()
    await db_manager.close()
    logger.info("Application shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Call Reconciliation API",
        description="Reconciles outbound call outcomes from provider callbacks",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    # Map domain exceptions to HTTP responses
    @app.exception_handler(NotFoundError)
    async def _not_found(_: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ValidationError)
    async def _validation(_: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(PersistenceError)
    async def _persistence(request: Request, exc: PersistenceError) -> JSONResponse:
        logger.error(
            "Persistence failure while handling request",
            extra={"path": request.url.path, "details": exc.details},
        )
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    # Request validation (FastAPI/Pydantic) -> consistent 422 payload
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        errors = []
        for error in exc.errors():
            field = ".".join(str(loc) for loc in error["loc"])
            errors.append(
                {
                    "field": field,
                    "message": error["msg"],
                    "type": error["type"],
                }
            )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "detail": {
                    "code": "VALIDATION_ERROR",
                    "message": "Request validation failed",
                    "errors": errors,
                }
            },
        )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(webhook_router)

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        return {"status": "healthy"}

    return app


app = create_app()
