"""
FastAPI application for the Feedback Hub job service.

Exposes the admin REST surface (jobs, audit, logout), the notification
WebSocket, health probes and Prometheus metrics. The worker pool runs inside
this process unless RUN_WORKERS_IN_PROCESS is disabled.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from core.exceptions import (
    FeedbackHubError,
    InvalidLaneError,
    StoreUnavailableError,
    ValidationError,
)
from feedback_hub.api import audit_routes, auth_routes, health, job_routes, websocket_routes
from feedback_hub.api.dependencies import Services, build_services
from feedback_hub.api.health import API_VERSION
from feedback_hub.config import Settings, get_settings
from feedback_hub.logging_config import configure_structured_logging

logger = logging.getLogger(__name__)


def _error_response(status_code: int, error: str, exc: FeedbackHubError, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": error,
            "detail": exc.message,
            "error_type": type(exc).__name__,
            "details": exc.details,
            **extra,
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Map producer-side errors to HTTP responses."""

    @app.exception_handler(InvalidLaneError)
    async def invalid_lane_handler(request: Request, exc: InvalidLaneError) -> JSONResponse:
        return _error_response(status.HTTP_404_NOT_FOUND, "Unknown lane", exc)

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        return _error_response(
            status.HTTP_422_UNPROCESSABLE_ENTITY, "Validation failed", exc, errors=exc.errors
        )

    @app.exception_handler(StoreUnavailableError)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailableError) -> JSONResponse:
        logger.error(f"Job store unavailable: {exc}")
        return _error_response(status.HTTP_503_SERVICE_UNAVAILABLE, "Job store unavailable", exc)

    @app.exception_handler(FeedbackHubError)
    async def feedback_hub_error_handler(request: Request, exc: FeedbackHubError) -> JSONResponse:
        logger.error(f"Unhandled service error: {exc}")
        return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal error", exc)


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Configuration (defaults to environment/.env)
        services: Pre-built services (tests); built from settings otherwise
    """
    settings = settings or get_settings()
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("=" * 60)
        logger.info("Feedback Hub API Starting")
        logger.info("=" * 60)
        logger.info(f"Server: {settings.HOST}:{settings.PORT}")
        logger.info(f"Job store: {settings.JOB_STORE_BACKEND}")
        logger.info(f"Notifications: {settings.NOTIFICATION_BACKEND}")
        if not settings.admin_api_keys:
            logger.warning("⚠️  ADMIN_API_KEYS not set: admin endpoints accept anonymous requests")

        await services.start()
        if settings.RUN_WORKERS_IN_PROCESS:
            logger.info(f"✓ Worker pool started ({len(services.worker_pool.lanes)} lanes)")
        if services.relay is not None:
            logger.info("✓ Notification relay started")

        yield

        logger.info("Feedback Hub API Shutting Down")
        try:
            await services.stop()
            logger.info("✓ Services stopped")
        except Exception as e:
            logger.error(f"✗ Failed to stop services cleanly: {e}")

    app = FastAPI(
        title="Feedback Hub API",
        description="Background jobs, notifications and audit trail for the student feedback app",
        version=API_VERSION,
        docs_url="/docs" if settings.ENABLE_DOCS else None,
        redoc_url="/redoc" if settings.ENABLE_DOCS else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.services = services

    if settings.CORS_ENABLED:
        from fastapi.middleware.cors import CORSMiddleware

        app.add_middleware(
            CORSMiddleware,
            allow_origins=[settings.CLIENT_URL],
            allow_credentials=True,
            allow_methods=["GET", "POST"],
            allow_headers=["*"],
        )
        logger.info(f"CORS enabled with origin: {settings.CLIENT_URL}")

    register_exception_handlers(app)

    # Request count and latency per endpoint; no in-progress gauge (registry-global)
    instrumentator = Instrumentator(
        should_group_status_codes=False,
        should_ignore_untemplated=True,
        excluded_handlers=["/metrics"],
    )
    instrumentator.instrument(app)
    instrumentator.expose(app, endpoint="/metrics", tags=["Metrics"])

    app.include_router(health.router)
    app.include_router(job_routes.router)
    app.include_router(audit_routes.router)
    app.include_router(auth_routes.router)
    app.include_router(websocket_routes.router)

    return app


def _create_default_app() -> FastAPI:
    settings = get_settings()
    configure_structured_logging(level=settings.LOG_LEVEL, enable_json=settings.LOG_JSON_FORMAT)
    return create_app(settings)


app = _create_default_app()
