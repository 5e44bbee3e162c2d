"""
Health check and readiness endpoints.

This module provides health monitoring for:
- Liveness probes (basic API health)
- Readiness probes (job store reachable, workers running)
- Detailed status information for debugging
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel

from feedback_hub.api.dependencies import Services, get_services

logger = logging.getLogger(__name__)

# Track service start time for uptime calculation
SERVICE_START_TIME = time.time()

API_VERSION = "1.0.0"

router = APIRouter(tags=["health"])


class HealthStatus(BaseModel):
    """Health status response model."""

    status: str
    timestamp: datetime
    uptime_seconds: float
    version: str = API_VERSION


class ReadinessStatus(BaseModel):
    """Readiness status response model."""

    status: str
    timestamp: datetime
    checks: Dict[str, Any]
    ready: bool


class DetailedHealth(BaseModel):
    """Detailed health status with all components."""

    status: str
    timestamp: datetime
    uptime_seconds: float
    version: str
    components: Dict[str, Dict[str, Any]]


@router.get(
    "/health",
    response_model=HealthStatus,
    status_code=status.HTTP_200_OK,
    summary="Basic health check",
    description="Returns basic API health status. Used for liveness probes.",
)
async def health() -> HealthStatus:
    """
    Basic health check endpoint (liveness probe).

    Always returns 200 OK while the process is serving requests.
    """
    return HealthStatus(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        uptime_seconds=round(time.time() - SERVICE_START_TIME, 2),
    )


@router.get(
    "/ready",
    response_model=ReadinessStatus,
    summary="Readiness check",
    description="Returns readiness status with dependency checks. Used for readiness probes.",
)
async def readiness(response: Response, services: Services = Depends(get_services)) -> ReadinessStatus:
    """
    Readiness check endpoint (readiness probe).

    Checks:
    - Job store reachable
    - Worker pool running (only when workers run in this process)

    Returns 200 OK if all checks pass, 503 Service Unavailable otherwise.
    """
    checks = {}
    all_ready = True

    store_ok = await services.store.ping()
    checks["job_store"] = {
        "status": "ready" if store_ok else "unreachable",
        "healthy": store_ok,
        "backend": services.settings.JOB_STORE_BACKEND,
    }
    all_ready = all_ready and store_ok

    if services.settings.RUN_WORKERS_IN_PROCESS:
        running = services.worker_pool.running
        checks["worker_pool"] = {
            "status": "ready" if running else "not_running",
            "healthy": running,
        }
        all_ready = all_ready and running

    if not all_ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return ReadinessStatus(
        status="ready" if all_ready else "not_ready",
        timestamp=datetime.now(timezone.utc),
        checks=checks,
        ready=all_ready,
    )


@router.get(
    "/health/detailed",
    response_model=DetailedHealth,
    summary="Detailed health status",
    description="Returns detailed health information for all components.",
)
async def detailed_health(services: Services = Depends(get_services)) -> DetailedHealth:
    """
    Detailed health check with component statistics.

    Includes job counts per lane, worker statistics and WebSocket connections.
    """
    components: Dict[str, Dict[str, Any]] = {}

    try:
        components["job_store"] = {
            "status": "available",
            "backend": services.settings.JOB_STORE_BACKEND,
            "counts": await services.store.counts(),
        }
    except Exception as e:
        logger.warning(f"Job store check failed: {e}")
        components["job_store"] = {"status": "error", "error": str(e)}

    components["worker_pool"] = services.worker_pool.get_statistics()
    components["websocket_manager"] = {
        "status": "available",
        **services.connections.get_stats(),
    }

    overall = "healthy" if components["job_store"]["status"] == "available" else "degraded"

    return DetailedHealth(
        status=overall,
        timestamp=datetime.now(timezone.utc),
        uptime_seconds=round(time.time() - SERVICE_START_TIME, 2),
        version=API_VERSION,
        components=components,
    )
