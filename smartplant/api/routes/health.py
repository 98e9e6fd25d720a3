"""
Health check and system status endpoints.

Provides endpoints for:
- Basic health check
- Liveness probe
- Readiness check (classifier worker and database)
"""

import logging
import time
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from smartplant.core.config import Settings, get_settings
from smartplant.core.dependencies import get_sessions, get_supervisor
from smartplant.models.enums import WorkerState
from smartplant.services.worker_supervisor import WorkerSupervisor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: float
    version: str


class DetailedHealthResponse(BaseModel):
    """Detailed health check with component status."""
    status: str
    timestamp: float
    version: str
    components: dict[str, dict]
    uptime_seconds: Optional[float] = None


# Track startup time
_startup_time: Optional[float] = None


def set_startup_time() -> None:
    """Set the startup time (called on app startup)."""
    global _startup_time
    _startup_time = time.time()


@router.get("", response_model=HealthResponse)
async def health_check(settings: Settings = Depends(get_settings)) -> HealthResponse:
    """Basic health check endpoint."""
    return HealthResponse(
        status="healthy",
        timestamp=time.time(),
        version=settings.app_version,
    )


@router.get("/ready", response_model=DetailedHealthResponse)
async def readiness_check(
    settings: Settings = Depends(get_settings),
    supervisor: WorkerSupervisor = Depends(get_supervisor),
    session_factory: sessionmaker = Depends(get_sessions),
) -> DetailedHealthResponse:
    """
    Readiness check for the ingestion pipeline.

    Verifies:
    - The classifier worker is running (or will be respawned on demand)
    - The database answers a trivial query

    Returns 503 when the database is unreachable or the worker was stopped.
    """
    components = {}
    overall_healthy = True

    worker_state = supervisor.state
    components["classifier_worker"] = {
        "status": "ready" if worker_state is WorkerState.RUNNING else worker_state.value,
        "pid": supervisor.pid,
        "spawn_count": supervisor.spawn_count,
    }
    if worker_state is WorkerState.STOPPED:
        overall_healthy = False

    try:
        with session_factory() as session:
            session.execute(text("SELECT 1"))
        components["database"] = {"status": "ready"}
    except SQLAlchemyError as e:
        logger.error(f"Database readiness check failed: {e}")
        components["database"] = {"status": "error", "error": str(e)}
        overall_healthy = False

    if not overall_healthy:
        raise HTTPException(status_code=503, detail={"status": "not_ready", "components": components})

    uptime = None
    if _startup_time:
        uptime = time.time() - _startup_time

    return DetailedHealthResponse(
        status="ready" if worker_state is WorkerState.RUNNING else "degraded",
        timestamp=time.time(),
        version=settings.app_version,
        components=components,
        uptime_seconds=uptime,
    )


@router.get("/live")
async def liveness_check() -> dict:
    """
    Simple liveness probe for Kubernetes.

    Returns 200 if the process is running.
    """
    return {"status": "alive"}
