"""Health check endpoints."""

from fastapi import APIRouter, Request

from coursetrack.config import get_settings
from coursetrack.core.database import AsyncCassandraConnection


router = APIRouter(prefix="/health", tags=["health"])


@router.get("/live")
async def liveness() -> dict[str, str]:
    """Liveness check: the application is running."""
    return {"status": "alive"}


@router.get("/ready")
async def readiness(request: Request) -> dict[str, str | bool]:
    """Readiness check: reports the storage backend and Redis availability."""
    settings = get_settings()
    if settings.storage_backend == "memory":
        storage_ready = True
    else:
        storage_ready = AsyncCassandraConnection.is_connected()
    progress_ready = getattr(request.app.state, "progress", None) is not None

    return {
        "status": "ready" if storage_ready and progress_ready else "degraded",
        "environment": settings.environment,
        "debug": settings.debug,
        "storage_backend": settings.storage_backend,
        "storage": storage_ready,
        "redis": getattr(request.app.state, "redis", None) is not None,
    }


@router.get("")
async def health() -> dict[str, str]:
    """General health check endpoint."""
    settings = get_settings()
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
    }
