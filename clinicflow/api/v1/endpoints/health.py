"""Health check endpoints."""

from fastapi import APIRouter, Request, status
from pydantic import BaseModel

from clinicflow.config import settings
from clinicflow.core.cache import redis_available
from clinicflow.database import check_database_connection

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    version: str
    environment: str


class DetailedHealthResponse(HealthResponse):
    """Health of the service and the backends it depends on."""

    database: str
    redis: str
    sweeper: str
    booking_mode: str


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Basic health check",
)
async def health_check() -> HealthResponse:
    """Liveness probe."""
    return HealthResponse(
        status="healthy",
        version=settings.app_version,
        environment=settings.environment,
    )


@router.get(
    "/health/detailed",
    response_model=DetailedHealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Detailed health check",
)
async def detailed_health_check(request: Request) -> DetailedHealthResponse:
    """
    Readiness probe.

    The service is degraded without its database; Redis only backs the
    pricing cache, so losing it is reported but not fatal.
    """
    db_healthy = await check_database_connection()
    redis_healthy = await redis_available()
    sweeper = getattr(request.app.state, "sweeper", None)

    return DetailedHealthResponse(
        status="healthy" if db_healthy else "degraded",
        version=settings.app_version,
        environment=settings.environment,
        database="healthy" if db_healthy else "unhealthy",
        redis="healthy" if redis_healthy else "unhealthy",
        sweeper="running" if sweeper is not None and sweeper.is_running else "stopped",
        booking_mode=settings.booking_mode,
    )


@router.get(
    "/ping",
    status_code=status.HTTP_200_OK,
    summary="Simple ping",
)
async def ping() -> dict[str, str]:
    """Pong."""
    return {"message": "pong"}
