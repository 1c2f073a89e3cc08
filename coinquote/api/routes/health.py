"""Health check endpoints."""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from coinquote.api.dependencies import get_service
from coinquote.core.config import settings
from coinquote.core.logging import get_logger
from coinquote.schemas.common import HealthResponse
from coinquote.services.resolver_service import ResolverService


router = APIRouter(prefix="/health")

logger = get_logger("health")


@router.get(
    "",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health status of the API and its dependencies.",
)
async def health_check(service: ResolverService = Depends(get_service)) -> HealthResponse:
    """
    Database reachability, primary price feed state and fallback availability.

    Healthy when all pass, degraded while the database is up but the primary
    feed is cooling down or the fallback is gone, unhealthy otherwise.
    """
    prices = service.prices.health()
    checks = {
        "database": await service.store.healthcheck(),
        "primary_prices": prices["primary_healthy"],
        "fallback_stream": prices["fallback_available"],
    }

    if all(checks.values()):
        status = "healthy"
    elif checks["database"]:
        status = "degraded"
    else:
        status = "unhealthy"

    return HealthResponse(
        status=status,
        version=settings.app_version,
        timestamp=datetime.now(timezone.utc),
        checks=checks,
    )


@router.get(
    "/live",
    summary="Liveness check",
    description="Check if the API process is alive.",
)
async def liveness_check() -> dict:
    """Kubernetes-style liveness probe."""
    return {"status": "alive"}
