"""Health check endpoints for monitoring."""
from typing import Any, Dict

from fastapi import APIRouter, Depends

from receiptgold import __version__
from receiptgold.api.dependencies import get_services
from receiptgold.core.config import settings
from receiptgold.services.registry import Services

router = APIRouter(tags=["health"])


@router.api_route("/health", methods=["GET", "HEAD"])
async def health_check() -> Dict[str, Any]:
    """Basic health check endpoint (supports GET & HEAD)."""
    return {
        "status": "healthy",
        "environment": settings.ENVIRONMENT,
        "version": __version__,
    }


@router.get("/health/detailed")
async def detailed_health_check(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Health check with document store and broker status."""
    health_status: Dict[str, Any] = {"status": "healthy", "services": {}}

    try:
        await services.store.get("_health", "ping")
        health_status["services"]["database"] = "healthy"
    except Exception as e:
        health_status["services"]["database"] = f"unhealthy: {str(e)}"
        health_status["status"] = "degraded"

    try:
        import redis

        client = redis.Redis.from_url(settings.REDIS_URL, socket_connect_timeout=2)
        client.ping()
        client.close()
        health_status["services"]["redis"] = "healthy"
    except Exception as e:
        health_status["services"]["redis"] = f"unhealthy: {str(e)}"
        health_status["status"] = "degraded"

    return health_status
