"""
CallRoute - Health Check Endpoints

System health monitoring endpoints for load balancers, monitoring,
and operational visibility.
"""

from fastapi import APIRouter, Depends, Request

from app import __version__
from app.config import Settings
from app.core.routing import CallRoutingService
from app.core.types import utcnow

router = APIRouter(prefix="/v1/system", tags=["system"])


def get_routing_service(request: Request) -> CallRoutingService:
    return request.app.state.routing


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def _timestamp() -> str:
    return utcnow().isoformat()


@router.get("/health")
async def health_check(
    routing: CallRoutingService = Depends(get_routing_service),
    settings: Settings = Depends(get_app_settings),
) -> dict:
    """
    Overall system health check.

    Returns:
        - status: "healthy" or "degraded"
        - checks: Individual component statuses
        - timestamp: Current server time

    Used by load balancers and monitoring systems.
    """
    checks = {}

    number_count = len(routing.registry)
    checks["number_registry"] = {
        "status": "healthy" if number_count else "degraded",
        "numbers": number_count,
    }

    checks["flow_resolver"] = {
        "status": "healthy",
        "cached_versions": routing.resolver.cached_versions,
    }

    checks["sessions"] = {
        "status": "healthy",
        "active_calls": await routing.sessions.get_active_count(),
        "max_concurrent_calls": settings.max_concurrent_calls,
    }

    checks["audit"] = {
        "status": "healthy" if settings.enable_audit else "disabled",
    }

    checks["classifier"] = {
        "status": "healthy",
        "backend": settings.classifier_backend,
    }

    all_healthy = all(
        c.get("status") in ("healthy", "disabled")
        for c in checks.values()
    )

    return {
        "status": "healthy" if all_healthy else "degraded",
        "timestamp": _timestamp(),
        "version": __version__,
        "environment": settings.app_env,
        "checks": checks,
    }


@router.get("/ready")
async def readiness_check(
    routing: CallRoutingService = Depends(get_routing_service),
) -> dict:
    """
    Readiness probe for Kubernetes/container orchestration.

    Ready once number bindings are loaded.
    """
    return {
        "ready": len(routing.registry) > 0,
        "timestamp": _timestamp(),
    }


@router.get("/live")
async def liveness_check() -> dict:
    """
    Liveness probe for Kubernetes/container orchestration.

    Returns 200 if the service is alive.
    """
    return {
        "alive": True,
        "timestamp": _timestamp(),
    }
