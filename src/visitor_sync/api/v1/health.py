"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready). Readiness
probes the record store and notification endpoint, so it is slower and
should be polled less often than liveness.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from src.visitor_sync.config import get_settings

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(request: Request):
    """Basic liveness check. No remote dependencies are contacted."""
    settings = get_settings()
    configured = getattr(request.app.state, "visitor_sync", None) is not None
    return {
        "status": "ok",
        "environment": settings.ENVIRONMENT.value,
        "configured": configured,
    }


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: 200 if every remote dependency answers, 503 otherwise."""
    service = getattr(request.app.state, "visitor_sync", None)
    if service is None:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "unconfigured",
                "error": getattr(request.app.state, "configuration_error", None),
            },
        )

    report = await service.test_connections()
    checks = {
        r.service: "ok" if r.success else (r.error or "error") for r in report.results
    }
    return JSONResponse(
        status_code=status.HTTP_200_OK if report.all_success else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if report.all_success else "degraded",
            "checks": checks,
        },
    )
