"""Request-scoped access to the service built at startup."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from src.visitor_sync.sync.service import VisitorSyncService


def get_service(request: Request) -> VisitorSyncService:
    """Retrieve VisitorSyncService from app.state, 503 if not available.

    The service is absent when startup hit a ConfigurationError; the
    stored message is returned as the detail.
    """
    service = getattr(request.app.state, "visitor_sync", None)
    if service is None:
        detail = getattr(request.app.state, "configuration_error", None)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=detail or "Visitor sync service not initialized",
        )
    return service
