"""Diagnostics endpoints: statistics, connection tests, schema, config, history."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status

from src.visitor_sync.api.v1.deps import get_service
from src.visitor_sync.errors import StoreReadError
from src.visitor_sync.schemas import (
    ConnectionReport,
    NotificationHistoryEntry,
    SchemaValidation,
    VisitorStatistics,
)
from src.visitor_sync.sync.service import VisitorSyncService

router = APIRouter(tags=["diagnostics"])


@router.get("/visitors/statistics", response_model=VisitorStatistics)
async def visitor_statistics(
    days: int = Query(default=7, ge=1, le=365),
    service: VisitorSyncService = Depends(get_service),
) -> VisitorStatistics:
    try:
        return await service.statistics(days)
    except StoreReadError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc


@router.get("/diagnostics/connections", response_model=ConnectionReport)
async def connection_report(
    service: VisitorSyncService = Depends(get_service),
) -> ConnectionReport:
    """Probe the record store and the notification endpoint."""
    return await service.test_connections()


@router.get("/diagnostics/schema", response_model=SchemaValidation)
async def schema_validation(
    service: VisitorSyncService = Depends(get_service),
) -> SchemaValidation:
    """Check that the visitor list exposes every field the store writes."""
    return await service.validate_schema()


@router.get("/diagnostics/config")
async def configuration(
    service: VisitorSyncService = Depends(get_service),
) -> dict[str, Any]:
    return service.configuration_summary()


@router.get("/notifications/history", response_model=list[NotificationHistoryEntry])
async def notification_history(
    limit: int = Query(default=50, ge=1, le=100),
    service: VisitorSyncService = Depends(get_service),
) -> list[NotificationHistoryEntry]:
    """Most recent delivery attempts, newest first."""
    return service.notifier.history(limit)


@router.delete("/notifications/history", status_code=status.HTTP_204_NO_CONTENT)
async def clear_notification_history(
    service: VisitorSyncService = Depends(get_service),
) -> None:
    service.notifier.clear_history()
