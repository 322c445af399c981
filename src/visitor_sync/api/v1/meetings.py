"""REST endpoints driven by the host calendar add-in.

The host pushes the current state of a meeting (``PUT .../snapshot``) and
forwards its change notifications (``POST .../changes``). Change events are
accepted immediately and reconciled in the background by the coordinator;
the remaining endpoints run a pass synchronously and return its result.
"""

from __future__ import annotations

from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from src.visitor_sync.api.v1.deps import get_service
from src.visitor_sync.errors import MeetingNotFoundError
from src.visitor_sync.schemas import (
    Attendee,
    HostChangeKind,
    MeetingSnapshot,
    ReconciliationResult,
)
from src.visitor_sync.sync.host import InMemoryMeetingSource
from src.visitor_sync.sync.service import VisitorSyncService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/meetings", tags=["meetings"])


# ── Request / Response Schemas ───────────────────────────────────────────────


class SnapshotPayload(BaseModel):
    """Meeting state as pushed by the host; the id comes from the path."""

    title: str = ""
    start_time: datetime | None = None
    end_time: datetime | None = None
    attendees: list[Attendee] = Field(default_factory=list)

    def to_snapshot(self, meeting_id: str) -> MeetingSnapshot:
        return MeetingSnapshot(
            meeting_id=meeting_id,
            title=self.title,
            start_time=self.start_time,
            end_time=self.end_time,
            attendees=tuple(self.attendees),
        )


class ChangeEvent(BaseModel):
    change_kind: HostChangeKind | None = None


class ChangeAccepted(BaseModel):
    meeting_id: str
    started: bool
    coalesced: bool


class ReconcileRequest(BaseModel):
    snapshot: SnapshotPayload
    change_kind: HostChangeKind | None = None


class SnapshotStored(BaseModel):
    meeting_id: str
    external_participants: int


def _meeting_source(service: VisitorSyncService) -> InMemoryMeetingSource:
    source = service.source
    if not isinstance(source, InMemoryMeetingSource):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Meeting snapshots are read from the host directly",
        )
    return source


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.put("/{meeting_id}/snapshot", response_model=SnapshotStored)
async def put_snapshot(
    meeting_id: str,
    body: SnapshotPayload,
    service: VisitorSyncService = Depends(get_service),
) -> SnapshotStored:
    """Store the host's current view of a meeting. Does not reconcile."""
    snapshot = body.to_snapshot(meeting_id)
    _meeting_source(service).put(snapshot)
    external = service.engine.external_participants(snapshot)
    logger.info(
        "api.snapshot_stored",
        meeting_id=meeting_id,
        attendees=len(snapshot.attendees),
        external_participants=len(external),
    )
    return SnapshotStored(meeting_id=meeting_id, external_participants=len(external))


@router.delete("/{meeting_id}/snapshot", status_code=status.HTTP_204_NO_CONTENT)
async def delete_snapshot(
    meeting_id: str,
    service: VisitorSyncService = Depends(get_service),
) -> None:
    """Forget a meeting's snapshot. Records are only removed by a ``deleted`` change."""
    _meeting_source(service).discard(meeting_id)


@router.post(
    "/{meeting_id}/changes",
    response_model=ChangeAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def post_change(
    meeting_id: str,
    body: ChangeEvent,
    service: VisitorSyncService = Depends(get_service),
) -> ChangeAccepted:
    """Accept a host change notification and reconcile in the background."""
    started = service.on_change(meeting_id, body.change_kind)
    return ChangeAccepted(meeting_id=meeting_id, started=started, coalesced=not started)


@router.post("/{meeting_id}/reconcile", response_model=ReconciliationResult)
async def reconcile_meeting(
    meeting_id: str,
    body: ReconcileRequest,
    service: VisitorSyncService = Depends(get_service),
) -> ReconciliationResult:
    """Reconcile the supplied snapshot and return the pass result."""
    return await service.reconcile(body.snapshot.to_snapshot(meeting_id), body.change_kind)


@router.post("/{meeting_id}/sync", response_model=ReconciliationResult)
async def sync_meeting(
    meeting_id: str,
    service: VisitorSyncService = Depends(get_service),
) -> ReconciliationResult:
    """Manual sync of the stored snapshot."""
    try:
        return await service.manual_sync(meeting_id)
    except MeetingNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.post("/{meeting_id}/quick-process", response_model=ReconciliationResult)
async def quick_process_meeting(
    meeting_id: str,
    service: VisitorSyncService = Depends(get_service),
) -> ReconciliationResult:
    """Register the visitors of the stored snapshot as a new booking."""
    try:
        return await service.quick_process(meeting_id)
    except MeetingNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
