"""Pydantic v2 schemas for the visitor synchronization domain.

Defines the data contracts shared by the classifier, the record store and
notification clients, the reconciliation engine and the change coordinator:
meeting snapshots captured from the host calendar, visitor records persisted
in the remote list, notification requests, and the aggregate results each
operation reports back to its caller.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, computed_field


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ────────────────────────────────────────────────────────────────────


class AttendeeKind(str, Enum):
    """How an attendee was invited to the meeting."""

    REQUIRED = "required"
    OPTIONAL = "optional"
    RESOURCE = "resource"


class VisitorStatus(str, Enum):
    """Lifecycle status of a visitor record in the remote list."""

    SCHEDULED = "Scheduled"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


class HostChangeKind(str, Enum):
    """Change notifications emitted by the host calendar runtime."""

    RECIPIENTS_CHANGED = "recipients_changed"
    SUBJECT_CHANGED = "subject_changed"
    TIME_CHANGED = "time_changed"
    APPOINTMENT_CHANGED = "appointment_changed"
    CREATED = "created"
    DELETED = "deleted"


class NotificationType(str, Enum):
    """Notification kinds understood by the notification endpoint."""

    CREATED = "created"
    UPDATED = "updated"
    CANCELLED = "cancelled"


# ── Meeting Snapshot ─────────────────────────────────────────────────────────


class Attendee(BaseModel):
    """A raw attendee as supplied by the host calendar."""

    model_config = ConfigDict(frozen=True)

    email: str = ""
    display_name: str = ""
    kind: AttendeeKind = AttendeeKind.REQUIRED


class MeetingSnapshot(BaseModel):
    """Immutable view of a meeting captured at one instant."""

    model_config = ConfigDict(frozen=True)

    meeting_id: str = Field(min_length=1)
    title: str = ""
    start_time: datetime | None = None
    end_time: datetime | None = None
    attendees: tuple[Attendee, ...] = ()


class ExternalParticipant(BaseModel):
    """An attendee that is neither internal nor a room/resource."""

    model_config = ConfigDict(frozen=True)

    email: str
    display_name: str

    @property
    def key(self) -> str:
        return self.email.lower()


# ── Visitor Records ──────────────────────────────────────────────────────────


class VisitorRecordCreate(BaseModel):
    """Payload for creating a visitor record."""

    meeting_id: str
    title: str = ""
    visitor_email: str
    visitor_name: str
    start_time: datetime | None = None
    end_time: datetime | None = None
    status: VisitorStatus = VisitorStatus.SCHEDULED
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)


class VisitorRecord(VisitorRecordCreate):
    """A visitor record as persisted by the remote store."""

    record_key: str

    @property
    def key(self) -> str:
        return self.visitor_email.lower()


class SchemaValidation(BaseModel):
    """Outcome of checking the remote list for required fields."""

    valid: bool
    missing_fields: list[str] = Field(default_factory=list)
    error: str | None = None


class VisitorStatistics(BaseModel):
    """Record counts by status over a trailing window."""

    total: int = 0
    scheduled: int = 0
    completed: int = 0
    cancelled: int = 0
    date_range_days: int = 7


# ── Notifications ────────────────────────────────────────────────────────────


class NotificationRequest(BaseModel):
    """One notification to deliver for one visitor."""

    model_config = ConfigDict(frozen=True)

    meeting_id: str
    title: str = ""
    visitor_email: str
    visitor_name: str
    start_time: datetime | None = None
    end_time: datetime | None = None
    change_kind: NotificationType
    issued_at: datetime = Field(default_factory=_utc_now)

    def to_payload(self, source: str) -> dict:
        """Serialize to the JSON document the notification endpoint accepts."""
        return {
            "meetingId": self.meeting_id,
            "meetingTitle": self.title,
            "visitorEmail": self.visitor_email,
            "visitorName": self.visitor_name,
            "startTime": _iso(self.start_time),
            "endTime": _iso(self.end_time),
            "notificationType": self.change_kind.value,
            "timestamp": _iso(self.issued_at),
            "source": source,
        }


class DeliveryResult(BaseModel):
    """Outcome of a single successful delivery."""

    delivered: bool = True
    attempt: int = 1
    response_digest: str = ""


class PerRequestResult(BaseModel):
    """Outcome of one request within a batch."""

    visitor_email: str
    delivered: bool
    attempt: int = 0
    response_digest: str = ""
    error: str | None = None
    error_type: str | None = None


class BatchNotificationResult(BaseModel):
    """Per-request outcomes plus aggregate counts for a batch."""

    results: list[PerRequestResult] = Field(default_factory=list)
    delivered: int = 0
    failed: int = 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def success(self) -> bool:
        return self.failed == 0


class NotificationHistoryEntry(BaseModel):
    """A delivery attempt kept in the client's in-memory history."""

    meeting_id: str
    visitor_email: str
    notification_type: NotificationType
    delivered: bool
    error: str | None = None
    timestamp: datetime = Field(default_factory=_utc_now)


# ── Diagnostics ──────────────────────────────────────────────────────────────


class ConnectionTestResult(BaseModel):
    """Outcome of a connectivity probe. Probes never raise."""

    service: str
    success: bool
    detail: str = ""
    status_code: int | None = None
    error: str | None = None
    list_title: str | None = None
    item_count: int | None = None
    timestamp: datetime = Field(default_factory=_utc_now)


class ConnectionReport(BaseModel):
    """Combined probe results for every remote dependency."""

    results: list[ConnectionTestResult] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def all_success(self) -> bool:
        return all(r.success for r in self.results)


# ── Reconciliation ───────────────────────────────────────────────────────────


class ReconciliationResult(BaseModel):
    """Aggregate outcome of one reconciliation pass for one meeting.

    Counts are always reported, even when some operations failed. Only the
    first error of each stage is kept; the per-visitor notification outcomes
    carry the rest.
    """

    meeting_id: str
    change_kind: NotificationType | None = None
    created: int = 0
    removed: int = 0
    unchanged: int = 0
    create_failures: int = 0
    remove_failures: int = 0
    notifications_sent: int = 0
    notifications_failed: int = 0
    store_error: str | None = None
    notification_error: str | None = None
    error: str | None = None
    notification_results: list[PerRequestResult] = Field(default_factory=list)
    skipped_reason: str | None = None
    completed_at: datetime = Field(default_factory=_utc_now)

    @property
    def store_writes(self) -> int:
        return self.created + self.removed + self.create_failures + self.remove_failures

    @computed_field  # type: ignore[prop-decorator]
    @property
    def success(self) -> bool:
        return (
            self.store_error is None
            and self.error is None
            and self.notifications_failed == 0
        )


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
