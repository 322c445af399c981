"""Test doubles and builders shared across the visitor sync tests.

Provides:
- RecordingSleep: sleep replacement so retry tests never actually wait
- InMemoryRecordStore: RecordStore fake with per-email failure injection
- RecordingNotifier: notification fake that records every request
- Snapshot builders for the Contoso / Fabrikam test meetings
"""

from __future__ import annotations

import itertools
from datetime import datetime, timezone

from src.visitor_sync.errors import StoreReadError, StoreWriteError
from src.visitor_sync.schemas import (
    Attendee,
    AttendeeKind,
    BatchNotificationResult,
    ConnectionTestResult,
    MeetingSnapshot,
    NotificationRequest,
    PerRequestResult,
    SchemaValidation,
    VisitorRecord,
    VisitorRecordCreate,
    VisitorStatistics,
    VisitorStatus,
)
from src.visitor_sync.sync.store import RecordStore

FIXED_NOW = datetime(2026, 3, 2, 8, 30, tzinfo=timezone.utc)
MEETING_START = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)
MEETING_END = datetime(2026, 3, 2, 11, 0, tzinfo=timezone.utc)


class RecordingSleep:
    """Awaitable sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def make_snapshot(
    meeting_id: str = "M1",
    title: str = "Quarterly review",
    attendees: list[Attendee] | None = None,
    start_time: datetime | None = MEETING_START,
    end_time: datetime | None = MEETING_END,
) -> MeetingSnapshot:
    return MeetingSnapshot(
        meeting_id=meeting_id,
        title=title,
        start_time=start_time,
        end_time=end_time,
        attendees=tuple(attendees or ()),
    )


def attendee(email: str, name: str = "", kind: AttendeeKind = AttendeeKind.REQUIRED) -> Attendee:
    return Attendee(email=email, display_name=name, kind=kind)


class InMemoryRecordStore(RecordStore):
    """RecordStore fake keeping records in a dict.

    ``fail_create_for`` / ``fail_remove_for`` hold lowercase emails whose
    writes raise StoreWriteError; ``fail_reads`` makes find_by_meeting raise.
    """

    def __init__(self) -> None:
        self.records: dict[str, VisitorRecord] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail_create_for: set[str] = set()
        self.fail_remove_for: set[str] = set()
        self.fail_reads = False
        self._keys = itertools.count(1)

    def seed(self, **fields) -> VisitorRecord:
        key = str(next(self._keys))
        fields.setdefault("created_at", FIXED_NOW)
        fields.setdefault("updated_at", FIXED_NOW)
        record = VisitorRecord(record_key=key, **fields)
        self.records[key] = record
        return record

    def for_meeting(self, meeting_id: str) -> list[VisitorRecord]:
        return [r for r in self.records.values() if r.meeting_id == meeting_id]

    async def find_by_meeting(self, meeting_id: str) -> list[VisitorRecord]:
        self.calls.append(("find", meeting_id))
        if self.fail_reads:
            raise StoreReadError("HTTP error! status: 503", status_code=503)
        return self.for_meeting(meeting_id)

    async def create(self, record: VisitorRecordCreate) -> VisitorRecord:
        self.calls.append(("create", record.visitor_email.lower()))
        if record.visitor_email.lower() in self.fail_create_for:
            raise StoreWriteError("HTTP error! status: 400", status_code=400, retriable=False)
        key = str(next(self._keys))
        created = VisitorRecord(record_key=key, **record.model_dump())
        self.records[key] = created
        return created

    async def remove(self, record_key: str) -> None:
        record = self.records.get(record_key)
        self.calls.append(("remove", record.key if record else record_key))
        if record is not None and record.key in self.fail_remove_for:
            raise StoreWriteError("HTTP error! status: 500", status_code=500)
        self.records.pop(record_key, None)

    async def validate_schema(self) -> SchemaValidation:
        return SchemaValidation(valid=True)

    async def test_connection(self) -> ConnectionTestResult:
        return ConnectionTestResult(service="SharePoint", success=True, item_count=len(self.records))

    async def get_statistics(self, date_range_days: int = 7) -> VisitorStatistics:
        statuses = [r.status for r in self.records.values()]
        return VisitorStatistics(
            total=len(statuses),
            scheduled=statuses.count(VisitorStatus.SCHEDULED),
            completed=statuses.count(VisitorStatus.COMPLETED),
            cancelled=statuses.count(VisitorStatus.CANCELLED),
            date_range_days=date_range_days,
        )


class RecordingNotifier:
    """Notification fake; emails in ``fail_for`` are reported as undelivered."""

    def __init__(self) -> None:
        self.sent: list[NotificationRequest] = []
        self.fail_for: set[str] = set()

    async def notify_many(self, requests: list[NotificationRequest]) -> BatchNotificationResult:
        results = []
        for request in requests:
            self.sent.append(request)
            if request.visitor_email.lower() in self.fail_for:
                results.append(
                    PerRequestResult(
                        visitor_email=request.visitor_email,
                        delivered=False,
                        attempt=4,
                        error="Request timeout after 30000ms",
                        error_type="NotificationTimeoutError",
                    )
                )
            else:
                results.append(
                    PerRequestResult(visitor_email=request.visitor_email, delivered=True, attempt=1)
                )
        delivered = sum(1 for r in results if r.delivered)
        return BatchNotificationResult(
            results=results,
            delivered=delivered,
            failed=len(results) - delivered,
        )

    async def test_connection(self) -> ConnectionTestResult:
        return ConnectionTestResult(service="Power Automate", success=True, status_code=200)
