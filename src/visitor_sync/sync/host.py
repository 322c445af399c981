"""Host calendar boundary -- where meeting snapshots come from.

The host runtime exposes a meeting's subject, times and attendee lists as
independent asynchronous reads. ``capture_snapshot`` runs those reads
concurrently and joins them into one immutable MeetingSnapshot before any
classification happens.

``InMemoryMeetingSource`` holds snapshots pushed by the host over HTTP and
is also what the tests drive.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime

import structlog

from src.visitor_sync.schemas import Attendee, AttendeeKind, MeetingSnapshot

logger = structlog.get_logger(__name__)


class MeetingSource(ABC):
    """Read access to live meetings in the host calendar."""

    @abstractmethod
    async def is_meeting(self, meeting_id: str) -> bool:
        """Return True if ``meeting_id`` currently refers to an appointment."""
        ...

    @abstractmethod
    async def get_subject(self, meeting_id: str) -> str: ...

    @abstractmethod
    async def get_times(self, meeting_id: str) -> tuple[datetime | None, datetime | None]: ...

    @abstractmethod
    async def get_required_attendees(self, meeting_id: str) -> list[Attendee]: ...

    @abstractmethod
    async def get_optional_attendees(self, meeting_id: str) -> list[Attendee]: ...

    async def get_resources(self, meeting_id: str) -> list[Attendee]:
        """Room/resource attendees. Hosts without a separate list return none."""
        return []


async def capture_snapshot(source: MeetingSource, meeting_id: str) -> MeetingSnapshot | None:
    """Capture the current state of a meeting.

    Returns None when the item is no longer a meeting. A failing sub-read
    propagates: a partial attendee list would look like removed visitors.
    """
    if not await source.is_meeting(meeting_id):
        logger.info("host.not_a_meeting", meeting_id=meeting_id)
        return None

    subject, (start, end), required, optional, resources = await asyncio.gather(
        source.get_subject(meeting_id),
        source.get_times(meeting_id),
        source.get_required_attendees(meeting_id),
        source.get_optional_attendees(meeting_id),
        source.get_resources(meeting_id),
    )

    return MeetingSnapshot(
        meeting_id=meeting_id,
        title=subject or "",
        start_time=start,
        end_time=end,
        attendees=tuple(required) + tuple(optional) + tuple(resources),
    )


class InMemoryMeetingSource(MeetingSource):
    """Meeting source backed by snapshots the host pushes in."""

    def __init__(self) -> None:
        self._snapshots: dict[str, MeetingSnapshot] = {}

    def put(self, snapshot: MeetingSnapshot) -> None:
        self._snapshots[snapshot.meeting_id] = snapshot

    def discard(self, meeting_id: str) -> None:
        self._snapshots.pop(meeting_id, None)

    def get(self, meeting_id: str) -> MeetingSnapshot | None:
        return self._snapshots.get(meeting_id)

    def _require(self, meeting_id: str) -> MeetingSnapshot:
        try:
            return self._snapshots[meeting_id]
        except KeyError:
            raise LookupError(f"Unknown meeting: {meeting_id}") from None

    async def is_meeting(self, meeting_id: str) -> bool:
        return meeting_id in self._snapshots

    async def get_subject(self, meeting_id: str) -> str:
        return self._require(meeting_id).title

    async def get_times(self, meeting_id: str) -> tuple[datetime | None, datetime | None]:
        snapshot = self._require(meeting_id)
        return snapshot.start_time, snapshot.end_time

    async def get_required_attendees(self, meeting_id: str) -> list[Attendee]:
        return self._of_kind(meeting_id, AttendeeKind.REQUIRED)

    async def get_optional_attendees(self, meeting_id: str) -> list[Attendee]:
        return self._of_kind(meeting_id, AttendeeKind.OPTIONAL)

    async def get_resources(self, meeting_id: str) -> list[Attendee]:
        return self._of_kind(meeting_id, AttendeeKind.RESOURCE)

    def _of_kind(self, meeting_id: str, kind: AttendeeKind) -> list[Attendee]:
        return [a for a in self._require(meeting_id).attendees if a.kind == kind]
