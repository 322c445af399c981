"""SharePoint list column mappings for visitor records.

Defines:
- SHAREPOINT_FIELD_MAP: internal field name -> list column internal name.
- REQUIRED_LIST_FIELDS: columns the visitor list must expose.
- to_list_item(): VisitorRecordCreate -> SharePoint item body.
- from_list_item(): SharePoint item (odata=verbose) -> VisitorRecord.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from src.visitor_sync.schemas import VisitorRecord, VisitorRecordCreate, VisitorStatus

SHAREPOINT_FIELD_MAP: dict[str, str] = {
    "meeting_id": "MeetingId",
    "title": "MeetingTitle",
    "visitor_email": "VisitorEmail",
    "visitor_name": "VisitorName",
    "start_time": "StartTime",
    "end_time": "EndTime",
    "status": "Status",
    "created_at": "CreatedDate",
    "updated_at": "ModifiedDate",
}

REQUIRED_LIST_FIELDS: tuple[str, ...] = (
    "MeetingId",
    "MeetingTitle",
    "VisitorEmail",
    "VisitorName",
    "StartTime",
    "EndTime",
    "Status",
)

_DATETIME_FIELDS = {"start_time", "end_time", "created_at", "updated_at"}


def format_datetime(value: datetime | None) -> str | None:
    """Format a datetime as the UTC ISO-8601 string SharePoint stores."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_datetime(value: Any) -> datetime | None:
    """Parse a SharePoint date string; blanks become None."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_list_item(
    record: VisitorRecordCreate,
    entity_type: str | None = None,
) -> dict[str, Any]:
    """Convert a create payload into a SharePoint list item body.

    Args:
        record: Visitor record to persist.
        entity_type: Optional ``SP.Data.<List>ListItem`` type name. When set,
            the body carries the ``__metadata`` block some tenants require.

    Returns:
        Dict suitable for POSTing to the list's ``items`` collection.
    """
    data = record.model_dump()
    item: dict[str, Any] = {}
    if entity_type:
        item["__metadata"] = {"type": entity_type}

    for field_name, column in SHAREPOINT_FIELD_MAP.items():
        value = data.get(field_name)
        if field_name in _DATETIME_FIELDS:
            value = format_datetime(value)
        elif isinstance(value, VisitorStatus):
            value = value.value
        item[column] = value

    return item


def from_list_item(item: dict[str, Any]) -> VisitorRecord:
    """Convert a SharePoint list item into a VisitorRecord.

    Falls back to the built-in ``Created``/``Modified`` columns when the
    custom date columns are empty.
    """
    values: dict[str, Any] = {"record_key": str(item.get("Id", item.get("ID", "")))}

    for field_name, column in SHAREPOINT_FIELD_MAP.items():
        value = item.get(column)
        if field_name in _DATETIME_FIELDS:
            value = parse_datetime(value)
        values[field_name] = value

    values["created_at"] = values["created_at"] or parse_datetime(item.get("Created"))
    values["updated_at"] = values["updated_at"] or parse_datetime(item.get("Modified"))
    values["title"] = values["title"] or ""
    values["visitor_email"] = values["visitor_email"] or ""
    values["visitor_name"] = values["visitor_name"] or ""
    values["status"] = values["status"] or VisitorStatus.SCHEDULED.value

    # Let schema defaults fill timestamps the list did not supply.
    return VisitorRecord(**{k: v for k, v in values.items() if v is not None})
