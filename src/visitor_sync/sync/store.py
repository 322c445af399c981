"""Visitor record store -- abstract interface plus the SharePoint list client.

The reconciliation engine only depends on ``RecordStore``. ``SharePointRecordStore``
talks to the SharePoint REST API (``odata=verbose``) with:
- one ``httpx.AsyncClient`` per call, bounded by the configured timeout
- every remote call wrapped in the shared retry policy (base delay 1000ms)
- request digests fetched from ``/_api/contextinfo`` for writes
- deletes that treat an already-missing item as success

Token acquisition is out of scope: a bearer token is supplied by configuration.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlparse

import httpx
import structlog

from src.visitor_sync.errors import (
    ConfigurationError,
    StoreReadError,
    StoreWriteError,
    is_transient_status,
)
from src.visitor_sync.schemas import (
    ConnectionTestResult,
    SchemaValidation,
    VisitorRecord,
    VisitorRecordCreate,
    VisitorStatistics,
    VisitorStatus,
)
from src.visitor_sync.sync.field_mapping import (
    REQUIRED_LIST_FIELDS,
    format_datetime,
    from_list_item,
    to_list_item,
)
from src.visitor_sync.sync.retry import RetryPolicy, call_with_retry

logger = structlog.get_logger(__name__)

ODATA_VERBOSE = "application/json;odata=verbose"

# Upper bound on ``__next`` pages followed by a single list query.
MAX_PAGES = 50


class RecordStore(ABC):
    """Abstract interface for the remote visitor record store.

    Methods:
        find_by_meeting: All records for a meeting, any status.
        create: Persist a new record and return it with its key.
        remove: Delete by key; absence is success.
        validate_schema: Check the store exposes the required fields.
        test_connection: Connectivity probe that never raises.
        get_statistics: Record counts by status over a trailing window.
    """

    @abstractmethod
    async def find_by_meeting(self, meeting_id: str) -> list[VisitorRecord]:
        """Return all records for ``meeting_id``; empty list if none."""
        ...

    @abstractmethod
    async def create(self, record: VisitorRecordCreate) -> VisitorRecord:
        """Create a record, raising StoreWriteError on final failure."""
        ...

    @abstractmethod
    async def remove(self, record_key: str) -> None:
        """Delete a record; a missing record is not an error."""
        ...

    @abstractmethod
    async def validate_schema(self) -> SchemaValidation:
        """Report which required fields are missing."""
        ...

    @abstractmethod
    async def test_connection(self) -> ConnectionTestResult:
        """Probe connectivity; failures are captured in the result."""
        ...

    @abstractmethod
    async def get_statistics(self, date_range_days: int = 7) -> VisitorStatistics:
        """Count records created in the last ``date_range_days`` by status."""
        ...


def _odata_quote(value: str) -> str:
    """Quote a string literal for an OData expression or URL segment."""
    return "'" + value.replace("'", "''") + "'"


class SharePointRecordStore(RecordStore):
    """SharePoint Online list client for visitor records.

    Args:
        site_url: Site root, e.g. ``https://contoso.sharepoint.com/sites/lobby``.
        list_name: Display title of the visitor list.
        access_token: Bearer token for the site.
        timeout_ms: Per-call timeout.
        retry_policy: Backoff tuning (defaults: 3 retries, 1000ms, x2).
        entity_type: Optional ``SP.Data.<List>ListItem`` name for create bodies.
        transport: Optional httpx transport (tests inject ``httpx.MockTransport``).

    Raises:
        ConfigurationError: If ``site_url`` or ``list_name`` is missing or invalid.
    """

    SERVICE_NAME = "SharePoint"

    def __init__(
        self,
        site_url: str,
        list_name: str,
        access_token: str = "",
        timeout_ms: int = 15000,
        retry_policy: RetryPolicy | None = None,
        entity_type: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not site_url or not list_name:
            raise ConfigurationError("SharePoint siteUrl and listName are required")

        parsed = urlparse(site_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigurationError(f"Invalid SharePoint site URL: {site_url!r}")

        self._site_url = site_url.rstrip("/")
        self._list_name = list_name
        self._access_token = access_token
        self._timeout = timeout_ms / 1000.0
        self._retry = retry_policy or RetryPolicy(base_delay_ms=1000)
        self._entity_type = entity_type
        self._transport = transport

    # ── HTTP plumbing ────────────────────────────────────────────────────

    @property
    def list_url(self) -> str:
        return f"{self._site_url}/_api/web/lists/getByTitle({_odata_quote(self._list_name)})"

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": ODATA_VERBOSE}
        if self._access_token:
            headers["Authorization"] = f"Bearer {self._access_token}"
        return headers

    def _client(self) -> httpx.AsyncClient:
        """Create a new httpx client with the configured timeout."""
        return httpx.AsyncClient(
            headers=self._headers(),
            timeout=self._timeout,
            transport=self._transport,
        )

    async def _request_digest(self, client: httpx.AsyncClient) -> str | None:
        """Fetch a form digest for write requests.

        A failure here is logged and the write proceeds without a digest;
        the write itself then reports any authorization problem.
        """
        try:
            response = await client.post(f"{self._site_url}/_api/contextinfo")
            response.raise_for_status()
            return response.json()["d"]["GetContextWebInformation"]["FormDigestValue"]
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            logger.warning("sharepoint.digest_unavailable", error=str(exc))
            return None

    async def _get_json(self, url: str, params: dict[str, str] | None = None) -> dict[str, Any]:
        """GET ``url`` and return the odata ``d`` payload, mapping failures to StoreReadError."""
        try:
            async with self._client() as client:
                response = await client.get(url, params=params)
        except httpx.TimeoutException as exc:
            raise StoreReadError(f"SharePoint read timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise StoreReadError(f"SharePoint read failed: {exc}") from exc

        if response.is_error:
            raise StoreReadError(
                f"HTTP error! status: {response.status_code}",
                status_code=response.status_code,
                retriable=is_transient_status(response.status_code),
            )

        try:
            return response.json()["d"]
        except (KeyError, ValueError) as exc:
            raise StoreReadError(f"Unexpected SharePoint response: {exc}") from exc

    async def _get_all(self, url: str, params: dict[str, str]) -> list[dict[str, Any]]:
        """GET a list query and every ``__next`` page after it."""
        items: list[dict[str, Any]] = []
        next_url: str | None = url
        page_params: dict[str, str] | None = params
        pages = 0
        while next_url and pages < MAX_PAGES:
            payload = await self._get_json(next_url, page_params)
            items.extend(payload.get("results", []))
            next_url = payload.get("__next")
            page_params = None  # __next already carries the query
            pages += 1

        if next_url:
            logger.warning(
                "sharepoint.paging_truncated",
                filter=params.get("$filter"),
                pages=pages,
                items=len(items),
            )
        return items

    # ── RecordStore operations ───────────────────────────────────────────

    async def find_by_meeting(self, meeting_id: str) -> list[VisitorRecord]:
        """Return every record whose MeetingId equals ``meeting_id``.

        Follows ``__next`` links so large meetings are read completely.
        Items that cannot be parsed (unknown Status, malformed dates) are
        skipped with a warning; the engine then treats them as absent.
        """
        params = {"$filter": f"MeetingId eq {_odata_quote(meeting_id)}"}

        async def _read(attempt: int) -> list[dict[str, Any]]:
            return await self._get_all(f"{self.list_url}/items", params)

        items = await call_with_retry(self._retry, "sharepoint.find_by_meeting", _read)
        records: list[VisitorRecord] = []
        for item in items:
            try:
                records.append(from_list_item(item))
            except (ValueError, TypeError) as exc:
                logger.warning(
                    "sharepoint.item_unparsable",
                    meeting_id=meeting_id,
                    item_id=item.get("Id", item.get("ID")),
                    error=str(exc),
                )
        logger.debug(
            "sharepoint.records_found",
            meeting_id=meeting_id,
            count=len(records),
        )
        return records

    async def create(self, record: VisitorRecordCreate) -> VisitorRecord:
        body = to_list_item(record, self._entity_type)

        async def _create(attempt: int) -> VisitorRecord:
            try:
                async with self._client() as client:
                    digest = await self._request_digest(client)
                    headers = {"Content-Type": ODATA_VERBOSE}
                    if digest:
                        headers["X-RequestDigest"] = digest
                    response = await client.post(
                        f"{self.list_url}/items",
                        json=body,
                        headers=headers,
                    )
            except httpx.TimeoutException as exc:
                raise StoreWriteError(f"SharePoint create timed out: {exc}") from exc
            except httpx.TransportError as exc:
                raise StoreWriteError(f"SharePoint create failed: {exc}") from exc

            if response.is_error:
                raise StoreWriteError(
                    f"HTTP error! status: {response.status_code}",
                    status_code=response.status_code,
                    retriable=is_transient_status(response.status_code),
                )

            try:
                created = response.json()["d"]
            except (KeyError, ValueError) as exc:
                raise StoreWriteError(f"Unexpected SharePoint response: {exc}") from exc

            return from_list_item({**body, **created})

        created = await call_with_retry(self._retry, "sharepoint.create", _create)
        logger.info(
            "sharepoint.record_created",
            meeting_id=record.meeting_id,
            record_key=created.record_key,
        )
        return created

    async def remove(self, record_key: str) -> None:
        async def _remove(attempt: int) -> None:
            try:
                async with self._client() as client:
                    digest = await self._request_digest(client)
                    headers = {"IF-MATCH": "*", "X-HTTP-Method": "DELETE"}
                    if digest:
                        headers["X-RequestDigest"] = digest
                    response = await client.post(
                        f"{self.list_url}/items({record_key})",
                        headers=headers,
                    )
            except httpx.TimeoutException as exc:
                raise StoreWriteError(f"SharePoint delete timed out: {exc}") from exc
            except httpx.TransportError as exc:
                raise StoreWriteError(f"SharePoint delete failed: {exc}") from exc

            if response.status_code == 404:
                logger.debug("sharepoint.record_already_absent", record_key=record_key)
                return
            if response.is_error:
                raise StoreWriteError(
                    f"HTTP error! status: {response.status_code}",
                    status_code=response.status_code,
                    retriable=is_transient_status(response.status_code),
                )

        await call_with_retry(self._retry, "sharepoint.remove", _remove)
        logger.info("sharepoint.record_removed", record_key=record_key)

    async def validate_schema(self) -> SchemaValidation:
        try:
            payload = await self._get_json(f"{self.list_url}/fields")
        except StoreReadError as exc:
            logger.error("sharepoint.schema_validation_failed", error=str(exc))
            return SchemaValidation(valid=False, error=str(exc))

        present = {field.get("InternalName") for field in payload.get("results", [])}
        missing = [name for name in REQUIRED_LIST_FIELDS if name not in present]

        if missing:
            logger.warning("sharepoint.schema_missing_fields", missing_fields=missing)
            return SchemaValidation(valid=False, missing_fields=missing)

        logger.info("sharepoint.schema_valid", list_name=self._list_name)
        return SchemaValidation(valid=True)

    async def test_connection(self) -> ConnectionTestResult:
        try:
            payload = await self._get_json(self.list_url)
        except StoreReadError as exc:
            logger.error("sharepoint.connection_test_failed", error=str(exc))
            return ConnectionTestResult(
                service=self.SERVICE_NAME,
                success=False,
                status_code=exc.status_code,
                error=str(exc),
                detail=f"Connection failed: {exc}",
            )

        item_count = payload.get("ItemCount")
        logger.info("sharepoint.connection_test_ok", item_count=item_count)
        return ConnectionTestResult(
            service=self.SERVICE_NAME,
            success=True,
            status_code=200,
            list_title=payload.get("Title"),
            item_count=item_count,
            detail=f"Connected ({item_count} items)",
        )

    async def get_statistics(self, date_range_days: int = 7) -> VisitorStatistics:
        cutoff = datetime.now(timezone.utc) - timedelta(days=date_range_days)
        params = {
            "$filter": f"CreatedDate ge datetime'{format_datetime(cutoff)}'",
            "$select": "Status,CreatedDate",
        }

        async def _read(attempt: int) -> list[dict[str, Any]]:
            return await self._get_all(f"{self.list_url}/items", params)

        items = await call_with_retry(self._retry, "sharepoint.statistics", _read)
        statuses = [item.get("Status") for item in items]

        stats = VisitorStatistics(
            total=len(statuses),
            scheduled=statuses.count(VisitorStatus.SCHEDULED.value),
            completed=statuses.count(VisitorStatus.COMPLETED.value),
            cancelled=statuses.count(VisitorStatus.CANCELLED.value),
            date_range_days=date_range_days,
        )
        logger.info("sharepoint.statistics", **stats.model_dump())
        return stats
