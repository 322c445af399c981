"""Unit tests for the SharePoint record store and its field mapping.

All HTTP traffic goes through ``httpx.MockTransport`` handlers -- no real
SharePoint calls are made.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from unittest.mock import patch

import httpx
import pytest

from src.visitor_sync.errors import ConfigurationError, StoreReadError, StoreWriteError
from src.visitor_sync.schemas import VisitorRecordCreate, VisitorStatus
from src.visitor_sync.sync.field_mapping import (
    REQUIRED_LIST_FIELDS,
    SHAREPOINT_FIELD_MAP,
    from_list_item,
    parse_datetime,
    to_list_item,
)
from src.visitor_sync.sync import store as store_module
from src.visitor_sync.sync.store import SharePointRecordStore

SITE = "https://contoso.sharepoint.com/sites/lobby"
LIST_URL = f"{SITE}/_api/web/lists/getByTitle('Visitors')"


def _item(item_id: int, email: str, status: str = "Scheduled", **extra) -> dict:
    item = {
        "Id": item_id,
        "MeetingId": "M1",
        "MeetingTitle": "Quarterly review",
        "VisitorEmail": email,
        "VisitorName": email.split("@")[0],
        "StartTime": "2026-03-02T10:00:00Z",
        "EndTime": "2026-03-02T11:00:00Z",
        "Status": status,
        "CreatedDate": "2026-03-01T09:00:00Z",
        "ModifiedDate": "2026-03-01T09:00:00Z",
    }
    item.update(extra)
    return item


def _digest_response() -> httpx.Response:
    return httpx.Response(
        200,
        json={"d": {"GetContextWebInformation": {"FormDigestValue": "digest-123"}}},
    )


class Router:
    """MockTransport handler that records requests and replays canned responses."""

    def __init__(self, handler) -> None:
        self.handler = handler
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("/_api/contextinfo"):
            return _digest_response()
        return self.handler(request)

    @property
    def non_digest(self) -> list[httpx.Request]:
        return [r for r in self.requests if not r.url.path.endswith("/_api/contextinfo")]


def _store(handler, fast_retry, **kwargs) -> tuple[SharePointRecordStore, Router]:
    router = Router(handler)
    store = SharePointRecordStore(
        site_url=SITE,
        list_name="Visitors",
        access_token="token-abc",
        retry_policy=fast_retry,
        transport=httpx.MockTransport(router),
        **kwargs,
    )
    return store, router


# ── Construction ────────────────────────────────────────────────────────────


class TestConfiguration:
    def test_missing_site_url_is_configuration_error(self):
        with pytest.raises(ConfigurationError, match="required"):
            SharePointRecordStore(site_url="", list_name="Visitors")

    def test_missing_list_name_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            SharePointRecordStore(site_url=SITE, list_name="")

    def test_invalid_url_is_configuration_error(self):
        with pytest.raises(ConfigurationError, match="Invalid"):
            SharePointRecordStore(site_url="not a url", list_name="Visitors")

    def test_list_title_is_quoted(self):
        store = SharePointRecordStore(site_url=SITE + "/", list_name="Bob's Visitors")
        assert store.list_url == f"{SITE}/_api/web/lists/getByTitle('Bob''s Visitors')"


# ── Field Mapping ───────────────────────────────────────────────────────────


class TestFieldMapping:
    def test_to_list_item_uses_list_columns(self):
        record = VisitorRecordCreate(
            meeting_id="M1",
            title="Quarterly review",
            visitor_email="bob@fabrikam.com",
            visitor_name="Bob",
            start_time=datetime(2026, 3, 2, 10, tzinfo=timezone.utc),
            end_time=None,
            created_at=datetime(2026, 3, 1, 9, tzinfo=timezone.utc),
            updated_at=datetime(2026, 3, 1, 9, tzinfo=timezone.utc),
        )

        item = to_list_item(record, entity_type="SP.Data.VisitorsListItem")

        assert item["__metadata"] == {"type": "SP.Data.VisitorsListItem"}
        assert item["MeetingId"] == "M1"
        assert item["StartTime"] == "2026-03-02T10:00:00Z"
        assert item["EndTime"] is None
        assert item["Status"] == "Scheduled"
        assert set(SHAREPOINT_FIELD_MAP.values()) <= set(item)

    def test_from_list_item_round_trips_key_fields(self):
        record = from_list_item(_item(7, "Bob@Fabrikam.com", status="Completed"))

        assert record.record_key == "7"
        assert record.key == "bob@fabrikam.com"
        assert record.status == VisitorStatus.COMPLETED
        assert record.start_time == datetime(2026, 3, 2, 10, tzinfo=timezone.utc)

    def test_from_list_item_falls_back_to_builtin_dates(self):
        item = _item(3, "a@ext.com", CreatedDate=None, Created="2026-02-01T00:00:00Z")
        record = from_list_item(item)
        assert record.created_at == datetime(2026, 2, 1, tzinfo=timezone.utc)

    def test_missing_status_defaults_to_scheduled(self):
        record = from_list_item(_item(4, "a@ext.com", Status=None))
        assert record.status == VisitorStatus.SCHEDULED

    def test_parse_datetime_blank(self):
        assert parse_datetime("") is None
        assert parse_datetime(None) is None


# ── Reads ───────────────────────────────────────────────────────────────────


class TestFindByMeeting:
    @pytest.mark.asyncio
    async def test_filters_by_meeting_and_follows_paging(self, fast_retry):
        next_url = f"{LIST_URL}/items?$skiptoken=Paged%3dTRUE%26p_ID%3d1"

        def handler(request: httpx.Request) -> httpx.Response:
            if "skiptoken" in str(request.url):
                return httpx.Response(200, json={"d": {"results": [_item(2, "c@ext.com")]}})
            return httpx.Response(
                200,
                json={"d": {"results": [_item(1, "a@ext.com")], "__next": next_url}},
            )

        store, router = _store(handler, fast_retry)

        records = await store.find_by_meeting("M1")

        assert [r.visitor_email for r in records] == ["a@ext.com", "c@ext.com"]
        first = router.requests[0]
        assert first.url.params["$filter"] == "MeetingId eq 'M1'"
        assert first.headers["Authorization"] == "Bearer token-abc"
        assert first.headers["Accept"] == "application/json;odata=verbose"

    @pytest.mark.asyncio
    async def test_no_records_is_empty_list(self, fast_retry):
        store, _ = _store(lambda r: httpx.Response(200, json={"d": {"results": []}}), fast_retry)
        assert await store.find_by_meeting("M1") == []

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, fast_retry, sleep):
        responses = iter(
            [
                httpx.Response(503),
                httpx.Response(429),
                httpx.Response(200, json={"d": {"results": [_item(1, "a@ext.com")]}}),
            ]
        )
        store, router = _store(lambda r: next(responses), fast_retry)

        records = await store.find_by_meeting("M1")

        assert len(records) == 1
        assert len(router.requests) == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_client_error_raises_without_retry(self, fast_retry):
        store, router = _store(lambda r: httpx.Response(403), fast_retry)

        with pytest.raises(StoreReadError) as exc_info:
            await store.find_by_meeting("M1")

        assert exc_info.value.status_code == 403
        assert len(router.requests) == 1

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_read_error(self, fast_retry):
        store, router = _store(lambda r: httpx.Response(500), fast_retry)

        with pytest.raises(StoreReadError, match="status: 500"):
            await store.find_by_meeting("M1")

        assert len(router.requests) == 4

    @pytest.mark.asyncio
    async def test_connection_errors_become_read_errors(self, fast_retry):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        store, _ = _store(handler, fast_retry)

        with pytest.raises(StoreReadError, match="connection refused"):
            await store.find_by_meeting("M1")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "bad_fields",
        [{"Status": "Arrived"}, {"StartTime": "not-a-date"}],
        ids=["unknown-status", "bad-date"],
    )
    async def test_unparsable_item_is_skipped_without_retry(self, fast_retry, sleep, bad_fields):
        items = [_item(1, "a@ext.com"), _item(2, "b@ext.com", **bad_fields)]
        store, router = _store(
            lambda r: httpx.Response(200, json={"d": {"results": items}}), fast_retry
        )

        with patch.object(store_module, "logger") as log:
            records = await store.find_by_meeting("M1")

        assert [r.visitor_email for r in records] == ["a@ext.com"]
        assert len(router.requests) == 1
        assert sleep.delays == []
        assert log.warning.call_args.args == ("sharepoint.item_unparsable",)
        assert log.warning.call_args.kwargs["item_id"] == 2

    @pytest.mark.asyncio
    async def test_paging_cap_logs_truncation(self, fast_retry, monkeypatch):
        monkeypatch.setattr(store_module, "MAX_PAGES", 2)
        next_url = f"{LIST_URL}/items?$skiptoken=more"
        counter = iter(range(1, 100))

        def handler(request: httpx.Request) -> httpx.Response:
            item = _item(next(counter), "a@ext.com")
            return httpx.Response(200, json={"d": {"results": [item], "__next": next_url}})

        store, router = _store(handler, fast_retry)

        with patch.object(store_module, "logger") as log:
            records = await store.find_by_meeting("M1")

        assert len(records) == 2
        assert len(router.requests) == 2
        log.warning.assert_called_once()
        assert log.warning.call_args.args == ("sharepoint.paging_truncated",)
        assert log.warning.call_args.kwargs["pages"] == 2


# ── Writes ──────────────────────────────────────────────────────────────────


class TestWrites:
    @pytest.mark.asyncio
    async def test_create_posts_item_with_digest(self, fast_retry):
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            return httpx.Response(201, json={"d": {**body, "Id": 42}})

        store, router = _store(handler, fast_retry)
        payload = VisitorRecordCreate(
            meeting_id="M1",
            title="Quarterly review",
            visitor_email="bob@fabrikam.com",
            visitor_name="Bob",
        )

        created = await store.create(payload)

        assert created.record_key == "42"
        assert created.visitor_email == "bob@fabrikam.com"
        [post] = router.non_digest
        assert post.method == "POST"
        assert post.url.path.endswith("/items")
        assert post.headers["X-RequestDigest"] == "digest-123"
        assert json.loads(post.content)["VisitorName"] == "Bob"

    @pytest.mark.asyncio
    async def test_create_rejected_is_write_error(self, fast_retry):
        store, router = _store(lambda r: httpx.Response(400, text="bad field"), fast_retry)
        payload = VisitorRecordCreate(meeting_id="M1", visitor_email="b@x.com", visitor_name="B")

        with pytest.raises(StoreWriteError) as exc_info:
            await store.create(payload)

        assert exc_info.value.status_code == 400
        assert not exc_info.value.retriable
        assert len(router.non_digest) == 1

    @pytest.mark.asyncio
    async def test_remove_uses_delete_override(self, fast_retry):
        store, router = _store(lambda r: httpx.Response(200), fast_retry)

        await store.remove("17")

        [request] = router.non_digest
        assert request.url.path.endswith("/items(17)")
        assert request.headers["X-HTTP-Method"] == "DELETE"
        assert request.headers["IF-MATCH"] == "*"

    @pytest.mark.asyncio
    async def test_remove_missing_record_is_success(self, fast_retry):
        store, router = _store(lambda r: httpx.Response(404), fast_retry)

        await store.remove("17")

        assert len(router.non_digest) == 1

    @pytest.mark.asyncio
    async def test_remove_server_error_is_retried_then_raised(self, fast_retry):
        store, router = _store(lambda r: httpx.Response(500), fast_retry)

        with pytest.raises(StoreWriteError):
            await store.remove("17")

        assert len(router.non_digest) == 4

    @pytest.mark.asyncio
    async def test_write_proceeds_when_digest_unavailable(self, fast_retry):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if request.url.path.endswith("/_api/contextinfo"):
                return httpx.Response(401)
            return httpx.Response(204)

        store = SharePointRecordStore(
            site_url=SITE,
            list_name="Visitors",
            retry_policy=fast_retry,
            transport=httpx.MockTransport(handler),
        )

        await store.remove("5")

        assert "X-RequestDigest" not in requests[-1].headers


# ── Diagnostics ─────────────────────────────────────────────────────────────


class TestDiagnostics:
    @pytest.mark.asyncio
    async def test_schema_reports_missing_fields(self, fast_retry):
        present = [{"InternalName": name} for name in REQUIRED_LIST_FIELDS if name != "Status"]
        store, _ = _store(lambda r: httpx.Response(200, json={"d": {"results": present}}), fast_retry)

        validation = await store.validate_schema()

        assert not validation.valid
        assert validation.missing_fields == ["Status"]

    @pytest.mark.asyncio
    async def test_schema_valid(self, fast_retry):
        present = [{"InternalName": name} for name in REQUIRED_LIST_FIELDS]
        store, _ = _store(lambda r: httpx.Response(200, json={"d": {"results": present}}), fast_retry)

        assert (await store.validate_schema()).valid

    @pytest.mark.asyncio
    async def test_connection_probe_reports_list(self, fast_retry):
        store, _ = _store(
            lambda r: httpx.Response(200, json={"d": {"Title": "Visitors", "ItemCount": 12}}),
            fast_retry,
        )

        result = await store.test_connection()

        assert result.success
        assert result.service == "SharePoint"
        assert result.list_title == "Visitors"
        assert result.item_count == 12

    @pytest.mark.asyncio
    async def test_connection_probe_never_raises(self, fast_retry):
        store, _ = _store(lambda r: httpx.Response(401), fast_retry)

        result = await store.test_connection()

        assert not result.success
        assert result.status_code == 401

    @pytest.mark.asyncio
    async def test_statistics_counts_by_status(self, fast_retry):
        items = [
            {"Status": "Scheduled"},
            {"Status": "Scheduled"},
            {"Status": "Completed"},
            {"Status": "Cancelled"},
        ]
        store, router = _store(lambda r: httpx.Response(200, json={"d": {"results": items}}), fast_retry)

        stats = await store.get_statistics(30)

        assert (stats.total, stats.scheduled, stats.completed, stats.cancelled) == (4, 2, 1, 1)
        assert stats.date_range_days == 30
        assert router.requests[0].url.params["$filter"].startswith("CreatedDate ge datetime'")

    @pytest.mark.asyncio
    async def test_statistics_follows_paging(self, fast_retry):
        next_url = f"{LIST_URL}/items?$skiptoken=Paged%3dTRUE%26p_ID%3d100"
        first_page = [{"Status": "Scheduled"}] * 100
        second_page = [{"Status": "Scheduled"}] * 45 + [{"Status": "Completed"}] * 5

        def handler(request: httpx.Request) -> httpx.Response:
            if "skiptoken" in str(request.url):
                return httpx.Response(200, json={"d": {"results": second_page}})
            return httpx.Response(200, json={"d": {"results": first_page, "__next": next_url}})

        store, router = _store(handler, fast_retry)

        stats = await store.get_statistics(7)

        assert (stats.total, stats.scheduled, stats.completed) == (150, 145, 5)
        assert len(router.requests) == 2
        assert "$filter" not in router.requests[1].url.params
