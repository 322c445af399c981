"""VisitorSyncService -- the user-facing operations on top of the coordinator.

Wires the record store, notification client, engine and coordinator together
and exposes the commands the host add-in invokes directly:

- quick_process: register the visitors of a freshly scheduled meeting
- manual_sync: force a full reconciliation of the current meeting state
- test_connections / statistics / configuration_summary: diagnostics

``build_service`` is the composition root used by the API lifespan and the
CLI scripts; components never read settings themselves.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from src.visitor_sync.config import Settings
from src.visitor_sync.errors import MeetingNotFoundError
from src.visitor_sync.schemas import (
    ConnectionReport,
    ConnectionTestResult,
    HostChangeKind,
    MeetingSnapshot,
    ReconciliationResult,
    SchemaValidation,
    VisitorStatistics,
)
from src.visitor_sync.sync.coordinator import ChangeCoordinator
from src.visitor_sync.sync.engine import ReconciliationEngine
from src.visitor_sync.sync.host import InMemoryMeetingSource, MeetingSource, capture_snapshot
from src.visitor_sync.sync.notifier import NotificationClient
from src.visitor_sync.sync.retry import RetryPolicy
from src.visitor_sync.sync.store import RecordStore, SharePointRecordStore

logger = structlog.get_logger(__name__)

NO_EXTERNAL_PARTICIPANTS = "No external participants found"


class VisitorSyncService:
    """Facade over the reconciliation pipeline for a single host.

    Args:
        store: Visitor record store.
        notifier: Notification webhook client.
        engine: Reconciliation engine built on ``store`` and ``notifier``.
        coordinator: Per-meeting serializer in front of ``engine``.
        source: Host meeting source the coordinator captures snapshots from.
        settings: Settings the service was built from, for the config summary.
    """

    def __init__(
        self,
        store: RecordStore,
        notifier: NotificationClient,
        engine: ReconciliationEngine,
        coordinator: ChangeCoordinator,
        source: MeetingSource,
        settings: Settings | None = None,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.engine = engine
        self.coordinator = coordinator
        self.source = source
        self._settings = settings

    async def _current_snapshot(self, meeting_id: str) -> MeetingSnapshot:
        snapshot = await capture_snapshot(self.source, meeting_id)
        if snapshot is None:
            raise MeetingNotFoundError(meeting_id)
        return snapshot

    # ── Commands ─────────────────────────────────────────────────────────

    async def quick_process(self, meeting_id: str) -> ReconciliationResult:
        """Register the external visitors of a meeting as a new booking.

        Does nothing when the meeting has no external participants.

        Raises:
            MeetingNotFoundError: If the host has no such meeting.
        """
        snapshot = await self._current_snapshot(meeting_id)
        if not self.engine.external_participants(snapshot):
            logger.info("service.quick_process_skipped", meeting_id=meeting_id)
            return ReconciliationResult(
                meeting_id=meeting_id,
                skipped_reason=NO_EXTERNAL_PARTICIPANTS,
            )
        return await self.coordinator.reconcile_now(snapshot, HostChangeKind.CREATED)

    async def manual_sync(self, meeting_id: str) -> ReconciliationResult:
        """Reconcile the meeting's current state with no triggering change.

        Raises:
            MeetingNotFoundError: If the host has no such meeting.
        """
        snapshot = await self._current_snapshot(meeting_id)
        logger.info("service.manual_sync", meeting_id=meeting_id)
        return await self.coordinator.reconcile_now(snapshot)

    async def reconcile(
        self,
        snapshot: MeetingSnapshot,
        change_kind: HostChangeKind | None = None,
    ) -> ReconciliationResult:
        return await self.coordinator.reconcile_now(snapshot, change_kind)

    def on_change(self, meeting_id: str, change_kind: HostChangeKind | None = None) -> bool:
        return self.coordinator.on_change(meeting_id, change_kind)

    # ── Diagnostics ──────────────────────────────────────────────────────

    async def test_connections(self) -> ConnectionReport:
        """Probe the store and the notification endpoint concurrently."""
        results: list[ConnectionTestResult] = list(
            await asyncio.gather(
                self.store.test_connection(),
                self.notifier.test_connection(),
            )
        )
        report = ConnectionReport(results=results)
        logger.info("service.connections_tested", all_success=report.all_success)
        return report

    async def validate_schema(self) -> SchemaValidation:
        return await self.store.validate_schema()

    async def statistics(self, days: int = 7) -> VisitorStatistics:
        return await self.store.get_statistics(days)

    def configuration_summary(self) -> dict[str, Any]:
        """Effective configuration with secrets redacted."""
        config = self.engine.config
        summary: dict[str, Any] = {
            "internal_domains": list(config.internal_domains),
            "exclude_resources": config.exclude_resources,
        }
        if self._settings is not None:
            s = self._settings
            summary.update(
                {
                    "environment": s.ENVIRONMENT.value,
                    "sharepoint": {
                        "site_url": s.SHAREPOINT_SITE_URL,
                        "list_name": s.SHAREPOINT_LIST_NAME,
                        "access_token": "***" if s.SHAREPOINT_ACCESS_TOKEN else "",
                        "timeout_ms": s.STORE_TIMEOUT_MS,
                        "max_retries": s.STORE_MAX_RETRIES,
                        "retry_delay_ms": s.STORE_RETRY_DELAY_MS,
                    },
                    "notification": {
                        "url_configured": bool(s.NOTIFICATION_URL),
                        "timeout_ms": s.NOTIFICATION_TIMEOUT_MS,
                        "max_retries": s.NOTIFICATION_MAX_RETRIES,
                        "retry_delay_ms": s.NOTIFICATION_RETRY_DELAY_MS,
                        "source": s.NOTIFICATION_SOURCE,
                    },
                    "backoff_multiplier": s.RETRY_BACKOFF_MULTIPLIER,
                }
            )
        return summary


def build_service(
    settings: Settings,
    source: MeetingSource | None = None,
) -> VisitorSyncService:
    """Construct the full pipeline from settings.

    Raises:
        ConfigurationError: If the store or notification endpoint is misconfigured.
    """
    store = SharePointRecordStore(
        site_url=settings.SHAREPOINT_SITE_URL,
        list_name=settings.SHAREPOINT_LIST_NAME,
        access_token=settings.SHAREPOINT_ACCESS_TOKEN,
        timeout_ms=settings.STORE_TIMEOUT_MS,
        retry_policy=RetryPolicy(
            max_retries=settings.STORE_MAX_RETRIES,
            base_delay_ms=settings.STORE_RETRY_DELAY_MS,
            multiplier=settings.RETRY_BACKOFF_MULTIPLIER,
        ),
    )
    notifier = NotificationClient(
        url=settings.NOTIFICATION_URL,
        timeout_ms=settings.NOTIFICATION_TIMEOUT_MS,
        retry_policy=RetryPolicy(
            max_retries=settings.NOTIFICATION_MAX_RETRIES,
            base_delay_ms=settings.NOTIFICATION_RETRY_DELAY_MS,
            multiplier=settings.RETRY_BACKOFF_MULTIPLIER,
        ),
        source=settings.NOTIFICATION_SOURCE,
    )
    source = source or InMemoryMeetingSource()
    engine = ReconciliationEngine(store, notifier, settings.get_sync_config())
    coordinator = ChangeCoordinator(engine, source)

    logger.info(
        "service.built",
        list_name=settings.SHAREPOINT_LIST_NAME,
        internal_domains=len(settings.get_internal_domains()),
    )
    return VisitorSyncService(store, notifier, engine, coordinator, source, settings)
