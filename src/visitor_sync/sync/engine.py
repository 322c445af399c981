"""Reconciliation engine -- converges a meeting's visitor records on its attendees.

Orchestrates one pass for one meeting:
1. classify the snapshot's attendees into the wanted external participants
2. read the meeting's existing records from the store
3. diff by lowercase email (stale or duplicate records are removed and recreated)
4. remove, then create, then notify

Records are never updated in place. The store has no uniqueness constraint on
(meeting, email), so delete + recreate keeps every step idempotent: a pass
interrupted half-way is repaired by the next pass re-deriving the same diff.

Failures are isolated per participant. A failed create does not stop the
remaining creates, and notification failures for one visitor do not affect
the others. Every failure is attached to the returned ReconciliationResult.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog

from src.visitor_sync.config import SyncConfig
from src.visitor_sync.core.monitoring import (
    notifications_total,
    reconciliations_total,
    store_operations_total,
)
from src.visitor_sync.schemas import (
    ExternalParticipant,
    HostChangeKind,
    MeetingSnapshot,
    NotificationRequest,
    NotificationType,
    ReconciliationResult,
    VisitorRecord,
    VisitorRecordCreate,
    VisitorStatus,
)
from src.visitor_sync.sync.classifier import classify
from src.visitor_sync.sync.notifier import NotificationClient
from src.visitor_sync.sync.store import RecordStore

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]

_UPDATE_TRIGGERS = frozenset(
    {
        HostChangeKind.RECIPIENTS_CHANGED,
        HostChangeKind.SUBJECT_CHANGED,
        HostChangeKind.TIME_CHANGED,
        HostChangeKind.APPOINTMENT_CHANGED,
    }
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _same_instant(a: datetime | None, b: datetime | None) -> bool:
    """Compare timestamps at one-second resolution (the list drops sub-seconds)."""
    if a is None or b is None:
        return a is None and b is None
    if a.tzinfo is None:
        a = a.replace(tzinfo=timezone.utc)
    if b.tzinfo is None:
        b = b.replace(tzinfo=timezone.utc)
    return abs((a - b).total_seconds()) < 1


def is_stale(
    record: VisitorRecord,
    snapshot: MeetingSnapshot,
    participant: ExternalParticipant,
) -> bool:
    """Return True if a Scheduled record no longer describes the meeting."""
    return (
        record.title != snapshot.title
        or record.visitor_name != participant.display_name
        or not _same_instant(record.start_time, snapshot.start_time)
        or not _same_instant(record.end_time, snapshot.end_time)
    )


@dataclass
class ReconciliationPlan:
    """The store operations one pass needs to converge."""

    to_remove: list[VisitorRecord] = field(default_factory=list)
    to_create: list[ExternalParticipant] = field(default_factory=list)
    unchanged: list[ExternalParticipant] = field(default_factory=list)

    @property
    def has_mutations(self) -> bool:
        return bool(self.to_remove or self.to_create)


def plan_reconciliation(
    snapshot: MeetingSnapshot,
    wanted: list[ExternalParticipant],
    existing: list[VisitorRecord],
) -> ReconciliationPlan:
    """Diff wanted participants against existing records by lowercase email.

    - Records of emails no longer wanted are removed (any status).
    - Only a current Scheduled record satisfies a wanted participant; extra
      Scheduled duplicates and stale ones are removed.
    - Completed/Cancelled records of a wanted email are kept as history.
    """
    wanted_by_key = {participant.key: participant for participant in wanted}
    kept: set[str] = set()
    plan = ReconciliationPlan()

    for record in existing:
        participant = wanted_by_key.get(record.key)
        if participant is None:
            plan.to_remove.append(record)
            continue
        if record.status != VisitorStatus.SCHEDULED:
            continue
        if record.key in kept or is_stale(record, snapshot, participant):
            plan.to_remove.append(record)
            continue
        kept.add(record.key)

    for participant in wanted:
        if participant.key in kept:
            plan.unchanged.append(participant)
        else:
            plan.to_create.append(participant)

    return plan


def derive_notification_type(
    change_kind: HostChangeKind | None,
    had_records: bool,
) -> NotificationType:
    """Map the triggering change onto the notification type sent to visitors."""
    if change_kind == HostChangeKind.DELETED:
        return NotificationType.CANCELLED
    if change_kind == HostChangeKind.CREATED:
        return NotificationType.CREATED
    if change_kind in _UPDATE_TRIGGERS:
        return NotificationType.UPDATED
    return NotificationType.UPDATED if had_records else NotificationType.CREATED


class ReconciliationEngine:
    """Computes and applies the minimal store/notification operations for a meeting.

    Args:
        store: Remote visitor record store.
        notifier: Notification webhook client.
        config: Internal domains and resource exclusion settings.
        clock: Source of ``created_at``/``updated_at``/``issued_at`` stamps.
    """

    def __init__(
        self,
        store: RecordStore,
        notifier: NotificationClient,
        config: SyncConfig,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._config = config
        self._clock = clock or _utc_now

    @property
    def config(self) -> SyncConfig:
        return self._config

    def external_participants(self, snapshot: MeetingSnapshot) -> list[ExternalParticipant]:
        return classify(
            snapshot.attendees,
            self._config.internal_domains,
            self._config.exclude_resources,
        )

    async def reconcile(
        self,
        snapshot: MeetingSnapshot,
        change_kind: HostChangeKind | None = None,
    ) -> ReconciliationResult:
        """Run one reconciliation pass.

        Args:
            snapshot: The meeting as captured just before this pass.
            change_kind: The host change that triggered the pass, or None for
                an on-demand pass. ``deleted`` removes every record.

        Returns:
            ReconciliationResult with counts and the first error per stage.
        """
        log = logger.bind(
            meeting_id=snapshot.meeting_id,
            change_kind=change_kind.value if change_kind else None,
        )
        result = ReconciliationResult(meeting_id=snapshot.meeting_id)

        cancelled = change_kind == HostChangeKind.DELETED
        wanted = [] if cancelled else self.external_participants(snapshot)
        if cancelled:
            result.change_kind = NotificationType.CANCELLED

        try:
            existing = await self._store.find_by_meeting(snapshot.meeting_id)
        except Exception as exc:
            store_operations_total.labels(operation="find", outcome="error").inc()
            reconciliations_total.labels(outcome="read_failed").inc()
            log.error("reconcile.read_failed", error=str(exc))
            result.store_error = str(exc)
            return result
        store_operations_total.labels(operation="find", outcome="ok").inc()

        plan = plan_reconciliation(snapshot, wanted, existing)
        result.unchanged = len(plan.unchanged)

        log.info(
            "reconcile.plan",
            wanted=len(wanted),
            existing=len(existing),
            to_remove=len(plan.to_remove),
            to_create=len(plan.to_create),
            unchanged=len(plan.unchanged),
        )

        # Removals strictly precede creations.
        for record in plan.to_remove:
            try:
                await self._store.remove(record.record_key)
            except Exception as exc:
                store_operations_total.labels(operation="remove", outcome="error").inc()
                result.remove_failures += 1
                result.store_error = result.store_error or str(exc)
                log.error(
                    "reconcile.remove_failed",
                    record_key=record.record_key,
                    visitor_email=record.visitor_email,
                    error=str(exc),
                )
                continue
            store_operations_total.labels(operation="remove", outcome="ok").inc()
            result.removed += 1

        failed_keys: set[str] = set()
        for participant in plan.to_create:
            now = self._clock()
            payload = VisitorRecordCreate(
                meeting_id=snapshot.meeting_id,
                title=snapshot.title,
                visitor_email=participant.email,
                visitor_name=participant.display_name,
                start_time=snapshot.start_time,
                end_time=snapshot.end_time,
                status=VisitorStatus.SCHEDULED,
                created_at=now,
                updated_at=now,
            )
            try:
                await self._store.create(payload)
            except Exception as exc:
                store_operations_total.labels(operation="create", outcome="error").inc()
                result.create_failures += 1
                result.store_error = result.store_error or str(exc)
                failed_keys.add(participant.key)
                log.error(
                    "reconcile.create_failed",
                    visitor_email=participant.email,
                    error=str(exc),
                )
                continue
            store_operations_total.labels(operation="create", outcome="ok").inc()
            result.created += 1

        if wanted and plan.has_mutations:
            kind = derive_notification_type(change_kind, had_records=bool(existing))
            result.change_kind = kind
            issued_at = self._clock()
            requests = [
                NotificationRequest(
                    meeting_id=snapshot.meeting_id,
                    title=snapshot.title,
                    visitor_email=participant.email,
                    visitor_name=participant.display_name,
                    start_time=snapshot.start_time,
                    end_time=snapshot.end_time,
                    change_kind=kind,
                    issued_at=issued_at,
                )
                for participant in wanted
                if participant.key not in failed_keys
            ]
            await self._deliver(requests, result, log)

        outcome = "success" if result.success else "partial_failure"
        reconciliations_total.labels(outcome=outcome).inc()
        log.info(
            "reconcile.complete",
            created=result.created,
            removed=result.removed,
            unchanged=result.unchanged,
            notifications_sent=result.notifications_sent,
            notifications_failed=result.notifications_failed,
            success=result.success,
        )
        return result

    async def _deliver(
        self,
        requests: list[NotificationRequest],
        result: ReconciliationResult,
        log: structlog.stdlib.BoundLogger,
    ) -> None:
        if not requests:
            return

        try:
            batch = await self._notifier.notify_many(requests)
        except Exception as exc:
            notifications_total.labels(outcome="failed").inc(len(requests))
            result.notifications_failed = len(requests)
            result.notification_error = str(exc)
            log.error("reconcile.notify_failed", error=str(exc))
            return

        notifications_total.labels(outcome="delivered").inc(batch.delivered)
        notifications_total.labels(outcome="failed").inc(batch.failed)
        result.notifications_sent = batch.delivered
        result.notifications_failed = batch.failed
        result.notification_results = batch.results
        first_failure = next((r for r in batch.results if not r.delivered), None)
        if first_failure is not None:
            result.notification_error = first_failure.error
