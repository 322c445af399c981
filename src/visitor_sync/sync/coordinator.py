"""ChangeCoordinator -- drives reconciliation from host change events.

Per meeting the coordinator moves through:

    Idle -> Running -> Idle
                    -> Running (pending rerun)

- A trigger while Idle starts a run as its own asyncio task.
- Triggers while Running only set a single pending-rerun flag; any number of
  them collapse into one rerun.
- When a run finishes with the flag set, the flag is cleared and a new run
  starts from a freshly captured snapshot, never the one the finished run used.
- At most one reconciliation executes per meeting at any time. Different
  meetings run independently.
- Nothing is kept for a meeting once it returns to Idle.

Runs are never cancelled mid-flight; the pending flag is only checked after
the engine returns.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

import structlog

from src.visitor_sync.core.monitoring import (
    coalesced_triggers_total,
    reconciliations_in_flight,
)
from src.visitor_sync.schemas import HostChangeKind, MeetingSnapshot, ReconciliationResult
from src.visitor_sync.sync.engine import ReconciliationEngine
from src.visitor_sync.sync.host import MeetingSource, capture_snapshot

logger = structlog.get_logger(__name__)


@runtime_checkable
class ChangeListener(Protocol):
    """Receives the result of every completed reconciliation run."""

    def on_reconciled(self, result: ReconciliationResult) -> None: ...


@dataclass
class ReconciliationJob:
    """In-flight state for one meeting. Exists only while Running."""

    meeting_id: str
    change_kind: HostChangeKind | None = None
    rerun_pending: bool = False
    runs: int = 0
    done: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None


class ChangeCoordinator:
    """Serializes reconciliation per meeting and coalesces bursts of triggers.

    Args:
        engine: Reconciliation engine shared by all meetings.
        source: Host meeting source used to capture fresh snapshots.
    """

    def __init__(self, engine: ReconciliationEngine, source: MeetingSource) -> None:
        self._engine = engine
        self._source = source
        self._jobs: dict[str, ReconciliationJob] = {}
        self._global_listeners: list[ChangeListener] = []
        self._meeting_listeners: dict[str, list[ChangeListener]] = {}

    # ── Listeners ────────────────────────────────────────────────────────

    def add_listener(self, listener: ChangeListener, meeting_id: str | None = None) -> None:
        """Register a listener globally, or for a single meeting."""
        if meeting_id is None:
            self._global_listeners.append(listener)
        else:
            self._meeting_listeners.setdefault(meeting_id, []).append(listener)

    def remove_listener(self, listener: ChangeListener, meeting_id: str | None = None) -> None:
        listeners = (
            self._global_listeners
            if meeting_id is None
            else self._meeting_listeners.get(meeting_id, [])
        )
        if listener in listeners:
            listeners.remove(listener)
        if meeting_id is not None and not listeners:
            self._meeting_listeners.pop(meeting_id, None)

    def _emit(self, result: ReconciliationResult) -> None:
        """Invoke global listeners, then per-meeting ones, in registration order."""
        listeners = list(self._global_listeners) + list(
            self._meeting_listeners.get(result.meeting_id, [])
        )
        for listener in listeners:
            try:
                listener.on_reconciled(result)
            except Exception:
                logger.exception(
                    "coordinator.listener_failed",
                    meeting_id=result.meeting_id,
                    listener=type(listener).__name__,
                )

    # ── State inspection ─────────────────────────────────────────────────

    def is_running(self, meeting_id: str) -> bool:
        return meeting_id in self._jobs

    def has_pending_rerun(self, meeting_id: str) -> bool:
        job = self._jobs.get(meeting_id)
        return job is not None and job.rerun_pending

    def active_meetings(self) -> list[str]:
        return list(self._jobs)

    # ── Entry points ─────────────────────────────────────────────────────

    def on_change(self, meeting_id: str, change_kind: HostChangeKind | None = None) -> bool:
        """Handle a host change notification.

        Returns:
            True if a new run was started, False if the trigger was folded
            into the pending rerun of a run already in flight.
        """
        job = self._jobs.get(meeting_id)
        if job is not None:
            job.rerun_pending = True
            job.change_kind = change_kind
            coalesced_triggers_total.inc()
            logger.info(
                "coordinator.trigger_coalesced",
                meeting_id=meeting_id,
                change_kind=change_kind.value if change_kind else None,
            )
            return False

        job = self._start(meeting_id, change_kind)
        job.task = asyncio.create_task(
            self._drive(job, None, None),
            name=f"reconcile:{meeting_id}",
        )
        return True

    async def reconcile_now(
        self,
        snapshot: MeetingSnapshot,
        change_kind: HostChangeKind | None = None,
    ) -> ReconciliationResult:
        """Reconcile ``snapshot`` on demand and return its result.

        Waits for any run already in flight for the meeting to go Idle first,
        so the per-meeting exclusion also covers on-demand passes. Triggers
        that arrive during this pass are rerun in the background.
        """
        meeting_id = snapshot.meeting_id
        while (running := self._jobs.get(meeting_id)) is not None:
            await running.done.wait()

        job = self._start(meeting_id, change_kind)
        first_result: asyncio.Future[ReconciliationResult] = (
            asyncio.get_running_loop().create_future()
        )
        job.task = asyncio.create_task(
            self._drive(job, snapshot, first_result),
            name=f"reconcile:{meeting_id}",
        )
        return await asyncio.shield(first_result)

    async def wait_idle(self, meeting_id: str | None = None) -> None:
        """Wait until the meeting (or every meeting) has no run in flight."""
        while True:
            if meeting_id is None:
                jobs = list(self._jobs.values())
            else:
                job = self._jobs.get(meeting_id)
                jobs = [job] if job is not None else []
            if not jobs:
                return
            await asyncio.gather(*(job.done.wait() for job in jobs))

    # ── Run loop ─────────────────────────────────────────────────────────

    def _start(self, meeting_id: str, change_kind: HostChangeKind | None) -> ReconciliationJob:
        job = ReconciliationJob(meeting_id=meeting_id, change_kind=change_kind)
        self._jobs[meeting_id] = job
        reconciliations_in_flight.inc()
        logger.info(
            "coordinator.run_started",
            meeting_id=meeting_id,
            change_kind=change_kind.value if change_kind else None,
        )
        return job

    async def _drive(
        self,
        job: ReconciliationJob,
        snapshot: MeetingSnapshot | None,
        first_result: asyncio.Future[ReconciliationResult] | None,
    ) -> None:
        try:
            while True:
                change_kind = job.change_kind
                job.runs += 1
                result = await self._run_once(job.meeting_id, change_kind, snapshot)
                snapshot = None  # reruns always capture a fresh snapshot

                if first_result is not None and not first_result.done():
                    first_result.set_result(result)
                self._emit(result)

                if not job.rerun_pending:
                    break
                job.rerun_pending = False
                logger.info(
                    "coordinator.rerun_started",
                    meeting_id=job.meeting_id,
                    run=job.runs + 1,
                )
        except BaseException as exc:
            if first_result is not None and not first_result.done():
                first_result.set_exception(exc)
            raise
        finally:
            self._jobs.pop(job.meeting_id, None)
            reconciliations_in_flight.dec()
            job.done.set()
            logger.info("coordinator.idle", meeting_id=job.meeting_id, runs=job.runs)

    async def _run_once(
        self,
        meeting_id: str,
        change_kind: HostChangeKind | None,
        snapshot: MeetingSnapshot | None,
    ) -> ReconciliationResult:
        if snapshot is None:
            try:
                snapshot = await capture_snapshot(self._source, meeting_id)
            except Exception as exc:
                logger.error(
                    "coordinator.capture_failed",
                    meeting_id=meeting_id,
                    error=str(exc),
                )
                return ReconciliationResult(
                    meeting_id=meeting_id,
                    error=f"Snapshot capture failed: {exc}",
                )

        if snapshot is None:
            if change_kind != HostChangeKind.DELETED:
                return ReconciliationResult(
                    meeting_id=meeting_id,
                    skipped_reason="Meeting is not available in the host calendar",
                )
            # The meeting is gone; an empty snapshot lets the engine clear its records.
            snapshot = MeetingSnapshot(meeting_id=meeting_id)

        try:
            return await self._engine.reconcile(snapshot, change_kind)
        except Exception as exc:
            logger.exception("coordinator.reconcile_crashed", meeting_id=meeting_id)
            return ReconciliationResult(meeting_id=meeting_id, error=str(exc))
