"""
Unified equipment sync for one job diagram.

A pass re-reads the ledger and diffs it against the diagram's bindings:
- binding to a serial the ledger no longer has, or has unassigned -> stale, binding cleared
- binding to a serial claimed by another job -> conflict recorded
- ledger rows breaking the status/job invariant -> repaired through the allocator
- serials deployed to this job that nothing binds -> reported as orphaned
Serials in the session's pending_deletions are being released and are left alone,
except that their release is retried.

State machine: idle -> syncing -> idle | error. A failed pass keeps the prior local state.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple

import structlog

from ..config import settings
from ..schemas.equipment import ConflictTarget, EquipmentConflict, EquipmentStatus, TargetKind
from .ledger import LedgerError, SqlLedger, index_items
from .notifications import Severity, ToastChannel

logger = structlog.get_logger(__name__)


class SyncStatus(str, Enum):
    idle = "idle"
    syncing = "syncing"
    error = "error"


@dataclass
class SyncReport:
    job_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    stale: List[str] = field(default_factory=list)
    conflicts: List[EquipmentConflict] = field(default_factory=list)
    repaired: List[str] = field(default_factory=list)
    released: List[str] = field(default_factory=list)
    orphaned: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class SyncCoordinator:
    def __init__(
        self,
        owner,
        ledger: SqlLedger,
        allocator,
        reconciler,
        notifier: ToastChannel,
        job_lookup=None,
        interval: Optional[float] = None,
    ):
        self._owner = owner
        self._ledger = ledger
        self._allocator = allocator
        self._reconciler = reconciler
        self._notifier = notifier
        self._job_lookup = job_lookup
        self.interval = settings.sync_interval_s if interval is None else interval

        self.status = SyncStatus.idle
        self.last_sync_time: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.last_report: Optional[SyncReport] = None

        self._lock = asyncio.Lock()
        self._requested: Optional[asyncio.Task] = None
        self._rerun = False
        self._periodic: Optional[asyncio.Task] = None

    # ---------- triggers ----------
    def start(self) -> None:
        """Start the periodic trigger. No-op when the interval is 0."""
        if self.interval > 0 and self._periodic is None:
            self._periodic = asyncio.get_running_loop().create_task(self._run_periodic())

    async def stop(self) -> None:
        tasks = [t for t in (self._periodic, self._requested) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._periodic = None
        self._requested = None

    def request_sync(self) -> asyncio.Task:
        """Trigger a pass in the background. Requests arriving during a pass collapse into one rerun."""
        if self._requested is not None and not self._requested.done():
            self._rerun = True
            return self._requested
        self._requested = asyncio.get_running_loop().create_task(self._run_requested())
        return self._requested

    async def _run_requested(self) -> None:
        while True:
            self._rerun = False
            await self.sync()
            if not self._rerun:
                return

    async def _run_periodic(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.sync()

    # ---------- pass ----------
    async def sync(self) -> SyncReport:
        async with self._lock:
            return await self._sync()

    async def _sync(self) -> SyncReport:
        job_id = self._owner.job_id
        report = SyncReport(job_id=job_id, started_at=datetime.utcnow())
        self.status = SyncStatus.syncing
        logger.info("sync_started", job_id=job_id)

        try:
            items = await self._ledger.fetch_all()
            index = index_items(items)
            graph = self._owner.graph
            pending = self._owner.pending_deletions
            bound = {b.equipment_id for b in graph.bindings()}

            # repair first so the diff sees consistent rows
            for item in items:
                if item.invariant_violation() is None:
                    continue
                if item.job_id != job_id and item.display_id not in bound and item.id not in bound:
                    continue
                result = await self._allocator.repair_invariant(item)
                if result:
                    report.repaired.append(item.display_id)
            if report.repaired:
                index = index_items(await self._ledger.fetch_all())

            stale: List[Tuple[TargetKind, str, str]] = []
            for binding in graph.bindings():
                serial = binding.equipment_id
                if serial in pending:
                    continue
                item = index.get(serial)
                if item is None or not item.job_id:
                    stale.append((binding.kind, binding.target_id, serial))
                elif item.job_id != job_id:
                    report.conflicts.append(EquipmentConflict(
                        equipment_id=item.display_id,
                        equipment_name=item.name,
                        current_job_id=item.job_id,
                        current_job_name=await self._job_name(item.job_id),
                        requested_job_id=job_id,
                        requested_job_name=self._owner.job_name,
                        requested_target=ConflictTarget(kind=binding.kind, id=binding.target_id),
                    ))

            for serial in list(pending):
                item = index.get(serial)
                if item is None or item.job_id != job_id:
                    pending.discard(serial)
                    continue
                result = await self._allocator.release_serial(serial, "Released after removal from diagram")
                if result:
                    pending.discard(serial)
                    report.released.append(serial)

            seen = set()
            for item in index.values():
                if item.id in seen:
                    continue
                seen.add(item.id)
                if (
                    item.job_id == job_id
                    and item.status == EquipmentStatus.deployed
                    and item.display_id not in bound
                    and item.id not in bound
                    and item.display_id not in pending
                    and item.display_id not in report.released
                ):
                    report.orphaned.append(item.display_id)
        except LedgerError as e:
            self.status = SyncStatus.error
            self.last_error = str(e)
            report.error = str(e)
            report.finished_at = datetime.utcnow()
            self.last_report = report
            logger.warning("sync_failed", job_id=job_id, error=str(e))
            self._notifier.notify(
                Severity.warning,
                "Equipment sync failed",
                description="Showing the last known state; sync will retry",
                job_id=job_id,
            )
            return report

        # apply only once the whole pass has been read
        graph = self._owner.graph
        for kind, target_id, serial in stale:
            if graph.binding(kind, target_id) == serial:
                graph.unbind(kind, target_id)
                report.stale.append(serial)
        for conflict in report.conflicts:
            self._reconciler.record(conflict)
        if report.stale:
            self._owner.request_save(f"sync cleared {len(report.stale)} stale bindings")

        self.status = SyncStatus.idle
        self.last_error = None
        report.finished_at = datetime.utcnow()
        self.last_sync_time = report.finished_at
        self.last_report = report
        logger.info(
            "sync_completed",
            job_id=job_id,
            stale=len(report.stale),
            conflicts=len(report.conflicts),
            repaired=len(report.repaired),
            released=len(report.released),
            orphaned=len(report.orphaned),
        )
        if report.conflicts:
            self._notifier.notify(
                Severity.warning,
                f"{len(report.conflicts)} equipment conflicts detected",
                description="Resolve conflicts to continue",
                job_id=job_id,
            )
        return report

    async def _job_name(self, job_id: str) -> str:
        if self._job_lookup is None:
            return job_id
        return await self._job_lookup(job_id)
