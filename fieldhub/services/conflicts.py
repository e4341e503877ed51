"""
Equipment conflict reconciler.
Holds the app-wide set of unresolved conflicts (one per equipment serial) and applies the
two terminal resolutions. Conflicts never expire; they stay until resolved.
"""
from typing import Dict, List, Optional

import structlog

from ..schemas.equipment import ConflictResolution, EquipmentConflict
from .allocator import AllocationResult
from .ledger import LedgerError
from .notifications import Severity, ToastChannel

logger = structlog.get_logger(__name__)


class ConflictReconciler:
    def __init__(self, registry, notifier: ToastChannel):
        # registry gives access to job sessions, open or not: get_or_open(job_id), release_binding(job_id, serial, reason)
        self._registry = registry
        self._notifier = notifier
        self._active: Dict[str, EquipmentConflict] = {}

    @property
    def conflicts(self) -> List[EquipmentConflict]:
        return sorted(self._active.values(), key=lambda c: c.timestamp)

    def for_job(self, job_id: str) -> List[EquipmentConflict]:
        return [c for c in self.conflicts if job_id in (c.current_job_id, c.requested_job_id)]

    def get(self, equipment_id: str) -> Optional[EquipmentConflict]:
        return self._active.get(equipment_id)

    def record(self, conflict: EquipmentConflict) -> EquipmentConflict:
        """Add a conflict, keeping the original record when the same claim is seen again."""
        existing = self._active.get(conflict.equipment_id)
        if (
            existing is not None
            and existing.current_job_id == conflict.current_job_id
            and existing.requested_job_id == conflict.requested_job_id
        ):
            return existing
        if existing is not None:
            logger.info(
                "equipment_conflict_replaced",
                equipment_id=conflict.equipment_id,
                previous_requested_job_id=existing.requested_job_id,
            )
        self._active[conflict.equipment_id] = conflict
        logger.warning(
            "equipment_conflict_detected",
            equipment_id=conflict.equipment_id,
            current_job_id=conflict.current_job_id,
            requested_job_id=conflict.requested_job_id,
        )
        return conflict

    def discard_for_job(self, job_id: str) -> None:
        for conflict in self.for_job(job_id):
            self._active.pop(conflict.equipment_id, None)

    async def resolve(self, equipment_id: str, resolution: ConflictResolution) -> AllocationResult:
        """
        keep-current: the ledger is untouched; the requesting diagram loses its binding.
        move-to-requested: the requesting job takes the equipment over and the current
        job's diagram loses its binding.
        Either way the affected side gets a toast and the conflict is removed.
        """
        # removed before the first await; put back if the resolution fails
        conflict = self._active.pop(equipment_id, None)
        if conflict is None:
            return AllocationResult(False, f"No active conflict for {equipment_id}", equipment_id)

        if resolution == ConflictResolution.keep_current:
            await self._registry.release_binding(
                conflict.requested_job_id,
                conflict.equipment_id,
                reason=f"conflict resolved: {conflict.equipment_id} kept by {conflict.current_job_name}",
            )
            self._notifier.notify(
                Severity.warning,
                f"{conflict.equipment_id} stays with {conflict.current_job_name}",
                description="The equipment was removed from this diagram; pick an alternative",
                job_id=conflict.requested_job_id,
            )
            result = AllocationResult(True, f"{conflict.equipment_id} kept by {conflict.current_job_name}", equipment_id)
        else:
            try:
                session = await self._registry.get_or_open(conflict.requested_job_id)
            except LedgerError as e:
                logger.error("conflict_resolution_failed", equipment_id=equipment_id, error=str(e))
                self._active.setdefault(equipment_id, conflict)
                return AllocationResult(False, f"Could not open job {conflict.requested_job_id}", equipment_id)
            result = await session.allocator.take_over(conflict)
            if not result:
                logger.warning("conflict_resolution_failed", equipment_id=equipment_id, message=result.message)
                self._active.setdefault(equipment_id, conflict)
                return result
            await self._registry.release_binding(
                conflict.current_job_id,
                conflict.equipment_id,
                reason=f"conflict resolved: {conflict.equipment_id} moved to {conflict.requested_job_name}",
            )
            self._notifier.notify(
                Severity.warning,
                f"{conflict.equipment_id} was moved to {conflict.requested_job_name}",
                description="The equipment was removed from this diagram",
                job_id=conflict.current_job_id,
            )

        logger.info("equipment_conflict_resolved", equipment_id=equipment_id, resolution=resolution.value)
        return result
