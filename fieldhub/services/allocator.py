"""
Equipment allocation.
The only component that writes equipment status and job claims. Every transition writes
exactly one history entry, and failures come back as an AllocationResult instead of an
exception.
"""
import asyncio
from collections import defaultdict
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Tuple

import structlog

from ..schemas.equipment import (
    BLOCKING_STATUSES,
    ConflictTarget,
    EquipmentConflict,
    EquipmentItemRecord,
    EquipmentStatus,
    HistoryAction,
    LocationType,
    TargetKind,
)
from .history import HistoryStore, build_entry
from .ledger import LedgerError, SqlLedger, StaleLedgerError
from .notifications import Severity, ToastChannel

logger = structlog.get_logger(__name__)

JobLookup = Callable[[str], Awaitable[str]]


@dataclass
class AllocationResult:
    success: bool
    message: str = ""
    equipment_id: Optional[str] = None
    conflict: Optional[EquipmentConflict] = None

    def __bool__(self) -> bool:
        return self.success


async def _job_id_as_name(job_id: str) -> str:
    return job_id


def _unchanged(before: EquipmentItemRecord, after: EquipmentItemRecord) -> bool:
    return (
        before.status == after.status
        and before.job_id == after.job_id
        and before.location_id == after.location_id
    )


class EquipmentAllocator:
    """
    Allocation operations for one job diagram.

    owner is the job's diagram session: it exposes job_id, job_name, the live graph and
    after_allocation(reason), called once per successful mutation.
    """

    def __init__(
        self,
        owner,
        ledger: SqlLedger,
        history: HistoryStore,
        notifier: ToastChannel,
        reconciler=None,
        job_lookup: Optional[JobLookup] = None,
    ):
        self._owner = owner
        self._ledger = ledger
        self._history = history
        self._notifier = notifier
        self._reconciler = reconciler
        self._job_lookup = job_lookup or _job_id_as_name
        # item id -> (status, job_id) held before this job allocated it
        self._restore: Dict[str, Tuple[EquipmentStatus, Optional[str]]] = {}
        # one allocation or return per item at a time within this job
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def job_id(self) -> str:
        return self._owner.job_id

    @property
    def job_name(self) -> str:
        return self._owner.job_name

    # ---------- public operations ----------
    async def allocate_equipment_to_node(self, node_id: str, equipment_id: str) -> AllocationResult:
        return await self._allocate(TargetKind.node, node_id, equipment_id)

    async def deallocate_equipment_from_node(self, node_id: str) -> AllocationResult:
        return await self._deallocate(TargetKind.node, node_id)

    async def allocate_cable_to_edge(self, edge_id: str, equipment_id: str) -> AllocationResult:
        return await self._allocate(TargetKind.edge, edge_id, equipment_id)

    async def deallocate_cable_from_edge(self, edge_id: str) -> AllocationResult:
        return await self._deallocate(TargetKind.edge, edge_id)

    async def release_serial(self, equipment_id: str, note: str) -> AllocationResult:
        """Return equipment whose diagram binding is already gone (e.g. its node was deleted)."""
        try:
            item = await self._ledger.get(equipment_id)
        except LedgerError as e:
            return self._fail(f"Failed to release {equipment_id}", equipment_id, error=str(e))
        if item is None or item.job_id != self.job_id:
            return AllocationResult(True, f"{equipment_id} is not held by this job", equipment_id)
        return await self._release(item, note, notify=False)

    async def take_over(self, conflict: EquipmentConflict) -> AllocationResult:
        """Reassign conflicted equipment from its current job to this one."""
        try:
            item = await self._ledger.get(conflict.equipment_id)
            if item is None:
                return self._fail(f"Equipment {conflict.equipment_id} not found", conflict.equipment_id)
            if item.status in BLOCKING_STATUSES:
                return self._fail(f"{item.display_id} is {item.status.value} and cannot be deployed", item.display_id)
            if item.job_id not in (None, conflict.current_job_id, self.job_id):
                return self._fail(f"{item.display_id} is now claimed by job {item.job_id}", item.display_id)
            after = await self._ledger.update(
                item.id,
                {"status": EquipmentStatus.deployed, "job_id": self.job_id},
                expected_job_id=item.job_id,
            )
        except StaleLedgerError:
            return self._fail(f"{conflict.equipment_id} changed while it was being reassigned", conflict.equipment_id)
        except LedgerError as e:
            return self._fail(f"Failed to reassign {conflict.equipment_id}", conflict.equipment_id, error=str(e))

        self._history.append(build_entry(
            item, after, job_name=self.job_name,
            notes=f"Reassigned from {conflict.current_job_name}",
            action=HistoryAction.reassigned,
        ))
        target = conflict.requested_target
        if target and self._owner.graph.find(target.kind, target.id) is not None:
            self._owner.graph.bind(target.kind, target.id, after.display_id)
        logger.info(
            "equipment_reassigned",
            equipment_id=after.display_id,
            from_job_id=item.job_id,
            to_job_id=self.job_id,
        )
        self._owner.after_allocation(f"reassigned {after.display_id}")
        return AllocationResult(True, f"{after.display_id} moved to {self.job_name}", after.display_id)

    async def repair_invariant(self, item: EquipmentItemRecord) -> AllocationResult:
        """Bring a row that breaks the status/job invariant back to a consistent state."""
        violation = item.invariant_violation()
        if violation is None:
            return AllocationResult(True, "consistent", item.display_id)
        if item.status == EquipmentStatus.deployed:
            fields = {"status": EquipmentStatus.available, "job_id": None}
        else:
            fields = {"job_id": None}
        try:
            after = await self._ledger.update(item.id, fields, expected_job_id=item.job_id)
        except LedgerError as e:
            logger.warning("invariant_repair_failed", equipment_id=item.display_id, violation=violation, error=str(e))
            return AllocationResult(False, f"Could not repair {item.display_id}", item.display_id)
        self._history.append(build_entry(
            item, after, job_name=self.job_name,
            notes=f"Repaired: {violation}",
            action=HistoryAction.status_change,
        ))
        logger.warning("invariant_repaired", equipment_id=item.display_id, violation=violation)
        return AllocationResult(True, f"Repaired {item.display_id}: {violation}", item.display_id)

    # ---------- internals ----------
    async def _allocate(self, kind: TargetKind, target_id: str, equipment_id: str) -> AllocationResult:
        if self._owner.graph.find(kind, target_id) is None:
            return self._fail(f"{kind.value.capitalize()} {target_id} not found", equipment_id)

        try:
            item = await self._ledger.get(equipment_id)
        except LedgerError as e:
            return self._fail("Failed to allocate equipment", equipment_id, error=str(e))
        if item is None:
            return self._fail(f"Equipment {equipment_id} not found", equipment_id)

        async with self._locks[item.id]:
            try:
                item = await self._ledger.get(item.id)
            except LedgerError as e:
                return self._fail("Failed to allocate equipment", equipment_id, error=str(e))
            if item is None:
                return self._fail(f"Equipment {equipment_id} not found", equipment_id)
            return await self._claim(item, kind, target_id)

    async def _claim(self, item: EquipmentItemRecord, kind: TargetKind, target_id: str) -> AllocationResult:
        graph = self._owner.graph
        label = f"{kind.value} {target_id}"
        serial = item.display_id
        elsewhere = [t for t in graph.targets_for(serial) if t != (kind, target_id)]
        if elsewhere:
            other_kind, other_id = elsewhere[0]
            return self._fail(f"{serial} is already assigned to {other_kind.value} {other_id} in this job", serial)

        current = graph.binding(kind, target_id)
        if current and current != serial:
            return self._fail(f"{label} already holds {current}; deallocate it first", serial)
        if item.status in BLOCKING_STATUSES:
            return self._fail(f"{serial} is {item.status.value} and cannot be deployed", serial)
        if item.job_id and item.job_id != self.job_id:
            return await self._conflict(item, kind, target_id)

        if item.status == EquipmentStatus.deployed and item.job_id == self.job_id:
            after = item
        else:
            try:
                after = await self._ledger.update(
                    item.id,
                    {"status": EquipmentStatus.deployed, "job_id": self.job_id},
                    expected_job_id=item.job_id,
                )
            except StaleLedgerError:
                return await self._lost_race(item, kind, target_id)
            except LedgerError as e:
                return self._fail("Failed to allocate equipment", serial, error=str(e))
            if item.status == EquipmentStatus.allocated:
                self._restore[item.id] = (item.status, item.job_id)

        if not _unchanged(item, after):
            self._history.append(build_entry(item, after, job_name=self.job_name, notes=f"Allocated to {label}"))
        graph.bind(kind, target_id, serial)
        logger.info("equipment_allocated", equipment_id=serial, job_id=self.job_id, target=label)
        self._notifier.notify(Severity.success, f"{serial} allocated to {self.job_name}", job_id=self.job_id)
        self._owner.after_allocation(f"allocated {serial} to {label}")
        return AllocationResult(True, f"{serial} allocated", serial)

    async def _deallocate(self, kind: TargetKind, target_id: str) -> AllocationResult:
        graph = self._owner.graph
        serial = graph.binding(kind, target_id)
        if not serial:
            return AllocationResult(False, f"No equipment allocated to {kind.value} {target_id}")

        try:
            item = await self._ledger.get(serial)
        except LedgerError as e:
            return self._fail("Failed to deallocate equipment", serial, error=str(e))

        if item is None or item.job_id != self.job_id:
            # nothing to return in the ledger; only the local binding is stale
            graph.unbind(kind, target_id)
            logger.info("stale_binding_cleared", equipment_id=serial, job_id=self.job_id)
            self._owner.after_allocation(f"cleared {serial} from {kind.value} {target_id}")
            return AllocationResult(True, f"{serial} is not held by this job; binding cleared", serial)

        async with self._locks[item.id]:
            if graph.binding(kind, target_id) != serial:
                return AllocationResult(False, f"No equipment allocated to {kind.value} {target_id}")
            result = await self._release(item, f"Deallocated from {kind.value} {target_id}", notify=True)
        if result:
            graph.unbind(kind, target_id)
            self._owner.after_allocation(f"deallocated {serial} from {kind.value} {target_id}")
        return result

    async def _release(self, item: EquipmentItemRecord, note: str, notify: bool) -> AllocationResult:
        status, job_id = self._restore.get(item.id, (EquipmentStatus.available, None))
        try:
            after = await self._ledger.update(
                item.id,
                {"status": status, "job_id": job_id},
                expected_job_id=item.job_id,
            )
        except StaleLedgerError:
            return self._fail(f"{item.display_id} changed while it was being returned", item.display_id)
        except LedgerError as e:
            return self._fail("Failed to deallocate equipment", item.display_id, error=str(e))
        self._restore.pop(item.id, None)

        self._history.append(build_entry(item, after, job_name=self.job_name, notes=note))
        logger.info("equipment_deallocated", equipment_id=item.display_id, job_id=self.job_id, status=status.value)
        if notify:
            self._notifier.notify(Severity.success, f"{item.display_id} returned", job_id=self.job_id)
        return AllocationResult(True, f"{item.display_id} deallocated", item.display_id)

    async def _lost_race(self, item: EquipmentItemRecord, kind: TargetKind, target_id: str) -> AllocationResult:
        try:
            fresh = await self._ledger.get(item.id)
        except LedgerError as e:
            return self._fail("Failed to allocate equipment", item.display_id, error=str(e))
        if fresh is not None and fresh.job_id and fresh.job_id != self.job_id:
            return await self._conflict(fresh, kind, target_id)
        return self._fail(f"{item.display_id} changed during allocation; try again", item.display_id)

    async def _conflict(self, item: EquipmentItemRecord, kind: TargetKind, target_id: str) -> AllocationResult:
        conflict = EquipmentConflict(
            equipment_id=item.display_id,
            equipment_name=item.name,
            current_job_id=item.job_id,
            current_job_name=await self._job_lookup(item.job_id),
            requested_job_id=self.job_id,
            requested_job_name=self.job_name,
            requested_target=ConflictTarget(kind=kind, id=target_id),
        )
        if self._reconciler is not None:
            conflict = self._reconciler.record(conflict)
        self._notifier.notify(
            Severity.warning,
            f"{item.display_id} is already deployed to {conflict.current_job_name}",
            description="Resolve the conflict to move it to this job",
            job_id=self.job_id,
        )
        return AllocationResult(False, f"{item.display_id} is claimed by {conflict.current_job_name}", item.display_id, conflict)

    def _fail(self, message: str, equipment_id: Optional[str] = None, error: Optional[str] = None) -> AllocationResult:
        if error:
            logger.error("allocation_failed", job_id=self.job_id, equipment_id=equipment_id, message=message, error=error)
        else:
            logger.warning("allocation_rejected", job_id=self.job_id, equipment_id=equipment_id, message=message)
        self._notifier.notify(Severity.error, message, job_id=self.job_id)
        return AllocationResult(False, message, equipment_id)


async def change_equipment_status(
    ledger: SqlLedger,
    history: HistoryStore,
    ref: str,
    status: EquipmentStatus,
    reason: Optional[str] = None,
) -> AllocationResult:
    """Move unclaimed equipment between available, maintenance, red-tagged and retired."""
    if status in (EquipmentStatus.deployed, EquipmentStatus.allocated):
        return AllocationResult(False, "Equipment is deployed by allocating it to a job diagram", ref)
    try:
        item = await ledger.get(ref)
        if item is None:
            return AllocationResult(False, f"Equipment {ref} not found", ref)
        if item.job_id:
            return AllocationResult(False, f"{item.display_id} is claimed by job {item.job_id}; return it first", item.display_id)
        if item.status == status:
            return AllocationResult(True, f"{item.display_id} is already {status.value}", item.display_id)
        after = await ledger.update(
            item.id,
            {"status": status, "red_tag_reason": reason if status == EquipmentStatus.red_tagged else None},
            expected_job_id=None,
        )
    except StaleLedgerError:
        return AllocationResult(False, f"{ref} was claimed while its status was changing", ref)
    except LedgerError as e:
        logger.error("status_change_failed", equipment_id=ref, status=status.value, error=str(e))
        return AllocationResult(False, f"Failed to change status of {ref}", ref)

    history.append(build_entry(item, after, notes=reason))
    logger.info("equipment_status_changed", equipment_id=after.display_id, from_status=item.status.value, to_status=status.value)
    return AllocationResult(True, f"{after.display_id} is now {status.value}", after.display_id)


async def transfer_equipment(
    ledger: SqlLedger,
    history: HistoryStore,
    ref: str,
    location_id: str,
    location_type: LocationType = LocationType.storage,
    notes: Optional[str] = None,
) -> AllocationResult:
    """Move equipment physically. The job claim is left untouched."""
    try:
        item = await ledger.get(ref)
        if item is None:
            return AllocationResult(False, f"Equipment {ref} not found", ref)
        if item.location_id == location_id and item.location_type == location_type:
            return AllocationResult(True, f"{item.display_id} is already at {location_id}", item.display_id)
        after = await ledger.update(item.id, {"location_id": location_id, "location_type": location_type})
    except LedgerError as e:
        logger.error("transfer_failed", equipment_id=ref, location_id=location_id, error=str(e))
        return AllocationResult(False, f"Failed to transfer {ref}", ref)

    history.append(build_entry(item, after, notes=notes, action=HistoryAction.location_change))
    logger.info("equipment_transferred", equipment_id=after.display_id, from_location=item.location_id, to_location=location_id)
    return AllocationResult(True, f"{after.display_id} moved to {location_id}", after.display_id)
