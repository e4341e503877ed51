"""
Equipment history service.
Append-only history with integrity hashing. Writes are fire-and-forget: append() never
blocks the caller and write failures are logged, not raised.
"""
import asyncio
import hashlib
import json
from typing import List, Optional, Set

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from starlette.concurrency import run_in_threadpool

from ..models.models import EquipmentHistory
from ..schemas.equipment import (
    EquipmentItemRecord,
    EquipmentStatus,
    HistoryAction,
    HistoryEntryCreate,
    HistoryEntryResponse,
)
from ..config import settings

logger = structlog.get_logger(__name__)


def compute_integrity_hash(entry: HistoryEntryCreate, secret: Optional[str]) -> Optional[str]:
    """SHA256 over the canonical JSON form of the entry, keyed by secret."""
    if not secret:
        return None
    canonical_data = {k: v for k, v in entry.model_dump(mode="json").items() if v is not None}
    canonical_json = json.dumps(canonical_data, sort_keys=True, default=str)
    hash_input = f"{canonical_json}:{secret}"
    return hashlib.sha256(hash_input.encode()).hexdigest()


def classify_transition(
    before: EquipmentItemRecord,
    after: EquipmentItemRecord,
) -> HistoryAction:
    """Pick the history action describing a before/after pair of ledger rows."""
    if after.status == EquipmentStatus.deployed and before.job_id and after.job_id and before.job_id != after.job_id:
        return HistoryAction.reassigned
    if after.status == EquipmentStatus.deployed and before.status != EquipmentStatus.deployed:
        return HistoryAction.deployed
    if before.job_id and not after.job_id:
        return HistoryAction.returned
    if after.status == EquipmentStatus.maintenance and before.status != after.status:
        return HistoryAction.maintenance
    if after.status == EquipmentStatus.red_tagged and before.status != after.status:
        return HistoryAction.red_tagged
    if before.status == after.status and before.location_id != after.location_id:
        return HistoryAction.location_change
    return HistoryAction.status_change


def build_entry(
    before: EquipmentItemRecord,
    after: EquipmentItemRecord,
    job_name: Optional[str] = None,
    notes: Optional[str] = None,
    user_id: Optional[str] = None,
    action: Optional[HistoryAction] = None,
) -> HistoryEntryCreate:
    """One entry per transition, capturing from/to for status, location and job."""
    return HistoryEntryCreate(
        equipment_id=after.id,
        action=action or classify_transition(before, after),
        from_status=before.status.value,
        to_status=after.status.value,
        from_location=before.location_id,
        to_location=after.location_id,
        from_job_id=before.job_id,
        to_job_id=after.job_id,
        job_name=job_name,
        user_id=user_id,
        notes=notes,
    )


class HistoryStore:
    def __init__(self, session_factory: sessionmaker, integrity_secret: Optional[str] = None):
        self._session_factory = session_factory
        self._secret = integrity_secret if integrity_secret is not None else settings.history_secret
        self._pending: Set[asyncio.Task] = set()

    def append(self, entry: HistoryEntryCreate) -> None:
        """Schedule the write and return immediately."""
        task = asyncio.get_running_loop().create_task(self._write(entry))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for every scheduled write to settle."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def list_for(self, equipment_id: str, limit: int = 100) -> List[HistoryEntryResponse]:
        return await run_in_threadpool(self._list_for, equipment_id, limit)

    async def _write(self, entry: HistoryEntryCreate) -> None:
        try:
            await run_in_threadpool(self._insert, entry)
        except SQLAlchemyError as e:
            logger.warning("history_write_failed", equipment_id=entry.equipment_id, action=entry.action.value, error=str(e))

    def _insert(self, entry: HistoryEntryCreate) -> None:
        row = EquipmentHistory(
            **entry.model_dump(exclude={"action"}),
            action=entry.action.value,
            integrity_hash=compute_integrity_hash(entry, self._secret),
        )
        with self._session_factory() as db:
            db.add(row)
            db.commit()

    def _list_for(self, equipment_id: str, limit: int) -> List[HistoryEntryResponse]:
        with self._session_factory() as db:
            rows = db.query(EquipmentHistory).filter(
                EquipmentHistory.equipment_id == equipment_id
            ).order_by(EquipmentHistory.timestamp.desc()).limit(limit).all()
            return [HistoryEntryResponse.model_validate(row) for row in rows]
