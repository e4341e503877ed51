"""
Equipment ledger.
The authoritative record of equipment items: status, physical location and job claim.

Reads and writes go through blocking SQLAlchemy sessions pushed onto the threadpool,
so callers await them like any other network call. Writes can carry an optimistic
precondition on the current job claim; the conditional UPDATE makes claims on a
single serial exclusive.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from starlette.concurrency import run_in_threadpool

from ..models.models import EquipmentItem, EquipmentType
from ..schemas.equipment import (
    EquipmentItemCreate,
    EquipmentItemRecord,
    EquipmentTypeResponse,
)

logger = structlog.get_logger(__name__)

# Sentinel: no precondition on job_id
ANY_JOB = object()

# Only these columns may be written through update()
WRITABLE_FIELDS = {
    "name",
    "status",
    "location_id",
    "location_type",
    "job_id",
    "quantity",
    "serial_number",
    "red_tag_reason",
    "notes",
}


class LedgerError(Exception):
    """The ledger could not be read or written."""


class EquipmentNotFoundError(LedgerError):
    def __init__(self, ref: str):
        super().__init__(f"Equipment {ref} not found")
        self.ref = ref


class StaleLedgerError(LedgerError):
    """The row's job claim changed between read and write."""

    def __init__(self, ref: str, expected_job_id: Optional[str]):
        super().__init__(f"Equipment {ref} is no longer claimed by {expected_job_id or 'no job'}")
        self.ref = ref
        self.expected_job_id = expected_job_id


def _resolve(db: Session, ref: str) -> Optional[EquipmentItem]:
    return db.query(EquipmentItem).filter(
        or_(EquipmentItem.id == ref, EquipmentItem.display_id == ref)
    ).first()


class SqlLedger:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    # ---------- READS ----------
    async def fetch_all(
        self,
        job_id: Optional[str] = None,
        location_id: Optional[str] = None,
        status: Optional[str] = None,
        type_id: Optional[str] = None,
    ) -> List[EquipmentItemRecord]:
        return await self._run(self._fetch_all, job_id, location_id, status, type_id)

    async def get(self, ref: str) -> Optional[EquipmentItemRecord]:
        return await self._run(self._get, ref)

    async def fetch_types(self) -> Dict[str, EquipmentTypeResponse]:
        return await self._run(self._fetch_types)

    # ---------- WRITES ----------
    async def create(self, fields: EquipmentItemCreate) -> EquipmentItemRecord:
        return await self._run(self._create, fields)

    async def update(
        self,
        ref: str,
        fields: Dict[str, Any],
        expected_job_id: Any = ANY_JOB,
    ) -> EquipmentItemRecord:
        """
        Write a partial set of fields.

        When expected_job_id is given, the write only applies if the row's job_id still
        equals it (None meaning unclaimed); otherwise StaleLedgerError is raised.
        """
        unknown = set(fields) - WRITABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields not writable: {', '.join(sorted(unknown))}")
        return await self._run(self._update, ref, fields, expected_job_id)

    async def delete(self, ref: str) -> None:
        await self._run(self._delete, ref)

    # ---------- internals ----------
    async def _run(self, fn, *args):
        try:
            return await run_in_threadpool(fn, *args)
        except SQLAlchemyError as e:
            logger.error("ledger_io_failed", operation=fn.__name__, error=str(e))
            raise LedgerError(str(e)) from e

    def _fetch_all(self, job_id, location_id, status, type_id) -> List[EquipmentItemRecord]:
        with self._session_factory() as db:
            query = db.query(EquipmentItem)
            if job_id:
                query = query.filter(EquipmentItem.job_id == job_id)
            if location_id:
                query = query.filter(EquipmentItem.location_id == location_id)
            if status:
                query = query.filter(EquipmentItem.status == status)
            if type_id:
                query = query.filter(EquipmentItem.type_id == type_id)
            rows = query.order_by(EquipmentItem.display_id).all()
            return [EquipmentItemRecord.model_validate(row) for row in rows]

    def _get(self, ref: str) -> Optional[EquipmentItemRecord]:
        with self._session_factory() as db:
            row = _resolve(db, ref)
            return EquipmentItemRecord.model_validate(row) if row else None

    def _fetch_types(self) -> Dict[str, EquipmentTypeResponse]:
        with self._session_factory() as db:
            return {
                row.id: EquipmentTypeResponse.model_validate(row)
                for row in db.query(EquipmentType).all()
            }

    def _create(self, fields: EquipmentItemCreate) -> EquipmentItemRecord:
        with self._session_factory() as db:
            data = fields.model_dump()
            data["status"] = fields.status.value
            data["location_type"] = fields.location_type.value
            row = EquipmentItem(**data, last_updated=datetime.now(timezone.utc))
            db.add(row)
            db.commit()
            db.refresh(row)
            return EquipmentItemRecord.model_validate(row)

    def _update(self, ref: str, fields: Dict[str, Any], expected_job_id: Any) -> EquipmentItemRecord:
        with self._session_factory() as db:
            row = _resolve(db, ref)
            if not row:
                raise EquipmentNotFoundError(ref)
            stmt = update(EquipmentItem).where(EquipmentItem.id == row.id)
            if expected_job_id is not ANY_JOB:
                if expected_job_id is None:
                    stmt = stmt.where(EquipmentItem.job_id.is_(None))
                else:
                    stmt = stmt.where(EquipmentItem.job_id == expected_job_id)
            values = {k: (v.value if hasattr(v, "value") else v) for k, v in fields.items()}
            values["last_updated"] = datetime.now(timezone.utc)
            result = db.execute(stmt.values(**values).execution_options(synchronize_session=False))
            if result.rowcount == 0:
                db.rollback()
                raise StaleLedgerError(ref, expected_job_id)
            db.commit()
            db.refresh(row)
            return EquipmentItemRecord.model_validate(row)

    def _delete(self, ref: str) -> None:
        with self._session_factory() as db:
            row = _resolve(db, ref)
            if not row:
                raise EquipmentNotFoundError(ref)
            db.delete(row)
            db.commit()


def index_items(items: List[EquipmentItemRecord]) -> Dict[str, EquipmentItemRecord]:
    """Index ledger rows by both internal id and display id."""
    index: Dict[str, EquipmentItemRecord] = {}
    for item in items:
        index[item.id] = item
        index[item.display_id] = item
    return index
