from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..db import get_db
from ..models.models import EquipmentType, StorageLocation
from ..schemas.equipment import (
    AvailabilityCheckResponse,
    EquipmentItemCreate,
    EquipmentItemRecord,
    EquipmentItemUpdate,
    EquipmentStatus,
    EquipmentTypeCreate,
    EquipmentTypeResponse,
    HistoryAction,
    HistoryEntryCreate,
    HistoryEntryResponse,
    OperationResult,
    StatusChangeRequest,
    StorageLocationCreate,
    StorageLocationResponse,
    TransferRequest,
)
from ..services.allocator import AllocationResult, change_equipment_status, transfer_equipment
from ..services.availability import check_equipment_availability, find_alternatives
from ..services.ledger import EquipmentNotFoundError, LedgerError
from ..services.sessions import SessionRegistry, get_registry


router = APIRouter(prefix="/equipment", tags=["equipment"])


def _result(result: AllocationResult) -> OperationResult:
    if not result:
        raise HTTPException(status_code=409, detail=result.message)
    return OperationResult(success=True, message=result.message, equipment_id=result.equipment_id)


async def _get_item(registry: SessionRegistry, ref: str) -> EquipmentItemRecord:
    try:
        item = await registry.ledger.get(ref)
    except LedgerError:
        raise HTTPException(status_code=503, detail="Equipment ledger unavailable")
    if not item:
        raise HTTPException(status_code=404, detail="Equipment not found")
    return item


# ---------- TYPES ----------
@router.get("/types", response_model=List[EquipmentTypeResponse])
def list_types(category: Optional[str] = None, db: Session = Depends(get_db)):
    query = db.query(EquipmentType)
    if category:
        query = query.filter(EquipmentType.category == category)
    return query.order_by(EquipmentType.name).all()


@router.post("/types", response_model=EquipmentTypeResponse)
def create_type(payload: EquipmentTypeCreate, db: Session = Depends(get_db)):
    if db.query(EquipmentType).filter(EquipmentType.id == payload.id).first():
        raise HTTPException(status_code=400, detail="Equipment type already exists")
    row = EquipmentType(**payload.model_dump(exclude={"category"}), category=payload.category.value)
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


# ---------- LOCATIONS ----------
@router.get("/locations", response_model=List[StorageLocationResponse])
def list_locations(db: Session = Depends(get_db)):
    return db.query(StorageLocation).order_by(StorageLocation.name).all()


@router.post("/locations", response_model=StorageLocationResponse)
def create_location(payload: StorageLocationCreate, db: Session = Depends(get_db)):
    if db.query(StorageLocation).filter(StorageLocation.name == payload.name).first():
        raise HTTPException(status_code=400, detail="Location already exists")
    if payload.is_default:
        # only one default location
        db.query(StorageLocation).filter(StorageLocation.is_default == True).update({"is_default": False})  # noqa: E712
    row = StorageLocation(**payload.model_dump())
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


# ---------- ITEMS ----------
@router.get("", response_model=List[EquipmentItemRecord])
async def list_equipment(
    job_id: Optional[str] = None,
    location_id: Optional[str] = None,
    status: Optional[EquipmentStatus] = None,
    type_id: Optional[str] = None,
    registry: SessionRegistry = Depends(get_registry),
):
    try:
        return await registry.ledger.fetch_all(
            job_id=job_id,
            location_id=location_id,
            status=status.value if status else None,
            type_id=type_id,
        )
    except LedgerError:
        raise HTTPException(status_code=503, detail="Equipment ledger unavailable")


@router.post("", response_model=EquipmentItemRecord)
async def create_equipment(payload: EquipmentItemCreate, registry: SessionRegistry = Depends(get_registry)):
    if payload.status in (EquipmentStatus.deployed, EquipmentStatus.allocated):
        raise HTTPException(status_code=400, detail="New equipment cannot start on a job; allocate it from a diagram")
    try:
        if payload.type_id not in await registry.ledger.fetch_types():
            raise HTTPException(status_code=400, detail="Unknown equipment type")
        if await registry.ledger.get(payload.display_id):
            raise HTTPException(status_code=400, detail="Equipment ID already exists")
        item = await registry.ledger.create(payload)
    except LedgerError:
        raise HTTPException(status_code=503, detail="Equipment ledger unavailable")
    registry.history.append(HistoryEntryCreate(
        equipment_id=item.id,
        action=HistoryAction.created,
        to_status=item.status.value,
        to_location=item.location_id,
        notes=item.notes,
    ))
    return item


@router.get("/{ref}", response_model=EquipmentItemRecord)
async def get_equipment(ref: str, registry: SessionRegistry = Depends(get_registry)):
    return await _get_item(registry, ref)


@router.put("/{ref}", response_model=EquipmentItemRecord)
async def update_equipment(ref: str, payload: EquipmentItemUpdate, registry: SessionRegistry = Depends(get_registry)):
    fields = payload.model_dump(exclude_unset=True)
    if "quantity" in fields and (fields["quantity"] is None or fields["quantity"] < 1):
        raise HTTPException(status_code=400, detail="quantity must be at least 1")
    try:
        if not fields:
            return await _get_item(registry, ref)
        return await registry.ledger.update(ref, fields)
    except EquipmentNotFoundError:
        raise HTTPException(status_code=404, detail="Equipment not found")
    except LedgerError:
        raise HTTPException(status_code=503, detail="Equipment ledger unavailable")


@router.delete("/{ref}")
async def delete_equipment(ref: str, registry: SessionRegistry = Depends(get_registry)):
    item = await _get_item(registry, ref)
    if item.job_id:
        raise HTTPException(status_code=409, detail=f"Equipment is claimed by job {item.job_id}")
    try:
        await registry.ledger.delete(item.id)
    except LedgerError:
        raise HTTPException(status_code=503, detail="Equipment ledger unavailable")
    return {"message": "Equipment deleted successfully"}


@router.get("/{ref}/history", response_model=List[HistoryEntryResponse])
async def equipment_history(ref: str, limit: int = 100, registry: SessionRegistry = Depends(get_registry)):
    item = await _get_item(registry, ref)
    return await registry.history.list_for(item.id, limit=limit)


@router.get("/{ref}/availability", response_model=AvailabilityCheckResponse)
async def equipment_availability(ref: str, registry: SessionRegistry = Depends(get_registry)):
    try:
        item = await registry.ledger.get(ref)
        alternatives = []
        if item is not None:
            alternatives = find_alternatives(await registry.ledger.fetch_all(type_id=item.type_id), item.type_id)
    except LedgerError:
        raise HTTPException(status_code=503, detail="Equipment ledger unavailable")
    return AvailabilityCheckResponse(
        availability=check_equipment_availability(item),
        alternatives=[a for a in alternatives if item is None or a.id != item.id],
    )


@router.post("/{ref}/status", response_model=OperationResult)
async def change_status(ref: str, payload: StatusChangeRequest, registry: SessionRegistry = Depends(get_registry)):
    item = await _get_item(registry, ref)
    return _result(await change_equipment_status(registry.ledger, registry.history, item.id, payload.status, payload.reason))


@router.post("/{ref}/transfer", response_model=OperationResult)
async def transfer(ref: str, payload: TransferRequest, registry: SessionRegistry = Depends(get_registry)):
    item = await _get_item(registry, ref)
    return _result(await transfer_equipment(
        registry.ledger,
        registry.history,
        item.id,
        payload.location_id,
        payload.location_type,
        payload.notes,
    ))
