"""
Seed the local database with equipment types, storage locations, sample equipment and a job.

Usage:
  python scripts/seed_equipment.py

This script is idempotent: running it multiple times will upsert the same
records based on unique fields (type id, location name, display id, job name).
"""

from datetime import datetime, timezone

from fieldhub.db import SessionLocal, Base, engine
from fieldhub.models.models import (
    EquipmentType,
    StorageLocation,
    EquipmentItem,
    Job,
)


EQUIPMENT_TYPES = [
    # id, name, category, prefix, individually tracked
    ("100ft-cable", "100ft Cable", "cable", "CT1", True),
    ("200ft-cable", "200ft Cable", "cable", "CT2", True),
    ("300ft-cable-new", "300ft Cable V2", "cable", "CT3", True),
    ("pressure-gauge-1502", "Pressure Gauge 1502", "gauge", "PG", True),
    ("y-adapter", "Y Adapter", "adapter", "YA", True),
    ("shearstream-box", "ShearStream Box", "box", "SS", True),
    ("starlink", "Starlink", "communication", "SL", True),
    ("customer-computer", "Customer Computer", "computer", "CC", True),
    ("power-strip", "Power Strip", "power", None, False),
]


def ensure_type(session, type_id: str, name: str, category: str, prefix, individual: bool) -> EquipmentType:
    row = session.query(EquipmentType).filter(EquipmentType.id == type_id).first()
    if row:
        row.name = name
        row.category = category
        row.default_id_prefix = prefix
        row.requires_individual_tracking = individual
        session.add(row)
        session.flush()
        return row
    row = EquipmentType(
        id=type_id,
        name=name,
        category=category,
        default_id_prefix=prefix,
        requires_individual_tracking=individual,
    )
    session.add(row)
    session.flush()
    return row


def ensure_location(session, name: str, **kwargs) -> StorageLocation:
    row = session.query(StorageLocation).filter(StorageLocation.name == name).first()
    if row:
        for k, v in kwargs.items():
            if hasattr(row, k):
                setattr(row, k, v)
        session.add(row)
        session.flush()
        return row
    row = StorageLocation(name=name, **{k: v for k, v in kwargs.items() if hasattr(StorageLocation, k)})
    session.add(row)
    session.flush()
    return row


def ensure_item(session, display_id: str, type_id: str, location_id: str, **kwargs) -> EquipmentItem:
    row = session.query(EquipmentItem).filter(EquipmentItem.display_id == display_id).first()
    now = datetime.now(timezone.utc)
    if row:
        # Never touch status/job on re-seed; those belong to allocations
        row.type_id = type_id
        for k, v in kwargs.items():
            if k not in ("status", "job_id") and hasattr(row, k):
                setattr(row, k, v)
        session.add(row)
        session.flush()
        return row
    row = EquipmentItem(
        display_id=display_id,
        type_id=type_id,
        location_id=location_id,
        location_type="storage",
        status="available",
        last_updated=now,
        **{k: v for k, v in kwargs.items() if hasattr(EquipmentItem, k)}
    )
    session.add(row)
    session.flush()
    return row


def ensure_job(session, name: str, **kwargs) -> Job:
    row = session.query(Job).filter(Job.name == name).first()
    now = datetime.now(timezone.utc)
    if row:
        for k, v in kwargs.items():
            if hasattr(row, k):
                setattr(row, k, v)
        row.updated_at = now
        session.add(row)
        session.flush()
        return row
    row = Job(name=name, updated_at=now, **{k: v for k, v in kwargs.items() if hasattr(Job, k)})
    session.add(row)
    session.flush()
    return row


def main() -> None:
    # Ensure tables exist (safe for SQLite dev)
    Base.metadata.create_all(bind=engine)

    session = SessionLocal()
    try:
        for type_id, name, category, prefix, individual in EQUIPMENT_TYPES:
            ensure_type(session, type_id, name, category, prefix, individual)

        yard = ensure_location(session, "Main Yard", address="1200 Industrial Rd", is_default=True)
        shop = ensure_location(session, "North Shop", address="45 Service Ln", is_default=False)

        for n in range(1, 4):
            ensure_item(session, f"SS-{n:04d}", "shearstream-box", yard.id, name=f"ShearStream Box {n}")
            ensure_item(session, f"CC-{n:02d}", "customer-computer", yard.id, name=f"Customer Computer {n}")
            ensure_item(session, f"PG-{n:04d}", "pressure-gauge-1502", yard.id, name=f"Pressure Gauge {n}")
        for n in range(1, 3):
            ensure_item(session, f"SL-{n:02d}", "starlink", yard.id, name=f"Starlink {n}")
            ensure_item(session, f"YA-{n:02d}", "y-adapter", shop.id, name=f"Y Adapter {n}")
        for n in range(1, 6):
            ensure_item(session, f"CT2-{n:02d}", "200ft-cable", yard.id if n <= 3 else shop.id, name=f"200ft Cable {n}")
            ensure_item(session, f"CT1-{n:02d}", "100ft-cable", yard.id, name=f"100ft Cable {n}")
        # bulk stock lot
        ensure_item(session, "PWR-LOT-1", "power-strip", yard.id, name="Power strips", quantity=12)

        ensure_job(session, "Pad 14 Frac Monitoring", client="Northwind Energy", location_id=yard.id)
        ensure_job(session, "Ridge 3 Pressure Test", client="Contoso Oil", location_id=shop.id)

        session.commit()
        print("Seed completed: equipment types, locations, equipment and jobs are ready.")
    finally:
        session.close()


if __name__ == "__main__":
    main()
