"""Shared fixtures: a temporary SQLite ledger seeded with a small yard of equipment."""

from datetime import datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy.orm import sessionmaker

from fieldhub.db import Base, make_engine
from fieldhub.models.models import EquipmentItem, EquipmentType, Job, StorageLocation
from fieldhub.schemas.diagram import DiagramEdge, DiagramGraph, DiagramNode, EdgeData, NodeData
from fieldhub.services.sessions import SessionRegistry


EQUIPMENT_TYPES = [
    ("100ft-cable", "100ft Cable", "cable"),
    ("200ft-cable", "200ft Cable", "cable"),
    ("300ft-cable-new", "300ft Cable V2", "cable"),
    ("pressure-gauge-1502", "Pressure Gauge 1502", "gauge"),
    ("shearstream-box", "ShearStream Box", "box"),
    ("starlink", "Starlink", "communication"),
    ("customer-computer", "Customer Computer", "computer"),
]


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'fieldhub-test.db'}")
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    yield factory
    engine.dispose()


@pytest.fixture
def add_item(session_factory):
    """Insert a ledger row directly, bypassing the allocator."""

    def _add(display_id, type_id="shearstream-box", location_id="L1", status="available", job_id=None, quantity=1, name=None):
        with session_factory() as db:
            row = EquipmentItem(
                display_id=display_id,
                type_id=type_id,
                name=name or display_id,
                status=status,
                location_id=location_id,
                location_type="storage",
                job_id=job_id,
                quantity=quantity,
                last_updated=datetime.now(timezone.utc),
            )
            db.add(row)
            db.commit()
            return row.id

    return _add


@pytest.fixture
def seeded(session_factory, add_item):
    with session_factory() as db:
        for type_id, name, category in EQUIPMENT_TYPES:
            db.add(EquipmentType(id=type_id, name=name, category=category))
        db.add(StorageLocation(id="L1", name="Main Yard", is_default=True))
        db.add(StorageLocation(id="L2", name="North Shop"))
        db.flush()
        db.add(Job(id="J1", name="Pad 14", client="Northwind", location_id="L1"))
        db.add(Job(id="J2", name="Ridge 3", client="Contoso", location_id="L1"))
        db.commit()

    add_item("SS-0007", name="ShearStream Box 7")
    add_item("SS-0008", name="ShearStream Box 8")
    add_item("SL-01", type_id="starlink")
    add_item("CT2-01", type_id="200ft-cable")
    add_item("CT2-02", type_id="200ft-cable")
    add_item("CT-03", type_id="200ft-cable", status="red-tagged")
    return session_factory


@pytest_asyncio.fixture
async def registry(seeded):
    reg = SessionRegistry(
        seeded,
        sync_interval=0,
        sync_after_mutation=False,
        save_batch_delay=0.05,
        save_min_interval=0.1,
        history_secret="test-secret",
    )
    yield reg
    await reg.close_all()


@pytest.fixture
def diagram():
    """A small job diagram: box, satellite, well and customer computer, one cable and one direct link."""
    return DiagramGraph(
        nodes=[
            DiagramNode(id="main-box", type="mainBox", data=NodeData(label="Main Box")),
            DiagramNode(id="sat", type="satellite"),
            DiagramNode(id="well-1", type="well", data=NodeData(label="Well 1", gauge_type="pressure-gauge-1502")),
            DiagramNode(id="cc-1", type="customerComputer"),
        ],
        edges=[
            DiagramEdge(id="e-cable", source="main-box", target="well-1", data=EdgeData(cable_type_id="200ft-cable")),
            DiagramEdge(id="e-direct", source="main-box", target="sat", type="direct"),
        ],
    )
