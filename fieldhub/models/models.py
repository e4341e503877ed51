import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Boolean,
    ForeignKey,
    Integer,
    JSON,
    Text,
    Index,
)
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base


def uuid_pk() -> Mapped[str]:
    return mapped_column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))


class EquipmentType(Base):
    """Equipment types: cables, gauges, adapters, boxes, computers, communication gear"""
    __tablename__ = "equipment_types"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)  # e.g. 200ft-cable, shearstream-box
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # cable|gauge|adapter|communication|computer|box|power|other
    description: Mapped[Optional[str]] = mapped_column(Text)
    requires_individual_tracking: Mapped[bool] = mapped_column(Boolean, default=True)
    default_id_prefix: Mapped[Optional[str]] = mapped_column(String(20))  # e.g. SS, CT, CC
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


class StorageLocation(Base):
    """Physical storage yards and shops"""
    __tablename__ = "storage_locations"

    id: Mapped[str] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    address: Mapped[Optional[str]] = mapped_column(Text)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


class Job(Base):
    """Field jobs; each job owns at most one diagram"""
    __tablename__ = "jobs"

    id: Mapped[str] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    client: Mapped[Optional[str]] = mapped_column(String(255))
    location_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("storage_locations.id", ondelete="SET NULL"), index=True)  # staging location for equipment
    status: Mapped[str] = mapped_column(String(50), default="active", index=True)  # active|completed|archived
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    diagram = relationship("JobDiagram", back_populates="job", uselist=False, cascade="all, delete-orphan")


class EquipmentItem(Base):
    """The equipment ledger: one row per serialized item, or one row per bulk stock lot"""
    __tablename__ = "equipment_items"

    id: Mapped[str] = uuid_pk()
    display_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)  # human-facing serial, e.g. SS-0007
    type_id: Mapped[str] = mapped_column(String(64), ForeignKey("equipment_types.id", ondelete="RESTRICT"), nullable=False, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(50), default="available", index=True)  # available|deployed|allocated|maintenance|red-tagged|retired
    location_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)  # storage location or job id, depending on location_type
    location_type: Mapped[str] = mapped_column(String(20), default="storage")  # storage|job
    job_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)  # current job claim
    quantity: Mapped[int] = mapped_column(Integer, default=1)  # >1 only for bulk stock lots
    serial_number: Mapped[Optional[str]] = mapped_column(String(255))
    red_tag_reason: Mapped[Optional[str]] = mapped_column(Text)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    history = relationship("EquipmentHistory", back_populates="equipment", cascade="all, delete-orphan", order_by="EquipmentHistory.timestamp.desc()")

    __table_args__ = (
        Index('idx_equipment_item_type_location_status', 'type_id', 'location_id', 'status'),
        Index('idx_equipment_item_job', 'job_id', 'status'),
    )


class EquipmentHistory(Base):
    """Append-only history of equipment status, location and job transitions"""
    __tablename__ = "equipment_history"

    id: Mapped[str] = uuid_pk()
    equipment_id: Mapped[str] = mapped_column(String(64), ForeignKey("equipment_items.id", ondelete="CASCADE"), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # Created|Deployed|Returned|Reassigned|Maintenance|Red-Tagged|Status Change|Location Change
    from_status: Mapped[Optional[str]] = mapped_column(String(50))
    to_status: Mapped[Optional[str]] = mapped_column(String(50))
    from_location: Mapped[Optional[str]] = mapped_column(String(64))
    to_location: Mapped[Optional[str]] = mapped_column(String(64))
    from_job_id: Mapped[Optional[str]] = mapped_column(String(64))
    to_job_id: Mapped[Optional[str]] = mapped_column(String(64))
    job_name: Mapped[Optional[str]] = mapped_column(String(255))
    user_id: Mapped[Optional[str]] = mapped_column(String(64))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False, index=True)
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))  # SHA256 over the canonical entry

    equipment = relationship("EquipmentItem", back_populates="history")

    __table_args__ = (
        Index('idx_equipment_history_equipment_time', 'equipment_id', 'timestamp'),
    )


class JobDiagram(Base):
    """Persisted diagram graph for a job (nodes + edges as JSON)"""
    __tablename__ = "job_diagrams"

    job_id: Mapped[str] = mapped_column(String(64), ForeignKey("jobs.id", ondelete="CASCADE"), primary_key=True)
    graph: Mapped[dict] = mapped_column(JSON, nullable=False)  # {nodes: [...], edges: [...]}
    version: Mapped[int] = mapped_column(Integer, default=0)  # bumped on every write
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    job = relationship("Job", back_populates="diagram")
