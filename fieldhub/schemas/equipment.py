from datetime import datetime
from typing import List, Optional, Dict
from enum import Enum

from pydantic import BaseModel, Field, field_validator


# Enums
class EquipmentStatus(str, Enum):
    available = "available"
    deployed = "deployed"
    allocated = "allocated"
    maintenance = "maintenance"
    red_tagged = "red-tagged"
    retired = "retired"


class LocationType(str, Enum):
    storage = "storage"
    job = "job"


class EquipmentCategory(str, Enum):
    cable = "cable"
    gauge = "gauge"
    adapter = "adapter"
    communication = "communication"
    computer = "computer"
    box = "box"
    power = "power"
    other = "other"


class HistoryAction(str, Enum):
    created = "Created"
    deployed = "Deployed"
    returned = "Returned"
    reassigned = "Reassigned"
    maintenance = "Maintenance"
    red_tagged = "Red-Tagged"
    status_change = "Status Change"
    location_change = "Location Change"


class IssueType(str, Enum):
    error = "error"
    warning = "warning"
    info = "info"


class IssueCategory(str, Enum):
    missing = "missing"
    location = "location"
    status = "status"
    quantity = "quantity"


class ConflictResolution(str, Enum):
    keep_current = "keep-current"
    move_to_requested = "move-to-requested"


class TargetKind(str, Enum):
    node = "node"
    edge = "edge"


# Statuses an allocation may claim from
ALLOCATABLE_STATUSES = {EquipmentStatus.available, EquipmentStatus.allocated}
# Statuses that can never be put on a job
BLOCKING_STATUSES = {EquipmentStatus.red_tagged, EquipmentStatus.retired}


# Equipment Type Schemas
class EquipmentTypeBase(BaseModel):
    id: str
    name: str
    category: EquipmentCategory
    description: Optional[str] = None
    requires_individual_tracking: bool = True
    default_id_prefix: Optional[str] = None


class EquipmentTypeCreate(EquipmentTypeBase):
    pass


class EquipmentTypeResponse(EquipmentTypeBase):
    class Config:
        from_attributes = True


# Storage Location Schemas
class StorageLocationCreate(BaseModel):
    name: str
    address: Optional[str] = None
    is_default: bool = False


class StorageLocationResponse(StorageLocationCreate):
    id: str

    class Config:
        from_attributes = True


# Equipment Item Schemas
class EquipmentItemBase(BaseModel):
    display_id: str
    type_id: str
    name: Optional[str] = None
    location_id: Optional[str] = None
    location_type: LocationType = LocationType.storage
    quantity: int = 1
    serial_number: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("quantity")
    @classmethod
    def positive_quantity(cls, v):
        if v < 1:
            raise ValueError("quantity must be at least 1")
        return v


class EquipmentItemCreate(EquipmentItemBase):
    status: EquipmentStatus = EquipmentStatus.available


class EquipmentItemUpdate(BaseModel):
    """Editable ledger fields. Status and job claims only change through the allocator."""
    name: Optional[str] = None
    serial_number: Optional[str] = None
    quantity: Optional[int] = None
    notes: Optional[str] = None


class EquipmentItemRecord(EquipmentItemBase):
    """A validated snapshot of one ledger row."""
    id: str
    status: EquipmentStatus
    job_id: Optional[str] = None
    red_tag_reason: Optional[str] = None
    last_updated: Optional[datetime] = None

    class Config:
        from_attributes = True

    def invariant_violation(self) -> Optional[str]:
        """Describe a broken status/job invariant, or None when the row is consistent."""
        if self.status == EquipmentStatus.deployed and not self.job_id:
            return "deployed without a job"
        if self.status == EquipmentStatus.available and self.job_id:
            return f"available but claimed by job {self.job_id}"
        return None


class StatusChangeRequest(BaseModel):
    status: EquipmentStatus
    reason: Optional[str] = None


class TransferRequest(BaseModel):
    location_id: str
    location_type: LocationType = LocationType.storage
    notes: Optional[str] = None


# History Schemas
class HistoryEntryCreate(BaseModel):
    equipment_id: str
    action: HistoryAction
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    from_location: Optional[str] = None
    to_location: Optional[str] = None
    from_job_id: Optional[str] = None
    to_job_id: Optional[str] = None
    job_name: Optional[str] = None
    user_id: Optional[str] = None
    notes: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class HistoryEntryResponse(HistoryEntryCreate):
    id: str
    integrity_hash: Optional[str] = None

    class Config:
        from_attributes = True


# Conflict Schemas
class ConflictTarget(BaseModel):
    kind: TargetKind
    id: str


class EquipmentConflict(BaseModel):
    equipment_id: str
    equipment_name: Optional[str] = None
    current_job_id: str
    current_job_name: str
    requested_job_id: str
    requested_job_name: str
    requested_target: Optional[ConflictTarget] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class ConflictResolveRequest(BaseModel):
    resolution: ConflictResolution


# Validation Schemas
class ValidationIssue(BaseModel):
    type: IssueType
    category: IssueCategory
    message: str
    equipment_id: Optional[str] = None
    suggestion: Optional[str] = None


class ValidationSummary(BaseModel):
    total: int = 0
    errors: int = 0
    warnings: int = 0
    by_category: Dict[str, int] = Field(default_factory=dict)


class AvailabilityReport(BaseModel):
    is_valid: bool
    can_proceed: bool
    issues: List[ValidationIssue] = Field(default_factory=list)
    summary: ValidationSummary = Field(default_factory=ValidationSummary)


class ValidateRequest(BaseModel):
    target_location_id: Optional[str] = None  # defaults to the job's staging location


class SingleAvailability(BaseModel):
    available: bool
    reason: str
    severity: str  # success|info|warning|error


class AvailabilityCheckResponse(BaseModel):
    availability: SingleAvailability
    alternatives: List[EquipmentItemRecord] = Field(default_factory=list)


class OperationResult(BaseModel):
    success: bool
    message: str
    equipment_id: Optional[str] = None
    conflict: Optional[EquipmentConflict] = None
