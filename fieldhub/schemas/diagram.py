from datetime import datetime
from typing import List, Optional, Dict, Iterator, Tuple
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from .equipment import TargetKind


class NodeKind(str, Enum):
    well = "well"
    wellside_gauge = "wellsideGauge"
    y_adapter = "yAdapter"
    main_box = "mainBox"
    satellite = "satellite"
    company_computer = "companyComputer"
    customer_computer = "customerComputer"


class ConnectionType(str, Enum):
    direct = "direct"
    cable = "cable"


class SavePriority(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"


class NodeData(BaseModel):
    # UI-owned keys (colors, handles, ...) ride along untouched
    model_config = ConfigDict(extra="allow")

    label: Optional[str] = None
    equipment_id: Optional[str] = None
    assigned: bool = False
    gauge_type: Optional[str] = None


class EdgeData(BaseModel):
    model_config = ConfigDict(extra="allow")

    connection_type: Optional[ConnectionType] = None
    cable_type_id: Optional[str] = None
    cable_type: Optional[str] = None  # legacy label: 100ft|200ft|300ft
    equipment_id: Optional[str] = None
    assigned: bool = False
    label: Optional[str] = None


class DiagramNode(BaseModel):
    id: str
    type: NodeKind
    position: Optional[Dict[str, float]] = None
    data: NodeData = Field(default_factory=NodeData)


class DiagramEdge(BaseModel):
    id: str
    source: str
    target: str
    type: Optional[str] = None
    data: EdgeData = Field(default_factory=EdgeData)

    @property
    def connection_type(self) -> ConnectionType:
        if self.data.connection_type is not None:
            return self.data.connection_type
        if self.type == ConnectionType.direct.value:
            return ConnectionType.direct
        return ConnectionType.cable


class Binding(BaseModel):
    kind: TargetKind
    target_id: str
    equipment_id: str


class DiagramGraph(BaseModel):
    nodes: List[DiagramNode] = Field(default_factory=list)
    edges: List[DiagramEdge] = Field(default_factory=list)

    def snapshot(self) -> "DiagramGraph":
        return self.model_copy(deep=True)

    def _targets(self) -> Iterator[Tuple[TargetKind, str, BaseModel]]:
        for node in self.nodes:
            yield TargetKind.node, node.id, node.data
        for edge in self.edges:
            yield TargetKind.edge, edge.id, edge.data

    def find(self, kind: TargetKind, target_id: str):
        items = self.nodes if kind == TargetKind.node else self.edges
        for item in items:
            if item.id == target_id:
                return item
        return None

    def binding(self, kind: TargetKind, target_id: str) -> Optional[str]:
        item = self.find(kind, target_id)
        if item is None:
            return None
        return item.data.equipment_id

    def bindings(self) -> List[Binding]:
        return [
            Binding(kind=kind, target_id=target_id, equipment_id=data.equipment_id)
            for kind, target_id, data in self._targets()
            if data.equipment_id
        ]

    def targets_for(self, equipment_id: str) -> List[Tuple[TargetKind, str]]:
        return [
            (kind, target_id)
            for kind, target_id, data in self._targets()
            if data.equipment_id == equipment_id
        ]

    def bind(self, kind: TargetKind, target_id: str, equipment_id: str) -> bool:
        item = self.find(kind, target_id)
        if item is None:
            return False
        item.data.equipment_id = equipment_id
        item.data.assigned = True
        return True

    def unbind(self, kind: TargetKind, target_id: str) -> Optional[str]:
        item = self.find(kind, target_id)
        if item is None:
            return None
        previous = item.data.equipment_id
        item.data.equipment_id = None
        item.data.assigned = False
        return previous

    def unbind_equipment(self, equipment_id: str) -> List[Tuple[TargetKind, str]]:
        cleared = self.targets_for(equipment_id)
        for kind, target_id in cleared:
            self.unbind(kind, target_id)
        return cleared


class SaveRequest(BaseModel):
    job_id: str
    graph: DiagramGraph
    priority: SavePriority = SavePriority.medium
    reason: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)


# Usage Schemas
class CableUsage(BaseModel):
    type_id: str
    type_name: str
    category: str = "cable"
    quantity: int = 0
    length: str = ""
    version: Optional[str] = None


class IndividualUsage(BaseModel):
    equipment_id: str
    target_kind: TargetKind
    target_id: str
    type_id: Optional[str] = None
    category: Optional[str] = None


class BulkUsage(BaseModel):
    type_id: str
    category: str
    required_quantity: int = 0


class EquipmentUsage(BaseModel):
    cables: Dict[str, CableUsage] = Field(default_factory=dict)
    category_counts: Dict[str, int] = Field(default_factory=dict)
    individual_equipment_usage: Dict[str, IndividualUsage] = Field(default_factory=dict)
    bulk_equipment_usage: Dict[str, BulkUsage] = Field(default_factory=dict)
    direct_connections: int = 0
    total_connections: int = 0


class DiagramState(BaseModel):
    job_id: str
    job_name: str
    graph: DiagramGraph
    usage: EquipmentUsage
    sync_status: str
    last_sync_time: Optional[datetime] = None
    pending_deletions: List[str] = Field(default_factory=list)


class GraphUpdate(BaseModel):
    graph: DiagramGraph
    reason: str = "diagram edit"
    priority: SavePriority = SavePriority.medium


class AllocateRequest(BaseModel):
    equipment_id: str
