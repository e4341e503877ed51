"""
Equipment usage analysis.
Derives the equipment demand implied by a job diagram. Pure: no I/O, no caching.
"""
import re
from typing import Dict, Mapping, Optional, Sequence, Tuple

from ..config import settings
from ..schemas.diagram import (
    BulkUsage,
    CableUsage,
    ConnectionType,
    DiagramEdge,
    DiagramNode,
    EquipmentUsage,
    IndividualUsage,
    NodeKind,
)
from ..schemas.equipment import EquipmentCategory, EquipmentTypeResponse, TargetKind


LEGACY_CABLE_TYPES = {
    "100ft": "100ft-cable",
    "200ft": "200ft-cable",
    "300ft": "300ft-cable-new",
}

# node kind -> (category, default equipment type)
NODE_EQUIPMENT: Dict[NodeKind, Tuple[EquipmentCategory, Optional[str]]] = {
    NodeKind.well: (EquipmentCategory.gauge, None),  # gauge type comes from node data
    NodeKind.wellside_gauge: (EquipmentCategory.gauge, "pressure-gauge-1502"),
    NodeKind.y_adapter: (EquipmentCategory.adapter, "y-adapter"),
    NodeKind.main_box: (EquipmentCategory.box, "shearstream-box"),
    NodeKind.satellite: (EquipmentCategory.communication, "starlink"),
    NodeKind.company_computer: (EquipmentCategory.computer, "customer-computer"),
    NodeKind.customer_computer: (EquipmentCategory.computer, "customer-computer"),
}


def extract_length(name: str) -> str:
    match = re.search(r"(\d+)\s*ft", name, re.IGNORECASE)
    return f"{match.group(1)}ft" if match else ""


def extract_version(name: str) -> Optional[str]:
    lowered = name.lower()
    if "v2" in lowered or "version 2" in lowered:
        return "V2"
    return None


def resolve_cable_type(edge: DiagramEdge, default_cable_type_id: Optional[str] = None) -> str:
    if edge.data.cable_type_id:
        return edge.data.cable_type_id
    if edge.data.cable_type and edge.data.cable_type in LEGACY_CABLE_TYPES:
        return LEGACY_CABLE_TYPES[edge.data.cable_type]
    return default_cable_type_id or settings.default_cable_type_id


def resolve_node_type(node: DiagramNode, default_gauge_type_id: Optional[str] = None) -> Tuple[EquipmentCategory, str]:
    category, type_id = NODE_EQUIPMENT[node.type]
    if node.type == NodeKind.well:
        type_id = node.data.gauge_type or default_gauge_type_id or settings.default_gauge_type_id
    return category, type_id


def _add_bulk(usage: EquipmentUsage, type_id: str, category: str) -> None:
    bulk = usage.bulk_equipment_usage.get(type_id)
    if bulk is None:
        bulk = usage.bulk_equipment_usage[type_id] = BulkUsage(type_id=type_id, category=category)
    bulk.required_quantity += 1


def _count(usage: EquipmentUsage, category: str) -> None:
    usage.category_counts[category] = usage.category_counts.get(category, 0) + 1


def analyze_usage(
    nodes: Sequence[DiagramNode],
    edges: Sequence[DiagramEdge],
    equipment_types: Optional[Mapping[str, EquipmentTypeResponse]] = None,
    default_cable_type_id: Optional[str] = None,
    default_gauge_type_id: Optional[str] = None,
) -> EquipmentUsage:
    """
    Compute the equipment demand of a diagram.

    Edges: direct connections need nothing; cable connections count one cable of their
    resolved type. Nodes: each node kind demands one item of its category. Targets that
    already carry a bound serial are recorded in individual_equipment_usage; unbound
    targets become quantity demand in bulk_equipment_usage.
    """
    equipment_types = equipment_types or {}
    usage = EquipmentUsage()

    for edge in edges:
        if edge.connection_type == ConnectionType.direct:
            usage.direct_connections += 1
            continue

        cable_type_id = resolve_cable_type(edge, default_cable_type_id)
        equipment_type = equipment_types.get(cable_type_id)
        type_name = equipment_type.name if equipment_type else cable_type_id
        cable = usage.cables.get(cable_type_id)
        if cable is None:
            cable = usage.cables[cable_type_id] = CableUsage(
                type_id=cable_type_id,
                type_name=type_name,
                category=equipment_type.category.value if equipment_type else EquipmentCategory.cable.value,
                length=extract_length(type_name),
                version=extract_version(type_name),
            )
        cable.quantity += 1
        usage.total_connections += 1
        _count(usage, EquipmentCategory.cable.value)

        if edge.data.equipment_id:
            usage.individual_equipment_usage[edge.data.equipment_id] = IndividualUsage(
                equipment_id=edge.data.equipment_id,
                target_kind=TargetKind.edge,
                target_id=edge.id,
                type_id=cable_type_id,
                category=EquipmentCategory.cable.value,
            )
        else:
            _add_bulk(usage, cable_type_id, EquipmentCategory.cable.value)

    for node in nodes:
        category, type_id = resolve_node_type(node, default_gauge_type_id)
        _count(usage, category.value)
        if node.data.equipment_id:
            usage.individual_equipment_usage[node.data.equipment_id] = IndividualUsage(
                equipment_id=node.data.equipment_id,
                target_kind=TargetKind.node,
                target_id=node.id,
                type_id=type_id,
                category=category.value,
            )
        else:
            _add_bulk(usage, type_id, category.value)

    return usage
