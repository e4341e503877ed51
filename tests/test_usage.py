"""Tests for deriving equipment demand from a job diagram."""

from fieldhub.schemas.diagram import DiagramEdge, DiagramNode, EdgeData, NodeData
from fieldhub.schemas.equipment import EquipmentTypeResponse, TargetKind
from fieldhub.services.usage import (
    analyze_usage,
    extract_length,
    extract_version,
    resolve_cable_type,
)


TYPES = {
    "300ft-cable-new": EquipmentTypeResponse(id="300ft-cable-new", name="300ft Cable V2", category="cable"),
    "200ft-cable": EquipmentTypeResponse(id="200ft-cable", name="200ft Cable", category="cable"),
}


def analyze(graph, **kwargs):
    kwargs.setdefault("default_cable_type_id", "200ft-cable")
    kwargs.setdefault("default_gauge_type_id", "pressure-gauge-1502")
    return analyze_usage(graph.nodes, graph.edges, **kwargs)


class TestCableResolution:
    def test_explicit_type_wins(self):
        edge = DiagramEdge(id="e", source="a", target="b", data=EdgeData(cable_type_id="100ft-cable", cable_type="300ft"))
        assert resolve_cable_type(edge, "200ft-cable") == "100ft-cable"

    def test_legacy_labels(self):
        for label, expected in (("100ft", "100ft-cable"), ("200ft", "200ft-cable"), ("300ft", "300ft-cable-new")):
            edge = DiagramEdge(id="e", source="a", target="b", data=EdgeData(cable_type=label))
            assert resolve_cable_type(edge, "default-cable") == expected

    def test_unknown_falls_back_to_default(self):
        edge = DiagramEdge(id="e", source="a", target="b", data=EdgeData(cable_type="50ft"))
        assert resolve_cable_type(edge, "default-cable") == "default-cable"

    def test_length_and_version_parsing(self):
        assert extract_length("300ft Cable V2") == "300ft"
        assert extract_length("Starlink") == ""
        assert extract_version("300ft Cable V2") == "V2"
        assert extract_version("Cable version 2") == "V2"
        assert extract_version("200ft Cable") is None


class TestAnalyzeUsage:
    def test_direct_connections_need_no_equipment(self, diagram):
        usage = analyze(diagram)
        assert usage.direct_connections == 1
        assert usage.total_connections == 1
        assert list(usage.cables) == ["200ft-cable"]
        assert usage.cables["200ft-cable"].quantity == 1

    def test_connection_type_in_data_overrides_edge_type(self, diagram):
        diagram.edges.append(
            DiagramEdge(id="e-3", source="sat", target="cc-1", type="cable", data=EdgeData(connection_type="direct"))
        )
        usage = analyze(diagram)
        assert usage.direct_connections == 2

    def test_node_categories(self, diagram):
        usage = analyze(diagram)
        assert usage.category_counts == {"cable": 1, "box": 1, "communication": 1, "gauge": 1, "computer": 1}
        assert usage.bulk_equipment_usage["shearstream-box"].required_quantity == 1
        assert usage.bulk_equipment_usage["pressure-gauge-1502"].required_quantity == 1
        assert usage.bulk_equipment_usage["200ft-cable"].required_quantity == 1

    def test_well_uses_its_gauge_type(self):
        nodes = [
            DiagramNode(id="w1", type="well", data=NodeData(gauge_type="pressure-gauge-5k")),
            DiagramNode(id="w2", type="well"),
        ]
        usage = analyze_usage(nodes, [], default_gauge_type_id="pressure-gauge-1502")
        assert set(usage.bulk_equipment_usage) == {"pressure-gauge-5k", "pressure-gauge-1502"}

    def test_bound_targets_are_individual_usage(self, diagram):
        diagram.bind(TargetKind.node, "main-box", "SS-0007")
        diagram.bind(TargetKind.edge, "e-cable", "CT2-01")
        usage = analyze(diagram)

        assert set(usage.individual_equipment_usage) == {"SS-0007", "CT2-01"}
        box = usage.individual_equipment_usage["SS-0007"]
        assert box.target_kind == TargetKind.node
        assert box.target_id == "main-box"
        assert box.type_id == "shearstream-box"
        assert usage.individual_equipment_usage["CT2-01"].target_kind == TargetKind.edge
        assert "shearstream-box" not in usage.bulk_equipment_usage
        assert "200ft-cable" not in usage.bulk_equipment_usage

    def test_type_names_carry_cable_attributes(self):
        edges = [
            DiagramEdge(id="e1", source="a", target="b", data=EdgeData(cable_type="300ft")),
            DiagramEdge(id="e2", source="b", target="c", data=EdgeData(cable_type="300ft")),
        ]
        usage = analyze_usage([], edges, TYPES)
        cable = usage.cables["300ft-cable-new"]
        assert cable.type_name == "300ft Cable V2"
        assert cable.quantity == 2
        assert cable.length == "300ft"
        assert cable.version == "V2"

    def test_unknown_type_named_by_id(self):
        edges = [DiagramEdge(id="e1", source="a", target="b", data=EdgeData(cable_type_id="150ft-cable"))]
        usage = analyze_usage([], edges, TYPES)
        assert usage.cables["150ft-cable"].type_name == "150ft-cable"
        assert usage.cables["150ft-cable"].length == "150ft"

    def test_deterministic(self, diagram):
        diagram.bind(TargetKind.node, "sat", "SL-01")
        assert analyze(diagram) == analyze(diagram)

    def test_empty_graph(self):
        usage = analyze_usage([], [])
        assert usage.total_connections == 0
        assert usage.individual_equipment_usage == {}
        assert usage.bulk_equipment_usage == {}
