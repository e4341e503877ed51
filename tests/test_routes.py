"""End-to-end tests of the HTTP surface."""

import pytest
from fastapi.testclient import TestClient

from fieldhub.main import create_app


@pytest.fixture
def client(seeded):
    app = create_app(
        session_factory=seeded,
        sync_interval=0,
        sync_after_mutation=False,
        save_batch_delay=0.01,
        save_min_interval=0.01,
    )
    with TestClient(app) as c:
        yield c


DIAGRAM = {
    "graph": {
        "nodes": [
            {"id": "main-box", "type": "mainBox", "data": {"label": "Main Box", "color": "blue"}},
            {"id": "well-1", "type": "well"},
        ],
        "edges": [
            {"id": "e-cable", "source": "main-box", "target": "well-1", "data": {"cable_type": "200ft"}},
        ],
    },
    "reason": "initial layout",
}


class TestLedgerRoutes:
    def test_list_and_get(self, client):
        r = client.get("/equipment", params={"location_id": "L1", "type_id": "shearstream-box"})
        assert r.status_code == 200
        assert [i["display_id"] for i in r.json()] == ["SS-0007", "SS-0008"]

        r = client.get("/equipment/SS-0007")
        assert r.status_code == 200
        assert r.json()["status"] == "available"
        assert client.get("/equipment/SS-9999").status_code == 404

    def test_create(self, client):
        r = client.post("/equipment", json={"display_id": "SS-0042", "type_id": "shearstream-box", "location_id": "L2"})
        assert r.status_code == 200
        assert r.json()["status"] == "available"
        assert client.get("/equipment/SS-0042").json()["location_id"] == "L2"

    def test_create_rejects_duplicates_and_claims(self, client):
        assert client.post("/equipment", json={"display_id": "SS-0007", "type_id": "shearstream-box"}).status_code == 400
        assert client.post("/equipment", json={"display_id": "SS-0050", "type_id": "warp-core"}).status_code == 400
        r = client.post("/equipment", json={"display_id": "SS-0051", "type_id": "shearstream-box", "status": "deployed"})
        assert r.status_code == 400

    def test_update_cannot_touch_status_or_job(self, client):
        r = client.put("/equipment/SS-0007", json={"notes": "new fan", "status": "deployed", "job_id": "J1"})
        assert r.status_code == 200
        body = r.json()
        assert body["notes"] == "new fan"
        assert body["status"] == "available"
        assert body["job_id"] is None

    def test_status_and_transfer(self, client):
        r = client.post("/equipment/SS-0008/status", json={"status": "maintenance", "reason": "service"})
        assert r.status_code == 200
        assert client.get("/equipment/SS-0008").json()["status"] == "maintenance"

        r = client.post("/equipment/SS-0008/transfer", json={"location_id": "L2"})
        assert r.status_code == 200
        assert client.get("/equipment/SS-0008").json()["location_id"] == "L2"

    def test_availability_with_alternatives(self, client):
        r = client.get("/equipment/CT-03/availability")
        body = r.json()
        assert body["availability"]["available"] is False
        assert sorted(a["display_id"] for a in body["alternatives"]) == ["CT2-01", "CT2-02"]

    def test_types_and_locations(self, client):
        r = client.post("/equipment/types", json={"id": "y-adapter", "name": "Y Adapter", "category": "adapter"})
        assert r.status_code == 200
        assert "y-adapter" in [t["id"] for t in client.get("/equipment/types").json()]

        r = client.post("/equipment/locations", json={"name": "South Yard", "is_default": True})
        assert r.status_code == 200
        locations = client.get("/equipment/locations").json()
        assert [l["name"] for l in locations if l["is_default"]] == ["South Yard"]


class TestDiagramRoutes:
    def test_allocation_flow(self, client):
        r = client.put("/jobs/J1/diagram", json=DIAGRAM)
        assert r.status_code == 200
        state = r.json()
        assert state["usage"]["cables"]["200ft-cable"]["quantity"] == 1
        assert state["graph"]["nodes"][0]["data"]["color"] == "blue"

        r = client.post("/jobs/J1/diagram/nodes/main-box/equipment", json={"equipment_id": "SS-0007"})
        assert r.status_code == 200
        assert r.json()["equipment_id"] == "SS-0007"
        assert client.get("/equipment/SS-0007").json()["job_id"] == "J1"

        r = client.post("/jobs/J1/diagram/edges/e-cable/equipment", json={"equipment_id": "CT2-01"})
        assert r.status_code == 200

        usage = client.get("/jobs/J1/diagram/usage").json()
        assert set(usage["individual_equipment_usage"]) == {"SS-0007", "CT2-01"}

        # no gauges in stock; the bound serials raise no issues
        report = client.post("/jobs/J1/diagram/validate", json={}).json()
        assert report["summary"]["errors"] >= 1
        assert all(i["equipment_id"] not in ("SS-0007", "CT2-01") for i in report["issues"])

        assert client.delete("/jobs/J1/diagram/nodes/main-box/equipment").status_code == 200
        assert client.delete("/jobs/J1/diagram/nodes/main-box/equipment").status_code == 409
        assert client.get("/equipment/SS-0007").json()["status"] == "available"

    def test_conflict_and_resolution(self, client):
        client.put("/jobs/J1/diagram", json=DIAGRAM)
        client.put("/jobs/J2/diagram", json=DIAGRAM)
        assert client.post("/jobs/J1/diagram/nodes/main-box/equipment", json={"equipment_id": "SS-0007"}).status_code == 200

        r = client.post("/jobs/J2/diagram/nodes/main-box/equipment", json={"equipment_id": "SS-0007"})
        assert r.status_code == 409
        conflict = r.json()["detail"]["conflict"]
        assert (conflict["current_job_id"], conflict["requested_job_id"]) == ("J1", "J2")

        assert [c["equipment_id"] for c in client.get("/conflicts").json()] == ["SS-0007"]
        r = client.post("/conflicts/SS-0007/resolve", json={"resolution": "move-to-requested"})
        assert r.status_code == 200
        assert client.get("/conflicts").json() == []
        assert client.get("/equipment/SS-0007").json()["job_id"] == "J2"

        j1 = client.get("/jobs/J1/diagram").json()
        assert j1["graph"]["nodes"][0]["data"]["equipment_id"] is None
        toasts = client.get("/notifications/toasts", params={"job_id": "J1"}).json()
        assert toasts[-1]["message"] == "SS-0007 was moved to Ridge 3"

        assert client.post("/conflicts/SS-0007/resolve", json={"resolution": "keep-current"}).status_code == 404

    def test_sync_and_status(self, client):
        client.put("/jobs/J1/diagram", json=DIAGRAM)
        r = client.post("/jobs/J1/diagram/sync")
        assert r.status_code == 200
        assert r.json()["error"] is None

        status = client.get("/jobs/J1/diagram/sync").json()
        assert status["status"] == "idle"
        assert status["last_sync_time"] is not None

        saves = client.get("/saves/status").json()
        assert set(saves) == {"pending", "in_flight", "last_saved", "failures"}

    def test_unknown_job(self, client):
        assert client.get("/jobs/J404/diagram").status_code == 404


class TestJobRoutes:
    def test_create_and_get(self, client):
        r = client.post("/jobs", json={"name": "Mesa 7", "client": "Fabrikam", "location_id": "L2"})
        assert r.status_code == 200
        job_id = r.json()["id"]
        assert client.get(f"/jobs/{job_id}").json()["name"] == "Mesa 7"
        assert "Mesa 7" in [j["name"] for j in client.get("/jobs").json()]
        assert client.post("/jobs", json={"name": "Nowhere", "location_id": "L9"}).status_code == 400

    def test_created_job_is_visible_to_its_diagram(self, client):
        assert client.get("/jobs/J1").json()["name"] == "Pad 14"
        job_id = client.post("/jobs", json={"name": "Mesa 7", "location_id": "L2"}).json()["id"]

        r = client.put(f"/jobs/{job_id}/diagram", json=DIAGRAM)
        assert r.status_code == 200
        assert r.json()["job_name"] == "Mesa 7"
        r = client.post(f"/jobs/{job_id}/diagram/nodes/main-box/equipment", json={"equipment_id": "SS-0008"})
        assert r.status_code == 200
        assert client.get("/equipment/SS-0008").json()["job_id"] == job_id
