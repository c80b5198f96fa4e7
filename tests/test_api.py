"""Tests for the FastAPI gateway."""
import httpx
import pytest
from fastapi.testclient import TestClient

from n8n_deployer.core.client import N8NClient
from n8n_deployer.main import build_services, create_app

ALICE = {"X-User-Id": "alice"}
MALLORY = {"X-User-Id": "mallory"}


@pytest.fixture
def api(settings, fake_n8n):
    engine = N8NClient(settings, transport=httpx.MockTransport(fake_n8n.handler))
    with TestClient(create_app(build_services(settings, engine=engine))) as client:
        yield client


@pytest.fixture
def stored(api, workflow_factory):
    response = api.put("/workflows/wf-1", json=workflow_factory(), headers=ALICE)
    assert response.status_code == 200
    return response.json()


class TestValidation:
    def test_validate(self, api, workflow_factory):
        body = api.post("/validate", json=workflow_factory()).json()
        assert body["valid"] is True
        assert {"structure", "business", "compatibility", "total"} <= set(body["timings"])

    def test_validate_reports_layer(self, api, workflow_factory):
        workflow = workflow_factory()
        workflow["nodes"][0]["typeVersion"] = "1"
        body = api.post("/validate", json=workflow).json()
        assert body["valid"] is False
        assert body["failed_layer"] == "structure"

    def test_assess(self, api, workflow_factory):
        body = api.post("/assess", json={"workflow": workflow_factory(), "stages": ["security"]}).json()
        assert body["score"] == 100
        assert list(body["stages"]) == ["security"]

    def test_assess_unknown_stage(self, api, workflow_factory):
        response = api.post("/assess", json={"workflow": workflow_factory(), "stages": ["vibes"]})
        assert response.status_code == 400

    def test_autofix(self, api, workflow_factory):
        workflow = workflow_factory()
        del workflow["name"]
        body = api.post("/autofix", json={"workflow": workflow}).json()
        assert body["workflow"]["name"] == "webhook to set"
        assert body["validation"]["valid"] is True


class TestWorkflows:
    def test_requires_user(self, api, workflow_factory):
        assert api.put("/workflows/wf-1", json=workflow_factory()).status_code == 401
        assert api.post("/deploy", json={"workflow_id": "wf-1"}).status_code == 401

    def test_store_and_read(self, api, stored):
        assert stored["name"] == "Order Intake"
        assert api.get("/workflows/wf-1", headers=ALICE).json()["status"] == "draft"
        assert api.get("/workflows/wf-1", headers=MALLORY).status_code == 404

    def test_cannot_overwrite_foreign_workflow(self, api, stored, workflow_factory):
        response = api.put("/workflows/wf-1", json=workflow_factory(name="Hijack"), headers=MALLORY)
        assert response.status_code == 404
        assert api.get("/workflows/wf-1", headers=ALICE).json()["name"] == "Order Intake"

    def test_unsafe_id(self, api, workflow_factory):
        response = api.put("/workflows/bad id!", json=workflow_factory(), headers=ALICE)
        assert response.status_code == 400


class TestDeployments:
    def test_deploy_status_rollback(self, api, stored, fake_n8n):
        deployed = api.post("/deploy", json={"workflow_id": "wf-1", "activate": True}, headers=ALICE).json()
        assert deployed["success"] is True
        assert deployed["deployment_url"] == "http://n8n.test/workflow/wf1"
        assert fake_n8n.active == {"wf1"}

        status = api.get(f"/status/{deployed['deployment_id']}", headers=ALICE)
        assert status.json()["status"] == "deployed"
        assert api.get(f"/status/{deployed['deployment_id']}", headers=MALLORY).status_code == 404

        rolled = api.post("/rollback", json={"deployment_id": deployed["deployment_id"], "reason": "oops"},
                          headers=ALICE).json()
        assert rolled["success"] is True
        assert api.get("/workflows/wf-1", headers=ALICE).json()["deployment_status"] == "not_deployed"

    def test_deploy_unknown_workflow(self, api):
        body = api.post("/deploy", json={"workflow_id": "missing"}, headers=ALICE).json()
        assert body["success"] is False
        assert body["error_category"] == "not_found"

    def test_status_not_found(self, api):
        assert api.get("/status/nope", headers=ALICE).status_code == 404

    def test_rollback_not_found(self, api):
        body = api.post("/rollback", json={"deployment_id": "nope"}, headers=ALICE).json()
        assert body["success"] is False
        assert body["error"] == "not_found"

    def test_autoheal_job_visibility(self, api, workflow_factory):
        workflow = workflow_factory()
        workflow["nodes"][2]["id"] = "1"
        api.put("/workflows/wf-1", json=workflow, headers=ALICE)

        failed = api.post("/deploy", json={"workflow_id": "wf-1", "auto_heal": True}, headers=ALICE).json()
        job_id = failed["auto_heal_job_id"]

        assert api.get(f"/autoheal/jobs/{job_id}", headers=ALICE).status_code == 200
        assert api.get(f"/autoheal/jobs/{job_id}", headers=MALLORY).status_code == 404
        assert api.get("/autoheal/failed", headers=ALICE).json() == []


class TestHealthAndInfo:
    def test_health(self, api, fake_n8n):
        assert api.get("/health").status_code == 200
        fake_n8n.healthy = False
        response = api.get("/health")
        assert response.status_code == 503
        assert response.json()["status"] == "degraded"

    def test_info(self, api):
        body = api.get("/info").json()
        assert body["version"] == "1.0.0"
        assert "n8n-nodes-base.executeCommand" in body["denied_node_types"]
        assert body["quality_stages"][0] == "structure"
