"""Tests for the JSON file store."""
from datetime import timedelta

import pytest

from n8n_deployer.models.schemas import (
    DeploymentRecord,
    DeploymentState,
    DeploymentStatus,
    WorkflowRecord,
    WorkflowStatus,
    utcnow,
)
from n8n_deployer.services.store import JsonFileStore, StoreError


def deployment(deployment_id, status=DeploymentStatus.DEPLOYED, workflow_id="wf-1", age_minutes=0):
    return DeploymentRecord(
        id=deployment_id,
        user_id="alice",
        workflow_id=workflow_id,
        status=status,
        created_at=utcnow() - timedelta(minutes=age_minutes),
    )


class TestWorkflows:
    def test_owner_scoped_lookup(self, store, saved_workflow):
        saved_workflow()
        assert store.get_workflow("alice", "wf-1").name == "Order Intake"
        assert store.get_workflow("mallory", "wf-1") is None
        assert store.owner_of("wf-1") == "alice"
        assert store.owner_of("missing") is None

    def test_survives_reopen(self, settings, saved_workflow):
        saved_workflow()
        reopened = JsonFileStore(settings.data_dir)
        assert reopened.get_workflow("alice", "wf-1").definition["nodes"][0]["name"] == "Webhook"

    def test_update_status(self, store, saved_workflow):
        saved_workflow()
        updated = store.update_workflow_status(
            "alice", "wf-1", WorkflowStatus.DEPLOYED, DeploymentState.DEPLOYED,
            engine_workflow_id="wf9", deployment_url="http://n8n.test/workflow/wf9", deployed_at=utcnow()
        )
        assert updated.engine_workflow_id == "wf9"
        assert store.get_workflow("alice", "wf-1").status == WorkflowStatus.DEPLOYED
        assert store.count_active_workflows() == 1
        assert store.update_workflow_status("mallory", "wf-1", WorkflowStatus.DRAFT,
                                            DeploymentState.NOT_DEPLOYED) is None

    def test_unsafe_ids(self, store):
        assert store.get_workflow("alice", "../etc/passwd") is None
        with pytest.raises(StoreError):
            store.save_workflow(WorkflowRecord(id="../escape", user_id="alice", name="x", definition={}))

    def test_writes_leave_no_temp_files(self, store, saved_workflow):
        saved_workflow()
        saved_workflow()
        leftovers = [p.name for p in (store.root / "workflows").iterdir() if p.name.startswith(".tmp-")]
        assert leftovers == []


class TestDeployments:
    def test_round_trip(self, store):
        store.save_deployment(deployment("d1"))
        assert store.get_deployment("d1").status == DeploymentStatus.DEPLOYED
        assert store.get_deployment("nope") is None

    def test_list_newest_first(self, store):
        store.save_deployment(deployment("old", age_minutes=10))
        store.save_deployment(deployment("new"))
        store.save_deployment(deployment("other", workflow_id="wf-2"))

        assert [d.id for d in store.list_deployments(workflow_id="wf-1")] == ["new", "old"]
        assert len(store.list_deployments()) == 3

    def test_list_since(self, store):
        store.save_deployment(deployment("ancient", age_minutes=60 * 48))
        store.save_deployment(deployment("fresh"))
        recent = store.list_deployments(since=utcnow() - timedelta(hours=24))
        assert [d.id for d in recent] == ["fresh"]

    def test_latest_deployment(self, store):
        store.save_deployment(deployment("live", age_minutes=5))
        store.save_deployment(deployment("broken", status=DeploymentStatus.FAILED))

        assert store.latest_deployment("wf-1", DeploymentStatus.DEPLOYED).id == "live"
        assert store.latest_deployment("wf-1", DeploymentStatus.DEPLOYED, exclude="live") is None

    def test_corrupt_document(self, store):
        store.save_deployment(deployment("good"))
        (store.root / "deployments" / "bad.json").write_text("{not json", encoding="utf-8")

        with pytest.raises(StoreError):
            store.get_deployment("bad")
        assert [d.id for d in store.list_deployments()] == ["good"]

    def test_ping(self, store):
        assert store.ping() is True
