"""
Pytest fixtures for the n8n deployer test suite.

- `settings`: Settings pointed at a fake n8n and a temp data directory
- `fake_n8n`: in-memory stand-in for the n8n REST API (httpx.MockTransport)
- `engine`: N8NClient wired to `fake_n8n`
- `store`: JsonFileStore under the temp data directory
- `workflow_factory`: builds workflow definitions for tests
"""
import copy
import json
from typing import Any, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio

from n8n_deployer.core.client import N8NClient
from n8n_deployer.core.config import Settings
from n8n_deployer.models.schemas import WorkflowRecord
from n8n_deployer.services.store import JsonFileStore


def _main(*targets: str) -> Dict[str, Any]:
    return {"main": [[{"node": t, "type": "main", "index": 0} for t in targets]]}


VALID_WORKFLOW: Dict[str, Any] = {
    "name": "Order Intake",
    "active": False,
    "nodes": [
        {
            "id": "1",
            "name": "Webhook",
            "type": "n8n-nodes-base.webhook",
            "typeVersion": 1,
            "position": [240, 300],
            "parameters": {"path": "orders", "httpMethod": "POST", "authentication": "headerAuth"},
        },
        {
            "id": "2",
            "name": "Format",
            "type": "n8n-nodes-base.set",
            "typeVersion": 1,
            "position": [460, 300],
            "parameters": {"values": {"string": [{"name": "status", "value": "received"}]}},
        },
        {
            "id": "3",
            "name": "Send",
            "type": "n8n-nodes-base.httpRequest",
            "typeVersion": 1,
            "position": [680, 300],
            "parameters": {"url": "https://api.example.com/orders", "method": "POST"},
        },
    ],
    "connections": {
        "Webhook": _main("Format"),
        "Format": _main("Send"),
    },
}


def build_workflow(**overrides: Any) -> Dict[str, Any]:
    """Deep copy of the valid three-node workflow with top-level overrides."""
    workflow = copy.deepcopy(VALID_WORKFLOW)
    workflow.update(overrides)
    return workflow


def build_node(node_id: str, name: str, node_type: str = "n8n-nodes-base.set", **extra: Any) -> Dict[str, Any]:
    node = {
        "id": node_id,
        "name": name,
        "type": node_type,
        "typeVersion": 1,
        "position": [0, 0],
        "parameters": {},
    }
    node.update(extra)
    return node


class FakeN8N:
    """Minimal n8n REST API: create, activate, delete and /healthz."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.workflows: Dict[str, Dict[str, Any]] = {}
        self.active: set = set()
        self.fail_create: Optional[int] = None
        self.fail_activate: Optional[int] = None
        self.healthy = True
        self._counter = 0

    @property
    def calls(self) -> List[tuple]:
        return [(r.method, r.url.path) for r in self.requests]

    @property
    def api_calls(self) -> List[tuple]:
        return [c for c in self.calls if c[1] != "/healthz"]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/healthz":
            return httpx.Response(200 if self.healthy else 503, json={"status": "ok"})

        if request.method == "POST" and path == "/api/v1/workflows":
            if self.fail_create:
                return httpx.Response(self.fail_create, json={"message": "create exploded"})
            self._counter += 1
            workflow_id = f"wf{self._counter}"
            payload = json.loads(request.content)
            self.workflows[workflow_id] = payload
            return httpx.Response(200, json={"id": workflow_id, **payload})

        if request.method == "POST" and path.endswith("/activate"):
            workflow_id = path.split("/")[-2]
            if self.fail_activate:
                return httpx.Response(self.fail_activate, json={"message": "activation exploded"})
            self.active.add(workflow_id)
            return httpx.Response(200, json={"id": workflow_id, "active": True})

        if request.method == "DELETE" and path.startswith("/api/v1/workflows/"):
            workflow_id = path.split("/")[-1]
            if self.workflows.pop(workflow_id, None) is None:
                return httpx.Response(404, json={"message": "not found"})
            return httpx.Response(200, json={"id": workflow_id})

        return httpx.Response(404, json={"message": "not found"})


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        N8N_API_KEY="test-key",
        N8N_BASE_URL="http://n8n.test/api/v1",
        N8N_EDITOR_URL="http://n8n.test",
        DEPLOYER_DATA_DIR=str(tmp_path / "data"),
        TEST_MODE_DELAY=0,
        AUTOHEAL_BACKOFF_BASE=0,
        AUTOHEAL_MAX_RETRIES=2,
    )


@pytest.fixture
def fake_n8n() -> FakeN8N:
    return FakeN8N()


@pytest_asyncio.fixture
async def engine(settings, fake_n8n):
    client = N8NClient(settings, transport=httpx.MockTransport(fake_n8n.handler))
    yield client
    await client.close()


@pytest.fixture
def store(settings) -> JsonFileStore:
    return JsonFileStore(settings.data_dir)


@pytest.fixture
def workflow_factory():
    return build_workflow


@pytest.fixture
def node_factory():
    return build_node


@pytest.fixture
def saved_workflow(store):
    """Persist a workflow for a user and return its record."""
    def _save(definition: Optional[Dict[str, Any]] = None, user_id: str = "alice",
              workflow_id: str = "wf-1") -> WorkflowRecord:
        definition = definition if definition is not None else build_workflow()
        record = WorkflowRecord(id=workflow_id, user_id=user_id,
                                name=str(definition.get("name", "")), definition=definition)
        return store.save_workflow(record)
    return _save
