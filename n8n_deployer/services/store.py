"""
Persistence Layer - JSON File Store
Workflow definitions and deployment records as JSON documents on disk.

Layout under the data directory:
    workflows/<workflow_id>.json
    deployments/<deployment_id>.json
"""
import json
import os
import re
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from n8n_deployer.core.logging import store_logger as logger
from n8n_deployer.models.schemas import (
    DeploymentRecord,
    DeploymentState,
    DeploymentStatus,
    WorkflowRecord,
    WorkflowStatus,
    utcnow,
)

ModelT = TypeVar("ModelT", bound=BaseModel)
SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


class StoreError(Exception):
    """Raised when a document cannot be read or written."""
    def __init__(self, message: str, path: str = ""):
        self.message = message
        self.path = path
        super().__init__(message)


class JsonFileStore:
    """
    Thread-safe JSON document store. Writes go to a temp file in the same
    directory and are moved into place with os.replace.
    """

    def __init__(self, data_dir: str):
        self.root = Path(data_dir).expanduser()
        self._workflows = self.root / "workflows"
        self._deployments = self.root / "deployments"
        self._lock = threading.Lock()
        for directory in (self._workflows, self._deployments):
            directory.mkdir(parents=True, exist_ok=True)

    # =========================================================================
    # LOW LEVEL
    # =========================================================================
    def _path(self, directory: Path, doc_id: str) -> Optional[Path]:
        if not isinstance(doc_id, str) or not SAFE_ID.match(doc_id):
            return None
        return directory / f"{doc_id}.json"

    def _write(self, path: Path, model: BaseModel) -> None:
        payload = model.model_dump_json(indent=2)
        try:
            fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=".json")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                os.replace(tmp, path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        except OSError as e:
            logger.error(f"Write failed for {path}: {e}")
            raise StoreError(f"Could not write document: {e}", str(path))

    def _read(self, path: Optional[Path], model: Type[ModelT]) -> Optional[ModelT]:
        if path is None or not path.exists():
            return None
        try:
            return model.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError, ValueError) as e:
            logger.error(f"Read failed for {path}: {e}")
            raise StoreError(f"Corrupt or unreadable document: {e}", str(path))

    def _scan(self, directory: Path, model: Type[ModelT]) -> List[ModelT]:
        documents = []
        for path in sorted(directory.glob("*.json")):
            try:
                documents.append(model.model_validate_json(path.read_text(encoding="utf-8")))
            except (OSError, ValidationError, ValueError) as e:
                logger.warning(f"Skipping unreadable document {path.name}: {e}")
        return documents

    # =========================================================================
    # WORKFLOWS
    # =========================================================================
    def get_workflow(self, user_id: str, workflow_id: str) -> Optional[WorkflowRecord]:
        """Owner-scoped lookup. A foreign workflow is indistinguishable from a missing one."""
        with self._lock:
            record = self._read(self._path(self._workflows, workflow_id), WorkflowRecord)
        if record is None or record.user_id != user_id:
            return None
        return record

    def save_workflow(self, record: WorkflowRecord) -> WorkflowRecord:
        path = self._path(self._workflows, record.id)
        if path is None:
            raise StoreError(f"Invalid workflow id: {record.id!r}")
        record.updated_at = utcnow()
        with self._lock:
            self._write(path, record)
        return record

    def update_workflow_status(
        self,
        user_id: str,
        workflow_id: str,
        status: WorkflowStatus,
        deployment_status: DeploymentState,
        engine_workflow_id: Optional[str] = None,
        deployment_url: Optional[str] = None,
        deployed_at: Optional[datetime] = None
    ) -> Optional[WorkflowRecord]:
        path = self._path(self._workflows, workflow_id)
        with self._lock:
            record = self._read(path, WorkflowRecord)
            if record is None or record.user_id != user_id:
                return None
            record.status = status
            record.deployment_status = deployment_status
            record.engine_workflow_id = engine_workflow_id
            record.deployment_url = deployment_url
            if deployed_at is not None:
                record.last_deployed_at = deployed_at
            record.updated_at = utcnow()
            self._write(path, record)
        return record

    def owner_of(self, workflow_id: str) -> Optional[str]:
        with self._lock:
            record = self._read(self._path(self._workflows, workflow_id), WorkflowRecord)
        return record.user_id if record else None

    def count_active_workflows(self) -> int:
        with self._lock:
            records = self._scan(self._workflows, WorkflowRecord)
        return sum(1 for r in records if r.deployment_status == DeploymentState.DEPLOYED)

    # =========================================================================
    # DEPLOYMENTS
    # =========================================================================
    def save_deployment(self, record: DeploymentRecord) -> DeploymentRecord:
        path = self._path(self._deployments, record.id)
        if path is None:
            raise StoreError(f"Invalid deployment id: {record.id!r}")
        with self._lock:
            self._write(path, record)
        return record

    def get_deployment(self, deployment_id: str) -> Optional[DeploymentRecord]:
        with self._lock:
            return self._read(self._path(self._deployments, deployment_id), DeploymentRecord)

    def list_deployments(
        self,
        workflow_id: Optional[str] = None,
        since: Optional[datetime] = None
    ) -> List[DeploymentRecord]:
        """Deployment records, newest first."""
        with self._lock:
            records = self._scan(self._deployments, DeploymentRecord)
        if workflow_id is not None:
            records = [r for r in records if r.workflow_id == workflow_id]
        if since is not None:
            records = [r for r in records if r.created_at >= since]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    def latest_deployment(
        self,
        workflow_id: str,
        status: DeploymentStatus,
        exclude: Optional[str] = None
    ) -> Optional[DeploymentRecord]:
        for record in self.list_deployments(workflow_id=workflow_id):
            if record.status == status and record.id != exclude:
                return record
        return None

    # =========================================================================
    # HEALTH
    # =========================================================================
    def ping(self) -> bool:
        """The data directories exist and are writable."""
        return all(
            d.is_dir() and os.access(d, os.W_OK)
            for d in (self._workflows, self._deployments)
        )
