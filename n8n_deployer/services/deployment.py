"""
Deployment Orchestrator - Validated Deployment State Machine
Pushes validated workflow definitions to n8n, tracks every attempt as a
DeploymentRecord and supports rollback to the previous deployed state.

Locking:
    One asyncio.Lock per deployment id. Transitions on the same record are
    serialized, independent records never wait on each other, and no lock
    is held while the engine is being called.
"""
import asyncio
import uuid
from collections import defaultdict
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, Mapping, Optional

from n8n_deployer.core.client import N8NClient, N8NClientError
from n8n_deployer.core.config import Settings
from n8n_deployer.core.logging import deploy_logger as logger
from n8n_deployer.models.schemas import (
    DeploymentRecord,
    DeploymentResult,
    DeploymentState,
    DeploymentStatus,
    DeployOptions,
    ErrorCategory,
    HealthCheckResult,
    RollbackResult,
    StatusChange,
    WorkflowStatus,
    utcnow,
)
from n8n_deployer.services.node_types import NodeCapability, NodeTypeRegistry, registry_from_settings
from n8n_deployer.services.store import JsonFileStore, StoreError
from n8n_deployer.services.validator import ValidationLimits, validate_workflow

Monitor = Callable[[DeploymentRecord], Awaitable[None]]

ALLOWED_TRANSITIONS = {
    DeploymentStatus.PENDING: {DeploymentStatus.VALIDATING},
    DeploymentStatus.VALIDATING: {DeploymentStatus.DEPLOYING, DeploymentStatus.FAILED},
    DeploymentStatus.DEPLOYING: {DeploymentStatus.DEPLOYED, DeploymentStatus.FAILED},
    DeploymentStatus.DEPLOYED: {DeploymentStatus.ROLLED_BACK},
    DeploymentStatus.FAILED: {DeploymentStatus.ROLLED_BACK},
    DeploymentStatus.ROLLED_BACK: set(),
}
TERMINAL_STATUSES = {DeploymentStatus.DEPLOYED, DeploymentStatus.FAILED, DeploymentStatus.ROLLED_BACK}

NOT_FOUND_MESSAGE = "Workflow not found or access denied"


class InvalidTransitionError(Exception):
    """Raised on a state change the deployment state machine does not allow."""
    def __init__(self, deployment_id: str, current: DeploymentStatus, target: DeploymentStatus):
        self.deployment_id = deployment_id
        self.current = current
        self.target = target
        super().__init__(
            f"Deployment {deployment_id}: cannot move from {current.value} to {target.value}"
        )


def can_transition(record: DeploymentRecord, target: DeploymentStatus) -> bool:
    if target not in ALLOWED_TRANSITIONS[record.status]:
        return False
    if record.status == DeploymentStatus.FAILED:
        return record.rollback_on_failure
    return True


class DeploymentOrchestrator:
    """Coordinates validation, engine calls and persistence for deployments."""

    def __init__(
        self,
        store: JsonFileStore,
        engine: N8NClient,
        settings: Settings,
        registry: Optional[NodeTypeRegistry] = None,
        heal_queue: Any = None,
        monitors: Iterable[Monitor] = ()
    ):
        self.store = store
        self.engine = engine
        self.settings = settings
        self.registry = registry or registry_from_settings(settings)
        self.limits = ValidationLimits.from_settings(settings)
        self.heal_queue = heal_queue
        self.monitors = list(monitors)
        self._records: Dict[str, DeploymentRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # =========================================================================
    # RECORD ACCESS
    # =========================================================================
    def _load(self, deployment_id: str) -> Optional[DeploymentRecord]:
        record = self._records.get(deployment_id)
        if record is None:
            record = self.store.get_deployment(deployment_id)
            if record is not None and record.status not in TERMINAL_STATUSES:
                self._records[deployment_id] = record
        return record

    def _persist(self, record: DeploymentRecord) -> DeploymentRecord:
        record.updated_at = utcnow()
        self.store.save_deployment(record)
        # Terminal records are read back from the store
        if record.status in TERMINAL_STATUSES:
            self._records.pop(record.id, None)
        else:
            self._records[record.id] = record
        return record

    def _release(self, deployment_id: str, record: DeploymentRecord) -> None:
        if record.status in TERMINAL_STATUSES:
            self._locks.pop(deployment_id, None)

    async def _transition(
        self,
        deployment_id: str,
        target: DeploymentStatus,
        note: Optional[str] = None,
        **changes: Any
    ) -> DeploymentRecord:
        async with self._locks[deployment_id]:
            record = self._load(deployment_id)
            if record is None:
                raise KeyError(deployment_id)
            if not can_transition(record, target):
                raise InvalidTransitionError(deployment_id, record.status, target)
            for field, value in changes.items():
                setattr(record, field, value)
            record.status = target
            record.history.append(StatusChange(status=target, note=note))
            if target in TERMINAL_STATUSES and record.completed_at is None:
                record.completed_at = utcnow()
                record.duration_ms = (record.completed_at - record.created_at).total_seconds() * 1000
            self._persist(record)
        self._release(deployment_id, record)
        return record

    async def _update(self, deployment_id: str, **changes: Any) -> DeploymentRecord:
        async with self._locks[deployment_id]:
            record = self._load(deployment_id)
            for field, value in changes.items():
                setattr(record, field, value)
            self._persist(record)
        self._release(deployment_id, record)
        return record

    # =========================================================================
    # DEPLOY
    # =========================================================================
    async def deploy(
        self,
        user_id: str,
        workflow_id: str,
        options: Optional[DeployOptions] = None
    ) -> DeploymentResult:
        """
        Validate and deploy a user's workflow.

        Validation and engine failures are reported on the returned result,
        never raised.
        """
        options = options or DeployOptions()
        record = DeploymentRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            workflow_id=workflow_id,
            test_mode=options.test_mode,
            activate=options.activate,
            rollback_on_failure=options.rollback_on_failure,
            history=[StatusChange(status=DeploymentStatus.PENDING)],
        )
        self._persist(record)
        logger.info(f"Deployment {record.id} started for workflow {workflow_id} (test_mode={options.test_mode})")

        record = await self._transition(record.id, DeploymentStatus.VALIDATING)
        try:
            workflow = self.store.get_workflow(user_id, workflow_id)
        except StoreError as e:
            logger.exception(f"Deployment {record.id}: could not load workflow {workflow_id}")
            record = await self._transition(
                record.id, DeploymentStatus.FAILED,
                error=e.message, error_category=ErrorCategory.SYSTEM_ERROR
            )
            return DeploymentResult.from_record(record)
        if workflow is None:
            record = await self._transition(
                record.id, DeploymentStatus.FAILED,
                error=NOT_FOUND_MESSAGE, error_category=ErrorCategory.NOT_FOUND
            )
            logger.warning(f"Deployment {record.id}: workflow {workflow_id} not found for user")
            return DeploymentResult.from_record(record)

        validation = validate_workflow(workflow.definition, self.registry, self.limits, execution_id=record.id)
        previous = self.store.latest_deployment(workflow_id, DeploymentStatus.DEPLOYED, exclude=record.id)

        if not validation.valid:
            record = await self._transition(
                record.id, DeploymentStatus.FAILED,
                note=f"Validation failed at {validation.failed_layer.value} layer",
                error=f"Validation failed at {validation.failed_layer.value} layer",
                error_layer=validation.failed_layer,
                error_category=ErrorCategory.VALIDATION_ERROR,
                validation_errors=validation.errors,
                warnings=validation.warnings,
                rollback_available=previous is not None,
            )
            if options.auto_heal and validation.has_fixable_errors and self.heal_queue is not None:
                job = self.heal_queue.enqueue(
                    execution_id=record.id,
                    user_id=user_id,
                    workflow_id=workflow_id,
                    layer=validation.failed_layer,
                    errors=validation.errors,
                )
                record = await self._update(record.id, auto_heal_job_id=job.id)
            if options.rollback_on_failure and validation.has_fixable_errors:
                record = await self._rollback_after_failure(record, previous)
            return DeploymentResult.from_record(record)

        record = await self._transition(record.id, DeploymentStatus.DEPLOYING, warnings=validation.warnings)
        try:
            if options.test_mode:
                engine_id = await self._simulate()
            else:
                engine_id = await self._push(workflow.definition, options.activate)
        except Exception as e:
            message = e.message if isinstance(e, N8NClientError) else str(e)
            logger.exception(f"Deployment {record.id} failed during engine call: {message}")
            record = await self._transition(
                record.id, DeploymentStatus.FAILED,
                error=message,
                error_category=ErrorCategory.SYSTEM_ERROR,
                rollback_available=previous is not None,
            )
            if options.rollback_on_failure:
                record = await self._rollback_after_failure(record, previous)
            return DeploymentResult.from_record(record)

        deployment_url = f"{self.settings.n8n_editor_url.rstrip('/')}/workflow/{engine_id}"
        record = await self._transition(
            record.id, DeploymentStatus.DEPLOYED,
            engine_workflow_id=engine_id,
            deployment_url=deployment_url,
            webhook_url=self._webhook_url(workflow.definition),
            rollback_available=True,
        )
        logger.info(f"Deployment {record.id} deployed as {engine_id} in {record.duration_ms:.0f}ms")

        if not options.test_mode:
            try:
                self.store.update_workflow_status(
                    user_id, workflow_id,
                    status=WorkflowStatus.DEPLOYED,
                    deployment_status=DeploymentState.DEPLOYED,
                    engine_workflow_id=engine_id,
                    deployment_url=deployment_url,
                    deployed_at=record.completed_at,
                )
            except StoreError:
                # The engine already runs the workflow; only the owner view is stale
                logger.exception(f"Deployment {record.id}: workflow status update failed")
            await self._notify(record)

        return DeploymentResult.from_record(record)

    async def _simulate(self) -> str:
        await asyncio.sleep(self.settings.test_mode_delay)
        return f"test_{uuid.uuid4().hex[:12]}"

    async def _push(self, definition: Mapping[str, Any], activate: bool) -> str:
        payload = {
            "name": definition.get("name"),
            "nodes": definition.get("nodes", []),
            "connections": definition.get("connections", {}),
            "settings": definition.get("settings") or {},
        }
        created = await self.engine.create_workflow(payload)
        engine_id = str(created["id"])
        if activate:
            try:
                await self.engine.activate_workflow(engine_id)
            except N8NClientError:
                # Do not leave a half-deployed workflow behind
                try:
                    await self.engine.delete_workflow(engine_id)
                except N8NClientError as cleanup:
                    logger.warning(f"Cleanup of {engine_id} after failed activation failed: {cleanup.message}")
                raise
        return engine_id

    def _webhook_url(self, definition: Mapping[str, Any]) -> Optional[str]:
        for node in definition.get("nodes", []):
            if node.get("disabled"):
                continue
            if not self.registry.has_capability(node.get("type"), NodeCapability.WEBHOOK_TRIGGER):
                continue
            path = (node.get("parameters") or {}).get("path")
            if isinstance(path, str) and path.strip():
                return f"{self.settings.webhook_base_url}/webhook/{path.strip().lstrip('/')}"
        return None

    async def _notify(self, record: DeploymentRecord) -> None:
        for monitor in self.monitors:
            try:
                await monitor(record)
            except Exception as e:
                logger.warning(f"Monitor {getattr(monitor, '__name__', monitor)} failed for {record.id}: {e}")

    # =========================================================================
    # ROLLBACK
    # =========================================================================
    async def _rollback_after_failure(
        self,
        record: DeploymentRecord,
        previous: Optional[DeploymentRecord]
    ) -> DeploymentRecord:
        """Automatic rollback of the prior deployed record. Never cascades."""
        if previous is None:
            logger.info(f"Deployment {record.id}: no previous deployment to roll back to")
            return record
        try:
            await self._rollback_record(previous, reason=f"Automatic rollback after failed deployment {record.id}")
        except InvalidTransitionError as e:
            logger.warning(f"Automatic rollback skipped: {e}")
            return record
        return await self._transition(
            record.id, DeploymentStatus.ROLLED_BACK,
            note=f"Rolled back to state before deployment {previous.id}",
            rollback_available=False,
        )

    async def _rollback_record(self, target: DeploymentRecord, reason: Optional[str]) -> DeploymentRecord:
        record = await self._transition(
            target.id, DeploymentStatus.ROLLED_BACK,
            note=reason or "Rolled back",
            rollback_available=False,
        )
        if record.engine_workflow_id and not record.test_mode:
            try:
                await self.engine.delete_workflow(record.engine_workflow_id)
            except N8NClientError as e:
                logger.warning(f"Engine delete of {record.engine_workflow_id} failed during rollback: {e.message}")

        try:
            workflow = self.store.get_workflow(record.user_id, record.workflow_id)
            if workflow is not None and workflow.engine_workflow_id in (None, record.engine_workflow_id):
                self.store.update_workflow_status(
                    record.user_id, record.workflow_id,
                    status=WorkflowStatus.DRAFT,
                    deployment_status=DeploymentState.NOT_DEPLOYED,
                )
        except StoreError:
            logger.exception(f"Deployment {record.id}: workflow status reset failed during rollback")
        logger.info(f"Deployment {record.id} rolled back: {reason or 'manual'}")
        return record

    async def rollback(self, user_id: str, deployment_id: str, reason: Optional[str] = None) -> RollbackResult:
        """
        Roll back a deployment, or the latest deployed record of its workflow
        when the given one is not live. Returns success=False instead of
        raising when there is nothing to roll back.
        """
        record = self._load(deployment_id)
        if record is None or record.user_id != user_id:
            return RollbackResult(
                success=False,
                message="Deployment not found or access denied",
                deployment_id=deployment_id,
                error="not_found",
            )

        if record.status == DeploymentStatus.DEPLOYED:
            target = record
        else:
            target = self.store.latest_deployment(record.workflow_id, DeploymentStatus.DEPLOYED)
        if target is None:
            return RollbackResult(
                success=False,
                message="No previous deployment found to roll back to",
                deployment_id=deployment_id,
            )

        try:
            await self._rollback_record(target, reason)
        except InvalidTransitionError as e:
            return RollbackResult(success=False, message=str(e), deployment_id=target.id, error="invalid_transition")
        return RollbackResult(
            success=True,
            message=f"Deployment {target.id} rolled back",
            deployment_id=target.id,
        )

    # =========================================================================
    # QUERIES
    # =========================================================================
    async def get_status(self, deployment_id: str, user_id: Optional[str] = None) -> Optional[DeploymentResult]:
        record = self._load(deployment_id)
        if record is None or (user_id is not None and record.user_id != user_id):
            return None
        return DeploymentResult.from_record(record)

    async def health(self) -> HealthCheckResult:
        engine_ok = await self.engine.healthz()
        store_ok = self.store.ping()

        recent = self.store.list_deployments(since=utcnow() - timedelta(hours=24))
        durations = [r.duration_ms for r in recent if r.duration_ms is not None]
        failures = sum(1 for r in recent if r.status == DeploymentStatus.FAILED)

        healthy = engine_ok and store_ok
        return HealthCheckResult(
            healthy=healthy,
            status="healthy" if healthy else "degraded",
            services={"n8n": engine_ok, "store": store_ok},
            metrics={
                "active_workflows": self.store.count_active_workflows(),
                "recent_deployments": len(recent),
                "average_deployment_time_ms": round(sum(durations) / len(durations), 2) if durations else 0.0,
                "error_rate": round(failures / len(recent) * 100, 2) if recent else 0.0,
            },
        )
