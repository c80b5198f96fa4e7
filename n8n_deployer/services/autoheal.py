"""
Auto-Heal Queue - Background Repair of Failed Deployments
Asyncio worker pool that applies deterministic repairs to workflows whose
deployment failed validation with fixable errors.

Jobs are retried with exponential backoff. A job that keeps failing after
max_retries lands in the dead-letter list and its workflow is marked
heal_failed.

Finished jobs stay queryable until more than `retention` newer jobs have
finished after them.
"""
import asyncio
import inspect
import uuid
from collections import deque
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from n8n_deployer.core.logging import autoheal_logger as logger
from n8n_deployer.models.schemas import (
    AutoHealJob,
    DeploymentState,
    HealJobStatus,
    ValidationIssue,
    ValidationLayer,
    utcnow,
)
from n8n_deployer.services.autofix import heal_definition
from n8n_deployer.services.node_types import NodeTypeRegistry, default_registry
from n8n_deployer.services.store import JsonFileStore, StoreError
from n8n_deployer.services.validator import ValidationLimits, validate_workflow

FailureCallback = Callable[[AutoHealJob], Any]


class AutoHealQueue:
    """At-least-once repair queue: a job is acknowledged only after it was processed."""

    def __init__(
        self,
        store: JsonFileStore,
        registry: Optional[NodeTypeRegistry] = None,
        workers: int = 2,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        limits: Optional[ValidationLimits] = None,
        retention: int = 1000,
        on_permanent_failure: Iterable[FailureCallback] = ()
    ):
        self.store = store
        self.registry = registry or default_registry()
        self.worker_count = max(1, workers)
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.limits = limits or ValidationLimits()
        self.retention = max(1, retention)
        self.on_permanent_failure = list(on_permanent_failure)
        self._queue: asyncio.Queue = asyncio.Queue()
        self._jobs: Dict[str, AutoHealJob] = {}
        self._dead_letter: List[str] = []
        self._finished: deque = deque()
        self._workers: List[asyncio.Task] = []
        self._timers: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, store: JsonFileStore, settings, registry: NodeTypeRegistry) -> "AutoHealQueue":
        return cls(
            store,
            registry=registry,
            workers=settings.autoheal_workers,
            max_retries=settings.autoheal_max_retries,
            backoff_base=settings.autoheal_backoff_base,
            limits=ValidationLimits.from_settings(settings),
            retention=settings.autoheal_job_retention,
        )

    @property
    def running(self) -> bool:
        return bool(self._workers)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================
    def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"autoheal-worker-{i}")
            for i in range(self.worker_count)
        ]
        logger.info(f"Auto-heal queue started with {self.worker_count} worker(s)")

    async def stop(self) -> None:
        tasks = [*self._workers, *self._timers]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._timers.clear()
        logger.info("Auto-heal queue stopped")

    async def drain(self) -> None:
        """Wait until every queued job and every pending retry has been processed."""
        self.start()
        while True:
            await self._queue.join()
            if not self._timers:
                return
            await asyncio.gather(*list(self._timers), return_exceptions=True)

    # =========================================================================
    # JOBS
    # =========================================================================
    def enqueue(
        self,
        execution_id: str,
        user_id: str,
        workflow_id: str,
        layer: Optional[ValidationLayer] = None,
        errors: Iterable[ValidationIssue] = ()
    ) -> AutoHealJob:
        job = AutoHealJob(
            id=str(uuid.uuid4()),
            execution_id=execution_id,
            user_id=user_id,
            workflow_id=workflow_id,
            layer=layer,
            errors=list(errors),
            max_retries=self.max_retries,
        )
        self._jobs[job.id] = job
        self._queue.put_nowait(job.id)
        logger.info(f"Queued auto-heal job {job.id} for workflow {workflow_id}")
        return job

    def get_job(self, job_id: str) -> Optional[AutoHealJob]:
        return self._jobs.get(job_id)

    def failed_jobs(self) -> List[AutoHealJob]:
        return [self._jobs[job_id] for job_id in self._dead_letter]

    # =========================================================================
    # PROCESSING
    # =========================================================================
    async def _worker(self, index: int) -> None:
        while True:
            job_id = await self._queue.get()
            try:
                await self._process(self._jobs[job_id])
            except Exception:
                logger.exception(f"Worker {index} crashed on job {job_id}")
            finally:
                self._queue.task_done()

    async def _process(self, job: AutoHealJob) -> None:
        job.status = HealJobStatus.PROCESSING
        job.updated_at = utcnow()
        try:
            healed = self._heal(job)
        except Exception as e:
            logger.warning(f"Auto-heal job {job.id} attempt failed: {e}")
            job.last_error = str(e)
            healed = False

        if healed:
            job.status = HealJobStatus.HEALED
            job.updated_at = utcnow()
            logger.info(f"Auto-heal job {job.id} healed workflow {job.workflow_id}")
            self._retire(job)
            return

        if job.retry_count < job.max_retries:
            delay = self.backoff_base * (2 ** job.retry_count)
            job.retry_count += 1
            job.status = HealJobStatus.QUEUED
            job.updated_at = utcnow()
            self._count_deployment_retry(job)
            logger.info(f"Retrying auto-heal job {job.id} in {delay:.2f}s (attempt {job.retry_count + 1})")
            timer = asyncio.create_task(self._requeue_later(job.id, delay))
            self._timers.add(timer)
            timer.add_done_callback(self._timers.discard)
            return

        await self._fail_permanently(job)

    def _heal(self, job: AutoHealJob) -> bool:
        workflow = self.store.get_workflow(job.user_id, job.workflow_id)
        if workflow is None:
            raise LookupError(f"Workflow {job.workflow_id} not found for user")

        fixed, fixes = heal_definition(workflow.definition, job.errors, self.registry)
        if fixes:
            workflow.definition = fixed
            if isinstance(fixed.get("name"), str) and fixed["name"]:
                workflow.name = fixed["name"]
            self.store.save_workflow(workflow)
            job.applied_fixes.extend(fixes)

        result = validate_workflow(workflow.definition, self.registry, self.limits)
        if result.valid:
            return True
        job.errors = result.errors
        job.layer = result.failed_layer
        job.last_error = f"Validation still failing at {result.failed_layer.value} layer"
        return False

    async def _requeue_later(self, job_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        self._queue.put_nowait(job_id)

    async def _fail_permanently(self, job: AutoHealJob) -> None:
        job.status = HealJobStatus.FAILED
        job.updated_at = utcnow()
        self._dead_letter.append(job.id)
        self._retire(job)
        logger.error(f"Auto-heal job {job.id} failed permanently after {job.retry_count} retries: {job.last_error}")

        workflow = self.store.get_workflow(job.user_id, job.workflow_id)
        if workflow is not None:
            workflow.deployment_status = DeploymentState.HEAL_FAILED
            self.store.save_workflow(workflow)

        for callback in self.on_permanent_failure:
            try:
                outcome = callback(job)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.warning(f"Permanent-failure callback failed for job {job.id}: {e}")

    # =========================================================================
    # BOOKKEEPING
    # =========================================================================
    def _count_deployment_retry(self, job: AutoHealJob) -> None:
        """Mirror the retry on the deployment record that queued the job, if any."""
        try:
            record = self.store.get_deployment(job.execution_id)
            if record is None:
                return
            record.retry_count += 1
            record.updated_at = utcnow()
            self.store.save_deployment(record)
        except StoreError as e:
            logger.warning(f"Could not record retry of job {job.id} on deployment {job.execution_id}: {e.message}")

    def _retire(self, job: AutoHealJob) -> None:
        self._finished.append(job.id)
        while len(self._finished) > self.retention:
            expired = self._finished.popleft()
            self._jobs.pop(expired, None)
            if expired in self._dead_letter:
                self._dead_letter.remove(expired)
