"""
Main Application Gateway
Exposes validation, quality assessment and deployment via FastAPI and FastMCP.
"""
import json
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Body, Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastmcp import FastMCP
from pydantic import BaseModel, Field

from n8n_deployer.core.client import N8NClient, safe_tool
from n8n_deployer.core.config import Settings, get_settings
from n8n_deployer.core.logging import configure_logging, gateway_logger as logger
from n8n_deployer.models.schemas import (
    DeployOptions,
    DeployRequest,
    RollbackRequest,
    WorkflowRecord,
)
from n8n_deployer.services.autofix import auto_fix
from n8n_deployer.services.autoheal import AutoHealQueue
from n8n_deployer.services.deployment import DeploymentOrchestrator
from n8n_deployer.services.node_types import NodeTypeRegistry, registry_from_settings
from n8n_deployer.services.quality import STAGE_ORDER, QualityOptions, QualityValidator, stage_breakdown
from n8n_deployer.services.store import JsonFileStore, StoreError
from n8n_deployer.services.validator import ValidationLimits, validate_workflow

VERSION = "1.0.0"


# =============================================================================
# SERVICE WIRING
# =============================================================================
@dataclass
class Services:
    settings: Settings
    registry: NodeTypeRegistry
    limits: ValidationLimits
    store: JsonFileStore
    engine: N8NClient
    quality: QualityValidator
    heal_queue: AutoHealQueue
    orchestrator: DeploymentOrchestrator

    def validate(self, definition: Any):
        return validate_workflow(definition, self.registry, self.limits)

    def save_workflow(self, user_id: str, workflow_id: str, definition: Dict[str, Any]) -> WorkflowRecord:
        owner = self.store.owner_of(workflow_id)
        if owner is not None and owner != user_id:
            raise PermissionError("Workflow not found or access denied")
        record = self.store.get_workflow(user_id, workflow_id) or WorkflowRecord(
            id=workflow_id, user_id=user_id, name="", definition={}
        )
        record.definition = definition
        name = definition.get("name")
        record.name = name if isinstance(name, str) else ""
        return self.store.save_workflow(record)


def build_services(settings: Optional[Settings] = None, engine: Optional[N8NClient] = None) -> Services:
    """Construct every service once, with explicit dependencies."""
    settings = settings or get_settings()
    configure_logging(settings.log_level, debug=settings.debug)
    registry = registry_from_settings(settings)
    limits = ValidationLimits.from_settings(settings)
    store = JsonFileStore(settings.data_dir)
    engine = engine or N8NClient(settings)
    heal_queue = AutoHealQueue.from_settings(store, settings, registry)
    orchestrator = DeploymentOrchestrator(store, engine, settings, registry=registry, heal_queue=heal_queue)
    return Services(
        settings=settings,
        registry=registry,
        limits=limits,
        store=store,
        engine=engine,
        quality=QualityValidator(registry, max_nodes=settings.max_nodes,
                                 large_workflow_threshold=settings.large_workflow_threshold),
        heal_queue=heal_queue,
        orchestrator=orchestrator,
    )


# =============================================================================
# REQUEST MODELS
# =============================================================================
class AssessRequest(BaseModel):
    workflow: Dict[str, Any]
    stages: Optional[List[str]] = None
    skip_stages: List[str] = Field(default_factory=list)


class AutoFixRequest(BaseModel):
    workflow: Dict[str, Any]


# =============================================================================
# DEPENDENCIES
# =============================================================================
def get_services(request: Request) -> Services:
    return request.app.state.services


async def current_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    """The caller's verified user id, set by the authenticating proxy."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id


router = APIRouter()


# =============================================================================
# VALIDATION ENDPOINTS
# =============================================================================
@router.post("/validate")
async def validate(definition: Dict[str, Any] = Body(...), services: Services = Depends(get_services)):
    """Run the structure, business and compatibility chain."""
    return services.validate(definition).model_dump(mode="json")


@router.post("/assess")
async def assess(request: AssessRequest, services: Services = Depends(get_services)):
    options = QualityOptions(stages=request.stages, skip_stages=request.skip_stages)
    try:
        result = await services.quality.assess(request.workflow, options)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return result.model_dump(mode="json")


@router.post("/autofix")
async def autofix(request: AutoFixRequest, services: Services = Depends(get_services)):
    fixed, fixes = auto_fix(request.workflow, registry=services.registry)
    return {
        "workflow": fixed,
        "fixes": [f.model_dump(mode="json") for f in fixes],
        "validation": services.validate(fixed).model_dump(mode="json"),
    }


# =============================================================================
# WORKFLOW & DEPLOYMENT ENDPOINTS
# =============================================================================
@router.put("/workflows/{workflow_id}")
async def put_workflow(
    workflow_id: str,
    definition: Dict[str, Any] = Body(...),
    user_id: str = Depends(current_user),
    services: Services = Depends(get_services)
):
    try:
        record = services.save_workflow(user_id, workflow_id, definition)
    except PermissionError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StoreError as e:
        raise HTTPException(status_code=400, detail=e.message)
    return record.model_dump(mode="json")


@router.get("/workflows/{workflow_id}")
async def get_workflow(workflow_id: str, user_id: str = Depends(current_user),
                       services: Services = Depends(get_services)):
    record = services.store.get_workflow(user_id, workflow_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Workflow not found or access denied")
    return record.model_dump(mode="json")


@router.post("/deploy")
async def deploy(request: DeployRequest, user_id: str = Depends(current_user),
                 services: Services = Depends(get_services)):
    options = DeployOptions(**request.model_dump(exclude={"workflow_id"}))
    result = await services.orchestrator.deploy(user_id, request.workflow_id, options)
    return result.model_dump(mode="json")


@router.get("/status/{deployment_id}")
async def status(deployment_id: str, user_id: str = Depends(current_user),
                 services: Services = Depends(get_services)):
    result = await services.orchestrator.get_status(deployment_id, user_id=user_id)
    if result is None:
        raise HTTPException(status_code=404, detail="Deployment not found")
    return result.model_dump(mode="json")


@router.post("/rollback")
async def rollback(request: RollbackRequest, user_id: str = Depends(current_user),
                   services: Services = Depends(get_services)):
    result = await services.orchestrator.rollback(user_id, request.deployment_id, request.reason)
    return result.model_dump(mode="json")


# =============================================================================
# AUTO-HEAL, HEALTH & INFO
# =============================================================================
@router.get("/autoheal/jobs/{job_id}")
async def autoheal_job(job_id: str, user_id: str = Depends(current_user),
                       services: Services = Depends(get_services)):
    job = services.heal_queue.get_job(job_id)
    if job is None or job.user_id != user_id:
        raise HTTPException(status_code=404, detail="Auto-heal job not found")
    return job.model_dump(mode="json")


@router.get("/autoheal/failed")
async def autoheal_failed(user_id: str = Depends(current_user), services: Services = Depends(get_services)):
    return [job.model_dump(mode="json") for job in services.heal_queue.failed_jobs() if job.user_id == user_id]


@router.get("/health")
async def health(services: Services = Depends(get_services)):
    """Check engine reachability, store availability and deployment metrics."""
    result = await services.orchestrator.health()
    return JSONResponse(status_code=200 if result.healthy else 503, content=result.model_dump(mode="json"))


@router.get("/info")
async def server_info(services: Services = Depends(get_services)):
    """Get server configuration info."""
    settings = services.settings
    return {
        "name": "n8n Deployer",
        "version": VERSION,
        "n8n_base_url": settings.n8n_base_url,
        "n8n_editor_url": settings.n8n_editor_url,
        "data_dir": settings.data_dir,
        "known_node_types": len(services.registry),
        "denied_node_types": settings.denied_node_types,
        "quality_stages": list(STAGE_ORDER),
    }


# =============================================================================
# FASTAPI APP
# =============================================================================
def create_app(services: Optional[Services] = None) -> FastAPI:
    services = services or build_services()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Manages the application lifecycle.
        - Startup: Log configuration, start auto-heal workers
        - Shutdown: Stop workers, close HTTP client
        """
        logger.info("=" * 60)
        logger.info("n8n Deployer starting")
        logger.info(f"n8n API: {services.settings.api_url}")
        logger.info(f"Editor: {services.settings.n8n_editor_url}")
        logger.info(f"Data dir: {services.settings.data_dir}")
        logger.info("=" * 60)
        services.heal_queue.start()

        yield

        await services.heal_queue.stop()
        await services.engine.close()
        logger.info("n8n Deployer shutdown")

    app = FastAPI(
        title="n8n Deployer API",
        description="Validated, quality-scored deployment of n8n workflows with rollback and auto-heal.",
        version=VERSION,
        lifespan=lifespan
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catches any unhandled error and returns it in envelope format."""
        logger.error(f"Unhandled exception: {str(exc)}")
        return JSONResponse(
            status_code=500,
            content={
                "status": "error",
                "code": 500,
                "message": str(exc),
                "path": str(request.url.path)
            }
        )

    app.include_router(router)
    return app


# =============================================================================
# FASTMCP SERVER
# =============================================================================
def _parse_json(value: Union[str, Dict[str, Any]], field: str) -> Dict[str, Any]:
    """Accept an object or its JSON string form, as AI agents send either."""
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in '{field}': {e}")
    if not isinstance(value, dict):
        raise ValueError(f"'{field}' must be a JSON object")
    return value


def create_mcp(services: Optional[Services] = None) -> FastMCP:
    services = services or build_services()
    mcp = FastMCP("n8n Deployer")

    @mcp.tool(name="validate_workflow")
    @safe_tool
    async def validate_workflow_definition(workflow: Union[str, Dict[str, Any]]) -> str:
        """
        Validate an n8n workflow through the structure, business and
        compatibility layers. Stops at the first failing layer.

        Args:
            workflow: Workflow definition (object or JSON string)

        Returns:
            JSON string with the validation result.
        """
        result = services.validate(_parse_json(workflow, "workflow"))
        return result.model_dump_json(indent=2)

    @mcp.tool()
    @safe_tool
    async def assess_workflow_quality(
        workflow: Union[str, Dict[str, Any]],
        stages: Optional[List[str]] = None
    ) -> str:
        """
        Score a workflow (0-100) across structure, nodes, connections, logic,
        performance, security and best-practice stages.

        Args:
            workflow: Workflow definition (object or JSON string)
            stages: Optional subset of stages to run

        Returns:
            JSON string with score, confidence, complexity and every finding.
        """
        result = await services.quality.assess(_parse_json(workflow, "workflow"), QualityOptions(stages=stages))
        report = result.model_dump(mode="json")
        report["stage_breakdown"] = [
            {"stage": name, "passed": passed, "issues": count}
            for name, passed, count in stage_breakdown(result)
        ]
        return json.dumps(report, indent=2)

    @mcp.tool()
    @safe_tool
    async def auto_fix_workflow(workflow: Union[str, Dict[str, Any]]) -> str:
        """
        Apply deterministic fixes (names, ids, positions) to a workflow.

        Returns:
            JSON string with the fixed workflow and the list of applied fixes.
        """
        fixed, fixes = auto_fix(_parse_json(workflow, "workflow"), registry=services.registry)
        return json.dumps({
            "status": "success",
            "workflow": fixed,
            "fixes": [f.model_dump(mode="json") for f in fixes],
            "valid_after_fix": services.validate(fixed).valid
        }, indent=2)

    @mcp.tool()
    @safe_tool
    async def save_workflow(user_id: str, workflow_id: str, workflow: Union[str, Dict[str, Any]]) -> str:
        """
        Store or replace a user's workflow definition so it can be deployed.

        Returns:
            JSON string with the stored workflow record.
        """
        try:
            record = services.save_workflow(user_id, workflow_id, _parse_json(workflow, "workflow"))
        except PermissionError as e:
            return json.dumps({"status": "error", "code": 404, "message": str(e)}, indent=2)
        return record.model_dump_json(indent=2)

    @mcp.tool()
    @safe_tool
    async def deploy_workflow(
        user_id: str,
        workflow_id: str,
        activate: bool = False,
        test_mode: bool = False,
        rollback_on_failure: bool = False,
        auto_heal: bool = False
    ) -> str:
        """
        Validate and deploy a stored workflow to n8n.

        Args:
            user_id: Owner of the workflow
            workflow_id: ID of the stored workflow
            activate: Activate the workflow after creation
            test_mode: Simulate the deployment without calling n8n
            rollback_on_failure: Roll back the previous deployment if this one fails
            auto_heal: Queue automatic repair when validation fails with fixable errors

        Returns:
            JSON string with the deployment result.
        """
        if auto_heal:
            services.heal_queue.start()
        options = DeployOptions(
            activate=activate,
            test_mode=test_mode,
            rollback_on_failure=rollback_on_failure,
            auto_heal=auto_heal
        )
        result = await services.orchestrator.deploy(user_id, workflow_id, options)
        return result.model_dump_json(indent=2)

    @mcp.tool()
    @safe_tool
    async def rollback_deployment(user_id: str, deployment_id: str, reason: Optional[str] = None) -> str:
        """Roll back a deployment (or the latest live deployment of its workflow)."""
        result = await services.orchestrator.rollback(user_id, deployment_id, reason)
        return result.model_dump_json(indent=2)

    @mcp.tool()
    @safe_tool
    async def get_deployment_status(deployment_id: str, user_id: Optional[str] = None) -> str:
        """Get the current state of a deployment."""
        result = await services.orchestrator.get_status(deployment_id, user_id=user_id)
        if result is None:
            return json.dumps({"status": "error", "code": 404, "message": "Deployment not found"}, indent=2)
        return result.model_dump_json(indent=2)

    @mcp.tool()
    @safe_tool
    async def deployment_health() -> str:
        """Check n8n reachability, store availability and deployment metrics."""
        result = await services.orchestrator.health()
        return result.model_dump_json(indent=2)

    return mcp
