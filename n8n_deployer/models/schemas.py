"""
Data Contracts - Pydantic Models
Defines the workflow definitions, validation results and deployment records
exchanged between the validators, the orchestrator and the n8n API.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# WORKFLOW DEFINITION
# =============================================================================
class WorkflowNode(BaseModel):
    """Represents a single node in an n8n workflow."""
    model_config = ConfigDict(strict=True, extra="allow")

    id: str
    name: str
    type: str
    typeVersion: float = Field(ge=1)
    position: List[float] = Field(min_length=2, max_length=2)
    parameters: Dict[str, Any]
    credentials: Optional[Dict[str, Any]] = None
    disabled: Optional[bool] = None
    notes: Optional[str] = None
    color: Optional[str] = None


class WorkflowDefinition(BaseModel):
    """
    Full workflow specification, as authored by the user.
    Strict: values are never coerced, a string is not a number.
    """
    model_config = ConfigDict(strict=True, extra="allow")

    id: Optional[str] = None
    name: str = Field(min_length=1, max_length=255)
    active: bool
    nodes: List[WorkflowNode] = Field(min_length=1)
    connections: Dict[str, Any]
    settings: Optional[Dict[str, Any]] = None
    staticData: Optional[Dict[str, Any]] = None
    tags: Optional[List[Any]] = None
    meta: Optional[Dict[str, Any]] = None
    pinData: Optional[Dict[str, Any]] = None
    versionId: Optional[str] = None


# =============================================================================
# VALIDATION
# =============================================================================
class ValidationLayer(str, Enum):
    STRUCTURE = "structure"
    BUSINESS = "business"
    COMPATIBILITY = "compatibility"
    QUALITY = "quality"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class IssueKind(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    SUGGESTION = "suggestion"


class Complexity(str, Enum):
    SIMPLE = "simple"
    MEDIUM = "medium"
    COMPLEX = "complex"


class ValidationIssue(BaseModel):
    """A single validation finding. Immutable once produced."""
    model_config = ConfigDict(frozen=True)

    layer: ValidationLayer
    code: str
    message: str
    kind: IssueKind = IssueKind.ERROR
    severity: Severity = Severity.MEDIUM
    fixable: bool = False
    node_id: Optional[str] = None
    path: Optional[str] = None
    stage: Optional[str] = None
    suggestion: Optional[str] = None


class StageResult(BaseModel):
    """Outcome of one quality stage."""
    name: str
    required: bool
    passed: bool
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)
    suggestions: List[ValidationIssue] = Field(default_factory=list)
    execution_time_ms: float = 0.0


class ValidationSummary(BaseModel):
    total_errors: int = 0
    total_warnings: int = 0
    total_suggestions: int = 0
    critical_issues: int = 0
    auto_fixable_issues: int = 0


class PerformanceProfile(BaseModel):
    estimated_execution_time: str = "< 1 second"
    resource_usage: str = "low"
    scalability_rating: int = 10


class SecurityProfile(BaseModel):
    security_score: int = 100
    vulnerabilities: List[ValidationIssue] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


class ValidationResult(BaseModel):
    """Aggregated result of a validation pass (chain or quality)."""
    valid: bool
    execution_id: Optional[str] = None
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)
    suggestions: List[ValidationIssue] = Field(default_factory=list)
    failed_layer: Optional[ValidationLayer] = None
    timings: Dict[str, float] = Field(default_factory=dict)

    # Quality pass only
    score: Optional[int] = None
    confidence: Optional[float] = None
    complexity: Optional[Complexity] = None
    stages: Dict[str, StageResult] = Field(default_factory=dict)
    summary: Optional[ValidationSummary] = None
    performance: Optional[PerformanceProfile] = None
    security: Optional[SecurityProfile] = None

    @property
    def issues(self) -> List[ValidationIssue]:
        return [*self.errors, *self.warnings, *self.suggestions]

    @property
    def has_fixable_errors(self) -> bool:
        return any(e.fixable for e in self.errors)


class AutoFixResult(BaseModel):
    """One fix applied by auto-fix, for presenting a diff to the user."""
    applied: bool = True
    fixed_errors: List[str] = Field(default_factory=list)
    modified_nodes: List[str] = Field(default_factory=list)
    description: str


# =============================================================================
# WORKFLOW OWNERSHIP
# =============================================================================
class WorkflowStatus(str, Enum):
    DRAFT = "draft"
    DEPLOYED = "deployed"


class DeploymentState(str, Enum):
    """Deployment status as seen on the owning workflow."""
    NOT_DEPLOYED = "not_deployed"
    DEPLOYED = "deployed"
    FAILED = "failed"
    HEAL_FAILED = "heal_failed"


class WorkflowRecord(BaseModel):
    """A user-owned workflow and its current definition."""
    id: str
    user_id: str
    name: str
    definition: Dict[str, Any]
    status: WorkflowStatus = WorkflowStatus.DRAFT
    deployment_status: DeploymentState = DeploymentState.NOT_DEPLOYED
    engine_workflow_id: Optional[str] = None
    deployment_url: Optional[str] = None
    last_deployed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# DEPLOYMENT
# =============================================================================
class DeploymentStatus(str, Enum):
    PENDING = "pending"
    VALIDATING = "validating"
    DEPLOYING = "deploying"
    DEPLOYED = "deployed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class ErrorCategory(str, Enum):
    VALIDATION_ERROR = "validation_error"
    NOT_FOUND = "not_found"
    SYSTEM_ERROR = "system_error"


class StatusChange(BaseModel):
    status: DeploymentStatus
    at: datetime = Field(default_factory=utcnow)
    note: Optional[str] = None


class DeploymentRecord(BaseModel):
    """Audit/state entity for one attempt to push a definition to n8n."""
    id: str
    user_id: str
    workflow_id: str
    status: DeploymentStatus = DeploymentStatus.PENDING
    engine_workflow_id: Optional[str] = None
    error: Optional[str] = None
    error_layer: Optional[ValidationLayer] = None
    error_category: Optional[ErrorCategory] = None
    validation_errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)
    deployment_url: Optional[str] = None
    webhook_url: Optional[str] = None
    test_mode: bool = False
    activate: bool = False
    rollback_on_failure: bool = False
    rollback_available: bool = False
    auto_heal_job_id: Optional[str] = None
    retry_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    history: List[StatusChange] = Field(default_factory=list)


class DeployOptions(BaseModel):
    activate: bool = False
    test_mode: bool = False
    rollback_on_failure: bool = False
    auto_heal: bool = False


class DeployRequest(DeployOptions):
    workflow_id: str


class DeploymentResult(BaseModel):
    """Result of a workflow deployment."""
    success: bool
    deployment_id: str
    workflow_id: str
    status: DeploymentStatus
    engine_workflow_id: Optional[str] = None
    deployment_url: Optional[str] = None
    webhook_url: Optional[str] = None
    error: Optional[str] = None
    error_category: Optional[ErrorCategory] = None
    error_layer: Optional[ValidationLayer] = None
    validation_errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)
    rollback_available: bool = False
    auto_heal_job_id: Optional[str] = None
    retry_count: int = 0

    @classmethod
    def from_record(cls, record: DeploymentRecord) -> "DeploymentResult":
        return cls(
            success=record.status == DeploymentStatus.DEPLOYED,
            deployment_id=record.id,
            workflow_id=record.workflow_id,
            status=record.status,
            engine_workflow_id=record.engine_workflow_id,
            deployment_url=record.deployment_url,
            webhook_url=record.webhook_url,
            error=record.error,
            error_category=record.error_category,
            error_layer=record.error_layer,
            validation_errors=record.validation_errors,
            warnings=record.warnings,
            rollback_available=record.rollback_available,
            auto_heal_job_id=record.auto_heal_job_id,
            retry_count=record.retry_count,
        )


class RollbackRequest(BaseModel):
    deployment_id: str
    reason: Optional[str] = None


class RollbackResult(BaseModel):
    success: bool
    message: str
    deployment_id: Optional[str] = None
    error: Optional[str] = None


class HealthCheckResult(BaseModel):
    healthy: bool
    status: str
    services: Dict[str, bool] = Field(default_factory=dict)
    metrics: Dict[str, float] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


# =============================================================================
# AUTO-HEAL
# =============================================================================
class HealJobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    HEALED = "healed"
    FAILED = "failed"


class AutoHealJob(BaseModel):
    id: str
    execution_id: str
    user_id: str
    workflow_id: str
    layer: Optional[ValidationLayer] = None
    errors: List[ValidationIssue] = Field(default_factory=list)
    retry_count: int = 0
    max_retries: int = 3
    status: HealJobStatus = HealJobStatus.QUEUED
    last_error: Optional[str] = None
    applied_fixes: List[AutoFixResult] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
