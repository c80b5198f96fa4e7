"""
Quality Validator - 7-Stage Scoring Pipeline
Runs independent quality stages concurrently and folds them into one
scored ValidationResult with performance and security profiles.
"""
import asyncio
import json
import math
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import urlparse

from n8n_deployer.core.logging import quality_logger as logger
from n8n_deployer.models.schemas import (
    Complexity,
    IssueKind,
    PerformanceProfile,
    SecurityProfile,
    Severity,
    StageResult,
    ValidationIssue,
    ValidationLayer,
    ValidationResult,
    ValidationSummary,
)
from n8n_deployer.services import graph
from n8n_deployer.services.node_types import NodeCapability, NodeTypeRegistry, default_registry
from n8n_deployer.services.validator import as_dict

STAGE_ORDER = (
    "structure",
    "nodes",
    "connections",
    "logic",
    "performance",
    "security",
    "best_practices",
)
REQUIRED_STAGES = frozenset({"structure", "nodes", "connections", "logic", "security"})
SECRET_MARKERS = ("password", "token", "secret")
LOCAL_HOSTS = ("localhost", "127.0.0.1")


@dataclass
class QualityOptions:
    stages: Optional[Sequence[str]] = None
    skip_stages: Sequence[str] = field(default_factory=tuple)

    def selected(self) -> List[str]:
        wanted = set(self.stages) if self.stages is not None else set(STAGE_ORDER)
        unknown = wanted.difference(STAGE_ORDER)
        if unknown:
            raise ValueError(f"Unknown quality stage(s): {', '.join(sorted(unknown))}")
        return [s for s in STAGE_ORDER if s in wanted and s not in self.skip_stages]


class _Findings:
    """Issue collector for one stage run."""

    def __init__(self, stage: str):
        self.stage = stage
        self.errors: List[ValidationIssue] = []
        self.warnings: List[ValidationIssue] = []
        self.suggestions: List[ValidationIssue] = []

    def _make(self, kind: IssueKind, code: str, message: str, **kwargs) -> ValidationIssue:
        return ValidationIssue(
            layer=ValidationLayer.QUALITY, stage=self.stage, kind=kind,
            code=code, message=message, **kwargs
        )

    def error(self, code: str, message: str, severity: Severity = Severity.HIGH, **kwargs):
        self.errors.append(self._make(IssueKind.ERROR, code, message, severity=severity, **kwargs))

    def warning(self, code: str, message: str, severity: Severity = Severity.MEDIUM, **kwargs):
        self.warnings.append(self._make(IssueKind.WARNING, code, message, severity=severity, **kwargs))

    def suggest(self, code: str, message: str, **kwargs):
        self.suggestions.append(self._make(IssueKind.SUGGESTION, code, message, severity=Severity.LOW, **kwargs))


def _nodes(raw: Mapping[str, Any]) -> List[Mapping[str, Any]]:
    nodes = raw.get("nodes")
    if not isinstance(nodes, list):
        return []
    return [n for n in nodes if isinstance(n, Mapping)]


def _params(node: Mapping[str, Any]) -> Mapping[str, Any]:
    params = node.get("parameters")
    return params if isinstance(params, Mapping) else {}


def _text(value: Any) -> Optional[str]:
    """The value when it is a string, None for any other JSON value."""
    return value if isinstance(value, str) else None


def _valid_url(value: str) -> bool:
    parsed = urlparse(value)
    return bool(parsed.scheme) and bool(parsed.netloc or parsed.path)


def classify_complexity(raw: Mapping[str, Any]) -> Complexity:
    """Size class from node count and number of connection sources."""
    node_count = len(_nodes(raw))
    connections = raw.get("connections")
    source_count = len(connections) if isinstance(connections, Mapping) else 0
    if node_count <= 3 and source_count <= 2:
        return Complexity.SIMPLE
    if node_count <= 10 and source_count <= 8:
        return Complexity.MEDIUM
    return Complexity.COMPLEX


def compute_score(errors: Sequence[ValidationIssue], warnings: Sequence[ValidationIssue]) -> int:
    critical = sum(1 for e in errors if e.severity == Severity.CRITICAL)
    return max(0, 100 - 25 * critical - 10 * len(errors) - 2 * len(warnings))


def compute_confidence(error_count: int, warning_count: int, stages_run: int) -> float:
    if stages_run == 0:
        return 100.0
    ratio = (error_count + 0.5 * warning_count) / (10 * stages_run) * 100
    return round(100 - min(100.0, ratio), 2)


class QualityValidator:
    """
    Seven-stage quality assessment. Stages are independent and pure,
    so they are fanned out to worker threads and joined in declaration order.
    """

    def __init__(self, registry: Optional[NodeTypeRegistry] = None, max_nodes: int = 50,
                 large_workflow_threshold: int = 20):
        self.registry = registry or default_registry()
        self.max_nodes = max_nodes
        self.large_workflow_threshold = large_workflow_threshold
        self._stages: Dict[str, Callable[[Mapping[str, Any], _Findings], None]] = {
            "structure": self._check_structure,
            "nodes": self._check_nodes,
            "connections": self._check_connections,
            "logic": self._check_logic,
            "performance": self._check_performance,
            "security": self._check_security,
            "best_practices": self._check_best_practices,
        }

    # =========================================================================
    # ENTRY POINT
    # =========================================================================
    async def assess(self, definition: Any, options: Optional[QualityOptions] = None) -> ValidationResult:
        options = options or QualityOptions()
        raw = as_dict(definition)
        if not isinstance(raw, Mapping):
            raw = {}
        selected = options.selected()
        execution_id = str(uuid.uuid4())
        start = time.perf_counter()

        stage_results = await asyncio.gather(
            *(asyncio.to_thread(self._run_stage, name, raw) for name in selected)
        )

        stages = {result.name: result for result in stage_results}
        errors = [e for r in stage_results for e in r.errors]
        warnings = [w for r in stage_results for w in r.warnings]
        suggestions = [s for r in stage_results for s in r.suggestions]

        result = ValidationResult(
            valid=all(r.passed for r in stage_results if r.required),
            execution_id=execution_id,
            errors=errors,
            warnings=warnings,
            suggestions=suggestions,
            stages=stages,
            timings={r.name: r.execution_time_ms for r in stage_results},
            score=compute_score(errors, warnings),
            confidence=compute_confidence(len(errors), len(warnings), len(stage_results)),
            complexity=classify_complexity(raw),
        )
        result.timings["total"] = (time.perf_counter() - start) * 1000
        result.summary = ValidationSummary(
            total_errors=len(errors),
            total_warnings=len(warnings),
            total_suggestions=len(suggestions),
            critical_issues=sum(1 for e in errors if e.severity == Severity.CRITICAL),
            auto_fixable_issues=sum(1 for i in result.issues if i.fixable),
        )
        result.performance = self.performance_profile(raw)
        result.security = self.security_profile(raw, stages.get("security"))

        logger.info(
            f"Quality {execution_id}: score={result.score} valid={result.valid} "
            f"stages={len(stage_results)} complexity={result.complexity.value}"
        )
        return result

    def _run_stage(self, name: str, raw: Mapping[str, Any]) -> StageResult:
        findings = _Findings(name)
        start = time.perf_counter()
        self._stages[name](raw, findings)
        elapsed = (time.perf_counter() - start) * 1000
        return StageResult(
            name=name,
            required=name in REQUIRED_STAGES,
            passed=not any(e.severity == Severity.CRITICAL for e in findings.errors),
            errors=findings.errors,
            warnings=findings.warnings,
            suggestions=findings.suggestions,
            execution_time_ms=elapsed,
        )

    # =========================================================================
    # STAGES
    # =========================================================================
    def _check_structure(self, raw: Mapping[str, Any], out: _Findings) -> None:
        name = raw.get("name")
        if not isinstance(name, str) or not name.strip():
            out.error("MISSING_NAME", "Workflow must have a name", Severity.CRITICAL,
                      fixable=True, path="name", suggestion="Add a descriptive name")
        elif len(name) > 255:
            out.error("NAME_TOO_LONG", "Workflow name exceeds 255 characters", Severity.MEDIUM,
                      fixable=True, path="name")

        nodes = raw.get("nodes")
        if not isinstance(nodes, list):
            out.error("MISSING_NODES", "Workflow must have a nodes array", Severity.CRITICAL,
                      path="nodes")
            return
        if not nodes:
            out.error("EMPTY_WORKFLOW", "Workflow must contain at least one node", Severity.CRITICAL,
                      path="nodes", suggestion="Add a trigger node to start the workflow")
            return
        if len(nodes) > self.large_workflow_threshold:
            out.warning("LARGE_WORKFLOW", "Large workflows may be difficult to maintain",
                        suggestion="Consider breaking into smaller sub-workflows")
        if len(nodes) > self.max_nodes:
            out.error("WORKFLOW_TOO_LARGE",
                      f"Workflow exceeds recommended maximum of {self.max_nodes} nodes",
                      Severity.HIGH, path="nodes")

    def _check_nodes(self, raw: Mapping[str, Any], out: _Findings) -> None:
        nodes = _nodes(raw)
        seen_ids = set()
        seen_names = set()

        for index, node in enumerate(nodes):
            path = f"nodes.{index}"
            mistyped = [
                f for f in ("id", "name", "type")
                if node.get(f) is not None and not isinstance(node.get(f), str)
            ]
            node_id = _text(node.get("id"))
            node_name = _text(node.get("name"))
            node_type = _text(node.get("type"))
            for field_name in mistyped:
                out.error("INVALID_TYPE", f"Node at index {index} has a non-string {field_name}",
                          Severity.CRITICAL, node_id=node_id, path=f"{path}.{field_name}",
                          suggestion=f"Set {field_name} to a string")

            if "id" not in mistyped:
                if not node_id:
                    out.error("MISSING_NODE_ID", f"Node at index {index} is missing an id",
                              Severity.CRITICAL, fixable=True, path=f"{path}.id")
                elif node_id in seen_ids:
                    out.error("DUPLICATE_NODE_ID", f"Duplicate node ID: {node_id}",
                              Severity.CRITICAL, fixable=True, node_id=node_id, path=f"{path}.id")
                seen_ids.add(node_id)

            if "name" not in mistyped:
                if not node_name:
                    out.error("MISSING_NODE_NAME", f"Node at index {index} is missing a name",
                              Severity.HIGH, fixable=True, node_id=node_id, path=f"{path}.name")
                elif node_name in seen_names:
                    out.error("DUPLICATE_NODE_NAME", f"Duplicate node name: {node_name}",
                              Severity.HIGH, fixable=True, node_id=node_id, path=f"{path}.name")
                seen_names.add(node_name)

            if "type" in mistyped:
                continue
            if not node_type:
                out.error("MISSING_NODE_TYPE", f"Node at index {index} is missing a type",
                          Severity.CRITICAL, node_id=node_id, path=f"{path}.type")
                continue

            spec = self.registry.get(node_type)
            if spec is None and not self.registry.is_trigger(node_type):
                out.warning("UNKNOWN_NODE_TYPE", f"Unknown node type: {node_type}", Severity.LOW,
                            node_id=node_id, path=f"{path}.type",
                            suggestion="Verify node type is supported in your n8n version")

            position = node.get("position")
            if not (isinstance(position, list) and len(position) == 2
                    and all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in position)):
                out.warning("INVALID_POSITION", f"Node {node_name} has an invalid canvas position",
                            Severity.LOW, fixable=True, node_id=node_id, path=f"{path}.position")

            params = _params(node)
            if spec is not None:
                for param in spec.required_params:
                    if not params.get(param):
                        out.error("MISSING_REQUIRED_PARAM",
                                  f"{node_type} node {node_name} missing required parameter: {param}",
                                  Severity.HIGH, node_id=node_id, path=f"{path}.parameters.{param}")

            capability = self.registry.capability_of(node_type)
            if capability == NodeCapability.HTTP_CALL:
                url = params.get("url")
                # Expressions are resolved at runtime
                if isinstance(url, str) and url and not url.startswith("=") and not _valid_url(url):
                    out.error("INVALID_URL", f"HTTP Request node {node_name} has invalid URL format",
                              Severity.HIGH, node_id=node_id, path=f"{path}.parameters.url")
            elif capability == NodeCapability.CODE and spec is not None and spec.code_param:
                code = params.get(spec.code_param)
                if code is not None and not str(code).strip():
                    out.error("EMPTY_CODE", f"Code node {node_name} has no code", Severity.HIGH,
                              node_id=node_id, path=f"{path}.parameters.{spec.code_param}")
            elif capability == NodeCapability.WEBHOOK_TRIGGER:
                webhook_path = params.get("path")
                if isinstance(webhook_path, str) and " " in webhook_path:
                    out.warning("WEBHOOK_PATH_SPACES", f"Webhook node {node_name} path contains spaces",
                                node_id=node_id, path=f"{path}.parameters.path",
                                suggestion="Use hyphens or underscores instead of spaces")

        if nodes and not any(self.registry.is_trigger(n.get("type")) for n in nodes):
            out.warning("NO_TRIGGER", "Workflow should have at least one trigger node for automatic execution",
                        suggestion="Add a webhook, schedule, or manual trigger node")

    def _check_connections(self, raw: Mapping[str, Any], out: _Findings) -> None:
        nodes = _nodes(raw)
        connections = raw.get("connections")
        if not isinstance(connections, Mapping):
            return
        index = graph.build_reference_index(nodes)

        for source in connections:
            if source not in index:
                out.error("INVALID_SOURCE_CONNECTION",
                          f"Connection source '{source}' does not match any node",
                          Severity.CRITICAL, fixable=True, path=f"connections.{source}")
        for edge in graph.iter_edges(dict(connections)):
            if not isinstance(edge.target, str) or edge.target not in index:
                out.error("INVALID_TARGET_CONNECTION",
                          f"Connection from '{edge.source}' targets unknown node '{edge.target}'",
                          Severity.CRITICAL, fixable=True, path=f"connections.{edge.source}")

        if any(self.registry.is_trigger(n.get("type")) for n in nodes):
            unreachable = graph.find_unreachable(nodes, dict(connections), self.registry)
            if unreachable:
                names = ", ".join(str(n.get("name")) for n in unreachable)
                out.warning("UNREACHABLE_NODES", f"Nodes not reachable from any trigger: {names}",
                            suggestion="Connect these nodes or remove them")

    def _check_logic(self, raw: Mapping[str, Any], out: _Findings) -> None:
        nodes = _nodes(raw)
        connections = raw.get("connections")
        if not isinstance(connections, Mapping):
            return

        cycle = graph.find_cycle(nodes, dict(connections))
        if cycle:
            out.error("CIRCULAR_DEPENDENCY", f"Workflow contains a cycle: {' -> '.join(cycle)}",
                      Severity.CRITICAL, node_id=cycle[0],
                      suggestion="Remove connections that create loops")

        for node in nodes:
            if not self.registry.has_capability(node.get("type"), NodeCapability.CONDITIONAL):
                continue
            outgoing = connections.get(_text(node.get("name"))) or connections.get(_text(node.get("id")))
            main = outgoing.get("main") if isinstance(outgoing, Mapping) else outgoing
            if isinstance(main, list) and len(main) < 2:
                out.warning("INCOMPLETE_CONDITIONAL",
                            f"Conditional node {node.get('name')} should have branches for different outcomes",
                            node_id=_text(node.get("id")))

    def _check_performance(self, raw: Mapping[str, Any], out: _Findings) -> None:
        nodes = _nodes(raw)
        http_nodes = [n for n in nodes if self.registry.has_capability(n.get("type"), NodeCapability.HTTP_CALL)]
        if len(http_nodes) > 10:
            out.warning("MANY_HTTP_REQUESTS", "High number of HTTP requests may impact performance",
                        suggestion="Consider batching requests or using pagination")

        for node in nodes:
            spec = self.registry.get(node.get("type"))
            if spec is None or not spec.code_param:
                continue
            code = str(_params(node).get(spec.code_param) or "")
            if "for" in code and "while" in code:
                out.warning("COMPLEX_FUNCTION_CODE", f"Code node {node.get('name')} contains nested loops",
                            node_id=_text(node.get("id")),
                            suggestion="Optimize function code to avoid performance issues")

    def _check_security(self, raw: Mapping[str, Any], out: _Findings) -> None:
        for node in _nodes(raw):
            params = _params(node)
            serialized = json.dumps(params, default=str).lower()
            if any(marker in serialized for marker in SECRET_MARKERS):
                out.warning("POTENTIAL_HARDCODED_CREDENTIALS",
                            f"Node {node.get('name')} may contain hardcoded credentials",
                            Severity.HIGH, node_id=_text(node.get("id")),
                            suggestion="Use credential stores instead of hardcoding sensitive data")

            capability = self.registry.capability_of(node.get("type"))
            if capability == NodeCapability.WEBHOOK_TRIGGER and not params.get("authentication"):
                out.warning("WEBHOOK_NO_AUTH", f"Webhook node {node.get('name')} has no authentication configured",
                            node_id=_text(node.get("id")),
                            suggestion="Configure authentication for production webhooks")
            elif capability == NodeCapability.HTTP_CALL:
                url = params.get("url")
                if isinstance(url, str) and url.startswith("http://"):
                    host = urlparse(url).hostname or ""
                    if host not in LOCAL_HOSTS:
                        out.warning("HTTP_NOT_HTTPS",
                                    f"HTTP Request node {node.get('name')} uses insecure HTTP protocol",
                                    node_id=_text(node.get("id")),
                                    suggestion="Use HTTPS for external API calls")

    def _check_best_practices(self, raw: Mapping[str, Any], out: _Findings) -> None:
        nodes = _nodes(raw)
        for node in nodes:
            name = node.get("name")
            if name and name == node.get("type"):
                out.suggest("GENERIC_NODE_NAME", f"Consider giving node {name} a more descriptive name",
                            node_id=_text(node.get("id")),
                            suggestion="Use descriptive names that explain what the node does")

        has_error_handling = any(
            "error" in str(n.get("name", "")).lower()
            or self.registry.has_capability(n.get("type"), NodeCapability.CONDITIONAL)
            or n.get("continueOnFail")
            or _params(n).get("continueOnFail")
            for n in nodes
        )
        if not has_error_handling and len(nodes) > 3:
            out.suggest("NO_ERROR_HANDLING", "Consider adding error handling for robust workflows",
                        suggestion='Add conditional nodes or enable "Continue on Fail" for critical nodes')

        has_docs = any(
            n.get("notes") or len(str(_params(n).get("description") or "")) > 10
            for n in nodes
        )
        if not has_docs and len(nodes) > 5:
            out.suggest("NO_DOCUMENTATION", "Add notes or descriptions to document complex workflow logic",
                        suggestion="Use node notes to explain business logic and complex operations")

    # =========================================================================
    # PROFILES
    # =========================================================================
    def performance_profile(self, raw: Mapping[str, Any]) -> PerformanceProfile:
        nodes = _nodes(raw)
        estimated_ms = 0
        usage = "low"
        for node in nodes:
            spec = self.registry.get(node.get("type"))
            estimated_ms += spec.estimated_ms if spec else 50
            if spec and spec.capability == NodeCapability.CODE:
                usage = "medium"
        if len(nodes) > 15:
            usage = "high"
        return PerformanceProfile(
            estimated_execution_time=(
                "< 1 second" if estimated_ms < 1000 else f"{math.ceil(estimated_ms / 1000)} seconds"
            ),
            resource_usage=usage,
            scalability_rating=max(1, min(10, 10 - len(nodes) // 5)),
        )

    def security_profile(self, raw: Mapping[str, Any], stage: Optional[StageResult]) -> SecurityProfile:
        vulnerabilities: List[ValidationIssue] = []
        if stage is not None:
            vulnerabilities = [i for i in (*stage.errors, *stage.warnings) if i.severity == Severity.HIGH]
        capabilities = {self.registry.capability_of(n.get("type")) for n in _nodes(raw)}
        recommendations: List[str] = []
        if NodeCapability.WEBHOOK_TRIGGER in capabilities:
            recommendations.append("Configure webhook authentication for production use")
        if NodeCapability.HTTP_CALL in capabilities:
            recommendations.append("Use HTTPS for all external API calls")
        return SecurityProfile(
            security_score=max(0, 100 - 15 * len(vulnerabilities)),
            vulnerabilities=vulnerabilities,
            recommendations=recommendations,
        )


def stage_breakdown(result: ValidationResult) -> List[Tuple[str, bool, int]]:
    """(stage, passed, issue count) rows for compact reporting."""
    return [
        (name, stage.passed, len(stage.errors) + len(stage.warnings) + len(stage.suggestions))
        for name, stage in result.stages.items()
    ]
