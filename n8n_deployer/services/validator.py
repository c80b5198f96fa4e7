"""
Workflow Validator - Structure, Business and Compatibility Layers
Fail-fast validation chain run before any workflow is deployed to n8n.

Each layer runs only when the previous one produced no blocking error.
Validation failures are returned as structured results, never raised.
"""
import re
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from n8n_deployer.core.logging import validator_logger as logger
from n8n_deployer.models.schemas import (
    IssueKind,
    Severity,
    ValidationIssue,
    ValidationLayer,
    ValidationResult,
    WorkflowDefinition,
)
from n8n_deployer.services import graph
from n8n_deployer.services.node_types import NodeCapability, NodeTypeRegistry, default_registry

INVALID_NAME_CHARS = re.compile(r'[<>:"/\\|?*]')
COLOR_PATTERN = re.compile(r"^#[0-9A-Fa-f]{6}$")

NODE_FIELD_CODES = {
    "id": "MISSING_NODE_ID",
    "name": "MISSING_NODE_NAME",
    "type": "MISSING_NODE_TYPE",
}


@dataclass(frozen=True)
class ValidationLimits:
    """Numeric ceilings enforced by the validator chain."""
    max_nodes: int = 50
    max_nodes_hard: int = 100
    large_workflow_threshold: int = 20
    many_connections_threshold: int = 40
    many_http_threshold: int = 10
    max_node_id_length: int = 50
    max_node_name_length: int = 100
    max_type_version: float = 10
    max_notes_length: int = 1000
    max_tags: int = 10
    max_tag_length: int = 50
    strict_node_types: bool = False

    @classmethod
    def from_settings(cls, settings) -> "ValidationLimits":
        return cls(
            max_nodes=settings.max_nodes,
            max_nodes_hard=settings.max_nodes_hard,
            large_workflow_threshold=settings.large_workflow_threshold,
            strict_node_types=settings.strict_node_types,
        )


Definition = Union[Mapping[str, Any], BaseModel]


def as_dict(definition: Any) -> Any:
    """Plain-data view of a definition; pydantic models are dumped."""
    if isinstance(definition, BaseModel):
        return definition.model_dump(exclude_none=True)
    return definition


def _issue(layer: ValidationLayer, code: str, message: str, **kwargs) -> ValidationIssue:
    return ValidationIssue(layer=layer, code=code, message=message, **kwargs)


def _node_id_at(raw: Any, index: int) -> Optional[str]:
    try:
        node_id = raw["nodes"][index].get("id")
    except (KeyError, IndexError, TypeError, AttributeError):
        return None
    return node_id if isinstance(node_id, str) and node_id else None


# =============================================================================
# LAYER 1: STRUCTURE
# =============================================================================
def _structure_issue(error: Dict[str, Any], raw: Any) -> ValidationIssue:
    """Translate one pydantic error into a structural ValidationIssue."""
    loc = tuple(error.get("loc", ()))
    kind = error.get("type", "")
    path = ".".join(str(part) for part in loc) or "workflow"
    detail = error.get("msg", "invalid value")
    layer = ValidationLayer.STRUCTURE

    in_node = len(loc) >= 3 and loc[0] == "nodes" and isinstance(loc[1], int)
    node_id = _node_id_at(raw, loc[1]) if in_node else None

    if loc == ():
        return _issue(layer, "INVALID_TYPE", "Workflow definition must be a JSON object",
                      severity=Severity.CRITICAL, path=path,
                      suggestion="Send the workflow as an object with name, active, nodes and connections")

    if loc == ("nodes",):
        if kind == "missing":
            return _issue(layer, "MISSING_NODES", "Workflow must have a nodes array",
                          severity=Severity.CRITICAL, path=path,
                          suggestion="Add a nodes array with at least one node")
        if kind == "too_short":
            return _issue(layer, "EMPTY_WORKFLOW", "Workflow must have at least one node",
                          severity=Severity.CRITICAL, path=path,
                          suggestion="Add a trigger node to start the workflow")

    if loc == ("name",):
        if kind in ("missing", "string_too_short"):
            return _issue(layer, "MISSING_NAME", "Workflow name is required",
                          severity=Severity.CRITICAL, fixable=True, path=path,
                          suggestion="Give the workflow a descriptive name")
        if kind == "string_too_long":
            return _issue(layer, "NAME_TOO_LONG", "Workflow name cannot exceed 255 characters",
                          severity=Severity.HIGH, fixable=True, path=path,
                          suggestion="Reduce the length to maximum 255 characters")

    if in_node and loc[2] == "position":
        return _issue(layer, "INVALID_POSITION", f"Node position must be two numbers ({detail})",
                      severity=Severity.HIGH, fixable=True, node_id=node_id, path=path,
                      suggestion="Use [x, y] canvas coordinates")

    if in_node and len(loc) == 3 and kind == "missing" and loc[2] in NODE_FIELD_CODES:
        field = loc[2]
        return _issue(layer, NODE_FIELD_CODES[field], f"Node is missing required property: {field}",
                      severity=Severity.CRITICAL, fixable=field != "type",
                      node_id=node_id, path=path,
                      suggestion=f"Add the required property: {field}")

    if kind == "missing":
        return _issue(layer, "MISSING_FIELD", f"Missing required property: {path}",
                      severity=Severity.CRITICAL, fixable=True, node_id=node_id, path=path,
                      suggestion=f"Add the required property: {loc[-1]}")

    if kind.endswith("_type") or kind == "is_instance_of":
        return _issue(layer, "INVALID_TYPE", f"{path}: {detail}",
                      severity=Severity.CRITICAL, node_id=node_id, path=path,
                      suggestion="Change the value to the expected type")

    if kind in ("too_short", "string_too_short"):
        code = "VALUE_TOO_SHORT"
    elif kind in ("too_long", "string_too_long"):
        code = "VALUE_TOO_LONG"
    elif kind.startswith(("greater_than", "less_than")):
        code = "VALUE_OUT_OF_RANGE"
    else:
        return _issue(layer, "INVALID_VALUE", f"{path}: {detail}",
                      severity=Severity.HIGH, node_id=node_id, path=path)

    return _issue(layer, code, f"{path}: {detail}",
                  severity=Severity.HIGH, fixable=True, node_id=node_id, path=path)


def validate_structure(definition: Definition, limits: Optional[ValidationLimits] = None) -> List[ValidationIssue]:
    """Shape, presence and arity checks. Every issue returned is blocking."""
    limits = limits or ValidationLimits()
    raw = as_dict(definition)
    layer = ValidationLayer.STRUCTURE

    try:
        WorkflowDefinition.model_validate(raw)
        issues: List[ValidationIssue] = []
    except PydanticValidationError as e:
        issues = [_structure_issue(error, raw) for error in e.errors()]

    if not isinstance(raw, Mapping):
        return issues

    nodes = raw.get("nodes")
    if isinstance(nodes, list):
        if len(nodes) > limits.max_nodes_hard:
            issues.append(_issue(
                layer, "NODE_LIMIT_EXCEEDED",
                f"Workflow has {len(nodes)} nodes; the hard maximum is {limits.max_nodes_hard}",
                severity=Severity.HIGH, path="nodes",
                suggestion="Split the workflow into sub-workflows"
            ))
        for index, node in enumerate(nodes):
            if not isinstance(node, Mapping) or node.get("disabled") is True:
                continue
            for field, code in NODE_FIELD_CODES.items():
                value = node.get(field)
                if isinstance(value, str) and not value.strip():
                    issues.append(_issue(
                        layer, code, f"Node property '{field}' must not be empty",
                        severity=Severity.CRITICAL, fixable=field != "type",
                        node_id=_node_id_at(raw, index), path=f"nodes.{index}.{field}"
                    ))

    connections = raw.get("connections")
    if isinstance(connections, Mapping):
        for path in graph.connection_shape_errors(dict(connections)):
            issues.append(_issue(
                layer, "MALFORMED_CONNECTION",
                f"Connection entry at {path} does not follow the n8n connection format",
                severity=Severity.CRITICAL, path=path,
                suggestion='Use {"main": [[{"node": "<target>", "type": "main", "index": 0}]]}'
            ))

    return issues


# =============================================================================
# LAYER 2: BUSINESS RULES
# =============================================================================
def validate_business(
    definition: Definition,
    limits: Optional[ValidationLimits] = None,
    registry: Optional[NodeTypeRegistry] = None
) -> tuple:
    """
    Cross-field domain invariants.

    Returns:
        (errors, warnings) - errors block deployment, warnings never do.
    """
    limits = limits or ValidationLimits()
    registry = registry or default_registry()
    raw = as_dict(definition)
    layer = ValidationLayer.BUSINESS
    errors: List[ValidationIssue] = []
    warnings: List[ValidationIssue] = []
    nodes = raw.get("nodes", [])

    name = raw.get("name", "")
    if not name.strip():
        errors.append(_issue(layer, "MISSING_NAME", "Workflow name must not be blank",
                             severity=Severity.CRITICAL, fixable=True, path="name"))
    elif INVALID_NAME_CHARS.search(name):
        errors.append(_issue(layer, "INVALID_WORKFLOW_NAME", "Workflow name contains invalid characters",
                             severity=Severity.HIGH, fixable=True, path="name",
                             suggestion='Remove the characters < > : " / \\ | ? *'))

    if len(nodes) > limits.max_nodes:
        errors.append(_issue(layer, "TOO_MANY_NODES",
                             f"Too many nodes ({len(nodes)}, max: {limits.max_nodes})",
                             severity=Severity.HIGH, path="nodes",
                             suggestion="Break workflow into multiple smaller workflows"))

    seen_ids = set()
    seen_names = set()
    for index, node in enumerate(nodes):
        node_id = node.get("id")
        node_name = node.get("name")
        node_type = node.get("type", "")
        path = f"nodes.{index}"

        if node_id in seen_ids:
            errors.append(_issue(layer, "DUPLICATE_NODE_ID", f"Duplicate node ID: {node_id}",
                                 severity=Severity.CRITICAL, fixable=True, node_id=node_id,
                                 path=f"{path}.id",
                                 suggestion="Rename the duplicate node ID; nodes are never merged"))
        seen_ids.add(node_id)

        if node_name in seen_names:
            errors.append(_issue(layer, "DUPLICATE_NODE_NAME", f"Duplicate node name: {node_name}",
                                 severity=Severity.HIGH, fixable=True, node_id=node_id,
                                 path=f"{path}.name",
                                 suggestion="Give every node a unique name"))
        seen_names.add(node_name)

        if len(node_id) > limits.max_node_id_length:
            errors.append(_issue(layer, "NODE_ID_TOO_LONG",
                                 f"Node ID exceeds {limits.max_node_id_length} characters",
                                 severity=Severity.MEDIUM, fixable=True, node_id=node_id,
                                 path=f"{path}.id"))
        if len(node_name) > limits.max_node_name_length:
            errors.append(_issue(layer, "NODE_NAME_TOO_LONG",
                                 f"Node name exceeds {limits.max_node_name_length} characters",
                                 severity=Severity.MEDIUM, fixable=True, node_id=node_id,
                                 path=f"{path}.name"))
        if ".." in node_type or "__proto__" in node_type:
            errors.append(_issue(layer, "INVALID_NODE_TYPE", f"Invalid node type: {node_type}",
                                 severity=Severity.CRITICAL, node_id=node_id, path=f"{path}.type"))
        if node.get("typeVersion", 1) > limits.max_type_version:
            errors.append(_issue(layer, "UNSUPPORTED_TYPE_VERSION",
                                 f"typeVersion {node.get('typeVersion')} is not supported",
                                 severity=Severity.HIGH, node_id=node_id, path=f"{path}.typeVersion"))

        notes = node.get("notes")
        if notes is not None and len(notes) > limits.max_notes_length:
            errors.append(_issue(layer, "NOTES_TOO_LONG",
                                 f"Node notes exceed {limits.max_notes_length} characters",
                                 severity=Severity.LOW, fixable=True, node_id=node_id,
                                 path=f"{path}.notes"))
        color = node.get("color")
        if color is not None and not COLOR_PATTERN.match(color):
            errors.append(_issue(layer, "INVALID_COLOR", f"Node color must be #RRGGBB, got {color!r}",
                                 severity=Severity.LOW, fixable=True, node_id=node_id,
                                 path=f"{path}.color"))

    tags = raw.get("tags") or []
    if len(tags) > limits.max_tags:
        errors.append(_issue(layer, "TOO_MANY_TAGS", f"At most {limits.max_tags} tags are allowed",
                             severity=Severity.MEDIUM, fixable=True, path="tags"))
    for index, tag in enumerate(tags):
        label = tag.get("name") if isinstance(tag, Mapping) else tag
        if not isinstance(label, str) or len(label) > limits.max_tag_length:
            errors.append(_issue(layer, "INVALID_TAG",
                                 f"Tag must be a name of at most {limits.max_tag_length} characters",
                                 severity=Severity.MEDIUM, fixable=True, path=f"tags.{index}"))

    # Advisory only
    if len(nodes) > limits.large_workflow_threshold:
        warnings.append(_issue(layer, "LARGE_WORKFLOW", "Workflow is quite complex",
                               kind=IssueKind.WARNING, severity=Severity.MEDIUM,
                               suggestion="Consider breaking into smaller sub-workflows"))
    edge_count = graph.count_edges(raw.get("connections"))
    if edge_count > limits.many_connections_threshold:
        warnings.append(_issue(layer, "MANY_CONNECTIONS",
                               f"Workflow has {edge_count} connections",
                               kind=IssueKind.WARNING, severity=Severity.MEDIUM,
                               suggestion="Consider simplifying the data flow"))
    http_nodes = [n for n in nodes if registry.has_capability(n.get("type"), NodeCapability.HTTP_CALL)]
    if len(http_nodes) > limits.many_http_threshold:
        warnings.append(_issue(layer, "MANY_HTTP_REQUESTS",
                               "Many HTTP nodes may cause performance issues",
                               kind=IssueKind.WARNING, severity=Severity.MEDIUM,
                               suggestion="Consider using batch operations or sub-workflows"))

    return errors, warnings


# =============================================================================
# LAYER 3: n8n COMPATIBILITY
# =============================================================================
def validate_compatibility(
    definition: Definition,
    registry: Optional[NodeTypeRegistry] = None,
    limits: Optional[ValidationLimits] = None
) -> tuple:
    """
    Checks against what the target n8n instance can run.

    Returns:
        (errors, warnings)
    """
    registry = registry or default_registry()
    limits = limits or ValidationLimits()
    raw = as_dict(definition)
    layer = ValidationLayer.COMPATIBILITY
    errors: List[ValidationIssue] = []
    warnings: List[ValidationIssue] = []
    nodes = raw.get("nodes", [])
    connections = raw.get("connections", {})
    names = {n["id"]: n.get("name", n["id"]) for n in nodes}

    # Connection references: exactly one error per unresolved reference
    index = graph.build_reference_index(nodes)
    for source in connections:
        if source not in index:
            errors.append(_issue(layer, "INVALID_CONNECTION",
                                 f"Connection references non-existent node: {source}",
                                 severity=Severity.HIGH, fixable=True, node_id=source,
                                 path=f"connections.{source}",
                                 suggestion="Remove invalid connections or add missing nodes"))
    for edge in graph.iter_edges(connections):
        if edge.target not in index:
            errors.append(_issue(layer, "INVALID_CONNECTION",
                                 f"Connection from {edge.source} references non-existent node: {edge.target}",
                                 severity=Severity.HIGH, fixable=True, node_id=edge.target,
                                 path=f"connections.{edge.source}.{edge.connection_type}[{edge.output_index}]",
                                 suggestion="Remove invalid connections or add missing nodes"))

    for position, node in enumerate(nodes):
        node_type = node.get("type")
        path = f"nodes.{position}"
        if registry.is_denied(node_type):
            errors.append(_issue(layer, "DENIED_NODE_TYPE", f"Node type '{node_type}' is not allowed",
                                 severity=Severity.CRITICAL, node_id=node["id"], path=path,
                                 suggestion="Use an alternative node type"))
        elif not registry.is_known(node_type):
            if limits.strict_node_types:
                errors.append(_issue(layer, "UNSUPPORTED_NODE_TYPE",
                                     f"Node type '{node_type}' is not available on this n8n instance",
                                     severity=Severity.HIGH, node_id=node["id"], path=path,
                                     suggestion="Install the community package or pick a core node"))
            else:
                warnings.append(_issue(layer, "UNKNOWN_NODE_TYPE",
                                       f"Unknown or uncommon node type: {node_type}",
                                       kind=IssueKind.WARNING, severity=Severity.LOW,
                                       node_id=node["id"], path=path,
                                       suggestion="Verify node type is supported in your n8n version"))

        if node.get("disabled"):
            continue
        if registry.requires_credentials(node_type) and not node.get("credentials"):
            errors.append(_issue(layer, "MISSING_CREDENTIALS",
                                 f"Node '{node.get('name')}' requires credentials",
                                 severity=Severity.HIGH, fixable=False, node_id=node["id"],
                                 path=f"{path}.credentials",
                                 suggestion="Add required credentials for this node"))

    cycle = graph.find_cycle(nodes, connections)
    if cycle:
        route = " -> ".join(names.get(node_id, node_id) for node_id in cycle)
        errors.append(_issue(layer, "CIRCULAR_DEPENDENCY",
                             f"Workflow contains circular dependencies: {route}",
                             severity=Severity.CRITICAL, node_id=cycle[0], path="connections",
                             suggestion="Remove connections that create loops"))

    enabled = [n for n in nodes if not n.get("disabled")]
    if not any(registry.is_trigger(n.get("type")) for n in enabled):
        warnings.append(_issue(layer, "NO_TRIGGER",
                               "Workflow should have at least one trigger node",
                               kind=IssueKind.WARNING, severity=Severity.MEDIUM,
                               suggestion="Add a webhook, schedule, or manual trigger node"))
    else:
        for node in graph.find_unreachable(nodes, connections, registry):
            warnings.append(_issue(layer, "UNREACHABLE_NODE",
                                   f"Node '{node.get('name')}' is not reachable from any trigger",
                                   kind=IssueKind.WARNING, severity=Severity.MEDIUM,
                                   node_id=node["id"],
                                   suggestion="Connect the node to the workflow or remove it"))

    return errors, warnings


# =============================================================================
# CHAIN
# =============================================================================
def validate_workflow(
    definition: Definition,
    registry: Optional[NodeTypeRegistry] = None,
    limits: Optional[ValidationLimits] = None,
    execution_id: Optional[str] = None
) -> ValidationResult:
    """
    Run the structure -> business -> compatibility chain, stopping at the
    first layer that reports a blocking error.
    """
    registry = registry or default_registry()
    limits = limits or ValidationLimits()
    execution_id = execution_id or str(uuid.uuid4())
    timings: Dict[str, float] = {}
    warnings: List[ValidationIssue] = []
    chain_start = time.perf_counter()

    def _failed(layer: ValidationLayer, errors: List[ValidationIssue]) -> ValidationResult:
        timings["total"] = (time.perf_counter() - chain_start) * 1000
        logger.info(
            f"Validation {execution_id} failed at {layer.value} layer "
            f"with {len(errors)} error(s)"
        )
        return ValidationResult(
            valid=False,
            execution_id=execution_id,
            errors=errors,
            warnings=warnings,
            failed_layer=layer,
            timings=timings
        )

    start = time.perf_counter()
    structure_errors = validate_structure(definition, limits)
    timings[ValidationLayer.STRUCTURE.value] = (time.perf_counter() - start) * 1000
    if structure_errors:
        return _failed(ValidationLayer.STRUCTURE, structure_errors)

    start = time.perf_counter()
    business_errors, business_warnings = validate_business(definition, limits, registry)
    timings[ValidationLayer.BUSINESS.value] = (time.perf_counter() - start) * 1000
    warnings.extend(business_warnings)
    if business_errors:
        return _failed(ValidationLayer.BUSINESS, business_errors)

    start = time.perf_counter()
    compat_errors, compat_warnings = validate_compatibility(definition, registry, limits)
    timings[ValidationLayer.COMPATIBILITY.value] = (time.perf_counter() - start) * 1000
    warnings.extend(compat_warnings)
    if compat_errors:
        return _failed(ValidationLayer.COMPATIBILITY, compat_errors)

    timings["total"] = (time.perf_counter() - chain_start) * 1000
    logger.info(f"Validation {execution_id} passed with {len(warnings)} warning(s)")
    return ValidationResult(
        valid=True,
        execution_id=execution_id,
        warnings=warnings,
        timings=timings
    )
