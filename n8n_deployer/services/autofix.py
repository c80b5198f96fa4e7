"""
Auto-Fix Engine
Deterministic repairs for fixable validation issues.

Every function here works on a deep copy: the caller's definition is never
mutated. Applying a fix twice yields the same definition as applying it once.
"""
import copy
import re
import uuid
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from n8n_deployer.models.schemas import AutoFixResult, ValidationIssue, ValidationResult
from n8n_deployer.services import graph
from n8n_deployer.services.node_types import NodeTypeRegistry, default_registry
from n8n_deployer.services.validator import INVALID_NAME_CHARS, as_dict

NAME_CODES = {"MISSING_NAME"}
NODE_ID_CODES = {"MISSING_NODE_ID", "DUPLICATE_NODE_ID"}
NODE_NAME_CODES = {"MISSING_NODE_NAME", "DUPLICATE_NODE_NAME"}
POSITION_CODES = {"INVALID_POSITION"}

HEAL_NAME_CODES = {"INVALID_WORKFLOW_NAME", "NAME_TOO_LONG"}
HEAL_CONNECTION_CODES = {
    "INVALID_CONNECTION",
    "INVALID_SOURCE_CONNECTION",
    "INVALID_TARGET_CONNECTION",
}

AUTO_FIX_CODES = NAME_CODES | NODE_ID_CODES | NODE_NAME_CODES | POSITION_CODES
HEAL_CODES = AUTO_FIX_CODES | HEAL_NAME_CODES | HEAL_CONNECTION_CODES

MAX_WORKFLOW_NAME = 255


def _humanize(identifier: str) -> str:
    return re.sub(r"([A-Z])", r" \1", identifier).strip()


def generate_workflow_name(nodes: List[Dict[str, Any]], registry: NodeTypeRegistry) -> str:
    """Name a workflow after its trigger and first action."""
    typed = [n for n in nodes if isinstance(n, dict) and isinstance(n.get("type"), str)]
    if not typed:
        return "Empty Workflow"
    trigger = next((n for n in typed if registry.is_trigger(n["type"])), None)
    actions = [n for n in typed if not registry.is_trigger(n["type"])]
    if trigger and actions:
        trigger_type = trigger["type"].split(".")[-1] or "trigger"
        action_type = actions[0]["type"].split(".")[-1] or "action"
        return _humanize(f"{trigger_type} to {action_type}")
    return "Generated Workflow"


def _valid_position(value: Any) -> bool:
    return (
        isinstance(value, list)
        and len(value) == 2
        and all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in value)
    )


def _unique(base: str, taken: Set[str], sep: str) -> str:
    candidate = base
    counter = 1
    while candidate in taken:
        candidate = f"{base}{sep}{counter}"
        counter += 1
    return candidate


def _fix_node_ids(nodes: List[Dict[str, Any]]) -> List[str]:
    modified = []
    taken: Set[str] = set()
    for node in nodes:
        node_id = node.get("id")
        if isinstance(node_id, str) and node_id.strip() and node_id not in taken:
            taken.add(node_id)
            continue
        if isinstance(node_id, str) and node_id.strip():
            new_id = _unique(node_id, taken, "_")
        else:
            new_id = str(uuid.uuid4())
        node["id"] = new_id
        taken.add(new_id)
        modified.append(new_id)
    return modified


def _fix_node_names(nodes: List[Dict[str, Any]], registry: NodeTypeRegistry) -> List[str]:
    modified = []
    taken: Set[str] = set()
    for node in nodes:
        name = node.get("name")
        if isinstance(name, str) and name.strip() and name not in taken:
            taken.add(name)
            continue
        base = name if isinstance(name, str) and name.strip() else registry.display_name(node.get("type"))
        node["name"] = _unique(base, taken, " ")
        taken.add(node["name"])
        modified.append(str(node.get("id")))
    return modified


def _fix_positions(nodes: List[Dict[str, Any]]) -> List[str]:
    modified = []
    for index, node in enumerate(nodes):
        if not _valid_position(node.get("position")):
            node["position"] = [240 + 220 * index, 300]
            modified.append(str(node.get("id")))
    return modified


def _prune_connections(workflow: Dict[str, Any]) -> int:
    """Drop connection entries that reference nodes which do not exist."""
    connections = workflow.get("connections")
    nodes = workflow.get("nodes")
    if not isinstance(connections, dict) or not isinstance(nodes, list):
        return 0
    index = graph.build_reference_index([n for n in nodes if isinstance(n, dict)])
    removed = 0
    for source in list(connections):
        if source not in index:
            del connections[source]
            removed += 1
            continue
        value = connections[source]
        outputs = value.values() if isinstance(value, dict) else [value]
        for groups in outputs:
            if not isinstance(groups, list):
                continue
            for group in groups:
                if not isinstance(group, list):
                    continue
                kept = [
                    t for t in group
                    if isinstance(t, dict) and isinstance(t.get("node"), str) and t["node"] in index
                ]
                removed += len(group) - len(kept)
                group[:] = kept
    return removed


def _apply(
    definition: Any,
    codes: Set[str],
    registry: NodeTypeRegistry
) -> Tuple[Dict[str, Any], List[AutoFixResult]]:
    workflow = copy.deepcopy(as_dict(definition))
    if not isinstance(workflow, dict):
        return workflow, []
    fixes: List[AutoFixResult] = []
    nodes = workflow.get("nodes")
    node_list = [n for n in nodes if isinstance(n, dict)] if isinstance(nodes, list) else []

    if codes & NODE_ID_CODES and node_list:
        modified = _fix_node_ids(node_list)
        if modified:
            fixes.append(AutoFixResult(
                fixed_errors=sorted(codes & NODE_ID_CODES),
                modified_nodes=modified,
                description=f"Assigned unique IDs to {len(modified)} node(s)"
            ))

    if codes & NODE_NAME_CODES and node_list:
        modified = _fix_node_names(node_list, registry)
        if modified:
            fixes.append(AutoFixResult(
                fixed_errors=sorted(codes & NODE_NAME_CODES),
                modified_nodes=modified,
                description=f"Assigned unique names to {len(modified)} node(s)"
            ))

    if codes & POSITION_CODES and node_list:
        modified = _fix_positions(node_list)
        if modified:
            fixes.append(AutoFixResult(
                fixed_errors=["INVALID_POSITION"],
                modified_nodes=modified,
                description=f"Laid out {len(modified)} node(s) on the canvas"
            ))

    name = workflow.get("name")
    if "INVALID_WORKFLOW_NAME" in codes and isinstance(name, str) and INVALID_NAME_CHARS.search(name):
        workflow["name"] = INVALID_NAME_CHARS.sub("", name).strip()
        fixes.append(AutoFixResult(
            fixed_errors=["INVALID_WORKFLOW_NAME"],
            description="Removed invalid characters from the workflow name"
        ))
    name = workflow.get("name")
    if "NAME_TOO_LONG" in codes and isinstance(name, str) and len(name) > MAX_WORKFLOW_NAME:
        workflow["name"] = name[:MAX_WORKFLOW_NAME].rstrip()
        fixes.append(AutoFixResult(
            fixed_errors=["NAME_TOO_LONG"],
            description=f"Truncated the workflow name to {MAX_WORKFLOW_NAME} characters"
        ))
    name = workflow.get("name")
    if codes & (NAME_CODES | HEAL_NAME_CODES) and (not isinstance(name, str) or not name.strip()):
        workflow["name"] = generate_workflow_name(node_list, registry)
        fixes.append(AutoFixResult(
            fixed_errors=["MISSING_NAME"],
            description=f"Generated workflow name: {workflow['name']}"
        ))

    if codes & HEAL_CONNECTION_CODES:
        removed = _prune_connections(workflow)
        if removed:
            fixes.append(AutoFixResult(
                fixed_errors=sorted(codes & HEAL_CONNECTION_CODES),
                description=f"Removed {removed} connection(s) to missing nodes"
            ))

    return workflow, fixes


def _fixable_codes(issues: Iterable[ValidationIssue], allowed: Set[str]) -> Set[str]:
    return {issue.code for issue in issues if issue.fixable and issue.code in allowed}


def auto_fix(
    definition: Any,
    result: Optional[ValidationResult] = None,
    registry: Optional[NodeTypeRegistry] = None
) -> Tuple[Dict[str, Any], List[AutoFixResult]]:
    """
    Apply the fixes flagged as fixable in `result`.

    With no result every auto-fixable category is attempted; categories
    with nothing to repair are no-ops.
    """
    registry = registry or default_registry()
    codes = set(AUTO_FIX_CODES) if result is None else _fixable_codes(result.issues, AUTO_FIX_CODES)
    return _apply(definition, codes, registry)


def heal_definition(
    definition: Any,
    errors: Iterable[ValidationIssue],
    registry: Optional[NodeTypeRegistry] = None
) -> Tuple[Dict[str, Any], List[AutoFixResult]]:
    """Auto-fix plus the chain-layer repairs used by the auto-heal worker."""
    registry = registry or default_registry()
    return _apply(definition, _fixable_codes(errors, HEAL_CODES), registry)
