"""
Connection Graph Analysis
Reference resolution, reachability and cycle detection over n8n connections.

This is the single cycle-detection implementation used by both the
deployment validator chain and the quality validator.
"""
from collections import deque
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Set

from n8n_deployer.services.node_types import NodeCapability, NodeTypeRegistry


@dataclass(frozen=True)
class Edge:
    """One directed connection from a source output to a target input."""
    source: str
    target: Any
    output_index: int
    input_index: int
    connection_type: str = "main"


def _output_groups(value: Any) -> Iterator[tuple]:
    """Yield (connection_type, groups) for one source entry."""
    if isinstance(value, dict):
        for connection_type, groups in value.items():
            yield connection_type, groups
    elif isinstance(value, list):
        yield "main", value


def iter_edges(connections: Any) -> Iterator[Edge]:
    """
    Yield every edge of a connection mapping. Malformed entries are skipped;
    the structure layer reports them.
    """
    if not isinstance(connections, dict):
        return
    for source, value in connections.items():
        for connection_type, groups in _output_groups(value):
            if not isinstance(groups, list):
                continue
            for output_index, group in enumerate(groups):
                if not isinstance(group, list):
                    continue
                for target in group:
                    if not isinstance(target, dict):
                        continue
                    input_index = target.get("index", 0)
                    yield Edge(
                        source=source,
                        target=target.get("node"),
                        output_index=output_index,
                        input_index=input_index if isinstance(input_index, int) else 0,
                        connection_type=connection_type,
                    )


def connection_shape_errors(connections: Any) -> List[str]:
    """Paths of connection entries that do not follow the n8n wire format."""
    problems: List[str] = []
    if not isinstance(connections, dict):
        return ["connections"]
    for source, value in connections.items():
        base = f"connections.{source}"
        if not isinstance(value, (dict, list)):
            problems.append(base)
            continue
        for connection_type, groups in _output_groups(value):
            path = f"{base}.{connection_type}" if isinstance(value, dict) else base
            if not isinstance(groups, list):
                problems.append(path)
                continue
            for output_index, group in enumerate(groups):
                # n8n writes null for an unconnected output
                if group is None:
                    continue
                if not isinstance(group, list):
                    problems.append(f"{path}[{output_index}]")
                    continue
                for position, target in enumerate(group):
                    if not isinstance(target, dict) or not isinstance(target.get("node"), str):
                        problems.append(f"{path}[{output_index}][{position}]")
    return problems


def build_reference_index(nodes: Sequence[Mapping[str, Any]]) -> Dict[str, str]:
    """
    Map every valid connection reference to a node id. References resolve
    against node ids first, then node names.
    """
    index: Dict[str, str] = {}
    for node in nodes:
        name = node.get("name")
        node_id = node.get("id")
        if isinstance(name, str) and name and isinstance(node_id, str) and node_id:
            index.setdefault(name, node_id)
    for node in nodes:
        node_id = node.get("id")
        if isinstance(node_id, str) and node_id:
            index[node_id] = node_id
    return index


def adjacency(nodes: Sequence[Mapping[str, Any]], connections: Any) -> Dict[str, List[str]]:
    """Resolved successor lists keyed by node id, in discovery order."""
    index = build_reference_index(nodes)
    graph: Dict[str, List[str]] = {node_id: [] for node_id in dict.fromkeys(index.values())}
    for edge in iter_edges(connections):
        source = index.get(edge.source)
        target = index.get(edge.target) if isinstance(edge.target, str) else None
        if source is None or target is None:
            continue
        graph[source].append(target)
    return graph


def find_reachable(
    nodes: Sequence[Mapping[str, Any]],
    connections: Any,
    registry: NodeTypeRegistry
) -> Set[str]:
    """Breadth-first traversal seeded from every trigger node."""
    graph = adjacency(nodes, connections)
    queue = deque(
        node["id"] for node in nodes
        if isinstance(node.get("id"), str) and registry.is_trigger(node.get("type"))
    )
    reachable: Set[str] = set()
    while queue:
        node_id = queue.popleft()
        if node_id in reachable:
            continue
        reachable.add(node_id)
        for target in graph.get(node_id, []):
            if target not in reachable:
                queue.append(target)
    return reachable


def find_unreachable(
    nodes: Sequence[Mapping[str, Any]],
    connections: Any,
    registry: NodeTypeRegistry
) -> List[Mapping[str, Any]]:
    """Enabled, non-annotation nodes no trigger can reach."""
    reachable = find_reachable(nodes, connections, registry)
    return [
        node for node in nodes
        if isinstance(node.get("id"), str)
        and node["id"] not in reachable
        and not node.get("disabled")
        and not registry.has_capability(node.get("type"), NodeCapability.ANNOTATION)
    ]


def find_cycle(nodes: Sequence[Mapping[str, Any]], connections: Any) -> Optional[List[str]]:
    """
    Depth-first search for a directed cycle.

    Returns the node ids along the first cycle found (first id repeated at
    the end), or None when the graph is acyclic.
    """
    graph = adjacency(nodes, connections)
    WHITE, GREY, BLACK = 0, 1, 2
    color = {node_id: WHITE for node_id in graph}

    for root in graph:
        if color[root] != WHITE:
            continue
        path: List[str] = [root]
        color[root] = GREY
        stack = [iter(graph[root])]
        while stack:
            advanced = False
            for target in stack[-1]:
                if color[target] == GREY:
                    return path[path.index(target):] + [target]
                if color[target] == WHITE:
                    color[target] = GREY
                    path.append(target)
                    stack.append(iter(graph[target]))
                    advanced = True
                    break
            if not advanced:
                color[path.pop()] = BLACK
                stack.pop()
    return None


def count_edges(connections: Any) -> int:
    return sum(1 for _ in iter_edges(connections))
