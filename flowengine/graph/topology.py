"""
Graph utilities: execution order, parallel layers and neighbourhood queries.

All functions are pure and deterministic. Ties are broken by the order of
the node list, so two runs of the same definition schedule identically.
"""

from collections import deque
from collections.abc import Iterable

from flowengine.errors import CycleError
from flowengine.schemas.workflow import EdgeDefinition, NodeDefinition


def _adjacency(
    nodes: list[NodeDefinition], edges: Iterable[EdgeDefinition]
) -> tuple[dict[str, list[str]], dict[str, int]]:
    node_ids = {n.id for n in nodes}
    successors: dict[str, list[str]] = {n.id: [] for n in nodes}
    in_degree: dict[str, int] = {n.id: 0 for n in nodes}
    seen: set[tuple[str, str]] = set()
    for edge in edges:
        if edge.source not in node_ids or edge.target not in node_ids:
            continue
        # Parallel edges (e.g. two handles to the same target) count once
        if (edge.source, edge.target) in seen:
            continue
        seen.add((edge.source, edge.target))
        successors[edge.source].append(edge.target)
        in_degree[edge.target] += 1
    return successors, in_degree


def execution_order(
    nodes: list[NodeDefinition], edges: list[EdgeDefinition]
) -> list[NodeDefinition]:
    """
    Topologically sort nodes with Kahn's algorithm.

    Among nodes that are ready at the same time, the one listed first in
    ``nodes`` runs first.

    Raises:
        CycleError: if the graph is not a DAG
    """
    successors, in_degree = _adjacency(nodes, edges)
    position = {n.id: i for i, n in enumerate(nodes)}
    by_id = {n.id: n for n in nodes}

    ready = sorted((nid for nid, deg in in_degree.items() if deg == 0), key=position.__getitem__)
    order: list[NodeDefinition] = []

    while ready:
        node_id = ready.pop(0)
        order.append(by_id[node_id])
        newly_ready = []
        for succ in successors[node_id]:
            in_degree[succ] -= 1
            if in_degree[succ] == 0:
                newly_ready.append(succ)
        if newly_ready:
            ready = sorted(ready + newly_ready, key=position.__getitem__)

    if len(order) != len(nodes):
        remaining = [n.id for n in nodes if in_degree[n.id] > 0]
        raise CycleError(remaining)

    return order


def parallel_layers(
    nodes: list[NodeDefinition], edges: list[EdgeDefinition]
) -> list[list[NodeDefinition]]:
    """
    Partition nodes into layers that can run concurrently.

    Layer k holds every node whose predecessors all sit in layers 0..k-1.
    Nodes inside a layer keep their ``nodes`` order.

    Raises:
        CycleError: if the graph is not a DAG
    """
    successors, in_degree = _adjacency(nodes, edges)
    by_id = {n.id: n for n in nodes}

    current = [n.id for n in nodes if in_degree[n.id] == 0]
    layers: list[list[NodeDefinition]] = []
    placed = 0

    while current:
        layers.append([by_id[nid] for nid in current])
        placed += len(current)
        next_ids: set[str] = set()
        for node_id in current:
            for succ in successors[node_id]:
                in_degree[succ] -= 1
                if in_degree[succ] == 0:
                    next_ids.add(succ)
        current = [n.id for n in nodes if n.id in next_ids]

    if placed != len(nodes):
        raise CycleError([n.id for n in nodes if in_degree[n.id] > 0])

    return layers


def predecessor_ids(node_id: str, edges: Iterable[EdgeDefinition]) -> list[str]:
    """Ids of nodes with an edge into ``node_id``, in edge order, without duplicates."""
    result: list[str] = []
    for edge in edges:
        if edge.target == node_id and edge.source not in result:
            result.append(edge.source)
    return result


def successor_ids(node_id: str, edges: Iterable[EdgeDefinition]) -> list[str]:
    """Ids of nodes that ``node_id`` has an edge into, in edge order, without duplicates."""
    result: list[str] = []
    for edge in edges:
        if edge.source == node_id and edge.target not in result:
            result.append(edge.target)
    return result


def reachable_from(node_id: str, edges: list[EdgeDefinition]) -> set[str]:
    """All nodes reachable from ``node_id`` (excluding itself), breadth first."""
    visited: set[str] = set()
    queue = deque(successor_ids(node_id, edges))
    while queue:
        current = queue.popleft()
        if current in visited:
            continue
        visited.add(current)
        queue.extend(s for s in successor_ids(current, edges) if s not in visited)
    visited.discard(node_id)
    return visited


def source_nodes(nodes: list[NodeDefinition], edges: list[EdgeDefinition]) -> list[NodeDefinition]:
    """Nodes without incoming edges."""
    targets = {e.target for e in edges}
    return [n for n in nodes if n.id not in targets]


def is_merge_node(node_id: str, edges: list[EdgeDefinition]) -> bool:
    return len(predecessor_ids(node_id, edges)) > 1


def is_fork_node(node_id: str, edges: list[EdgeDefinition]) -> bool:
    return len(successor_ids(node_id, edges)) > 1
