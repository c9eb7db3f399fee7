"""
Branch routing for LOGIC and CONDITION nodes.

Routing works on edges. An edge is inactive when its source was skipped or
failed, or when its source is a branching node whose decision did not pick
it. A node runs only if at least one incoming edge is active. Skips therefore
propagate downstream on their own and stop wherever another active path
still reaches a node.
"""

import logging
from collections import deque

from flowengine.graph.topology import successor_ids
from flowengine.schemas.execution import NodeOutput, NodeStatus
from flowengine.schemas.workflow import EdgeDefinition, NodeType

logger = logging.getLogger(__name__)

BRANCHING_LOGIC_MODES = ("condition", "switch")
FALLBACK_HANDLES = ("fallback", "default", "else")


def branch_selected(edge: EdgeDefinition, output: NodeOutput) -> bool:
    """Whether the branching decision recorded in ``output`` selects ``edge``."""
    data = output.data
    handle = edge.source_handle

    if output.node_type == "CONDITION":
        if handle == "true":
            return bool(data.get("result"))
        if handle == "false":
            return not data.get("result")
        return True

    if output.node_type != NodeType.LOGIC or data.get("mode", "condition") not in BRANCHING_LOGIC_MODES:
        return True

    matched = bool(data.get("matched"))
    matched_id = data.get("matched_condition_id")
    target = data.get("matched_target_node_id")

    if handle:
        if matched_id is not None and handle == matched_id:
            return True
        if handle in ("true", "false"):
            return (handle == "true") == matched
        if handle in FALLBACK_HANDLES:
            return not matched
        if target:
            return edge.target == target
        return False

    if target:
        return edge.target == target
    return matched


def edge_is_active(
    edge: EdgeDefinition,
    node_outputs: dict[str, NodeOutput],
    inactive: set[str] | frozenset[str] = frozenset(),
) -> bool:
    if edge.source in inactive:
        return False
    output = node_outputs.get(edge.source)
    if output is None:
        # Source not settled yet: the edge may still carry data
        return True
    if output.status in (NodeStatus.ERROR, NodeStatus.SKIPPED):
        return False
    return branch_selected(edge, output)


def should_execute_node(
    node_id: str,
    edges: list[EdgeDefinition],
    node_outputs: dict[str, NodeOutput],
    inactive: set[str] | frozenset[str] = frozenset(),
) -> bool:
    """A node runs if it has no incoming edges or at least one active incoming edge."""
    incoming = [e for e in edges if e.target == node_id]
    if not incoming:
        return True
    return any(edge_is_active(e, node_outputs, inactive) for e in incoming)


def active_edges(
    edges: list[EdgeDefinition], node_outputs: dict[str, NodeOutput]
) -> list[EdgeDefinition]:
    """Edges that still carry data. Input validation only looks at these."""
    return [e for e in edges if edge_is_active(e, node_outputs)]


def cascade_skip(
    failed_node_id: str,
    edges: list[EdgeDefinition],
    node_outputs: dict[str, NodeOutput],
    settled: set[str],
) -> list[str]:
    """
    Collect the downstream nodes that a failure cuts off.

    Breadth first from ``failed_node_id``. A successor is skipped when none of
    its incoming edges is active any more; the walk does not enter nodes in
    ``settled`` (completed or failed). Returns ids in discovery order.
    """
    skipped: list[str] = []
    inactive = {failed_node_id}
    queue = deque(successor_ids(failed_node_id, edges))

    while queue:
        node_id = queue.popleft()
        if node_id in settled or node_id in inactive:
            continue
        if should_execute_node(node_id, edges, node_outputs, inactive):
            # Still reachable; re-checked if another predecessor gets cut off
            continue
        inactive.add(node_id)
        skipped.append(node_id)
        queue.extend(successor_ids(node_id, edges))

    if skipped:
        logger.info(f"↷ Skipping {len(skipped)} node(s) downstream of failed node '{failed_node_id}'")
    return skipped
