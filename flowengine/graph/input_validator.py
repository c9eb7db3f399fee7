"""Input validation run before a node executes.

Source (INPUT) nodes must have every required field filled in. Every other
node needs all of its predecessors to have completed successfully and every
variable reference in its templated fields to be resolvable. The check reads
the execution context only; it never changes it.
"""

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from flowengine.graph.context import ExecutionContext
from flowengine.graph.topology import predecessor_ids
from flowengine.graph.variables import find_variable_references, resolve_reference
from flowengine.schemas.execution import NodeStatus
from flowengine.schemas.workflow import EdgeDefinition, NodeDefinition, NodeType

logger = logging.getLogger(__name__)

# Config keys holding text that may reference other nodes
TEMPLATED_FIELDS = (
    "user_prompt",
    "userPrompt",
    "system_prompt",
    "systemPrompt",
    "prompt",
    "template",
    "expression",
)


class InputStatus(StrEnum):
    VALID = "valid"
    INVALID = "invalid"
    MISSING = "missing"


@dataclass
class InputValidationResult:
    status: InputStatus
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def is_valid(self) -> bool:
        return self.status == InputStatus.VALID


@dataclass
class PredecessorCheck:
    missing: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    paused: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not (self.missing or self.failed or self.skipped or self.paused)


def _label(node_id: str, nodes: list[NodeDefinition]) -> str:
    for node in nodes:
        if node.id == node_id:
            return node.name
    return node_id


def check_predecessors(
    node_id: str,
    context: ExecutionContext,
    edges: list[EdgeDefinition],
    nodes: list[NodeDefinition],
) -> PredecessorCheck:
    """Classify every predecessor that has not completed successfully."""
    check = PredecessorCheck()
    for pred_id in predecessor_ids(node_id, edges):
        output = context.node_outputs.get(pred_id)
        name = _label(pred_id, nodes)
        if output is None:
            check.missing.append(name)
        elif output.status == NodeStatus.ERROR:
            check.failed.append(name)
        elif output.status == NodeStatus.SKIPPED:
            check.skipped.append(name)
        elif output.status == NodeStatus.PAUSED:
            # Awaiting approval: nothing downstream can use its output yet
            check.paused.append(name)
    return check


def validate_input_fields(node: NodeDefinition) -> InputValidationResult:
    """Required fields of an INPUT node must hold a non-blank value."""
    empty = [f.name or f.id for f in node.input_fields() if f.required and f.is_blank()]
    if empty:
        return InputValidationResult(
            status=InputStatus.MISSING,
            error=f"Required input fields are empty: {', '.join(empty)}",
            details={"missing_fields": empty},
        )
    return InputValidationResult(status=InputStatus.VALID)


def templated_texts(node: NodeDefinition) -> list[str]:
    """Collect the text fields of a node that may contain variable references."""
    texts = []
    for key in TEMPLATED_FIELDS:
        value = node.config.get(key)
        if isinstance(value, str) and value:
            texts.append(value)
    for condition in node.config.get("conditions", []) or []:
        if isinstance(condition, dict):
            for key in ("expression", "variable"):
                if isinstance(condition.get(key), str):
                    texts.append(condition[key])
    return texts


def validate_variable_references(
    node: NodeDefinition, context: ExecutionContext, nodes: list[NodeDefinition]
) -> InputValidationResult:
    """
    Check that every ``{{...}}`` reference in the node's templated fields resolves.

    A reference to a known node that has not produced output yet is let
    through; its predecessor relationship, if any, is checked separately.
    """
    unresolved: list[str] = []
    messages: list[str] = []
    for text in templated_texts(node):
        for ref in find_variable_references(text):
            if ref.token in unresolved:
                continue
            resolution = resolve_reference(ref, context, nodes)
            if resolution.resolved or resolution.reason == "pending":
                continue
            unresolved.append(ref.token)
            if resolution.reason == "node_not_found":
                messages.append(f'Variable reference "{ref.token}" cannot be resolved: node not found')
            else:
                messages.append(f'Variable reference "{ref.token}" cannot be resolved: field not found')

    if unresolved:
        return InputValidationResult(
            status=InputStatus.INVALID,
            error="; ".join(messages),
            details={"unresolved_variables": unresolved},
        )
    return InputValidationResult(status=InputStatus.VALID)


def validate_node_input(
    node: NodeDefinition,
    context: ExecutionContext,
    edges: list[EdgeDefinition],
    nodes: list[NodeDefinition],
) -> InputValidationResult:
    """
    Decide whether ``node`` can run given the current context.

    Order: INPUT required fields, then predecessors, then variable references.
    Predecessor problems are reported before variable problems.
    """
    if node.type == NodeType.INPUT:
        return validate_input_fields(node)

    predecessors = check_predecessors(node.id, context, edges, nodes)
    if not predecessors.ok:
        messages = []
        if predecessors.failed:
            messages.append(f'Predecessor node(s) "{", ".join(predecessors.failed)}" failed')
        if predecessors.skipped:
            messages.append(f'Predecessor node(s) "{", ".join(predecessors.skipped)}" were skipped')
        if predecessors.paused:
            messages.append(f'Predecessor node(s) "{", ".join(predecessors.paused)}" are awaiting approval')
        if predecessors.missing:
            messages.append(f'Predecessor node(s) "{", ".join(predecessors.missing)}" have not run')
        return InputValidationResult(
            status=InputStatus.MISSING,
            error="; ".join(messages),
            details={
                "missing_predecessors": predecessors.missing
                + predecessors.failed
                + predecessors.skipped
                + predecessors.paused
            },
        )

    return validate_variable_references(node, context, nodes)
