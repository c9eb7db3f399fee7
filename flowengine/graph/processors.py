"""
Node processors: the registry and the built-in INPUT, LOGIC and CONDITION processors.

A processor is anything with ``async process(node, context) -> NodeOutput``.
The engine treats it as opaque: model calls, code execution, HTTP requests
and approvals all live in processors registered by the embedding application.
"""

import json
import logging
from datetime import datetime
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

from flowengine.graph.context import ExecutionContext
from flowengine.graph.safe_eval import evaluate_condition
from flowengine.graph.topology import predecessor_ids
from flowengine.graph.variables import (
    MISSING,
    REFERENCE_PATTERN,
    parse_reference,
    replace_variables,
    resolve_reference,
)
from flowengine.schemas.execution import NodeOutput, NodeStatus
from flowengine.schemas.workflow import EdgeDefinition, NodeDefinition, NodeType

logger = logging.getLogger(__name__)


@runtime_checkable
class NodeProcessor(Protocol):
    async def process(self, node: NodeDefinition, context: ExecutionContext) -> NodeOutput: ...


class ProcessorKind(StrEnum):
    """Which registry entry handles a node. Resolved once per node before dispatch."""

    INPUT = "INPUT"
    LOGIC = "LOGIC"
    CONDITION = "CONDITION"
    STANDARD = "STANDARD"  # registry key is the node type itself
    TOOL_AWARE = "PROCESS_WITH_TOOLS"


def tools_enabled(node: NodeDefinition) -> bool:
    """A PROCESS node wants tool calling if it says so, or if any configured tool is enabled."""
    explicit = node.config_value("enable_tool_calling", "enableToolCalling")
    if explicit is not None:
        return bool(explicit)
    tools = node.config.get("tools") or []
    return any(isinstance(t, dict) and t.get("enabled") for t in tools)


def resolve_processor_kind(node: NodeDefinition) -> ProcessorKind:
    if node.type == NodeType.INPUT:
        return ProcessorKind.INPUT
    if node.type == NodeType.LOGIC:
        return ProcessorKind.LOGIC
    if node.type == "CONDITION":
        return ProcessorKind.CONDITION
    if node.type == NodeType.PROCESS_WITH_TOOLS:
        return ProcessorKind.TOOL_AWARE
    if node.type == NodeType.PROCESS and tools_enabled(node):
        return ProcessorKind.TOOL_AWARE
    return ProcessorKind.STANDARD


class ProcessorRegistry:
    """
    Maps node type tags to processors.

    INPUT, LOGIC and CONDITION processors are registered by default; everything
    else (PROCESS, PROCESS_WITH_TOOLS, OUTPUT, CODE, HTTP, ...) is supplied by
    the caller.
    """

    def __init__(self, processors: dict[str, NodeProcessor] | None = None):
        self._processors: dict[str, NodeProcessor] = {
            NodeType.INPUT.value: InputNodeProcessor(),
            NodeType.LOGIC.value: LogicNodeProcessor(),
            "CONDITION": ConditionNodeProcessor(),
        }
        for node_type, processor in (processors or {}).items():
            self.register(node_type, processor)

    def register(self, node_type: str, processor: NodeProcessor) -> None:
        self._processors[str(node_type)] = processor

    def has(self, node_type: str) -> bool:
        return str(node_type) in self._processors

    def registered_types(self) -> list[str]:
        return list(self._processors)

    def get_for(self, node: NodeDefinition, kind: ProcessorKind) -> NodeProcessor | None:
        """Look up the processor for ``node`` given its resolved kind."""
        if kind == ProcessorKind.STANDARD:
            return self._processors.get(node.type)
        processor = self._processors.get(kind.value)
        if processor is None and kind == ProcessorKind.TOOL_AWARE:
            # No tool-aware variant registered: the plain PROCESS processor handles it
            logger.warning(f"No PROCESS_WITH_TOOLS processor registered, using PROCESS for '{node.name}'")
            return self._processors.get(NodeType.PROCESS.value)
        return processor


# ---------------------------------------------------------------------------
# Built-in processors
# ---------------------------------------------------------------------------


class InputNodeProcessor:
    """Publishes an INPUT node's field values as its output: ``{field_name: value}``."""

    async def process(self, node: NodeDefinition, context: ExecutionContext) -> NodeOutput:
        started_at = datetime.now()
        data: dict[str, Any] = {}
        for input_field in node.input_fields():
            data[input_field.name] = input_field.value
        return NodeOutput.success(node, data, started_at)


def apply_initial_input(nodes: list[NodeDefinition], initial_input: dict[str, Any]) -> list[NodeDefinition]:
    """
    Return a copy of ``nodes`` with INPUT field values filled from ``initial_input``.

    A field picks up ``initial_input[field.name]`` or ``initial_input[field.id]``.
    The caller's definitions are left untouched.
    """
    if not initial_input:
        return list(nodes)

    result = []
    for node in nodes:
        if node.type != NodeType.INPUT:
            result.append(node)
            continue
        fields = []
        for raw in node.config.get("fields", []) or []:
            updated = dict(raw)
            for key in (raw.get("name"), raw.get("id")):
                if key and key in initial_input:
                    updated["value"] = initial_input[key]
                    break
            fields.append(updated)
        result.append(node.model_copy(update={"config": {**node.config, "fields": fields}}))
    return result


def _expression_literal(value: Any) -> str:
    if value is None or value is MISSING:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int | float):
        return str(value)
    return json.dumps(value, ensure_ascii=False, default=str)


def resolve_expression(expression: str, context: ExecutionContext, nodes: list[NodeDefinition] | None = None) -> str:
    """Substitute ``{{...}}`` references with literals an expression can compare."""

    def _substitute(match: Any) -> str:
        ref = parse_reference(match.group(0), match.group(1))
        if ref is None:
            return "null"
        resolution = resolve_reference(ref, context, nodes)
        return _expression_literal(resolution.value if resolution.resolved else None)

    return REFERENCE_PATTERN.sub(_substitute, expression)


class LogicNodeProcessor:
    """
    LOGIC node with three modes.

    - condition: first matching ``conditions[i].expression`` selects
      ``conditions[i].target_node_id``; otherwise ``fallback_target_node_id``
    - switch: ``expression`` is compared against ``cases[i].value``
    - merge: collects the data of ``merge_from_node_ids`` (default: all predecessors)

    The processor only reports its decision. The logic router turns the
    decision into skipped branches.
    """

    async def process(self, node: NodeDefinition, context: ExecutionContext) -> NodeOutput:
        started_at = datetime.now()
        mode = node.config.get("mode", "condition")
        data: dict[str, Any] = {"mode": mode}

        if mode == "condition":
            data.update(self._condition(node, context))
        elif mode == "switch":
            data.update(self._switch(node, context))
        elif mode == "merge":
            data.update(self._merge(node, context))
        else:
            data["warning"] = f"Unknown logic mode: {mode}"

        return NodeOutput.success(node, data, started_at)

    def _condition(self, node: NodeDefinition, context: ExecutionContext) -> dict[str, Any]:
        conditions = node.config.get("conditions", []) or []
        fallback = node.config_value("fallback_target_node_id", "fallbackTargetNodeId")
        for condition in conditions:
            expression = (condition.get("expression") or "").strip()
            if not expression:
                continue
            resolved = resolve_expression(expression, context, context.nodes)
            if evaluate_condition(resolved):
                return {
                    "matched": True,
                    "matched_condition_id": condition.get("id"),
                    "matched_target_node_id": condition.get("target_node_id") or condition.get("targetNodeId"),
                    "fallback_target_node_id": fallback,
                    "evaluated_expression": resolved,
                }
        return {
            "matched": False,
            "matched_condition_id": None,
            "matched_target_node_id": fallback,
            "fallback_target_node_id": fallback,
        }

    def _switch(self, node: NodeDefinition, context: ExecutionContext) -> dict[str, Any]:
        expression = node.config.get("expression") or ""
        value: Any = replace_variables(expression, context, context.nodes).text if expression else None
        default_target = node.config_value("default_target_node_id", "defaultTargetNodeId")
        for case in node.config.get("cases", []) or []:
            if str(case.get("value")) == str(value):
                return {
                    "matched": True,
                    "value": value,
                    "matched_condition_id": case.get("id"),
                    "matched_target_node_id": case.get("target_node_id") or case.get("targetNodeId"),
                }
        return {
            "matched": False,
            "value": value,
            "matched_condition_id": None,
            "matched_target_node_id": default_target,
        }

    def _merge(self, node: NodeDefinition, context: ExecutionContext) -> dict[str, Any]:
        source_ids = node.config_value("merge_from_node_ids", "mergeFromNodeIds")
        if not source_ids:
            source_ids = predecessor_ids(node.id, context.edges)
        merged: dict[str, Any] = {}
        for source_id in source_ids:
            output = context.node_outputs.get(source_id)
            if output is None or output.status != NodeStatus.SUCCESS:
                continue
            merged[output.node_name] = output.data
        return {"merged": merged, "merged_count": len(merged), "result": merged}


CONDITION_OPERATORS = {
    "equals": lambda a, b: str(a) == str(b),
    "notEquals": lambda a, b: str(a) != str(b),
    "greaterThan": lambda a, b: float(a) > float(b),
    "lessThan": lambda a, b: float(a) < float(b),
    "greaterOrEqual": lambda a, b: float(a) >= float(b),
    "lessOrEqual": lambda a, b: float(a) <= float(b),
    "contains": lambda a, b: str(b) in str(a),
    "notContains": lambda a, b: str(b) not in str(a),
    "startsWith": lambda a, b: str(a).startswith(str(b)),
    "endsWith": lambda a, b: str(a).endswith(str(b)),
    "isEmpty": lambda a, b: a is None or str(a).strip() == "",
    "isNotEmpty": lambda a, b: a is not None and str(a).strip() != "",
}


class ConditionNodeProcessor:
    """
    CONDITION node: structured ``{variable, operator, value}`` checks.

    Outputs ``result`` (bool). Edges leaving through the ``true`` / ``false``
    handle are routed accordingly.
    """

    async def process(self, node: NodeDefinition, context: ExecutionContext) -> NodeOutput:
        started_at = datetime.now()
        conditions = node.config.get("conditions", []) or []
        mode = node.config_value("evaluation_mode", "evaluationMode", default="all")

        evaluated = []
        for condition in conditions:
            variable = condition.get("variable", "")
            actual = replace_variables(variable, context).text if isinstance(variable, str) else variable
            operator = condition.get("operator", "equals")
            check = CONDITION_OPERATORS.get(operator)
            if check is None:
                return NodeOutput.failure(node, f"Unknown condition operator: {operator}", started_at)
            try:
                passed = bool(check(actual, condition.get("value")))
            except (TypeError, ValueError):
                passed = False
            evaluated.append({"variable": variable, "operator": operator, "actual": actual, "result": passed})

        results = [e["result"] for e in evaluated]
        outcome = any(results) if mode == "any" else bool(results) and all(results)
        return NodeOutput.success(
            node,
            {"result": outcome, "conditions_met": sum(results), "evaluated_conditions": evaluated},
            started_at,
        )
