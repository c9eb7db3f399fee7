"""
Tests for branch routing and the built-in LOGIC / CONDITION / INPUT processors.
"""

import pytest

from flowengine.graph.context import ExecutionContext
from flowengine.graph.logic_router import active_edges, cascade_skip, should_execute_node
from flowengine.graph.processors import (
    ConditionNodeProcessor,
    InputNodeProcessor,
    LogicNodeProcessor,
    ProcessorKind,
    ProcessorRegistry,
    apply_initial_input,
    resolve_processor_kind,
)
from flowengine.schemas.execution import NodeOutput, NodeStatus
from flowengine.schemas.workflow import EdgeDefinition, NodeDefinition

SCORE = NodeDefinition(id="in", name="Score", type="INPUT", config={"fields": [{"name": "value", "value": 7}]})
ROUTER = NodeDefinition(
    id="logic",
    name="Router",
    type="LOGIC",
    config={
        "mode": "condition",
        "conditions": [
            {"id": "high", "expression": "{{Score.value}} >= 5", "target_node_id": "praise"},
            {"id": "low", "expression": "{{Score.value}} < 5", "target_node_id": "coach"},
        ],
        "fallback_target_node_id": "coach",
    },
)
PRAISE = NodeDefinition(id="praise", name="Praise", type="PROCESS")
COACH = NodeDefinition(id="coach", name="Coach", type="PROCESS")
NODES = [SCORE, ROUTER, PRAISE, COACH]
EDGES = [
    EdgeDefinition(source="in", target="logic"),
    EdgeDefinition(source="logic", target="praise", source_handle="high"),
    EdgeDefinition(source="logic", target="coach", source_handle="low"),
]


def make_context(*outputs, nodes=NODES, edges=EDGES):
    context = ExecutionContext(execution_id="exec-1", workflow_id="wf-1", nodes=nodes, edges=edges)
    for output in outputs:
        context.record_output(output)
    return context


def ok(node, data):
    return NodeOutput(node_id=node.id, node_name=node.name, node_type=node.type, data=data)


@pytest.mark.asyncio
async def test_input_processor_publishes_field_values():
    output = await InputNodeProcessor().process(SCORE, make_context())

    assert output.status == NodeStatus.SUCCESS
    assert output.data == {"value": 7}


def test_apply_initial_input_fills_by_name_or_id():
    node = NodeDefinition(
        id="in",
        name="Request",
        type="INPUT",
        config={"fields": [{"id": "f_topic", "name": "topic"}, {"id": "f_tone", "name": "tone", "value": "dry"}]},
    )

    updated = apply_initial_input([node, PRAISE], {"topic": "tea", "f_tone": "warm"})

    assert [f.value for f in updated[0].input_fields()] == ["tea", "warm"]
    assert updated[1] is PRAISE
    # The caller's definition is not touched
    assert node.input_fields()[0].value is None


@pytest.mark.asyncio
async def test_logic_condition_selects_first_match():
    context = make_context(ok(SCORE, {"value": 7}))

    output = await LogicNodeProcessor().process(ROUTER, context)

    assert output.data["matched"] is True
    assert output.data["matched_condition_id"] == "high"
    assert output.data["matched_target_node_id"] == "praise"


@pytest.mark.asyncio
async def test_logic_condition_falls_back():
    router = ROUTER.model_copy(
        update={"config": {**ROUTER.config, "conditions": [{"id": "never", "expression": "1 > 2"}]}}
    )

    output = await LogicNodeProcessor().process(router, make_context(ok(SCORE, {"value": 7})))

    assert output.data["matched"] is False
    assert output.data["matched_target_node_id"] == "coach"


@pytest.mark.asyncio
async def test_logic_switch_mode():
    router = NodeDefinition(
        id="logic",
        name="Router",
        type="LOGIC",
        config={
            "mode": "switch",
            "expression": "{{Score.value}}",
            "cases": [{"id": "seven", "value": 7, "target_node_id": "praise"}],
            "default_target_node_id": "coach",
        },
    )

    output = await LogicNodeProcessor().process(router, make_context(ok(SCORE, {"value": 7})))

    assert output.data["matched_target_node_id"] == "praise"


@pytest.mark.asyncio
async def test_logic_merge_mode_collects_predecessors():
    merge = NodeDefinition(id="merge", name="Merge", type="LOGIC", config={"mode": "merge"})
    edges = [EdgeDefinition(source="praise", target="merge"), EdgeDefinition(source="coach", target="merge")]
    context = make_context(ok(PRAISE, {"result": "well done"}), NodeOutput.skipped(COACH), edges=edges)

    output = await LogicNodeProcessor().process(merge, context)

    assert output.data["merged"] == {"Praise": {"result": "well done"}}
    assert output.data["merged_count"] == 1


@pytest.mark.asyncio
async def test_condition_node_all_and_any():
    node = NodeDefinition(
        id="cond",
        name="Check",
        type="CONDITION",
        config={
            "conditions": [
                {"variable": "{{Score.value}}", "operator": "greaterThan", "value": 5},
                {"variable": "{{Score.value}}", "operator": "equals", "value": "3"},
            ]
        },
    )
    context = make_context(ok(SCORE, {"value": 7}))

    all_mode = await ConditionNodeProcessor().process(node, context)
    any_node = node.model_copy(update={"config": {**node.config, "evaluation_mode": "any"}})
    any_mode = await ConditionNodeProcessor().process(any_node, context)

    assert all_mode.data["result"] is False
    assert all_mode.data["conditions_met"] == 1
    assert any_mode.data["result"] is True


@pytest.mark.asyncio
async def test_condition_node_unknown_operator_fails():
    node = NodeDefinition(
        id="cond", name="Check", type="CONDITION", config={"conditions": [{"variable": "x", "operator": "approx"}]}
    )

    output = await ConditionNodeProcessor().process(node, make_context())

    assert output.status == NodeStatus.ERROR
    assert "approx" in output.error


def test_unselected_branch_is_not_executed():
    outputs = {
        "in": ok(SCORE, {"value": 7}),
        "logic": ok(ROUTER, {"mode": "condition", "matched": True, "matched_condition_id": "high",
                             "matched_target_node_id": "praise"}),
    }  # fmt: skip

    assert should_execute_node("praise", EDGES, outputs)
    assert not should_execute_node("coach", EDGES, outputs)
    assert [e.target for e in active_edges(EDGES, outputs)] == ["logic", "praise"]


def test_condition_handles_route_true_and_false():
    cond = NodeDefinition(id="cond", name="Check", type="CONDITION")
    edges = [
        EdgeDefinition(source="cond", target="yes", source_handle="true"),
        EdgeDefinition(source="cond", target="no", source_handle="false"),
    ]
    outputs = {"cond": ok(cond, {"result": False})}

    assert not should_execute_node("yes", edges, outputs)
    assert should_execute_node("no", edges, outputs)


def test_fallback_handle_taken_when_nothing_matched():
    edges = [
        EdgeDefinition(source="logic", target="praise", source_handle="high"),
        EdgeDefinition(source="logic", target="coach", source_handle="fallback"),
    ]
    outputs = {"logic": ok(ROUTER, {"mode": "condition", "matched": False, "matched_target_node_id": None})}

    assert not should_execute_node("praise", edges, outputs)
    assert should_execute_node("coach", edges, outputs)


def test_node_with_another_active_path_still_runs():
    # a -> c, b -> c: a failed but b succeeded
    a = NodeDefinition(id="a", name="A", type="PROCESS")
    b = NodeDefinition(id="b", name="B", type="PROCESS")
    edges = [EdgeDefinition(source="a", target="c"), EdgeDefinition(source="b", target="c")]
    outputs = {"a": NodeOutput.failure(a, "boom"), "b": ok(b, {"result": "x"})}

    assert should_execute_node("c", edges, outputs)


def test_cascade_skip_walks_cut_off_nodes():
    # in -> a -> b -> d, in -> c -> d2
    edges = [
        EdgeDefinition(source="in", target="a"),
        EdgeDefinition(source="a", target="b"),
        EdgeDefinition(source="b", target="d"),
        EdgeDefinition(source="in", target="c"),
        EdgeDefinition(source="c", target="d2"),
    ]
    a = NodeDefinition(id="a", name="A", type="PROCESS")
    outputs = {"in": ok(SCORE, {"value": 1}), "a": NodeOutput.failure(a, "boom")}

    skipped = cascade_skip("a", edges, outputs, settled={"in", "a"})

    assert skipped == ["b", "d"]


def test_cascade_skip_stops_at_merge_with_live_input():
    edges = [
        EdgeDefinition(source="a", target="m"),
        EdgeDefinition(source="b", target="m"),
        EdgeDefinition(source="m", target="out"),
    ]
    a = NodeDefinition(id="a", name="A", type="PROCESS")

    skipped = cascade_skip("a", edges, {"a": NodeOutput.failure(a, "boom")}, settled={"a"})

    assert skipped == []


def test_processor_kind_resolution():
    tool_process = NodeDefinition(
        id="p", name="P", type="PROCESS", config={"tools": [{"name": "search", "enabled": True}]}
    )
    explicit_off = NodeDefinition(
        id="q", name="Q", type="PROCESS", config={"enableToolCalling": False, "tools": [{"enabled": True}]}
    )

    assert resolve_processor_kind(SCORE) == ProcessorKind.INPUT
    assert resolve_processor_kind(ROUTER) == ProcessorKind.LOGIC
    assert resolve_processor_kind(PRAISE) == ProcessorKind.STANDARD
    assert resolve_processor_kind(tool_process) == ProcessorKind.TOOL_AWARE
    assert resolve_processor_kind(explicit_off) == ProcessorKind.STANDARD


def test_tool_aware_lookup_falls_back_to_process():
    plain = object()
    registry = ProcessorRegistry({"PROCESS": plain})
    tool_process = NodeDefinition(id="p", name="P", type="PROCESS", config={"enable_tool_calling": True})

    assert registry.get_for(tool_process, ProcessorKind.TOOL_AWARE) is plain
    assert registry.get_for(NodeDefinition(id="x", name="X", type="HTTP"), ProcessorKind.STANDARD) is None
