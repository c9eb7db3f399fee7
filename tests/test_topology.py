"""
Tests for graph topology: execution order, parallel layers, integrity checks.
"""

import random

import pytest

from flowengine.errors import CycleError
from flowengine.graph.topology import (
    execution_order,
    is_fork_node,
    is_merge_node,
    parallel_layers,
    predecessor_ids,
    reachable_from,
    source_nodes,
)
from flowengine.schemas.workflow import EdgeDefinition, NodeDefinition, WorkflowDefinition


def node(node_id, node_type="PROCESS"):
    return NodeDefinition(id=node_id, name=node_id.upper(), type=node_type)


def edge(source, target, handle=None):
    return EdgeDefinition(id=f"{source}-{target}", source=source, target=target, source_handle=handle)


def ids(nodes):
    return [n.id for n in nodes]


def test_order_respects_edges():
    nodes = [node("c"), node("b"), node("a", "INPUT")]
    edges = [edge("a", "b"), edge("b", "c")]

    assert ids(execution_order(nodes, edges)) == ["a", "b", "c"]


def test_order_breaks_ties_by_node_list_position():
    nodes = [node("in", "INPUT"), node("z"), node("y"), node("x")]
    edges = [edge("in", "x"), edge("in", "y"), edge("in", "z")]

    assert ids(execution_order(nodes, edges)) == ["in", "z", "y", "x"]


def test_order_is_deterministic():
    nodes = [node("a", "INPUT"), node("b"), node("c"), node("d")]
    edges = [edge("a", "c"), edge("a", "b"), edge("b", "d"), edge("c", "d")]

    first = ids(execution_order(nodes, edges))
    for _ in range(5):
        assert ids(execution_order(nodes, edges)) == first


def test_cycle_raises_with_involved_nodes():
    nodes = [node("a", "INPUT"), node("b"), node("c")]
    edges = [edge("a", "b"), edge("b", "c"), edge("c", "b")]

    with pytest.raises(CycleError) as exc_info:
        execution_order(nodes, edges)

    assert set(exc_info.value.node_ids) == {"b", "c"}
    assert "cycle" in str(exc_info.value)

    with pytest.raises(CycleError):
        parallel_layers(nodes, edges)


def test_parallel_layers_group_independent_nodes():
    nodes = [node("in", "INPUT"), node("a"), node("b"), node("c"), node("out", "OUTPUT")]
    edges = [edge("in", "a"), edge("in", "b"), edge("a", "c"), edge("b", "out"), edge("c", "out")]

    layers = [ids(layer) for layer in parallel_layers(nodes, edges)]

    assert layers == [["in"], ["a", "b"], ["c"], ["out"]]


def test_duplicate_edges_count_once():
    nodes = [node("logic", "LOGIC"), node("t")]
    edges = [edge("logic", "t", "c1"), edge("logic", "t", "fallback")]

    assert ids(execution_order(nodes, edges)) == ["logic", "t"]
    assert [ids(layer) for layer in parallel_layers(nodes, edges)] == [["logic"], ["t"]]


def test_neighbourhood_queries():
    nodes = [node("a", "INPUT"), node("b"), node("c"), node("d")]
    edges = [edge("a", "b"), edge("a", "c"), edge("b", "d"), edge("c", "d")]

    assert predecessor_ids("d", edges) == ["b", "c"]
    assert reachable_from("a", edges) == {"b", "c", "d"}
    assert ids(source_nodes(nodes, edges)) == ["a"]
    assert is_fork_node("a", edges)
    assert is_merge_node("d", edges)
    assert not is_merge_node("b", edges)


def test_check_integrity_reports_structural_problems():
    workflow = WorkflowDefinition(
        nodes=[node("a", "INPUT"), node("b"), NodeDefinition(id="b", name="Other", type="PROCESS")],
        edges=[edge("a", "ghost"), edge("b", "b")],
    )

    errors = workflow.check_integrity()

    assert any("Duplicate node id 'b'" in e for e in errors)
    assert any("missing target node 'ghost'" in e for e in errors)
    assert any("to itself" in e for e in errors)


def test_check_integrity_flags_duplicate_names():
    workflow = WorkflowDefinition(
        nodes=[
            NodeDefinition(id="a", name="Same", type="INPUT"),
            NodeDefinition(id="b", name="Same", type="PROCESS"),
        ],
    )

    assert workflow.check_integrity() == [
        "Duplicate node name 'Same' makes variable references ambiguous"
    ]


def test_camel_case_workflow_json_loads():
    workflow = WorkflowDefinition.model_validate(
        {
            "nodes": [{"id": "a", "name": "A", "type": "INPUT"}],
            "edges": [{"id": "e", "source": "a", "target": "a", "sourceHandle": "true"}],
            "globalVariables": {"tone": "dry"},
            "settings": {"enableParallelExecution": True, "parallelErrorStrategy": "collect"},
        }
    )

    assert workflow.edges[0].source_handle == "true"
    assert workflow.global_variables == {"tone": "dry"}
    assert workflow.settings.enable_parallel_execution is True
    assert workflow.settings.parallel_error_strategy == "collect"


# ---- Random DAGs ----


def random_dag(rng):
    """Edges only run forward in a hidden ranking; node and edge lists are shuffled."""
    count = rng.randint(1, 12)
    ranking = [f"n{i}" for i in range(count)]
    rng.shuffle(ranking)
    edges = [
        edge(ranking[i], ranking[j])
        for i in range(count)
        for j in range(i + 1, count)
        if rng.random() < 0.3
    ]
    nodes = [node(node_id) for node_id in ranking]
    rng.shuffle(nodes)
    rng.shuffle(edges)
    return nodes, edges


@pytest.mark.parametrize("seed", range(200))
def test_random_dag_order_puts_every_source_first(seed):
    nodes, edges = random_dag(random.Random(seed))

    order = ids(execution_order(nodes, edges))

    assert sorted(order) == sorted(ids(nodes))
    position = {node_id: i for i, node_id in enumerate(order)}
    for e in edges:
        assert position[e.source] < position[e.target]


@pytest.mark.parametrize("seed", range(200))
def test_random_dag_layers_are_independent(seed):
    nodes, edges = random_dag(random.Random(seed))

    layers = [ids(layer) for layer in parallel_layers(nodes, edges)]

    flattened = [node_id for layer in layers for node_id in layer]
    assert sorted(flattened) == sorted(ids(nodes))
    layer_of = {node_id: index for index, layer in enumerate(layers) for node_id in layer}
    for e in edges:
        assert layer_of[e.source] < layer_of[e.target]


@pytest.mark.parametrize("seed", range(50))
def test_random_dag_with_back_edge_is_cyclic(seed):
    rng = random.Random(seed)
    nodes, edges = random_dag(rng)
    if not edges:
        nodes, edges = [node("a"), node("b")], [edge("a", "b")]
    forward = rng.choice(edges)

    cyclic = [*edges, edge(forward.target, forward.source)]

    with pytest.raises(CycleError):
        execution_order(nodes, cyclic)
    with pytest.raises(CycleError):
        parallel_layers(nodes, cyclic)
