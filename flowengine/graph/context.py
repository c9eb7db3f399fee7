"""Per-run execution context handed to every node processor."""

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from flowengine.schemas.execution import NodeOutput
from flowengine.schemas.workflow import EdgeDefinition, NodeDefinition

# (level, message, step, data)
LogSink = Callable[[str, str, str | None, dict[str, Any] | None], None]


@dataclass
class ExecutionContext:
    """
    State shared by the nodes of one run.

    ``node_outputs`` is append-only while the run is in flight: each node
    writes its own key exactly once. The context belongs to a single run and
    is never shared between executions. ``nodes`` and ``edges`` are the run's
    view of the graph, with INPUT field values filled in from the run input.
    """

    execution_id: str
    workflow_id: str
    organization_id: str = ""
    user_id: str = ""
    node_outputs: dict[str, NodeOutput] = field(default_factory=dict)
    global_variables: dict[str, Any] = field(default_factory=dict)
    nodes: list[NodeDefinition] = field(default_factory=list)
    edges: list[EdgeDefinition] = field(default_factory=list)
    log_sink: LogSink | None = None

    def add_log(
        self, level: str, message: str, step: str | None = None, data: dict[str, Any] | None = None
    ) -> None:
        if self.log_sink is not None:
            self.log_sink(level, message, step, data)

    def record_output(self, output: NodeOutput) -> None:
        if output.node_id in self.node_outputs:
            raise ValueError(f"Node '{output.node_id}' already has an output in this run")
        self.node_outputs[output.node_id] = output
