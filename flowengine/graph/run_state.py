"""Mutable bookkeeping of one workflow run.

A RunState is created by ``WorkflowExecutor.execute`` and lives only as long
as that call. Nothing else holds a reference to it, so the parallel layer
tasks never write to it: their results are applied by the owning coroutine
after the layer settles.
"""

from dataclasses import dataclass, field
from typing import Any

from flowengine.schemas.execution import NodeOutput, NodeStatus
from flowengine.schemas.workflow import NodeType

# Node types whose data is not a workflow result
NON_RESULT_NODE_TYPES = frozenset({NodeType.INPUT.value, NodeType.LOGIC.value, "CONDITION"})


@dataclass
class RunState:
    completed: set[str] = field(default_factory=set)
    failed: set[str] = field(default_factory=set)
    skipped: set[str] = field(default_factory=set)
    restored: set[str] = field(default_factory=set)

    last_output: dict[str, Any] = field(default_factory=dict)
    last_failed_node_id: str | None = None
    errors: list[dict[str, Any]] = field(default_factory=list)  # parallel continue/collect

    paused_node_id: str | None = None
    approval_request_id: str | None = None
    paused_data: dict[str, Any] = field(default_factory=dict)

    @property
    def settled(self) -> set[str]:
        """Nodes the scheduler must not start again."""
        return self.completed | self.failed | self.skipped | self.restored

    @property
    def paused(self) -> bool:
        return self.paused_node_id is not None

    def record_success(self, output: NodeOutput) -> None:
        self.completed.add(output.node_id)
        if output.node_type not in NON_RESULT_NODE_TYPES:
            self.last_output = dict(output.data)

    def record_failure(self, output: NodeOutput) -> None:
        self.failed.add(output.node_id)
        self.last_failed_node_id = output.node_id

    def record_skip(self, node_id: str) -> None:
        self.skipped.add(node_id)

    def record_pause(self, output: NodeOutput) -> None:
        self.paused_node_id = output.node_id
        self.approval_request_id = output.approval_request_id or output.data.get("approval_request_id")
        self.paused_data = dict(output.data)

    def record_restored(self, output: NodeOutput) -> None:
        self.restored.add(output.node_id)
        if output.status == NodeStatus.SUCCESS and output.node_type not in NON_RESULT_NODE_TYPES:
            self.last_output = dict(output.data)

    def add_error(self, node_id: str, node_name: str, error: str) -> None:
        self.errors.append({"node_id": node_id, "node_name": node_name, "error": error})

    def paused_output(self) -> dict[str, Any]:
        return {
            "_paused": True,
            "_paused_node_id": self.paused_node_id,
            "_approval_request_id": self.approval_request_id,
            **self.paused_data,
        }
