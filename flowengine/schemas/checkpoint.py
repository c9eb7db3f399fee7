"""
Checkpoint Schema - resumable snapshot of a failed or paused run.

A checkpoint records which nodes completed (with their outputs), the run's
global variables and a hash of the workflow graph. A resume is only allowed
while the graph still hashes to the same value.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from flowengine.schemas.execution import NodeOutput, NodeStatus

CHECKPOINT_VERSION = 1


class CompletedNode(BaseModel):
    output: NodeOutput
    status: str = "COMPLETED"
    completed_at: datetime


class CheckpointContext(BaseModel):
    node_results: dict[str, dict[str, Any]] = Field(default_factory=dict)  # node_id -> data
    variables: dict[str, Any] = Field(default_factory=dict)


class CheckpointSnapshot(BaseModel):
    """Snapshot of a run at the moment it stopped."""

    completed_nodes: dict[str, CompletedNode] = Field(default_factory=dict)
    context: CheckpointContext = Field(default_factory=CheckpointContext)
    failed_node_id: str | None = None
    version: int = CHECKPOINT_VERSION
    workflow_hash: str
    created_at: datetime = Field(default_factory=datetime.now)

    model_config = {"extra": "allow"}

    @classmethod
    def create(
        cls,
        workflow_hash: str,
        node_outputs: dict[str, NodeOutput],
        variables: dict[str, Any],
        failed_node_id: str | None = None,
    ) -> "CheckpointSnapshot":
        """
        Build a snapshot from the current run state.

        Only successful outputs are kept: failed, skipped and paused nodes run
        again after resume.
        """
        completed: dict[str, CompletedNode] = {}
        node_results: dict[str, dict[str, Any]] = {}
        for node_id, output in node_outputs.items():
            if output.status != NodeStatus.SUCCESS:
                continue
            completed[node_id] = CompletedNode(
                output=output,
                completed_at=output.completed_at or datetime.now(),
            )
            node_results[node_id] = output.data

        return cls(
            completed_nodes=completed,
            context=CheckpointContext(node_results=node_results, variables=dict(variables)),
            failed_node_id=failed_node_id,
            workflow_hash=workflow_hash,
        )
