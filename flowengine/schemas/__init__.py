"""Pydantic models for workflow definitions, execution records and checkpoints."""

from flowengine.schemas.checkpoint import CheckpointContext, CheckpointSnapshot, CompletedNode
from flowengine.schemas.execution import (
    ExecutionRecord,
    ExecutionStatus,
    NodeLogRecord,
    NodeOutput,
    NodeStatus,
    TokenUsage,
)
from flowengine.schemas.workflow import (
    EdgeDefinition,
    ExecutionSettings,
    InputField,
    NodeDefinition,
    NodeType,
    ParallelErrorStrategy,
    WorkflowDefinition,
)

__all__ = [
    "CheckpointContext",
    "CheckpointSnapshot",
    "CompletedNode",
    "EdgeDefinition",
    "ExecutionRecord",
    "ExecutionSettings",
    "ExecutionStatus",
    "InputField",
    "NodeDefinition",
    "NodeLogRecord",
    "NodeOutput",
    "NodeStatus",
    "NodeType",
    "ParallelErrorStrategy",
    "TokenUsage",
    "WorkflowDefinition",
]
