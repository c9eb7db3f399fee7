"""
flowengine - an asynchronous engine for node-and-edge workflows.

Workflows are DAGs of typed nodes. The engine orders them, resolves
``{{Node.field}}`` references between them, routes around unselected
branches, validates inputs and outputs, and checkpoints failed or paused
runs so they can be resumed.
"""

from flowengine.config import EngineConfig
from flowengine.errors import (
    CheckpointIncompatibleError,
    CycleError,
    GraphError,
    InputValidationError,
    PersistenceError,
    ProcessorError,
    WorkflowEngineError,
)
from flowengine.graph.executor import ExecutionResult, WorkflowExecutor
from flowengine.graph.processors import ProcessorRegistry
from flowengine.runtime.event_bus import ExecutionEventBus
from flowengine.schemas.execution import ExecutionStatus, NodeOutput, NodeStatus, TokenUsage
from flowengine.schemas.workflow import EdgeDefinition, NodeDefinition, WorkflowDefinition
from flowengine.storage.execution_store import FileExecutionStore, InMemoryExecutionStore

__version__ = "0.1.0"

__all__ = [
    "CheckpointIncompatibleError",
    "CycleError",
    "EdgeDefinition",
    "EngineConfig",
    "ExecutionEventBus",
    "ExecutionResult",
    "ExecutionStatus",
    "FileExecutionStore",
    "GraphError",
    "InMemoryExecutionStore",
    "InputValidationError",
    "NodeDefinition",
    "NodeOutput",
    "NodeStatus",
    "PersistenceError",
    "ProcessorError",
    "ProcessorRegistry",
    "TokenUsage",
    "WorkflowDefinition",
    "WorkflowEngineError",
    "WorkflowExecutor",
]
