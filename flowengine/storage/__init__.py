"""Execution persistence and checkpoint management."""

from flowengine.storage.checkpoint_store import CheckpointManager, CheckpointValidation, create_workflow_hash
from flowengine.storage.execution_store import ExecutionStore, FileExecutionStore, InMemoryExecutionStore

__all__ = [
    "CheckpointManager",
    "CheckpointValidation",
    "ExecutionStore",
    "FileExecutionStore",
    "InMemoryExecutionStore",
    "create_workflow_hash",
]
