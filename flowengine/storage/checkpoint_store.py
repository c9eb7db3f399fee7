"""
Checkpoint Manager - save, load and validate resumable snapshots.

Checkpoints are stored through the execution store as a JSON blob on the
execution record, together with the ``can_resume`` flag. A checkpoint is only
usable while its version matches and the workflow graph still hashes to the
value it was taken against.
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from flowengine.schemas.checkpoint import CHECKPOINT_VERSION, CheckpointSnapshot
from flowengine.schemas.execution import NodeOutput
from flowengine.schemas.workflow import EdgeDefinition, NodeDefinition
from flowengine.storage.execution_store import ExecutionStore

logger = logging.getLogger(__name__)


def create_workflow_hash(nodes: list[NodeDefinition], edges: list[EdgeDefinition]) -> str:
    """
    Hash the graph structure.

    Canonical JSON (sorted keys, compact separators) of the full node and
    edge definitions, in list order. Reordering nodes or edges, editing any
    config value or moving a node changes the hash.
    """
    payload = {
        "nodes": [n.model_dump(mode="json") for n in nodes],
        "edges": [e.model_dump(mode="json") for e in edges],
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class CheckpointValidation:
    valid: bool
    reason: str | None = None


class CheckpointManager:
    """Reads and writes checkpoints for one execution store."""

    def __init__(self, store: ExecutionStore):
        self._store = store

    def build_snapshot(
        self,
        workflow_hash: str,
        node_outputs: dict[str, NodeOutput],
        variables: dict[str, Any],
        failed_node_id: str | None = None,
    ) -> CheckpointSnapshot:
        return CheckpointSnapshot.create(workflow_hash, node_outputs, variables, failed_node_id)

    async def save_checkpoint(self, execution_id: str, snapshot: CheckpointSnapshot) -> None:
        await self._store.save_checkpoint(execution_id, snapshot.model_dump(mode="json"), can_resume=True)
        logger.info(
            f"Saved checkpoint for {execution_id} "
            f"({len(snapshot.completed_nodes)} completed node(s), failed node: {snapshot.failed_node_id})"
        )

    async def load_checkpoint(self, execution_id: str) -> CheckpointSnapshot | None:
        data = await self._store.load_checkpoint(execution_id)
        if not data:
            return None
        try:
            return CheckpointSnapshot.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Checkpoint for {execution_id} is unreadable: {e}")
            return None

    async def validate_checkpoint(self, execution_id: str, current_hash: str) -> CheckpointValidation:
        """Check that the checkpoint of ``execution_id`` can seed a resume of the current graph."""
        snapshot = await self.load_checkpoint(execution_id)
        if snapshot is None:
            return CheckpointValidation(valid=False, reason="No checkpoint found for this execution")
        if snapshot.version != CHECKPOINT_VERSION:
            return CheckpointValidation(
                valid=False,
                reason=f"Checkpoint version {snapshot.version} is not supported (expected {CHECKPOINT_VERSION})",
            )
        if snapshot.workflow_hash != current_hash:
            return CheckpointValidation(
                valid=False, reason="Workflow has been modified since the checkpoint was created"
            )
        return CheckpointValidation(valid=True)

    async def clear_checkpoint(self, execution_id: str) -> None:
        await self._store.save_checkpoint(execution_id, None, can_resume=False)
        logger.debug(f"Cleared checkpoint for {execution_id}")
