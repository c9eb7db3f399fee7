"""RuntimeLogger: best-effort persistence of per-node logs and debug artifacts.

Injected into WorkflowExecutor. Each ``log_node()`` and
``save_debug_artifact()`` call schedules the write as a background task and
returns immediately, so a slow store never holds up the next node. The
executor awaits ``flush()`` before it reports a terminal status.

Safety: write failures are caught and logged. A broken store must never kill
an otherwise successful run.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import Any

from flowengine.errors import PersistenceError
from flowengine.schemas.execution import NodeLogRecord, NodeOutput
from flowengine.storage.execution_store import ExecutionStore

logger = logging.getLogger(__name__)


class RuntimeLogger:
    """Tracks fire-and-forget store writes for one execution."""

    def __init__(self, store: ExecutionStore, execution_id: str) -> None:
        self._store = store
        self._execution_id = execution_id
        self._pending: set[asyncio.Task] = set()
        self._failures: list[PersistenceError] = []

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def failures(self) -> list[PersistenceError]:
        return list(self._failures)

    def _track(self, what: str, write: Awaitable[Any]) -> None:
        async def _guarded() -> None:
            try:
                await write
            except Exception as e:
                error = PersistenceError(f"Failed to persist {what} for {self._execution_id}: {e}")
                self._failures.append(error)
                logger.warning(str(error))

        task = asyncio.create_task(_guarded())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def log_node(self, output: NodeOutput, node_input: dict[str, Any] | None = None) -> None:
        """Persist the node log row for a settled node."""
        record = NodeLogRecord.from_output(self._execution_id, output, node_input)
        self._track(f"node log '{output.node_id}'", self._store.create_node_log(record))

    def save_debug_artifact(self, node_id: str, artifact: dict[str, Any]) -> None:
        self._track(
            f"debug artifact '{node_id}'",
            self._store.save_debug_artifact(self._execution_id, node_id, artifact),
        )

    async def flush(self) -> None:
        """Wait for every write scheduled so far."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
