"""
Execution stores - durable records, node logs, checkpoints and debug artifacts.

The engine talks to storage only through the ExecutionStore protocol.
Two implementations ship with the package:

- InMemoryExecutionStore: dictionaries, for tests and embedding
- FileExecutionStore: one directory per execution

File layout::

    {base_path}/
      {execution_id}/
        execution.json      # ExecutionRecord, checkpoint blob included
        node_logs.jsonl     # one NodeLogRecord per line, appended
        debug/
          {node_id}.json    # truncated debug artifact
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from flowengine.errors import PersistenceError
from flowengine.schemas.execution import ExecutionRecord, ExecutionStatus, NodeLogRecord
from flowengine.utils.io import atomic_write

logger = logging.getLogger(__name__)


@runtime_checkable
class ExecutionStore(Protocol):
    async def create_execution(self, record: ExecutionRecord) -> ExecutionRecord: ...

    async def update_execution(self, execution_id: str, **changes: Any) -> ExecutionRecord: ...

    async def get_execution(self, execution_id: str) -> ExecutionRecord | None: ...

    async def list_executions(
        self, workflow_id: str | None = None, status: ExecutionStatus | None = None, limit: int = 20
    ) -> list[ExecutionRecord]: ...

    async def create_node_log(self, log: NodeLogRecord) -> None: ...

    async def list_node_logs(self, execution_id: str) -> list[NodeLogRecord]: ...

    async def save_checkpoint(self, execution_id: str, data: dict[str, Any] | None, can_resume: bool) -> None: ...

    async def load_checkpoint(self, execution_id: str) -> dict[str, Any] | None: ...

    async def set_can_resume(self, execution_id: str, can_resume: bool) -> None: ...

    async def save_debug_artifact(self, execution_id: str, node_id: str, artifact: dict[str, Any]) -> None: ...

    async def load_debug_artifact(self, execution_id: str, node_id: str) -> dict[str, Any] | None: ...


def _apply_changes(record: ExecutionRecord, changes: dict[str, Any]) -> ExecutionRecord:
    return ExecutionRecord.model_validate({**record.model_dump(), **changes})


def _filter_records(
    records: list[ExecutionRecord], workflow_id: str | None, status: ExecutionStatus | None, limit: int
) -> list[ExecutionRecord]:
    matched = [
        r
        for r in records
        if (workflow_id is None or r.workflow_id == workflow_id) and (status is None or r.status == status)
    ]
    matched.sort(key=lambda r: r.created_at, reverse=True)
    return matched[:limit]


class InMemoryExecutionStore:
    """Dictionary-backed store. Records are copied in and out so callers cannot mutate them."""

    def __init__(self) -> None:
        self._executions: dict[str, ExecutionRecord] = {}
        self._node_logs: dict[str, list[NodeLogRecord]] = {}
        self._debug: dict[tuple[str, str], dict[str, Any]] = {}

    async def create_execution(self, record: ExecutionRecord) -> ExecutionRecord:
        if record.id in self._executions:
            raise PersistenceError(f"Execution '{record.id}' already exists")
        self._executions[record.id] = record.model_copy(deep=True)
        return record

    async def update_execution(self, execution_id: str, **changes: Any) -> ExecutionRecord:
        record = self._executions.get(execution_id)
        if record is None:
            raise PersistenceError(f"Execution '{execution_id}' not found")
        updated = _apply_changes(record, changes)
        self._executions[execution_id] = updated
        return updated.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        record = self._executions.get(execution_id)
        return record.model_copy(deep=True) if record else None

    async def list_executions(
        self, workflow_id: str | None = None, status: ExecutionStatus | None = None, limit: int = 20
    ) -> list[ExecutionRecord]:
        return _filter_records(list(self._executions.values()), workflow_id, status, limit)

    async def create_node_log(self, log: NodeLogRecord) -> None:
        self._node_logs.setdefault(log.execution_id, []).append(log)

    async def list_node_logs(self, execution_id: str) -> list[NodeLogRecord]:
        return list(self._node_logs.get(execution_id, []))

    async def save_checkpoint(self, execution_id: str, data: dict[str, Any] | None, can_resume: bool) -> None:
        await self.update_execution(execution_id, checkpoint=data, can_resume=can_resume)

    async def load_checkpoint(self, execution_id: str) -> dict[str, Any] | None:
        record = self._executions.get(execution_id)
        if record is None or record.checkpoint is None:
            return None
        return json.loads(json.dumps(record.checkpoint))

    async def set_can_resume(self, execution_id: str, can_resume: bool) -> None:
        await self.update_execution(execution_id, can_resume=can_resume)

    async def save_debug_artifact(self, execution_id: str, node_id: str, artifact: dict[str, Any]) -> None:
        self._debug[(execution_id, node_id)] = artifact

    async def load_debug_artifact(self, execution_id: str, node_id: str) -> dict[str, Any] | None:
        return self._debug.get((execution_id, node_id))


class FileExecutionStore:
    """
    Stores each execution in its own directory.

    Blocking file I/O runs in ``asyncio.to_thread``. Record updates are
    read-modify-write under a lock; node logs are appended as JSONL so they
    are on disk as soon as they are written.
    """

    def __init__(self, base_path: Path | str):
        self.base_path = Path(base_path)
        self._lock = asyncio.Lock()

    def _execution_dir(self, execution_id: str) -> Path:
        return self.base_path / execution_id

    def _record_path(self, execution_id: str) -> Path:
        return self._execution_dir(execution_id) / "execution.json"

    def _write_record(self, record: ExecutionRecord) -> None:
        with atomic_write(self._record_path(record.id)) as f:
            f.write(record.model_dump_json(indent=2))

    def _read_record(self, execution_id: str) -> ExecutionRecord | None:
        path = self._record_path(execution_id)
        if not path.exists():
            return None
        try:
            return ExecutionRecord.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Failed to read execution '{execution_id}': {e}") from e

    async def create_execution(self, record: ExecutionRecord) -> ExecutionRecord:
        async with self._lock:
            if await asyncio.to_thread(self._record_path(record.id).exists):
                raise PersistenceError(f"Execution '{record.id}' already exists")
            await asyncio.to_thread(self._write_record, record)
        logger.debug(f"Created execution record {record.id}")
        return record

    async def update_execution(self, execution_id: str, **changes: Any) -> ExecutionRecord:
        async with self._lock:
            record = await asyncio.to_thread(self._read_record, execution_id)
            if record is None:
                raise PersistenceError(f"Execution '{execution_id}' not found")
            updated = _apply_changes(record, changes)
            await asyncio.to_thread(self._write_record, updated)
        return updated

    async def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        return await asyncio.to_thread(self._read_record, execution_id)

    async def list_executions(
        self, workflow_id: str | None = None, status: ExecutionStatus | None = None, limit: int = 20
    ) -> list[ExecutionRecord]:
        def _scan() -> list[ExecutionRecord]:
            if not self.base_path.exists():
                return []
            records = []
            for child in self.base_path.iterdir():
                if not child.is_dir():
                    continue
                try:
                    record = self._read_record(child.name)
                except PersistenceError as e:
                    logger.warning(f"Skipping unreadable execution directory {child}: {e}")
                    continue
                if record is not None:
                    records.append(record)
            return records

        records = await asyncio.to_thread(_scan)
        return _filter_records(records, workflow_id, status, limit)

    async def create_node_log(self, log: NodeLogRecord) -> None:
        path = self._execution_dir(log.execution_id) / "node_logs.jsonl"
        line = log.model_dump_json() + "\n"

        def _append() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a", encoding="utf-8") as f:
                f.write(line)

        await asyncio.to_thread(_append)

    async def list_node_logs(self, execution_id: str) -> list[NodeLogRecord]:
        path = self._execution_dir(execution_id) / "node_logs.jsonl"

        def _read() -> list[NodeLogRecord]:
            if not path.exists():
                return []
            logs = []
            for line_num, line in enumerate(path.read_text(encoding="utf-8").splitlines(), 1):
                if not line.strip():
                    continue
                try:
                    logs.append(NodeLogRecord.model_validate_json(line))
                except ValueError as e:
                    logger.warning(f"Skipping corrupt node log line {line_num} in {path}: {e}")
            return logs

        return await asyncio.to_thread(_read)

    async def save_checkpoint(self, execution_id: str, data: dict[str, Any] | None, can_resume: bool) -> None:
        await self.update_execution(execution_id, checkpoint=data, can_resume=can_resume)

    async def load_checkpoint(self, execution_id: str) -> dict[str, Any] | None:
        record = await self.get_execution(execution_id)
        return record.checkpoint if record else None

    async def set_can_resume(self, execution_id: str, can_resume: bool) -> None:
        await self.update_execution(execution_id, can_resume=can_resume)

    async def save_debug_artifact(self, execution_id: str, node_id: str, artifact: dict[str, Any]) -> None:
        path = self._execution_dir(execution_id) / "debug" / f"{node_id}.json"

        def _write() -> None:
            with atomic_write(path) as f:
                json.dump(artifact, f, ensure_ascii=False, indent=2, default=str)

        await asyncio.to_thread(_write)

    async def load_debug_artifact(self, execution_id: str, node_id: str) -> dict[str, Any] | None:
        path = self._execution_dir(execution_id) / "debug" / f"{node_id}.json"

        def _read() -> dict[str, Any] | None:
            if not path.exists():
                return None
            with open(path, encoding="utf-8") as f:
                return json.load(f)

        return await asyncio.to_thread(_read)
