"""Per-node debug artifacts.

Processors write structured log lines through ``context.add_log``. The
collector keeps them per node, and once the node settles they are saved with
its output as one JSON document per node. Everything passes through
``truncate_value`` first so a runaway processor cannot produce an unbounded
artifact.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from flowengine.graph.context import LogSink
from flowengine.schemas.execution import NodeOutput
from flowengine.schemas.workflow import NodeDefinition

logger = logging.getLogger(__name__)

ARTIFACT_VERSION = 1
MAX_LOG_ENTRIES = 500
MAX_STRING_LENGTH = 4000
MAX_DEPTH = 8
MAX_LIST_ITEMS = 50
MAX_DICT_KEYS = 100
MAX_STEP_LENGTH = 200


def truncate_string(text: str, max_length: int = MAX_STRING_LENGTH) -> str:
    if len(text) <= max_length:
        return text
    return f"{text[:max_length]}…[truncated {len(text) - max_length} chars]"


def truncate_value(value: Any, depth: int = 0) -> Any:
    """Bound a JSON-like value in string length, depth, list length and key count."""
    if depth > MAX_DEPTH:
        return "[truncated: max depth]"
    if value is None or isinstance(value, bool | int | float):
        return value
    if isinstance(value, str):
        return truncate_string(value)
    if isinstance(value, list | tuple):
        items = [truncate_value(v, depth + 1) for v in value[:MAX_LIST_ITEMS]]
        if len(value) > MAX_LIST_ITEMS:
            items.append(f"[... {len(value) - MAX_LIST_ITEMS} more items]")
        return items
    if isinstance(value, dict):
        out = {str(k): truncate_value(v, depth + 1) for k, v in list(value.items())[:MAX_DICT_KEYS]}
        if len(value) > MAX_DICT_KEYS:
            out["_truncated_keys"] = len(value) - MAX_DICT_KEYS
        return out
    if isinstance(value, datetime):
        return value.isoformat()
    return truncate_string(str(value))


@dataclass
class DebugLogEntry:
    level: str
    message: str
    step: str | None = None
    data: Any = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": self.level,
            "message": self.message,
            "step": self.step,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


class DebugArtifactCollector:
    """Collects processor log lines for the nodes of one execution."""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        self._logs: dict[str, list[DebugLogEntry]] = {}

    def scoped_sink(self, node: NodeDefinition) -> LogSink:
        """Return a log sink bound to ``node``, suitable for ``ExecutionContext.log_sink``."""

        def _sink(level: str, message: str, step: str | None = None, data: dict[str, Any] | None = None) -> None:
            entries = self._logs.setdefault(node.id, [])
            if len(entries) >= MAX_LOG_ENTRIES:
                return
            entries.append(
                DebugLogEntry(
                    level=level,
                    message=truncate_string(message),
                    step=truncate_string(step, MAX_STEP_LENGTH) if step else None,
                    data=None if data is None else truncate_value(data),
                )
            )

        return _sink

    def logs_for(self, node_id: str) -> list[DebugLogEntry]:
        return list(self._logs.get(node_id, []))

    def build_artifact(
        self,
        node: NodeDefinition,
        output: NodeOutput,
        resolved_config: dict[str, Any] | None = None,
        output_validation: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return build_debug_artifact(
            self.execution_id,
            node,
            output,
            logs=self.logs_for(node.id),
            resolved_config=resolved_config,
            output_validation=output_validation,
        )


def build_debug_artifact(
    execution_id: str,
    node: NodeDefinition,
    output: NodeOutput,
    logs: list[DebugLogEntry] | None = None,
    resolved_config: dict[str, Any] | None = None,
    output_validation: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Assemble the truncated debug document for one settled node."""
    usage = output.token_usage.model_dump() if output.token_usage else None
    return {
        "version": ARTIFACT_VERSION,
        "execution_id": execution_id,
        "node": {"id": node.id, "name": node.name, "type": node.type},
        "status": output.status.value,
        "started_at": output.started_at.isoformat() if output.started_at else None,
        "completed_at": output.completed_at.isoformat() if output.completed_at else None,
        "duration_ms": output.duration_ms,
        "token_usage": usage,
        "error": truncate_string(output.error) if output.error else None,
        "config": truncate_value(resolved_config if resolved_config is not None else node.config),
        "output": truncate_value(output.data),
        "output_validation": output_validation,
        "logs": [entry.to_dict() for entry in (logs or [])[:MAX_LOG_ENTRIES]],
    }
