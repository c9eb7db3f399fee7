"""
Execution schemas - node outputs, execution records and per-node log rows.

NodeOutput is written once per node per run. ExecutionRecord and
NodeLogRecord are what the execution store persists.
"""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class NodeStatus(StrEnum):
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"
    PAUSED = "paused"


class ExecutionStatus(StrEnum):
    """Lifecycle: PENDING -> RUNNING -> {COMPLETED, FAILED, PAUSED}."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    PAUSED = "PAUSED"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.PAUSED)


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class NodeOutput(BaseModel):
    """What a processor returns for one node."""

    node_id: str
    node_name: str
    node_type: str
    status: NodeStatus = NodeStatus.SUCCESS
    data: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    token_usage: TokenUsage | None = None
    ai_model: str | None = None
    approval_request_id: str | None = None  # set when status is PAUSED
    started_at: datetime = Field(default_factory=datetime.now)
    completed_at: datetime | None = None
    duration_ms: int = 0

    model_config = {"extra": "allow"}

    @classmethod
    def success(cls, node: Any, data: dict[str, Any], started_at: datetime, **kwargs: Any) -> "NodeOutput":
        completed_at = datetime.now()
        return cls(
            node_id=node.id,
            node_name=node.name,
            node_type=node.type,
            status=NodeStatus.SUCCESS,
            data=data,
            started_at=started_at,
            completed_at=completed_at,
            duration_ms=int((completed_at - started_at).total_seconds() * 1000),
            **kwargs,
        )

    @classmethod
    def failure(cls, node: Any, error: str, started_at: datetime | None = None) -> "NodeOutput":
        completed_at = datetime.now()
        started_at = started_at or completed_at
        return cls(
            node_id=node.id,
            node_name=node.name,
            node_type=node.type,
            status=NodeStatus.ERROR,
            error=error,
            started_at=started_at,
            completed_at=completed_at,
            duration_ms=int((completed_at - started_at).total_seconds() * 1000),
        )

    @classmethod
    def skipped(cls, node: Any, reason: str = "") -> "NodeOutput":
        now = datetime.now()
        return cls(
            node_id=node.id,
            node_name=node.name,
            node_type=node.type,
            status=NodeStatus.SKIPPED,
            data={"skip_reason": reason} if reason else {},
            started_at=now,
            completed_at=now,
        )


class ExecutionRecord(BaseModel):
    """Persisted record of one workflow execution."""

    id: str
    workflow_id: str
    organization_id: str = ""
    user_id: str = ""
    status: ExecutionStatus = ExecutionStatus.PENDING
    input: dict[str, Any] = Field(default_factory=dict)
    output: dict[str, Any] | None = None
    error: str | None = None
    error_detail: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=datetime.now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    total_tokens: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    estimated_cost: float = 0.0
    resumed_from_id: str | None = None
    can_resume: bool = False
    checkpoint: dict[str, Any] | None = None

    model_config = {"extra": "allow"}


class NodeLogRecord(BaseModel):
    """One row per executed node."""

    execution_id: str
    node_id: str
    node_name: str
    node_type: str
    status: NodeStatus
    input: dict[str, Any] = Field(default_factory=dict)
    output: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    ai_model: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int = 0

    @classmethod
    def from_output(
        cls, execution_id: str, output: NodeOutput, node_input: dict[str, Any] | None = None
    ) -> "NodeLogRecord":
        usage = output.token_usage or TokenUsage()
        return cls(
            execution_id=execution_id,
            node_id=output.node_id,
            node_name=output.node_name,
            node_type=output.node_type,
            status=output.status,
            input=node_input or {},
            output=output.data,
            error=output.error,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
            ai_model=output.ai_model,
            started_at=output.started_at,
            completed_at=output.completed_at,
            duration_ms=output.duration_ms,
        )
