"""
Event Bus - progress events for workflow executions.

The engine reports what it is doing through an ExecutionEventBus:

- init_execution / node_start / node_complete / node_error / node_skipped
- execution_paused / execution_complete / execution_error

Each call updates the per-execution progress state and publishes a
ProgressEvent to every matching subscriber. Delivery is best-effort: a
failing handler is logged and never reaches the engine.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from flowengine.schemas.execution import TokenUsage
from flowengine.schemas.workflow import NodeDefinition

logger = logging.getLogger(__name__)


class ProgressEventType(StrEnum):
    """Types of progress events."""

    EXECUTION_STARTED = "execution_started"
    NODE_START = "node_start"
    NODE_COMPLETE = "node_complete"
    NODE_ERROR = "node_error"
    NODE_SKIPPED = "node_skipped"
    EXECUTION_PAUSED = "execution_paused"
    EXECUTION_COMPLETE = "execution_complete"
    EXECUTION_ERROR = "execution_error"


TERMINAL_EVENT_TYPES = frozenset(
    {
        ProgressEventType.EXECUTION_PAUSED,
        ProgressEventType.EXECUTION_COMPLETE,
        ProgressEventType.EXECUTION_ERROR,
    }
)


@dataclass
class ProgressEvent:
    """A progress update for one execution."""

    execution_id: str
    type: ProgressEventType
    node_id: str | None = None
    node_name: str | None = None
    node_type: str | None = None
    status: str | None = None  # pending, running, completed, failed, skipped, paused
    progress: int = 0  # 0-100
    completed_nodes: list[str] = field(default_factory=list)
    total_nodes: int = 0
    total_tokens: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    error: str | None = None
    error_detail: dict[str, Any] | None = None
    output: dict[str, Any] | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "execution_id": self.execution_id,
            "type": self.type.value,
            "node_id": self.node_id,
            "node_name": self.node_name,
            "node_type": self.node_type,
            "status": self.status,
            "progress": self.progress,
            "completed_nodes": list(self.completed_nodes),
            "total_nodes": self.total_nodes,
            "total_tokens": self.total_tokens,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "error": self.error,
            "error_detail": self.error_detail,
            "output": self.output,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


# Type for event handlers
EventHandler = Callable[[ProgressEvent], Awaitable[None]]


@dataclass
class Subscription:
    """A subscription to progress events."""

    id: str
    event_types: set[ProgressEventType]
    handler: EventHandler
    filter_execution: str | None = None  # Only receive events from this execution
    filter_node: str | None = None  # Only receive events about this node


class EventBus:
    """
    Pub/sub bus for progress events.

    Features:
    - Async event handling, bounded by a semaphore
    - Type-based subscriptions with execution/node filters
    - Event history for debugging

    Example:
        bus = EventBus()

        async def on_complete(event: ProgressEvent):
            print(f"Execution {event.execution_id} completed")

        bus.subscribe(event_types=[ProgressEventType.EXECUTION_COMPLETE], handler=on_complete)
    """

    def __init__(self, max_history: int = 1000, max_concurrent_handlers: int = 10):
        self._subscriptions: dict[str, Subscription] = {}
        self._event_history: list[ProgressEvent] = []
        self._max_history = max_history
        self._semaphore = asyncio.Semaphore(max_concurrent_handlers)
        self._subscription_counter = 0
        self._lock = asyncio.Lock()

    def subscribe(
        self,
        handler: EventHandler,
        event_types: list[ProgressEventType] | None = None,
        filter_execution: str | None = None,
        filter_node: str | None = None,
    ) -> str:
        """
        Subscribe to events.

        Args:
            handler: Async function called for each matching event
            event_types: Types of events to receive (default: all)
            filter_execution: Only receive events from this execution
            filter_node: Only receive events about this node

        Returns:
            Subscription ID (use to unsubscribe)
        """
        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"
        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            event_types=set(event_types or ProgressEventType),
            handler=handler,
            filter_execution=filter_execution,
            filter_node=filter_node,
        )
        logger.debug(f"Subscription {sub_id} registered for {event_types or 'all events'}")
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        if subscription_id in self._subscriptions:
            del self._subscriptions[subscription_id]
            logger.debug(f"Subscription {subscription_id} removed")
            return True
        return False

    async def publish(self, event: ProgressEvent) -> None:
        """Publish an event to all matching subscribers."""
        async with self._lock:
            self._event_history.append(event)
            if len(self._event_history) > self._max_history:
                self._event_history = self._event_history[-self._max_history :]

        matching_handlers = [s.handler for s in self._subscriptions.values() if self._matches(s, event)]
        if matching_handlers:
            await self._execute_handlers(event, matching_handlers)

    def _matches(self, subscription: Subscription, event: ProgressEvent) -> bool:
        if event.type not in subscription.event_types:
            return False
        if subscription.filter_execution and subscription.filter_execution != event.execution_id:
            return False
        if subscription.filter_node and subscription.filter_node != event.node_id:
            return False
        return True

    async def _execute_handlers(self, event: ProgressEvent, handlers: list[EventHandler]) -> None:
        """Execute handlers concurrently with rate limiting."""

        async def run_handler(handler: EventHandler) -> None:
            async with self._semaphore:
                try:
                    await handler(event)
                except Exception as e:
                    logger.error(f"Handler error for {event.type}: {e}")

        await asyncio.gather(*[run_handler(h) for h in handlers], return_exceptions=True)

    def get_history(
        self,
        event_type: ProgressEventType | None = None,
        execution_id: str | None = None,
        limit: int = 100,
    ) -> list[ProgressEvent]:
        """Matching events, most recent first."""
        events = self._event_history[::-1]
        if event_type:
            events = [e for e in events if e.type == event_type]
        if execution_id:
            events = [e for e in events if e.execution_id == execution_id]
        return events[:limit]

    def get_stats(self) -> dict:
        type_counts: dict[str, int] = {}
        for event in self._event_history:
            type_counts[event.type.value] = type_counts.get(event.type.value, 0) + 1
        return {
            "total_events": len(self._event_history),
            "subscriptions": len(self._subscriptions),
            "events_by_type": type_counts,
        }

    async def wait_for(
        self,
        event_type: ProgressEventType,
        execution_id: str | None = None,
        timeout: float | None = None,
    ) -> ProgressEvent | None:
        """Wait for a specific event. Returns None on timeout."""
        result: ProgressEvent | None = None
        event_received = asyncio.Event()

        async def handler(event: ProgressEvent) -> None:
            nonlocal result
            result = event
            event_received.set()

        sub_id = self.subscribe(handler, event_types=[event_type], filter_execution=execution_id)
        try:
            if timeout:
                try:
                    await asyncio.wait_for(event_received.wait(), timeout=timeout)
                except TimeoutError:
                    return None
            else:
                await event_received.wait()
            return result
        finally:
            self.unsubscribe(sub_id)


@dataclass
class ExecutionProgress:
    """Progress of one execution as seen by the event bus."""

    execution_id: str
    workflow_id: str
    total_nodes: int
    node_statuses: dict[str, str] = field(default_factory=dict)  # node_id -> status
    completed_nodes: list[str] = field(default_factory=list)
    tokens: TokenUsage = field(default_factory=TokenUsage)
    status: str = "running"
    started_at: datetime = field(default_factory=datetime.now)

    @property
    def progress(self) -> int:
        if self.total_nodes == 0:
            return 100
        return round(len(self.completed_nodes) / self.total_nodes * 100)

    def mark_completed(self, node_id: str) -> None:
        if node_id not in self.completed_nodes:
            self.completed_nodes.append(node_id)


class ExecutionEventBus(EventBus):
    """
    EventBus plus per-execution progress tracking.

    Progress is ``completed / total * 100``. Skipped nodes count as completed
    so a run with skipped branches still reaches 100. State is dropped once an
    execution reaches a terminal event.
    """

    def __init__(self, max_history: int = 1000, max_concurrent_handlers: int = 10):
        super().__init__(max_history=max_history, max_concurrent_handlers=max_concurrent_handlers)
        self._executions: dict[str, ExecutionProgress] = {}

    def get_execution_state(self, execution_id: str) -> ExecutionProgress | None:
        return self._executions.get(execution_id)

    def subscribe_execution(self, execution_id: str, handler: EventHandler) -> str:
        """Subscribe to every event of one execution."""
        return self.subscribe(handler, filter_execution=execution_id)

    def _event(self, state: ExecutionProgress, event_type: ProgressEventType, **kwargs: Any) -> ProgressEvent:
        return ProgressEvent(
            execution_id=state.execution_id,
            type=event_type,
            progress=kwargs.pop("progress", state.progress),
            completed_nodes=list(state.completed_nodes),
            total_nodes=state.total_nodes,
            total_tokens=state.tokens.total_tokens,
            prompt_tokens=state.tokens.prompt_tokens,
            completion_tokens=state.tokens.completion_tokens,
            **kwargs,
        )

    async def _emit(self, execution_id: str, event_type: ProgressEventType, **kwargs: Any) -> None:
        state = self._executions.get(execution_id)
        if state is None:
            logger.debug(f"Ignoring {event_type} for unknown execution {execution_id}")
            return
        event = self._event(state, event_type, **kwargs)
        if event_type in TERMINAL_EVENT_TYPES:
            self._executions.pop(execution_id, None)
        await self.publish(event)

    async def init_execution(
        self,
        execution_id: str,
        workflow_id: str,
        nodes: list[NodeDefinition],
        restored_node_ids: list[str] | None = None,
        tokens: TokenUsage | None = None,
    ) -> None:
        state = ExecutionProgress(
            execution_id=execution_id,
            workflow_id=workflow_id,
            total_nodes=len(nodes),
            node_statuses={n.id: "pending" for n in nodes},
            tokens=tokens or TokenUsage(),
        )
        for node_id in restored_node_ids or []:
            state.node_statuses[node_id] = "completed"
            state.mark_completed(node_id)
        self._executions[execution_id] = state
        await self._emit(execution_id, ProgressEventType.EXECUTION_STARTED, status="running")

    async def node_start(self, execution_id: str, node: NodeDefinition) -> None:
        state = self._executions.get(execution_id)
        if state is not None:
            state.node_statuses[node.id] = "running"
        await self._emit(
            execution_id,
            ProgressEventType.NODE_START,
            node_id=node.id,
            node_name=node.name,
            node_type=node.type,
            status="running",
        )

    async def node_complete(
        self,
        execution_id: str,
        node: NodeDefinition,
        output: dict[str, Any] | None = None,
        token_usage: TokenUsage | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        state = self._executions.get(execution_id)
        if state is not None:
            state.node_statuses[node.id] = "completed"
            state.mark_completed(node.id)
            if token_usage:
                state.tokens = state.tokens + token_usage
        await self._emit(
            execution_id,
            ProgressEventType.NODE_COMPLETE,
            node_id=node.id,
            node_name=node.name,
            node_type=node.type,
            status="completed",
            output=output,
            data=data or {},
        )

    async def node_error(
        self,
        execution_id: str,
        node: NodeDefinition,
        error: str,
        error_detail: dict[str, Any] | None = None,
    ) -> None:
        state = self._executions.get(execution_id)
        if state is not None:
            state.node_statuses[node.id] = "failed"
        await self._emit(
            execution_id,
            ProgressEventType.NODE_ERROR,
            node_id=node.id,
            node_name=node.name,
            node_type=node.type,
            status="failed",
            error=error,
            error_detail=error_detail,
        )

    async def node_skipped(self, execution_id: str, node: NodeDefinition, reason: str = "") -> None:
        state = self._executions.get(execution_id)
        if state is not None:
            state.node_statuses[node.id] = "skipped"
            state.mark_completed(node.id)
        await self._emit(
            execution_id,
            ProgressEventType.NODE_SKIPPED,
            node_id=node.id,
            node_name=node.name,
            node_type=node.type,
            status="skipped",
            data={"reason": reason} if reason else {},
        )

    async def execution_paused(
        self, execution_id: str, node: NodeDefinition, approval_request_id: str | None = None
    ) -> None:
        state = self._executions.get(execution_id)
        if state is not None:
            state.node_statuses[node.id] = "paused"
            state.status = "paused"
        await self._emit(
            execution_id,
            ProgressEventType.EXECUTION_PAUSED,
            node_id=node.id,
            node_name=node.name,
            node_type=node.type,
            status="paused",
            data={"approval_request_id": approval_request_id},
        )

    async def execution_complete(
        self, execution_id: str, output: dict[str, Any] | None = None, tokens: TokenUsage | None = None
    ) -> None:
        state = self._executions.get(execution_id)
        if state is not None:
            state.status = "completed"
            if tokens is not None:
                state.tokens = tokens
        await self._emit(
            execution_id, ProgressEventType.EXECUTION_COMPLETE, status="completed", progress=100, output=output
        )

    async def execution_error(
        self,
        execution_id: str,
        error: str,
        error_detail: dict[str, Any] | None = None,
        tokens: TokenUsage | None = None,
    ) -> None:
        state = self._executions.get(execution_id)
        if state is not None:
            state.status = "failed"
            if tokens is not None:
                state.tokens = tokens
        await self._emit(
            execution_id,
            ProgressEventType.EXECUTION_ERROR,
            status="failed",
            error=error,
            error_detail=error_detail,
        )
