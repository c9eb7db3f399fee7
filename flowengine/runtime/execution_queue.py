"""
Execution Queue - background workflow runs with bounded concurrency.

Tasks are executed by a pool of asyncio workers. Each attempt is raced
against a timeout; failed attempts are retried with exponential backoff
(``backoff_base * 2 ** (attempt - 1)``) until ``max_attempts`` is reached.
Graph and checkpoint errors are permanent and never retried. A run that
returns FAILED is retried only when its ``error_detail`` marks the error as
retryable. A task can be cancelled only while it is still pending.

Usage::

    async def run(task: QueueTask) -> ExecutionResult:
        executor = WorkflowExecutor(load(task.workflow_id), store, registry, ...)
        return await executor.execute(task.input)

    queue = ExecutionQueue(run, concurrency=5)
    await queue.start()
    task_id = await queue.enqueue("wf_1", "org_1", "user_1", {"topic": "tea"})
    task = await queue.wait(task_id)
"""

import asyncio
import itertools
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

from flowengine.config import EngineConfig
from flowengine.errors import CheckpointIncompatibleError, GraphError

logger = logging.getLogger(__name__)

# Errors a retry cannot fix
PERMANENT_ERRORS: tuple[type[Exception], ...] = (GraphError, CheckpointIncompatibleError)


class TaskStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"
    CANCELLED = "cancelled"

    @property
    def is_final(self) -> bool:
        return self not in (TaskStatus.PENDING, TaskStatus.RUNNING)


@dataclass
class QueueTask:
    id: str
    workflow_id: str
    organization_id: str
    user_id: str
    input: dict[str, Any] = field(default_factory=dict)
    options: dict[str, Any] = field(default_factory=dict)
    status: TaskStatus = TaskStatus.PENDING
    attempts: int = 0
    result: Any = None
    error: str | None = None
    created_at: datetime = field(default_factory=datetime.now)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        result = self.result.to_dict() if hasattr(self.result, "to_dict") else self.result
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "organization_id": self.organization_id,
            "user_id": self.user_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "result": result,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


TaskRunner = Callable[[QueueTask], Awaitable[Any]]


def _status_from_result(result: Any) -> TaskStatus:
    status = str(getattr(result, "status", "COMPLETED"))
    if status == "COMPLETED":
        return TaskStatus.COMPLETED
    if status == "PAUSED":
        return TaskStatus.PAUSED
    return TaskStatus.FAILED


def _is_retryable_failure(result: Any) -> bool:
    """A FAILED run whose error analysis says another attempt may succeed (rate limits, network)."""
    if _status_from_result(result) != TaskStatus.FAILED:
        return False
    detail = getattr(result, "error_detail", None) or {}
    return bool(detail.get("is_retryable"))


class ExecutionQueue:
    """
    In-process queue of workflow runs.

    ``options`` accepted by ``enqueue``:
    - priority: lower runs first (default 0)
    - delay_seconds: keep the task pending this long before it becomes runnable
    """

    def __init__(
        self,
        runner: TaskRunner,
        concurrency: int | None = None,
        timeout_seconds: float | None = None,
        max_attempts: int | None = None,
        backoff_base_seconds: float | None = None,
        config: EngineConfig | None = None,
    ):
        config = config or EngineConfig()
        self._runner = runner
        self.concurrency = concurrency or config.queue_concurrency
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else config.task_timeout_seconds
        self.max_attempts = max_attempts or config.max_attempts
        self.backoff_base_seconds = (
            backoff_base_seconds if backoff_base_seconds is not None else config.backoff_base_seconds
        )

        self._tasks: dict[str, QueueTask] = {}
        self._done: dict[str, asyncio.Event] = {}
        self._queue: asyncio.PriorityQueue[tuple[int, int, str]] = asyncio.PriorityQueue()
        self._sequence = itertools.count()
        self._workers: list[asyncio.Task] = []
        self._delayed: set[asyncio.Task] = set()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"flowengine-worker-{i}") for i in range(self.concurrency)
        ]
        logger.info(f"Execution queue started with {self.concurrency} worker(s)")

    async def stop(self) -> None:
        """Stop the workers. Pending tasks stay pending; running attempts are cancelled."""
        if not self._running:
            return
        self._running = False
        for task in [*self._workers, *self._delayed]:
            task.cancel()
        await asyncio.gather(*self._workers, *self._delayed, return_exceptions=True)
        self._workers = []
        self._delayed.clear()
        logger.info("Execution queue stopped")

    async def enqueue(
        self,
        workflow_id: str,
        organization_id: str,
        user_id: str,
        input: dict[str, Any] | None = None,
        options: dict[str, Any] | None = None,
    ) -> str:
        task_id = f"task_{uuid.uuid4().hex[:12]}"
        options = dict(options or {})
        task = QueueTask(
            id=task_id,
            workflow_id=workflow_id,
            organization_id=organization_id,
            user_id=user_id,
            input=dict(input or {}),
            options=options,
        )
        self._tasks[task_id] = task
        self._done[task_id] = asyncio.Event()

        priority = int(options.get("priority", 0))
        delay = float(options.get("delay_seconds", 0) or 0)
        if delay > 0:
            delayed = asyncio.create_task(self._put_later(priority, task_id, delay))
            self._delayed.add(delayed)
            delayed.add_done_callback(self._delayed.discard)
        else:
            await self._queue.put((priority, next(self._sequence), task_id))

        logger.info(f"Enqueued {task_id} for workflow {workflow_id}")
        return task_id

    async def _put_later(self, priority: int, task_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        await self._queue.put((priority, next(self._sequence), task_id))

    def get_task(self, task_id: str) -> QueueTask | None:
        return self._tasks.get(task_id)

    def cancel(self, task_id: str) -> bool:
        """Cancel a task that has not started yet. Returns False otherwise."""
        task = self._tasks.get(task_id)
        if task is None or task.status != TaskStatus.PENDING:
            return False
        task.status = TaskStatus.CANCELLED
        task.error = "Task was cancelled"
        task.completed_at = datetime.now()
        self._done[task_id].set()
        logger.info(f"Cancelled {task_id}")
        return True

    async def wait(self, task_id: str, timeout: float | None = None) -> QueueTask:
        """Wait until a task reaches a final status."""
        if task_id not in self._tasks:
            raise KeyError(f"Unknown task: {task_id}")
        await asyncio.wait_for(self._done[task_id].wait(), timeout=timeout)
        return self._tasks[task_id]

    def get_status(self) -> dict[str, int]:
        counts = {status.value: 0 for status in TaskStatus}
        for task in self._tasks.values():
            counts[task.status.value] += 1
        counts["total"] = len(self._tasks)
        return counts

    def prune(self, older_than_seconds: float) -> int:
        """Forget final tasks completed more than ``older_than_seconds`` ago."""
        cutoff = datetime.now() - timedelta(seconds=older_than_seconds)
        expired = [
            task_id
            for task_id, task in self._tasks.items()
            if task.status.is_final and task.completed_at and task.completed_at < cutoff
        ]
        for task_id in expired:
            del self._tasks[task_id]
            del self._done[task_id]
        return len(expired)

    async def _worker(self, index: int) -> None:
        while True:
            _, _, task_id = await self._queue.get()
            try:
                task = self._tasks.get(task_id)
                if task is None or task.status != TaskStatus.PENDING:
                    continue
                await self._run_task(task)
            finally:
                self._queue.task_done()

    async def _run_task(self, task: QueueTask) -> None:
        task.status = TaskStatus.RUNNING
        task.started_at = datetime.now()
        logger.info(f"▶ Running {task.id} (workflow {task.workflow_id})")

        while True:
            task.attempts += 1
            try:
                result = await asyncio.wait_for(self._runner(task), timeout=self.timeout_seconds)
            except TimeoutError:
                error = f"Task timed out after {self.timeout_seconds}s"
                retryable = True
            except PERMANENT_ERRORS as e:
                error = str(e)
                retryable = False
            except Exception as e:
                error = str(e) or type(e).__name__
                retryable = True
            else:
                task.result = result
                if not _is_retryable_failure(result) or task.attempts >= self.max_attempts:
                    task.status = _status_from_result(result)
                    task.error = getattr(result, "error", None)
                    break
                error = getattr(result, "error", None) or "Execution failed"
                retryable = True

            if not retryable or task.attempts >= self.max_attempts:
                task.status = TaskStatus.FAILED
                task.error = error
                logger.error(f"✗ {task.id} failed after {task.attempts} attempt(s): {error}")
                break

            delay = self.backoff_base_seconds * 2 ** (task.attempts - 1)
            logger.warning(f"↻ {task.id} attempt {task.attempts} failed ({error}), retrying in {delay:.1f}s")
            await asyncio.sleep(delay)

        task.completed_at = datetime.now()
        self._done[task.id].set()
        if task.status == TaskStatus.COMPLETED:
            logger.info(f"✓ {task.id} completed")
