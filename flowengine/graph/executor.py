"""
Workflow Executor - runs workflow graphs.

The executor:
1. Checks the graph (integrity, cycles) and, on resume, the checkpoint
2. Creates the execution record and the run context
3. Runs nodes in topological order, sequentially or layer by layer
4. Routes around unselected branches and failed nodes
5. Persists node logs, debug artifacts, checkpoints and the final record
6. Returns an ExecutionResult

Graph and checkpoint problems raise before any record is written. Once the
record exists, every run ends in a terminal record: COMPLETED, FAILED or
PAUSED.
"""

import asyncio
import dataclasses
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from flowengine.config import EngineConfig
from flowengine.errors import (
    CheckpointIncompatibleError,
    ExecutionCancelledError,
    GraphError,
    InputValidationError,
    ProcessorError,
)
from flowengine.graph.context import ExecutionContext
from flowengine.graph.error_analysis import analyze_error
from flowengine.graph.input_validator import validate_node_input
from flowengine.graph.logic_router import active_edges, cascade_skip, should_execute_node
from flowengine.graph.output_validator import validate_node_output
from flowengine.graph.processors import (
    NodeProcessor,
    ProcessorRegistry,
    apply_initial_input,
    resolve_processor_kind,
)
from flowengine.graph.run_state import NON_RESULT_NODE_TYPES, RunState
from flowengine.graph.topology import execution_order, parallel_layers
from flowengine.graph.variables import replace_variables_in_config
from flowengine.observability import set_trace_context
from flowengine.pricing import estimate_cost_usd
from flowengine.runtime.analytics import AnalyticsCollector
from flowengine.runtime.debug_artifacts import DebugArtifactCollector
from flowengine.runtime.event_bus import ExecutionEventBus
from flowengine.runtime.runtime_logger import RuntimeLogger
from flowengine.schemas.checkpoint import CheckpointSnapshot
from flowengine.schemas.execution import (
    ExecutionRecord,
    ExecutionStatus,
    NodeOutput,
    NodeStatus,
    TokenUsage,
)
from flowengine.schemas.workflow import NodeDefinition, ParallelErrorStrategy, WorkflowDefinition
from flowengine.storage.checkpoint_store import CheckpointManager, create_workflow_hash
from flowengine.storage.execution_store import ExecutionStore

logger = logging.getLogger(__name__)

PricingFunction = Callable[[str | None, int, int], float]


@dataclass
class ExecutionResult:
    """Result of executing a workflow."""

    status: ExecutionStatus
    execution_id: str
    output: dict[str, Any] = field(default_factory=dict)
    total_tokens: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    duration_ms: int = 0
    error: str | None = None
    estimated_cost: float = 0.0
    error_detail: dict[str, Any] | None = None

    @property
    def success(self) -> bool:
        return self.status == ExecutionStatus.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "execution_id": self.execution_id,
            "output": self.output,
            "total_tokens": self.total_tokens,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "duration_ms": self.duration_ms,
            "error": self.error,
            "estimated_cost": self.estimated_cost,
            "error_detail": self.error_detail,
        }


@dataclass
class _Run:
    """Everything one ``execute()`` call owns."""

    context: ExecutionContext
    state: RunState
    persistence: RuntimeLogger
    debug: DebugArtifactCollector
    nodes_by_id: dict[str, NodeDefinition]
    started: float
    resumed_from_id: str | None = None


class WorkflowExecutor:
    """
    Executes one workflow definition.

    Example:
        executor = WorkflowExecutor(
            workflow,
            store=InMemoryExecutionStore(),
            processors={"PROCESS": MyLLMProcessor()},
            workflow_id="wf_1",
        )
        result = await executor.execute({"topic": "tea"})
    """

    def __init__(
        self,
        workflow: WorkflowDefinition,
        store: ExecutionStore,
        processors: ProcessorRegistry | dict[str, NodeProcessor] | None = None,
        workflow_id: str = "",
        organization_id: str = "",
        user_id: str = "",
        event_bus: ExecutionEventBus | None = None,
        analytics: AnalyticsCollector | None = None,
        pricing: PricingFunction = estimate_cost_usd,
        config: EngineConfig | None = None,
    ):
        self.workflow = workflow
        self.store = store
        self.registry = processors if isinstance(processors, ProcessorRegistry) else ProcessorRegistry(processors)
        self.workflow_id = workflow_id
        self.organization_id = organization_id
        self.user_id = user_id
        self.event_bus = event_bus
        self.analytics = analytics
        self.pricing = pricing
        self.config = config or EngineConfig()
        self.checkpoints = CheckpointManager(store)
        self.workflow_hash = create_workflow_hash(workflow.nodes, workflow.edges)

        settings = workflow.settings
        self.enable_parallel = (
            settings.enable_parallel_execution
            if settings.enable_parallel_execution is not None
            else self.config.enable_parallel_execution
        )
        self.error_strategy = ParallelErrorStrategy(
            settings.parallel_error_strategy or self.config.parallel_error_strategy
        )

    # === ENTRY POINT ===

    async def execute(
        self,
        initial_input: dict[str, Any] | None = None,
        resume_from_execution_id: str | None = None,
    ) -> ExecutionResult:
        """
        Run the workflow.

        Args:
            initial_input: Values for INPUT node fields, by field name or id
            resume_from_execution_id: Seed the run with this execution's checkpoint

        Raises:
            GraphError: the graph is malformed or cyclic
            CheckpointIncompatibleError: the checkpoint is missing or no longer fits the graph
        """
        started = time.perf_counter()
        initial_input = dict(initial_input or {})

        problems = self.workflow.check_integrity()
        if problems:
            raise GraphError("; ".join(problems))
        order = execution_order(self.workflow.nodes, self.workflow.edges)
        layers = parallel_layers(self.workflow.nodes, self.workflow.edges) if self.enable_parallel else []

        snapshot: CheckpointSnapshot | None = None
        if resume_from_execution_id:
            validation = await self.checkpoints.validate_checkpoint(resume_from_execution_id, self.workflow_hash)
            if not validation.valid:
                raise CheckpointIncompatibleError(
                    f"Cannot resume execution {resume_from_execution_id}: {validation.reason}"
                )
            snapshot = await self.checkpoints.load_checkpoint(resume_from_execution_id)

        execution_id = str(uuid.uuid4())
        await self.store.create_execution(
            ExecutionRecord(
                id=execution_id,
                workflow_id=self.workflow_id,
                organization_id=self.organization_id,
                user_id=self.user_id,
                status=ExecutionStatus.PENDING,
                input=initial_input,
                resumed_from_id=resume_from_execution_id,
            )
        )
        set_trace_context(execution_id=execution_id, workflow_id=self.workflow_id)

        run_nodes = apply_initial_input(self.workflow.nodes, initial_input)
        context = ExecutionContext(
            execution_id=execution_id,
            workflow_id=self.workflow_id,
            organization_id=self.organization_id,
            user_id=self.user_id,
            global_variables={**self.workflow.global_variables, "trigger_input": initial_input},
            nodes=run_nodes,
            edges=list(self.workflow.edges),
        )
        run = _Run(
            context=context,
            state=RunState(),
            persistence=RuntimeLogger(self.store, execution_id),
            debug=DebugArtifactCollector(execution_id),
            nodes_by_id={n.id: n for n in run_nodes},
            started=started,
            resumed_from_id=resume_from_execution_id,
        )
        if snapshot is not None:
            self._restore(run, snapshot, order)

        try:
            await self.store.update_execution(
                execution_id, status=ExecutionStatus.RUNNING, started_at=datetime.now()
            )
            mode = f"parallel, {self.error_strategy}" if self.enable_parallel else "sequential"
            logger.info(f"🚀 Starting execution {execution_id} ({len(order)} nodes, {mode})")
            if self.event_bus:
                await self.event_bus.init_execution(
                    execution_id,
                    self.workflow_id,
                    run_nodes,
                    restored_node_ids=sorted(run.state.restored),
                    tokens=self._totals(context)[0],
                )

            if self.enable_parallel:
                await self._execute_parallel(run, layers)
            else:
                await self._execute_sequential(run, [run.nodes_by_id[n.id] for n in order])

            if run.state.paused:
                return await self._finish_paused(run)
            return await self._finish_completed(run)
        except asyncio.CancelledError:
            # A queue timeout or shutdown cancels the run mid-node; the record still has to end FAILED
            await self._finish_failed(run, ExecutionCancelledError("Execution was cancelled or timed out"))
            raise
        except Exception as e:
            return await self._finish_failed(run, e)

    # === START-UP ===

    def _restore(self, run: _Run, snapshot: CheckpointSnapshot, order: list[NodeDefinition]) -> None:
        for node in order:
            completed = snapshot.completed_nodes.get(node.id)
            if completed is None or completed.status != "COMPLETED":
                continue
            run.context.record_output(completed.output)
            run.state.record_restored(completed.output)
        run.context.global_variables.update(snapshot.context.variables)
        logger.info(f"🔄 Restored {len(run.state.restored)} completed node(s) from checkpoint")

    # === SCHEDULING ===

    async def _execute_sequential(self, run: _Run, order: list[NodeDefinition]) -> None:
        for node in order:
            if node.id in run.state.settled:
                continue
            if not should_execute_node(node.id, run.context.edges, run.context.node_outputs):
                await self._skip(run, node, "No active incoming edge")
                continue

            validation_error = self._validate_input(run, node)
            if validation_error is not None:
                await self._settle(run, node, validation_error)
                raise InputValidationError(
                    f'Node "{node.name}" failed: {validation_error.error}',
                    node.id,
                    node.name,
                    validation_error.data.get("validation_status", "invalid"),
                )

            output = await self._execute_node(run, node)
            await self._settle(run, node, output)

            if output.status == NodeStatus.ERROR:
                raise self._processor_error(node, output)
            if output.status == NodeStatus.PAUSED:
                return

    async def _execute_parallel(self, run: _Run, layers: list[list[NodeDefinition]]) -> None:
        state = run.state
        for index, layer in enumerate(layers):
            eligible: list[NodeDefinition] = []
            for layer_node in layer:
                node = run.nodes_by_id[layer_node.id]
                if node.id in state.settled:
                    continue
                if not should_execute_node(node.id, run.context.edges, run.context.node_outputs):
                    await self._skip(run, node, "No active incoming edge")
                    continue
                eligible.append(node)

            if not eligible:
                continue
            logger.info(f"⑂ Layer {index}: running {len(eligible)} node(s) concurrently")

            results = await asyncio.gather(
                *[self._run_parallel_node(run, node) for node in eligible], return_exceptions=True
            )

            first_error: ProcessorError | None = None
            for node, result in zip(eligible, results, strict=True):
                if isinstance(result, BaseException):
                    output = NodeOutput.failure(node, str(result) or type(result).__name__)
                else:
                    output = result
                await self._settle(run, node, output)

                if output.status != NodeStatus.ERROR:
                    continue
                if self.error_strategy == ParallelErrorStrategy.FAIL_FAST:
                    if first_error is None:
                        first_error = self._processor_error(node, output)
                    continue
                state.add_error(node.id, node.name, output.error or "Unknown error")
                for skipped_id in cascade_skip(node.id, run.context.edges, run.context.node_outputs, state.settled):
                    await self._skip(run, run.nodes_by_id[skipped_id], f'Upstream node "{node.name}" failed')

            if first_error is not None:
                raise first_error
            if state.paused:
                logger.info("⏸ Pause detected - stopping after layer settled")
                return

    async def _run_parallel_node(self, run: _Run, node: NodeDefinition) -> NodeOutput:
        validation_error = self._validate_input(run, node)
        if validation_error is not None:
            return validation_error
        return await self._execute_node(run, node)

    # === NODE EXECUTION ===

    def _validate_input(self, run: _Run, node: NodeDefinition) -> NodeOutput | None:
        """Return an error output if ``node`` cannot run, else None."""
        edges = active_edges(run.context.edges, run.context.node_outputs)
        result = validate_node_input(node, run.context, edges, run.context.nodes)
        if result.is_valid:
            return None
        logger.warning(f"✗ Input validation failed for {node.name}: {result.error}")
        output = NodeOutput.failure(node, result.error or "Input validation failed")
        output.data = {"validation_status": result.status.value, **result.details}
        return output

    async def _execute_node(self, run: _Run, node: NodeDefinition) -> NodeOutput:
        set_trace_context(node_id=node.id)
        kind = resolve_processor_kind(node)
        processor = self.registry.get_for(node, kind)
        node_context = dataclasses.replace(run.context, log_sink=run.debug.scoped_sink(node))

        logger.info(f"▶ {node.name} ({node.type})", extra={"event": "node_start", "node_type": node.type})
        node_context.add_log("info", f"Executing {node.name}", step="start")
        if self.event_bus:
            await self.event_bus.node_start(run.context.execution_id, node)

        started_at = datetime.now()
        if processor is None:
            return NodeOutput.failure(node, f"No processor registered for node type '{node.type}'", started_at)
        try:
            output = await processor.process(node, node_context)
        except Exception as e:
            logger.exception(f"Processor for {node.name} raised")
            node_context.add_log("error", f"Processor raised: {e}", step="error")
            return NodeOutput.failure(node, str(e) or type(e).__name__, started_at)

        node_context.add_log("info", f"Finished with status {output.status.value}", step="end")
        return output

    async def _settle(self, run: _Run, node: NodeDefinition, output: NodeOutput) -> None:
        """Apply one node's output to the run. Only the owning coroutine calls this."""
        context, state = run.context, run.state
        context.record_output(output)
        resolved_config = replace_variables_in_config(node.config, context, context.nodes)
        run.persistence.log_node(output, node_input=resolved_config)

        validation: dict[str, Any] | None = None
        if output.status == NodeStatus.SUCCESS:
            if node.type not in NON_RESULT_NODE_TYPES:
                result = validate_node_output(node, output.data)
                validation = result.to_dict()
                if not result.is_valid:
                    logger.warning(f"⚠ Output of {node.name} is {result.status.value}: {result.error}")
            state.record_success(output)
            logger.info(
                f"✓ {node.name} completed in {output.duration_ms}ms",
                extra={
                    "event": "node_complete",
                    "node_type": node.type,
                    "duration_ms": output.duration_ms,
                    "tokens_used": output.token_usage.total_tokens if output.token_usage else 0,
                },
            )
            if self.event_bus:
                await self.event_bus.node_complete(
                    context.execution_id,
                    node,
                    output=output.data,
                    token_usage=output.token_usage,
                    data={"output_validation": validation} if validation else None,
                )
            await self._collect_node_analytics(node, output)

        elif output.status == NodeStatus.PAUSED:
            if not state.paused:
                state.record_pause(output)
            logger.info(f"⏸ {node.name} is awaiting approval (request {state.approval_request_id})")

        else:
            state.record_failure(output)
            analysis = analyze_error(output.error, node.type)
            logger.error(
                f"✗ {node.name} failed: {output.error}", extra={"event": "node_error", "node_type": node.type}
            )
            if self.event_bus:
                await self.event_bus.node_error(
                    context.execution_id, node, output.error or "Unknown error", error_detail=analysis.to_dict()
                )

        run.persistence.save_debug_artifact(
            node.id, run.debug.build_artifact(node, output, resolved_config, validation)
        )

    def _processor_error(self, node: NodeDefinition, output: NodeOutput) -> ProcessorError:
        retryable = analyze_error(output.error, node.type).is_retryable
        return ProcessorError(f'Node "{node.name}" failed: {output.error}', node.id, node.name, retryable)

    async def _skip(self, run: _Run, node: NodeDefinition, reason: str) -> None:
        output = NodeOutput.skipped(node, reason)
        run.context.record_output(output)
        run.state.record_skip(node.id)
        logger.info(f"↷ Skipping {node.name}: {reason}")
        if self.event_bus:
            await self.event_bus.node_skipped(run.context.execution_id, node, reason)

    async def _collect_node_analytics(self, node: NodeDefinition, output: NodeOutput) -> None:
        if self.analytics is None:
            return
        try:
            await self.analytics.collect_node_output(node.id, node.name, output.data)
        except Exception as e:
            logger.warning(f"Analytics collection failed for {node.name}: {e}")

    # === TERMINAL HANDLING ===

    def _totals(self, context: ExecutionContext) -> tuple[TokenUsage, float]:
        """Token totals and cost over every output in the context, restored ones included."""
        usage = TokenUsage()
        cost = 0.0
        for output in context.node_outputs.values():
            if output.token_usage is None:
                continue
            usage = usage + output.token_usage
            cost += self.pricing(
                output.ai_model, output.token_usage.prompt_tokens, output.token_usage.completion_tokens
            )
        return usage, cost

    def _duration_ms(self, run: _Run) -> int:
        return int((time.perf_counter() - run.started) * 1000)

    async def _collect_execution_meta(self, duration_ms: int, total_tokens: int, status: ExecutionStatus) -> None:
        if self.analytics is None:
            return
        try:
            await self.analytics.collect_execution_meta(duration_ms, total_tokens, status.value)
        except Exception as e:
            logger.warning(f"Execution analytics collection failed: {e}")

    async def _save_checkpoint(self, run: _Run, failed_node_id: str | None = None) -> None:
        snapshot = self.checkpoints.build_snapshot(
            self.workflow_hash, run.context.node_outputs, run.context.global_variables, failed_node_id
        )
        try:
            await self.checkpoints.save_checkpoint(run.context.execution_id, snapshot)
        except Exception as e:
            logger.warning(f"Failed to save checkpoint for {run.context.execution_id}: {e}")

    async def _finish_completed(self, run: _Run) -> ExecutionResult:
        execution_id = run.context.execution_id
        output = dict(run.state.last_output)
        if self.enable_parallel and self.error_strategy == ParallelErrorStrategy.COLLECT and run.state.errors:
            output["_parallel_errors"] = list(run.state.errors)

        await run.persistence.flush()
        usage, cost = self._totals(run.context)
        duration_ms = self._duration_ms(run)
        await self._collect_execution_meta(duration_ms, usage.total_tokens, ExecutionStatus.COMPLETED)

        await self.store.update_execution(
            execution_id,
            status=ExecutionStatus.COMPLETED,
            completed_at=datetime.now(),
            output=output,
            duration_ms=duration_ms,
            total_tokens=usage.total_tokens,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            estimated_cost=cost,
        )
        await self.checkpoints.clear_checkpoint(execution_id)
        if run.resumed_from_id:
            try:
                await self.checkpoints.clear_checkpoint(run.resumed_from_id)
            except Exception as e:
                logger.warning(f"Failed to clear checkpoint of {run.resumed_from_id}: {e}")

        if self.event_bus:
            await self.event_bus.execution_complete(execution_id, output=output, tokens=usage)
        logger.info(
            f"✓ Execution {execution_id} completed in {duration_ms}ms ({usage.total_tokens} tokens)",
            extra={"event": "execution_complete", "duration_ms": duration_ms, "tokens_used": usage.total_tokens},
        )
        return ExecutionResult(
            status=ExecutionStatus.COMPLETED,
            execution_id=execution_id,
            output=output,
            total_tokens=usage.total_tokens,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            duration_ms=duration_ms,
            estimated_cost=cost,
        )

    async def _finish_paused(self, run: _Run) -> ExecutionResult:
        execution_id = run.context.execution_id
        output = run.state.paused_output()

        await self._save_checkpoint(run)
        await run.persistence.flush()
        usage, cost = self._totals(run.context)
        duration_ms = self._duration_ms(run)

        await self.store.update_execution(
            execution_id,
            status=ExecutionStatus.PAUSED,
            output=output,
            duration_ms=duration_ms,
            total_tokens=usage.total_tokens,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            estimated_cost=cost,
        )
        if self.event_bus:
            paused_node = run.nodes_by_id[run.state.paused_node_id]
            await self.event_bus.execution_paused(execution_id, paused_node, run.state.approval_request_id)
        logger.info(f"⏸ Execution {execution_id} paused at node {run.state.paused_node_id}")
        return ExecutionResult(
            status=ExecutionStatus.PAUSED,
            execution_id=execution_id,
            output=output,
            total_tokens=usage.total_tokens,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            duration_ms=duration_ms,
            estimated_cost=cost,
        )

    async def _finish_failed(self, run: _Run, error: Exception) -> ExecutionResult:
        execution_id = run.context.execution_id
        message = str(error) or type(error).__name__
        failed_node_id = getattr(error, "node_id", None) or run.state.last_failed_node_id
        failed_node = run.nodes_by_id.get(failed_node_id) if failed_node_id else None
        analysis = analyze_error(error, failed_node.type if failed_node else None)
        if not isinstance(error, InputValidationError | ProcessorError | ExecutionCancelledError):
            logger.exception(f"Execution {execution_id} failed unexpectedly")

        await self._save_checkpoint(run, failed_node_id)
        await run.persistence.flush()
        usage, cost = self._totals(run.context)
        duration_ms = self._duration_ms(run)
        await self._collect_execution_meta(duration_ms, usage.total_tokens, ExecutionStatus.FAILED)

        try:
            await self.store.update_execution(
                execution_id,
                status=ExecutionStatus.FAILED,
                completed_at=datetime.now(),
                error=message,
                error_detail=analysis.to_dict(),
                duration_ms=duration_ms,
                total_tokens=usage.total_tokens,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
                estimated_cost=cost,
            )
        except Exception as e:
            # The run has already failed; keep its error rather than the store's
            logger.error(f"Failed to record failure of {execution_id}: {e}")
        if self.event_bus:
            await self.event_bus.execution_error(
                execution_id, message, error_detail=analysis.to_dict(), tokens=usage
            )
        logger.error(f"✗ Execution {execution_id} failed: {message}", extra={"event": "execution_error"})
        return ExecutionResult(
            status=ExecutionStatus.FAILED,
            execution_id=execution_id,
            error=message,
            error_detail=analysis.to_dict(),
            total_tokens=usage.total_tokens,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            duration_ms=duration_ms,
            estimated_cost=cost,
        )
