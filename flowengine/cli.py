"""
Command-line interface for flowengine.

Usage:
    flowengine run workflow.json --input '{"topic": "tea"}'
    flowengine run workflow.json --parallel --strategy collect
    flowengine run workflow.json --resume <execution_id>
    flowengine validate workflow.json
    flowengine order workflow.json --layers
    flowengine show <execution_id>
    flowengine list --workflow-id wf_1

``run`` executes PROCESS, OUTPUT and any other non-built-in node types with
an echo processor, so a graph's routing, variable references and validation
can be exercised without any model behind it.
"""

import asyncio
import json
import sys
from datetime import datetime
from pathlib import Path
from typing import Any

import click

from flowengine.config import PARALLEL_ERROR_STRATEGIES, EngineConfig
from flowengine.errors import CheckpointIncompatibleError, CycleError, GraphError
from flowengine.graph.context import ExecutionContext
from flowengine.graph.executor import WorkflowExecutor
from flowengine.graph.processors import ProcessorRegistry
from flowengine.graph.topology import execution_order, parallel_layers
from flowengine.graph.variables import replace_variables
from flowengine.observability import configure_logging
from flowengine.runtime.event_bus import ExecutionEventBus
from flowengine.runtime.http_forwarder import HttpEventForwarder
from flowengine.schemas.execution import ExecutionStatus, NodeOutput
from flowengine.schemas.workflow import NodeDefinition, NodeType, WorkflowDefinition
from flowengine.storage.execution_store import FileExecutionStore

# Config keys echoed by the dry-run processor, first present wins
ECHO_FIELDS = ("user_prompt", "userPrompt", "prompt", "template", "content")


class EchoProcessor:
    """Dry-run processor: echoes the node's prompt with variables substituted."""

    async def process(self, node: NodeDefinition, context: ExecutionContext) -> NodeOutput:
        started_at = datetime.now()
        template = node.config_value(*ECHO_FIELDS, default="")
        resolved = replace_variables(str(template), context)
        context.add_log("info", "Echoing resolved prompt", step="echo", data={"unresolved": resolved.unresolved})
        return NodeOutput.success(node, {"result": resolved.text}, started_at)


def load_workflow(path: Path) -> tuple[WorkflowDefinition, str]:
    """Load a workflow file. Returns the definition and its id (``id`` key or file stem)."""
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    workflow_id = data.get("id") or path.stem
    # Exported workflow records wrap the graph in a "config" key
    if isinstance(data.get("config"), dict) and "nodes" in data["config"]:
        data = data["config"]
    return WorkflowDefinition.model_validate(data), str(workflow_id)


def build_echo_registry(workflow: WorkflowDefinition) -> ProcessorRegistry:
    registry = ProcessorRegistry()
    echo = EchoProcessor()
    for node_type in (NodeType.PROCESS, NodeType.PROCESS_WITH_TOOLS, NodeType.OUTPUT):
        registry.register(node_type, echo)
    for node in workflow.nodes:
        if not registry.has(node.type):
            registry.register(node.type, echo)
    return registry


def _parse_input(input_json: str | None, input_file: Path | None) -> dict[str, Any]:
    try:
        if input_file is not None:
            data = json.loads(input_file.read_text(encoding="utf-8"))
        elif input_json:
            data = json.loads(input_json)
        else:
            return {}
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"Input is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise click.BadParameter("Input must be a JSON object")
    return data


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, ensure_ascii=False, default=str))


@click.group()
@click.version_option(version="0.1.0", prog_name="flowengine")
def main():
    """flowengine - run and inspect node-and-edge workflows."""
    pass


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--input", "input_json", help="Run input as a JSON object")
@click.option(
    "--input-file", type=click.Path(exists=True, dir_okay=False, path_type=Path), help="Read run input from a file"
)
@click.option("--parallel/--sequential", default=None, help="Override the workflow's execution mode")
@click.option("--strategy", type=click.Choice(PARALLEL_ERROR_STRATEGIES), help="Parallel error strategy")
@click.option("--data-dir", type=click.Path(file_okay=False, path_type=Path), help="Execution store directory")
@click.option("--resume", "resume_from", help="Resume from this execution's checkpoint")
@click.option("--log-level", help="Log level (default: LOG_LEVEL or configuration)")
def run(workflow_file, input_json, input_file, parallel, strategy, data_dir, resume_from, log_level):
    """Execute a workflow with echo processors."""
    config = EngineConfig()
    configure_logging(log_level or config.log_level, config.log_format)

    workflow, workflow_id = load_workflow(workflow_file)
    if parallel is not None:
        workflow.settings.enable_parallel_execution = parallel
    if strategy:
        workflow.settings.parallel_error_strategy = strategy
    initial_input = _parse_input(input_json, input_file)

    store = FileExecutionStore(data_dir or config.data_dir)
    event_bus = ExecutionEventBus()
    executor = WorkflowExecutor(
        workflow,
        store,
        build_echo_registry(workflow),
        workflow_id=workflow_id,
        event_bus=event_bus,
        config=config,
    )

    async def _run():
        forwarder = None
        if config.event_webhook_url:
            forwarder = HttpEventForwarder(config.event_webhook_url)
            forwarder.attach(event_bus)
        try:
            return await executor.execute(initial_input, resume_from_execution_id=resume_from)
        finally:
            if forwarder is not None:
                await forwarder.aclose()

    try:
        result = asyncio.run(_run())
    except (GraphError, CheckpointIncompatibleError) as e:
        raise click.ClickException(str(e)) from e

    _echo_json(result.to_dict())
    sys.exit(0 if result.status != ExecutionStatus.FAILED else 1)


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def validate(workflow_file):
    """Check a workflow graph for structural problems."""
    workflow, workflow_id = load_workflow(workflow_file)
    errors = workflow.check_integrity()
    if not errors:
        try:
            execution_order(workflow.nodes, workflow.edges)
        except CycleError as e:
            errors.append(str(e))

    _echo_json({"workflow_id": workflow_id, "valid": not errors, "errors": errors})
    sys.exit(0 if not errors else 1)


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--layers", is_flag=True, help="Show parallel layers instead of a flat order")
def order(workflow_file, layers):
    """Print the execution order of a workflow."""
    workflow, _ = load_workflow(workflow_file)
    try:
        if layers:
            result: Any = [
                [{"id": n.id, "name": n.name, "type": n.type} for n in layer]
                for layer in parallel_layers(workflow.nodes, workflow.edges)
            ]
        else:
            result = [
                {"id": n.id, "name": n.name, "type": n.type}
                for n in execution_order(workflow.nodes, workflow.edges)
            ]
    except CycleError as e:
        raise click.ClickException(str(e)) from e
    _echo_json(result)


@main.command()
@click.argument("execution_id")
@click.option("--data-dir", type=click.Path(file_okay=False, path_type=Path), help="Execution store directory")
@click.option("--no-logs", is_flag=True, help="Omit node logs")
def show(execution_id, data_dir, no_logs):
    """Print a stored execution record and its node logs."""
    store = FileExecutionStore(data_dir or EngineConfig().data_dir)

    async def _load():
        record = await store.get_execution(execution_id)
        logs = [] if no_logs or record is None else await store.list_node_logs(execution_id)
        return record, logs

    record, logs = asyncio.run(_load())
    if record is None:
        raise click.ClickException(f"Execution not found: {execution_id}")

    data: dict[str, Any] = {"execution": record.model_dump(mode="json", exclude={"checkpoint"})}
    if not no_logs:
        data["node_logs"] = [log.model_dump(mode="json") for log in logs]
    _echo_json(data)


@main.command("list")
@click.option("--data-dir", type=click.Path(file_okay=False, path_type=Path), help="Execution store directory")
@click.option("--workflow-id", help="Only executions of this workflow")
@click.option("--status", type=click.Choice([s.value for s in ExecutionStatus]), help="Only this status")
@click.option("--limit", default=20, show_default=True, help="Maximum executions to show")
def list_executions(data_dir, workflow_id, status, limit):
    """List stored executions, most recent first."""
    store = FileExecutionStore(data_dir or EngineConfig().data_dir)
    records = asyncio.run(
        store.list_executions(
            workflow_id=workflow_id, status=ExecutionStatus(status) if status else None, limit=limit
        )
    )
    _echo_json(
        [
            {
                "id": r.id,
                "workflow_id": r.workflow_id,
                "status": r.status.value,
                "created_at": r.created_at.isoformat(),
                "duration_ms": r.duration_ms,
                "total_tokens": r.total_tokens,
                "can_resume": r.can_resume,
            }
            for r in records
        ]
    )


if __name__ == "__main__":
    main()
