"""Graph execution: topology, variable resolution, validation, routing and the executor."""

from flowengine.graph.context import ExecutionContext
from flowengine.graph.executor import ExecutionResult, WorkflowExecutor
from flowengine.graph.input_validator import InputValidationResult, validate_node_input
from flowengine.graph.logic_router import cascade_skip, should_execute_node
from flowengine.graph.output_validator import OutputValidationResult, validate_node_output
from flowengine.graph.processors import NodeProcessor, ProcessorKind, ProcessorRegistry, resolve_processor_kind
from flowengine.graph.topology import execution_order, parallel_layers
from flowengine.graph.variables import replace_variables, resolve_reference

__all__ = [
    "ExecutionContext",
    "ExecutionResult",
    "InputValidationResult",
    "NodeProcessor",
    "OutputValidationResult",
    "ProcessorKind",
    "ProcessorRegistry",
    "WorkflowExecutor",
    "cascade_skip",
    "execution_order",
    "parallel_layers",
    "replace_variables",
    "resolve_processor_kind",
    "resolve_reference",
    "should_execute_node",
    "validate_node_input",
    "validate_node_output",
]
