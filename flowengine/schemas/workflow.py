"""
Workflow definition schema.

A workflow is a list of typed nodes plus data-flow edges between them. The
definition is owned by the caller and never mutated by the engine. Workflow
JSON exported with camelCase keys (``globalVariables``, ``sourceHandle``, ...)
loads unchanged.
"""

from enum import StrEnum
from typing import Any

from pydantic import AliasChoices, BaseModel, Field


class NodeType(StrEnum):
    """Node type tags the engine treats specially. Any other tag is dispatched by registry."""

    INPUT = "INPUT"
    PROCESS = "PROCESS"
    PROCESS_WITH_TOOLS = "PROCESS_WITH_TOOLS"
    LOGIC = "LOGIC"
    OUTPUT = "OUTPUT"


class ParallelErrorStrategy(StrEnum):
    """What a parallel run does when one node of a layer fails."""

    FAIL_FAST = "fail_fast"  # abort the whole run
    CONTINUE = "continue"  # skip the failed branch, keep going
    COLLECT = "collect"  # like continue, and report errors in the output


class InputField(BaseModel):
    """A field of an INPUT node. Its value is filled from the run's initial input."""

    id: str = ""
    name: str
    value: Any = None
    required: bool = False
    field_type: str = Field(default="text", validation_alias=AliasChoices("field_type", "type"))

    model_config = {"extra": "allow"}

    def is_blank(self) -> bool:
        if self.value is None:
            return True
        if isinstance(self.value, str):
            return not self.value.strip()
        if isinstance(self.value, list | dict):
            return len(self.value) == 0
        return False


class NodeDefinition(BaseModel):
    """A typed unit of work in the workflow graph."""

    id: str
    name: str
    type: str
    config: dict[str, Any] = Field(default_factory=dict)
    position: dict[str, float] | None = None  # layout only

    model_config = {"extra": "allow"}

    def config_value(self, *keys: str, default: Any = None) -> Any:
        """Return the first config value present under any of ``keys``."""
        for key in keys:
            if key in self.config and self.config[key] is not None:
                return self.config[key]
        return default

    def input_fields(self) -> list[InputField]:
        return [InputField.model_validate(f) for f in self.config.get("fields", []) or []]


class EdgeDefinition(BaseModel):
    """A data-flow edge. Handles select a branch of multi-output LOGIC nodes."""

    id: str = ""
    source: str
    target: str
    source_handle: str | None = Field(
        default=None, validation_alias=AliasChoices("source_handle", "sourceHandle")
    )
    target_handle: str | None = Field(
        default=None, validation_alias=AliasChoices("target_handle", "targetHandle")
    )

    model_config = {"extra": "allow"}


class ExecutionSettings(BaseModel):
    """Per-workflow execution settings. ``None`` means: use the engine default."""

    enable_parallel_execution: bool | None = Field(
        default=None,
        validation_alias=AliasChoices("enable_parallel_execution", "enableParallelExecution"),
    )
    parallel_error_strategy: ParallelErrorStrategy | None = Field(
        default=None,
        validation_alias=AliasChoices("parallel_error_strategy", "parallelErrorStrategy"),
    )

    model_config = {"extra": "allow"}


class WorkflowDefinition(BaseModel):
    """Nodes, edges, global variables and execution settings of one workflow."""

    nodes: list[NodeDefinition] = Field(default_factory=list)
    edges: list[EdgeDefinition] = Field(default_factory=list)
    global_variables: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("global_variables", "globalVariables"),
    )
    settings: ExecutionSettings = Field(default_factory=ExecutionSettings)
    version: int = 1

    model_config = {"extra": "allow"}

    def get_node(self, node_id: str) -> NodeDefinition | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def find_node(self, name_or_id: str) -> NodeDefinition | None:
        """Find a node by name first, then by id."""
        for node in self.nodes:
            if node.name == name_or_id:
                return node
        return self.get_node(name_or_id)

    def check_integrity(self) -> list[str]:
        """
        Return structural problems: duplicate ids or names, dangling or
        self-referencing edges. Cycles are reported by the topology functions.
        """
        errors = []
        seen_ids: set[str] = set()
        seen_names: set[str] = set()
        for node in self.nodes:
            if node.id in seen_ids:
                errors.append(f"Duplicate node id '{node.id}'")
            seen_ids.add(node.id)
            if node.name in seen_names:
                errors.append(f"Duplicate node name '{node.name}' makes variable references ambiguous")
            seen_names.add(node.name)

        for edge in self.edges:
            if edge.source not in seen_ids:
                errors.append(f"Edge '{edge.id}' references missing source node '{edge.source}'")
            if edge.target not in seen_ids:
                errors.append(f"Edge '{edge.id}' references missing target node '{edge.target}'")
            if edge.source == edge.target:
                errors.append(f"Edge '{edge.id}' connects node '{edge.source}' to itself")

        return errors
