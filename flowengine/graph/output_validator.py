"""
Output validation run after a node executes.

Classifies a node output as:
- valid: has content, matches its declared type, looks complete
- empty: no field holds any content
- invalid: content does not match the declared output type
- incomplete: content looks truncated (independent of type)

The result feeds progress events and debug artifacts. It never fails a run.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from flowengine.graph.completeness import check_completeness
from flowengine.graph.type_validators import get_type_validator
from flowengine.schemas.workflow import NodeDefinition

logger = logging.getLogger(__name__)

CONTENT_FIELD_PRIORITY = ("result", "output", "content", "text", "response", "data")
EXPECTED_TYPE_KEYS = ("expected_output_type", "expectedOutputType", "output_type", "outputType")


class OutputStatus(StrEnum):
    VALID = "valid"
    EMPTY = "empty"
    INVALID = "invalid"
    INCOMPLETE = "incomplete"


@dataclass
class OutputValidationResult:
    status: OutputStatus
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def is_valid(self) -> bool:
        return self.status == OutputStatus.VALID

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status.value, "error": self.error, "details": self.details}


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, list | dict | tuple | set):
        return len(value) == 0
    return False


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, default=str)


def extract_content(output: dict[str, Any] | None) -> str | None:
    """
    Pick the text to validate from an output map.

    Conventional fields first, then the first non-blank string field, then the
    whole map serialized. None when nothing holds content.
    """
    if not output:
        return None
    for key in CONTENT_FIELD_PRIORITY:
        if key in output and not _is_blank(output[key]):
            return _as_text(output[key])
    for value in output.values():
        if isinstance(value, str) and value.strip():
            return value
    if any(not _is_blank(v) for v in output.values()):
        return _as_text(output)
    return None


def is_output_valid(output: dict[str, Any] | None) -> bool:
    """True when at least one field holds content. 0 and False count as content."""
    return extract_content(output) is not None


def expected_type_for(node: NodeDefinition | dict[str, Any] | None) -> str | None:
    if node is None:
        return None
    config = node.config if isinstance(node, NodeDefinition) else node
    for key in EXPECTED_TYPE_KEYS:
        value = config.get(key)
        if isinstance(value, str) and value:
            return value.lower()
    return None


def validate_node_output(
    node: NodeDefinition | dict[str, Any] | None,
    output: dict[str, Any] | None,
    expected_type: str | None = None,
) -> OutputValidationResult:
    """
    Validate an output map.

    Args:
        node: The node definition (or its config) the output belongs to
        output: The node's output data
        expected_type: Overrides the type declared in the node config
    """
    content = extract_content(output)
    if content is None:
        return OutputValidationResult(status=OutputStatus.EMPTY, error="Output is empty")

    expected = (expected_type or expected_type_for(node) or "").lower() or None
    details: dict[str, Any] = {"expected_type": expected, "content_length": len(content)}

    validator = get_type_validator(expected)
    if expected and validator is None:
        logger.debug(f"No type validator registered for '{expected}', skipping type check")
    if validator is not None:
        type_result = validator(content)
        if not type_result.valid:
            return OutputValidationResult(
                status=OutputStatus.INVALID, error=type_result.error, details=details
            )

    completeness = check_completeness(content, expected)
    if not completeness.complete:
        details["truncation_pattern"] = completeness.pattern
        return OutputValidationResult(
            status=OutputStatus.INCOMPLETE, error=completeness.reason, details=details
        )

    return OutputValidationResult(status=OutputStatus.VALID, details=details)
