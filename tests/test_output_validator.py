"""
Tests for post-execution output validation and truncation heuristics.
"""

import pytest

from flowengine.graph.completeness import check_completeness
from flowengine.graph.output_validator import (
    OutputStatus,
    extract_content,
    is_output_valid,
    validate_node_output,
)
from flowengine.graph.type_validators import (
    TypeValidationResult,
    register_type_validator,
    validate_csv,
    validate_json,
)
from flowengine.schemas.workflow import NodeDefinition


def test_truncated_json_is_invalid():
    result = validate_node_output(None, {"result": '{"a":1, "b":2'}, expected_type="json")

    assert result.status == OutputStatus.INVALID
    assert "brace" in result.error


def test_valid_json():
    result = validate_node_output(None, {"result": '{"a": [1, 2], "b": "x"}'}, expected_type="json")

    assert result.is_valid
    assert result.details["expected_type"] == "json"


def test_trailing_colon_is_incomplete():
    result = validate_node_output(None, {"result": "Please review the following items: "})

    assert result.status == OutputStatus.INCOMPLETE
    assert result.details["truncation_pattern"] == "trailing_colon"


def test_empty_output():
    assert validate_node_output(None, {"result": "   "}).status == OutputStatus.EMPTY
    assert validate_node_output(None, {}).status == OutputStatus.EMPTY
    assert validate_node_output(None, None).error == "Output is empty"


def test_zero_and_false_count_as_content():
    assert is_output_valid({"count": 0})
    assert is_output_valid({"flag": False})
    assert not is_output_valid({"items": [], "note": ""})


def test_content_field_priority():
    assert extract_content({"text": "second", "result": "first"}) == "first"
    assert extract_content({"summary": "only string"}) == "only string"


def test_declared_type_from_node_config():
    node = NodeDefinition(id="n", name="N", type="PROCESS", config={"expectedOutputType": "JSON"})

    result = validate_node_output(node, {"result": "not json at all"})

    assert result.status == OutputStatus.INVALID


def test_html_with_unclosed_container_is_incomplete():
    result = validate_node_output(None, {"result": "<div><p>Hello</p>"}, expected_type="html")

    assert result.status == OutputStatus.INCOMPLETE
    assert "<div>" in result.error


def test_plain_text_is_not_html():
    result = validate_node_output(None, {"result": "just words"}, expected_type="html")

    assert result.status == OutputStatus.INVALID


def test_ragged_csv_is_invalid():
    assert validate_csv("name,age,city\nAda,36,London\nBob,41,Paris").valid
    assert not validate_csv("a,b,c\n1,2\n3,4\n5,6").valid


@pytest.mark.parametrize(
    "text",
    [
        "And then it was over...",
        "A complete sentence.",
        "点击这里…",
        "The recommended choice is Option A",
        "That is just how it is",
    ],
)
def test_complete_text(text):
    assert check_completeness(text).complete


@pytest.mark.parametrize(
    "text,pattern",
    [
        ("We looked at the options and", "english_connective"),
        ("下一步是", "chinese_connective"),
        ("Steps:\n1. Boil water\n2.", "empty_list_item"),
        ("apples, pears,", "trailing_comma"),
        ("```python\nprint('hi')\n", "unclosed_code_block"),
    ],
)
def test_incomplete_text(text, pattern):
    result = check_completeness(text)

    assert not result.complete
    assert result.pattern == pattern


def test_json_primitives_are_valid_json():
    assert validate_json("42").valid
    assert validate_json("true").valid
    assert not validate_json("[1, 2]]").valid


def test_unknown_type_skips_type_check():
    result = validate_node_output(None, {"result": "anything goes."}, expected_type="yaml")

    assert result.is_valid


def test_registered_validator_is_used():
    register_type_validator(
        "upper-only", lambda content: TypeValidationResult(content.isupper(), "Must be upper case")
    )

    assert validate_node_output(None, {"result": "LOUD."}, expected_type="upper-only").is_valid
    assert validate_node_output(None, {"result": "quiet."}, expected_type="upper-only").status == (
        OutputStatus.INVALID
    )
