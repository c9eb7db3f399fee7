"""
Tests for variable reference resolution and substitution.
"""

from flowengine.graph.context import ExecutionContext
from flowengine.graph.variables import (
    create_content_parts,
    find_variable_references,
    format_value,
    replace_variables,
    replace_variables_in_config,
    resolve_reference,
    try_parse_json_like,
)
from flowengine.schemas.execution import NodeOutput
from flowengine.schemas.workflow import NodeDefinition


def make_context(outputs=None, nodes=None, global_variables=None):
    context = ExecutionContext(
        execution_id="exec-1",
        workflow_id="wf-1",
        nodes=nodes or [],
        global_variables=global_variables or {},
    )
    for output in outputs or []:
        context.record_output(output)
    return context


def output_for(node, data):
    return NodeOutput(node_id=node.id, node_name=node.name, node_type=node.type, data=data)


USER = NodeDefinition(id="n_user", name="User", type="INPUT")
WRITER = NodeDefinition(id="n_writer", name="Writer", type="PROCESS")
PAINTER = NodeDefinition(id="n_painter", name="Painter", type="PROCESS")


def test_find_references_in_order():
    refs = find_variable_references("{{User.name}} met {{Writer}} and {{ Painter.images.0.url }}")

    assert [r.name for r in refs] == ["User", "Writer", "Painter"]
    assert refs[0].path == ("name",)
    assert refs[2].path == ("images", "0", "url")
    assert refs[0].token == "{{User.name}}"


def test_replace_by_node_name():
    context = make_context([output_for(USER, {"name": "Ada"})], nodes=[USER])

    resolved = replace_variables("Hello {{User.name}}", context)

    assert resolved.text == "Hello Ada"
    assert resolved.unresolved == []


def test_replace_by_node_id():
    context = make_context([output_for(USER, {"name": "Ada"})], nodes=[USER])

    assert replace_variables("Hi {{n_user.name}}", context).text == "Hi Ada"


def test_whole_node_reference_prefers_result():
    context = make_context([output_for(WRITER, {"result": "a poem", "model": "x"})], nodes=[WRITER])

    assert replace_variables("{{Writer}}", context).text == "a poem"


def test_whole_node_reference_with_single_key():
    context = make_context([output_for(USER, {"topic": "tea"})], nodes=[USER])

    assert replace_variables("{{User}}", context).text == "tea"


def test_result_alias_resolves_chinese_key():
    context = make_context([output_for(WRITER, {"结果": "诗"})], nodes=[WRITER])

    assert replace_variables("{{Writer.result}}", context).text == "诗"


def test_image_urls_projection():
    data = {
        "result": "done",
        "images": [{"url": "https://cdn/x.png", "revisedPrompt": "a cat"}, {"url": "https://cdn/y.png"}],
    }
    context = make_context([output_for(PAINTER, data)], nodes=[PAINTER])

    resolution = resolve_reference(find_variable_references("{{Painter.imageUrls}}")[0], context)

    assert resolution.resolved
    assert resolution.value == [
        {"index": 1, "url": "https://cdn/x.png", "description": "a cat"},
        {"index": 2, "url": "https://cdn/y.png", "description": "Image 2"},
    ]
    assert replace_variables("{{Painter.imageUrl}}", context).text == "https://cdn/x.png"


def test_json_inside_result_text_can_be_dotted_into():
    data = {"result": '```json\n{"title": "Tea", "tags": ["green"]}\n```'}
    context = make_context([output_for(WRITER, data)], nodes=[WRITER])

    assert replace_variables("{{Writer.title}} / {{Writer.tags.0}}", context).text == "Tea / green"


def test_unresolved_tokens_stay_verbatim():
    context = make_context([output_for(USER, {"name": "Ada"})], nodes=[USER])

    resolved = replace_variables("{{User.age}} and {{Nobody.x}}", context)

    assert resolved.text == "{{User.age}} and {{Nobody.x}}"
    assert resolved.unresolved == ["{{User.age}}", "{{Nobody.x}}"]


def test_reason_codes():
    context = make_context([output_for(USER, {"name": "Ada"})], nodes=[USER, WRITER])

    def reason(text):
        return resolve_reference(find_variable_references(text)[0], context).reason

    assert reason("{{Ghost.x}}") == "node_not_found"
    assert reason("{{User.missing}}") == "field_not_found"
    assert reason("{{Writer.result}}") == "pending"


def test_global_variables_are_a_fallback():
    context = make_context(global_variables={"tone": "dry", "trigger_input": {"topic": "tea"}})

    assert replace_variables("{{tone}} {{trigger_input.topic}}", context).text == "dry tea"


def test_skipped_node_resolves_to_empty_text():
    context = make_context([NodeOutput.skipped(WRITER, "branch not taken")], nodes=[WRITER])

    resolved = replace_variables("[{{Writer.result}}]", context)

    assert resolved.text == "[]"
    assert resolved.unresolved == []


def test_format_value():
    assert format_value(None) == ""
    assert format_value(True) == "true"
    assert format_value(3) == "3"
    assert format_value({"a": 1}) == '{\n  "a": 1\n}'


def test_replace_in_nested_config():
    context = make_context([output_for(USER, {"name": "Ada"})], nodes=[USER])
    config = {"prompt": "Hi {{User.name}}", "tools": [{"arg": "{{User.name}}"}], "temperature": 0.2}

    assert replace_variables_in_config(config, context) == {
        "prompt": "Hi Ada",
        "tools": [{"arg": "Ada"}],
        "temperature": 0.2,
    }


def test_try_parse_json_like_handles_prose():
    assert try_parse_json_like('Sure! Here it is: {"a": 1} hope that helps') == {"a": 1}
    assert try_parse_json_like("no json here") is None


def test_content_parts_split_media_from_text():
    data = {"result": "https://cdn/cat.png"}
    context = make_context(
        [output_for(PAINTER, data), output_for(USER, {"name": "Ada"})], nodes=[PAINTER, USER]
    )

    parts = create_content_parts("Describe {{Painter}} for {{User.name}}.", context)

    assert parts == [
        {"type": "text", "text": "Describe "},
        {"type": "image_url", "image_url": {"url": "https://cdn/cat.png", "detail": "auto"}},
        {"type": "text", "text": " for Ada."},
    ]


def test_content_parts_keep_unresolved_tokens_as_text():
    context = make_context()

    assert create_content_parts("a {{Ghost}} b", context) == [{"type": "text", "text": "a {{Ghost}} b"}]
