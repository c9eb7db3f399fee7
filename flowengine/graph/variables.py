"""
Variable resolution for ``{{Node.path}}`` references.

Text fields of a node (prompts, expressions, templates) may reference the
output of earlier nodes:

    {{Summarize.result}}         field of a node output
    {{Search.items.0.title}}     nested path, list indices allowed
    {{Image Gen.imageUrls}}      derived projection of a multimodal field
    {{Summarize}}                the node's default value
    {{trigger_input.topic}}      run input (global variable)

Field lookup goes through FIELD_RULES, a prioritized table of extraction
rules. New aliases or projections are added there without touching the
resolution code.
"""

import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import unquote, urlparse

from flowengine.graph.context import ExecutionContext
from flowengine.schemas.execution import NodeOutput, NodeStatus
from flowengine.schemas.workflow import NodeDefinition

logger = logging.getLogger(__name__)

REFERENCE_PATTERN = re.compile(r"\{\{([^{}]+)\}\}")
CODE_FENCE_PATTERN = re.compile(r"^\s*```[\w-]*\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()


@dataclass(frozen=True)
class VariableReference:
    """A parsed ``{{name.path}}`` token."""

    token: str  # the full "{{...}}" text as written
    name: str  # node name, node id or global variable name
    path: tuple[str, ...] = ()

    @property
    def field_path(self) -> str | None:
        return ".".join(self.path) if self.path else None


@dataclass
class Resolution:
    """Outcome of resolving one reference.

    ``reason`` is set when ``resolved`` is False: node_not_found, field_not_found
    or pending (the node exists but has not produced output yet).
    """

    resolved: bool
    value: Any = None
    reason: str | None = None
    node_id: str | None = None


@dataclass
class ResolvedText:
    text: str
    unresolved: list[str] = field(default_factory=list)


def parse_reference(token: str, body: str) -> VariableReference | None:
    body = body.strip()
    if not body:
        return None
    name, _, rest = body.partition(".")
    name = name.strip()
    if not name:
        return None
    path = tuple(p.strip() for p in rest.split(".") if p.strip()) if rest else ()
    return VariableReference(token=token, name=name, path=path)


def find_variable_references(text: str) -> list[VariableReference]:
    """Return every reference in ``text`` in order of appearance."""
    if not text or not isinstance(text, str):
        return []
    refs = []
    for match in REFERENCE_PATTERN.finditer(text):
        ref = parse_reference(match.group(0), match.group(1))
        if ref is not None:
            refs.append(ref)
    return refs


# ---------------------------------------------------------------------------
# JSON helpers
# ---------------------------------------------------------------------------


def strip_code_fence(text: str) -> str:
    match = CODE_FENCE_PATTERN.match(text)
    return match.group(1) if match else text


def try_parse_json_like(text: str) -> Any:
    """Parse JSON from model-ish text: optional code fence, optional prose around an object."""
    if not isinstance(text, str):
        return None
    candidate = strip_code_fence(text.strip()).strip()
    if not candidate or candidate[0] not in "{[":
        start, end = candidate.find("{"), candidate.rfind("}")
        if start == -1 or end <= start:
            return None
        candidate = candidate[start : end + 1]
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        start, end = candidate.find("{"), candidate.rfind("}")
        if start == -1 or end <= start:
            return None
        try:
            return json.loads(candidate[start : end + 1])
        except json.JSONDecodeError:
            return None


# ---------------------------------------------------------------------------
# Field extraction rules
# ---------------------------------------------------------------------------

FieldRule = Callable[[Any, str], Any]

FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "result": ("结果",),
    "结果": ("result",),
}


def _url_items(items: Any, kind: str) -> list[dict[str, Any]]:
    if not isinstance(items, list):
        return []
    urls = []
    for item in items:
        if isinstance(item, dict) and item.get("url"):
            entry: dict[str, Any] = {"index": len(urls) + 1, "url": item["url"]}
            if kind == "image":
                described = item.get("revisedPrompt") or item.get("revised_prompt")
                entry["description"] = described or f"Image {len(urls) + 1}"
            else:
                entry["duration"] = item.get("duration")
                entry["format"] = item.get("format")
            urls.append(entry)
        elif isinstance(item, str) and item:
            urls.append({"index": len(urls) + 1, "url": item})
    return urls


def _first_url(items: Any, kind: str) -> Any:
    urls = _url_items(items, kind)
    return urls[0]["url"] if urls else MISSING


# derived key -> (source list field, projection)
DERIVED_FIELDS: dict[str, tuple[str, Callable[[Any], Any]]] = {
    "imageUrls": ("images", lambda v: _url_items(v, "image") or MISSING),
    "image_urls": ("images", lambda v: _url_items(v, "image") or MISSING),
    "imageUrl": ("images", lambda v: _first_url(v, "image")),
    "image_url": ("images", lambda v: _first_url(v, "image")),
    "videoUrls": ("videos", lambda v: _url_items(v, "video") or MISSING),
    "video_urls": ("videos", lambda v: _url_items(v, "video") or MISSING),
    "videoUrl": ("videos", lambda v: _first_url(v, "video")),
    "video_url": ("videos", lambda v: _first_url(v, "video")),
}


def _direct_rule(container: Any, key: str) -> Any:
    if isinstance(container, dict):
        return container.get(key, MISSING)
    if isinstance(container, list) and key.lstrip("-").isdigit():
        index = int(key)
        if -len(container) <= index < len(container):
            return container[index]
    return MISSING


def _alias_rule(container: Any, key: str) -> Any:
    if not isinstance(container, dict):
        return MISSING
    for alias in FIELD_ALIASES.get(key, ()):
        if alias in container:
            return container[alias]
    return MISSING


def _derived_rule(container: Any, key: str) -> Any:
    if not isinstance(container, dict) or key not in DERIVED_FIELDS:
        return MISSING
    source, projection = DERIVED_FIELDS[key]
    if source not in container:
        return MISSING
    return projection(container[source])


def _json_string_rule(container: Any, key: str) -> Any:
    # JSON held in a text result can be dotted into: {{Extract.title}}, {{Extract.result.title}}
    if isinstance(container, dict):
        for text_key in ("result", "结果"):
            if isinstance(container.get(text_key), str):
                parsed = try_parse_json_like(container[text_key])
                if isinstance(parsed, dict | list):
                    return _lookup(parsed, key, FIELD_RULES[:-1])
        return MISSING
    if isinstance(container, str):
        parsed = try_parse_json_like(container)
        if isinstance(parsed, dict | list):
            return _lookup(parsed, key, FIELD_RULES[:-1])
    return MISSING


FIELD_RULES: list[FieldRule] = [_direct_rule, _alias_rule, _derived_rule, _json_string_rule]


def _lookup(container: Any, key: str, rules: list[FieldRule]) -> Any:
    for rule in rules:
        value = rule(container, key)
        if value is not MISSING:
            return value
    return MISSING


def resolve_path(data: Any, path: tuple[str, ...] | list[str]) -> Any:
    """Walk ``path`` through ``data`` using FIELD_RULES. Returns MISSING when a segment fails."""
    current = data
    for segment in path:
        current = _lookup(current, segment, FIELD_RULES)
        if current is MISSING:
            return MISSING
    return current


def default_output_value(data: dict[str, Any]) -> Any:
    """
    Value of a whole-node reference ``{{Node}}``.

    Multimodal outputs yield an object bundling the text result with the
    media lists and their URL projections. Otherwise: result, then 结果,
    then the only key, then the whole map.
    """
    has_images = isinstance(data.get("images"), list) and len(data["images"]) > 0
    has_videos = isinstance(data.get("videos"), list) and len(data["videos"]) > 0
    has_audio = data.get("audio") is not None

    if has_images or has_videos or has_audio:
        bundle: dict[str, Any] = {}
        if "result" in data:
            bundle["result"] = data["result"]
        elif "结果" in data:
            bundle["result"] = data["结果"]
        if has_images:
            bundle["images"] = data["images"]
            bundle["imageUrls"] = _url_items(data["images"], "image")
        if has_videos:
            bundle["videos"] = data["videos"]
            bundle["videoUrls"] = _url_items(data["videos"], "video")
        if has_audio:
            bundle["audio"] = data["audio"]
        return bundle

    for key in ("result", "结果"):
        if key in data:
            return data[key]
    if len(data) == 1:
        return next(iter(data.values()))
    return data


# ---------------------------------------------------------------------------
# Reference resolution
# ---------------------------------------------------------------------------


def find_node_output(
    name: str, context: ExecutionContext, nodes: list[NodeDefinition] | None = None
) -> tuple[str | None, NodeOutput | None]:
    """
    Locate a node by name (preferred) or id.

    Returns (node_id, output). node_id is None when no node matches; output is
    None when the node has not produced output yet.
    """
    nodes = nodes if nodes is not None else context.nodes
    for node in nodes:
        if node.name == name:
            return node.id, context.node_outputs.get(node.id)
    for node in nodes:
        if node.id == name:
            return node.id, context.node_outputs.get(node.id)
    for output in context.node_outputs.values():
        if output.node_name == name:
            return output.node_id, output
    if name in context.node_outputs:
        return name, context.node_outputs[name]
    return None, None


def resolve_reference(
    ref: VariableReference, context: ExecutionContext, nodes: list[NodeDefinition] | None = None
) -> Resolution:
    node_id, output = find_node_output(ref.name, context, nodes)

    if node_id is None:
        if ref.name not in context.global_variables:
            return Resolution(resolved=False, reason="node_not_found")
        value = context.global_variables[ref.name]
        if ref.path:
            value = resolve_path(value, ref.path)
            if value is MISSING:
                return Resolution(resolved=False, reason="field_not_found")
        return Resolution(resolved=True, value=value)

    if output is None:
        return Resolution(resolved=False, reason="pending", node_id=node_id)

    if output.status == NodeStatus.SKIPPED:
        # A branch not taken contributes nothing to downstream text
        return Resolution(resolved=True, value=None, node_id=node_id)

    if not ref.path:
        return Resolution(resolved=True, value=default_output_value(output.data), node_id=node_id)

    value = resolve_path(output.data, ref.path)
    if value is MISSING:
        return Resolution(resolved=False, reason="field_not_found", node_id=node_id)
    return Resolution(resolved=True, value=value, node_id=node_id)


def format_value(value: Any) -> str:
    """Render a resolved value for substitution into text."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int | float):
        return str(value)
    return json.dumps(value, ensure_ascii=False, indent=2, default=str)


def replace_variables(
    text: str, context: ExecutionContext, nodes: list[NodeDefinition] | None = None
) -> ResolvedText:
    """
    Substitute every resolvable reference in ``text``.

    Unresolved tokens stay in the text verbatim and are listed in
    ``unresolved`` so callers can refuse to run with them.
    """
    if not text or not isinstance(text, str):
        return ResolvedText(text=text)

    unresolved: list[str] = []

    def _substitute(match: re.Match) -> str:
        ref = parse_reference(match.group(0), match.group(1))
        if ref is None:
            return match.group(0)
        resolution = resolve_reference(ref, context, nodes)
        if not resolution.resolved:
            unresolved.append(ref.token)
            return match.group(0)
        return format_value(resolution.value)

    replaced = REFERENCE_PATTERN.sub(_substitute, text)
    if unresolved:
        logger.debug(f"Unresolved variable references: {unresolved}")
    return ResolvedText(text=replaced, unresolved=unresolved)


def replace_variables_in_config(
    value: Any, context: ExecutionContext, nodes: list[NodeDefinition] | None = None
) -> Any:
    """Recursively substitute references in every string of a config structure."""
    if isinstance(value, str):
        return replace_variables(value, context, nodes).text
    if isinstance(value, dict):
        return {k: replace_variables_in_config(v, context, nodes) for k, v in value.items()}
    if isinstance(value, list):
        return [replace_variables_in_config(v, context, nodes) for v in value]
    return value


# ---------------------------------------------------------------------------
# Multimodal content parts
# ---------------------------------------------------------------------------

IMAGE_EXTENSIONS = {"png", "jpg", "jpeg", "gif", "webp", "svg", "bmp"}
AUDIO_EXTENSIONS = {"mp3", "wav", "ogg", "m4a", "flac", "aac"}
VIDEO_EXTENSIONS = {"mp4", "webm", "mov", "avi", "mkv"}

ContentPart = dict[str, Any]


def _url_extension(url: str) -> str:
    path = urlparse(url).path
    name = unquote(path).rstrip("/").rsplit("/", 1)[-1]
    if "." not in name:
        return ""
    return name.rsplit(".", 1)[-1].lower()


def _media_part(url: str, mime_type: str = "") -> ContentPart | None:
    """Classify a URL (or data URI) as image, audio or video. None means plain text."""
    mime_type = mime_type or ""
    if url.startswith("data:"):
        mime_type = url[5:].split(";", 1)[0]
    ext = _url_extension(url) if not url.startswith("data:") else ""

    if mime_type.startswith("image/") or ext in IMAGE_EXTENSIONS:
        return {"type": "image_url", "image_url": {"url": url, "detail": "auto"}}
    if mime_type.startswith("audio/") or ext in AUDIO_EXTENSIONS:
        return {"type": "audio_url", "audio_url": {"url": url}}
    # webm is ambiguous; an explicit audio mime type was handled above
    if mime_type.startswith("video/") or ext in VIDEO_EXTENSIONS:
        return {"type": "video_url", "video_url": {"url": url}}
    return None


def value_to_content_parts(value: Any) -> list[ContentPart]:
    """Convert a resolved value into content parts."""
    if value is None or value == "" or value == [] or value == {}:
        return []

    if isinstance(value, list):
        parts: list[ContentPart] = []
        for item in value:
            parts.extend(value_to_content_parts(item))
        return parts

    if isinstance(value, str):
        stripped = value.strip()
        if stripped.startswith(("data:", "http://", "https://", "/api/files/")):
            part = _media_part(stripped)
            if part is not None:
                return [part]
        return [{"type": "text", "text": value}]

    if isinstance(value, dict):
        if isinstance(value.get("url"), str):
            part = _media_part(value["url"], value.get("mimeType") or value.get("mime_type") or "")
            if part is not None:
                return [part]
        if isinstance(value.get("file"), dict) and value["file"].get("url"):
            return value_to_content_parts(value["file"])
        if isinstance(value.get("images"), list):
            parts = []
            if value.get("result"):
                parts.append({"type": "text", "text": str(value["result"])})
            listing = "\n".join(
                f"Image {item['index']}: {item['url']}"
                + (f" ({item['description']})" if item.get("description") else "")
                for item in _url_items(value["images"], "image")
            )
            if listing:
                parts.append({"type": "text", "text": f"\n\n[Available image URLs]\n{listing}\n"})
            for item in value["images"]:
                if isinstance(item, dict) and item.get("url"):
                    parts.append({"type": "image_url", "image_url": {"url": item["url"], "detail": "auto"}})
            return parts

    return [{"type": "text", "text": format_value(value)}]


def merge_text_parts(parts: list[ContentPart]) -> list[ContentPart]:
    """Concatenate adjacent text parts."""
    merged: list[ContentPart] = []
    buffer = ""
    for part in parts:
        if part.get("type") == "text":
            buffer += part.get("text", "")
            continue
        if buffer:
            merged.append({"type": "text", "text": buffer})
            buffer = ""
        merged.append(part)
    if buffer:
        merged.append({"type": "text", "text": buffer})
    return merged


def create_content_parts(
    text: str, context: ExecutionContext, nodes: list[NodeDefinition] | None = None
) -> list[ContentPart]:
    """
    Split ``text`` at variable boundaries into ordered content parts.

    Text-valued references are inlined; media-valued references become
    image_url / video_url / audio_url parts. Unresolved tokens stay as text.
    """
    if not text:
        return []

    parts: list[ContentPart] = []
    last_index = 0
    for match in REFERENCE_PATTERN.finditer(text):
        if match.start() > last_index:
            parts.append({"type": "text", "text": text[last_index : match.start()]})
        last_index = match.end()

        ref = parse_reference(match.group(0), match.group(1))
        resolution = resolve_reference(ref, context, nodes) if ref else Resolution(resolved=False)
        if not resolution.resolved:
            logger.warning(f"Variable reference not found: {match.group(0)}")
            parts.append({"type": "text", "text": match.group(0)})
            continue
        parts.extend(value_to_content_parts(resolution.value))

    if last_index < len(text):
        parts.append({"type": "text", "text": text[last_index:]})

    return merge_text_parts(parts)
