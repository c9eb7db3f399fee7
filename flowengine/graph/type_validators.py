"""
Structural checkers for declared output types.

Checkers live in a registry keyed by type name so that new output types can
be supported with ``register_type_validator`` without touching the output
validator itself.
"""

import csv
import io
import json
import re
from collections.abc import Callable
from dataclasses import dataclass


@dataclass
class TypeValidationResult:
    valid: bool
    error: str | None = None


TypeValidator = Callable[[str], TypeValidationResult]

_registry: dict[str, TypeValidator] = {}


def register_type_validator(type_name: str, validator: TypeValidator) -> None:
    _registry[type_name.lower()] = validator


def get_type_validator(type_name: str | None) -> TypeValidator | None:
    if not type_name:
        return None
    return _registry.get(type_name.lower())


def registered_types() -> list[str]:
    return sorted(_registry)


def json_balance(content: str) -> tuple[int, int, bool]:
    """Count unclosed braces and brackets outside strings. Returns (braces, brackets, in_string)."""
    braces = brackets = 0
    in_string = escape_next = False
    for char in content:
        if escape_next:
            escape_next = False
            continue
        if char == "\\":
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == "{":
            braces += 1
        elif char == "}":
            braces -= 1
        elif char == "[":
            brackets += 1
        elif char == "]":
            brackets -= 1
    return braces, brackets, in_string


_JSON_PRIMITIVE = re.compile(r"^(-?\d|null$|true$|false$)")


def validate_json(content: str) -> TypeValidationResult:
    if not content or not content.strip():
        return TypeValidationResult(False, "Content is empty")

    trimmed = content.strip()
    if trimmed[0] not in '{["' and not _JSON_PRIMITIVE.match(trimmed):
        return TypeValidationResult(
            False, "Output is not valid JSON: it must start with {, [ or \" or be a JSON primitive"
        )

    braces, brackets, in_string = json_balance(trimmed)
    if braces != 0:
        return TypeValidationResult(
            False,
            f"Output is not valid JSON: unbalanced brace ({abs(braces)} "
            f"{'unclosed' if braces > 0 else 'extra closing'} '{{' / '}}')",
        )
    if brackets != 0:
        return TypeValidationResult(
            False,
            f"Output is not valid JSON: unbalanced bracket ({abs(brackets)} "
            f"{'unclosed' if brackets > 0 else 'extra closing'} '[' / ']')",
        )
    if in_string:
        return TypeValidationResult(False, "Output is not valid JSON: unterminated string")

    try:
        json.loads(trimmed)
    except json.JSONDecodeError as e:
        return TypeValidationResult(False, f"Output is not valid JSON: {e}")
    return TypeValidationResult(True)


HTML_TAG_PATTERN = re.compile(r"</?[a-zA-Z][a-zA-Z0-9]*(?:\s+[^>]*)?>")
HTML_TAG_NAME_PATTERN = re.compile(r"<(/?)([a-zA-Z][a-zA-Z0-9]*)[^>]*?(/?)>")
COMMON_HTML_TAGS = (
    "html", "head", "body", "div", "span", "p", "a", "img", "ul", "ol", "li",
    "table", "tr", "td", "th", "thead", "tbody", "form", "input", "button",
    "h1", "h2", "h3", "h4", "h5", "h6", "header", "footer", "nav", "section",
    "article", "aside", "main", "br", "hr", "strong", "em", "b", "i", "u",
    "pre", "code", "blockquote", "script", "style", "link", "meta", "title",
)  # fmt: skip
VOID_HTML_TAGS = frozenset(
    {"br", "hr", "img", "input", "meta", "link", "area", "base", "col", "embed", "param", "source", "track", "wbr"}
)


def unclosed_html_tags(content: str) -> list[str]:
    """Return open tags left on the stack after a lax pass over ``content``."""
    stack: list[str] = []
    for closing, name, self_closing in HTML_TAG_NAME_PATTERN.findall(content):
        name = name.lower()
        if name in VOID_HTML_TAGS or self_closing:
            continue
        if closing:
            if stack and stack[-1] == name:
                stack.pop()
        else:
            stack.append(name)
    return stack


def validate_html(content: str) -> TypeValidationResult:
    if not content or not content.strip():
        return TypeValidationResult(False, "Content is empty")
    if not HTML_TAG_PATTERN.search(content):
        return TypeValidationResult(False, "Output is not valid HTML: no HTML tags found")

    lowered = content.lower()
    if not any(f"<{tag}" in lowered or f"</{tag}>" in lowered for tag in COMMON_HTML_TAGS):
        return TypeValidationResult(False, "Output is not valid HTML: no common HTML tags found")

    # Tag balance is left to the completeness heuristics
    return TypeValidationResult(True)


def validate_markdown(content: str) -> TypeValidationResult:
    if not content or not content.strip():
        return TypeValidationResult(False, "Content is empty")
    # Any non-empty text is valid markdown
    return TypeValidationResult(True)


def validate_text(content: str) -> TypeValidationResult:
    if not content or not content.strip():
        return TypeValidationResult(False, "Content is empty")
    return TypeValidationResult(True)


CSV_DELIMITERS = (",", ";", "\t")
CSV_RAGGED_TOLERANCE = 0.2


def validate_csv(content: str) -> TypeValidationResult:
    if not content or not content.strip():
        return TypeValidationResult(False, "Content is empty")

    text = content.strip()
    first_line = text.splitlines()[0]
    delimiter = next((d for d in CSV_DELIMITERS if d in first_line), None)
    if delimiter is None:
        # Single-column CSV
        return TypeValidationResult(True)

    try:
        rows = [row for row in csv.reader(io.StringIO(text), delimiter=delimiter) if row]
    except csv.Error as e:
        return TypeValidationResult(False, f"Output is not valid CSV: {e}")
    if not rows:
        return TypeValidationResult(False, "Output is not valid CSV: no data rows")

    expected = len(rows[0])
    ragged = sum(1 for row in rows if len(row) != expected)
    if ragged > len(rows) * CSV_RAGGED_TOLERANCE:
        return TypeValidationResult(
            False,
            f"Output is not valid CSV: inconsistent column count (header has {expected} columns, "
            f"{ragged} row(s) differ)",
        )
    return TypeValidationResult(True)


register_type_validator("json", validate_json)
register_type_validator("html", validate_html)
register_type_validator("markdown", validate_markdown)
register_type_validator("text", validate_text)
register_type_validator("csv", validate_csv)
