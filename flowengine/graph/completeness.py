"""Truncation heuristics for node output text.

Model output that hits a token limit usually stops mid-sentence, mid-list or
mid-structure. These checks look at the tail and the structure of the text
and report the first sign of truncation they find.
"""

import re
from dataclasses import dataclass

from flowengine.graph.type_validators import json_balance, unclosed_html_tags


@dataclass
class CompletenessResult:
    complete: bool
    reason: str | None = None
    pattern: str | None = None


INCOMPLETE_TAIL_PATTERNS: list[tuple[str, re.Pattern, str]] = [
    (
        "english_connective",
        re.compile(
            r"\b(and|or|but|are|was|were|will|would|could|should|that|which|who|"
            r"whom|whose|where|when|while|if|then|because|since|although|though|however|"
            r"therefore|moreover|furthermore|additionally|finally|firstly|secondly|thirdly|"
            r"lastly|namely|specifically|particularly|especially|including|such as|"
            r"for example|for instance|in addition|on the other hand|in contrast|"
            r"as a result|in conclusion|to summarize|in summary)\s*$",
            re.IGNORECASE,
        ),
        "Sentence appears to stop after a connective word",
    ),
    (
        "chinese_connective",
        re.compile(
            r"(和|或|但|是|在|有|这|那|因为|所以|如果|虽然|但是|然而|因此|此外|另外|首先|其次|"
            r"最后|例如|比如|包括|特别是|尤其是|总之|综上所述)\s*$"
        ),
        "Sentence appears to stop after a connective word",
    ),
    (
        "empty_list_item",
        re.compile(r"(?:^|\n)\s*(?:\d+\.|[-*•])\s*$"),
        "List appears to stop at an empty item",
    ),
    ("trailing_colon", re.compile(r"[:：]\s*$"), "Content appears to stop after a colon"),
]

IMPORTANT_HTML_TAGS = frozenset({"html", "body", "head", "div", "table", "ul", "ol", "form"})

# Code is allowed a little imbalance (braces inside strings, templates)
CODE_BALANCE_SLACK = 2


def check_json_completeness(content: str) -> CompletenessResult:
    trimmed = content.strip()
    if not trimmed.startswith(("{", "[")):
        return CompletenessResult(True)
    braces, brackets, in_string = json_balance(trimmed)
    if braces > 0:
        return CompletenessResult(
            False, f"JSON is incomplete: {braces} unclosed brace(s) '{{'", "unclosed_braces"
        )
    if brackets > 0:
        return CompletenessResult(
            False, f"JSON is incomplete: {brackets} unclosed bracket(s) '['", "unclosed_brackets"
        )
    if in_string:
        return CompletenessResult(False, "JSON is incomplete: unterminated string", "unclosed_string")
    return CompletenessResult(True)


def check_html_completeness(content: str) -> CompletenessResult:
    unclosed = [tag for tag in unclosed_html_tags(content) if tag in IMPORTANT_HTML_TAGS]
    if unclosed:
        tags = ", ".join(f"<{tag}>" for tag in unclosed)
        return CompletenessResult(False, f"HTML may be incomplete: unclosed {tags}", "unclosed_html_tags")
    return CompletenessResult(True)


def check_code_completeness(content: str) -> CompletenessResult:
    if content.count("```") % 2 != 0:
        return CompletenessResult(False, "Code block is not closed: missing ```", "unclosed_code_block")

    for opener, closer, label in (("{", "}", "brace"), ("[", "]", "bracket"), ("(", ")", "parenthesis")):
        open_count = content.count(opener) - content.count(closer)
        if open_count > CODE_BALANCE_SLACK:
            return CompletenessResult(
                False, f"Code may be incomplete: {open_count} unclosed {label}(s)", f"unclosed_{label}"
            )
    return CompletenessResult(True)


def check_text_completeness(content: str) -> CompletenessResult:
    trimmed = content.strip()
    if trimmed.endswith(("...", "…")):
        # An ellipsis is a deliberate ending
        return CompletenessResult(True)

    for name, pattern, reason in INCOMPLETE_TAIL_PATTERNS:
        if pattern.search(trimmed):
            return CompletenessResult(False, reason, name)

    if trimmed.endswith((",", "，")):
        return CompletenessResult(False, "Content appears to stop after a comma", "trailing_comma")

    return CompletenessResult(True)


def check_completeness(content: str, expected_type: str | None = None) -> CompletenessResult:
    """
    Return whether ``content`` looks complete.

    JSON and HTML get structural checks. Everything else gets the tail
    heuristics, then fence and bracket balance. JSON-looking text of an
    undeclared type is also checked for balance.
    """
    if not content or not content.strip():
        return CompletenessResult(True)

    expected = (expected_type or "").lower()
    if expected == "json":
        return check_json_completeness(content)
    if expected == "html":
        return check_html_completeness(content)

    if not expected:
        structural = check_json_completeness(content)
        if not structural.complete:
            return structural

    result = check_text_completeness(content)
    if not result.complete:
        return result
    return check_code_completeness(content)
