"""Turn raw node error messages into user-facing analysis.

Used for ``node_error`` / ``execution_error`` events and the ``error_detail``
of failed execution records.
"""

from dataclasses import asdict, dataclass, field
from typing import Any

from flowengine.errors import InputValidationError


@dataclass
class ErrorAnalysis:
    message: str
    friendly_message: str = "An unknown error occurred during execution"
    suggestions: list[str] = field(
        default_factory=lambda: ["Check the node configuration", "Inspect the node logs for details"]
    )
    code: str = "UNKNOWN_ERROR"
    is_retryable: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _contains(message: str, *needles: str) -> bool:
    lowered = message.lower()
    return any(n in lowered for n in needles)


def _analyze_llm(message: str) -> ErrorAnalysis:
    if _contains(message, "api key", "auth", "credentials"):
        return ErrorAnalysis(
            message,
            "AI provider authentication failed",
            ["Check that the API key is configured correctly", "Make sure the key has not expired or been revoked"],
            "AUTH_ERROR",
            False,
        )
    if _contains(message, "rate limit", "too many requests", "429"):
        return ErrorAnalysis(
            message,
            "AI provider rate limit reached",
            ["Retry later", "Lower the queue concurrency", "Check the provider's rate limits"],
            "RATE_LIMIT",
            True,
        )
    if _contains(message, "quota", "insufficient"):
        return ErrorAnalysis(
            message,
            "AI provider quota exhausted",
            ["Check the account balance", "Upgrade the service plan"],
            "QUOTA_EXCEEDED",
            False,
        )
    if _contains(message, "context length", "max tokens"):
        return ErrorAnalysis(
            message,
            "Input exceeds the model's context window",
            ["Shorten the input", "Switch to a model with a larger context window"],
            "CONTEXT_LIMIT",
            False,
        )
    if _contains(message, "timeout"):
        return ErrorAnalysis(
            message,
            "AI provider timed out",
            ["Check network connectivity", "Increase the timeout"],
            "TIMEOUT",
            True,
        )
    return ErrorAnalysis(message, "AI provider call failed", ["Retry later"], "LLM_ERROR", True)


def _analyze_code(message: str) -> ErrorAnalysis:
    analysis = ErrorAnalysis(
        message,
        "Code execution failed",
        ["Check the code syntax", "Check variable names", "Inspect the execution logs"],
        "CODE_EXECUTION_ERROR",
        False,
    )
    if "ReferenceError" in message or "NameError" in message or "is not defined" in message:
        analysis.friendly_message = "Code references an undefined variable"
        analysis.suggestions.insert(0, "Check variable names for typos")
    elif "SyntaxError" in message:
        analysis.friendly_message = "Code has a syntax error"
    elif "TypeError" in message:
        analysis.friendly_message = "Code hit a type error"
        analysis.suggestions.insert(0, "Check that values have the expected types")
    elif _contains(message, "timeout", "timed out"):
        analysis.friendly_message = "Code execution timed out"
        analysis.suggestions = ["Look for infinite loops", "Process less data", "Increase the timeout"]
        analysis.is_retryable = True
        analysis.code = "CODE_TIMEOUT"
    return analysis


def _analyze_network(message: str) -> ErrorAnalysis:
    return ErrorAnalysis(
        message,
        "Network request failed",
        ["Check that the target service is up", "Check network connectivity", "Check firewall rules"],
        "NETWORK_ERROR",
        True,
    )


def _analyze_database(message: str) -> ErrorAnalysis:
    if _contains(message, "unique constraint"):
        return ErrorAnalysis(
            message,
            "Duplicate data conflict",
            ["Check for duplicate submissions", "Make sure unique identifiers are unique"],
            "DB_UNIQUE_VIOLATION",
            False,
        )
    if _contains(message, "foreign key"):
        return ErrorAnalysis(
            message, "Related record does not exist", ["Refresh and retry"], "DB_ERROR", False
        )
    return ErrorAnalysis(message, "Database operation failed", ["Contact an administrator"], "DB_ERROR", True)


def _analyze_input(message: str) -> ErrorAnalysis:
    return ErrorAnalysis(
        message,
        "A node is missing the input it needs",
        ["Fill in the required input fields", "Check that variable references name an existing node and field"],
        "INPUT_VALIDATION_ERROR",
        False,
    )


# (matcher, analyzer), first match wins
_RULES = [
    (
        lambda msg, node_type: _contains(
            msg, "openai", "anthropic", "api key", "rate limit", "quota", "context length", "max tokens"
        ),
        _analyze_llm,
    ),
    (
        lambda msg, node_type: node_type == "CODE"
        or _contains(msg, "syntax error", "syntaxerror", "referenceerror", "nameerror", "typeerror", "is not defined"),
        _analyze_code,
    ),
    (
        lambda msg, node_type: _contains(
            msg, "fetch", "network", "econnrefused", "etimedout", "connection refused", "dns", "unreachable"
        ),
        _analyze_network,
    ),
    (
        lambda msg, node_type: _contains(msg, "database", "connection", "query", "unique constraint", "sql"),
        _analyze_database,
    ),
]


def analyze_error(error: BaseException | str | None, node_type: str | None = None) -> ErrorAnalysis:
    """Classify an error message. Unrecognized errors get a generic, non-retryable analysis."""
    message = str(error) if error is not None else "Unknown error"
    if isinstance(error, InputValidationError) or _contains(
        message, "cannot be resolved", "required input fields", "predecessor node"
    ):
        return _analyze_input(message)
    for matches, analyzer in _RULES:
        if matches(message, node_type):
            return analyzer(message)
    return ErrorAnalysis(message)
