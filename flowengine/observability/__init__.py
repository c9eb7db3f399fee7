"""
Observability: structured logging with automatic trace correlation.

Log records emitted during a workflow run carry the execution, workflow and
node identifiers without any manual passing of ids.
"""

from flowengine.observability.logging import (
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
)

__all__ = [
    "configure_logging",
    "get_trace_context",
    "set_trace_context",
    "clear_trace_context",
]
