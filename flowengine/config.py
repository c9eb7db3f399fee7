"""Shared flowengine configuration.

Reads ~/.flowengine/configuration.json plus a few environment overrides so the
CLI, the queue worker and embedding applications agree on defaults.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

FLOWENGINE_HOME = Path.home() / ".flowengine"
FLOWENGINE_CONFIG_FILE = FLOWENGINE_HOME / "configuration.json"

PARALLEL_ERROR_STRATEGIES = ("fail_fast", "continue", "collect")


def get_flowengine_config() -> dict[str, Any]:
    """Load configuration from ~/.flowengine/configuration.json."""
    if not FLOWENGINE_CONFIG_FILE.exists():
        return {}
    try:
        with open(FLOWENGINE_CONFIG_FILE, encoding="utf-8-sig") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_data_dir() -> Path:
    """Return the directory used by the file execution store."""
    env_dir = os.environ.get("FLOWENGINE_DATA_DIR")
    if env_dir:
        return Path(env_dir).expanduser()
    configured = get_flowengine_config().get("storage", {}).get("data_dir")
    if configured:
        return Path(configured).expanduser()
    return FLOWENGINE_HOME / "executions"


def get_execution_settings() -> dict[str, Any]:
    return get_flowengine_config().get("execution", {})


def get_queue_settings() -> dict[str, Any]:
    return get_flowengine_config().get("queue", {})


def get_event_webhook_url() -> str | None:
    """Return the URL progress events are forwarded to, if any."""
    return os.environ.get("FLOWENGINE_EVENT_WEBHOOK") or get_flowengine_config().get(
        "events", {}
    ).get("webhook_url")


def _parallel_error_strategy() -> str:
    strategy = get_execution_settings().get("parallel_error_strategy", "fail_fast")
    return strategy if strategy in PARALLEL_ERROR_STRATEGIES else "fail_fast"


# ---------------------------------------------------------------------------
# EngineConfig
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Engine and queue defaults loaded from ~/.flowengine/configuration.json.

    Settings on a workflow definition take precedence over these defaults.
    """

    data_dir: Path = field(default_factory=get_data_dir)
    enable_parallel_execution: bool = field(
        default_factory=lambda: bool(get_execution_settings().get("enable_parallel_execution"))
    )
    parallel_error_strategy: str = field(default_factory=_parallel_error_strategy)
    queue_concurrency: int = field(
        default_factory=lambda: int(get_queue_settings().get("concurrency", 5))
    )
    task_timeout_seconds: float = field(
        default_factory=lambda: float(get_queue_settings().get("timeout_seconds", 300))
    )
    max_attempts: int = field(default_factory=lambda: int(get_queue_settings().get("max_attempts", 3)))
    backoff_base_seconds: float = field(
        default_factory=lambda: float(get_queue_settings().get("backoff_base_seconds", 1.0))
    )
    event_webhook_url: str | None = field(default_factory=get_event_webhook_url)
    log_level: str = field(
        default_factory=lambda: os.environ.get("LOG_LEVEL")
        or get_flowengine_config().get("logging", {}).get("level", "INFO")
    )
    log_format: str = field(
        default_factory=lambda: get_flowengine_config().get("logging", {}).get("format", "auto")
    )
