"""Shared branchflow configuration utilities.

Centralises reading of ~/.branchflow/configuration.json so that the engine,
the CLI and tests share one implementation.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_NODE_TIMEOUT_MS = 30_000
DEFAULT_MAX_BRANCHES = 10
DEFAULT_MAX_STEPS = 1000
DEFAULT_EVENT_REPLAY_SIZE = 100

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

BRANCHFLOW_CONFIG_FILE = Path.home() / ".branchflow" / "configuration.json"


def get_branchflow_config() -> dict[str, Any]:
    """Load configuration from ~/.branchflow/configuration.json."""
    if not BRANCHFLOW_CONFIG_FILE.exists():
        return {}
    try:
        with open(BRANCHFLOW_CONFIG_FILE, encoding="utf-8-sig") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def _engine_section() -> dict[str, Any]:
    return get_branchflow_config().get("engine", {})


def get_node_timeout_ms() -> int:
    """Return the per-node timeout, falling back to DEFAULT_NODE_TIMEOUT_MS."""
    return int(_engine_section().get("node_timeout_ms", DEFAULT_NODE_TIMEOUT_MS))


def get_max_branches() -> int:
    return int(_engine_section().get("max_branches", DEFAULT_MAX_BRANCHES))


def get_max_steps() -> int:
    return int(_engine_section().get("max_steps", DEFAULT_MAX_STEPS))


def get_event_replay_size() -> int:
    return int(_engine_section().get("event_replay_size", DEFAULT_EVENT_REPLAY_SIZE))


def get_storage_path() -> str | None:
    """Return the directory for file-backed storage, or None for in-memory."""
    return get_branchflow_config().get("storage", {}).get("path")


def get_log_level() -> str:
    return get_branchflow_config().get("logging", {}).get("level", "INFO")


def get_log_format() -> str:
    return get_branchflow_config().get("logging", {}).get("format", "auto")


# ---------------------------------------------------------------------------
# EngineConfig
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Engine configuration loaded from ~/.branchflow/configuration.json."""

    node_timeout_ms: int = field(default_factory=get_node_timeout_ms)
    max_branches: int = field(default_factory=get_max_branches)
    max_steps: int = field(default_factory=get_max_steps)
    event_replay_size: int = field(default_factory=get_event_replay_size)
    max_event_history: int = 1000
    storage_path: str | None = field(default_factory=get_storage_path)
    log_level: str = field(default_factory=get_log_level)
    log_format: str = field(default_factory=get_log_format)
