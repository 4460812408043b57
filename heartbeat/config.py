"""Configuration loading and constants for heartbeat."""

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Literal

import yaml


# ---------------------------------------------------------------------------
# Work item and agent states
# ---------------------------------------------------------------------------

WorkItemStatus = Literal[
    "available",
    "claimed",
    "completed",
    "failed",
    "waiting_for_response",
]

# Statuses that will never be dispatched again
TERMINAL_STATUSES: list[WorkItemStatus] = ["completed", "failed"]

AgentStatus = Literal["active", "idle", "completed"]

# Agents in these statuses occupy a concurrency slot
BUSY_AGENT_STATUSES: list[AgentStatus] = ["active", "idle"]

# Ordinal priorities, lower number = higher priority
PRIORITIES = ["P0", "P1", "P2", "P3"]
DEFAULT_PRIORITY = "P2"

# The periodic checker registers itself under this name. It runs checks,
# not work, so it never counts against the concurrency budget.
HEARTBEAT_AGENT_NAME = "heartbeat"


# ---------------------------------------------------------------------------
# Defaults (can be overridden in config.yaml)
# ---------------------------------------------------------------------------

DEFAULT_DISPATCH_CONFIG = {
    "max_concurrent": 1,
    "max_items": 1,
    "timeout_minutes": 60,
    "priority": None,
}

DEFAULT_SPECFLOW_CONFIG = {
    "quality_threshold": 80,
    "max_retries": 1,
}

DEFAULT_CLEANUP_CONFIG = {
    "staleness_days": 7,
}


def get_heartbeat_dir() -> Path:
    """Get the heartbeat state directory.

    Can be overridden via HEARTBEAT_DIR environment variable (used by tests).
    """
    env_override = os.environ.get("HEARTBEAT_DIR")
    if env_override:
        return Path(env_override)
    return Path.home() / ".heartbeat"


def get_config_path() -> Path:
    """Get path to config.yaml in the state directory."""
    return get_heartbeat_dir() / "config.yaml"


def get_database_path() -> Path:
    """Get path to the blackboard database.

    HEARTBEAT_DB takes precedence over the state directory default.
    """
    env_override = os.environ.get("HEARTBEAT_DB")
    if env_override:
        return Path(env_override)
    return get_heartbeat_dir() / "blackboard.db"


def get_logs_dir() -> Path:
    """Get the logs directory."""
    return get_heartbeat_dir() / "logs"


def get_sessions_log_dir() -> Path:
    """Get the directory holding one log file per agent session."""
    return get_logs_dir() / "sessions"


def get_dispatch_lock_path() -> Path:
    """Get the lock file guarding CLI dispatch runs."""
    return get_heartbeat_dir() / "dispatch.lock"


def get_worktree_base_dir() -> Path:
    """Get the base directory for feature worktrees.

    Returns:
        $HEARTBEAT_WORKTREE_DIR, or ~/.pai/worktrees
    """
    env_override = os.environ.get("HEARTBEAT_WORKTREE_DIR")
    if env_override:
        return Path(env_override)
    return Path.home() / ".pai" / "worktrees"


def get_specflow_bin() -> str:
    """Get the phase-execution tool binary ($SPECFLOW_BIN or ~/bin/specflow)."""
    return os.environ.get("SPECFLOW_BIN") or str(Path.home() / "bin" / "specflow")


def load_config() -> dict[str, Any]:
    """Load config.yaml from the state directory.

    Returns:
        Parsed config dict

    Raises:
        FileNotFoundError: If config.yaml does not exist
    """
    config_path = get_config_path()

    if not config_path.exists():
        raise FileNotFoundError(f"Heartbeat config not found at {config_path}")

    with open(config_path) as f:
        config = yaml.safe_load(f) or {}

    return config


def get_dispatch_config() -> dict[str, Any]:
    """Get dispatch settings from config or use defaults."""
    try:
        config = load_config()
        settings = config.get("dispatch", {}) or {}
        result = DEFAULT_DISPATCH_CONFIG.copy()
        result.update({k: v for k, v in settings.items() if k in DEFAULT_DISPATCH_CONFIG})
        return result
    except FileNotFoundError:
        return DEFAULT_DISPATCH_CONFIG.copy()


def get_specflow_config() -> dict[str, Any]:
    """Get pipeline settings (quality threshold, retry budget)."""
    try:
        config = load_config()
        settings = config.get("specflow", {}) or {}
        return {
            "quality_threshold": settings.get(
                "quality_threshold", DEFAULT_SPECFLOW_CONFIG["quality_threshold"]
            ),
            "max_retries": settings.get("max_retries", DEFAULT_SPECFLOW_CONFIG["max_retries"]),
        }
    except FileNotFoundError:
        return DEFAULT_SPECFLOW_CONFIG.copy()


def get_checks() -> list[dict[str, Any]]:
    """Get the checklist items defined under ``checks:``.

    Returns:
        List of raw check dicts (name, type, enabled, description, config)
    """
    try:
        config = load_config()
        return list(config.get("checks", []) or [])
    except FileNotFoundError:
        return []


def setup_logging(debug: bool = False) -> Path:
    """Attach a daily log file handler to the ``heartbeat`` logger.

    Args:
        debug: Log at DEBUG level instead of INFO

    Returns:
        Path to today's log file
    """
    logs_dir = get_logs_dir()
    logs_dir.mkdir(parents=True, exist_ok=True)
    date_str = datetime.now().strftime("%Y-%m-%d")
    log_file = logs_dir / f"heartbeat-{date_str}.log"

    root = logging.getLogger("heartbeat")
    root.setLevel(logging.DEBUG if debug else logging.INFO)

    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler) and Path(handler.baseFilename) == log_file:
            return log_file

    handler = logging.FileHandler(log_file)
    handler.setFormatter(
        logging.Formatter("[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s")
    )
    root.addHandler(handler)
    return log_file
