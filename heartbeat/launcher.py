"""Agent launcher: runs one autonomous Claude session on a prompt.

The launcher is a plain callable so the scheduler and phase runner can be
handed a fake one in tests:

    launcher(LaunchOptions(...)) -> LaunchResult
"""

import logging
import os
import subprocess
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable

from .config import get_sessions_log_dir

logger = logging.getLogger(__name__)

# Exit code reported when a subprocess is killed on timeout
TIMEOUT_EXIT_CODE = -1
NOT_FOUND_EXIT_CODE = 127


@dataclass
class LaunchOptions:
    """Parameters for one agent session."""
    session_id: str
    prompt: str
    work_dir: Path | str
    timeout_ms: int


@dataclass
class LaunchResult:
    """Outcome of one agent session."""
    exit_code: int
    stdout: str = ""
    stderr: str = ""


Launcher = Callable[[LaunchOptions], LaunchResult]


def log_path_for_session(session_id: str, logs_dir: Path | None = None) -> Path:
    """Get the log file for an agent session.

    Args:
        session_id: Agent session identifier
        logs_dir: Override the sessions log directory (useful for testing)

    Returns:
        Path to <logs>/sessions/<session_id>.log
    """
    return (logs_dir or get_sessions_log_dir()) / f"{session_id}.log"


def _append_session_log(opts: LaunchOptions, result: LaunchResult, started: datetime) -> None:
    log_path = log_path_for_session(opts.session_id)
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a") as f:
            f.write("=== Session ===\n")
            f.write(f"Started: {started.isoformat()}\n")
            f.write(f"Finished: {datetime.now().isoformat()}\n")
            f.write(f"Work Dir: {opts.work_dir}\n")
            f.write(f"Exit Code: {result.exit_code}\n")
            f.write("--- stdout ---\n")
            f.write(result.stdout)
            f.write("\n--- stderr ---\n")
            f.write(result.stderr)
            f.write("\n===\n")
    except OSError as e:
        logger.warning("Could not write session log %s: %s", log_path, e)


def claude_launcher(opts: LaunchOptions) -> LaunchResult:
    """Default launcher: ``claude --print --verbose <prompt>`` in work_dir.

    The session is killed when timeout_ms elapses and reported with exit
    code -1. A claude binary that cannot be executed is reported as 127.
    """
    started = datetime.now()
    logger.info("Launching session %s in %s", opts.session_id, opts.work_dir)

    try:
        proc = subprocess.run(
            ["claude", "--print", "--verbose", opts.prompt],
            cwd=opts.work_dir,
            capture_output=True,
            text=True,
            env=os.environ.copy(),
            timeout=opts.timeout_ms / 1000,
        )
        result = LaunchResult(exit_code=proc.returncode, stdout=proc.stdout, stderr=proc.stderr)
    except subprocess.TimeoutExpired as e:
        stdout = e.stdout.decode() if isinstance(e.stdout, bytes) else (e.stdout or "")
        result = LaunchResult(
            exit_code=TIMEOUT_EXIT_CODE,
            stdout=stdout,
            stderr=f"claude timed out after {opts.timeout_ms}ms",
        )
    except OSError as e:
        result = LaunchResult(exit_code=NOT_FOUND_EXIT_CODE, stderr=f"could not run claude: {e}")

    _append_session_log(opts, result, started)
    logger.info("Session %s exited with %d", opts.session_id, result.exit_code)
    return result


def spawn_detached(args: list[str], cwd: Path | str, log_path: Path) -> int:
    """Start a background process that outlives the caller.

    The child runs in its own session with stdin/stdout discarded and
    stderr appended to log_path, so startup crashes are still captured.

    Returns:
        Process ID of the spawned process
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with open(log_path, "a") as log_file:
        proc = subprocess.Popen(
            args,
            cwd=cwd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=log_file,
            start_new_session=True,
        )
    return proc.pid
