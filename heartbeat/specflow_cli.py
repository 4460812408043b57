"""Port for the external ``specflow`` phase-execution tool."""

import json
import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from .config import get_specflow_bin
from .launcher import TIMEOUT_EXIT_CODE

logger = logging.getLogger(__name__)

SPECFLOW_TIMEOUT_MS = 30 * 60 * 1000
INIT_TIMEOUT_MS = 60_000
EVAL_TIMEOUT_MS = 120_000
REGISTER_TIMEOUT_MS = 30_000


@dataclass
class CliResult:
    """Captured outcome of one tool invocation."""
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def timed_out(self) -> bool:
        return self.exit_code == TIMEOUT_EXIT_CODE


SpecFlowRunner = Callable[[list[str], Path | str, int], CliResult]


def run_specflow(
    args: list[str],
    cwd: Path | str,
    timeout_ms: int,
    extra_env: dict[str, str] | None = None,
) -> CliResult:
    """Run ``specflow <args>`` in cwd.

    Args:
        args: Tool arguments, e.g. ["plan", "F-001"]
        cwd: Working directory (normally the feature worktree)
        timeout_ms: Kill the tool after this many milliseconds
        extra_env: Additional environment variables

    Returns:
        CliResult; a timeout is reported as exit code -1
    """
    env = os.environ.copy()
    # The tool spawns its own Claude sessions and refuses to nest
    env.pop("CLAUDECODE", None)
    if extra_env:
        env.update(extra_env)

    cmd = [get_specflow_bin()] + args
    logger.debug("Running %s in %s", " ".join(cmd), cwd)

    try:
        proc = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            env=env,
            timeout=timeout_ms / 1000,
        )
    except subprocess.TimeoutExpired as e:
        stdout = e.stdout.decode() if isinstance(e.stdout, bytes) else (e.stdout or "")
        return CliResult(exit_code=TIMEOUT_EXIT_CODE, stdout=stdout, stderr="specflow timed out")
    except OSError as e:
        return CliResult(exit_code=127, stderr=f"could not run {cmd[0]}: {e}")

    return CliResult(exit_code=proc.returncode, stdout=proc.stdout, stderr=proc.stderr)


def _parse_eval_json(stdout: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(stdout)
    except (TypeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


def parse_eval_score(stdout: str) -> float:
    """Parse the score from ``specflow eval run --json`` output.

    Looks at ``results[0].score``, then ``score``, then ``percentage``.
    Fractions (<= 1) are scaled to 0-100.

    Returns:
        Score on a 0-100 scale, or 0 if the output cannot be parsed
    """
    parsed = _parse_eval_json(stdout)
    if parsed is None:
        return 0

    results = parsed.get("results")
    first = results[0] if isinstance(results, list) and results else {}
    raw = None
    if isinstance(first, dict):
        raw = first.get("score")
    if raw is None:
        raw = parsed.get("score")
    if raw is None:
        raw = parsed.get("percentage")

    try:
        score = float(raw)
    except (TypeError, ValueError):
        return 0

    if score <= 1:
        return round(score * 100)
    return score


def parse_eval_feedback(stdout: str) -> str:
    """Extract human-readable feedback from eval output (falls back to raw text)."""
    parsed = _parse_eval_json(stdout)
    if parsed is None:
        return stdout.strip()

    results = parsed.get("results")
    first = results[0] if isinstance(results, list) and results else {}
    feedback = None
    if isinstance(first, dict):
        feedback = first.get("feedback") or first.get("output")
    feedback = feedback or parsed.get("feedback") or parsed.get("details")
    if feedback is None:
        return stdout.strip()
    return feedback if isinstance(feedback, str) else json.dumps(feedback)


def find_feature_dir(spec_dir: Path | str, feature_id: str) -> Path | None:
    """Find the directory for a feature under a spec root.

    Feature dirs are named like ``f-019-specflow-dispatch-agent``; the
    match is a case-insensitive prefix match on the feature ID. Symlinked
    directories count.

    Returns:
        The feature directory, or None if there is none
    """
    spec_dir = Path(spec_dir)
    if not spec_dir.is_dir():
        return None

    prefix = feature_id.lower()
    for entry in sorted(spec_dir.iterdir()):
        if entry.name.lower().startswith(prefix) and entry.is_dir():
            return entry
    return None


def feature_artifact_path(worktree_path: Path | str, feature_id: str, artifact: str) -> Path:
    """Path of a feature artifact inside a worktree's ``.specify/specs`` tree."""
    spec_dir = Path(worktree_path) / ".specify" / "specs"
    feature_dir = find_feature_dir(spec_dir, feature_id)
    return (feature_dir or spec_dir / feature_id) / artifact
