"""Quality and code gates applied between pipeline phases."""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from .specflow_cli import (
    EVAL_TIMEOUT_MS,
    SpecFlowRunner,
    feature_artifact_path,
    parse_eval_feedback,
    parse_eval_score,
)
from .specflow_types import PHASE_ARTIFACTS, PHASE_RUBRICS, Phase

logger = logging.getLogger(__name__)

QUALITY_THRESHOLD = 80

# Paths that do not count as implementation work
CODE_GATE_EXCLUSIONS = [
    ".specify/",
    ".specflow/",
    ".claude/",
    "Plans/",
    "docs/",
    "CHANGELOG.md",
    "README.md",
    "verify.md",
]


@dataclass
class GateResult:
    """Outcome of a quality gate evaluation."""
    passed: bool
    score: float
    feedback: str = ""


def check_quality_gate(
    run_specflow: SpecFlowRunner,
    worktree_path: Path | str,
    phase: Phase,
    feature_id: str,
    threshold: float = QUALITY_THRESHOLD,
) -> GateResult:
    """Score a phase's artifact against its rubric.

    Runs ``specflow eval run --file <artifact> --rubric <rubric> --json``.
    Phases without a rubric always pass.

    Args:
        run_specflow: Tool port
        worktree_path: Feature worktree
        phase: Phase that just ran
        feature_id: Feature being evaluated
        threshold: Minimum passing score on a 0-100 scale

    Returns:
        GateResult (passed when score >= threshold)
    """
    rubric = PHASE_RUBRICS.get(phase)
    artifact = PHASE_ARTIFACTS.get(phase)
    if not rubric or not artifact:
        return GateResult(passed=True, score=100)

    artifact_path = feature_artifact_path(worktree_path, feature_id, artifact)
    result = run_specflow(
        ["eval", "run", "--file", str(artifact_path), "--rubric", rubric, "--json"],
        worktree_path,
        EVAL_TIMEOUT_MS,
    )

    if result.exit_code != 0:
        return GateResult(
            passed=False,
            score=0,
            feedback=f"Eval failed (exit {result.exit_code}): {result.stderr or result.stdout}",
        )

    score = parse_eval_score(result.stdout)
    feedback = parse_eval_feedback(result.stdout)
    logger.info("Quality gate %s for %s: %s (threshold %s)", rubric, feature_id, score, threshold)
    return GateResult(passed=score >= threshold, score=score, feedback=feedback)


@dataclass
class CodeGateResult:
    """Whether a branch contains real source changes."""
    passed: bool
    reason: str
    changed_files: list[str] = field(default_factory=list)
    source_files: list[str] = field(default_factory=list)


def _is_excluded(path: str) -> bool:
    return any(path.startswith(excl) or path == excl.rstrip("/") for excl in CODE_GATE_EXCLUSIONS)


def check_code_gate(
    get_changed_files: Callable[..., list[str]],
    worktree_path: Path | str,
    main_branch: str,
) -> CodeGateResult:
    """Check that the branch changes more than spec and documentation files."""
    try:
        changed = get_changed_files(worktree_path, main_branch)
    except Exception as e:
        return CodeGateResult(passed=False, reason=f"Failed to get changed files: {e}")

    source = [f for f in changed if not _is_excluded(f)]
    if source:
        return CodeGateResult(
            passed=True,
            reason=f"{len(source)} source file(s) changed",
            changed_files=changed,
            source_files=source,
        )
    return CodeGateResult(
        passed=False,
        reason=f"No source files changed (only spec/docs: {', '.join(changed) or 'empty diff'})",
        changed_files=changed,
    )
