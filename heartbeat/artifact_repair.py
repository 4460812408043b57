"""Regenerate documentation artifacts that ``specflow complete`` requires.

``specflow complete`` refuses to finish a feature when its docs.md or
verify.md is missing. When its output names one of those files, an agent
is launched per missing file to write it from the branch diff and the
feature spec. The caller retries ``complete`` once if every file was
produced.
"""

import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .git_utils import GitOps
from .launcher import LaunchOptions, Launcher

logger = logging.getLogger(__name__)

REPAIR_TIMEOUT_MS = 15 * 60 * 1000

REPAIRABLE_ARTIFACTS = {
    "docs.md": (
        "user-facing documentation for the feature: what it does, how to use it, "
        "configuration, and examples"
    ),
    "verify.md": (
        "a verification report: how each acceptance criterion in spec.md was checked, "
        "the commands run, and their results"
    ),
}

_MISSING_PATTERN = re.compile(r"missing|not found|does not exist|no such file|required", re.IGNORECASE)


@dataclass
class RepairAttempt:
    """Result of regenerating one artifact."""
    artifact: str
    exit_code: int
    produced: bool


def detect_missing_artifacts(output: str, feature_dir: Path | str) -> list[str]:
    """Find repairable artifacts the tool output reports as missing.

    Args:
        output: Combined stdout and stderr of the failed invocation
        feature_dir: Directory the artifacts belong in

    Returns:
        Artifact file names mentioned as missing and absent on disk
    """
    feature_dir = Path(feature_dir)
    missing = []
    for name in REPAIRABLE_ARTIFACTS:
        mentioned = any(
            name in line and _MISSING_PATTERN.search(line)
            for line in output.splitlines()
        )
        if mentioned and not (feature_dir / name).exists():
            missing.append(name)
    return missing


def build_repair_prompt(
    artifact: str,
    feature_id: str,
    feature_dir: Path,
    main_branch: str,
    diff_summary: str,
) -> str:
    """Prompt instructing an agent to write one missing artifact."""
    return "\n".join([
        f"You are completing SpecFlow feature {feature_id}.",
        f"The file {feature_dir / artifact} is missing and must be created.",
        "",
        f"Write {artifact}: {REPAIRABLE_ARTIFACTS[artifact]}.",
        "",
        "Base it on:",
        f"- the feature spec at {feature_dir / 'spec.md'}",
        f"- the plan at {feature_dir / 'plan.md'} (if present)",
        f"- the implementation diff: run `git diff {main_branch}...HEAD`",
        "",
        f"Changes on this branch relative to {main_branch}:",
        diff_summary or "(no diff summary available)",
        "",
        f"Only create {artifact}. Do not modify any other file. Do not commit.",
    ])


class ArtifactRepairer:
    """Launches agents to regenerate missing completion artifacts.

    Args:
        launcher: Agent launcher port
        git: Version-control port (for the diff summary)
        timeout_ms: Timeout for each agent session
    """

    def __init__(self, launcher: Launcher, git: GitOps, timeout_ms: int = REPAIR_TIMEOUT_MS):
        self.launcher = launcher
        self.git = git
        self.timeout_ms = timeout_ms

    def _diff_summary(self, worktree_path: Path, main_branch: str) -> str:
        try:
            return self.git.get_diff_summary(worktree_path, main_branch)
        except (subprocess.CalledProcessError, OSError) as e:
            logger.warning("Diff summary unavailable for %s: %s", worktree_path, e)
            return ""

    def repair(
        self,
        feature_id: str,
        worktree_path: Path,
        feature_dir: Path,
        main_branch: str,
        missing: list[str],
        session_id: str,
    ) -> list[RepairAttempt]:
        """Regenerate each missing artifact, stopping at the first failure.

        A zero exit code alone is not success: the file must exist afterwards.
        """
        diff_summary = self._diff_summary(worktree_path, main_branch)
        attempts = []

        for artifact in missing:
            prompt = build_repair_prompt(artifact, feature_id, feature_dir, main_branch, diff_summary)
            result = self.launcher(LaunchOptions(
                session_id=f"{session_id}-repair-{Path(artifact).stem}",
                prompt=prompt,
                work_dir=worktree_path,
                timeout_ms=self.timeout_ms,
            ))
            produced = result.exit_code == 0 and (feature_dir / artifact).exists()
            attempts.append(RepairAttempt(artifact=artifact, exit_code=result.exit_code, produced=produced))
            logger.info(
                "Repair of %s for %s: exit %d, produced=%s",
                artifact, feature_id, result.exit_code, produced,
            )
            if not produced:
                break

        return attempts
