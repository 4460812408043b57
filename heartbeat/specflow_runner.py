"""SpecFlow phase runner.

Runs one pipeline phase for a work item: prepares the feature worktree,
invokes the specflow tool, checks the phase's post-conditions and quality
gate, then chains the next phase (or a retry) as a new work item.

``run_phase`` returns True when the item was handled (advanced, retried,
or terminally closed) and False on a transient failure, in which case the
caller releases the item and nothing new is queued.
"""

import logging
import re
import subprocess
from dataclasses import replace
from pathlib import Path
from typing import Any

from .artifact_repair import ArtifactRepairer, detect_missing_artifacts
from .config import DEFAULT_PRIORITY
from .context import HeartbeatContext
from .launcher import LaunchOptions
from .quality_gate import check_code_gate, check_quality_gate
from .specflow_cli import (
    REGISTER_TIMEOUT_MS,
    SPECFLOW_TIMEOUT_MS,
    CliResult,
    feature_artifact_path,
    find_feature_dir,
)
from .specflow_types import (
    PHASE_EXPECTED_ARTIFACTS,
    PHASE_RUBRICS,
    SPECFLOW_SOURCE,
    Phase,
    PipelinePhaseState,
    next_phase,
    next_phase_state,
    parse_specflow_meta,
    phase_item_id,
    retry_item_id,
    retry_phase_state,
)
from .workspace import Workspace, WorkspaceManager

logger = logging.getLogger(__name__)

IMPLEMENT_TIMEOUT_MS = 60 * 60 * 1000

# Answers passed to `specflow enrich` for features registered from issues
ENRICH_DEFAULTS = [
    "--problem-type", "manual_workaround",
    "--urgency", "user_demand",
    "--primary-user", "developers",
    "--integration-scope", "extends_existing",
]

_ADDED_FEATURE = re.compile(r"Added feature (F-\d+)")
_TITLE_PREFIX = re.compile(r"^SpecFlow \w+(?: \(retry \d+\))?: ")


def build_cli_args(phase: Phase, feature_id: str) -> list[str]:
    """Arguments for ``specflow`` to run one phase."""
    if phase == "specify":
        return ["specify", feature_id, "--batch"]
    if phase == "implement":
        return ["implement", "--feature", feature_id]
    return [phase, feature_id]


def _tail(text: str, limit: int = 500) -> str:
    return (text or "")[:limit]


class PhaseRunner:
    """Drives pipeline items through one phase each.

    Args:
        ctx: Shared collaborators; ctx.blackboard must be set
    """

    def __init__(self, ctx: HeartbeatContext):
        self.ctx = ctx
        self.bb = ctx.blackboard
        self.workspaces = WorkspaceManager(ctx.git, ctx.run_specflow, ctx.worktree_base)
        self.repairer = ArtifactRepairer(ctx.launcher, ctx.git)

    def _event(self, session_id: str, item_id: str, summary: str, **metadata: Any) -> None:
        logger.info("[%s] %s", item_id, summary)
        self.bb.append_event(
            summary,
            actor_id=session_id,
            target_id=item_id,
            metadata=metadata or None,
        )

    # =========================================================================
    # Entry point
    # =========================================================================

    def run_phase(self, item: dict[str, Any], project: dict[str, Any], session_id: str) -> bool:
        """Run the phase recorded in a work item's metadata.

        Args:
            item: Work item dict (claimed by session_id)
            project: Project dict with project_id and local_path
            session_id: Agent session running the phase

        Returns:
            True if handled, False on a transient failure

        Raises:
            ValueError: If the item carries no pipeline metadata
        """
        state = parse_specflow_meta(item.get("metadata"))
        if state is None:
            raise ValueError(f"Work item {item['item_id']} has no valid SpecFlow metadata")

        item_id = item["item_id"]
        project_path = Path(project["local_path"])
        project_id = project["project_id"]
        phase = state.phase

        self._event(
            session_id, item_id,
            f'SpecFlow phase "{phase}" starting for {state.feature_id}',
            featureId=state.feature_id, phase=phase, retryCount=state.retry_count,
        )

        try:
            ws = self.workspaces.resolve(state, project_path, project_id)
        except (subprocess.SubprocessError, OSError) as e:
            stderr = getattr(e, "stderr", "") or str(e)
            self._event(
                session_id, item_id,
                f"Worktree setup failed for {state.feature_id}",
                phase=phase, error=_tail(stderr),
            )
            return False

        self._event(session_id, item_id, f"Worktree ready at {ws.path}", worktreePath=str(ws.path), phase=phase)

        if not self._prepare_state(ws, project_path, project_id, state, session_id, item_id):
            return False

        if state.feature_id.startswith("GH-") and phase == "specify":
            registered = self._register_github_feature(item, state, ws, session_id)
            if registered is None:
                return False
            state = replace(state, feature_id=registered)

        if phase == "complete":
            return self._run_complete(state, ws, project_path, session_id, item_id)

        result = self.ctx.run_specflow(build_cli_args(phase, state.feature_id), ws.path, SPECFLOW_TIMEOUT_MS)
        if not self._check_tool_result(result, state, session_id, item_id):
            return False

        expected = PHASE_EXPECTED_ARTIFACTS.get(phase)
        if expected:
            artifact_path = feature_artifact_path(ws.path, state.feature_id, expected)
            if not artifact_path.exists():
                self._event(
                    session_id, item_id,
                    f'SpecFlow phase "{phase}" reported success but {expected} is missing for {state.feature_id}',
                    phase=phase, featureId=state.feature_id, expectedArtifact=str(artifact_path),
                )
                return False

        if phase == "implement":
            if not self._run_implement(item, state, ws, result.stdout, session_id):
                return False

        if phase in PHASE_RUBRICS:
            gate = check_quality_gate(
                self.ctx.run_specflow, ws.path, phase, state.feature_id, self.ctx.quality_threshold,
            )
            if not gate.passed:
                return self._handle_gate_failure(item, state, ws, gate.score, gate.feedback, session_id)
            self._event(
                session_id, item_id,
                f'Quality gate passed ({gate.score}%) for {state.feature_id} phase "{phase}"',
                phase=phase, score=gate.score,
            )

        following = next_phase(phase)
        if following:
            self._chain_next(item, state, following, ws, session_id)
        return True

    # =========================================================================
    # Preparation
    # =========================================================================

    def _prepare_state(
        self,
        ws: Workspace,
        project_path: Path,
        project_id: str,
        state: PipelinePhaseState,
        session_id: str,
        item_id: str,
    ) -> bool:
        """Share or initialize the feature database and copy spec artifacts."""
        linked = self.workspaces.link_state(project_path, ws.path)

        try:
            self.workspaces.ensure_gitignore(ws.path)
            copied = self.workspaces.copy_spec_artifacts(project_path, ws.path, state.feature_id)
        except OSError as e:
            self._event(session_id, item_id, f"Worktree preparation failed: {e}", worktreePath=str(ws.path))
            return False

        if copied:
            self._event(
                session_id, item_id,
                f"Copied {len(copied)} untracked spec artifact(s) into worktree",
                files=[str(p) for p in copied],
            )

        if linked:
            self._event(session_id, item_id, "Linked specflow state from project", worktreePath=str(ws.path))
            return True

        if self.workspaces.has_state(ws.path):
            return True

        init = self.workspaces.initialize_state(ws.path, project_id)
        if init.exit_code != 0:
            self._event(
                session_id, item_id,
                f"specflow init failed (exit {init.exit_code}) in worktree",
                stderr=_tail(init.stderr),
            )
            return False

        self._event(session_id, item_id, "Initialized specflow database in worktree", worktreePath=str(ws.path))
        return True

    def _register_github_feature(
        self,
        item: dict[str, Any],
        state: PipelinePhaseState,
        ws: Workspace,
        session_id: str,
    ) -> str | None:
        """Register an issue-routed feature with specflow.

        Returns:
            The feature ID assigned by specflow, or None if ``add`` failed
        """
        item_id = item["item_id"]
        name = _TITLE_PREFIX.sub("", item["title"])
        description = item.get("description") or name

        added = self.ctx.run_specflow(
            ["add", name, description, "--priority", "1"], ws.path, REGISTER_TIMEOUT_MS,
        )
        if added.exit_code != 0:
            self._event(
                session_id, item_id,
                f"Failed to register feature {state.feature_id} in specflow (exit {added.exit_code})",
                stderr=_tail(added.stderr),
            )
            return None

        match = _ADDED_FEATURE.search(added.stdout)
        feature_id = match.group(1) if match else state.feature_id
        self._event(
            session_id, item_id,
            f"Registered feature {state.feature_id} as {feature_id} in specflow",
            githubFeatureId=state.feature_id, specflowFeatureId=feature_id,
        )

        self.ctx.run_specflow(["enrich", feature_id, *ENRICH_DEFAULTS], ws.path, REGISTER_TIMEOUT_MS)
        return feature_id

    def _check_tool_result(
        self,
        result: CliResult,
        state: PipelinePhaseState,
        session_id: str,
        item_id: str,
    ) -> bool:
        if result.timed_out:
            self._event(
                session_id, item_id,
                f'SpecFlow phase "{state.phase}" timed out for {state.feature_id}',
                phase=state.phase, featureId=state.feature_id, timeoutMs=SPECFLOW_TIMEOUT_MS,
            )
            return False

        if result.exit_code != 0:
            self._event(
                session_id, item_id,
                f'SpecFlow phase "{state.phase}" failed (exit {result.exit_code}) for {state.feature_id}',
                phase=state.phase, featureId=state.feature_id,
                exitCode=result.exit_code, stderr=_tail(result.stderr),
            )
            return False

        self._event(
            session_id, item_id,
            f'SpecFlow phase "{state.phase}" completed (exit 0) for {state.feature_id}',
            phase=state.phase, featureId=state.feature_id,
        )
        return True

    # =========================================================================
    # Implement phase
    # =========================================================================

    def _run_implement(
        self,
        item: dict[str, Any],
        state: PipelinePhaseState,
        ws: Workspace,
        prompt: str,
        session_id: str,
    ) -> bool:
        """Run the implementation agent, then commit, push, and open a PR."""
        item_id = item["item_id"]
        feature_id = state.feature_id

        if prompt.strip():
            launched = self.ctx.launcher(LaunchOptions(
                session_id=session_id,
                prompt=prompt.strip(),
                work_dir=ws.path,
                timeout_ms=IMPLEMENT_TIMEOUT_MS,
            ))
            if launched.exit_code != 0:
                self._event(
                    session_id, item_id,
                    f"Implementation agent failed (exit {launched.exit_code}) for {feature_id}",
                    phase="implement", exitCode=launched.exit_code, stderr=_tail(launched.stderr),
                )
                return False

        git = self.ctx.git
        try:
            sha = git.commit_all(ws.path, f"feat(specflow): {feature_id} implementation")
            if not sha:
                self._event(
                    session_id, item_id,
                    f"No changes to commit for {feature_id}, completing without PR",
                    featureId=feature_id,
                )
                return True

            code_gate = check_code_gate(git.get_changed_files, ws.path, ws.main_branch)
            if not code_gate.passed:
                self._event(
                    session_id, item_id,
                    f"Code gate warning for {feature_id}: {code_gate.reason}",
                    featureId=feature_id, changedFiles=code_gate.changed_files,
                )

            git.push_branch(ws.path, ws.branch)
            pr = git.create_pr(
                ws.path,
                f"feat(specflow): {feature_id} {_TITLE_PREFIX.sub('', item['title'])}",
                self._pr_body(feature_id),
                ws.main_branch,
                ws.branch,
            )
        except (subprocess.SubprocessError, OSError) as e:
            stderr = getattr(e, "stderr", "") or str(e)
            self._event(
                session_id, item_id,
                f"Git operations failed for {feature_id}",
                featureId=feature_id, error=_tail(stderr),
            )
            return False

        self._event(
            session_id, item_id,
            f"Created PR #{pr.number} for {feature_id}",
            prNumber=pr.number, prUrl=pr.url, commitSha=sha,
        )
        return True

    @staticmethod
    def _pr_body(feature_id: str) -> str:
        return "\n".join([
            f"## SpecFlow Feature: {feature_id}",
            "",
            "Automated implementation via SpecFlow pipeline.",
            "",
            "- Spec: see `spec.md` on this branch",
            "- Plan: see `plan.md` on this branch",
        ])

    # =========================================================================
    # Complete phase
    # =========================================================================

    def _run_complete(
        self,
        state: PipelinePhaseState,
        ws: Workspace,
        project_path: Path,
        session_id: str,
        item_id: str,
    ) -> bool:
        """Run ``specflow complete`` with one repair-and-retry, then tear down."""
        feature_id = state.feature_id
        args = build_cli_args("complete", feature_id)
        result = self.ctx.run_specflow(args, ws.path, SPECFLOW_TIMEOUT_MS)

        if result.exit_code != 0 and not result.timed_out:
            spec_dir = ws.path / ".specify" / "specs"
            feature_dir = find_feature_dir(spec_dir, feature_id) or spec_dir / feature_id
            missing = detect_missing_artifacts(f"{result.stdout}\n{result.stderr}", feature_dir)

            if missing:
                self._event(
                    session_id, item_id,
                    f"Missing completion artifacts for {feature_id}: {', '.join(missing)}, regenerating",
                    featureId=feature_id, missing=missing,
                )
                attempts = self.repairer.repair(
                    feature_id, ws.path, feature_dir, ws.main_branch, missing, session_id,
                )
                produced = [a.artifact for a in attempts if a.produced]
                if len(produced) < len(missing):
                    self._event(
                        session_id, item_id,
                        f"Artifact repair failed for {feature_id}",
                        featureId=feature_id, missing=missing, produced=produced,
                        attempts=[{"artifact": a.artifact, "exitCode": a.exit_code} for a in attempts],
                    )
                    return False

                self._event(
                    session_id, item_id,
                    f"Regenerated {', '.join(produced)} for {feature_id}, retrying complete",
                    featureId=feature_id,
                )
                result = self.ctx.run_specflow(args, ws.path, SPECFLOW_TIMEOUT_MS)

        if not self._check_tool_result(result, state, session_id, item_id):
            return False

        try:
            removed = self.workspaces.remove(project_path, ws.path)
        except (subprocess.SubprocessError, OSError) as e:
            logger.warning("Worktree teardown failed for %s: %s", feature_id, e)
            removed = False

        if removed:
            self._event(
                session_id, item_id,
                f"Cleaned up worktree for completed feature {feature_id}",
                worktreePath=str(ws.path),
            )
        else:
            self._event(
                session_id, item_id,
                f"Worktree for {feature_id} left for staleness cleanup",
                worktreePath=str(ws.path),
            )
        return True

    # =========================================================================
    # Chaining
    # =========================================================================

    def _create_chained_item(self, item_id: str, title: str, description: str,
                             state: PipelinePhaseState, priority: str) -> bool:
        try:
            self.bb.create_work_item(
                item_id=item_id,
                title=title,
                description=description,
                project=state.project_id,
                source=SPECFLOW_SOURCE,
                source_ref=state.feature_id,
                priority=priority,
                metadata=state.to_metadata(),
            )
            return True
        except ValueError as e:
            logger.warning("Could not queue %s: %s", item_id, e)
            return False

    def _chain_next(
        self,
        item: dict[str, Any],
        state: PipelinePhaseState,
        following: Phase,
        ws: Workspace,
        session_id: str,
    ) -> None:
        feature_id = state.feature_id
        new_state = next_phase_state(state, following, str(ws.path), ws.main_branch, ws.branch)
        new_id = phase_item_id(feature_id, following)

        created = self._create_chained_item(
            new_id,
            f"SpecFlow {following}: {feature_id}",
            f'SpecFlow phase "{following}" for feature {feature_id}',
            new_state,
            item.get("priority") or DEFAULT_PRIORITY,
        )
        summary = (
            f'Chained next phase "{following}" for {feature_id}'
            if created else f'Next phase "{following}" for {feature_id} already queued'
        )
        self._event(
            session_id, item["item_id"], summary,
            currentPhase=state.phase, nextPhase=following, nextItemId=new_id,
        )

    def _handle_gate_failure(
        self,
        item: dict[str, Any],
        state: PipelinePhaseState,
        ws: Workspace,
        score: float,
        feedback: str,
        session_id: str,
    ) -> bool:
        """Queue a retry of the phase, or close the feature when out of retries."""
        item_id = item["item_id"]
        feature_id = state.feature_id
        max_retries = self.ctx.max_retries

        if state.retry_count >= max_retries:
            self._event(
                session_id, item_id,
                f'Quality gate failed ({score}%), max retries exceeded for {feature_id} phase "{state.phase}"',
                phase=state.phase, score=score, maxRetries=max_retries, feedback=_tail(feedback),
            )
            return True

        new_state = retry_phase_state(state, feedback, str(ws.path), ws.main_branch, ws.branch)
        new_id = retry_item_id(feature_id, state.phase, new_state.retry_count)
        self._create_chained_item(
            new_id,
            f"SpecFlow {state.phase} (retry {new_state.retry_count}): {feature_id}",
            f'SpecFlow phase "{state.phase}" retry for feature {feature_id}\n\nEval feedback:\n{feedback}',
            new_state,
            item.get("priority") or DEFAULT_PRIORITY,
        )
        self._event(
            session_id, item_id,
            f'Quality gate failed ({score}%), retrying {feature_id} phase "{state.phase}" '
            f"(attempt {new_state.retry_count}/{max_retries})",
            phase=state.phase, score=score, retryCount=new_state.retry_count, retryItemId=new_id,
        )
        return True
