"""Dispatch scheduler: claims available work items and runs agents on them.

One dispatch pass reads the active-agent census once, then walks the
available items in priority order, claiming and launching each in turn.
Items run sequentially; with ``fire_and_forget`` each item is handed to a
detached ``dispatch-worker`` process instead of being awaited.
"""

import logging
import sys
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .context import HeartbeatContext
from .launcher import LaunchOptions, log_path_for_session
from .specflow_runner import PhaseRunner
from .specflow_types import parse_specflow_meta

logger = logging.getLogger(__name__)

CONCURRENCY_LIMIT_REASON = "concurrency limit reached"
MAX_ITEMS_REASON = "exceeds max items per run"
NO_PROJECT_REASON = "no project assigned"
NO_LOCAL_PATH_REASON = "no local_path"
CLAIM_FAILED_REASON = "could not claim (already claimed by another agent)"

CROSS_PROJECT_DEPENDENCY_INSTRUCTIONS = """
## Cross-Project Dependencies

If you discover that completing this task requires changes in another project:
1. Create a GitHub issue in the target project: `gh issue create --repo owner/repo --title "..." --body "..."`
2. Output a structured dependency marker at the end of your summary:
   CROSS_PROJECT_DEPENDENCY:
   repo: owner/repo
   issue: <number>
   reason: <why this is needed>
   resume_context: <what to do when resolved>
3. Your current work item will be paused until the dependency resolves.
"""


@dataclass
class DispatchOptions:
    """Parameters for one dispatch pass. ``timeout`` is in minutes."""
    max_concurrent: int = 1
    max_items: int = 1
    timeout: int = 60
    project: str | None = None
    priority: str | None = None
    dry_run: bool = False
    fire_and_forget: bool = False

    @property
    def timeout_ms(self) -> int:
        return self.timeout * 60 * 1000


@dataclass
class DispatchedItem:
    item_id: str
    title: str
    project_id: str
    session_id: str
    exit_code: int
    completed: bool
    duration_ms: int


@dataclass
class SkippedItem:
    item_id: str | None
    title: str | None
    reason: str


@dataclass
class DispatchError:
    item_id: str
    title: str
    error: str


@dataclass
class DispatchResult:
    """Outcome of one dispatch pass."""
    timestamp: str
    dispatched: list[DispatchedItem] = field(default_factory=list)
    skipped: list[SkippedItem] = field(default_factory=list)
    errors: list[DispatchError] = field(default_factory=list)
    dry_run: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class GithubMeta:
    issue_number: int
    repo: str


def parse_github_meta(metadata: dict[str, Any] | None) -> GithubMeta | None:
    """Extract issue linkage from work item metadata, if both fields are set."""
    if not isinstance(metadata, dict):
        return None
    number = metadata.get("github_issue_number")
    repo = metadata.get("github_repo")
    if not (number and repo):
        return None
    return GithubMeta(issue_number=int(number), repo=str(repo))


def build_prompt(item: dict[str, Any], session_id: str) -> str:
    """Build the prompt for an agent session working on a work item."""
    parts = [f"You are an autonomous agent working on: {item['title']}"]

    if item.get("description"):
        parts.append(f"\nDescription: {item['description']}")

    parts.extend([
        f"\nWork item ID: {item['item_id']}",
        f"Session ID: {session_id}",
        CROSS_PROJECT_DEPENDENCY_INSTRUCTIONS,
        "\nWhen you are done, summarize what you accomplished.",
    ])
    return "\n".join(parts)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class Dispatcher:
    """Runs dispatch passes against the blackboard in ctx.

    Args:
        ctx: Shared collaborators; ctx.blackboard must be set
    """

    def __init__(self, ctx: HeartbeatContext):
        if ctx.blackboard is None:
            raise ValueError("Dispatcher requires a blackboard")
        self.ctx = ctx
        self.bb = ctx.blackboard

    def worker_command(self) -> list[str]:
        """Command prefix that re-invokes this program's CLI."""
        return list(self.ctx.worker_command or [sys.executable, "-m", "heartbeat.cli"])

    # =========================================================================
    # Dispatch pass
    # =========================================================================

    def dispatch(self, options: DispatchOptions) -> DispatchResult:
        """Claim and run available work items.

        Args:
            options: Limits, filters and mode for this pass

        Returns:
            DispatchResult listing dispatched, skipped and failed items
        """
        result = DispatchResult(
            timestamp=datetime.now(timezone.utc).isoformat(),
            dry_run=options.dry_run,
        )

        # Read once per pass; concurrent passes may both see a free slot
        active = self.bb.count_active_agents()
        if active >= options.max_concurrent:
            logger.info("Concurrency limit reached (%d/%d active)", active, options.max_concurrent)
            result.skipped.append(SkippedItem(item_id=None, title=None, reason=CONCURRENCY_LIMIT_REASON))
            if not options.dry_run:
                self.bb.append_event(
                    f"Dispatch skipped: {CONCURRENCY_LIMIT_REASON} ({active}/{options.max_concurrent} active)",
                    actor_id="dispatcher",
                    metadata={"activeAgents": active, "maxConcurrent": options.max_concurrent},
                )
            return result

        items = self.bb.list_work_items(
            status="available",
            project=options.project,
            priority=options.priority,
        )
        to_process = items[:options.max_items]

        for item in items[options.max_items:]:
            self._skip(result, item, MAX_ITEMS_REASON, options)

        for item in to_process:
            project = self.bb.get_project(item["project_id"]) if item.get("project_id") else None
            if not item.get("project_id"):
                self._skip(result, item, NO_PROJECT_REASON, options)
                continue
            if not project or not project.get("local_path"):
                self._skip(result, item, NO_LOCAL_PATH_REASON, options)
                continue

            if options.dry_run:
                result.dispatched.append(DispatchedItem(
                    item_id=item["item_id"],
                    title=item["title"],
                    project_id=item["project_id"],
                    session_id="(dry-run)",
                    exit_code=0,
                    completed=False,
                    duration_ms=0,
                ))
                continue

            self._dispatch_item(item, project, options, result)

        return result

    def _skip(self, result: DispatchResult, item: dict[str, Any], reason: str, options: DispatchOptions) -> None:
        result.skipped.append(SkippedItem(item_id=item["item_id"], title=item["title"], reason=reason))
        if not options.dry_run:
            self.bb.append_event(
                f'Skipped "{item["title"]}": {reason}',
                actor_id="dispatcher",
                target_id=item["item_id"],
                metadata={"reason": reason},
            )

    # =========================================================================
    # Per-item lifecycle
    # =========================================================================

    def _dispatch_item(
        self,
        item: dict[str, Any],
        project: dict[str, Any],
        options: DispatchOptions,
        result: DispatchResult,
    ) -> None:
        bb = self.bb
        item_id = item["item_id"]
        project_path = project["local_path"]

        try:
            agent = bb.register_agent(f"dispatch-{item_id}", project=item["project_id"], work=item_id)
            session_id = agent["session_id"]
            bb.update_agent_metadata(session_id, {"logPath": str(log_path_for_session(session_id))})
        except Exception as e:
            result.errors.append(DispatchError(item_id, item["title"], f"Failed to register agent: {e}"))
            return

        if not bb.claim_work_item(item_id, session_id):
            bb.deregister_agent(session_id)
            self._skip(result, item, CLAIM_FAILED_REASON, options)
            return

        bb.append_event(
            f'Dispatching "{item["title"]}" in {project_path}',
            actor_id=session_id,
            target_id=item_id,
            metadata={
                "itemId": item_id,
                "projectId": item["project_id"],
                "priority": item["priority"],
                "workDir": project_path,
                "fireAndForget": options.fire_and_forget,
            },
        )
        logger.info("Dispatching %s (session %s)", item_id, session_id)

        if options.fire_and_forget:
            self._spawn_worker(item, project_path, session_id, options, result)
            return

        start = time.monotonic()
        try:
            if parse_specflow_meta(item.get("metadata")):
                self._run_pipeline_item(item, project, session_id, start, result)
            else:
                self._run_agent_item(item, project, session_id, options, start, result)
        except Exception as e:
            logger.exception("Error dispatching %s", item_id)
            bb.release_work_item(item_id, session_id)
            bb.append_event(
                f'Error dispatching "{item["title"]}": {e}',
                actor_id=session_id,
                target_id=item_id,
                metadata={"itemId": item_id, "error": str(e), "durationMs": _elapsed_ms(start)},
            )
            result.errors.append(DispatchError(item_id, item["title"], str(e)))
        finally:
            bb.deregister_agent(session_id)

    def _spawn_worker(
        self,
        item: dict[str, Any],
        work_dir: str,
        session_id: str,
        options: DispatchOptions,
        result: DispatchResult,
    ) -> None:
        """Hand a claimed item to a detached dispatch-worker process."""
        item_id = item["item_id"]
        args = self.worker_command()
        # --db is a global option, so it precedes the subcommand
        args += ["--db", str(self.bb.db_path)]
        args += [
            "dispatch-worker",
            "--session-id", session_id,
            "--item-id", item_id,
            "--timeout-ms", str(options.timeout_ms),
        ]

        log_path = log_path_for_session(session_id)
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(log_path, "a") as f:
                f.write(
                    f"=== Worker Spawned ===\n"
                    f"Time: {datetime.now(timezone.utc).isoformat()}\n"
                    f"Item: {item_id}: {item['title']}\n"
                    f"Work Dir: {work_dir}\n"
                    f"===\n"
                )
            pid = self.ctx.spawn_worker(args, work_dir, log_path)
        except Exception as e:
            self.bb.release_work_item(item_id, session_id)
            self.bb.deregister_agent(session_id)
            result.errors.append(DispatchError(item_id, item["title"], f"Failed to spawn worker: {e}"))
            logger.error("Failed to spawn worker for %s: %s", item_id, e)
            return

        logger.info("Spawned worker pid %d for %s", pid, item_id)
        result.dispatched.append(DispatchedItem(
            item_id=item_id,
            title=item["title"],
            project_id=item["project_id"],
            session_id=session_id,
            exit_code=0,
            completed=False,
            duration_ms=0,
        ))

    def _run_pipeline_item(
        self,
        item: dict[str, Any],
        project: dict[str, Any],
        session_id: str,
        start: float,
        result: DispatchResult,
    ) -> None:
        bb = self.bb
        item_id = item["item_id"]
        state = parse_specflow_meta(item.get("metadata"))

        handled = PhaseRunner(self.ctx).run_phase(item, project, session_id)
        duration_ms = _elapsed_ms(start)

        if handled:
            bb.complete_work_item(item_id, session_id)
            bb.append_event(
                f'SpecFlow phase "{state.phase}" completed for {state.feature_id} ({duration_ms // 1000}s)',
                actor_id=session_id,
                target_id=item_id,
                metadata={"phase": state.phase, "durationMs": duration_ms},
            )
            result.dispatched.append(DispatchedItem(
                item_id=item_id,
                title=item["title"],
                project_id=item["project_id"],
                session_id=session_id,
                exit_code=0,
                completed=True,
                duration_ms=duration_ms,
            ))
            return

        bb.release_work_item(item_id, session_id)
        bb.append_event(
            f'SpecFlow phase "{state.phase}" failed for {state.feature_id} ({duration_ms // 1000}s)',
            actor_id=session_id,
            target_id=item_id,
            metadata={"phase": state.phase, "durationMs": duration_ms},
        )
        result.errors.append(DispatchError(item_id, item["title"], f'SpecFlow phase "{state.phase}" failed'))

    def _run_agent_item(
        self,
        item: dict[str, Any],
        project: dict[str, Any],
        session_id: str,
        options: DispatchOptions,
        start: float,
        result: DispatchResult,
    ) -> None:
        """Launch an agent on a plain item, in a fresh worktree for issue fixes."""
        bb = self.bb
        git = self.ctx.git
        item_id = item["item_id"]
        project_path = Path(project["local_path"])
        github = parse_github_meta(item.get("metadata"))

        work_dir = project_path
        worktree_path: Path | None = None
        branch = main_branch = None
        stashed = False

        try:
            if github:
                try:
                    stashed = git.stash_if_dirty(project_path)
                    if stashed:
                        bb.append_event(
                            f"Auto-stashed uncommitted changes in {project_path} before worktree creation",
                            actor_id=session_id,
                            target_id=item_id,
                        )
                    main_branch = git.get_current_branch(project_path)
                    branch = f"fix/issue-{github.issue_number}"
                    worktree_path = git.create_worktree(
                        project_path, branch, item["project_id"], self.ctx.worktree_base,
                    )
                    work_dir = worktree_path
                except Exception as e:
                    bb.release_work_item(item_id, session_id)
                    result.errors.append(DispatchError(item_id, item["title"], f"Failed to create worktree: {e}"))
                    return

            launch = self.ctx.launcher(LaunchOptions(
                session_id=session_id,
                prompt=build_prompt(item, session_id),
                work_dir=work_dir,
                timeout_ms=options.timeout_ms,
            ))
            duration_ms = _elapsed_ms(start)

            if launch.exit_code != 0:
                bb.release_work_item(item_id, session_id)
                bb.append_event(
                    f'Failed "{item["title"]}" (exit {launch.exit_code}, {duration_ms // 1000}s)',
                    actor_id=session_id,
                    target_id=item_id,
                    metadata={
                        "itemId": item_id,
                        "exitCode": launch.exit_code,
                        "durationMs": duration_ms,
                        "stderr": (launch.stderr or "")[:500],
                    },
                )
                result.errors.append(
                    DispatchError(item_id, item["title"], f"Claude exited with code {launch.exit_code}")
                )
                return

            if github and worktree_path:
                try:
                    self._publish_fix(item, github, worktree_path, branch, main_branch, session_id)
                except Exception as e:
                    bb.release_work_item(item_id, session_id)
                    result.errors.append(DispatchError(item_id, item["title"], f"Post-agent git ops failed: {e}"))
                    return

            bb.complete_work_item(item_id, session_id)
            bb.append_event(
                f'Completed "{item["title"]}" (exit 0, {duration_ms // 1000}s)',
                actor_id=session_id,
                target_id=item_id,
                metadata={"itemId": item_id, "exitCode": 0, "durationMs": duration_ms},
            )
            result.dispatched.append(DispatchedItem(
                item_id=item_id,
                title=item["title"],
                project_id=item["project_id"],
                session_id=session_id,
                exit_code=0,
                completed=True,
                duration_ms=duration_ms,
            ))
        finally:
            if worktree_path:
                git.remove_worktree(project_path, worktree_path)
            if stashed:
                restored = git.pop_stash(project_path)
                bb.append_event(
                    f"Restored stashed changes in {project_path}" if restored
                    else f"Failed to restore stash in {project_path}, run 'git stash pop' manually",
                    actor_id=session_id,
                    target_id=item_id,
                )

    def _publish_fix(
        self,
        item: dict[str, Any],
        github: GithubMeta,
        worktree_path: Path,
        branch: str,
        main_branch: str,
        session_id: str,
    ) -> None:
        """Commit the agent's changes, push, and open a PR that closes the issue."""
        git = self.ctx.git
        title = f"Fix #{github.issue_number}: {item['title']}"

        sha = git.commit_all(worktree_path, title)
        # The agent may have committed its work itself
        if not sha and not git.has_commits_ahead(worktree_path, main_branch):
            return

        git.push_branch(worktree_path, branch)
        body = "\n".join([
            f"Fixes #{github.issue_number}",
            "",
            f"Automated fix for: {item['title']}",
        ])
        pr = git.create_pr(worktree_path, title, body, main_branch, branch)
        self.bb.append_event(
            f'Created PR #{pr.number} for "{item["title"]}"',
            actor_id=session_id,
            target_id=item["item_id"],
            metadata={"prNumber": pr.number, "prUrl": pr.url, "commitSha": sha},
        )
