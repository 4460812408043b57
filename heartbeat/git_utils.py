"""Git operations for feature worktrees, branches, and pull requests."""

import json
import logging
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .config import get_worktree_base_dir

logger = logging.getLogger(__name__)


@dataclass
class PullRequest:
    """A pull request opened (or found) for a branch."""
    number: int
    url: str


def run_git(args: list[str], cwd: Path | str | None = None, check: bool = True) -> subprocess.CompletedProcess:
    """Run a git command.

    Args:
        args: Git command arguments (without 'git')
        cwd: Working directory for the command
        check: Raise exception on non-zero exit

    Returns:
        CompletedProcess instance
    """
    cmd = ["git"] + args
    return subprocess.run(
        cmd,
        cwd=cwd,
        capture_output=True,
        text=True,
        check=check,
        timeout=120,
    )


def run_gh(args: list[str], cwd: Path | str | None = None, check: bool = True) -> subprocess.CompletedProcess:
    """Run a GitHub CLI command (same contract as run_git)."""
    return subprocess.run(
        ["gh"] + args,
        cwd=cwd,
        capture_output=True,
        text=True,
        check=check,
        timeout=60,
    )


# =============================================================================
# Pre-flight
# =============================================================================

def is_clean_branch(project_path: Path | str) -> bool:
    """Check if the working tree has no uncommitted changes."""
    result = run_git(["status", "--porcelain"], cwd=project_path)
    return not result.stdout.strip()


def get_current_branch(worktree_path: Path | str) -> str:
    """Get the current branch name in a worktree.

    Args:
        worktree_path: Path to the worktree

    Returns:
        Current branch name
    """
    result = run_git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=worktree_path)
    return result.stdout.strip()


def stash_if_dirty(project_path: Path | str) -> bool:
    """Stash uncommitted changes (including untracked files) if any.

    Returns:
        True if a stash entry was created
    """
    if is_clean_branch(project_path):
        return False
    run_git(
        ["stash", "push", "--include-untracked", "-m", "heartbeat auto-stash"],
        cwd=project_path,
    )
    return True


def pop_stash(project_path: Path | str) -> bool:
    """Restore the most recent stash. Returns False if the pop failed."""
    result = run_git(["stash", "pop"], cwd=project_path, check=False)
    return result.returncode == 0


# =============================================================================
# Worktree lifecycle
# =============================================================================

def resolve_worktree_path(
    project_path: Path | str,
    branch: str,
    project_id: str | None = None,
    base_dir: Path | None = None,
) -> Path:
    """Derive the worktree path for a branch.

    Returns:
        <base>/<project_id or repo dir name>/<branch>
    """
    dir_name = project_id or Path(project_path).name or "unknown"
    return (base_dir or get_worktree_base_dir()) / dir_name / branch


def create_worktree(
    project_path: Path | str,
    branch: str,
    project_id: str | None = None,
    base_dir: Path | None = None,
) -> Path:
    """Create a fresh worktree on a new branch.

    Any stale worktree at the target path is removed, and the branch is
    deleted locally and on origin before being recreated from the current
    HEAD of the project repository.

    Args:
        project_path: Main repository
        branch: Branch to create
        project_id: Directory name under the worktree base
        base_dir: Override the worktree base directory

    Returns:
        Path to the created worktree

    Raises:
        subprocess.CalledProcessError: If ``git worktree add`` fails
    """
    worktree_path = resolve_worktree_path(project_path, branch, project_id, base_dir)
    worktree_path.parent.mkdir(parents=True, exist_ok=True)

    if worktree_path.exists():
        result = run_git(
            ["worktree", "remove", "--force", str(worktree_path)],
            cwd=project_path,
            check=False,
        )
        if result.returncode != 0:
            # Orphaned directory - prune the registration and drop the files
            run_git(["worktree", "prune"], cwd=project_path, check=False)
            if worktree_path.exists():
                shutil.rmtree(worktree_path)

    # Branch may not exist locally or on origin
    run_git(["branch", "-D", branch], cwd=project_path, check=False)
    run_git(["push", "origin", "--delete", branch], cwd=project_path, check=False)

    # May fail if offline or no remote
    run_git(["fetch", "origin"], cwd=project_path, check=False)

    run_git(["worktree", "add", "-b", branch, str(worktree_path)], cwd=project_path)
    logger.info("Created worktree %s on %s", worktree_path, branch)
    return worktree_path


def ensure_worktree(
    project_path: Path | str,
    worktree_path: Path | str,
    branch: str,
) -> Path:
    """Ensure a worktree exists at a known path, recreating it if needed.

    An existing checkout is reused as-is. Otherwise the worktree is added
    for the existing branch, falling back to creating the branch.

    Returns:
        Path to the worktree
    """
    worktree_path = Path(worktree_path)

    if worktree_path.exists() and (worktree_path / ".git").exists():
        return worktree_path

    if worktree_path.exists():
        run_git(["worktree", "remove", "--force", str(worktree_path)], cwd=project_path, check=False)
        if worktree_path.exists():
            shutil.rmtree(worktree_path)
    run_git(["worktree", "prune"], cwd=project_path, check=False)

    worktree_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        run_git(["worktree", "add", str(worktree_path), branch], cwd=project_path)
    except subprocess.CalledProcessError:
        # Branch is gone (e.g. deleted after a merge) - recreate it
        run_git(["worktree", "add", "-b", branch, str(worktree_path)], cwd=project_path)

    logger.info("Restored worktree %s on %s", worktree_path, branch)
    return worktree_path


def find_owning_repo(worktree_path: Path | str) -> Path | None:
    """Main repository a linked worktree was added from.

    Returns:
        The repository root, or None if worktree_path is not a linked worktree
    """
    worktree_path = Path(worktree_path)
    if not (worktree_path / ".git").is_file():
        return None

    try:
        result = run_git(["rev-parse", "--git-common-dir"], cwd=worktree_path, check=False)
    except (subprocess.SubprocessError, OSError):
        return None
    if result.returncode != 0 or not result.stdout.strip():
        return None

    common_dir = Path(result.stdout.strip())
    if not common_dir.is_absolute():
        common_dir = (worktree_path / common_dir).resolve()
    return common_dir.parent


def remove_worktree(project_path: Path | str, worktree_path: Path | str) -> bool:
    """Remove a worktree. Always safe to call.

    Returns:
        True if git removed the worktree, False if only a prune was possible
    """
    result = run_git(
        ["worktree", "remove", "--force", str(worktree_path)],
        cwd=project_path,
        check=False,
    )
    if result.returncode == 0:
        return True

    run_git(["worktree", "prune"], cwd=project_path, check=False)
    logger.warning("Could not remove worktree %s: %s", worktree_path, result.stderr.strip())
    return False


# =============================================================================
# Post-agent operations
# =============================================================================

def commit_all(worktree_path: Path | str, message: str) -> str | None:
    """Stage and commit everything in the worktree.

    Returns:
        The new commit SHA, or None if there was nothing to commit
    """
    run_git(["add", "-A"], cwd=worktree_path)

    status = run_git(["status", "--porcelain"], cwd=worktree_path)
    if not status.stdout.strip():
        return None

    run_git(["commit", "-m", message], cwd=worktree_path)
    return run_git(["rev-parse", "HEAD"], cwd=worktree_path).stdout.strip()


def push_branch(worktree_path: Path | str, branch_name: str) -> None:
    """Push a branch to origin.

    Args:
        worktree_path: Path to the worktree
        branch_name: Branch to push
    """
    run_git(["push", "-u", "origin", branch_name], cwd=worktree_path)


def _pr_number_from_url(url: str) -> int:
    match = re.search(r"/pull/(\d+)", url)
    return int(match.group(1)) if match else 0


def create_pr(
    worktree_path: Path | str,
    title: str,
    body: str,
    base: str,
    head: str | None = None,
) -> PullRequest:
    """Create a pull request using gh CLI, or return the existing one.

    Args:
        worktree_path: Path to the worktree (branch must already be pushed)
        title: PR title
        body: PR body/description
        base: Target branch for the PR
        head: Source branch (defaults to the worktree's current branch)

    Returns:
        The created or existing pull request
    """
    head = head or get_current_branch(worktree_path)

    existing = run_gh(["pr", "view", head, "--json", "number,url"], cwd=worktree_path, check=False)
    if existing.returncode == 0 and existing.stdout.strip():
        try:
            data = json.loads(existing.stdout)
            return PullRequest(number=int(data["number"]), url=data["url"])
        except (ValueError, KeyError, TypeError):
            pass

    result = run_gh(
        ["pr", "create", "--base", base, "--head", head, "--title", title, "--body", body],
        cwd=worktree_path,
    )

    # gh pr create outputs the PR URL
    url = result.stdout.strip().splitlines()[-1] if result.stdout.strip() else ""
    return PullRequest(number=_pr_number_from_url(url), url=url)


def get_diff_summary(worktree_path: Path | str, base: str) -> str:
    """Get ``git diff --stat`` between base and the current branch."""
    return run_git(["diff", "--stat", f"{base}...HEAD"], cwd=worktree_path).stdout.strip()


def get_changed_files(worktree_path: Path | str, base: str) -> list[str]:
    """List files changed on the current branch relative to base."""
    result = run_git(["diff", "--name-only", f"{base}...HEAD"], cwd=worktree_path)
    return [line for line in result.stdout.splitlines() if line.strip()]


def has_commits_ahead(worktree_path: Path | str, base_branch: str = "main") -> bool:
    """Check if current branch has commits ahead of base branch.

    Args:
        worktree_path: Path to the worktree
        base_branch: Branch to compare against

    Returns:
        True if there are commits on current branch not in base
    """
    try:
        result = run_git(
            ["rev-list", "--count", f"{base_branch}..HEAD"],
            cwd=worktree_path,
            check=False,
        )
        if result.returncode != 0:
            return False
        return int(result.stdout.strip()) > 0
    except ValueError:
        return False


@dataclass
class GitOps:
    """Version-control port handed to the dispatcher and phase runner.

    Each field defaults to the real implementation in this module; tests
    replace individual operations with fakes.
    """
    get_current_branch: Callable[..., str] = get_current_branch
    is_clean_branch: Callable[..., bool] = is_clean_branch
    stash_if_dirty: Callable[..., bool] = stash_if_dirty
    pop_stash: Callable[..., bool] = pop_stash
    create_worktree: Callable[..., Path] = create_worktree
    ensure_worktree: Callable[..., Path] = ensure_worktree
    remove_worktree: Callable[..., bool] = remove_worktree
    commit_all: Callable[..., str | None] = commit_all
    push_branch: Callable[..., None] = push_branch
    create_pr: Callable[..., PullRequest] = create_pr
    get_diff_summary: Callable[..., str] = get_diff_summary
    get_changed_files: Callable[..., list[str]] = get_changed_files
    has_commits_ahead: Callable[..., bool] = has_commits_ahead
