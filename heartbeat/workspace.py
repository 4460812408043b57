"""Isolated git worktrees for pipeline features.

Every feature gets its own worktree on ``specflow-<feature id>``. The first
phase creates it; later phases reuse the path carried in their metadata.

The specflow tool keeps its feature database in ``.specflow/`` of the
repository it runs in. That directory is gitignored, so a fresh worktree
would start without it. Instead of re-initializing per worktree, the
source repository's ``.specflow`` is symlinked in, so every worktree of a
project shares one features.db. ``specflow init`` is only run when linking
is impossible.
"""

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

from .git_utils import GitOps, resolve_worktree_path
from .specflow_cli import INIT_TIMEOUT_MS, CliResult, SpecFlowRunner, find_feature_dir
from .specflow_types import PipelinePhaseState, feature_branch_name

logger = logging.getLogger(__name__)

STATE_DIR = ".specflow"
STATE_FILES = ("features.db", "evals.db")
SPEC_ARTIFACTS = ("spec.md", "plan.md", "tasks.md")


@dataclass
class Workspace:
    """A resolved feature worktree."""
    path: Path
    branch: str
    main_branch: str


class WorkspaceManager:
    """Creates, reuses, and prepares feature worktrees.

    Args:
        git: Version-control port
        run_specflow: Tool port, used for the init fallback
        worktree_base: Override the worktree base directory
    """

    def __init__(
        self,
        git: GitOps,
        run_specflow: SpecFlowRunner,
        worktree_base: Path | None = None,
    ):
        self.git = git
        self.run_specflow = run_specflow
        self.worktree_base = worktree_base

    def resolve(self, state: PipelinePhaseState, project_path: Path | str, project_id: str) -> Workspace:
        """Create or reuse the worktree for a pipeline item.

        - ``specify`` without a carried path: create a fresh worktree.
        - Carried path: ensure it still exists.
        - Otherwise: derive the standard path and ensure it.
        """
        main_branch = state.main_branch or self.git.get_current_branch(project_path)
        # GH-* features are renamed after specify; keep the branch they were created on
        branch = state.feature_branch or feature_branch_name(state.feature_id)

        if state.phase == "specify" and not state.worktree_path:
            path = self.git.create_worktree(project_path, branch, project_id, self.worktree_base)
        elif state.worktree_path:
            path = self.git.ensure_worktree(project_path, state.worktree_path, branch)
        else:
            derived = resolve_worktree_path(project_path, branch, project_id, self.worktree_base)
            path = self.git.ensure_worktree(project_path, derived, branch)

        return Workspace(path=Path(path), branch=branch, main_branch=main_branch)

    def remove(self, project_path: Path | str, worktree_path: Path | str) -> bool:
        return self.git.remove_worktree(project_path, worktree_path)

    # =========================================================================
    # Feature-tracking state
    # =========================================================================

    def link_state(self, project_path: Path | str, worktree_path: Path | str) -> bool:
        """Share the source repository's feature database with a worktree.

        Links the whole ``.specflow`` directory when the worktree has none,
        otherwise links the database files individually.

        Returns:
            True if the worktree now sees the source features.db
        """
        source = Path(project_path) / STATE_DIR
        dest = Path(worktree_path) / STATE_DIR

        if not (source / "features.db").exists():
            return False

        try:
            if dest.is_symlink():
                if dest.resolve() == source.resolve():
                    return True
                dest.unlink()

            if not dest.exists():
                dest.symlink_to(source.resolve(), target_is_directory=True)
                logger.info("Linked %s -> %s", dest, source)
                return True

            # Directory already present (e.g. partially checked out)
            for name in STATE_FILES:
                src_file = source / name
                dest_file = dest / name
                if not src_file.exists():
                    continue
                if dest_file.is_symlink() and dest_file.resolve() == src_file.resolve():
                    continue
                if dest_file.exists() or dest_file.is_symlink():
                    dest_file.unlink()
                dest_file.symlink_to(src_file.resolve())
            logger.info("Linked state files into %s", dest)
            return (dest / "features.db").exists()
        except OSError as e:
            logger.warning("Could not link %s into %s: %s", source, dest, e)
            return False

    def has_state(self, worktree_path: Path | str) -> bool:
        return (Path(worktree_path) / STATE_DIR / "features.db").exists()

    def init_args(self, worktree_path: Path | str, project_id: str) -> list[str]:
        """Pick the ``specflow init`` invocation for a worktree.

        Preference: existing feature definitions, then app context, then a
        minimal registration under the project ID.
        """
        worktree_path = Path(worktree_path)
        features = worktree_path / "features.json"
        app_context = worktree_path / ".specify" / "app-context.md"

        if features.exists():
            return ["init", "--from-features", str(features)]
        if app_context.exists():
            return ["init", "--batch", "--from-spec", str(app_context)]
        return ["init", "--batch", project_id]

    def initialize_state(self, worktree_path: Path | str, project_id: str) -> CliResult:
        args = self.init_args(worktree_path, project_id)
        logger.info("Initializing specflow in %s: %s", worktree_path, " ".join(args))
        return self.run_specflow(args, worktree_path, INIT_TIMEOUT_MS)

    # =========================================================================
    # Worktree hygiene
    # =========================================================================

    def ensure_gitignore(self, worktree_path: Path | str) -> bool:
        """Make sure the worktree ignores the linked state directory.

        Returns:
            True if .gitignore was changed
        """
        gitignore = Path(worktree_path) / ".gitignore"
        existing = gitignore.read_text() if gitignore.exists() else ""

        entries = {line.strip().strip("/") for line in existing.splitlines()}
        if STATE_DIR in entries:
            return False

        with open(gitignore, "a") as f:
            if existing and not existing.endswith("\n"):
                f.write("\n")
            f.write(f"{STATE_DIR}\n")
        return True

    def copy_spec_artifacts(
        self,
        project_path: Path | str,
        worktree_path: Path | str,
        feature_id: str,
    ) -> list[Path]:
        """Copy spec/plan/tasks documents the checkout did not bring along.

        Artifacts can be untracked in the source repository, so the new
        worktree lacks them. Existing worktree files are never overwritten.

        Returns:
            Paths of the files copied into the worktree
        """
        source_dir = find_feature_dir(Path(project_path) / ".specify" / "specs", feature_id)
        if source_dir is None:
            return []

        dest_dir = Path(worktree_path) / ".specify" / "specs" / source_dir.name
        copied = []
        for name in SPEC_ARTIFACTS:
            src = source_dir / name
            dest = dest_dir / name
            if not src.is_file() or dest.exists():
                continue
            dest_dir.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src, dest)
            copied.append(dest)

        if copied:
            logger.info("Copied %d spec artifact(s) into %s", len(copied), dest_dir)
        return copied
