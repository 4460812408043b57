"""Shared test fixtures for heartbeat tests."""

import json
import shutil
import tempfile
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from heartbeat.context import HeartbeatContext
from heartbeat.db import Blackboard
from heartbeat.git_utils import GitOps, PullRequest
from heartbeat.launcher import LaunchOptions, LaunchResult
from heartbeat.specflow_cli import CliResult
from heartbeat.specflow_types import PHASE_EXPECTED_ARTIFACTS


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    tmp = tempfile.mkdtemp()
    yield Path(tmp)
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture(autouse=True)
def heartbeat_home(temp_dir, monkeypatch):
    """Point HEARTBEAT_DIR at a temp directory so logs and locks stay local."""
    home = temp_dir / ".heartbeat"
    monkeypatch.setenv("HEARTBEAT_DIR", str(home))
    monkeypatch.delenv("HEARTBEAT_DB", raising=False)
    monkeypatch.setenv("HEARTBEAT_WORKTREE_DIR", str(temp_dir / "worktrees"))
    return home


@pytest.fixture
def blackboard(temp_dir):
    """A fresh blackboard on a temp SQLite file."""
    return Blackboard(temp_dir / "blackboard.db")


@pytest.fixture
def project_dir(temp_dir):
    path = temp_dir / "proj-a"
    path.mkdir()
    return path


@pytest.fixture
def project(blackboard, project_dir):
    """Registered project ``proj-a`` with a local path."""
    return blackboard.register_project(
        "proj-a",
        name="Project A",
        local_path=str(project_dir),
        metadata={"specflow_enabled": True},
    )


class FakeLauncher:
    """Records launches and returns a fixed exit code."""

    def __init__(self, exit_code: int = 0):
        self.exit_code = exit_code
        self.calls: list[LaunchOptions] = []
        self.on_launch = None

    def __call__(self, opts: LaunchOptions) -> LaunchResult:
        self.calls.append(opts)
        if self.on_launch:
            self.on_launch(opts)
        stderr = "" if self.exit_code == 0 else "agent crashed"
        return LaunchResult(exit_code=self.exit_code, stdout="done", stderr=stderr)


class FakeSpecFlow:
    """Stands in for the specflow binary.

    Phase commands write their expected artifact under
    ``<cwd>/.specify/specs/<feature>/`` and succeed. ``results`` overrides
    the outcome per command: a CliResult, or a list consumed in order.
    """

    def __init__(self):
        self.calls: list[tuple[list[str], Path, int]] = []
        self.results: dict[str, CliResult | list[CliResult]] = {}
        self.eval_score: float = 90
        self.eval_feedback = "Clear and complete."
        self.write_artifacts = True
        self.implement_prompt = "Implement every task in tasks.md."

    def commands(self) -> list[str]:
        return [args[0] for args, _, _ in self.calls]

    def calls_for(self, command: str) -> list[list[str]]:
        return [args for args, _, _ in self.calls if args[0] == command]

    def __call__(self, args: list[str], cwd, timeout_ms: int) -> CliResult:
        self.calls.append((list(args), Path(cwd), timeout_ms))
        command = args[0]

        override = self.results.get(command)
        if isinstance(override, list):
            if override:
                return override.pop(0)
        elif override is not None:
            return override

        if command == "eval":
            payload = {"results": [{"score": self.eval_score, "feedback": self.eval_feedback}]}
            return CliResult(exit_code=0, stdout=json.dumps(payload))

        if command in PHASE_EXPECTED_ARTIFACTS and self.write_artifacts:
            feature_dir = Path(cwd) / ".specify" / "specs" / args[1].lower()
            feature_dir.mkdir(parents=True, exist_ok=True)
            (feature_dir / PHASE_EXPECTED_ARTIFACTS[command]).write_text(f"# {command}\n")

        if command == "implement":
            return CliResult(exit_code=0, stdout=self.implement_prompt)
        if command == "add":
            return CliResult(exit_code=0, stdout="Added feature F-100: registered\n")
        return CliResult(exit_code=0)


@pytest.fixture
def fake_launcher():
    return FakeLauncher()


@pytest.fixture
def fake_specflow():
    return FakeSpecFlow()


@pytest.fixture
def fake_git(temp_dir):
    """GitOps whose worktree operations create plain directories."""
    base = temp_dir / "worktrees"

    def create_worktree(project_path, branch, project_id=None, base_dir=None):
        path = (base_dir or base) / (project_id or Path(project_path).name) / branch
        path.mkdir(parents=True, exist_ok=True)
        return path

    def ensure_worktree(project_path, worktree_path, branch):
        Path(worktree_path).mkdir(parents=True, exist_ok=True)
        return Path(worktree_path)

    return GitOps(
        get_current_branch=MagicMock(return_value="main"),
        is_clean_branch=MagicMock(return_value=True),
        stash_if_dirty=MagicMock(return_value=False),
        pop_stash=MagicMock(return_value=True),
        create_worktree=MagicMock(side_effect=create_worktree),
        ensure_worktree=MagicMock(side_effect=ensure_worktree),
        remove_worktree=MagicMock(return_value=True),
        commit_all=MagicMock(return_value="abc123"),
        push_branch=MagicMock(),
        create_pr=MagicMock(return_value=PullRequest(number=42, url="https://github.com/o/r/pull/42")),
        get_diff_summary=MagicMock(return_value=" src/app.py | 10 ++++++++++"),
        get_changed_files=MagicMock(return_value=["src/app.py"]),
        has_commits_ahead=MagicMock(return_value=True),
    )


@pytest.fixture
def ctx(blackboard, fake_launcher, fake_specflow, fake_git, temp_dir):
    """HeartbeatContext wired to fakes."""
    return HeartbeatContext(
        blackboard=blackboard,
        launcher=fake_launcher,
        run_specflow=fake_specflow,
        git=fake_git,
        spawn_worker=MagicMock(return_value=4242),
        worker_command=["heartbeat"],
        worktree_base=temp_dir / "worktrees",
    )
