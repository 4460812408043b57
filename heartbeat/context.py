"""Shared collaborators passed explicitly into every component.

The dispatcher, phase runner, worker and evaluators take a
HeartbeatContext in their constructors instead of reaching for module
globals. Tests build one with fakes for the launcher, tool and git ports.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from .config import get_specflow_config
from .db import Blackboard
from .git_utils import GitOps
from .launcher import Launcher, claude_launcher, spawn_detached
from .quality_gate import QUALITY_THRESHOLD
from .specflow_cli import SpecFlowRunner, run_specflow
from .specflow_types import MAX_RETRIES


@dataclass
class HeartbeatContext:
    """Store client plus the ports used to reach the outside world.

    Attributes:
        blackboard: Store client; None means the store is not wired
        launcher: Runs an agent session
        run_specflow: Runs the phase-execution tool
        git: Version-control operations
        spawn_worker: Starts a detached process (args, cwd, log path) -> pid
        worker_command: Command prefix that invokes this program's CLI
        worktree_base: Override for the feature worktree base directory
        quality_threshold: Minimum passing quality gate score (0-100)
        max_retries: Retries allowed after a failed quality gate
    """
    blackboard: Blackboard | None
    launcher: Launcher = claude_launcher
    run_specflow: SpecFlowRunner = run_specflow
    git: GitOps = field(default_factory=GitOps)
    spawn_worker: Callable[[list[str], Path | str, Path], int] = spawn_detached
    worker_command: list[str] | None = None
    worktree_base: Path | None = None
    quality_threshold: float = QUALITY_THRESHOLD
    max_retries: int = MAX_RETRIES

    @classmethod
    def from_config(cls, db_path: Path | str | None = None) -> "HeartbeatContext":
        """Build the production context from config.yaml and the environment."""
        settings = get_specflow_config()
        return cls(
            blackboard=Blackboard(db_path),
            quality_threshold=settings["quality_threshold"],
            max_retries=settings["max_retries"],
        )
