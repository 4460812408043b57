"""Checklist evaluators run on each heartbeat cycle.

Each checklist item in config.yaml names a ``type``; the evaluator for that
type returns a CheckResult with status ``ok``, ``alert`` or ``error``.
Evaluators receive the HeartbeatContext explicitly and never raise.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Literal

from .config import DEFAULT_CLEANUP_CONFIG, DEFAULT_DISPATCH_CONFIG, get_worktree_base_dir
from .context import HeartbeatContext
from .git_utils import find_owning_repo
from .scheduler import Dispatcher, DispatchOptions, DispatchResult
from .specflow_types import last_activity

logger = logging.getLogger(__name__)

CheckStatus = Literal["ok", "alert", "error"]


@dataclass
class ChecklistItem:
    """One monitored condition from the ``checks:`` config section."""
    name: str
    type: str
    enabled: bool = True
    description: str = ""
    config: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChecklistItem":
        return cls(
            name=data.get("name") or data.get("type", "unnamed"),
            type=data.get("type", ""),
            enabled=data.get("enabled", True),
            description=data.get("description", ""),
            config=dict(data.get("config") or {}),
        )


@dataclass
class CheckResult:
    item: ChecklistItem
    status: CheckStatus
    summary: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class StaleWorktree:
    """A feature worktree found under the worktree base directory."""
    path: Path
    project_path: Path
    feature_id: str


WorktreeScanner = Callable[[Path], list[StaleWorktree]]


def _int_setting(config: dict[str, Any], key: str, defaults: dict[str, Any]) -> int:
    value = config.get(key)
    return value if isinstance(value, int) and not isinstance(value, bool) else defaults[key]


# =============================================================================
# Agent dispatch
# =============================================================================

def evaluate_agent_dispatch(
    item: ChecklistItem,
    ctx: HeartbeatContext,
    dispatch: Callable[[DispatchOptions], DispatchResult] | None = None,
) -> CheckResult:
    """Dispatch available work items in fire-and-forget mode.

    Args:
        item: Checklist item; config keys max_concurrent, max_items,
            timeout_minutes, priority
        ctx: Shared collaborators
        dispatch: Override the dispatch function (defaults to a Dispatcher on ctx)

    Returns:
        ``error`` without a store or on failure, ``alert`` when any item
        errored, otherwise ``ok``
    """
    if ctx.blackboard is None:
        return CheckResult(
            item=item,
            status="error",
            summary=f"Agent dispatch: {item.name}: blackboard not configured",
            details={"error": "No blackboard in context"},
        )

    priority = item.config.get("priority")
    options = DispatchOptions(
        max_concurrent=_int_setting(item.config, "max_concurrent", DEFAULT_DISPATCH_CONFIG),
        max_items=_int_setting(item.config, "max_items", DEFAULT_DISPATCH_CONFIG),
        timeout=_int_setting(item.config, "timeout_minutes", DEFAULT_DISPATCH_CONFIG),
        priority=priority if isinstance(priority, str) else None,
        dry_run=False,
        fire_and_forget=True,
    )

    try:
        run = dispatch or Dispatcher(ctx).dispatch
        result = run(options)
    except Exception as e:
        logger.exception("Agent dispatch check %s failed", item.name)
        return CheckResult(
            item=item,
            status="error",
            summary=f"Agent dispatch: {item.name}: error: {e}",
            details={"error": str(e)},
        )

    dispatched = len(result.dispatched)
    completed = sum(1 for d in result.dispatched if d.completed)
    launched = dispatched - completed
    skipped = len(result.skipped)

    if result.errors:
        return CheckResult(
            item=item,
            status="alert",
            summary=f"Agent dispatch: {item.name}: {dispatched} dispatched, {len(result.errors)} error(s)",
            details={
                "dispatched": dispatched,
                "completed": completed,
                "errors": len(result.errors),
                "skipped": skipped,
                "errorDetails": [f"{e.item_id}: {e.error}" for e in result.errors],
            },
        )

    if dispatched:
        parts = []
        if launched:
            parts.append(f"{launched} launched")
        if completed:
            parts.append(f"{completed} completed")
        return CheckResult(
            item=item,
            status="ok",
            summary=f"Agent dispatch: {item.name}: {', '.join(parts)}",
            details={
                "dispatched": dispatched,
                "launched": launched,
                "completed": completed,
                "errors": 0,
                "skipped": skipped,
                "items": [
                    {"id": d.item_id, "title": d.title, "completed": d.completed, "durationMs": d.duration_ms}
                    for d in result.dispatched
                ],
            },
        )

    return CheckResult(
        item=item,
        status="ok",
        summary=f"Agent dispatch: {item.name}: no available work items",
        details={"dispatched": 0, "completed": 0, "errors": 0, "skipped": skipped},
    )


# =============================================================================
# SpecFlow worktree cleanup
# =============================================================================

def scan_feature_worktrees(base_dir: Path) -> list[StaleWorktree]:
    """Find ``<base>/<project>/specflow-*`` worktree directories.

    Each worktree is paired with the repository it was added from.
    """
    found = []
    if not base_dir.is_dir():
        return found

    for project_dir in sorted(base_dir.iterdir()):
        if not project_dir.is_dir():
            continue
        for entry in sorted(project_dir.iterdir()):
            if entry.is_dir() and entry.name.startswith("specflow-"):
                found.append(StaleWorktree(
                    path=entry,
                    project_path=find_owning_repo(entry) or project_dir,
                    feature_id=entry.name[len("specflow-"):].upper(),
                ))
    return found


def evaluate_specflow_cleanup(
    item: ChecklistItem,
    ctx: HeartbeatContext,
    scanner: WorktreeScanner = scan_feature_worktrees,
    now: datetime | None = None,
) -> CheckResult:
    """Remove feature worktrees with no recent work item activity.

    A worktree is stale when the newest ``updated_at`` among its feature's
    work items is older than ``staleness_days``, or when no item mentions
    the feature at all.
    """
    bb = ctx.blackboard
    if bb is None:
        return CheckResult(
            item=item,
            status="error",
            summary=f"SpecFlow cleanup: {item.name}: blackboard not configured",
            details={"error": "No blackboard in context"},
        )

    staleness_days = _int_setting(item.config, "staleness_days", DEFAULT_CLEANUP_CONFIG)
    threshold = (now or datetime.now()) - timedelta(days=staleness_days)

    try:
        worktrees = scanner(ctx.worktree_base or get_worktree_base_dir())
        if not worktrees:
            return CheckResult(
                item=item,
                status="ok",
                summary=f"SpecFlow cleanup: {item.name}: no specflow worktrees found",
                details={"cleaned": 0, "total": 0},
            )

        items = bb.list_work_items(all_statuses=True)
        cleaned = 0
        failures = 0

        for wt in worktrees:
            latest = last_activity(items, wt.feature_id)
            if latest and latest > threshold:
                continue

            if ctx.git.remove_worktree(wt.project_path, wt.path):
                cleaned += 1
                bb.append_event(
                    f"Cleaned stale SpecFlow worktree: {wt.path} (feature: {wt.feature_id})",
                    metadata={"worktreePath": str(wt.path), "featureId": wt.feature_id},
                )
            else:
                failures += 1
                logger.warning("Could not remove stale worktree %s", wt.path)
    except Exception as e:
        logger.exception("SpecFlow cleanup check %s failed", item.name)
        return CheckResult(
            item=item,
            status="error",
            summary=f"SpecFlow cleanup: {item.name}: error: {e}",
            details={"error": str(e)},
        )

    if failures:
        return CheckResult(
            item=item,
            status="alert",
            summary=f"SpecFlow cleanup: {item.name}: cleaned {cleaned}, {failures} failure(s)",
            details={"cleaned": cleaned, "failures": failures, "total": len(worktrees)},
        )

    return CheckResult(
        item=item,
        status="ok",
        summary=f"SpecFlow cleanup: {item.name}: cleaned {cleaned} of {len(worktrees)} worktree(s)",
        details={"cleaned": cleaned, "total": len(worktrees)},
    )


# =============================================================================
# Runner
# =============================================================================

EVALUATORS: dict[str, Callable[[ChecklistItem, HeartbeatContext], CheckResult]] = {
    "agent_dispatch": evaluate_agent_dispatch,
    "specflow_cleanup": evaluate_specflow_cleanup,
}


def run_checks(ctx: HeartbeatContext, items: list[ChecklistItem]) -> list[CheckResult]:
    """Evaluate every enabled checklist item in order."""
    results = []
    for item in items:
        if not item.enabled:
            logger.debug("Check %s disabled, skipping", item.name)
            continue

        evaluator = EVALUATORS.get(item.type)
        if evaluator is None:
            results.append(CheckResult(
                item=item,
                status="error",
                summary=f"{item.name}: unknown check type {item.type!r}",
                details={"error": f"No evaluator for type {item.type!r}"},
            ))
            continue

        result = evaluator(item, ctx)
        logger.info("Check %s: %s (%s)", item.name, result.status, result.summary)
        if ctx.blackboard is not None:
            ctx.blackboard.append_event(
                result.summary,
                actor_id="heartbeat",
                metadata={"check": item.name, "status": result.status},
                event_type="check",
            )
        results.append(result)
    return results
