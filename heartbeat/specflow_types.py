"""Types and helpers for the SpecFlow feature pipeline.

A feature moves through ``specify -> plan -> tasks -> implement -> complete``
as a chain of work items. Each item carries a PipelinePhaseState in its
metadata; advancing or retrying creates a new item derived from the current
one, so the chain for a feature is reconstructed by querying items that
share its feature ID.
"""

import json
from dataclasses import asdict, dataclass, replace
from datetime import datetime
from typing import Any, Literal

Phase = Literal["specify", "plan", "tasks", "implement", "complete"]

PHASES: list[Phase] = ["specify", "plan", "tasks", "implement", "complete"]

# Phase -> next phase (None = pipeline done)
PHASE_TRANSITIONS: dict[Phase, Phase | None] = {
    "specify": "plan",
    "plan": "tasks",
    "tasks": "implement",
    "implement": "complete",
    "complete": None,
}

# Phases gated by a quality evaluation, and the rubric used
PHASE_RUBRICS: dict[Phase, str] = {
    "specify": "spec-quality",
    "plan": "plan-quality",
}

# Artifact scored by the quality gate
PHASE_ARTIFACTS: dict[Phase, str] = {
    "specify": "spec.md",
    "plan": "plan.md",
}

# Artifact that must exist after the phase tool reports success
PHASE_EXPECTED_ARTIFACTS: dict[Phase, str] = {
    "specify": "spec.md",
    "plan": "plan.md",
    "tasks": "tasks.md",
}

SPECFLOW_SOURCE = "specflow"

# A failed quality gate is retried at most this many times
MAX_RETRIES = 1


@dataclass(frozen=True)
class PipelinePhaseState:
    """Metadata payload of a pipeline work item."""
    feature_id: str
    phase: Phase
    project_id: str
    worktree_path: str | None = None
    main_branch: str | None = None
    feature_branch: str | None = None
    retry_count: int = 0
    eval_feedback: str | None = None
    github_issue_url: str | None = None
    github_issue_number: int | None = None
    github_repo: str | None = None

    def to_metadata(self) -> dict[str, Any]:
        """Serialize with the canonical ``specflow_*`` keys, dropping empty fields."""
        data = asdict(self)
        result: dict[str, Any] = {
            "specflow_feature_id": data.pop("feature_id"),
            "specflow_phase": data.pop("phase"),
            "specflow_project_id": data.pop("project_id"),
        }
        for key, value in data.items():
            if value is not None:
                result[key] = value
        return result


def parse_specflow_meta(metadata: dict[str, Any] | str | None) -> PipelinePhaseState | None:
    """Parse pipeline state from work item metadata.

    Accepts both canonical (``specflow_phase``, ``specflow_feature_id``,
    ``specflow_project_id``) and shorthand (``phase``, ``feature_id``,
    ``project_id``) keys, so items created outside the evaluator pipeline
    are still routed correctly.

    Args:
        metadata: Decoded metadata dict or its JSON text

    Returns:
        PipelinePhaseState, or None if this is not a pipeline item
    """
    if not metadata:
        return None

    if isinstance(metadata, str):
        try:
            metadata = json.loads(metadata)
        except ValueError:
            return None
    if not isinstance(metadata, dict):
        return None

    phase = metadata.get("specflow_phase") or metadata.get("phase")
    feature_id = metadata.get("specflow_feature_id") or metadata.get("feature_id")
    project_id = metadata.get("specflow_project_id") or metadata.get("project_id")

    if not (phase and feature_id and project_id) or phase not in PHASES:
        return None

    try:
        retry_count = int(metadata.get("retry_count") or 0)
    except (TypeError, ValueError):
        retry_count = 0

    return PipelinePhaseState(
        feature_id=str(feature_id),
        phase=phase,
        project_id=str(project_id),
        worktree_path=metadata.get("worktree_path"),
        main_branch=metadata.get("main_branch"),
        feature_branch=metadata.get("feature_branch"),
        retry_count=retry_count,
        eval_feedback=metadata.get("eval_feedback"),
        github_issue_url=metadata.get("github_issue_url"),
        github_issue_number=metadata.get("github_issue_number"),
        github_repo=metadata.get("github_repo"),
    )


def next_phase(current: Phase) -> Phase | None:
    """Get the next phase in the pipeline, or None after ``complete``."""
    return PHASE_TRANSITIONS[current]


def feature_branch_name(feature_id: str) -> str:
    """Branch a feature's worktree is checked out on."""
    return f"specflow-{feature_id.lower()}"


def phase_item_id(feature_id: str, phase: Phase) -> str:
    return f"specflow-{feature_id}-{phase}"


def retry_item_id(feature_id: str, phase: Phase, retry_count: int) -> str:
    return f"specflow-{feature_id}-{phase}-retry{retry_count}"


def next_phase_state(
    state: PipelinePhaseState,
    phase: Phase,
    worktree_path: str,
    main_branch: str,
    feature_branch: str | None = None,
) -> PipelinePhaseState:
    """State for the item that runs ``phase`` after ``state`` succeeded."""
    return replace(
        state,
        phase=phase,
        worktree_path=worktree_path,
        main_branch=main_branch,
        feature_branch=feature_branch or state.feature_branch,
        retry_count=0,
        eval_feedback=None,
    )


def retry_phase_state(
    state: PipelinePhaseState,
    feedback: str,
    worktree_path: str,
    main_branch: str,
    feature_branch: str | None = None,
) -> PipelinePhaseState:
    """State for a retry of the same phase carrying the evaluator's feedback."""
    return replace(
        state,
        worktree_path=worktree_path,
        main_branch=main_branch,
        feature_branch=feature_branch or state.feature_branch,
        retry_count=state.retry_count + 1,
        eval_feedback=feedback,
    )


def feature_lineage(items: list[dict[str, Any]], feature_id: str) -> list[dict[str, Any]]:
    """Reconstruct a feature's pipeline chain from work items.

    Args:
        items: Work item dicts (any status)
        feature_id: Feature to match (case-insensitive)

    Returns:
        Matching items in creation order
    """
    wanted = feature_id.upper()
    chain = []
    for item in items:
        state = parse_specflow_meta(item.get("metadata"))
        if state and state.feature_id.upper() == wanted:
            chain.append(item)
    return sorted(chain, key=lambda i: i.get("created_at") or "")


def last_activity(items: list[dict[str, Any]], feature_id: str) -> datetime | None:
    """Most recent ``updated_at`` among a feature's work items, if any."""
    latest: datetime | None = None
    for item in feature_lineage(items, feature_id):
        raw = item.get("updated_at")
        if not raw:
            continue
        try:
            ts = datetime.fromisoformat(raw)
        except ValueError:
            continue
        if latest is None or ts > latest:
            latest = ts
    return latest
