"""Detached worker that runs one item claimed by a fire-and-forget dispatch.

The dispatcher registers the agent session and claims the item, then
spawns ``heartbeat dispatch-worker``. From then on the worker owns the
lifecycle: run the agent (or pipeline phase), complete or release the
item, and deregister the session on every path.
"""

import logging
import os
import time
from typing import Any

from .context import HeartbeatContext
from .launcher import LaunchOptions
from .scheduler import build_prompt
from .specflow_runner import PhaseRunner
from .specflow_types import parse_specflow_meta

logger = logging.getLogger(__name__)


def _find_claimed_item(ctx: HeartbeatContext, item_id: str) -> dict[str, Any] | None:
    item = ctx.blackboard.get_work_item(item_id)
    if item and item["status"] == "claimed":
        return item
    return None


def run_worker(ctx: HeartbeatContext, session_id: str, item_id: str, timeout_ms: int) -> int:
    """Run a claimed work item to completion.

    Args:
        ctx: Shared collaborators; ctx.blackboard must be set
        session_id: Session registered by the dispatcher
        item_id: Item claimed by that session
        timeout_ms: Agent session timeout

    Returns:
        Process exit code: 0 if the item was run, 1 if it could not be
    """
    bb = ctx.blackboard

    item = _find_claimed_item(ctx, item_id)
    if item is None:
        bb.append_event(
            f'Worker: work item "{item_id}" not found or not claimed',
            actor_id=session_id,
            target_id=item_id,
        )
        bb.deregister_agent(session_id)
        return 1

    project = bb.get_project(item["project_id"]) if item.get("project_id") else None
    if not project or not project.get("local_path"):
        bb.append_event(
            f'Worker: no local_path for project "{item.get("project_id")}"',
            actor_id=session_id,
            target_id=item_id,
        )
        bb.release_work_item(item_id, session_id)
        bb.deregister_agent(session_id)
        return 1

    bb.append_event(
        f'Worker started for "{item["title"]}" in {project["local_path"]}',
        actor_id=session_id,
        target_id=item_id,
        metadata={"itemId": item_id, "projectId": item["project_id"], "pid": os.getpid()},
    )

    start = time.monotonic()
    try:
        state = parse_specflow_meta(item.get("metadata"))
        if state:
            succeeded = PhaseRunner(ctx).run_phase(item, project, session_id)
            exit_code = 0 if succeeded else 1
            stderr = ""
        else:
            launch = ctx.launcher(LaunchOptions(
                session_id=session_id,
                prompt=build_prompt(item, session_id),
                work_dir=project["local_path"],
                timeout_ms=timeout_ms,
            ))
            exit_code = launch.exit_code
            stderr = launch.stderr or ""

        duration_ms = int((time.monotonic() - start) * 1000)
        if exit_code == 0:
            bb.complete_work_item(item_id, session_id)
            bb.append_event(
                f'Completed "{item["title"]}" (exit 0, {duration_ms // 1000}s)',
                actor_id=session_id,
                target_id=item_id,
                metadata={"itemId": item_id, "exitCode": 0, "durationMs": duration_ms},
            )
        else:
            bb.release_work_item(item_id, session_id)
            bb.append_event(
                f'Failed "{item["title"]}" (exit {exit_code}, {duration_ms // 1000}s)',
                actor_id=session_id,
                target_id=item_id,
                metadata={
                    "itemId": item_id,
                    "exitCode": exit_code,
                    "durationMs": duration_ms,
                    "stderr": stderr[:500],
                },
            )
    except Exception as e:
        logger.exception("Worker error for %s", item_id)
        bb.release_work_item(item_id, session_id)
        bb.append_event(
            f'Worker error for "{item["title"]}": {e}',
            actor_id=session_id,
            target_id=item_id,
            metadata={"itemId": item_id, "error": str(e)},
        )
    finally:
        bb.deregister_agent(session_id)

    return 0
