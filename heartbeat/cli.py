"""Heartbeat CLI: dispatch work, queue pipeline features, inspect the blackboard."""

import argparse
import json
import sqlite3
import sys
from pathlib import Path
from typing import Any

from . import __version__
from .checks import ChecklistItem, run_checks
from .config import (
    DEFAULT_PRIORITY,
    PRIORITIES,
    TERMINAL_STATUSES,
    get_checks,
    get_dispatch_config,
    get_dispatch_lock_path,
    setup_logging,
)
from .context import HeartbeatContext
from .dispatch_worker import run_worker
from .lock_utils import locked_or_skip
from .scheduler import Dispatcher, DispatchOptions, DispatchResult
from .specflow_cli import find_feature_dir
from .specflow_types import (
    PHASE_EXPECTED_ARTIFACTS,
    SPECFLOW_SOURCE,
    PipelinePhaseState,
    feature_lineage,
    phase_item_id,
)


def _fmt_table(rows: list[list[str]], headers: list[str]) -> str:
    """Format rows as a simple aligned table."""
    all_rows = [headers] + rows
    widths = [max(len(r[i]) for r in all_rows) for i in range(len(headers))]
    lines = ["  ".join(h.ljust(w) for h, w in zip(headers, widths))]
    lines.append("  ".join("-" * w for w in widths))
    for row in rows:
        lines.append("  ".join(c.ljust(w) for c, w in zip(row, widths)))
    return "\n".join(lines)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _fail(message: str) -> None:
    print(f"Error: {message}", file=sys.stderr)
    sys.exit(1)


def _parse_metadata(raw: str | None) -> dict[str, Any] | None:
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except ValueError as e:
        _fail(f"--metadata is not valid JSON: {e}")
    if not isinstance(value, dict):
        _fail("--metadata must be a JSON object")
    return value


def _context(args: argparse.Namespace) -> HeartbeatContext:
    """Open the blackboard named by --db (or the default) and build the context."""
    try:
        return HeartbeatContext.from_config(args.db)
    except (sqlite3.Error, OSError) as e:
        _fail(f"cannot open blackboard: {e}")


# ---------------------------------------------------------------------------
# dispatch
# ---------------------------------------------------------------------------

def _print_dry_run(result: DispatchResult) -> None:
    print("heartbeat dispatch --dry-run")

    if not result.dispatched and not result.skipped:
        print("  No available work items.")
        return

    for d in result.dispatched:
        print(f"  → {d.item_id}: WOULD DISPATCH to {d.project_id}")
        print(f'    "{d.title}"')

    for s in result.skipped:
        print(f"  ─ {s.item_id or '*'}: SKIP ({s.reason})")

    parts = []
    if result.dispatched:
        parts.append(f"{len(result.dispatched)} would dispatch")
    if result.skipped:
        parts.append(f"{len(result.skipped)} skipped")
    print()
    print(", ".join(parts))


def _print_result(result: DispatchResult) -> None:
    print(f"heartbeat dispatch: {result.timestamp}")

    if not (result.dispatched or result.skipped or result.errors):
        print("  No available work items.")
        return

    for d in result.dispatched:
        if d.completed:
            duration = f" ({d.duration_ms // 1000}s)" if d.duration_ms > 0 else ""
            print(f"  ✓ {d.item_id}: completed{duration}")
        else:
            print(f"  → {d.item_id}: launched (session {d.session_id})")
        print(f'    "{d.title}" in {d.project_id}')

    for e in result.errors:
        print(f"  ✗ {e.item_id}: error: {e.error}")

    for s in result.skipped:
        print(f"  ─ {s.item_id or '*'}: skipped ({s.reason})")

    parts = []
    if result.dispatched:
        parts.append(f"{len(result.dispatched)} dispatched")
    if result.errors:
        parts.append(f"{len(result.errors)} errors")
    if result.skipped:
        parts.append(f"{len(result.skipped)} skipped")
    print()
    print(", ".join(parts))


def cmd_dispatch(args: argparse.Namespace) -> None:
    """Dispatch available work items to agent sessions."""
    options = DispatchOptions(
        max_concurrent=args.max_concurrent,
        max_items=args.max_items,
        timeout=args.timeout,
        project=args.project,
        priority=args.priority,
        dry_run=args.dry_run,
        fire_and_forget=args.fire_and_forget,
    )
    ctx = _context(args)

    with locked_or_skip(get_dispatch_lock_path()) as acquired:
        if not acquired:
            print("Another dispatch run is in progress, exiting")
            return
        result = Dispatcher(ctx).dispatch(options)

    if args.json:
        _print_json(result.to_dict())
    elif args.dry_run:
        _print_dry_run(result)
    else:
        _print_result(result)


def cmd_dispatch_worker(args: argparse.Namespace) -> None:
    """[internal] Run one item claimed by a fire-and-forget dispatch."""
    ctx = _context(args)
    sys.exit(run_worker(ctx, args.session_id, args.item_id, args.timeout_ms))


# ---------------------------------------------------------------------------
# specflow-queue
# ---------------------------------------------------------------------------

def detect_start_phase(project_path: str | Path, feature_id: str) -> tuple[str, list[str]]:
    """Pick the first phase whose artifact is not yet on disk.

    Returns:
        (phase, artifacts already present)
    """
    feature_dir = find_feature_dir(Path(project_path) / ".specify" / "specs", feature_id)
    if feature_dir is None:
        return "specify", []

    found = [name for name in PHASE_EXPECTED_ARTIFACTS.values() if (feature_dir / name).exists()]
    for phase, artifact in PHASE_EXPECTED_ARTIFACTS.items():
        if artifact not in found:
            return phase, found
    return "implement", found


def cmd_specflow_queue(args: argparse.Namespace) -> None:
    """Queue a feature for the pipeline, starting at the first unfinished phase."""
    ctx = _context(args)
    bb = ctx.blackboard

    project = bb.get_project(args.project)
    if not project:
        _fail(f'project "{args.project}" not found on blackboard')

    if not (project.get("metadata") or {}).get("specflow_enabled"):
        _fail(
            f'project "{args.project}" does not have specflow_enabled in metadata.\n'
            f"Set it with: heartbeat project add {args.project} --metadata '{{\"specflow_enabled\": true}}'"
        )

    existing = feature_lineage(bb.list_work_items(project=args.project, all_statuses=True), args.feature)
    if any(item["status"] not in TERMINAL_STATUSES for item in existing):
        _fail(
            f'an active SpecFlow work item already exists for feature "{args.feature}" '
            f'in project "{args.project}"'
        )

    if project.get("local_path"):
        phase, found = detect_start_phase(project["local_path"], args.feature)
    else:
        phase, found = "specify", []

    state = PipelinePhaseState(feature_id=args.feature, phase=phase, project_id=args.project)
    item_id = phase_item_id(args.feature, phase)
    suffix = f" (existing: {', '.join(found)})" if found else " (batch mode)"

    try:
        bb.create_work_item(
            item_id=item_id,
            title=f"SpecFlow {phase}: {args.feature}",
            description=f'SpecFlow feature "{args.feature}": starting with {phase} phase{suffix}',
            project=args.project,
            source=SPECFLOW_SOURCE,
            source_ref=args.feature,
            priority=args.priority,
            metadata=state.to_metadata(),
        )
    except ValueError as e:
        _fail(f"creating work item: {e}")

    bb.append_event(
        f"Queued SpecFlow feature {args.feature} for dispatch ({phase} phase)",
        target_id=item_id,
        metadata={
            "featureId": args.feature,
            "projectId": args.project,
            "phase": phase,
            "existingArtifacts": found,
        },
    )

    if args.json:
        _print_json({"itemId": item_id, "feature": args.feature, "phase": phase, "existingArtifacts": found})
        return

    if found:
        print(f"Existing artifacts found: {', '.join(found)}")
    print(f"Queued: {args.feature} → {phase} phase (item: {item_id})")
    print("The next dispatch cycle will pick it up.")


# ---------------------------------------------------------------------------
# check
# ---------------------------------------------------------------------------

def cmd_check(args: argparse.Namespace) -> None:
    """Evaluate the checklist from config.yaml."""
    ctx = _context(args)
    items = [ChecklistItem.from_dict(c) for c in get_checks()]
    if args.name:
        items = [i for i in items if i.name == args.name]

    results = run_checks(ctx, items)

    if args.json:
        _print_json([
            {"name": r.item.name, "type": r.item.type, "status": r.status,
             "summary": r.summary, "details": r.details}
            for r in results
        ])
        return

    if not results:
        print("No enabled checks.")
        return

    rows = [[r.item.name, r.status.upper(), r.summary] for r in results]
    print(_fmt_table(rows, ["CHECK", "STATUS", "SUMMARY"]))


# ---------------------------------------------------------------------------
# project / work / events
# ---------------------------------------------------------------------------

def cmd_project_add(args: argparse.Namespace) -> None:
    ctx = _context(args)
    project = ctx.blackboard.register_project(
        args.id,
        name=args.name,
        local_path=args.path,
        metadata=_parse_metadata(args.metadata),
    )
    if args.json:
        _print_json(project)
    else:
        print(f"Registered project {project['project_id']} ({project.get('local_path') or 'no local path'})")


def cmd_project_list(args: argparse.Namespace) -> None:
    ctx = _context(args)
    projects = ctx.blackboard.list_projects()
    if args.json:
        _print_json(projects)
        return
    if not projects:
        print("No projects registered.")
        return
    rows = [[p["project_id"], p.get("name") or "", p.get("local_path") or ""] for p in projects]
    print(_fmt_table(rows, ["ID", "NAME", "PATH"]))


def cmd_work_add(args: argparse.Namespace) -> None:
    ctx = _context(args)
    try:
        item = ctx.blackboard.create_work_item(
            item_id=args.id,
            title=args.title,
            description=args.description,
            project=args.project,
            source=args.source,
            priority=args.priority,
            metadata=_parse_metadata(args.metadata),
        )
    except ValueError as e:
        _fail(str(e))
    if args.json:
        _print_json(item)
    else:
        print(f"Created work item {item['item_id']} ({item['priority']})")


def _print_items(items: list[dict[str, Any]], as_json: bool) -> None:
    if as_json:
        _print_json(items)
        return
    if not items:
        print("No work items found.")
        return
    rows = [
        [
            i["item_id"],
            i["status"],
            i["priority"],
            i.get("project_id") or "",
            (i.get("title") or "")[:50],
            i.get("claimed_by") or "",
        ]
        for i in items
    ]
    print(_fmt_table(rows, ["ID", "STATUS", "PRI", "PROJECT", "TITLE", "CLAIMED_BY"]))
    print(f"\n{len(items)} item(s)")


def cmd_work_list(args: argparse.Namespace) -> None:
    ctx = _context(args)
    items = ctx.blackboard.list_work_items(
        status=args.status,
        project=args.project,
        priority=args.priority,
        all_statuses=args.all,
    )
    _print_items(items, args.json)


def cmd_work_lineage(args: argparse.Namespace) -> None:
    """Show every pipeline item created for a feature, oldest first."""
    ctx = _context(args)
    items = feature_lineage(ctx.blackboard.list_work_items(all_statuses=True), args.feature)
    _print_items(items, args.json)


def cmd_work_fail(args: argparse.Namespace) -> None:
    """Mark an item terminally failed so it is never dispatched again."""
    ctx = _context(args)
    if not ctx.blackboard.fail_work_item(args.id):
        _fail(f"Work item not found: {args.id}")
    ctx.blackboard.append_event(f"Marked {args.id} failed from the command line", target_id=args.id)
    print(f"Marked {args.id} failed")


def cmd_events(args: argparse.Namespace) -> None:
    ctx = _context(args)
    events = ctx.blackboard.list_events(limit=args.limit, target_id=args.target)
    if args.json:
        _print_json(events)
        return
    if not events:
        print("No events.")
        return
    for e in events:
        target = f" [{e['target_id']}]" if e.get("target_id") else ""
        print(f"{e['timestamp']}{target} {e['summary']}")


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    defaults = get_dispatch_config()

    parser = argparse.ArgumentParser(
        prog="heartbeat",
        description="Heartbeat work dispatch and SpecFlow pipeline CLI",
    )
    parser.add_argument(
        "--version", "-V",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument("--db", help="Blackboard database path (default: $HEARTBEAT_DB or ~/.heartbeat/blackboard.db)")
    parser.add_argument("--json", action="store_true", help="Print machine-readable JSON")
    parser.add_argument("--debug", action="store_true", help="Log at DEBUG level to ~/.heartbeat/logs/")
    sub = parser.add_subparsers(dest="command")

    # dispatch
    p_dispatch = sub.add_parser("dispatch", help="Dispatch available work items to agent sessions")
    p_dispatch.add_argument("--max-concurrent", type=int, default=defaults["max_concurrent"],
                            help="Max concurrent agent sessions")
    p_dispatch.add_argument("--max-items", type=int, default=defaults["max_items"],
                            help="Max items to process per run")
    p_dispatch.add_argument("--timeout", type=int, default=defaults["timeout_minutes"],
                            help="Timeout per work item in minutes")
    p_dispatch.add_argument("--priority", default=defaults["priority"], help="Filter by priority (e.g. P1 or P1,P2)")
    p_dispatch.add_argument("--project", help="Filter by project")
    p_dispatch.add_argument("--dry-run", action="store_true", help="Show what would be dispatched without executing")
    p_dispatch.add_argument("--fire-and-forget", action="store_true",
                            help="Spawn detached workers instead of waiting for each item")
    p_dispatch.set_defaults(func=cmd_dispatch)

    # dispatch-worker (internal)
    p_worker = sub.add_parser("dispatch-worker", help="[internal] Run a single dispatched work item")
    p_worker.add_argument("--session-id", required=True, help="Agent session ID")
    p_worker.add_argument("--item-id", required=True, help="Work item ID")
    p_worker.add_argument("--timeout-ms", type=int, default=3_600_000, help="Timeout in milliseconds")
    p_worker.set_defaults(func=cmd_dispatch_worker)

    # specflow-queue
    p_queue = sub.add_parser("specflow-queue", help="Queue a SpecFlow feature for dispatch")
    p_queue.add_argument("--project", required=True, help="Project ID (must have specflow_enabled)")
    p_queue.add_argument("--feature", required=True, help="SpecFlow feature ID (e.g. F-019)")
    p_queue.add_argument("--priority", default=DEFAULT_PRIORITY, choices=PRIORITIES, help="Priority level")
    p_queue.set_defaults(func=cmd_specflow_queue)

    # check
    p_check = sub.add_parser("check", help="Evaluate checklist items from config.yaml")
    p_check.add_argument("--name", help="Only run the check with this name")
    p_check.set_defaults(func=cmd_check)

    # project add / list
    p_project = sub.add_parser("project", help="Manage projects")
    project_sub = p_project.add_subparsers(dest="project_command")
    p_padd = project_sub.add_parser("add", help="Register or update a project")
    p_padd.add_argument("id", help="Project ID")
    p_padd.add_argument("--name", help="Display name")
    p_padd.add_argument("--path", help="Local repository path")
    p_padd.add_argument("--metadata", help="JSON object, e.g. '{\"specflow_enabled\": true}'")
    p_padd.set_defaults(func=cmd_project_add)
    p_plist = project_sub.add_parser("list", help="List projects")
    p_plist.set_defaults(func=cmd_project_list)

    # work add / list / lineage / fail
    p_work = sub.add_parser("work", help="Manage work items")
    work_sub = p_work.add_subparsers(dest="work_command")
    p_wadd = work_sub.add_parser("add", help="Create a work item")
    p_wadd.add_argument("id", help="Work item ID")
    p_wadd.add_argument("title", help="Title")
    p_wadd.add_argument("--description", help="Description passed to the agent")
    p_wadd.add_argument("--project", help="Project ID")
    p_wadd.add_argument("--source", help="Origin tag")
    p_wadd.add_argument("--priority", default=DEFAULT_PRIORITY, choices=PRIORITIES, help="Priority level")
    p_wadd.add_argument("--metadata", help="JSON object")
    p_wadd.set_defaults(func=cmd_work_add)
    p_wlist = work_sub.add_parser("list", help="List work items")
    p_wlist.add_argument("--status", default="available", help="Status to list")
    p_wlist.add_argument("--project", help="Filter by project")
    p_wlist.add_argument("--priority", help="Filter by priority (e.g. P1 or P1,P2)")
    p_wlist.add_argument("--all", action="store_true", help="Include every status")
    p_wlist.set_defaults(func=cmd_work_list)
    p_wlin = work_sub.add_parser("lineage", help="Show the pipeline chain for a feature")
    p_wlin.add_argument("feature", help="Feature ID")
    p_wlin.set_defaults(func=cmd_work_lineage)
    p_wfail = work_sub.add_parser("fail", help="Mark a work item terminally failed")
    p_wfail.add_argument("id", help="Work item ID")
    p_wfail.set_defaults(func=cmd_work_fail)

    # events
    p_events = sub.add_parser("events", help="Show recent events")
    p_events.add_argument("--limit", "-n", type=int, default=20, help="Number of events")
    p_events.add_argument("--target", help="Only events for this work item")
    p_events.set_defaults(func=cmd_events)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        sys.exit(0)

    setup_logging(debug=args.debug)
    args.func(args)


if __name__ == "__main__":
    main()
