"""SQLite blackboard for heartbeat coordination state.

The blackboard is the shared store every heartbeat process reads and
writes: registered projects, dispatchable work items, agent sessions (the
concurrency census), and an append-only event log. Several processes may
open the same file at once (a scheduled dispatch, a detached worker, the
periodic checker), so connections use WAL mode and claims are a single
conditional UPDATE.
"""

import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Generator

from .config import (
    BUSY_AGENT_STATUSES,
    DEFAULT_PRIORITY,
    HEARTBEAT_AGENT_NAME,
    PRIORITIES,
    get_database_path,
)


# Schema version for migrations
SCHEMA_VERSION = 1

_PRIORITY_ORDER = "CASE priority WHEN 'P0' THEN 0 WHEN 'P1' THEN 1 WHEN 'P2' THEN 2 ELSE 3 END"


@contextmanager
def get_connection(db_path: Path | str) -> Generator[sqlite3.Connection, None, None]:
    """Get a database connection with proper settings.

    Configures:
    - WAL mode for concurrent readers with a serialized writer
    - Foreign keys enforcement
    - Row factory for dict-like access

    Args:
        db_path: Path to the SQLite file

    Yields:
        SQLite connection with transaction management
    """
    conn = sqlite3.connect(str(db_path), timeout=30.0)
    conn.row_factory = sqlite3.Row

    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("PRAGMA synchronous=NORMAL")

        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def _now() -> str:
    return datetime.now().isoformat()


def _encode(metadata: dict[str, Any] | str | None) -> str | None:
    if metadata is None:
        return None
    if isinstance(metadata, str):
        return metadata
    return json.dumps(metadata)


def _row_to_dict(row: sqlite3.Row | None) -> dict[str, Any] | None:
    """Convert a row to a dict, decoding the JSON ``metadata`` column."""
    if row is None:
        return None
    result = dict(row)
    raw = result.get("metadata")
    if raw:
        try:
            result["metadata"] = json.loads(raw)
        except (TypeError, ValueError):
            result["metadata"] = None
    else:
        result["metadata"] = None
    return result


class Blackboard:
    """Store client over a single SQLite file.

    Args:
        db_path: Database file. Defaults to config.get_database_path().
    """

    def __init__(self, db_path: Path | str | None = None):
        self.db_path = Path(db_path) if db_path else get_database_path()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.init_schema()

    @contextmanager
    def connect(self) -> Generator[sqlite3.Connection, None, None]:
        with get_connection(self.db_path) as conn:
            yield conn

    def init_schema(self) -> None:
        """Initialize the database schema.

        Creates all required tables if they don't exist.
        Safe to call multiple times.
        """
        with self.connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS projects (
                    project_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    local_path TEXT,
                    metadata TEXT,
                    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
                )
            """)

            # Work items - project_id is a soft reference so items can be
            # created before their project is registered
            conn.execute("""
                CREATE TABLE IF NOT EXISTS work_items (
                    item_id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    description TEXT,
                    project_id TEXT,
                    source TEXT,
                    source_ref TEXT,
                    priority TEXT DEFAULT 'P2',
                    status TEXT NOT NULL DEFAULT 'available',
                    claimed_by TEXT,
                    claimed_at DATETIME,
                    completed_at DATETIME,
                    metadata TEXT,
                    created_at DATETIME NOT NULL,
                    updated_at DATETIME NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_work_items_status ON work_items(status)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_work_items_project ON work_items(project_id)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS agents (
                    session_id TEXT PRIMARY KEY,
                    agent_name TEXT NOT NULL,
                    project TEXT,
                    status TEXT NOT NULL DEFAULT 'active',
                    work TEXT,
                    metadata TEXT,
                    started_at DATETIME NOT NULL,
                    last_seen_at DATETIME NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_agents_status ON agents(status)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp DATETIME NOT NULL,
                    event_type TEXT NOT NULL DEFAULT 'info',
                    actor_id TEXT,
                    target_id TEXT,
                    summary TEXT NOT NULL,
                    metadata TEXT
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_events_target ON events(target_id)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_info (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
            """)
            conn.execute(
                "INSERT OR REPLACE INTO schema_info (key, value) VALUES ('version', ?)",
                (str(SCHEMA_VERSION),),
            )

    # =========================================================================
    # Projects
    # =========================================================================

    def register_project(
        self,
        project_id: str,
        name: str | None = None,
        local_path: Path | str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Create or update a project.

        Args:
            project_id: Unique project identifier
            name: Display name (defaults to project_id)
            local_path: Filesystem path of the project's repository
            metadata: Free-form project settings (e.g. specflow_enabled)

        Returns:
            Project record as dictionary
        """
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO projects (project_id, name, local_path, metadata)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(project_id) DO UPDATE SET
                    name = excluded.name,
                    local_path = excluded.local_path,
                    metadata = excluded.metadata
                """,
                (
                    project_id,
                    name or project_id,
                    str(local_path) if local_path else None,
                    _encode(metadata),
                ),
            )
        return self.get_project(project_id)

    def get_project(self, project_id: str) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM projects WHERE project_id = ?", (project_id,)
            ).fetchone()
            return _row_to_dict(row)

    def list_projects(self) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute("SELECT * FROM projects ORDER BY project_id").fetchall()
            return [_row_to_dict(r) for r in rows]

    # =========================================================================
    # Work items
    # =========================================================================

    def create_work_item(
        self,
        item_id: str,
        title: str,
        description: str | None = None,
        project: str | None = None,
        source: str | None = None,
        source_ref: str | None = None,
        priority: str = DEFAULT_PRIORITY,
        metadata: dict[str, Any] | str | None = None,
    ) -> dict[str, Any]:
        """Create a new available work item.

        Args:
            item_id: Unique, often deterministic, identifier
            title: Human-readable title
            description: Longer description passed to the agent
            project: Project ID the item belongs to
            source: Origin tag (specflow, github, ...)
            source_ref: Deduplication key at the source
            priority: P0..P3
            metadata: Structured payload stored as JSON

        Returns:
            Created work item as dictionary

        Raises:
            ValueError: If the priority is unknown or the ID already exists
        """
        if priority not in PRIORITIES:
            raise ValueError(f"Unknown priority {priority!r} (expected one of {PRIORITIES})")

        now = _now()
        try:
            with self.connect() as conn:
                conn.execute(
                    """
                    INSERT INTO work_items (
                        item_id, title, description, project_id, source, source_ref,
                        priority, status, metadata, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, 'available', ?, ?, ?)
                    """,
                    (
                        item_id, title, description, project, source, source_ref,
                        priority, _encode(metadata), now, now,
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Work item {item_id!r} already exists") from e

        return self.get_work_item(item_id)

    def get_work_item(self, item_id: str) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM work_items WHERE item_id = ?", (item_id,)
            ).fetchone()
            return _row_to_dict(row)

    def list_work_items(
        self,
        status: str | None = "available",
        project: str | None = None,
        priority: str | None = None,
        all_statuses: bool = False,
    ) -> list[dict[str, Any]]:
        """List work items with optional filters.

        Args:
            status: Status to match (ignored when all_statuses is set)
            project: Only items for this project
            priority: Single priority or comma list, e.g. "P1,P2"
            all_statuses: Include items in every status

        Returns:
            Work items sorted by priority (P0 first), then creation order
        """
        conditions = []
        params: list[Any] = []

        if status and not all_statuses:
            conditions.append("status = ?")
            params.append(status)

        if project:
            conditions.append("project_id = ?")
            params.append(project)

        if priority:
            wanted = [p.strip() for p in priority.split(",") if p.strip()]
            if wanted:
                conditions.append(f"priority IN ({', '.join('?' for _ in wanted)})")
                params.extend(wanted)

        where_clause = " AND ".join(conditions) if conditions else "1=1"

        with self.connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM work_items
                WHERE {where_clause}
                ORDER BY {_PRIORITY_ORDER}, created_at ASC, rowid ASC
                """,
                params,
            ).fetchall()
            return [_row_to_dict(r) for r in rows]

    def claim_work_item(self, item_id: str, session_id: str) -> bool:
        """Atomically claim an available work item.

        Returns:
            True if this session now holds the claim, False if the item was
            missing or not available
        """
        now = _now()
        with self.connect() as conn:
            cursor = conn.execute(
                """
                UPDATE work_items
                SET status = 'claimed',
                    claimed_by = ?,
                    claimed_at = ?,
                    updated_at = ?
                WHERE item_id = ? AND status = 'available'
                """,
                (session_id, now, now, item_id),
            )
            return cursor.rowcount > 0

    def complete_work_item(self, item_id: str, session_id: str) -> bool:
        """Mark a claimed item completed. Completing twice is a no-op success."""
        now = _now()
        with self.connect() as conn:
            cursor = conn.execute(
                """
                UPDATE work_items
                SET status = 'completed',
                    completed_at = COALESCE(completed_at, ?),
                    updated_at = ?
                WHERE item_id = ?
                  AND ((status = 'claimed' AND claimed_by = ?) OR status = 'completed')
                """,
                (now, now, item_id, session_id),
            )
            return cursor.rowcount > 0

    def release_work_item(self, item_id: str, session_id: str) -> bool:
        """Return a claimed item to ``available``.

        Only the holding session can release. Releasing an item that is not
        claimed by this session changes nothing and returns False.
        """
        with self.connect() as conn:
            cursor = conn.execute(
                """
                UPDATE work_items
                SET status = 'available',
                    claimed_by = NULL,
                    claimed_at = NULL,
                    updated_at = ?
                WHERE item_id = ? AND status = 'claimed' AND claimed_by = ?
                """,
                (_now(), item_id, session_id),
            )
            return cursor.rowcount > 0

    def fail_work_item(self, item_id: str) -> bool:
        """Mark an item terminally failed."""
        with self.connect() as conn:
            cursor = conn.execute(
                """
                UPDATE work_items
                SET status = 'failed', claimed_by = NULL, updated_at = ?
                WHERE item_id = ?
                """,
                (_now(), item_id),
            )
            return cursor.rowcount > 0

    # =========================================================================
    # Agents
    # =========================================================================

    def register_agent(
        self,
        name: str,
        project: str | None = None,
        work: str | None = None,
    ) -> dict[str, Any]:
        """Register an active agent session.

        Args:
            name: Agent name (not unique)
            project: Project the agent works in
            work: Work item ID the agent is working on

        Returns:
            Agent record including the generated session_id
        """
        session_id = str(uuid.uuid4())
        now = _now()
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO agents (
                    session_id, agent_name, project, status, work, started_at, last_seen_at
                )
                VALUES (?, ?, ?, 'active', ?, ?, ?)
                """,
                (session_id, name, project, work, now, now),
            )
        return self.get_agent(session_id)

    def get_agent(self, session_id: str) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM agents WHERE session_id = ?", (session_id,)
            ).fetchone()
            return _row_to_dict(row)

    def update_agent_metadata(self, session_id: str, metadata: dict[str, Any]) -> None:
        with self.connect() as conn:
            conn.execute(
                "UPDATE agents SET metadata = ?, last_seen_at = ? WHERE session_id = ?",
                (_encode(metadata), _now(), session_id),
            )

    def deregister_agent(self, session_id: str) -> bool:
        """Mark an agent session completed, freeing its concurrency slot."""
        with self.connect() as conn:
            cursor = conn.execute(
                """
                UPDATE agents
                SET status = 'completed', last_seen_at = ?
                WHERE session_id = ?
                """,
                (_now(), session_id),
            )
            return cursor.rowcount > 0

    def count_active_agents(self) -> int:
        """Count agent sessions currently occupying a dispatch slot.

        The heartbeat checker's own session is excluded.
        """
        placeholders = ", ".join("?" for _ in BUSY_AGENT_STATUSES)
        with self.connect() as conn:
            row = conn.execute(
                f"""
                SELECT COUNT(*) AS count FROM agents
                WHERE status IN ({placeholders}) AND agent_name != ?
                """,
                [*BUSY_AGENT_STATUSES, HEARTBEAT_AGENT_NAME],
            ).fetchone()
            return row["count"]

    # =========================================================================
    # Events
    # =========================================================================

    def append_event(
        self,
        summary: str,
        actor_id: str | None = None,
        target_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        event_type: str = "info",
    ) -> int:
        """Append an entry to the event log.

        Returns:
            The new event's ID
        """
        with self.connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO events (timestamp, event_type, actor_id, target_id, summary, metadata)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (_now(), event_type, actor_id, target_id, summary, _encode(metadata)),
            )
            return cursor.lastrowid

    def list_events(self, limit: int = 50, target_id: str | None = None) -> list[dict[str, Any]]:
        """List events, newest first."""
        with self.connect() as conn:
            if target_id:
                rows = conn.execute(
                    "SELECT * FROM events WHERE target_id = ? ORDER BY id DESC LIMIT ?",
                    (target_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)
                ).fetchall()
            return [_row_to_dict(r) for r in rows]
