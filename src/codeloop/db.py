"""SQLite database for codeloop state."""

from __future__ import annotations

import contextlib
import json
import sqlite3
import uuid
from collections.abc import Iterable, Mapping, Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypedDict, cast

from codeloop.paths import DEFAULT_DB_PATH

VALID_MILESTONE_STATUSES = {"pending", "in_progress", "completed"}
VALID_TASK_STATUSES = {"pending", "in_progress", "review", "failed", "completed"}
TASK_TERMINAL_STATUSES = {"completed", "failed"}
TASK_ACTIVE_STATUSES = {"in_progress", "review"}
VALID_RUN_STATUSES = {"running", "completed", "failed"}
RUN_TERMINAL_STATUSES = {"completed", "failed"}
VALID_TRIGGER_SOURCES = {"cli", "manual", "cron"}
VALID_AGENTS = {"planner", "developer", "reviewer", "orchestrator"}
VALID_LOG_EVENTS = {"started", "prompt_sent", "response_received", "error", "completed"}
VALID_KNOWLEDGE_CATEGORIES = {"pattern", "gotcha", "decision", "preference", "file_note"}

# Allowed task status edges. Anything else is a programming error.
TASK_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"in_progress"}),
    "in_progress": frozenset({"review", "completed", "failed"}),
    "review": frozenset({"in_progress", "completed"}),
    "completed": frozenset(),
    "failed": frozenset(),
}

INJECTED_TASK_PRIORITY = 100
DEFAULT_CRON_SCHEDULE = "0 */3 * * *"


def _utcnow() -> str:
    """ISO 8601 UTC timestamp with millisecond precision (parsed by julianday())."""
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _new_id() -> str:
    return str(uuid.uuid4())


# Bump when adding migrations. 0 = legacy (pre-versioning).
SCHEMA_VERSION = 1

SCHEMA = """\
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    path TEXT NOT NULL,
    overview_path TEXT NOT NULL,
    current_milestone_id TEXT REFERENCES milestones(id) ON DELETE SET NULL,
    use_knowledge INTEGER NOT NULL DEFAULT 1,
    cron_enabled INTEGER NOT NULL DEFAULT 0,
    cron_schedule TEXT NOT NULL DEFAULT '0 */3 * * *',
    git_author_name TEXT,
    git_author_email TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS milestones (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    description TEXT,
    order_index INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'pending',
    archived INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    milestone_id TEXT REFERENCES milestones(id) ON DELETE SET NULL,
    title TEXT NOT NULL,
    description TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    retry_count INTEGER NOT NULL DEFAULT 0,
    priority INTEGER NOT NULL DEFAULT 0,
    is_injected INTEGER NOT NULL DEFAULT 0,
    order_index INTEGER NOT NULL DEFAULT 0,
    comments TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS runs (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    task_id TEXT REFERENCES tasks(id) ON DELETE SET NULL,
    status TEXT NOT NULL DEFAULT 'running',
    trigger_source TEXT NOT NULL DEFAULT 'cli',
    started_at TEXT NOT NULL,
    finished_at TEXT,
    git_commit_sha TEXT,
    summary TEXT
);

CREATE TABLE IF NOT EXISTS logs (
    id TEXT PRIMARY KEY,
    run_id TEXT NOT NULL REFERENCES runs(id) ON DELETE CASCADE,
    agent TEXT NOT NULL,
    event TEXT NOT NULL,
    prompt TEXT,
    response TEXT,
    metadata TEXT,
    timestamp TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS knowledge (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    category TEXT NOT NULL DEFAULT 'pattern',
    tags TEXT NOT NULL DEFAULT '[]',
    file_path TEXT,
    content TEXT NOT NULL,
    importance INTEGER NOT NULL DEFAULT 5,
    source_task_id TEXT REFERENCES tasks(id) ON DELETE SET NULL,
    created_at TEXT NOT NULL,
    last_used_at TEXT NOT NULL
);
"""


# -- Row TypedDicts matching table schemas --


class ProjectRow(TypedDict):
    id: str
    name: str
    path: str
    overview_path: str
    current_milestone_id: str | None
    use_knowledge: int
    # Read by the external scheduler that calls `codeloop run --trigger cron`.
    cron_enabled: int
    cron_schedule: str
    git_author_name: str | None
    git_author_email: str | None
    created_at: str
    updated_at: str


class MilestoneRow(TypedDict):
    id: str
    project_id: str
    title: str
    description: str | None
    order_index: int
    status: str
    archived: int
    created_at: str


class TaskRow(TypedDict):
    id: str
    project_id: str
    milestone_id: str | None
    title: str
    description: str
    status: str
    retry_count: int
    priority: int
    is_injected: int
    order_index: int
    comments: str | None
    created_at: str
    updated_at: str


class RunRow(TypedDict):
    id: str
    project_id: str
    task_id: str | None
    status: str
    trigger_source: str
    started_at: str
    finished_at: str | None
    git_commit_sha: str | None
    summary: str | None


class LogRow(TypedDict):
    id: str
    run_id: str
    agent: str
    event: str
    prompt: str | None
    response: str | None
    metadata: str | None
    timestamp: str


class KnowledgeRow(TypedDict):
    id: str
    project_id: str
    category: str
    tags: str
    file_path: str | None
    content: str
    importance: int
    source_task_id: str | None
    created_at: str
    last_used_at: str


class ScoredKnowledgeRow(KnowledgeRow):
    relevance_score: int


def get_connection(db_path: Path = DEFAULT_DB_PATH) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA busy_timeout=10000")

    current_version = conn.execute("PRAGMA user_version").fetchone()[0]
    if current_version < SCHEMA_VERSION:
        # Legacy tables must gain their columns before the indexes reference them.
        _migrate(conn, current_version)
        conn.executescript(SCHEMA)
        _create_indexes(conn)
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        conn.commit()
    return conn


@contextlib.contextmanager
def connect(db_path: Path = DEFAULT_DB_PATH):
    """Context manager wrapper for get_connection().

    Usage:
        with connect() as conn:
            do_stuff(conn)
    # conn.close() is guaranteed even on exceptions.
    """
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


def _table_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def _add_column_if_missing(
    conn: sqlite3.Connection, table: str, column: str, col_def: str, cols: set[str]
) -> None:
    if cols and column not in cols:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {col_def}")


def _migrate_to_v1(conn: sqlite3.Connection) -> None:
    """Pre-v1: columns added to the original tables after their first release."""
    cols = _table_columns(conn, "tasks")
    _add_column_if_missing(conn, "tasks", "priority", "INTEGER NOT NULL DEFAULT 0", cols)
    _add_column_if_missing(conn, "tasks", "is_injected", "INTEGER NOT NULL DEFAULT 0", cols)
    _add_column_if_missing(conn, "tasks", "order_index", "INTEGER NOT NULL DEFAULT 0", cols)

    cols = _table_columns(conn, "projects")
    _add_column_if_missing(conn, "projects", "use_knowledge", "INTEGER NOT NULL DEFAULT 1", cols)
    _add_column_if_missing(conn, "projects", "cron_enabled", "INTEGER NOT NULL DEFAULT 0", cols)
    _add_column_if_missing(
        conn,
        "projects",
        "cron_schedule",
        f"TEXT NOT NULL DEFAULT '{DEFAULT_CRON_SCHEDULE}'",
        cols,
    )
    _add_column_if_missing(conn, "projects", "git_author_name", "TEXT", cols)
    _add_column_if_missing(conn, "projects", "git_author_email", "TEXT", cols)

    cols = _table_columns(conn, "runs")
    _add_column_if_missing(conn, "runs", "trigger_source", "TEXT NOT NULL DEFAULT 'cli'", cols)

    cols = _table_columns(conn, "milestones")
    _add_column_if_missing(conn, "milestones", "archived", "INTEGER NOT NULL DEFAULT 0", cols)


_MIGRATIONS = [
    (1, _migrate_to_v1),
]


def _migrate(conn: sqlite3.Connection, from_version: int) -> None:
    """Run schema migrations from from_version to SCHEMA_VERSION.

    Each migration only touches tables that already exist, so it is a no-op
    on a fresh database. Commit is handled by the caller.
    """
    for version, migration_fn in _MIGRATIONS:
        if from_version < version:
            migration_fn(conn)


def _create_indexes(conn: sqlite3.Connection) -> None:
    """Create non-PK indexes for common query patterns. Idempotent."""
    conn.executescript("""
        CREATE INDEX IF NOT EXISTS idx_milestones_project ON milestones(project_id);
        CREATE INDEX IF NOT EXISTS idx_milestones_archived ON milestones(archived);
        CREATE INDEX IF NOT EXISTS idx_tasks_project ON tasks(project_id);
        CREATE INDEX IF NOT EXISTS idx_tasks_milestone ON tasks(milestone_id);
        CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
        CREATE INDEX IF NOT EXISTS idx_tasks_priority ON tasks(priority DESC);
        CREATE INDEX IF NOT EXISTS idx_tasks_order ON tasks(milestone_id, order_index);
        CREATE INDEX IF NOT EXISTS idx_runs_project ON runs(project_id);
        CREATE INDEX IF NOT EXISTS idx_runs_task ON runs(task_id);
        CREATE INDEX IF NOT EXISTS idx_logs_run ON logs(run_id);
        CREATE INDEX IF NOT EXISTS idx_knowledge_project ON knowledge(project_id);
        CREATE INDEX IF NOT EXISTS idx_knowledge_category ON knowledge(category);
        CREATE INDEX IF NOT EXISTS idx_knowledge_importance ON knowledge(importance DESC);
    """)


def _row(row: sqlite3.Row | None) -> dict[str, Any] | None:
    return dict(row) if row else None


def _require(value: str, valid: set[str], what: str) -> None:
    if value not in valid:
        raise ValueError(f"Invalid {what} '{value}'. Valid: {', '.join(sorted(valid))}")


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------

_PROJECT_UPDATABLE = {
    "name",
    "path",
    "overview_path",
    "current_milestone_id",
    "use_knowledge",
    "cron_enabled",
    "cron_schedule",
    "git_author_name",
    "git_author_email",
}


def create_project(
    conn: sqlite3.Connection,
    *,
    name: str,
    path: str,
    overview_path: str,
    use_knowledge: bool = True,
    git_author_name: str | None = None,
    git_author_email: str | None = None,
) -> ProjectRow:
    existing = get_project_by_path(conn, path)
    if existing:
        raise ValueError(f"Path '{path}' is already registered as project '{existing['name']}'")
    project_id = _new_id()
    now = _utcnow()
    conn.execute(
        "INSERT INTO projects (id, name, path, overview_path, use_knowledge, "
        "git_author_name, git_author_email, created_at, updated_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (
            project_id,
            name,
            path,
            overview_path,
            int(use_knowledge),
            git_author_name,
            git_author_email,
            now,
            now,
        ),
    )
    conn.commit()
    return cast(ProjectRow, get_project(conn, project_id))


def get_project(conn: sqlite3.Connection, id_or_name: str) -> ProjectRow | None:
    row = conn.execute(
        "SELECT * FROM projects WHERE id = ? OR name = ? ORDER BY created_at LIMIT 1",
        (id_or_name, id_or_name),
    ).fetchone()
    return cast(ProjectRow, _row(row)) if row else None


def get_project_by_path(conn: sqlite3.Connection, path: str) -> ProjectRow | None:
    row = conn.execute("SELECT * FROM projects WHERE path = ?", (path,)).fetchone()
    return cast(ProjectRow, _row(row)) if row else None


def list_projects(conn: sqlite3.Connection) -> list[ProjectRow]:
    rows = conn.execute("SELECT * FROM projects ORDER BY created_at DESC").fetchall()
    return [cast(ProjectRow, dict(row)) for row in rows]


def update_project(conn: sqlite3.Connection, project_id: str, **fields: Any) -> ProjectRow | None:
    """Update selected project columns. Unknown columns raise ``ValueError``."""
    unknown = set(fields) - _PROJECT_UPDATABLE
    if unknown:
        raise ValueError(f"Cannot update project fields: {', '.join(sorted(unknown))}")
    if not fields:
        return get_project(conn, project_id)
    assignments = ", ".join(f"{column} = ?" for column in fields)
    values: list[Any] = [
        int(v) if isinstance(v, bool) else v for v in fields.values()
    ]
    conn.execute(
        f"UPDATE projects SET {assignments}, updated_at = ? WHERE id = ?",
        (*values, _utcnow(), project_id),
    )
    conn.commit()
    return get_project(conn, project_id)


def delete_project(conn: sqlite3.Connection, project_id: str) -> bool:
    # Break the project -> milestone reference before the cascade runs.
    conn.execute("UPDATE projects SET current_milestone_id = NULL WHERE id = ?", (project_id,))
    cur = conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
    conn.commit()
    return cur.rowcount > 0


# ---------------------------------------------------------------------------
# Milestones
# ---------------------------------------------------------------------------


def create_milestone(
    conn: sqlite3.Connection,
    *,
    project_id: str,
    title: str,
    description: str | None = None,
    order_index: int | None = None,
) -> MilestoneRow:
    if order_index is None:
        max_order = conn.execute(
            "SELECT MAX(order_index) FROM milestones WHERE project_id = ?", (project_id,)
        ).fetchone()[0]
        order_index = -1 if max_order is None else max_order
        order_index += 1
    milestone_id = _new_id()
    conn.execute(
        "INSERT INTO milestones (id, project_id, title, description, order_index, created_at) "
        "VALUES (?, ?, ?, ?, ?, ?)",
        (milestone_id, project_id, title, description, order_index, _utcnow()),
    )
    conn.commit()
    return cast(MilestoneRow, get_milestone(conn, milestone_id))


def get_milestone(conn: sqlite3.Connection, milestone_id: str) -> MilestoneRow | None:
    row = conn.execute("SELECT * FROM milestones WHERE id = ?", (milestone_id,)).fetchone()
    return cast(MilestoneRow, _row(row)) if row else None


def list_milestones(
    conn: sqlite3.Connection, project_id: str, *, include_archived: bool = False
) -> list[MilestoneRow]:
    query = "SELECT * FROM milestones WHERE project_id = ?"
    if not include_archived:
        query += " AND archived = 0"
    query += " ORDER BY order_index ASC, created_at ASC"
    rows = conn.execute(query, (project_id,)).fetchall()
    return [cast(MilestoneRow, dict(row)) for row in rows]


def get_current_milestone(conn: sqlite3.Connection, project_id: str) -> MilestoneRow | None:
    row = conn.execute(
        "SELECT m.* FROM milestones m JOIN projects p ON p.current_milestone_id = m.id "
        "WHERE p.id = ?",
        (project_id,),
    ).fetchone()
    return cast(MilestoneRow, _row(row)) if row else None


def get_next_pending_milestone(
    conn: sqlite3.Connection, project_id: str, *, after_order_index: int | None = None
) -> MilestoneRow | None:
    """Return the first pending, non-archived milestone by ``order_index``."""
    query = "SELECT * FROM milestones WHERE project_id = ? AND status = 'pending' AND archived = 0"
    params: list[Any] = [project_id]
    if after_order_index is not None:
        query += " AND order_index > ?"
        params.append(after_order_index)
    query += " ORDER BY order_index ASC, created_at ASC LIMIT 1"
    row = conn.execute(query, params).fetchone()
    return cast(MilestoneRow, _row(row)) if row else None


def update_milestone_status(
    conn: sqlite3.Connection, milestone_id: str, status: str
) -> MilestoneRow | None:
    """Set milestone status, keeping at most one in-progress milestone per project."""
    _require(status, VALID_MILESTONE_STATUSES, "milestone status")
    milestone = get_milestone(conn, milestone_id)
    if milestone is None:
        return None
    if status == "in_progress":
        other = conn.execute(
            "SELECT id FROM milestones WHERE project_id = ? AND status = 'in_progress' AND id != ?",
            (milestone["project_id"], milestone_id),
        ).fetchone()
        if other:
            raise ValueError(
                f"Project {milestone['project_id']} already has milestone {other['id']} in progress"
            )
    conn.execute("UPDATE milestones SET status = ? WHERE id = ?", (status, milestone_id))
    conn.commit()
    return get_milestone(conn, milestone_id)


def activate_milestone(conn: sqlite3.Connection, project_id: str, milestone_id: str | None) -> None:
    """Make *milestone_id* the project's current milestone (or clear it).

    Marks the milestone in_progress and updates ``current_milestone_id`` in one
    transaction. Clearing returns the project's in-progress milestone to pending.
    """
    with conn:
        if milestone_id is None:
            conn.execute(
                "UPDATE milestones SET status = 'pending' "
                "WHERE project_id = ? AND status = 'in_progress'",
                (project_id,),
            )
        else:
            other = conn.execute(
                "SELECT id FROM milestones WHERE project_id = ? AND status = 'in_progress' "
                "AND id != ?",
                (project_id, milestone_id),
            ).fetchone()
            if other:
                raise ValueError(
                    f"Project {project_id} already has milestone {other['id']} in progress"
                )
            conn.execute(
                "UPDATE milestones SET status = 'in_progress' WHERE id = ? AND project_id = ?",
                (milestone_id, project_id),
            )
        conn.execute(
            "UPDATE projects SET current_milestone_id = ?, updated_at = ? WHERE id = ?",
            (milestone_id, _utcnow(), project_id),
        )


def complete_milestone(conn: sqlite3.Connection, milestone_id: str) -> None:
    """Mark a milestone completed and detach it from its project if current."""
    now = _utcnow()
    with conn:
        conn.execute("UPDATE milestones SET status = 'completed' WHERE id = ?", (milestone_id,))
        conn.execute(
            "UPDATE projects SET current_milestone_id = NULL, updated_at = ? "
            "WHERE current_milestone_id = ?",
            (now, milestone_id),
        )


def set_milestone_archived(
    conn: sqlite3.Connection, milestone_id: str, archived: bool
) -> MilestoneRow | None:
    conn.execute(
        "UPDATE milestones SET archived = ? WHERE id = ?", (1 if archived else 0, milestone_id)
    )
    conn.commit()
    return get_milestone(conn, milestone_id)


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


def create_task(
    conn: sqlite3.Connection,
    *,
    project_id: str,
    title: str,
    description: str,
    milestone_id: str | None = None,
    priority: int = 0,
    order_index: int = 0,
    is_injected: bool = False,
) -> TaskRow:
    task_id = _new_id()
    now = _utcnow()
    conn.execute(
        "INSERT INTO tasks (id, project_id, milestone_id, title, description, priority, "
        "is_injected, order_index, created_at, updated_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (
            task_id,
            project_id,
            milestone_id,
            title,
            description,
            priority,
            int(is_injected),
            order_index,
            now,
            now,
        ),
    )
    conn.commit()
    return cast(TaskRow, get_task(conn, task_id))


def create_injected_task(
    conn: sqlite3.Connection,
    *,
    project_id: str,
    title: str,
    description: str,
    milestone_id: str | None = None,
    priority: int = INJECTED_TASK_PRIORITY,
) -> TaskRow:
    """Create a human-injected task that runs ahead of milestone ordering."""
    return create_task(
        conn,
        project_id=project_id,
        title=title,
        description=description,
        milestone_id=milestone_id,
        priority=priority,
        is_injected=True,
    )


def create_tasks_for_milestone(
    conn: sqlite3.Connection,
    *,
    project_id: str,
    milestone_id: str,
    tasks: Sequence[Mapping[str, str]],
) -> list[TaskRow]:
    """Insert a planned batch with ``order_index`` 0..n-1 in one transaction."""
    now = _utcnow()
    ids: list[str] = []
    with conn:
        for index, task in enumerate(tasks):
            task_id = _new_id()
            conn.execute(
                "INSERT INTO tasks (id, project_id, milestone_id, title, description, "
                "order_index, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    task_id,
                    project_id,
                    milestone_id,
                    task["title"],
                    task["description"],
                    index,
                    now,
                    now,
                ),
            )
            ids.append(task_id)
    return [cast(TaskRow, get_task(conn, task_id)) for task_id in ids]


def get_task(conn: sqlite3.Connection, task_id: str) -> TaskRow | None:
    row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    return cast(TaskRow, _row(row)) if row else None


def list_tasks(
    conn: sqlite3.Connection,
    project_id: str,
    *,
    milestone_id: str | None = None,
    status: str | None = None,
) -> list[TaskRow]:
    query = "SELECT * FROM tasks WHERE project_id = ?"
    params: list[Any] = [project_id]
    if milestone_id is not None:
        query += " AND milestone_id = ?"
        params.append(milestone_id)
    if status is not None:
        _require(status, VALID_TASK_STATUSES, "task status")
        query += " AND status = ?"
        params.append(status)
    query += " ORDER BY created_at ASC, order_index ASC, rowid ASC"
    rows = conn.execute(query, params).fetchall()
    return [cast(TaskRow, dict(row)) for row in rows]


def get_next_pending_task(
    conn: sqlite3.Connection, project_id: str, current_milestone_id: str | None = None
) -> TaskRow | None:
    """Return the next pending task to execute.

    With a current milestone: injected tasks first (``priority`` desc), then
    the milestone's own tasks by ``order_index``, then tasks that belong to
    no milestone. Tasks queued under other milestones wait their turn.
    Without a milestone every pending task is eligible, ordered by
    ``priority desc, order_index asc, created_at asc``.
    """
    if current_milestone_id is None:
        row = conn.execute(
            "SELECT * FROM tasks WHERE project_id = ? AND status = 'pending' "
            "ORDER BY priority DESC, order_index ASC, created_at ASC, rowid ASC LIMIT 1",
            (project_id,),
        ).fetchone()
        return cast(TaskRow, _row(row)) if row else None

    queries: list[tuple[str, tuple[Any, ...]]] = [
        (
            "SELECT * FROM tasks WHERE project_id = ? AND status = 'pending' AND is_injected = 1 "
            "ORDER BY priority DESC, created_at ASC, rowid ASC LIMIT 1",
            (project_id,),
        ),
        (
            "SELECT * FROM tasks WHERE project_id = ? AND status = 'pending' "
            "AND milestone_id = ? "
            "ORDER BY order_index ASC, created_at ASC, rowid ASC LIMIT 1",
            (project_id, current_milestone_id),
        ),
        (
            "SELECT * FROM tasks WHERE project_id = ? AND status = 'pending' "
            "AND milestone_id IS NULL "
            "ORDER BY priority DESC, order_index ASC, created_at ASC, rowid ASC LIMIT 1",
            (project_id,),
        ),
    ]
    for query, params in queries:
        row = conn.execute(query, params).fetchone()
        if row:
            return cast(TaskRow, dict(row))
    return None


def get_orphaned_task(
    conn: sqlite3.Connection, project_id: str, *, exclude_run_id: str | None = None
) -> TaskRow | None:
    """Return a task left in_progress/review by an interrupted run, if any.

    Returns None while another run of the project (other than
    *exclude_run_id*) is still ``running``, since its task is not orphaned.
    """
    active = conn.execute(
        "SELECT 1 FROM runs WHERE project_id = ? AND status = 'running' AND id != ? LIMIT 1",
        (project_id, exclude_run_id or ""),
    ).fetchone()
    if active:
        return None
    row = conn.execute(
        "SELECT * FROM tasks WHERE project_id = ? AND status IN ('in_progress', 'review') "
        "ORDER BY updated_at ASC LIMIT 1",
        (project_id,),
    ).fetchone()
    return cast(TaskRow, _row(row)) if row else None


def list_completed_tasks(
    conn: sqlite3.Connection, project_id: str, milestone_id: str | None = None
) -> list[TaskRow]:
    if milestone_id:
        rows = conn.execute(
            "SELECT * FROM tasks WHERE project_id = ? AND milestone_id = ? "
            "AND status = 'completed' ORDER BY updated_at ASC",
            (project_id, milestone_id),
        ).fetchall()
    else:
        # Without a milestone keep the planner prompt short.
        rows = conn.execute(
            "SELECT * FROM tasks WHERE project_id = ? AND status = 'completed' "
            "ORDER BY updated_at DESC LIMIT 10",
            (project_id,),
        ).fetchall()
    return [cast(TaskRow, dict(row)) for row in rows]


def list_failed_tasks(
    conn: sqlite3.Connection, project_id: str, milestone_id: str | None = None
) -> list[TaskRow]:
    if milestone_id:
        rows = conn.execute(
            "SELECT * FROM tasks WHERE project_id = ? AND milestone_id = ? "
            "AND status = 'failed' ORDER BY updated_at ASC",
            (project_id, milestone_id),
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM tasks WHERE project_id = ? AND status = 'failed' "
            "ORDER BY updated_at DESC LIMIT 5",
            (project_id,),
        ).fetchall()
    return [cast(TaskRow, dict(row)) for row in rows]


def update_task_status(conn: sqlite3.Connection, task_id: str, status: str) -> TaskRow | None:
    """Move a task along the status graph.

    Raises ``ValueError`` for unknown statuses and for edges outside
    ``TASK_TRANSITIONS``. Setting the current status again is a no-op.
    """
    _require(status, VALID_TASK_STATUSES, "task status")
    task = get_task(conn, task_id)
    if task is None:
        return None
    current = task["status"]
    if current == status:
        return task
    if status not in TASK_TRANSITIONS[current]:
        raise ValueError(f"Task {task_id} cannot move from '{current}' to '{status}'")
    conn.execute(
        "UPDATE tasks SET status = ?, updated_at = ? WHERE id = ?",
        (status, _utcnow(), task_id),
    )
    conn.commit()
    return get_task(conn, task_id)


def increment_task_retry(conn: sqlite3.Connection, task_id: str) -> TaskRow | None:
    conn.execute(
        "UPDATE tasks SET retry_count = retry_count + 1, updated_at = ? WHERE id = ?",
        (_utcnow(), task_id),
    )
    conn.commit()
    return get_task(conn, task_id)


def parse_task_comments(task: Mapping[str, Any]) -> list[str]:
    raw = task.get("comments")
    if not raw:
        return []
    try:
        comments = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return []
    return [str(c) for c in comments] if isinstance(comments, list) else []


def add_task_comment(conn: sqlite3.Connection, task_id: str, comment: str) -> TaskRow | None:
    """Append a human-readable annotation to the task's comment log."""
    task = get_task(conn, task_id)
    if task is None:
        return None
    comments = parse_task_comments(task)
    comments.append(comment)
    conn.execute(
        "UPDATE tasks SET comments = ?, updated_at = ? WHERE id = ?",
        (json.dumps(comments), _utcnow(), task_id),
    )
    conn.commit()
    return get_task(conn, task_id)


def milestone_task_stats(conn: sqlite3.Connection, milestone_id: str) -> dict[str, int]:
    rows = conn.execute(
        "SELECT status, COUNT(*) AS n FROM tasks WHERE milestone_id = ? GROUP BY status",
        (milestone_id,),
    ).fetchall()
    counts = {row["status"]: row["n"] for row in rows}
    return {
        "total": sum(counts.values()),
        "pending": counts.get("pending", 0),
        "in_progress": counts.get("in_progress", 0) + counts.get("review", 0),
        "completed": counts.get("completed", 0),
        "failed": counts.get("failed", 0),
    }


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


def create_run(
    conn: sqlite3.Connection,
    project_id: str,
    *,
    trigger_source: str = "cli",
    task_id: str | None = None,
) -> RunRow:
    _require(trigger_source, VALID_TRIGGER_SOURCES, "trigger source")
    run_id = _new_id()
    conn.execute(
        "INSERT INTO runs (id, project_id, task_id, trigger_source, started_at) "
        "VALUES (?, ?, ?, ?, ?)",
        (run_id, project_id, task_id, trigger_source, _utcnow()),
    )
    conn.commit()
    return cast(RunRow, get_run(conn, run_id))


def get_run(conn: sqlite3.Connection, run_id: str) -> RunRow | None:
    row = conn.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
    return cast(RunRow, _row(row)) if row else None


def list_runs(conn: sqlite3.Connection, project_id: str, limit: int = 50) -> list[RunRow]:
    rows = conn.execute(
        "SELECT * FROM runs WHERE project_id = ? ORDER BY started_at DESC, rowid DESC LIMIT ?",
        (project_id, limit),
    ).fetchall()
    return [cast(RunRow, dict(row)) for row in rows]


def set_run_task(conn: sqlite3.Connection, run_id: str, task_id: str | None) -> RunRow | None:
    conn.execute("UPDATE runs SET task_id = ? WHERE id = ?", (task_id, run_id))
    conn.commit()
    return get_run(conn, run_id)


def finish_run(
    conn: sqlite3.Connection,
    run_id: str,
    status: str,
    summary: str | None = None,
    commit_sha: str | None = None,
) -> RunRow | None:
    """Move a run to a terminal status. Finished runs cannot be finished again."""
    _require(status, RUN_TERMINAL_STATUSES, "terminal run status")
    run = get_run(conn, run_id)
    if run is None:
        return None
    if run["finished_at"] is not None:
        raise ValueError(f"Run {run_id} already finished as '{run['status']}'")
    conn.execute(
        "UPDATE runs SET status = ?, finished_at = ?, summary = COALESCE(?, summary), "
        "git_commit_sha = COALESCE(?, git_commit_sha) WHERE id = ?",
        (status, _utcnow(), summary, commit_sha, run_id),
    )
    conn.commit()
    return get_run(conn, run_id)


def fail_stale_runs(conn: sqlite3.Connection, project_id: str, summary: str) -> int:
    """Mark runs still ``running`` as failed. Returns the number of runs touched."""
    cur = conn.execute(
        "UPDATE runs SET status = 'failed', finished_at = ?, summary = COALESCE(summary, ?) "
        "WHERE project_id = ? AND status = 'running'",
        (_utcnow(), summary, project_id),
    )
    conn.commit()
    return cur.rowcount


# ---------------------------------------------------------------------------
# Logs (append-only)
# ---------------------------------------------------------------------------


def add_log(
    conn: sqlite3.Connection,
    *,
    run_id: str,
    agent: str,
    event: str,
    prompt: str | None = None,
    response: str | None = None,
    metadata: Mapping[str, Any] | None = None,
) -> LogRow:
    _require(agent, VALID_AGENTS, "agent")
    _require(event, VALID_LOG_EVENTS, "log event")
    log_id = _new_id()
    timestamp = _utcnow()
    metadata_json = json.dumps(dict(metadata), default=str) if metadata else None
    conn.execute(
        "INSERT INTO logs (id, run_id, agent, event, prompt, response, metadata, timestamp) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
        (log_id, run_id, agent, event, prompt, response, metadata_json, timestamp),
    )
    conn.commit()
    return {
        "id": log_id,
        "run_id": run_id,
        "agent": agent,
        "event": event,
        "prompt": prompt,
        "response": response,
        "metadata": metadata_json,
        "timestamp": timestamp,
    }


def list_logs(conn: sqlite3.Connection, run_id: str, agent: str | None = None) -> list[LogRow]:
    """Return a run's logs in insertion order."""
    if agent:
        rows = conn.execute(
            "SELECT * FROM logs WHERE run_id = ? AND agent = ? ORDER BY rowid ASC",
            (run_id, agent),
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM logs WHERE run_id = ? ORDER BY rowid ASC", (run_id,)
        ).fetchall()
    return [cast(LogRow, dict(row)) for row in rows]


def log_agent_start(conn: sqlite3.Connection, run_id: str, agent: str, prompt: str) -> LogRow:
    return add_log(conn, run_id=run_id, agent=agent, event="started", prompt=prompt)


def log_agent_prompt(conn: sqlite3.Connection, run_id: str, agent: str, prompt: str) -> LogRow:
    return add_log(conn, run_id=run_id, agent=agent, event="prompt_sent", prompt=prompt)


def log_agent_response(
    conn: sqlite3.Connection, run_id: str, agent: str, response: str
) -> LogRow:
    return add_log(conn, run_id=run_id, agent=agent, event="response_received", response=response)


def log_agent_error(
    conn: sqlite3.Connection,
    run_id: str,
    agent: str,
    error: str,
    metadata: Mapping[str, Any] | None = None,
) -> LogRow:
    return add_log(
        conn, run_id=run_id, agent=agent, event="error", response=error, metadata=metadata
    )


def log_agent_complete(
    conn: sqlite3.Connection,
    run_id: str,
    agent: str,
    metadata: Mapping[str, Any] | None = None,
) -> LogRow:
    return add_log(conn, run_id=run_id, agent=agent, event="completed", metadata=metadata)


# ---------------------------------------------------------------------------
# Knowledge
# ---------------------------------------------------------------------------


def _clamp_importance(importance: int) -> int:
    return max(1, min(10, int(importance)))


def create_knowledge(
    conn: sqlite3.Connection,
    *,
    project_id: str,
    category: str,
    content: str,
    tags: Iterable[str] = (),
    file_path: str | None = None,
    importance: int = 5,
    source_task_id: str | None = None,
) -> KnowledgeRow:
    _require(category, VALID_KNOWLEDGE_CATEGORIES, "knowledge category")
    knowledge_id = _new_id()
    now = _utcnow()
    conn.execute(
        "INSERT INTO knowledge (id, project_id, category, tags, file_path, content, importance, "
        "source_task_id, created_at, last_used_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (
            knowledge_id,
            project_id,
            category,
            json.dumps(list(tags)),
            file_path,
            content,
            _clamp_importance(importance),
            source_task_id,
            now,
            now,
        ),
    )
    conn.commit()
    return cast(KnowledgeRow, get_knowledge(conn, knowledge_id))


def get_knowledge(conn: sqlite3.Connection, knowledge_id: str) -> KnowledgeRow | None:
    row = conn.execute("SELECT * FROM knowledge WHERE id = ?", (knowledge_id,)).fetchone()
    return cast(KnowledgeRow, _row(row)) if row else None


def list_knowledge(
    conn: sqlite3.Connection, project_id: str, *, category: str | None = None
) -> list[KnowledgeRow]:
    if category:
        _require(category, VALID_KNOWLEDGE_CATEGORIES, "knowledge category")
        rows = conn.execute(
            "SELECT * FROM knowledge WHERE project_id = ? AND category = ? "
            "ORDER BY importance DESC, last_used_at DESC",
            (project_id, category),
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM knowledge WHERE project_id = ? "
            "ORDER BY importance DESC, last_used_at DESC",
            (project_id,),
        ).fetchall()
    return [cast(KnowledgeRow, dict(row)) for row in rows]


_RELEVANCE_SCORE_SQL = """
    (
        CASE WHEN importance >= 8 THEN 3 ELSE 0 END +
        CASE WHEN julianday('now') - julianday(last_used_at) < 7 THEN 2 ELSE 0 END +
        CASE WHEN julianday('now') - julianday(last_used_at) < 30 THEN 1 ELSE 0 END
    )
"""


def query_scored_knowledge(
    conn: sqlite3.Connection,
    project_id: str,
    *,
    categories: Sequence[str] | None = None,
    file_paths: Sequence[str] | None = None,
    limit: int | None = None,
) -> list[ScoredKnowledgeRow]:
    """Return knowledge with a DB-computed ``relevance_score``.

    Ordered by relevance, importance, then recency. ``limit=None`` returns
    every candidate (used when the caller re-ranks by keyword).
    """
    query = (
        f"SELECT *, {_RELEVANCE_SCORE_SQL} AS relevance_score "
        "FROM knowledge WHERE project_id = ?"
    )
    params: list[Any] = [project_id]
    if categories:
        for category in categories:
            _require(category, VALID_KNOWLEDGE_CATEGORIES, "knowledge category")
        query += f" AND category IN ({', '.join('?' for _ in categories)})"
        params.extend(categories)
    if file_paths:
        query += f" AND (file_path IS NULL OR file_path IN ({', '.join('?' for _ in file_paths)}))"
        params.extend(file_paths)
    query += " ORDER BY relevance_score DESC, importance DESC, last_used_at DESC"
    if limit is not None:
        query += " LIMIT ?"
        params.append(limit)
    rows = conn.execute(query, params).fetchall()
    return [cast(ScoredKnowledgeRow, dict(row)) for row in rows]


def get_essential_knowledge(
    conn: sqlite3.Connection, project_id: str, limit: int = 5
) -> list[KnowledgeRow]:
    """Top-importance entries that every planner prompt should carry."""
    rows = conn.execute(
        "SELECT * FROM knowledge WHERE project_id = ? AND importance >= 8 "
        "ORDER BY importance DESC, last_used_at DESC LIMIT ?",
        (project_id, limit),
    ).fetchall()
    return [cast(KnowledgeRow, dict(row)) for row in rows]


def mark_knowledge_used(conn: sqlite3.Connection, knowledge_ids: Iterable[str]) -> None:
    now = _utcnow()
    conn.executemany(
        "UPDATE knowledge SET last_used_at = ? WHERE id = ?",
        [(now, knowledge_id) for knowledge_id in knowledge_ids],
    )
    conn.commit()


def prune_knowledge(
    conn: sqlite3.Connection,
    project_id: str,
    *,
    max_entries: int = 100,
    max_age_days: int = 90,
) -> int:
    """Delete stale low-importance entries, then trim to *max_entries*.

    Returns the total number of deleted rows.
    """
    with conn:
        stale = conn.execute(
            "DELETE FROM knowledge WHERE project_id = ? AND importance < 5 "
            "AND julianday('now') - julianday(last_used_at) > ?",
            (project_id, max_age_days),
        ).rowcount
        count = conn.execute(
            "SELECT COUNT(*) FROM knowledge WHERE project_id = ?", (project_id,)
        ).fetchone()[0]
        trimmed = 0
        if count > max_entries:
            trimmed = conn.execute(
                "DELETE FROM knowledge WHERE id IN ("
                "SELECT id FROM knowledge WHERE project_id = ? "
                "ORDER BY importance ASC, last_used_at ASC LIMIT ?)",
                (project_id, count - max_entries),
            ).rowcount
    return stale + trimmed
