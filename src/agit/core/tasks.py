"""Task management operations."""

import re
import sqlite3
import uuid

from agit.db.engine import parse_dt, utcnow
from agit.db.models import TASK_STATUSES, Task
from agit.errors import ConflictError, InvalidInputError, NotFoundError


def slugify(text: str, max_len: int = 40) -> str:
    """Convert free text to a branch-friendly slug."""
    slug = text.lower().strip()
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"[^a-z0-9-]", "", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:max_len]


def create_task(
    db: sqlite3.Connection,
    repo_id: str,
    description: str,
    priority: int = 0,
) -> Task:
    """Create a new pending task. Higher priority is more urgent."""
    if not description.strip():
        raise InvalidInputError("task description must not be empty")
    task_id = "t-" + uuid.uuid4().hex[:8]
    db.execute(
        """INSERT INTO tasks (id, repo_id, description, priority, status, created_at)
           VALUES (?, ?, ?, ?, 'pending', ?)""",
        (task_id, repo_id, description, priority, utcnow()),
    )
    db.commit()
    return get_task(db, task_id)


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None
    return _row_to_task(row)


def list_tasks(
    db: sqlite3.Connection,
    repo_id: str,
    status: str | None = None,
) -> list[Task]:
    """List a repo's tasks, most urgent first, newest first within a priority."""
    if status and status not in TASK_STATUSES:
        raise InvalidInputError(f"invalid task status {status!r}")
    query = "SELECT * FROM tasks WHERE repo_id = ?"
    params: list = [repo_id]

    if status:
        query += " AND status = ?"
        params.append(status)

    query += " ORDER BY priority DESC, created_at DESC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_task(r) for r in rows]


def claim_task(db: sqlite3.Connection, task_id: str, agent_id: str) -> Task:
    """Atomically assign a pending task to an agent.

    The status check and the assignment are one conditional UPDATE, so of any
    number of concurrent claimants exactly one sees a matched row.
    """
    try:
        cur = db.execute(
            """UPDATE tasks SET status = 'claimed', assigned_agent_id = ?
               WHERE id = ? AND status = 'pending'""",
            (agent_id, task_id),
        )
        db.commit()
    except sqlite3.IntegrityError as e:
        db.rollback()
        raise NotFoundError(f"agent {agent_id!r} not found") from e
    if cur.rowcount == 0:
        task = get_task(db, task_id)
        if not task:
            raise NotFoundError(f"task {task_id!r} not found")
        raise ConflictError(f"task {task_id!r} is already {task.status}")
    return get_task(db, task_id)


def start_task(db: sqlite3.Connection, task_id: str, worktree_id: str) -> Task:
    """Mark a task in progress and link the worktree it is being done in."""
    try:
        cur = db.execute(
            "UPDATE tasks SET status = 'in_progress', worktree_id = ? WHERE id = ?",
            (worktree_id, task_id),
        )
        db.commit()
    except sqlite3.IntegrityError as e:
        db.rollback()
        raise NotFoundError(f"worktree {worktree_id!r} not found") from e
    if cur.rowcount == 0:
        raise NotFoundError(f"task {task_id!r} not found")
    return get_task(db, task_id)


def complete_task(db: sqlite3.Connection, task_id: str, result: str | None = None) -> Task:
    return _finish_task(db, task_id, "completed", result)


def fail_task(db: sqlite3.Connection, task_id: str, result: str | None = None) -> Task:
    return _finish_task(db, task_id, "failed", result)


def _finish_task(db: sqlite3.Connection, task_id: str, status: str, result: str | None) -> Task:
    cur = db.execute(
        "UPDATE tasks SET status = ?, completed_at = ?, result = ? WHERE id = ?",
        (status, utcnow(), result, task_id),
    )
    db.commit()
    if cur.rowcount == 0:
        raise NotFoundError(f"task {task_id!r} not found")
    return get_task(db, task_id)


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        repo_id=row["repo_id"],
        description=row["description"],
        priority=row["priority"] if row["priority"] is not None else 0,
        status=row["status"],
        assigned_agent_id=row["assigned_agent_id"],
        worktree_id=row["worktree_id"],
        created_at=parse_dt(row["created_at"]),
        completed_at=parse_dt(row["completed_at"]),
        result=row["result"],
    )
