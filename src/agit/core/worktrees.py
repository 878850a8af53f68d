"""Worktree registry records and their status transitions."""

import sqlite3
import uuid

from agit.db.engine import parse_dt, utcnow
from agit.db.models import WORKTREE_STATUSES, Worktree
from agit.errors import AmbiguousError, InvalidInputError, NotFoundError

MIN_PREFIX_LEN = 4


def create_worktree(
    db: sqlite3.Connection,
    repo_id: str,
    path: str,
    branch: str,
    agent_id: str | None = None,
    task_description: str | None = None,
    worktree_id: str | None = None,
) -> Worktree:
    """Record a new worktree. New worktrees always start 'active'."""
    worktree_id = worktree_id or str(uuid.uuid4())
    now = utcnow()
    db.execute(
        """INSERT INTO worktrees
               (id, repo_id, path, branch, agent_id, task_description, status, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, 'active', ?, ?)""",
        (worktree_id, repo_id, path, branch, agent_id, task_description, now, now),
    )
    db.commit()
    return get_worktree(db, worktree_id)


def get_worktree(db: sqlite3.Connection, worktree_id: str) -> Worktree | None:
    row = db.execute("SELECT * FROM worktrees WHERE id = ?", (worktree_id,)).fetchone()
    if not row:
        return None
    return _row_to_worktree(row)


def list_worktrees(
    db: sqlite3.Connection,
    repo_id: str,
    status: str | None = None,
) -> list[Worktree]:
    """List worktrees for a repo, newest first, optionally filtered by status."""
    if status and status not in WORKTREE_STATUSES:
        raise InvalidInputError(f"invalid worktree status {status!r}")
    query = "SELECT * FROM worktrees WHERE repo_id = ?"
    params: list = [repo_id]
    if status:
        query += " AND status = ?"
        params.append(status)
    query += " ORDER BY created_at DESC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_worktree(r) for r in rows]


def list_all_active_worktrees(db: sqlite3.Connection) -> list[Worktree]:
    rows = db.execute(
        "SELECT * FROM worktrees WHERE status = 'active' ORDER BY created_at DESC"
    ).fetchall()
    return [_row_to_worktree(r) for r in rows]


def update_worktree_status(db: sqlite3.Connection, worktree_id: str, status: str) -> None:
    """Set a worktree's status.

    Only the value is validated; callers are responsible for following the
    documented transitions (active -> completed | stale | conflict).
    """
    if status not in WORKTREE_STATUSES:
        raise InvalidInputError(f"invalid worktree status {status!r}")
    cur = db.execute(
        "UPDATE worktrees SET status = ?, updated_at = ? WHERE id = ?",
        (status, utcnow(), worktree_id),
    )
    db.commit()
    if cur.rowcount == 0:
        raise NotFoundError(f"worktree {worktree_id!r} not found")


def delete_worktree(db: sqlite3.Connection, worktree_id: str) -> bool:
    """Delete a worktree row.

    Agent back-references and task links are cleared and file touches removed
    by the schema's foreign key actions.
    """
    cur = db.execute("DELETE FROM worktrees WHERE id = ?", (worktree_id,))
    db.commit()
    return cur.rowcount > 0


def resolve_worktree(db: sqlite3.Connection, repo_id: str, token: str) -> Worktree:
    """Find a worktree of a repo by exact id or by a unique id prefix."""
    wt = get_worktree(db, token)
    if wt:
        if wt.repo_id != repo_id:
            raise NotFoundError(f"worktree {token!r} does not belong to this repository")
        return wt

    if len(token) < MIN_PREFIX_LEN:
        raise InvalidInputError(
            f"worktree ID prefix must be at least {MIN_PREFIX_LEN} characters"
        )

    rows = db.execute(
        "SELECT * FROM worktrees WHERE repo_id = ? AND substr(id, 1, ?) = ?",
        (repo_id, len(token), token),
    ).fetchall()

    if not rows:
        raise NotFoundError(f"no worktree matching prefix {token!r}")
    if len(rows) > 1:
        raise AmbiguousError(f"ambiguous prefix {token!r}: matches {len(rows)} worktrees")
    return _row_to_worktree(rows[0])


def _row_to_worktree(row: sqlite3.Row) -> Worktree:
    return Worktree(
        id=row["id"],
        repo_id=row["repo_id"],
        path=row["path"],
        branch=row["branch"],
        agent_id=row["agent_id"],
        task_description=row["task_description"],
        status=row["status"],
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )
