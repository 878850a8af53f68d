"""Repository registration operations."""

import sqlite3
import uuid

from agit.db.engine import parse_dt, utcnow
from agit.db.models import Repo, RepoStats
from agit.errors import ConflictError, NotFoundError


def add_repo(
    db: sqlite3.Connection,
    name: str,
    path: str,
    remote_url: str | None = "",
    default_branch: str = "main",
) -> Repo:
    """Register a repository. Names are unique."""
    repo_id = str(uuid.uuid4())
    try:
        db.execute(
            """INSERT INTO repos (id, name, path, remote_url, default_branch, added_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (repo_id, name, path, remote_url or "", default_branch, utcnow()),
        )
        db.commit()
    except sqlite3.IntegrityError as e:
        db.rollback()
        raise ConflictError(f"repo {name!r} is already registered") from e
    return get_repo_by_id(db, repo_id)


def get_repo(db: sqlite3.Connection, name: str) -> Repo | None:
    """Get a repo by name."""
    row = db.execute("SELECT * FROM repos WHERE name = ?", (name,)).fetchone()
    if not row:
        return None
    return _row_to_repo(row)


def get_repo_by_id(db: sqlite3.Connection, repo_id: str) -> Repo | None:
    row = db.execute("SELECT * FROM repos WHERE id = ?", (repo_id,)).fetchone()
    if not row:
        return None
    return _row_to_repo(row)


def require_repo(db: sqlite3.Connection, name: str) -> Repo:
    """Get a repo by name, raising NotFoundError if it is not registered."""
    repo = get_repo(db, name)
    if not repo:
        raise NotFoundError(f"repo {name!r} not found")
    return repo


def list_repos(db: sqlite3.Connection) -> list[Repo]:
    rows = db.execute("SELECT * FROM repos ORDER BY name").fetchall()
    return [_row_to_repo(r) for r in rows]


def remove_repo(db: sqlite3.Connection, name: str) -> None:
    """Unregister a repo. Worktrees, tasks and file touches go with it."""
    cur = db.execute("DELETE FROM repos WHERE name = ?", (name,))
    db.commit()
    if cur.rowcount == 0:
        raise NotFoundError(f"repo {name!r} not found")


def get_repo_stats(db: sqlite3.Connection, repo_id: str) -> RepoStats:
    """Active worktree, pending task and active agent counts for a repo."""
    row = db.execute(
        """SELECT
               (SELECT COUNT(*) FROM worktrees WHERE repo_id = :r AND status = 'active') AS active_worktrees,
               (SELECT COUNT(*) FROM tasks WHERE repo_id = :r AND status = 'pending') AS pending_tasks,
               (SELECT COUNT(DISTINCT agent_id) FROM worktrees
                 WHERE repo_id = :r AND status = 'active' AND agent_id IS NOT NULL) AS active_agents""",
        {"r": repo_id},
    ).fetchone()
    return RepoStats(
        active_worktrees=row["active_worktrees"],
        pending_tasks=row["pending_tasks"],
        active_agents=row["active_agents"],
    )


def _row_to_repo(row: sqlite3.Row) -> Repo:
    return Repo(
        id=row["id"],
        name=row["name"],
        path=row["path"],
        remote_url=row["remote_url"],
        default_branch=row["default_branch"],
        added_at=parse_dt(row["added_at"]),
        last_synced=parse_dt(row["last_synced"]),
        metadata=row["metadata"],
    )
