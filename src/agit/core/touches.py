"""File touch records: which files each worktree's branch has changed."""

import sqlite3
from collections.abc import Iterable

from agit.db.engine import parse_dt, transaction, utcnow
from agit.db.models import CHANGE_TYPES, Conflict, ConflictEntry, FileTouch
from agit.errors import InvalidInputError


def replace_file_touches(
    db: sqlite3.Connection,
    repo_id: str,
    worktree_id: str,
    touches: Iterable[FileTouch],
) -> int:
    """Replace the full touch set of a worktree in one transaction.

    An empty set clears the worktree's touches. Returns the number of rows
    written.
    """
    rows = []
    for t in touches:
        change_type = t.change_type or "modified"
        if change_type not in CHANGE_TYPES:
            raise InvalidInputError(f"invalid change type {change_type!r} for {t.file_path}")
        rows.append((repo_id, worktree_id, t.file_path, change_type))

    now = utcnow()
    with transaction(db):
        db.execute(
            "DELETE FROM file_touches WHERE repo_id = ? AND worktree_id = ?",
            (repo_id, worktree_id),
        )
        db.executemany(
            """INSERT INTO file_touches (repo_id, worktree_id, file_path, change_type, updated_at)
               VALUES (?, ?, ?, ?, ?)""",
            [row + (now,) for row in rows],
        )
    return len(rows)


def list_file_touches(
    db: sqlite3.Connection,
    repo_id: str,
    worktree_id: str | None = None,
) -> list[FileTouch]:
    query = "SELECT * FROM file_touches WHERE repo_id = ?"
    params: list = [repo_id]
    if worktree_id:
        query += " AND worktree_id = ?"
        params.append(worktree_id)
    query += " ORDER BY worktree_id, file_path"
    rows = db.execute(query, params).fetchall()
    return [
        FileTouch(
            file_path=r["file_path"],
            change_type=r["change_type"],
            repo_id=r["repo_id"],
            worktree_id=r["worktree_id"],
            updated_at=parse_dt(r["updated_at"]),
        )
        for r in rows
    ]


def find_conflicts(db: sqlite3.Connection, repo_id: str) -> list[Conflict]:
    """Files touched by two or more active worktrees of a repo."""
    rows = db.execute(
        """SELECT ft.file_path, ft.worktree_id, w.agent_id, a.name AS agent_name,
                  w.task_description
           FROM file_touches ft
           JOIN worktrees w ON ft.worktree_id = w.id
           LEFT JOIN agents a ON w.agent_id = a.id
           WHERE ft.repo_id = ? AND w.status = 'active'
           ORDER BY ft.file_path, ft.worktree_id""",
        (repo_id,),
    ).fetchall()

    by_file: dict[str, list[ConflictEntry]] = {}
    for r in rows:
        by_file.setdefault(r["file_path"], []).append(
            ConflictEntry(
                worktree_id=r["worktree_id"],
                agent_id=r["agent_id"],
                agent_name=r["agent_name"],
                task_description=r["task_description"],
            )
        )

    return [
        Conflict(file_path=path, entries=entries)
        for path, entries in by_file.items()
        if len({e.worktree_id for e in entries}) >= 2
    ]
