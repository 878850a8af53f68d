"""Cross-worktree conflict detection.

Every scan recomputes conflicts from scratch: each active worktree's diff
against the repo's default branch replaces its file touches, then touches
are grouped by path. File touches are the only state kept between scans.
"""

import logging
import sqlite3
from collections.abc import Callable

from agit.core.touches import find_conflicts, replace_file_touches
from agit.core.worktrees import list_worktrees
from agit.db.models import Conflict, FileTouch, Repo
from agit.integrations import git

logger = logging.getLogger(__name__)

DiffFn = Callable[[str, str, str], dict[str, str]]


def scan_and_update(
    db: sqlite3.Connection,
    repo: Repo,
    diff: DiffFn = git.diff_files_with_status,
) -> list[str]:
    """Refresh file touches for every active worktree of a repo.

    A worktree whose diff cannot be computed keeps its previous touches for
    this pass. Returns the ids of the worktrees that were skipped.
    """
    skipped = []
    for wt in list_worktrees(db, repo.id, status="active"):
        try:
            files = diff(repo.path, repo.default_branch, wt.branch)
        except git.GitError as e:
            logger.warning("skipping worktree %s (%s): %s", wt.short_id, wt.branch, e)
            skipped.append(wt.id)
            continue

        touches = [FileTouch(file_path=path, change_type=kind) for path, kind in files.items()]
        replace_file_touches(db, repo.id, wt.id, touches)
        logger.debug("worktree %s touches %d file(s)", wt.short_id, len(touches))

    return skipped


def detect_conflicts(
    db: sqlite3.Connection,
    repo: Repo,
    diff: DiffFn = git.diff_files_with_status,
) -> list[Conflict]:
    """Scan a repo's active worktrees and return files changed in more than one."""
    scan_and_update(db, repo, diff)
    conflicts = find_conflicts(db, repo.id)
    conflicts.sort(key=lambda c: c.file_path)
    if conflicts:
        logger.info("%d conflicting file(s) in %s", len(conflicts), repo.name)
    return conflicts


def format_report(conflicts: list[Conflict]) -> str:
    """Human-readable conflict report."""
    if not conflicts:
        return "No conflicts detected."

    lines = []
    worktrees = set()
    for c in conflicts:
        lines.append(f"CONFLICT: {c.file_path}")
        for entry in c.entries:
            worktrees.add(entry.worktree_id)
            short_id = entry.worktree_id[:12]
            who = entry.agent_name or entry.agent_id
            if who:
                lines.append(f"  Modified in: {short_id} ({who}: {entry.task_description or ''})")
            elif entry.task_description:
                lines.append(f"  Modified in: {short_id} ({entry.task_description})")
            else:
                lines.append(f"  Modified in: {short_id}")
        lines.append("")
    lines.append(f"{len(conflicts)} conflicting file(s) across {len(worktrees)} worktree(s).")
    return "\n".join(lines)
