"""Worktree lifecycle: spawning, merging, orphan pruning and cleanup.

These operations combine registry updates with git calls. Removal steps
against git are best-effort: their failures are reported and logged but never
stop the registry from reaching a consistent state.
"""

import logging
import sqlite3
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path

from agit.config import Config
from agit.core import agents as agents_mod
from agit.core import repos as repos_mod
from agit.core import worktrees as worktrees_mod
from agit.core.tasks import slugify
from agit.db.models import CleanupReport, Repo, StepResult, Worktree
from agit.errors import ConflictError
from agit.integrations import git

logger = logging.getLogger(__name__)


def _best_effort(step: str, fn: Callable, *args) -> StepResult:
    try:
        fn(*args)
        return StepResult(step=step)
    except git.GitError as e:
        logger.warning("%s failed: %s", step, e)
        return StepResult(step=step, ok=False, error=str(e))


# ── Orphans ─────────────────────────────────────────────────────────────────


def prune_orphans(db: sqlite3.Connection, repo_id: str) -> int:
    """Mark active worktrees whose directory has vanished as stale."""
    count = 0
    for wt in worktrees_mod.list_worktrees(db, repo_id, status="active"):
        if not Path(wt.path).exists():
            worktrees_mod.update_worktree_status(db, wt.id, "stale")
            logger.info("worktree %s is gone from disk, marked stale: %s", wt.short_id, wt.path)
            count += 1
    return count


# ── Removal ─────────────────────────────────────────────────────────────────


def remove_worktree(
    db: sqlite3.Connection,
    repo: Repo,
    worktree: Worktree,
    remove_workspace: Callable = git.remove_workspace,
    delete_branch: Callable = git.delete_branch,
) -> CleanupReport:
    """Remove a worktree from disk, delete its branch, then drop the record."""
    report = CleanupReport(worktree_id=worktree.id, path=worktree.path, branch=worktree.branch)
    report.steps.append(_best_effort("remove workspace", remove_workspace, repo.path, worktree.path))
    report.steps.append(_best_effort("delete branch", delete_branch, repo.path, worktree.branch))
    worktrees_mod.delete_worktree(db, worktree.id)
    logger.info("removed worktree %s (%s)", worktree.short_id, worktree.branch)
    return report


def cleanup_worktrees(
    db: sqlite3.Connection,
    stale_only: bool = False,
    stale_grace: timedelta | None = None,
    now: datetime | None = None,
    remove_workspace: Callable = git.remove_workspace,
    delete_branch: Callable = git.delete_branch,
) -> list[tuple[Repo, Worktree, CleanupReport]]:
    """Remove completed and stale worktrees (or only stale ones) in every repo.

    Orphans are pruned first so vanished directories become eligible. With
    stale_grace, a stale worktree is kept until it has been stale for that
    long; completed worktrees are always removed.
    """
    statuses = {"stale"} if stale_only else {"completed", "stale"}
    now = now or datetime.now(timezone.utc)
    removed = []
    for repo in repos_mod.list_repos(db):
        prune_orphans(db, repo.id)
        for wt in worktrees_mod.list_worktrees(db, repo.id):
            if wt.status not in statuses:
                continue
            if stale_grace and wt.status == "stale" and wt.updated_at and now - wt.updated_at < stale_grace:
                logger.debug("keeping stale worktree %s until its grace period ends", wt.short_id)
                continue
            report = remove_worktree(db, repo, wt, remove_workspace, delete_branch)
            removed.append((repo, wt, report))
    return removed


# ── Spawning ────────────────────────────────────────────────────────────────


def spawn_worktree(
    db: sqlite3.Connection,
    repo: Repo,
    config: Config,
    branch: str | None = None,
    agent_name: str | None = None,
    task: str | None = None,
) -> Worktree:
    """Create an isolated worktree on a new branch and record it.

    If recording fails after git created the worktree, the worktree and
    its branch are removed again.
    """
    worktree_id = str(uuid.uuid4())
    short_id = worktree_id[:8]

    if not branch:
        slug = slugify(task) if task else ""
        branch = f"{config.branch_prefix}{slug}-{short_id}" if slug else f"{config.branch_prefix}{short_id}"

    path = str(Path(repo.path) / config.worktree_dir / f"agit-{short_id}")

    git.create_workspace(repo.path, path, branch, repo.default_branch)

    try:
        agent = agents_mod.get_or_register_agent(db, agent_name) if agent_name else None
        wt = worktrees_mod.create_worktree(
            db,
            repo.id,
            path,
            branch,
            agent_id=agent.id if agent else None,
            task_description=task,
            worktree_id=worktree_id,
        )
        if agent:
            agents_mod.set_agent_worktree(db, agent.id, wt.id)
    except Exception:
        logger.error("could not record worktree %s, removing it from disk", path)
        _best_effort("remove workspace", git.remove_workspace, repo.path, path)
        _best_effort("delete branch", git.delete_branch, repo.path, branch)
        raise

    logger.info("spawned worktree %s on %s at %s", wt.short_id, branch, path)
    return wt


# ── Merging ─────────────────────────────────────────────────────────────────


def merge_worktree(
    db: sqlite3.Connection,
    repo: Repo,
    worktree: Worktree,
    skip_conflict_check: bool = False,
    cleanup: bool = False,
) -> CleanupReport | None:
    """Merge a worktree's branch into the repo's default branch.

    The worktree is marked completed; with cleanup it is then removed.
    Returns the cleanup report, if any.
    """
    git.checkout_branch(repo.path, repo.default_branch)

    if not skip_conflict_check and not git.can_merge_cleanly(repo.path, worktree.branch):
        raise ConflictError(
            f"merging {worktree.branch} into {repo.default_branch} would produce conflicts; "
            "resolve manually or skip the conflict check"
        )

    git.merge_branch(repo.path, worktree.branch)
    worktrees_mod.update_worktree_status(db, worktree.id, "completed")
    logger.info("merged %s into %s", worktree.branch, repo.default_branch)

    if cleanup:
        return remove_worktree(db, repo, worktree)
    return None
