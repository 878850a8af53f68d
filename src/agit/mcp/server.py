"""MCP server exposing agit's repos, worktrees, tasks and agents."""

from __future__ import annotations

import json
import os
import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from agit.config import Config, get_config, parse_duration
from agit.core import agents as agents_mod
from agit.core import conflicts as conflicts_mod
from agit.core import lifecycle
from agit.core import repos as repos_mod
from agit.core import tasks as tasks_mod
from agit.core import worktrees as worktrees_mod
from agit.db.engine import get_db, init_db
from agit.errors import AgitError, InvalidInputError, NotFoundError
from agit.integrations import git


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: Config


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Open the registry on startup, close it on shutdown."""
    config = get_config()
    db = init_db(config.db_path)
    try:
        yield AppContext(db=db, config=config)
    finally:
        db.close()


mcp = FastMCP("agit", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    return ctx.request_context.lifespan_context


# ── Repo Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def agit_list_repos(ctx: Context) -> list[dict]:
    """List registered repositories with active worktree and pending task counts."""
    db = _ctx(ctx).db
    return [_repo_summary(db, r) for r in repos_mod.list_repos(db)]


@mcp.tool()
def agit_register_repo(ctx: Context, path: str, name: str = "") -> dict:
    """Register a Git repository. The name defaults to the directory name."""
    db = _ctx(ctx).db
    path = os.path.abspath(os.path.expanduser(path))
    try:
        if not git.is_repository(path):
            raise InvalidInputError(f"{path} is not a Git repository")
        repo = repos_mod.add_repo(
            db,
            name or os.path.basename(path),
            path,
            git.get_remote_url(path),
            git.get_default_branch(path),
        )
    except AgitError as e:
        return {"error": str(e)}
    return _repo_to_dict(repo)


@mcp.tool()
def agit_remove_repo(ctx: Context, repo: str) -> dict:
    """Unregister a repository. Its worktree records, tasks and file touches are deleted."""
    try:
        repos_mod.remove_repo(_ctx(ctx).db, repo)
    except AgitError as e:
        return {"error": str(e)}
    return {"removed": repo}


@mcp.tool()
def agit_repo_status(ctx: Context, repo: str) -> dict:
    """Active worktrees, pending tasks and agents for one repository."""
    db = _ctx(ctx).db
    try:
        r = repos_mod.require_repo(db, repo)
    except AgitError as e:
        return {"error": str(e)}
    lifecycle.prune_orphans(db, r.id)
    names = _agent_names(db)
    d = _repo_summary(db, r)
    d["worktrees"] = [
        _worktree_to_dict(w, names) for w in worktrees_mod.list_worktrees(db, r.id, status="active")
    ]
    d["pending_tasks"] = [
        _task_to_dict(t, names) for t in tasks_mod.list_tasks(db, r.id, status="pending")
    ]
    return d


# ── Worktree Tools ───────────────────────────────────────────────────────────


@mcp.tool()
def agit_spawn_worktree(
    ctx: Context,
    repo: str,
    task: str = "",
    agent: str = "",
    branch: str = "",
) -> dict:
    """Create an isolated worktree on a new branch, optionally assigned to an agent."""
    app = _ctx(ctx)
    try:
        r = repos_mod.require_repo(app.db, repo)
        wt = lifecycle.spawn_worktree(
            app.db,
            r,
            app.config,
            branch=branch or None,
            agent_name=agent or None,
            task=task or None,
        )
    except AgitError as e:
        return {"error": str(e)}
    return _worktree_to_dict(wt, _agent_names(app.db))


@mcp.tool()
def agit_list_worktrees(ctx: Context, repo: str, status: str = "") -> list[dict] | dict:
    """List a repo's worktrees. Worktrees whose directory is gone are marked stale first."""
    db = _ctx(ctx).db
    try:
        r = repos_mod.require_repo(db, repo)
        lifecycle.prune_orphans(db, r.id)
        wts = worktrees_mod.list_worktrees(db, r.id, status=status or None)
    except AgitError as e:
        return {"error": str(e)}
    names = _agent_names(db)
    return [_worktree_to_dict(w, names) for w in wts]


@mcp.tool()
def agit_remove_worktree(ctx: Context, repo: str, worktree_id: str) -> dict:
    """Remove a worktree and its branch. Accepts a full id or a unique prefix of 4+ characters."""
    db = _ctx(ctx).db
    try:
        r = repos_mod.require_repo(db, repo)
        wt = worktrees_mod.resolve_worktree(db, r.id, worktree_id)
        report = lifecycle.remove_worktree(db, r, wt)
    except AgitError as e:
        return {"error": str(e)}
    return {"removed": wt.id, "branch": wt.branch, "warnings": report.warnings}


@mcp.tool()
def agit_merge_worktree(
    ctx: Context,
    repo: str,
    worktree_id: str,
    skip_conflict_check: bool = False,
    cleanup: bool = False,
) -> dict:
    """Merge a worktree's branch into the default branch, refusing if the merge would conflict."""
    db = _ctx(ctx).db
    try:
        r = repos_mod.require_repo(db, repo)
        wt = worktrees_mod.resolve_worktree(db, r.id, worktree_id)
        report = lifecycle.merge_worktree(
            db, r, wt, skip_conflict_check=skip_conflict_check, cleanup=cleanup
        )
    except AgitError as e:
        return {"error": str(e)}
    d = {"merged": wt.branch, "into": r.default_branch, "cleaned_up": report is not None}
    if report:
        d["warnings"] = report.warnings
    return d


@mcp.tool()
def agit_check_conflicts(ctx: Context, repo: str) -> dict:
    """Rescan active worktrees and report files modified in more than one."""
    db = _ctx(ctx).db
    try:
        r = repos_mod.require_repo(db, repo)
        found = conflicts_mod.detect_conflicts(db, r)
    except AgitError as e:
        return {"error": str(e)}
    return {
        "conflicts": [_conflict_to_dict(c) for c in found],
        "report": conflicts_mod.format_report(found),
    }


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def agit_create_task(ctx: Context, repo: str, description: str, priority: int = 0) -> dict:
    """Create a pending task. Higher priority is picked first."""
    db = _ctx(ctx).db
    try:
        r = repos_mod.require_repo(db, repo)
        task = tasks_mod.create_task(db, r.id, description, priority)
    except AgitError as e:
        return {"error": str(e)}
    return _task_to_dict(task, {})


@mcp.tool()
def agit_list_tasks(ctx: Context, repo: str, status: str = "") -> list[dict] | dict:
    """List a repo's tasks ordered by priority, newest first within a priority."""
    db = _ctx(ctx).db
    try:
        r = repos_mod.require_repo(db, repo)
        tasks = tasks_mod.list_tasks(db, r.id, status=status or None)
    except AgitError as e:
        return {"error": str(e)}
    names = _agent_names(db)
    return [_task_to_dict(t, names) for t in tasks]


@mcp.tool()
def agit_claim_task(ctx: Context, task_id: str, agent: str) -> dict:
    """Atomically claim a pending task. Only one agent can win a given task."""
    db = _ctx(ctx).db
    try:
        a = _resolve_agent(db, agent)
        task = tasks_mod.claim_task(db, task_id, a.id)
    except AgitError as e:
        return {"error": str(e)}
    return _task_to_dict(task, {a.id: a.name})


@mcp.tool()
def agit_start_task(ctx: Context, repo: str, task_id: str, worktree_id: str) -> dict:
    """Mark a task in progress inside a worktree."""
    db = _ctx(ctx).db
    try:
        r = repos_mod.require_repo(db, repo)
        wt = worktrees_mod.resolve_worktree(db, r.id, worktree_id)
        task = tasks_mod.start_task(db, task_id, wt.id)
    except AgitError as e:
        return {"error": str(e)}
    return _task_to_dict(task, _agent_names(db))


@mcp.tool()
def agit_complete_task(ctx: Context, task_id: str, result: str = "") -> dict:
    """Mark a task completed with an optional result summary."""
    db = _ctx(ctx).db
    try:
        task = tasks_mod.complete_task(db, task_id, result or None)
    except AgitError as e:
        return {"error": str(e)}
    return _task_to_dict(task, _agent_names(db))


@mcp.tool()
def agit_fail_task(ctx: Context, task_id: str, result: str = "") -> dict:
    """Mark a task failed with an optional reason."""
    db = _ctx(ctx).db
    try:
        task = tasks_mod.fail_task(db, task_id, result or None)
    except AgitError as e:
        return {"error": str(e)}
    return _task_to_dict(task, _agent_names(db))


# ── Agent Tools ───────────────────────────────────────────────────────────────


@mcp.tool()
def agit_register_agent(ctx: Context, name: str, agent_type: str = "custom") -> dict:
    """Register an agent, or return the existing one with that name."""
    try:
        agent = agents_mod.get_or_register_agent(_ctx(ctx).db, name, agent_type)
    except AgitError as e:
        return {"error": str(e)}
    return _agent_to_dict(agent)


@mcp.tool()
def agit_heartbeat(ctx: Context, agent: str) -> dict:
    """Record that an agent is alive. Call this periodically."""
    db = _ctx(ctx).db
    try:
        a = agents_mod.heartbeat(db, _resolve_agent(db, agent).id)
    except AgitError as e:
        return {"error": str(e)}
    return _agent_to_dict(a)


@mcp.tool()
def agit_sweep_stale_agents(ctx: Context, stale_after: str = "") -> dict:
    """Mark agents not seen within stale_after (e.g. "5m") as disconnected."""
    app = _ctx(ctx)
    try:
        delta = parse_duration(stale_after) if stale_after else app.config.stale_after_delta
    except AgitError as e:
        return {"error": str(e)}
    return {"swept": agents_mod.sweep_stale_agents(app.db, delta)}


@mcp.tool()
def agit_remove_agent(ctx: Context, name: str) -> dict:
    """Delete an agent, returning its claimed tasks to pending and releasing its worktrees."""
    try:
        agents_mod.remove_agent(_ctx(ctx).db, name)
    except AgitError as e:
        return {"error": str(e)}
    return {"removed": name}


@mcp.tool()
def agit_list_agents(ctx: Context) -> list[dict]:
    """List registered agents."""
    return [_agent_to_dict(a) for a in agents_mod.list_agents(_ctx(ctx).db)]


# ── Resources ─────────────────────────────────────────────────────────────────
# Resources open their own connection; they have no request context.


def _resource_db():
    return get_db(get_config().db_path)


@mcp.resource("agit://repos", mime_type="application/json")
def repos_resource() -> str:
    """All registered repositories with summary counts."""
    with _resource_db() as db:
        return json.dumps([_repo_summary(db, r) for r in repos_mod.list_repos(db)], indent=2)


@mcp.resource("agit://agents", mime_type="application/json")
def agents_resource() -> str:
    """All registered agents."""
    with _resource_db() as db:
        return json.dumps([_agent_to_dict(a) for a in agents_mod.list_agents(db)], indent=2)


@mcp.resource("agit://repos/{name}", mime_type="application/json")
def repo_resource(name: str) -> str:
    """One repository with its active worktrees."""
    with _resource_db() as db:
        r = repos_mod.require_repo(db, name)
        names = _agent_names(db)
        d = _repo_summary(db, r)
        d["worktrees"] = [
            _worktree_to_dict(w, names)
            for w in worktrees_mod.list_worktrees(db, r.id, status="active")
        ]
        return json.dumps(d, indent=2)


@mcp.resource("agit://repos/{name}/conflicts", mime_type="application/json")
def conflicts_resource(name: str) -> str:
    """Current cross-worktree file conflicts for a repository."""
    with _resource_db() as db:
        r = repos_mod.require_repo(db, name)
        found = conflicts_mod.detect_conflicts(db, r)
        return json.dumps([_conflict_to_dict(c) for c in found], indent=2)


@mcp.resource("agit://repos/{name}/tasks", mime_type="application/json")
def tasks_resource(name: str) -> str:
    """Tasks of a repository."""
    with _resource_db() as db:
        r = repos_mod.require_repo(db, name)
        names = _agent_names(db)
        return json.dumps([_task_to_dict(t, names) for t in tasks_mod.list_tasks(db, r.id)], indent=2)


# ── Helpers ───────────────────────────────────────────────────────────────────


def _resolve_agent(db: sqlite3.Connection, token: str):
    agent = agents_mod.get_agent_by_name(db, token) or agents_mod.get_agent(db, token)
    if not agent:
        raise NotFoundError(f"agent {token!r} not found")
    return agent


def _agent_names(db: sqlite3.Connection) -> dict[str, str]:
    return {a.id: a.name for a in agents_mod.list_agents(db)}


def _iso(value):
    return value.isoformat() if value else None


def _repo_to_dict(repo) -> dict:
    return {
        "id": repo.id,
        "name": repo.name,
        "path": repo.path,
        "remote_url": repo.remote_url,
        "default_branch": repo.default_branch,
        "added_at": _iso(repo.added_at),
    }


def _repo_summary(db: sqlite3.Connection, repo) -> dict:
    d = _repo_to_dict(repo)
    stats = repos_mod.get_repo_stats(db, repo.id)
    d["active_worktrees"] = stats.active_worktrees
    d["pending_tasks"] = stats.pending_tasks
    d["active_agents"] = stats.active_agents
    return d


def _worktree_to_dict(wt, names: dict) -> dict:
    d = {
        "id": wt.id,
        "path": wt.path,
        "branch": wt.branch,
        "status": wt.status,
        "created_at": _iso(wt.created_at),
    }
    if wt.agent_id:
        d["agent_id"] = wt.agent_id
        d["agent"] = names.get(wt.agent_id)
    if wt.task_description:
        d["task"] = wt.task_description
    return d


def _task_to_dict(task, names: dict) -> dict:
    d = {
        "id": task.id,
        "description": task.description,
        "priority": task.priority,
        "status": task.status,
        "created_at": _iso(task.created_at),
    }
    if task.assigned_agent_id:
        d["agent_id"] = task.assigned_agent_id
        d["agent"] = names.get(task.assigned_agent_id)
    if task.worktree_id:
        d["worktree_id"] = task.worktree_id
    if task.completed_at:
        d["completed_at"] = _iso(task.completed_at)
    if task.result:
        d["result"] = task.result
    return d


def _agent_to_dict(agent) -> dict:
    return {
        "id": agent.id,
        "name": agent.name,
        "type": agent.type,
        "status": agent.status,
        "current_worktree_id": agent.current_worktree_id,
        "last_seen": _iso(agent.last_seen),
    }


def _conflict_to_dict(conflict) -> dict:
    return {
        "file": conflict.file_path,
        "worktrees": [
            {
                "id": e.worktree_id,
                "agent": e.agent_name,
                "task": e.task_description,
            }
            for e in conflict.entries
        ],
    }
