"""JSON status API for agit."""

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from agit.config import get_config
from agit.core import agents as agents_mod
from agit.core import conflicts as conflicts_mod
from agit.core import repos as repos_mod
from agit.core import tasks as tasks_mod
from agit.core import worktrees as worktrees_mod
from agit.db.engine import init_db
from agit.errors import InvalidInputError


def _get_db():
    config = get_config()
    return init_db(config.db_path)


def _repo_or_404(db, request: Request):
    name = request.path_params["name"]
    repo = repos_mod.get_repo(db, name)
    if not repo:
        return None, JSONResponse({"error": f"Repo not found: {name}"}, status_code=404)
    return repo, None


# ── Handlers ──────────────────────────────────────────────────────────────────


async def api_list_repos(request: Request):
    db = _get_db()
    try:
        return JSONResponse([_repo_dict(db, r) for r in repos_mod.list_repos(db)])
    finally:
        db.close()


async def api_get_repo(request: Request):
    db = _get_db()
    try:
        repo, missing = _repo_or_404(db, request)
        if missing:
            return missing
        return JSONResponse(_repo_dict(db, repo))
    finally:
        db.close()


async def api_repo_worktrees(request: Request):
    status_filter = request.query_params.get("status")
    db = _get_db()
    try:
        repo, missing = _repo_or_404(db, request)
        if missing:
            return missing
        names = _agent_names(db)
        wts = worktrees_mod.list_worktrees(db, repo.id, status=status_filter)
        return JSONResponse([_worktree_dict(w, names) for w in wts])
    except InvalidInputError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    finally:
        db.close()


async def api_repo_tasks(request: Request):
    status_filter = request.query_params.get("status")
    db = _get_db()
    try:
        repo, missing = _repo_or_404(db, request)
        if missing:
            return missing
        names = _agent_names(db)
        tasks = tasks_mod.list_tasks(db, repo.id, status=status_filter)
        return JSONResponse([_task_dict(t, names) for t in tasks])
    except InvalidInputError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    finally:
        db.close()


def api_repo_conflicts(request: Request):
    """Diff every active worktree against the default branch.

    Not read-only: the stored file touches are refreshed from the diffs.
    Declared sync so Starlette runs the git calls in its threadpool.
    """
    db = _get_db()
    try:
        repo, missing = _repo_or_404(db, request)
        if missing:
            return missing
        found = conflicts_mod.detect_conflicts(db, repo)
        return JSONResponse({
            "repo": repo.name,
            "count": len(found),
            "conflicts": [_conflict_dict(c) for c in found],
        })
    finally:
        db.close()


async def api_list_agents(request: Request):
    db = _get_db()
    try:
        return JSONResponse([_agent_dict(a) for a in agents_mod.list_agents(db)])
    finally:
        db.close()


# ── Serialization ─────────────────────────────────────────────────────────────


def _agent_names(db) -> dict:
    return {a.id: a.name for a in agents_mod.list_agents(db)}


def _repo_dict(db, r) -> dict:
    stats = repos_mod.get_repo_stats(db, r.id)
    return {
        "id": r.id,
        "name": r.name,
        "path": r.path,
        "remote_url": r.remote_url,
        "default_branch": r.default_branch,
        "added_at": r.added_at.isoformat() if r.added_at else None,
        "active_worktrees": stats.active_worktrees,
        "pending_tasks": stats.pending_tasks,
        "active_agents": stats.active_agents,
    }


def _worktree_dict(w, names: dict) -> dict:
    return {
        "id": w.id,
        "path": w.path,
        "branch": w.branch,
        "status": w.status,
        "agent_id": w.agent_id,
        "agent": names.get(w.agent_id) if w.agent_id else None,
        "task": w.task_description,
        "created_at": w.created_at.isoformat() if w.created_at else None,
        "updated_at": w.updated_at.isoformat() if w.updated_at else None,
    }


def _task_dict(t, names: dict) -> dict:
    return {
        "id": t.id,
        "description": t.description,
        "priority": t.priority,
        "status": t.status,
        "agent_id": t.assigned_agent_id,
        "agent": names.get(t.assigned_agent_id) if t.assigned_agent_id else None,
        "worktree_id": t.worktree_id,
        "result": t.result,
        "created_at": t.created_at.isoformat() if t.created_at else None,
        "completed_at": t.completed_at.isoformat() if t.completed_at else None,
    }


def _agent_dict(a) -> dict:
    return {
        "id": a.id,
        "name": a.name,
        "type": a.type,
        "status": a.status,
        "current_worktree_id": a.current_worktree_id,
        "last_seen": a.last_seen.isoformat() if a.last_seen else None,
    }


def _conflict_dict(c) -> dict:
    return {
        "file": c.file_path,
        "worktrees": [
            {"id": e.worktree_id, "agent": e.agent_name, "task": e.task_description}
            for e in c.entries
        ],
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app() -> Starlette:
    routes = [
        Route("/api/repos", api_list_repos),
        Route("/api/repos/{name}", api_get_repo),
        Route("/api/repos/{name}/worktrees", api_repo_worktrees),
        Route("/api/repos/{name}/tasks", api_repo_tasks),
        Route("/api/repos/{name}/conflicts", api_repo_conflicts),
        Route("/api/agents", api_list_agents),
    ]
    return Starlette(routes=routes)


def run_server(host: str = "127.0.0.1", port: int = 3847):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
