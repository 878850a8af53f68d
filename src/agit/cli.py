"""CLI entry point for agit."""

import json
import logging
import os
import sqlite3
import sys
from importlib.metadata import PackageNotFoundError, version

import click

from agit import issuelink
from agit.config import TRANSPORTS, get_config, parse_duration, write_default_config
from agit.core import agents as agents_mod
from agit.core import conflicts as conflicts_mod
from agit.core import lifecycle
from agit.core import repos as repos_mod
from agit.core import tasks as tasks_mod
from agit.core import worktrees as worktrees_mod
from agit.db.engine import get_db
from agit.errors import AgitError, InvalidInputError, NotFoundError, is_user_error
from agit.integrations import git

logger = logging.getLogger(__name__)

try:
    __version__ = version("agit")
except PackageNotFoundError:
    __version__ = "unknown"


def _get_db():
    config = get_config()
    return get_db(config.db_path)


class AgitGroup(click.Group):
    """Turns agit errors into a one-line message and a non-zero exit."""

    def invoke(self, ctx):
        try:
            return super().invoke(ctx)
        except (click.ClickException, click.exceptions.Exit, click.Abort):
            raise
        except (AgitError, sqlite3.Error) as e:
            _report_error(e, user_error=is_user_error(e))
        except Exception as e:
            logger.debug("unexpected failure", exc_info=True)
            _report_error(e, user_error=False)
        ctx.exit(1)


def _report_error(e: BaseException, user_error: bool):
    click.echo(f"Error: {e}", err=True)
    if not user_error and issuelink.enabled():
        link = issuelink.build(e, sys.argv, __version__)
        click.echo(f"\nTo report this bug, open:\n  {link}", err=True)


@click.group(cls=AgitGroup)
@click.version_option(__version__, prog_name="agit")
@click.option("--verbose", "-v", count=True, help="Increase log verbosity (-v info, -vv debug)")
def main(verbose):
    """agit - Git worktree orchestration for multiple agents"""
    level = os.environ.get("AGIT_LOG_LEVEL")
    if not level:
        level = {0: "WARNING", 1: "INFO"}.get(verbose, "DEBUG")
    logging.basicConfig(
        level=level.upper(),
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


# ── Setup Commands ────────────────────────────────────────────────────────────


@main.command("init")
def init_command():
    """Create ~/.agit/, a default config and the registry database."""
    config = get_config()
    wrote = write_default_config(config)
    with get_db(config.db_path):
        pass
    click.echo("agit initialized")
    click.echo(f"  Config:   {config.config_path}{'' if wrote else ' (kept existing)'}")
    click.echo(f"  Database: {config.db_path}")


# ── Repo Commands ─────────────────────────────────────────────────────────────


@main.command("add")
@click.argument("path", type=click.Path(exists=True, file_okay=False))
@click.option("--name", default=None, help="Repo name (defaults to the directory name)")
def add_repo(path, name):
    """Register a Git repository."""
    repo_path = os.path.abspath(path)
    if not git.is_repository(repo_path):
        raise InvalidInputError(f"{repo_path} is not a Git repository")

    name = name or os.path.basename(repo_path)
    remote_url = git.get_remote_url(repo_path)
    default_branch = git.get_default_branch(repo_path)

    with _get_db() as db:
        repo = repos_mod.add_repo(db, name, repo_path, remote_url, default_branch)
        click.echo(f"Registered repo: {repo.name}")
        click.echo(f"  Path: {repo.path}")
        click.echo(f"  Branch: {repo.default_branch}")
        if repo.remote_url:
            click.echo(f"  Remote: {repo.remote_url}")


@main.command("repos")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def list_repos(json_output):
    """List registered repositories."""
    with _get_db() as db:
        repos = repos_mod.list_repos(db)
        stats = {r.id: repos_mod.get_repo_stats(db, r.id) for r in repos}

    if json_output:
        out = []
        for r in repos:
            d = _repo_dict(r)
            d["active_worktrees"] = stats[r.id].active_worktrees
            d["pending_tasks"] = stats[r.id].pending_tasks
            out.append(d)
        click.echo(json.dumps(out, indent=2))
        return

    if not repos:
        click.echo("No repositories registered. Add one with: agit add <path>")
        return

    for r in repos:
        s = stats[r.id]
        click.echo(
            f"  {r.name}  {r.path}  [{r.default_branch}]  "
            f"{s.active_worktrees} active worktree(s), {s.pending_tasks} pending task(s)"
        )


@main.command("remove")
@click.argument("name")
def remove_repo(name):
    """Unregister a repository (its worktree records and tasks go with it)."""
    with _get_db() as db:
        repos_mod.remove_repo(db, name)
    click.echo(f"Removed: {name}")


# ── Worktree Commands ────────────────────────────────────────────────────────


@main.command("spawn")
@click.argument("repo")
@click.option("--task", "-t", default=None, help="Description of what the agent will do")
@click.option("--branch", "-b", default=None, help="Custom branch name (auto-generated if omitted)")
@click.option("--agent", "-a", default=None, help="Agent name to assign this worktree to")
def spawn(repo, task, branch, agent):
    """Create an isolated worktree for an agent."""
    config = get_config()
    with get_db(config.db_path) as db:
        r = repos_mod.require_repo(db, repo)
        wt = lifecycle.spawn_worktree(db, r, config, branch=branch, agent_name=agent, task=task)
    click.echo(f"Created worktree: {wt.id}")
    click.echo(f"  Path: {wt.path}")
    click.echo(f"  Branch: {wt.branch}")
    if agent:
        click.echo(f"  Agent: {agent}")
    if task:
        click.echo(f"  Task: {task}")


@main.group("worktree")
def worktree_group():
    """Manage worktrees."""
    pass


@worktree_group.command("list")
@click.argument("repo")
@click.option("--status", default=None, help="Filter: active, completed, stale, conflict")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def worktree_list(repo, status, json_output):
    """List a repo's worktrees (vanished directories are marked stale first)."""
    with _get_db() as db:
        r = repos_mod.require_repo(db, repo)
        lifecycle.prune_orphans(db, r.id)
        wts = worktrees_mod.list_worktrees(db, r.id, status=status)
        names = _agent_names(db)

    if json_output:
        click.echo(json.dumps([_worktree_dict(w, names) for w in wts], indent=2))
        return

    if not wts:
        click.echo("No worktrees found.")
        return
    for w in wts:
        agent = names.get(w.agent_id, "-") if w.agent_id else "-"
        task = f"  task: {w.task_description}" if w.task_description else ""
        click.echo(f"  [{w.status}] {w.short_id}  {w.branch}  agent: {agent}{task}")


@worktree_group.command("rm")
@click.argument("repo")
@click.argument("worktree_id")
def worktree_rm(repo, worktree_id):
    """Remove a worktree from disk and from the registry."""
    with _get_db() as db:
        r = repos_mod.require_repo(db, repo)
        wt = worktrees_mod.resolve_worktree(db, r.id, worktree_id)
        report = lifecycle.remove_worktree(db, r, wt)
    for warning in report.warnings:
        click.echo(f"  Warning: {warning}", err=True)
    click.echo(f"Removed worktree: {wt.short_id} ({wt.branch})")


@worktree_group.command("prune")
@click.argument("repo")
def worktree_prune(repo):
    """Mark active worktrees whose directory is gone as stale."""
    with _get_db() as db:
        r = repos_mod.require_repo(db, repo)
        count = lifecycle.prune_orphans(db, r.id)
    click.echo(f"Marked {count} worktree(s) stale.")


@main.command("merge")
@click.argument("repo")
@click.argument("worktree_id")
@click.option("--skip-conflict-check", is_flag=True, help="Skip the pre-merge dry run")
@click.option("--cleanup", is_flag=True, help="Remove worktree and branch after merging")
def merge(repo, worktree_id, skip_conflict_check, cleanup):
    """Merge a worktree's branch into the repo's default branch."""
    with _get_db() as db:
        r = repos_mod.require_repo(db, repo)
        wt = worktrees_mod.resolve_worktree(db, r.id, worktree_id)
        report = lifecycle.merge_worktree(
            db, r, wt, skip_conflict_check=skip_conflict_check, cleanup=cleanup
        )
    click.echo(f"Merged {wt.branch} into {r.default_branch}")
    if report:
        for warning in report.warnings:
            click.echo(f"  Warning: {warning}", err=True)
        click.echo("  Cleaned up worktree and branch")


@main.command("cleanup")
@click.option("--stale", "stale_only", is_flag=True, help="Remove only stale worktrees")
@click.option("--all", "ignore_grace", is_flag=True, help="Also remove recently stale worktrees")
def cleanup(stale_only, ignore_grace):
    """Remove completed and stale worktrees across all repos.

    Stale worktrees are kept until they have been stale for the configured
    cleanup_stale_after period, unless --all is given.
    """
    grace = None if ignore_grace else get_config().cleanup_stale_after_delta
    with _get_db() as db:
        removed = lifecycle.cleanup_worktrees(db, stale_only=stale_only, stale_grace=grace)
    if not removed:
        click.echo("Nothing to clean up.")
        return
    for repo, wt, report in removed:
        click.echo(f"  Removed: {wt.short_id} ({repo.name}) - {wt.status}")
        for warning in report.warnings:
            click.echo(f"    Warning: {warning}", err=True)
    click.echo(f"Cleaned up {len(removed)} worktree(s).")


@main.command("conflicts")
@click.argument("repo")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def conflicts(repo, json_output):
    """Find files modified in more than one active worktree."""
    with _get_db() as db:
        r = repos_mod.require_repo(db, repo)
        found = conflicts_mod.detect_conflicts(db, r)

    if json_output:
        click.echo(json.dumps([_conflict_dict(c) for c in found], indent=2))
        return
    click.echo(conflicts_mod.format_report(found))


@main.command("status")
@click.argument("repo", required=False)
def status(repo):
    """Show active worktrees, pending tasks and conflicts."""
    config = get_config()
    with get_db(config.db_path) as db:
        repos = [repos_mod.require_repo(db, repo)] if repo else repos_mod.list_repos(db)
        if not repos:
            click.echo("No repositories registered. Add one with: agit add <path>")
            return

        names = _agent_names(db)
        for r in repos:
            lifecycle.prune_orphans(db, r.id)
            click.echo(f"REPO: {r.name} ({r.default_branch})")

            active = worktrees_mod.list_worktrees(db, r.id, status="active")
            if active:
                click.echo("  Active worktrees:")
                for w in active:
                    agent = names.get(w.agent_id, "-") if w.agent_id else "-"
                    click.echo(
                        f"    {w.short_id}  branch:{w.branch}  agent:{agent}  task:{w.task_description or ''}"
                    )
            else:
                click.echo("  No active worktrees.")

            pending = tasks_mod.list_tasks(db, r.id, status="pending")
            click.echo(f"  Pending tasks: {len(pending)}")

            if config.auto_conflict_check and len(active) > 1:
                found = conflicts_mod.detect_conflicts(db, r)
                if found:
                    click.echo(f"  Conflicts: {len(found)} file(s)")
                    for c in found:
                        click.echo(f"    {c.file_path}: {', '.join(w[:12] for w in c.worktree_ids)}")
            click.echo("")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("repo")
@click.argument("description")
@click.option("--priority", "-p", default=0, type=int, help="Priority (higher is more urgent)")
def task_add(repo, description, priority):
    """Create a new pending task."""
    with _get_db() as db:
        r = repos_mod.require_repo(db, repo)
        task = tasks_mod.create_task(db, r.id, description, priority)
    click.echo(f"Created task: {task.id}")
    click.echo(f"  Description: {task.description}")
    click.echo(f"  Priority: {task.priority}")


@task_group.command("list")
@click.argument("repo")
@click.option("--status", default=None, help="Filter by status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(repo, status, json_output):
    """List a repo's tasks, most urgent first."""
    with _get_db() as db:
        r = repos_mod.require_repo(db, repo)
        tasks = tasks_mod.list_tasks(db, r.id, status=status)
        names = _agent_names(db)

    if json_output:
        click.echo(json.dumps([_task_dict(t, names) for t in tasks], indent=2))
        return

    if not tasks:
        click.echo("No tasks found.")
        return

    status_icons = {
        "pending": "○",
        "claimed": "◐",
        "in_progress": "●",
        "completed": "✓",
        "failed": "✗",
    }
    for t in tasks:
        icon = status_icons.get(t.status, "?")
        agent = f" [agent: {names.get(t.assigned_agent_id, t.assigned_agent_id)}]" if t.assigned_agent_id else ""
        click.echo(f"  {icon} P{t.priority} {t.id}: {t.description} ({t.status}){agent}")


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            raise NotFoundError(f"task {task_id!r} not found")
        names = _agent_names(db)

    click.echo(f"Task: {task.id}")
    click.echo(f"  Description: {task.description}")
    click.echo(f"  Priority: {task.priority}")
    click.echo(f"  Status: {task.status}")
    if task.assigned_agent_id:
        click.echo(f"  Agent: {names.get(task.assigned_agent_id, task.assigned_agent_id)}")
    if task.worktree_id:
        click.echo(f"  Worktree: {task.worktree_id}")
    if task.created_at:
        click.echo(f"  Created: {task.created_at}")
    if task.completed_at:
        click.echo(f"  Finished: {task.completed_at}")
    if task.result:
        click.echo(f"  Result: {task.result}")


@task_group.command("claim")
@click.argument("task_id")
@click.argument("agent")
def task_claim(task_id, agent):
    """Atomically claim a pending task for an agent (name or id)."""
    with _get_db() as db:
        a = _resolve_agent(db, agent)
        task = tasks_mod.claim_task(db, task_id, a.id)
    click.echo(f"Claimed {task.id} for {a.name}")


@task_group.command("start")
@click.argument("repo")
@click.argument("task_id")
@click.argument("worktree_id")
def task_start(repo, task_id, worktree_id):
    """Mark a task in progress in a worktree."""
    with _get_db() as db:
        r = repos_mod.require_repo(db, repo)
        wt = worktrees_mod.resolve_worktree(db, r.id, worktree_id)
        task = tasks_mod.start_task(db, task_id, wt.id)
    click.echo(f"Started {task.id} in worktree {wt.short_id}")


@task_group.command("done")
@click.argument("task_id")
@click.option("--result", "-r", default=None, help="Result summary")
def task_done(task_id, result):
    """Mark a task as completed."""
    with _get_db() as db:
        task = tasks_mod.complete_task(db, task_id, result)
    click.echo(f"Completed task: {task.id}")


@task_group.command("fail")
@click.argument("task_id")
@click.option("--result", "-r", default=None, help="Failure reason")
def task_fail(task_id, result):
    """Mark a task as failed."""
    with _get_db() as db:
        task = tasks_mod.fail_task(db, task_id, result)
    click.echo(f"Failed task: {task.id}")


# ── Agent Commands ───────────────────────────────────────────────────────────


@main.group("agent")
def agent_group():
    """Manage registered agents."""
    pass


@agent_group.command("register")
@click.argument("name")
@click.option("--type", "agent_type", default="custom", help="Agent type (e.g. claude, custom)")
def agent_register(name, agent_type):
    """Register an agent (returns the existing one if the name is taken)."""
    with _get_db() as db:
        agent = agents_mod.get_or_register_agent(db, name, agent_type)
    click.echo(f"Agent: {agent.name} ({agent.id})")


@agent_group.command("list")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def agent_list(json_output):
    """List registered agents."""
    with _get_db() as db:
        agents = agents_mod.list_agents(db)

    if json_output:
        click.echo(json.dumps([_agent_dict(a) for a in agents], indent=2))
        return

    if not agents:
        click.echo("No agents registered. Agents are created when spawning worktrees with --agent.")
        return
    for a in agents:
        seen = a.last_seen.strftime("%Y-%m-%d %H:%M") if a.last_seen else "-"
        click.echo(f"  [{a.status}] {a.name} ({a.type})  {a.id[:12]}  last seen {seen}")


@agent_group.command("heartbeat")
@click.argument("agent")
def agent_heartbeat(agent):
    """Record that an agent (name or id) is alive."""
    with _get_db() as db:
        a = agents_mod.heartbeat(db, _resolve_agent(db, agent).id)
    click.echo(f"Heartbeat recorded for {a.name}")


@agent_group.command("sweep")
@click.option("--stale-after", default=None, help="Duration such as 5m (defaults to config)")
def agent_sweep(stale_after):
    """Mark agents not seen recently as disconnected."""
    config = get_config()
    delta = parse_duration(stale_after) if stale_after else config.stale_after_delta
    with get_db(config.db_path) as db:
        count = agents_mod.sweep_stale_agents(db, delta)
    click.echo(f"Swept {count} stale agent(s)")


@agent_group.command("remove")
@click.argument("name")
def agent_remove(name):
    """Release an agent's tasks and worktrees, then delete it."""
    with _get_db() as db:
        agents_mod.remove_agent(db, name)
    click.echo(f"Removed agent {name!r}")


# ── Server Commands ──────────────────────────────────────────────────────────


@main.command("serve")
@click.option(
    "--transport",
    type=click.Choice(TRANSPORTS),
    default=None,
    help="MCP transport (defaults to config)",
)
@click.option("--port", default=None, type=int, help="Port for the sse transport (defaults to config)")
def serve(transport, port):
    """Start the MCP server."""
    from agit.mcp.server import mcp
    from agit.mcp import prompts  # noqa: F401 - registers prompts

    config = get_config()
    transport = transport or config.transport
    if transport == "sse":
        mcp.settings.port = port or config.port
        logger.info("serving MCP over sse on port %d", mcp.settings.port)
    mcp.run(transport=transport)


@main.command("web")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=None, type=int, help="Port to listen on (defaults to config)")
def web(host, port):
    """Serve the JSON status API."""
    from agit.web.app import run_server

    port = port or get_config().port
    click.echo(f"Serving status API at http://{host}:{port}")
    run_server(host=host, port=port)


# ── Helpers ───────────────────────────────────────────────────────────────────


def _resolve_agent(db, token: str):
    agent = agents_mod.get_agent_by_name(db, token) or agents_mod.get_agent(db, token)
    if not agent:
        raise NotFoundError(f"agent {token!r} not found")
    return agent


def _agent_names(db) -> dict[str, str]:
    return {a.id: a.name for a in agents_mod.list_agents(db)}


def _iso(value):
    return value.isoformat() if value else None


def _repo_dict(r) -> dict:
    return {
        "id": r.id,
        "name": r.name,
        "path": r.path,
        "remote_url": r.remote_url,
        "default_branch": r.default_branch,
        "added_at": _iso(r.added_at),
    }


def _worktree_dict(w, names: dict) -> dict:
    return {
        "id": w.id,
        "path": w.path,
        "branch": w.branch,
        "status": w.status,
        "agent": names.get(w.agent_id) if w.agent_id else None,
        "task": w.task_description,
        "created_at": _iso(w.created_at),
    }


def _task_dict(t, names: dict) -> dict:
    return {
        "id": t.id,
        "description": t.description,
        "priority": t.priority,
        "status": t.status,
        "agent": names.get(t.assigned_agent_id) if t.assigned_agent_id else None,
        "worktree_id": t.worktree_id,
        "created_at": _iso(t.created_at),
        "completed_at": _iso(t.completed_at),
        "result": t.result,
    }


def _agent_dict(a) -> dict:
    return {
        "id": a.id,
        "name": a.name,
        "type": a.type,
        "status": a.status,
        "current_worktree_id": a.current_worktree_id,
        "last_seen": _iso(a.last_seen),
    }


def _conflict_dict(c) -> dict:
    return {
        "file": c.file_path,
        "worktrees": [
            {"id": e.worktree_id, "agent": e.agent_name, "task": e.task_description}
            for e in c.entries
        ],
    }


if __name__ == "__main__":
    main()
