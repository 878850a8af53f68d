"""MCP prompt templates for coordinating agents through agit."""

from agit.config import get_config
from agit.mcp.server import mcp


@mcp.prompt()
def start_work(repo: str, agent: str) -> str:
    """Generate a prompt for an agent picking up work in a repo."""
    interval = get_config().heartbeat_interval
    return (
        f"You are agent '{agent}' working in the '{repo}' repository.\n\n"
        f"1. Register yourself with agit_register_agent.\n"
        f"2. Use agit_list_tasks with status 'pending' and pick the highest priority task.\n"
        f"3. Claim it with agit_claim_task. If the claim fails, another agent got it first; pick another.\n"
        f"4. Create your worktree with agit_spawn_worktree, passing the task description and your name.\n"
        f"5. Mark the task started with agit_start_task and do all your edits inside the worktree path.\n"
        f"6. Call agit_heartbeat every {interval} while you work so you are not marked stale.\n"
        f"7. When done, call agit_complete_task (or agit_fail_task with a reason)."
    )


@mcp.prompt()
def resolve_conflicts(repo: str) -> str:
    """Generate a prompt to review overlapping edits between worktrees."""
    return (
        f"Check the '{repo}' repository for files being modified by more than one agent.\n\n"
        f"Use agit_check_conflicts to rescan the active worktrees, then for each conflicting file:\n"
        f"1. Identify which worktrees and agents touch it and what each task is\n"
        f"2. Decide which worktree should be merged first\n"
        f"3. Suggest how the other agents should adapt their changes\n\n"
        f"Do not merge anything until the overlap has been sorted out."
    )


@mcp.prompt()
def merge_ready(repo: str) -> str:
    """Generate a prompt to merge finished worktrees."""
    return (
        f"Merge the finished work in the '{repo}' repository.\n\n"
        f"Use agit_repo_status to find active worktrees whose tasks are completed. "
        f"For each one, call agit_merge_worktree with cleanup enabled. "
        f"If a merge is refused because it would conflict, report the worktree and stop."
    )
