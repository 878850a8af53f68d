"""Git subprocess wrappers for worktree, branch, diff and merge operations."""

import logging
import shutil
import subprocess
from pathlib import Path

from agit.errors import AgitError

logger = logging.getLogger(__name__)


class GitError(AgitError):
    """Raised when a git command fails."""


def run_git(args: list[str], cwd: str | Path | None = None) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    cmd = ["git"] + args
    logger.debug("running %s in %s", " ".join(cmd), cwd)
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
        )
        return result.stdout.strip()
    except subprocess.CalledProcessError as e:
        raise GitError(f"git {' '.join(args)} failed: {e.stderr.strip()}") from e
    except OSError as e:
        raise GitError(f"git {' '.join(args)} failed: {e}") from e


def _succeeds(args: list[str], cwd: str | Path) -> bool:
    try:
        run_git(args, cwd=cwd)
        return True
    except GitError:
        return False


# ── Repository inspection ───────────────────────────────────────────────────


def is_repository(path: str | Path) -> bool:
    """Check for a .git directory (normal repo) or file (linked worktree)."""
    git_path = Path(path) / ".git"
    return git_path.is_dir() or git_path.is_file()


def get_remote_url(repo_path: str | Path) -> str | None:
    """Return the origin remote URL, or None for local-only repos."""
    try:
        return run_git(["remote", "get-url", "origin"], cwd=repo_path) or None
    except GitError:
        return None


def get_default_branch(repo_path: str | Path) -> str:
    """Best-effort default branch detection.

    Tries origin's HEAD symbolic ref, then local main/master, then whatever
    HEAD currently points to, and finally falls back to "main".
    """
    try:
        ref = run_git(["symbolic-ref", "refs/remotes/origin/HEAD", "--short"], cwd=repo_path)
        _, _, branch = ref.partition("/")
        return branch or ref
    except GitError:
        pass

    for candidate in ("main", "master"):
        if branch_exists(repo_path, candidate):
            return candidate

    try:
        return get_current_branch(repo_path) or "main"
    except GitError:
        return "main"


def has_commits(repo_path: str | Path) -> bool:
    return _succeeds(["rev-parse", "--verify", "HEAD"], repo_path)


def branch_exists(repo_path: str | Path, branch: str) -> bool:
    """Check if a branch ref can be resolved."""
    return _succeeds(["rev-parse", "--verify", "--quiet", branch], repo_path)


def get_current_branch(repo_path: str | Path) -> str:
    return run_git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=repo_path)


# ── Worktrees ───────────────────────────────────────────────────────────────


def create_workspace(
    repo_path: str | Path,
    workspace_path: str | Path,
    branch: str,
    base_branch: str,
) -> None:
    """Create a linked worktree on a new branch forked from base_branch.

    If base_branch cannot be resolved, HEAD is used instead; an empty repo
    first gets an empty initial commit so there is something to branch from.
    """
    Path(workspace_path).parent.mkdir(parents=True, exist_ok=True)

    base = base_branch
    if not branch_exists(repo_path, base):
        if not has_commits(repo_path):
            run_git(
                ["commit", "--allow-empty", "-m", "initial commit (auto-created by agit)"],
                cwd=repo_path,
            )
        base = "HEAD"

    run_git(["worktree", "add", "-b", branch, str(workspace_path), base], cwd=repo_path)


def remove_workspace(repo_path: str | Path, workspace_path: str | Path) -> None:
    """Remove a worktree, falling back to deleting the directory and pruning."""
    try:
        run_git(["worktree", "remove", str(workspace_path), "--force"], cwd=repo_path)
        return
    except GitError as e:
        logger.warning("git worktree remove failed for %s, removing manually: %s", workspace_path, e)

    shutil.rmtree(workspace_path, ignore_errors=True)
    run_git(["worktree", "prune"], cwd=repo_path)


def delete_branch(repo_path: str | Path, branch: str) -> None:
    """Force-delete a local branch."""
    run_git(["branch", "-D", branch], cwd=repo_path)


# ── Diffs ───────────────────────────────────────────────────────────────────

_STATUS_KINDS = {"A": "added", "D": "deleted", "R": "renamed"}


def parse_name_status(output: str) -> dict[str, str]:
    """Parse `git diff --name-status -z` output into {path: change kind}.

    Fields are NUL-separated and paths are never quoted. Each record is a
    status followed by one path, or two for renames and copies, in which
    case the destination is recorded.
    """
    files: dict[str, str] = {}
    fields = output.split("\0")
    i = 0
    while i < len(fields):
        status = fields[i]
        if not status:
            i += 1
            continue
        width = 2 if status[:1] in ("R", "C") else 1
        paths = fields[i + 1 : i + 1 + width]
        i += 1 + width
        if len(paths) < width or not paths[-1]:
            break
        files[paths[-1]] = _STATUS_KINDS.get(status[:1], "modified")
    return files


def diff_files_with_status(repo_path: str | Path, base_branch: str, branch: str) -> dict[str, str]:
    """Files changed on branch since it forked from base_branch."""
    output = run_git(["diff", "--name-status", "-z", f"{base_branch}...{branch}"], cwd=repo_path)
    return parse_name_status(output)


# ── Merging ─────────────────────────────────────────────────────────────────


def can_merge_cleanly(repo_path: str | Path, branch: str) -> bool:
    """Dry-run merge of branch into the checked-out branch.

    The attempt is always aborted afterwards, whatever the outcome.
    """
    try:
        run_git(["merge", "--no-commit", "--no-ff", branch], cwd=repo_path)
        clean = True
    except GitError:
        clean = False
    finally:
        if not _succeeds(["merge", "--abort"], repo_path):
            logger.debug("nothing to abort after dry-run merge of %s", branch)
    return clean


def merge_branch(repo_path: str | Path, branch: str) -> None:
    run_git(["merge", branch, "--no-ff", "-m", f"Merge {branch} via agit"], cwd=repo_path)


def checkout_branch(repo_path: str | Path, branch: str) -> None:
    run_git(["checkout", branch], cwd=repo_path)
