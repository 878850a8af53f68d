"""Shared fixtures: an isolated agit home and throwaway git repositories."""

import subprocess
from pathlib import Path

import pytest

from agit.core import repos as repos_mod
from agit.db.engine import init_db

GIT_IDENTITY = {
    "GIT_AUTHOR_NAME": "Test",
    "GIT_AUTHOR_EMAIL": "test@test.com",
    "GIT_COMMITTER_NAME": "Test",
    "GIT_COMMITTER_EMAIL": "test@test.com",
}


def git(cwd, *args) -> str:
    result = subprocess.run(["git", *args], cwd=cwd, capture_output=True, text=True, check=True)
    return result.stdout.strip()


def commit_file(cwd, name: str, content: str, message: str | None = None):
    """Write a file in a checkout and commit it."""
    path = Path(cwd) / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    git(cwd, "add", name)
    git(cwd, "commit", "-m", message or f"edit {name}")


@pytest.fixture(autouse=True)
def agit_env(monkeypatch, tmp_path):
    """Point agit at a temp home and give git a committer identity."""
    for k, v in GIT_IDENTITY.items():
        monkeypatch.setenv(k, v)
    home = tmp_path / "agit-home"
    monkeypatch.setenv("AGIT_HOME", str(home))
    monkeypatch.setenv("AGIT_DB_PATH", str(home / "agit.db"))
    for k in (
        "AGIT_BRANCH_PREFIX",
        "AGIT_WORKTREE_DIR",
        "AGIT_STALE_AFTER",
        "AGIT_LOG_LEVEL",
        "AGIT_NO_ISSUE_LINK",
    ):
        monkeypatch.delenv(k, raising=False)
    return home


@pytest.fixture
def git_repo(tmp_path):
    """A git repo on branch main with one commit."""
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init")
    git(repo, "checkout", "-b", "main")
    commit_file(repo, "README.md", "# Test\n", "init")
    return repo


@pytest.fixture
def db(agit_env):
    conn = init_db(agit_env / "agit.db")
    yield conn
    conn.close()


@pytest.fixture
def repo(db, git_repo):
    """The git_repo fixture registered as 'demo'."""
    return repos_mod.add_repo(db, "demo", str(git_repo), "", "main")


@pytest.fixture
def helpers():
    """Git helpers for tests that build commits inside worktrees."""

    class Helpers:
        run = staticmethod(git)
        commit = staticmethod(commit_file)

    return Helpers
