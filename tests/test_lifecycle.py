"""Tests for spawning, merging, pruning and cleanup against real git repos."""

import shutil
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from agit.config import Config
from agit.core import agents as agents_mod
from agit.core import lifecycle
from agit.core import tasks as tasks_mod
from agit.core import worktrees as worktrees_mod
from agit.db.engine import format_dt
from agit.errors import ConflictError
from agit.integrations import git
from agit.integrations.git import GitError


@pytest.fixture
def config(agit_env):
    return Config(home=agit_env)


def _failing(*args):
    raise GitError("simulated failure")


class TestSpawn:
    def test_spawn_creates_worktree(self, db, repo, config, helpers):
        wt = lifecycle.spawn_worktree(db, repo, config, agent_name="alice", task="Fix login flow")

        assert Path(wt.path).is_dir()
        assert wt.path.startswith(str(Path(repo.path) / ".worktrees" / "agit-"))
        assert wt.branch.startswith("agit/fix-login-flow-")
        assert wt.id[:8] in wt.branch
        assert helpers.run(wt.path, "rev-parse", "--abbrev-ref", "HEAD") == wt.branch

        agent = agents_mod.get_agent_by_name(db, "alice")
        assert wt.agent_id == agent.id
        assert agent.current_worktree_id == wt.id

    def test_spawn_without_task(self, db, repo, config):
        wt = lifecycle.spawn_worktree(db, repo, config)
        assert wt.branch == f"agit/{wt.id[:8]}"
        assert wt.agent_id is None

    def test_custom_branch(self, db, repo, config):
        wt = lifecycle.spawn_worktree(db, repo, config, branch="feature/x")
        assert wt.branch == "feature/x"
        assert git.branch_exists(repo.path, "feature/x")

    def test_existing_branch_fails_and_records_nothing(self, db, repo, config, helpers):
        helpers.run(repo.path, "branch", "taken")
        with pytest.raises(GitError):
            lifecycle.spawn_worktree(db, repo, config, branch="taken")
        assert worktrees_mod.list_worktrees(db, repo.id) == []

    def test_record_failure_removes_workspace_and_branch(self, db, repo, config, monkeypatch):
        def disk_full(*args, **kwargs):
            raise sqlite3.OperationalError("database or disk is full")

        monkeypatch.setattr(worktrees_mod, "create_worktree", disk_full)
        with pytest.raises(sqlite3.OperationalError):
            lifecycle.spawn_worktree(db, repo, config, branch="retry-me")

        assert list((Path(repo.path) / ".worktrees").glob("agit-*")) == []
        assert not git.branch_exists(repo.path, "retry-me")
        assert "retry-me" not in git.run_git(["worktree", "list", "--porcelain"], cwd=repo.path)

        monkeypatch.undo()
        wt = lifecycle.spawn_worktree(db, repo, config, branch="retry-me")
        assert Path(wt.path).is_dir()
        assert [w.id for w in worktrees_mod.list_worktrees(db, repo.id)] == [wt.id]

    def test_reuses_registered_agent(self, db, repo, config):
        agent = agents_mod.register_agent(db, "alice")
        wt = lifecycle.spawn_worktree(db, repo, config, agent_name="alice")
        assert wt.agent_id == agent.id
        assert len(agents_mod.list_agents(db)) == 1


class TestPrune:
    def test_vanished_directory_marked_stale(self, db, repo, config):
        gone = lifecycle.spawn_worktree(db, repo, config)
        kept = lifecycle.spawn_worktree(db, repo, config)
        shutil.rmtree(gone.path)

        assert lifecycle.prune_orphans(db, repo.id) == 1
        assert worktrees_mod.get_worktree(db, gone.id).status == "stale"
        assert worktrees_mod.get_worktree(db, kept.id).status == "active"
        assert lifecycle.prune_orphans(db, repo.id) == 0


class TestRemove:
    def test_remove(self, db, repo, config):
        wt = lifecycle.spawn_worktree(db, repo, config, agent_name="alice")
        report = lifecycle.remove_worktree(db, repo, wt)

        assert report.warnings == []
        assert not Path(wt.path).exists()
        assert not git.branch_exists(repo.path, wt.branch)
        assert worktrees_mod.get_worktree(db, wt.id) is None
        assert agents_mod.get_agent_by_name(db, "alice").current_worktree_id is None

    def test_failing_git_steps_still_delete_row(self, db, repo):
        wt = worktrees_mod.create_worktree(db, repo.id, "/nowhere", "agit/ghost")
        report = lifecycle.remove_worktree(
            db, repo, wt, remove_workspace=_failing, delete_branch=_failing
        )

        assert worktrees_mod.get_worktree(db, wt.id) is None
        assert [s.ok for s in report.steps] == [False, False]
        assert len(report.warnings) == 2
        assert "simulated failure" in report.warnings[0]

    def test_missing_branch_is_a_warning(self, db, repo):
        wt = worktrees_mod.create_worktree(db, repo.id, "/nowhere", "agit/never-created")
        report = lifecycle.remove_worktree(db, repo, wt)
        assert worktrees_mod.get_worktree(db, wt.id) is None
        assert any(w.startswith("delete branch") for w in report.warnings)


class TestCleanup:
    def test_removes_completed_and_stale(self, db, repo):
        active = worktrees_mod.create_worktree(db, repo.id, repo.path, "agit/active")
        done = worktrees_mod.create_worktree(db, repo.id, "/x1", "agit/done")
        worktrees_mod.update_worktree_status(db, done.id, "completed")
        stale = worktrees_mod.create_worktree(db, repo.id, "/x2", "agit/stale")
        worktrees_mod.update_worktree_status(db, stale.id, "stale")

        removed = lifecycle.cleanup_worktrees(db, remove_workspace=_failing, delete_branch=_failing)

        assert sorted(wt.id for _, wt, _ in removed) == sorted([done.id, stale.id])
        assert worktrees_mod.get_worktree(db, active.id) is not None

    def test_stale_only(self, db, repo):
        done = worktrees_mod.create_worktree(db, repo.id, repo.path, "agit/done")
        worktrees_mod.update_worktree_status(db, done.id, "completed")
        stale = worktrees_mod.create_worktree(db, repo.id, repo.path, "agit/stale")
        worktrees_mod.update_worktree_status(db, stale.id, "stale")

        removed = lifecycle.cleanup_worktrees(
            db, stale_only=True, remove_workspace=_failing, delete_branch=_failing
        )

        assert [wt.id for _, wt, _ in removed] == [stale.id]
        assert worktrees_mod.get_worktree(db, done.id) is not None

    def test_stale_grace_keeps_recently_stale(self, db, repo):
        old = worktrees_mod.create_worktree(db, repo.id, "/x1", "agit/old")
        worktrees_mod.update_worktree_status(db, old.id, "stale")
        recent = worktrees_mod.create_worktree(db, repo.id, "/x2", "agit/recent")
        worktrees_mod.update_worktree_status(db, recent.id, "stale")
        done = worktrees_mod.create_worktree(db, repo.id, "/x3", "agit/done")
        worktrees_mod.update_worktree_status(db, done.id, "completed")

        later = datetime.now(timezone.utc) + timedelta(hours=25)
        db.execute(
            "UPDATE worktrees SET updated_at = ? WHERE id = ?",
            (format_dt(later - timedelta(hours=1)), recent.id),
        )
        db.commit()

        removed = lifecycle.cleanup_worktrees(
            db,
            stale_grace=timedelta(hours=24),
            now=later,
            remove_workspace=_failing,
            delete_branch=_failing,
        )

        assert sorted(wt.id for _, wt, _ in removed) == sorted([old.id, done.id])
        assert worktrees_mod.get_worktree(db, recent.id).status == "stale"

    def test_orphans_become_eligible(self, db, repo):
        orphan = worktrees_mod.create_worktree(db, repo.id, "/does/not/exist", "agit/orphan")
        removed = lifecycle.cleanup_worktrees(
            db, stale_only=True, remove_workspace=_failing, delete_branch=_failing
        )
        assert [wt.id for _, wt, _ in removed] == [orphan.id]


class TestMerge:
    def test_merge_clean(self, db, repo, config, helpers):
        wt = lifecycle.spawn_worktree(db, repo, config, task="add feature")
        helpers.commit(wt.path, "feature.txt", "hello\n")

        report = lifecycle.merge_worktree(db, repo, wt)

        assert report is None
        assert (Path(repo.path) / "feature.txt").read_text() == "hello\n"
        assert worktrees_mod.get_worktree(db, wt.id).status == "completed"
        assert f"Merge {wt.branch} via agit" in helpers.run(repo.path, "log", "-1", "--format=%s")

    def test_merge_with_cleanup(self, db, repo, config, helpers):
        wt = lifecycle.spawn_worktree(db, repo, config)
        helpers.commit(wt.path, "feature.txt", "hello\n")

        report = lifecycle.merge_worktree(db, repo, wt, cleanup=True)

        assert report is not None
        assert worktrees_mod.get_worktree(db, wt.id) is None
        assert not Path(wt.path).exists()

    def test_conflicting_merge_refused(self, db, repo, config, helpers):
        wt = lifecycle.spawn_worktree(db, repo, config)
        helpers.commit(wt.path, "README.md", "branch version\n")
        helpers.commit(repo.path, "README.md", "main version\n")

        with pytest.raises(ConflictError):
            lifecycle.merge_worktree(db, repo, wt)

        assert worktrees_mod.get_worktree(db, wt.id).status == "active"
        assert (Path(repo.path) / "README.md").read_text() == "main version\n"
        assert helpers.run(repo.path, "status", "--porcelain", "--untracked-files=no") == ""

    def test_merge_checks_out_default_branch(self, db, repo, config, helpers):
        wt = lifecycle.spawn_worktree(db, repo, config)
        helpers.commit(wt.path, "feature.txt", "hello\n")
        helpers.run(repo.path, "checkout", "-b", "scratch")

        lifecycle.merge_worktree(db, repo, wt)

        assert git.get_current_branch(repo.path) == "main"
        assert (Path(repo.path) / "feature.txt").exists()


class TestTaskFlow:
    def test_claim_spawn_start_complete(self, db, repo, config):
        agent = agents_mod.register_agent(db, "alice")
        task = tasks_mod.create_task(db, repo.id, "Write docs", priority=1)
        tasks_mod.claim_task(db, task.id, agent.id)
        wt = lifecycle.spawn_worktree(db, repo, config, agent_name="alice", task=task.description)
        tasks_mod.start_task(db, task.id, wt.id)
        done = tasks_mod.complete_task(db, task.id, "done")

        assert done.status == "completed"
        assert done.worktree_id == wt.id
        assert done.assigned_agent_id == agent.id
