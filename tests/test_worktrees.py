"""Tests for worktree records and id prefix resolution."""

import pytest

from agit.core import agents as agents_mod
from agit.core import repos as repos_mod
from agit.core import tasks as tasks_mod
from agit.core import worktrees as worktrees_mod
from agit.errors import AmbiguousError, InvalidInputError, NotFoundError


@pytest.fixture
def api(db):
    return repos_mod.add_repo(db, "api", "/src/api")


def _wt(db, repo, worktree_id, branch=None):
    return worktrees_mod.create_worktree(
        db, repo.id, f"/src/{worktree_id}", branch or f"agit/{worktree_id}", worktree_id=worktree_id
    )


class TestRecords:
    def test_create_starts_active(self, db, api):
        wt = worktrees_mod.create_worktree(db, api.id, "/p", "agit/x", task_description="fix auth")
        assert wt.status == "active"
        assert wt.task_description == "fix auth"
        assert wt.created_at == wt.updated_at
        assert len(wt.short_id) == 12

    def test_list_filters_by_status(self, db, api):
        a = _wt(db, api, "aaaa1111")
        b = _wt(db, api, "bbbb2222")
        worktrees_mod.update_worktree_status(db, b.id, "completed")

        assert [w.id for w in worktrees_mod.list_worktrees(db, api.id, status="active")] == [a.id]
        assert len(worktrees_mod.list_worktrees(db, api.id)) == 2

    def test_list_newest_first(self, db, api):
        first = _wt(db, api, "aaaa1111")
        second = _wt(db, api, "bbbb2222")
        assert [w.id for w in worktrees_mod.list_worktrees(db, api.id)] == [second.id, first.id]

    def test_list_rejects_unknown_status(self, db, api):
        with pytest.raises(InvalidInputError):
            worktrees_mod.list_worktrees(db, api.id, status="exploded")

    def test_update_status_validates(self, db, api):
        wt = _wt(db, api, "aaaa1111")
        with pytest.raises(InvalidInputError):
            worktrees_mod.update_worktree_status(db, wt.id, "merged")
        with pytest.raises(NotFoundError):
            worktrees_mod.update_worktree_status(db, "missing", "stale")

    def test_update_status_bumps_updated_at(self, db, api):
        wt = _wt(db, api, "aaaa1111")
        worktrees_mod.update_worktree_status(db, wt.id, "stale")
        updated = worktrees_mod.get_worktree(db, wt.id)
        assert updated.status == "stale"
        assert updated.updated_at >= wt.updated_at

    def test_delete_clears_references(self, db, api):
        wt = _wt(db, api, "aaaa1111")
        agent = agents_mod.register_agent(db, "alice")
        agents_mod.set_agent_worktree(db, agent.id, wt.id)
        task = tasks_mod.create_task(db, api.id, "something")
        tasks_mod.claim_task(db, task.id, agent.id)
        tasks_mod.start_task(db, task.id, wt.id)

        assert worktrees_mod.delete_worktree(db, wt.id)
        assert not worktrees_mod.delete_worktree(db, wt.id)
        assert agents_mod.get_agent(db, agent.id).current_worktree_id is None
        assert tasks_mod.get_task(db, task.id).worktree_id is None

    def test_list_all_active_spans_repos(self, db, api):
        web = repos_mod.add_repo(db, "web", "/src/web")
        _wt(db, api, "aaaa1111")
        _wt(db, web, "bbbb2222")
        assert len(worktrees_mod.list_all_active_worktrees(db)) == 2


class TestResolve:
    def test_exact_id(self, db, api):
        wt = _wt(db, api, "abcdef12-0000")
        assert worktrees_mod.resolve_worktree(db, api.id, "abcdef12-0000").id == wt.id

    def test_exact_id_wins_over_prefix(self, db, api):
        short = _wt(db, api, "abcd")
        _wt(db, api, "abcd-longer")
        assert worktrees_mod.resolve_worktree(db, api.id, "abcd").id == short.id

    def test_unique_prefix(self, db, api):
        wt = _wt(db, api, "abcdef12-0000")
        _wt(db, api, "99999999-0000")
        assert worktrees_mod.resolve_worktree(db, api.id, "abcd").id == wt.id

    def test_ambiguous_prefix(self, db, api):
        _wt(db, api, "abcd1111")
        _wt(db, api, "abcd2222")
        with pytest.raises(AmbiguousError):
            worktrees_mod.resolve_worktree(db, api.id, "abcd")

    def test_no_match(self, db, api):
        _wt(db, api, "abcd1111")
        with pytest.raises(NotFoundError):
            worktrees_mod.resolve_worktree(db, api.id, "ffff")

    def test_short_prefix_rejected(self, db, api):
        _wt(db, api, "abcd1111")
        with pytest.raises(InvalidInputError):
            worktrees_mod.resolve_worktree(db, api.id, "abc")

    def test_other_repo_not_visible(self, db, api):
        web = repos_mod.add_repo(db, "web", "/src/web")
        _wt(db, web, "abcd1111")
        with pytest.raises(NotFoundError):
            worktrees_mod.resolve_worktree(db, api.id, "abcd")
        with pytest.raises(NotFoundError):
            worktrees_mod.resolve_worktree(db, api.id, "abcd1111")

    def test_prefix_is_literal(self, db, api):
        _wt(db, api, "ab%d1111")
        with pytest.raises(NotFoundError):
            worktrees_mod.resolve_worktree(db, api.id, "abcd")
