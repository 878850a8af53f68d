"""Tests for agent registration, liveness and removal."""

from datetime import datetime, timedelta, timezone

import pytest

from agit.core import agents as agents_mod
from agit.core import repos as repos_mod
from agit.core import tasks as tasks_mod
from agit.core import worktrees as worktrees_mod
from agit.db.engine import format_dt
from agit.errors import ConflictError, NotFoundError


def _set_last_seen(db, agent_id, when):
    db.execute("UPDATE agents SET last_seen = ? WHERE id = ?", (format_dt(when), agent_id))
    db.commit()


class TestRegistration:
    def test_register(self, db):
        agent = agents_mod.register_agent(db, "alice", "claude")
        assert agent.status == "active"
        assert agent.type == "claude"
        assert agent.last_seen is not None
        assert agents_mod.get_agent_by_name(db, "alice").id == agent.id

    def test_duplicate_name(self, db):
        agents_mod.register_agent(db, "alice")
        with pytest.raises(ConflictError):
            agents_mod.register_agent(db, "alice")

    def test_get_or_register_reuses(self, db):
        first = agents_mod.get_or_register_agent(db, "bob")
        second = agents_mod.get_or_register_agent(db, "bob")
        assert first.id == second.id
        assert len(agents_mod.list_agents(db)) == 1


class TestHeartbeat:
    def test_refreshes_and_reactivates(self, db):
        agent = agents_mod.register_agent(db, "alice")
        old = datetime.now(timezone.utc) - timedelta(hours=1)
        _set_last_seen(db, agent.id, old)
        db.execute("UPDATE agents SET status = 'disconnected' WHERE id = ?", (agent.id,))
        db.commit()

        beat = agents_mod.heartbeat(db, agent.id)
        assert beat.status == "active"
        assert beat.last_seen > old

    def test_unknown_agent(self, db):
        with pytest.raises(NotFoundError):
            agents_mod.heartbeat(db, "no-such-agent")


class TestSweep:
    def test_only_stale_agents_disconnected(self, db):
        now = datetime.now(timezone.utc)
        stale = agents_mod.register_agent(db, "stale")
        fresh = agents_mod.register_agent(db, "fresh")
        _set_last_seen(db, stale.id, now - timedelta(minutes=10))
        _set_last_seen(db, fresh.id, now - timedelta(minutes=1))

        swept = agents_mod.sweep_stale_agents(db, timedelta(minutes=5), now=now)

        assert swept == 1
        assert agents_mod.get_agent(db, stale.id).status == "disconnected"
        assert agents_mod.get_agent(db, fresh.id).status == "active"

    def test_sweep_is_repeatable(self, db):
        now = datetime.now(timezone.utc)
        agent = agents_mod.register_agent(db, "stale")
        _set_last_seen(db, agent.id, now - timedelta(minutes=10))
        assert agents_mod.sweep_stale_agents(db, timedelta(minutes=5), now=now) == 1
        assert agents_mod.sweep_stale_agents(db, timedelta(minutes=5), now=now) == 0


class TestRemoval:
    def test_soft_release(self, db):
        repo = repos_mod.add_repo(db, "api", "/src/api")
        agent = agents_mod.register_agent(db, "alice")
        wt = worktrees_mod.create_worktree(db, repo.id, "/p", "agit/x", agent.id)

        claimed = tasks_mod.create_task(db, repo.id, "claimed")
        tasks_mod.claim_task(db, claimed.id, agent.id)
        running = tasks_mod.create_task(db, repo.id, "running")
        tasks_mod.claim_task(db, running.id, agent.id)
        tasks_mod.start_task(db, running.id, wt.id)
        done = tasks_mod.create_task(db, repo.id, "done")
        tasks_mod.claim_task(db, done.id, agent.id)
        tasks_mod.complete_task(db, done.id, "ok")

        agents_mod.remove_agent(db, "alice")

        assert agents_mod.get_agent(db, agent.id) is None
        for t in (claimed, running):
            released = tasks_mod.get_task(db, t.id)
            assert released.status == "pending"
            assert released.assigned_agent_id is None
        finished = tasks_mod.get_task(db, done.id)
        assert finished.status == "completed"
        assert finished.assigned_agent_id is None
        assert worktrees_mod.get_worktree(db, wt.id).agent_id is None

    def test_released_task_can_be_claimed_again(self, db):
        repo = repos_mod.add_repo(db, "api", "/src/api")
        alice = agents_mod.register_agent(db, "alice")
        bob = agents_mod.register_agent(db, "bob")
        task = tasks_mod.create_task(db, repo.id, "handoff")
        tasks_mod.claim_task(db, task.id, alice.id)

        agents_mod.remove_agent(db, "alice")

        assert tasks_mod.claim_task(db, task.id, bob.id).assigned_agent_id == bob.id

    def test_remove_unknown(self, db):
        with pytest.raises(NotFoundError):
            agents_mod.remove_agent(db, "ghost")
