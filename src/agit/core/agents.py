"""Agent registration, liveness tracking and removal."""

import logging
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone

from agit.db.engine import format_dt, parse_dt, transaction, utcnow
from agit.db.models import Agent
from agit.errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)


# ── Row-to-model helpers ────────────────────────────────────────────────────


def _row_to_agent(row: sqlite3.Row) -> Agent:
    return Agent(
        id=row["id"],
        name=row["name"],
        type=row["type"],
        status=row["status"],
        current_worktree_id=row["current_worktree_id"],
        last_seen=parse_dt(row["last_seen"]),
    )


# ── Registration ────────────────────────────────────────────────────────────


def register_agent(db: sqlite3.Connection, name: str, agent_type: str = "custom") -> Agent:
    """Register a new agent. Names are unique; look up by name first."""
    agent_id = str(uuid.uuid4())
    try:
        db.execute(
            "INSERT INTO agents (id, name, type, status, last_seen) VALUES (?, ?, ?, 'active', ?)",
            (agent_id, name, agent_type, utcnow()),
        )
        db.commit()
    except sqlite3.IntegrityError as e:
        db.rollback()
        raise ConflictError(f"agent {name!r} is already registered") from e
    logger.info("registered agent %s (%s)", name, agent_id)
    return get_agent(db, agent_id)


def get_or_register_agent(db: sqlite3.Connection, name: str, agent_type: str = "custom") -> Agent:
    """Return the agent with this name, registering it on a miss."""
    agent = get_agent_by_name(db, name)
    if agent:
        return agent
    try:
        return register_agent(db, name, agent_type)
    except ConflictError:
        # Another process registered the same name in between.
        return get_agent_by_name(db, name)


def get_agent(db: sqlite3.Connection, agent_id: str) -> Agent | None:
    row = db.execute("SELECT * FROM agents WHERE id = ?", (agent_id,)).fetchone()
    if not row:
        return None
    return _row_to_agent(row)


def get_agent_by_name(db: sqlite3.Connection, name: str) -> Agent | None:
    row = db.execute("SELECT * FROM agents WHERE name = ?", (name,)).fetchone()
    if not row:
        return None
    return _row_to_agent(row)


def list_agents(db: sqlite3.Connection) -> list[Agent]:
    rows = db.execute("SELECT * FROM agents ORDER BY name").fetchall()
    return [_row_to_agent(r) for r in rows]


# ── Liveness ────────────────────────────────────────────────────────────────


def heartbeat(db: sqlite3.Connection, agent_id: str) -> Agent:
    """Refresh last_seen. Any heartbeat puts the agent back to 'active'."""
    cur = db.execute(
        "UPDATE agents SET last_seen = ?, status = 'active' WHERE id = ?",
        (utcnow(), agent_id),
    )
    db.commit()
    if cur.rowcount == 0:
        raise NotFoundError(f"agent {agent_id!r} not found")
    return get_agent(db, agent_id)


def set_agent_worktree(db: sqlite3.Connection, agent_id: str, worktree_id: str | None) -> None:
    """Point an agent at its current worktree (or clear it); counts as a sighting."""
    cur = db.execute(
        "UPDATE agents SET current_worktree_id = ?, last_seen = ? WHERE id = ?",
        (worktree_id, utcnow(), agent_id),
    )
    db.commit()
    if cur.rowcount == 0:
        raise NotFoundError(f"agent {agent_id!r} not found")


def sweep_stale_agents(
    db: sqlite3.Connection,
    stale_after: timedelta,
    now: datetime | None = None,
) -> int:
    """Mark active agents unseen for longer than stale_after as disconnected."""
    now = now or datetime.now(timezone.utc)
    cutoff = format_dt(now - stale_after)
    cur = db.execute(
        "UPDATE agents SET status = 'disconnected' WHERE status = 'active' AND last_seen < ?",
        (cutoff,),
    )
    db.commit()
    if cur.rowcount:
        logger.info("marked %d stale agent(s) disconnected", cur.rowcount)
    return cur.rowcount


# ── Removal ─────────────────────────────────────────────────────────────────


def remove_agent(db: sqlite3.Connection, name: str) -> Agent:
    """Soft-release an agent's tasks and worktrees, then delete it.

    Claimed and in-progress tasks go back to 'pending' with no assignee and
    worktrees stop referencing the agent, all in the same transaction as the
    delete.
    """
    agent = get_agent_by_name(db, name)
    if not agent:
        raise NotFoundError(f"agent {name!r} not found")

    with transaction(db):
        released = db.execute(
            """UPDATE tasks SET status = 'pending', assigned_agent_id = NULL
               WHERE assigned_agent_id = ? AND status IN ('claimed', 'in_progress')""",
            (agent.id,),
        ).rowcount
        db.execute("UPDATE worktrees SET agent_id = NULL WHERE agent_id = ?", (agent.id,))
        db.execute("DELETE FROM agents WHERE id = ?", (agent.id,))

    logger.info("removed agent %s, released %d task(s)", name, released)
    return agent
