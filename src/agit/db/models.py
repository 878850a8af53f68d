"""Data models for the agit registry."""

from dataclasses import dataclass, field
from datetime import datetime

WORKTREE_STATUSES = ("active", "completed", "stale", "conflict")
AGENT_STATUSES = ("active", "idle", "disconnected")
TASK_STATUSES = ("pending", "claimed", "in_progress", "completed", "failed")
CHANGE_TYPES = ("added", "modified", "deleted", "renamed")


@dataclass
class Repo:
    id: str
    name: str
    path: str
    remote_url: str = ""
    default_branch: str = "main"
    added_at: datetime | None = None
    last_synced: datetime | None = None
    metadata: str = "{}"


@dataclass
class RepoStats:
    active_worktrees: int = 0
    pending_tasks: int = 0
    active_agents: int = 0


@dataclass
class Worktree:
    id: str
    repo_id: str
    path: str
    branch: str
    agent_id: str | None = None
    task_description: str | None = None
    status: str = "active"
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def short_id(self) -> str:
        return self.id[:12]


@dataclass
class Agent:
    id: str
    name: str
    type: str = "custom"
    status: str = "active"
    current_worktree_id: str | None = None
    last_seen: datetime | None = None


@dataclass
class Task:
    id: str
    repo_id: str
    description: str
    priority: int = 0
    status: str = "pending"
    assigned_agent_id: str | None = None
    worktree_id: str | None = None
    created_at: datetime | None = None
    completed_at: datetime | None = None
    result: str | None = None


@dataclass
class FileTouch:
    file_path: str
    change_type: str = "modified"
    repo_id: str = ""
    worktree_id: str = ""
    updated_at: datetime | None = None


@dataclass
class ConflictEntry:
    worktree_id: str
    agent_id: str | None = None
    agent_name: str | None = None
    task_description: str | None = None


@dataclass
class Conflict:
    """A file touched by two or more active worktrees of one repository."""

    file_path: str
    entries: list[ConflictEntry] = field(default_factory=list)

    @property
    def worktree_ids(self) -> list[str]:
        return [e.worktree_id for e in self.entries]


@dataclass
class StepResult:
    """Outcome of a best-effort external step; failure is recorded, not raised."""

    step: str
    ok: bool = True
    error: str | None = None


@dataclass
class CleanupReport:
    worktree_id: str
    path: str
    branch: str
    steps: list[StepResult] = field(default_factory=list)

    @property
    def warnings(self) -> list[str]:
        return [f"{s.step}: {s.error}" for s in self.steps if not s.ok]
