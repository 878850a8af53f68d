"""Configuration loading from ~/.agit/config.toml and environment variables."""

import os
import re
import tomllib
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

from agit.errors import InvalidInputError

DEFAULT_CONFIG_TOML = """\
[server]
transport = "stdio"
port = 3847

[defaults]
branch_prefix = "agit/"
worktree_dir = ".worktrees"
cleanup_stale_after = "24h"
auto_conflict_check = true

[agent]
heartbeat_interval = "30s"
stale_after = "5m"
"""

TRANSPORTS = ("stdio", "sse")

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600}


def parse_duration(value: str) -> timedelta:
    """Parse a Go-style duration string such as '30s', '5m' or '1h30m'."""
    text = value.strip()
    pos = 0
    seconds = 0.0
    for match in _DURATION_RE.finditer(text):
        if match.start() != pos:
            break
        seconds += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    if not text or pos != len(text):
        raise InvalidInputError(f"invalid duration {value!r}")
    return timedelta(seconds=seconds)


def agit_home() -> Path:
    if home := os.environ.get("AGIT_HOME"):
        return Path(home)
    return Path.home() / ".agit"


@dataclass
class Config:
    home: Path = field(default_factory=agit_home)
    db_path: Path | None = None
    transport: str = "stdio"
    port: int = 3847
    branch_prefix: str = "agit/"
    worktree_dir: str = ".worktrees"
    cleanup_stale_after: str = "24h"
    auto_conflict_check: bool = True
    heartbeat_interval: str = "30s"
    stale_after: str = "5m"

    def __post_init__(self):
        if self.db_path is None:
            self.db_path = self.home / "agit.db"

    @property
    def config_path(self) -> Path:
        return self.home / "config.toml"

    @property
    def stale_after_delta(self) -> timedelta:
        return parse_duration(self.stale_after)

    @property
    def cleanup_stale_after_delta(self) -> timedelta:
        return parse_duration(self.cleanup_stale_after)

    def apply_toml(self, data: dict) -> None:
        server = data.get("server", {})
        defaults = data.get("defaults", {})
        agent = data.get("agent", {})

        self.transport = server.get("transport", self.transport)
        if self.transport not in TRANSPORTS:
            raise InvalidInputError(
                f"invalid transport {self.transport!r} (expected one of: {', '.join(TRANSPORTS)})"
            )
        self.port = int(server.get("port", self.port))
        self.branch_prefix = defaults.get("branch_prefix", self.branch_prefix)
        self.worktree_dir = defaults.get("worktree_dir", self.worktree_dir)
        self.cleanup_stale_after = defaults.get("cleanup_stale_after", self.cleanup_stale_after)
        self.auto_conflict_check = bool(defaults.get("auto_conflict_check", self.auto_conflict_check))
        self.heartbeat_interval = agent.get("heartbeat_interval", self.heartbeat_interval)
        self.stale_after = agent.get("stale_after", self.stale_after)

    @classmethod
    def load(cls) -> "Config":
        config = cls()

        if config.config_path.exists():
            try:
                data = tomllib.loads(config.config_path.read_text())
            except tomllib.TOMLDecodeError as e:
                raise InvalidInputError(f"could not parse config {config.config_path}: {e}") from e
            config.apply_toml(data)

        if db := os.environ.get("AGIT_DB_PATH"):
            config.db_path = Path(db)

        if prefix := os.environ.get("AGIT_BRANCH_PREFIX"):
            config.branch_prefix = prefix

        if wt_dir := os.environ.get("AGIT_WORKTREE_DIR"):
            config.worktree_dir = wt_dir

        if stale := os.environ.get("AGIT_STALE_AFTER"):
            config.stale_after = stale

        return config


def get_config() -> Config:
    return Config.load()


def write_default_config(config: Config, overwrite: bool = False) -> bool:
    """Write the default config file. Returns False if one already exists."""
    config.home.mkdir(parents=True, exist_ok=True)
    if config.config_path.exists() and not overwrite:
        return False
    config.config_path.write_text(DEFAULT_CONFIG_TOML)
    return True
