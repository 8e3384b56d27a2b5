"""Runtime configuration for the goal/task queue."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

STATE_DIR_NAME = ".imi"
STATE_DB_NAME = "state.db"


@dataclass(slots=True)
class LeaseSettings:
    """Lease and store locking policy."""

    ttl_seconds: int = 1_800
    sqlite_busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class OrchestratorSettings:
    """Worker pool and lifecycle watchdog settings."""

    workers: int = 2
    poll_interval_seconds: float = 0.25
    ping_interval_seconds: float = 60.0
    checkpoint_interval_seconds: float = 0.0
    runner_command: str | None = None
    runner_timeout_seconds: float | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(STATE_DIR_NAME) / STATE_DB_NAME
    agent_id: str = "agent"
    lease: LeaseSettings = field(default_factory=LeaseSettings)
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None, agent_id: str | None = None) -> Settings:
        """Load settings from environment; explicit arguments win."""

        return cls(
            db_path=db_path or _env_path("IMI_DB") or discover_db_path(),
            agent_id=(agent_id or "").strip() or current_agent(),
            lease=LeaseSettings(
                ttl_seconds=_env_int("IMI_LEASE_TTL_SECONDS", 1_800),
                sqlite_busy_timeout_ms=_env_int("IMI_SQLITE_BUSY_TIMEOUT_MS", 5_000),
            ),
            orchestrator=OrchestratorSettings(
                workers=_env_int("IMI_ORCHESTRATE_WORKERS", 2),
                poll_interval_seconds=_env_float("IMI_ORCHESTRATE_POLL_SECONDS", 0.25),
                ping_interval_seconds=_env_float("IMI_PING_INTERVAL_SECONDS", 60.0),
                checkpoint_interval_seconds=_env_float("IMI_CHECKPOINT_INTERVAL_SECONDS", 0.0),
                runner_command=os.getenv("IMI_RUNNER_COMMAND", "").strip() or None,
                runner_timeout_seconds=_env_optional_float("IMI_RUNNER_TIMEOUT_SECONDS"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on out-of-range values."""

        if self.lease.ttl_seconds <= 0:
            raise ValueError("IMI_LEASE_TTL_SECONDS must be > 0.")
        if self.lease.sqlite_busy_timeout_ms <= 0:
            raise ValueError("IMI_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.orchestrator.workers < 1:
            raise ValueError("IMI_ORCHESTRATE_WORKERS must be >= 1.")
        if self.orchestrator.poll_interval_seconds <= 0:
            raise ValueError("IMI_ORCHESTRATE_POLL_SECONDS must be > 0.")
        if self.orchestrator.ping_interval_seconds < 0:
            raise ValueError("IMI_PING_INTERVAL_SECONDS must be >= 0.")
        if self.orchestrator.checkpoint_interval_seconds < 0:
            raise ValueError("IMI_CHECKPOINT_INTERVAL_SECONDS must be >= 0.")
        timeout = self.orchestrator.runner_timeout_seconds
        if timeout is not None and timeout <= 0:
            raise ValueError("IMI_RUNNER_TIMEOUT_SECONDS must be > 0.")


def discover_db_path(start: Path | None = None) -> Path:
    """Nearest ``.imi/state.db`` walking up from ``start``, else the user data dir."""

    current = (start or Path.cwd()).resolve()
    for directory in (current, *current.parents):
        candidate = directory / STATE_DIR_NAME / STATE_DB_NAME
        if candidate.exists():
            return candidate
    return Path.home() / ".local" / "share" / "imi" / STATE_DB_NAME


def current_agent() -> str:
    for name in ("IMI_AGENT_ID", "USER", "USERNAME"):
        value = os.getenv(name, "").strip()
        if value:
            return value
    return "agent"


def _env_path(name: str) -> Path | None:
    value = os.getenv(name, "").strip()
    return Path(value).expanduser() if value else None


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {raw!r}") from error


def _env_float(name: str, default: float) -> float:
    value = _env_optional_float(name)
    return default if value is None else value


def _env_optional_float(name: str) -> float | None:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError as error:
        raise ValueError(f"Invalid numeric value for {name}: {raw!r}") from error
