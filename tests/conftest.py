"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime, timedelta
from pathlib import Path

import pytest
from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from imi.queue.models import GoalCreate, Priority, TaskCreate, TaskView
from imi.queue.repository import QueueRepository
from imi.storage.common import to_db_datetime, utc_now
from imi.storage.sqlmodel_models import Task

_IMI_ENV = (
    "IMI_DB",
    "IMI_AGENT_ID",
    "IMI_LEASE_TTL_SECONDS",
    "IMI_SQLITE_BUSY_TIMEOUT_MS",
    "IMI_ORCHESTRATE_WORKERS",
    "IMI_ORCHESTRATE_POLL_SECONDS",
    "IMI_PING_INTERVAL_SECONDS",
    "IMI_CHECKPOINT_INTERVAL_SECONDS",
    "IMI_RUNNER_COMMAND",
    "IMI_RUNNER_TIMEOUT_SECONDS",
)


@pytest.fixture(autouse=True)
def _clean_imi_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _IMI_ENV:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / ".imi" / "state.db"


@pytest.fixture()
def repository(db_path: Path) -> Iterator[QueueRepository]:
    repo = QueueRepository(db_path)
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


def add_goal_with_tasks(
    repository: QueueRepository,
    *priorities: Priority,
    name: str = "Ship queue",
) -> tuple[str, list[TaskView]]:
    goal = repository.add_goal(GoalCreate(name=name))
    tasks = [
        repository.add_task(
            goal_ref=goal.id,
            payload=TaskCreate(title=f"task-{index}-{priority.value}", priority=priority),
        )
        for index, priority in enumerate(priorities)
    ]
    return goal.id, tasks


def set_task_times(
    repository: QueueRepository,
    task_id: str,
    *,
    last_ping_at: datetime | None = None,
    updated_at: datetime | None = None,
) -> None:
    values: dict[str, datetime | None] = {}
    if last_ping_at is not None:
        values["last_ping_at"] = to_db_datetime(last_ping_at)
    if updated_at is not None:
        values["updated_at"] = to_db_datetime(updated_at)
    with Session(repository.engine) as session:
        session.exec(sa_update(Task).where(col(Task.id) == task_id).values(**values))
        session.commit()


def seconds_ago(seconds: float) -> datetime:
    return utc_now() - timedelta(seconds=seconds)
