"""Controllers for queue CLI commands."""

from __future__ import annotations

import os
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TypeVar

from imi.config import STATE_DB_NAME, STATE_DIR_NAME, Settings
from imi.queue.errors import ValidationError
from imi.queue.models import (
    ClaimOutcome,
    GoalCreate,
    GoalView,
    MemoryType,
    Priority,
    TaskCreate,
    TaskStatus,
    TaskView,
)
from imi.queue.orchestrator import QueueOrchestrator
from imi.queue.repository import QueueRepository

_T = TypeVar("_T")


@dataclass(slots=True)
class InitCommand:
    db_path: Path | None


@dataclass(slots=True)
class ListGoalsCommand:
    """CLI input for goal listing."""

    db_path: Path | None
    include_archived: bool = True


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None
    goal: str | None
    limit: int = 200


@dataclass(slots=True)
class AddGoalCommand:
    """CLI input for goal creation."""

    db_path: Path | None
    name: str
    description: str = ""
    why: str = ""
    for_who: str = ""
    success_signal: str = ""
    priority: str = Priority.MEDIUM.value
    relevant_files: tuple[str, ...] = ()
    workspace_path: str | None = None


@dataclass(slots=True)
class AddTaskCommand:
    """CLI input for task creation."""

    db_path: Path | None
    goal: str
    title: str
    description: str = ""
    why: str = ""
    context: str = ""
    priority: str = Priority.MEDIUM.value
    acceptance_criteria: str | None = None
    relevant_files: tuple[str, ...] = ()
    tools: tuple[str, ...] = ()
    workspace_path: str | None = None


@dataclass(slots=True)
class ArchiveGoalCommand:
    db_path: Path | None
    goal: str


@dataclass(slots=True)
class ClaimNextCommand:
    """CLI input for claiming the next task."""

    db_path: Path | None
    goal: str | None
    agent: str | None


@dataclass(slots=True)
class StartTaskCommand:
    """CLI input for leasing a named task."""

    db_path: Path | None
    task: str
    agent: str | None


@dataclass(slots=True)
class CompleteTaskCommand:
    db_path: Path | None
    task: str
    summary: str
    agent: str | None


@dataclass(slots=True)
class FailTaskCommand:
    db_path: Path | None
    task: str
    reason: str
    agent: str | None


@dataclass(slots=True)
class PingTaskCommand:
    db_path: Path | None
    task: str


@dataclass(slots=True)
class CheckpointTaskCommand:
    db_path: Path | None
    task: str
    note: str
    agent: str | None


@dataclass(slots=True)
class MemoryListCommand:
    """CLI input for memory log listing."""

    db_path: Path | None
    goal: str | None
    task: str | None
    limit: int = 50


@dataclass(slots=True)
class MemoryAddCommand:
    """CLI input for free-form memory entries."""

    db_path: Path | None
    goal: str
    key: str
    value: str
    memory_type: str = MemoryType.LEARNING.value
    agent: str | None = None


@dataclass(slots=True)
class DeleteCommand:
    db_path: Path | None
    ref: str


@dataclass(slots=True)
class ResetCommand:
    db_path: Path | None


@dataclass(slots=True)
class StatsCommand:
    db_path: Path | None


@dataclass(slots=True)
class OrchestrateCommand:
    """CLI input for the worker pool; ``None`` values fall back to settings."""

    db_path: Path | None
    goal: str | None
    workers: int | None
    max_tasks: int | None
    ping_interval_seconds: float | None
    checkpoint_interval_seconds: float | None
    command: str | None
    agent: str | None = None
    runner_timeout_seconds: float | None = None


@dataclass(slots=True)
class OrchestrateResult:
    """Orchestration report lines plus pass/fail flag."""

    lines: list[str]
    success: bool


class QueueCliController:
    """Execute queue CLI commands with repository lifecycle management."""

    def init(self, command: InitCommand) -> list[str]:
        db_path = command.db_path
        if db_path is None and not os.getenv("IMI_DB"):
            db_path = Path.cwd() / STATE_DIR_NAME / STATE_DB_NAME
        settings = _settings(db_path)
        with _repository(settings) as repository:
            revision = repository.schema_revision()
        return [f"Initialized queue store: {settings.db_path} (schema {revision})"]

    def list_goals(self, command: ListGoalsCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            goals = repository.list_goals(include_archived=command.include_archived)
        lines = [f"Goals: {len(goals)}"]
        lines.extend(_goal_line(goal) for goal in goals)
        return lines

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = _settings(command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            tasks = repository.list_tasks(
                status=status_filter,
                goal_ref=command.goal,
                limit=command.limit,
            )
        lines = [f"Tasks: {len(tasks)}"]
        lines.extend(_task_line(task) for task in tasks)
        return lines

    def add_goal(self, command: AddGoalCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            goal = repository.add_goal(
                GoalCreate(
                    name=command.name,
                    description=command.description,
                    why=command.why,
                    for_who=command.for_who,
                    success_signal=command.success_signal,
                    priority=_parse_priority(command.priority),
                    relevant_files=command.relevant_files,
                    workspace_path=command.workspace_path or os.getcwd(),
                ),
            )
        return [f"Goal created: {goal.id}", _goal_line(goal)]

    def add_task(self, command: AddTaskCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            goal = repository.get_goal(command.goal)
            task = repository.add_task(
                goal_ref=goal.id,
                payload=TaskCreate(
                    title=command.title,
                    description=command.description,
                    why=command.why,
                    context=command.context,
                    priority=_parse_priority(command.priority),
                    acceptance_criteria=command.acceptance_criteria,
                    relevant_files=command.relevant_files,
                    tools=command.tools,
                    workspace_path=command.workspace_path or goal.workspace_path,
                ),
            )
        return [f"Task created: {task.id}", _task_line(task)]

    def archive_goal(self, command: ArchiveGoalCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            goal = repository.archive_goal(goal_ref=command.goal)
        return [f"Goal archived: {goal.id}"]

    def claim_next(self, command: ClaimNextCommand) -> list[str]:
        settings = _settings(command.db_path, agent=command.agent)
        with _repository(settings) as repository:
            released = repository.release_stale_locks()
            result = repository.claim_next_task(agent_id=settings.agent_id, goal_ref=command.goal)
            last_failure = None
            if result.task is not None:
                last_failure = repository.last_failure(goal_id=result.task.goal_id)

        lines = _released_lines(released)
        if result.outcome == ClaimOutcome.NO_TASKS:
            lines.append("No tasks available.")
            return lines
        if result.outcome == ClaimOutcome.RACE_LOST or result.task is None:
            lines.append("Lost the claim race to another agent; retry.")
            return lines
        lines.extend(_task_details(result.task))
        if last_failure:
            lines.append(f"Last failure: {last_failure}")
        return lines

    def start_task(self, command: StartTaskCommand) -> list[str]:
        settings = _settings(command.db_path, agent=command.agent)
        with _repository(settings) as repository:
            released = repository.release_stale_locks()
            task = repository.ensure_in_progress(task_ref=command.task, agent_id=settings.agent_id)
        lines = _released_lines(released)
        lines.extend(_task_details(task))
        return lines

    def complete_task(self, command: CompleteTaskCommand) -> list[str]:
        settings = _settings(command.db_path, agent=command.agent)
        with _repository(settings) as repository:
            task = repository.complete_task(
                task_ref=command.task,
                summary=command.summary,
                agent_id=settings.agent_id,
            )
            goal = repository.get_goal(task.goal_id) if task.goal_id else None
        lines = [f"Task completed: {task.id}"]
        if goal is not None:
            lines.append(f"Goal {goal.id} status: {goal.status.value}")
        return lines

    def fail_task(self, command: FailTaskCommand) -> list[str]:
        settings = _settings(command.db_path, agent=command.agent)
        with _repository(settings) as repository:
            task_id = repository.resolve_task_id(command.task)
            repository.fail_task(
                task_ref=task_id,
                reason=command.reason,
                agent_id=settings.agent_id,
            )
        return [f"Task returned to todo: {task_id}"]

    def ping_task(self, command: PingTaskCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            task = repository.ping_task(task_ref=command.task)
        last_ping = task.last_ping_at.isoformat() if task.last_ping_at is not None else "-"
        return [f"Lease extended: {task.id} last_ping_at={last_ping}"]

    def checkpoint_task(self, command: CheckpointTaskCommand) -> list[str]:
        settings = _settings(command.db_path, agent=command.agent)
        with _repository(settings) as repository:
            task_id = repository.resolve_task_id(command.task)
            recorded = repository.checkpoint_task(
                task_ref=task_id,
                note=command.note,
                agent_id=settings.agent_id,
            )
        if not recorded:
            raise ValidationError(f"Task {task_id} is not in progress.")
        return [f"Checkpoint recorded: {task_id}"]

    def list_memories(self, command: MemoryListCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            goal_id = repository.resolve_goal_id(command.goal) if command.goal else None
            task_id = repository.resolve_task_id(command.task) if command.task else None
            memories = repository.list_memories(
                goal_id=goal_id,
                task_id=task_id,
                limit=command.limit,
            )
        lines = [f"Memories: {len(memories)}"]
        for memory in memories:
            lines.append(
                f"  {memory.created_at.isoformat()} [{memory.type}] {memory.key}: "
                f"{memory.value} (task={memory.task_id or '-'} source={memory.source})",
            )
        return lines

    def add_memory(self, command: MemoryAddCommand) -> list[str]:
        settings = _settings(command.db_path, agent=command.agent)
        try:
            memory_type = MemoryType(command.memory_type)
        except ValueError as error:
            raise ValidationError(f"Unsupported memory type: {command.memory_type}") from error
        with _repository(settings) as repository:
            memory = repository.add_memory(
                goal_ref=command.goal,
                key=command.key,
                value=command.value,
                memory_type=memory_type,
                source=settings.agent_id,
            )
        return [f"Memory recorded: {memory.id}"]

    def delete(self, command: DeleteCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            kind = repository.delete(ref=command.ref)
        return [f"Deleted {kind}: {command.ref}"]

    def reset(self, command: ResetCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            repository.reset()
        return [f"Queue reset: {settings.db_path}"]

    def stats(self, command: StatsCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            stats = repository.stats()
        avg_cycle = (
            f"{stats.avg_cycle_seconds / 60:.1f}m" if stats.avg_cycle_seconds is not None else "-"
        )
        lines = [
            f"Tasks: {stats.total_tasks} (done={stats.done_tasks}, "
            f"in_progress={stats.in_progress})",
            f"Completion rate: {stats.completion_rate:.0%}",
            f"Average cycle time: {avg_cycle}",
            f"Stale leases: {stats.stale_leases}",
        ]
        for status, count in sorted(stats.status_counts.items()):
            lines.append(f"  {status}: {count}")
        return lines

    def orchestrate(self, command: OrchestrateCommand) -> OrchestrateResult:
        settings = _settings(command.db_path, agent=command.agent)
        pool = settings.orchestrator
        workers = command.workers if command.workers is not None else pool.workers
        if workers < 1:
            raise ValidationError("workers must be >= 1")
        with _repository(settings) as repository:
            orchestrator = QueueOrchestrator(
                repository=repository,
                base_agent_id=settings.agent_id,
                workers=workers,
                goal_ref=command.goal,
                max_tasks=command.max_tasks,
                ping_interval_seconds=_pick(
                    command.ping_interval_seconds,
                    pool.ping_interval_seconds,
                ),
                checkpoint_interval_seconds=_pick(
                    command.checkpoint_interval_seconds,
                    pool.checkpoint_interval_seconds,
                ),
                command_template=command.command or pool.runner_command,
                runner_timeout_seconds=_pick(
                    command.runner_timeout_seconds,
                    pool.runner_timeout_seconds,
                ),
                poll_interval_seconds=pool.poll_interval_seconds,
            )
            summary = orchestrator.run()

        lines = _released_lines(summary.released_stale)
        lines.append(
            f"Orchestration: workers={summary.workers} launched={summary.launched} "
            f"completed={summary.completed} failed={summary.failed} "
            f"race_losses={summary.race_losses}",
        )
        return OrchestrateResult(lines=lines, success=summary.succeeded)


def _settings(db_path: Path | None, *, agent: str | None = None) -> Settings:
    settings = Settings.from_env(db_path=db_path, agent_id=agent)
    settings.validate()
    return settings


def _pick(explicit: _T | None, default: _T) -> _T:
    return default if explicit is None else explicit


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    try:
        return TaskStatus(value.lower())
    except ValueError as error:
        raise ValidationError(f"Unsupported task status: {value}") from error


def _parse_priority(value: str) -> Priority:
    try:
        return Priority(value.lower())
    except ValueError as error:
        raise ValidationError(f"Unsupported priority: {value}") from error


def _released_lines(released: int) -> list[str]:
    if released == 0:
        return []
    return [f"Released {released} stale lease(s)."]


def _goal_line(goal: GoalView) -> str:
    return f"  {goal.id} [{goal.status.value}] {goal.priority.value} {goal.name}"


def _task_line(task: TaskView) -> str:
    agent = f" agent={task.agent_id}" if task.agent_id else ""
    return (
        f"  {task.id} [{task.status.value}] {task.priority.value} {task.title} "
        f"goal={task.goal_id or '-'}{agent}"
    )


def _task_details(task: TaskView) -> list[str]:
    lines = [
        f"Task: {task.id}",
        f"Title: {task.title}",
        f"Goal: {task.goal_id or '-'}",
        f"Priority: {task.priority.value}",
        f"Status: {task.status.value}",
        f"Agent: {task.agent_id or '-'}",
    ]
    if task.description:
        lines.append(f"Description: {task.description}")
    if task.why:
        lines.append(f"Why: {task.why}")
    if task.context:
        lines.append(f"Context: {task.context}")
    if task.acceptance_criteria:
        lines.append(f"Acceptance criteria: {task.acceptance_criteria}")
    if task.relevant_files:
        lines.append(f"Relevant files: {', '.join(task.relevant_files)}")
    if task.tools:
        lines.append(f"Tools: {', '.join(task.tools)}")
    if task.workspace_path:
        lines.append(f"Workspace: {task.workspace_path}")
    return lines


@contextmanager
def _repository(settings: Settings) -> Iterator[QueueRepository]:
    repository = QueueRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.lease.sqlite_busy_timeout_ms,
        lease_ttl_seconds=settings.lease.ttl_seconds,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
