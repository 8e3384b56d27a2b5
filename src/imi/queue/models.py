"""Domain models for the goal/task work queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class TaskStatus(str, Enum):
    """Task lifecycle states.

    Only ``todo``, ``in_progress`` and ``done`` are produced by queue
    transitions; the remaining values are reserved and may appear in
    imported data or be rendered, but nothing transitions into them.
    """

    TODO = "todo"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    REVIEW = "review"
    FAILED = "failed"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"


class GoalStatus(str, Enum):
    """Goal states; everything except ``archived`` is derived from tasks."""

    TODO = "todo"
    ONGOING = "ongoing"
    REVIEW = "review"
    DONE = "done"
    ARCHIVED = "archived"


class Priority(str, Enum):
    """Scheduling priority; claim order comes from ``PRIORITY_RANKS``."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


PRIORITY_RANKS: dict[str, int] = {
    Priority.CRITICAL.value: 4,
    Priority.HIGH.value: 3,
    Priority.MEDIUM.value: 2,
    Priority.LOW.value: 1,
}


class MemoryType(str, Enum):
    """Kinds of entries in the task/goal event log."""

    COMPLETION = "completion"
    FAILURE = "failure"
    CHECKPOINT = "checkpoint"
    LEARNING = "learning"


COMPLETION_SUMMARY_KEY = "completion_summary"
FAILURE_REASON_KEY = "failure_reason"
CHECKPOINT_KEY = "checkpoint"


class ClaimOutcome(str, Enum):
    """Result kinds of one claim attempt; none of them is an error."""

    NO_TASKS = "no_tasks"
    RACE_LOST = "race_lost"
    CLAIMED = "claimed"


@dataclass(slots=True)
class GoalCreate:
    """Input payload for creating a goal."""

    name: str
    description: str = ""
    why: str = ""
    for_who: str = ""
    success_signal: str = ""
    priority: Priority = Priority.MEDIUM
    relevant_files: tuple[str, ...] = ()
    workspace_path: str = ""


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task under a goal."""

    title: str
    description: str = ""
    why: str = ""
    context: str = ""
    priority: Priority = Priority.MEDIUM
    acceptance_criteria: str | None = None
    relevant_files: tuple[str, ...] = ()
    tools: tuple[str, ...] = ()
    workspace_path: str = ""


@dataclass(slots=True)
class GoalView:
    """Readable goal view for CLI and scheduler logic."""

    id: str
    name: str
    description: str
    why: str
    for_who: str
    success_signal: str
    priority: Priority
    status: GoalStatus
    relevant_files: list[str]
    workspace_path: str
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class TaskView:
    """Readable task view for CLI, worker and orchestrator logic."""

    id: str
    goal_id: str | None
    title: str
    description: str
    why: str
    context: str
    status: TaskStatus
    priority: Priority
    agent_id: str | None
    acceptance_criteria: str | None
    relevant_files: list[str]
    tools: list[str]
    workspace_path: str
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None
    last_ping_at: datetime | None


@dataclass(slots=True)
class MemoryView:
    """Entry of the append-only memory log."""

    id: str
    goal_id: str | None
    task_id: str | None
    key: str
    value: str
    type: str
    source: str
    created_at: datetime


@dataclass(slots=True)
class ClaimResult:
    """Outcome of ``claim_next_task``; ``task`` is set only when claimed."""

    outcome: ClaimOutcome
    task: TaskView | None = None

    @property
    def claimed(self) -> bool:
        return self.outcome == ClaimOutcome.CLAIMED


@dataclass(slots=True)
class QueueStats:
    """Aggregate queue health figures."""

    total_tasks: int
    done_tasks: int
    in_progress: int
    stale_leases: int
    avg_cycle_seconds: float | None
    status_counts: dict[str, int] = field(default_factory=dict)

    @property
    def completion_rate(self) -> float:
        if self.total_tasks == 0:
            return 0.0
        return self.done_tasks / self.total_tasks
