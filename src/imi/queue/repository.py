"""Persistent goal/task queue repository with the lease-based claim protocol."""

from __future__ import annotations

import json
import logging
from collections.abc import Collection, Iterator
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path

from sqlalchemy import case, delete, func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.exc import DBAPIError
from sqlmodel import Session, SQLModel, col, select

from imi.queue.errors import (
    AlreadyDoneError,
    AlreadyOwnedError,
    LeaseLostError,
    NotFoundError,
    QueueError,
    StoreError,
    ValidationError,
)
from imi.queue.goal_sync import sync_goal
from imi.queue.models import (
    CHECKPOINT_KEY,
    COMPLETION_SUMMARY_KEY,
    FAILURE_REASON_KEY,
    PRIORITY_RANKS,
    ClaimOutcome,
    ClaimResult,
    GoalCreate,
    GoalStatus,
    GoalView,
    MemoryType,
    MemoryView,
    Priority,
    QueueStats,
    TaskCreate,
    TaskStatus,
    TaskView,
)
from imi.storage.alembic_runner import current_revision, upgrade_head
from imi.storage.common import (
    SQLITE_BEGIN_MODE_OPTION,
    build_sqlite_engine,
    new_id,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from imi.storage.sqlmodel_models import Goal, Memory, Task

logger = logging.getLogger(__name__)

DEFAULT_LEASE_TTL_SECONDS = 1_800

_PRIORITY_ORDER = case(PRIORITY_RANKS, value=col(Task.priority), else_=0)


class QueueRepository:
    """Queue persistence facade backed by SQLModel + SQLite.

    Each instance owns its own engine, so every concurrent actor (orchestrator,
    worker process, watchdog thread) should open its own repository.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        sqlite_busy_timeout_ms: int = 5_000,
        lease_ttl_seconds: int = DEFAULT_LEASE_TTL_SECONDS,
    ) -> None:
        if lease_ttl_seconds <= 0:
            raise ValueError("lease_ttl_seconds must be > 0")
        self.db_path = db_path
        self.sqlite_busy_timeout_ms = sqlite_busy_timeout_ms
        self.lease_ttl = timedelta(seconds=lease_ttl_seconds)
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)
        self._write_engine = self.engine.execution_options(
            **{SQLITE_BEGIN_MODE_OPTION: "IMMEDIATE"},
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._store_errors():
            upgrade_head(self.db_path)

    def schema_revision(self) -> str | None:
        with self._store_errors():
            return current_revision(self.engine)

    # -- goals / tasks ---------------------------------------------------------

    def add_goal(self, payload: GoalCreate) -> GoalView:
        """Create a goal in ``todo`` status."""

        name = payload.name.strip()
        if not name:
            raise ValidationError("Goal name is required.")
        now = to_db_datetime(utc_now())
        with self._store_errors(), Session(self._write_engine) as session:
            row = Goal(
                id=new_id(),
                name=name,
                description=payload.description,
                why=payload.why,
                for_who=payload.for_who,
                success_signal=payload.success_signal,
                priority=Priority(payload.priority).value,
                status=GoalStatus.TODO.value,
                relevant_files_json=json.dumps(list(payload.relevant_files)),
                workspace_path=payload.workspace_path,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_goal_view(row)

    def add_task(self, *, goal_ref: str, payload: TaskCreate) -> TaskView:
        """Create a ``todo`` task under a goal and resync the goal."""

        title = payload.title.strip()
        if not title:
            raise ValidationError("Task title is required.")
        now = to_db_datetime(utc_now())
        with self._store_errors(), Session(self._write_engine) as session:
            goal_id = self._resolve_id(session, Goal, goal_ref, label="goal")
            goal = session.exec(select(Goal).where(Goal.id == goal_id)).one()
            if goal.status == GoalStatus.ARCHIVED.value:
                raise ValidationError(f"Goal {goal_id} is archived; cannot add tasks.")
            row = Task(
                id=new_id(),
                goal_id=goal_id,
                title=title,
                description=payload.description,
                why=payload.why,
                context=payload.context,
                status=TaskStatus.TODO.value,
                priority=Priority(payload.priority).value,
                agent_id=None,
                acceptance_criteria=payload.acceptance_criteria,
                relevant_files_json=json.dumps(list(payload.relevant_files)),
                tools_json=json.dumps(list(payload.tools)),
                workspace_path=payload.workspace_path,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            sync_goal(session, goal_id)
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def archive_goal(self, *, goal_ref: str) -> GoalView:
        """Mark a goal archived; its tasks are no longer claimable."""

        with self._store_errors(), Session(self._write_engine) as session:
            goal_id = self._resolve_id(session, Goal, goal_ref, label="goal")
            session.exec(
                sa_update(Goal)
                .where(col(Goal.id) == goal_id)
                .values(
                    status=GoalStatus.ARCHIVED.value,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()
            row = session.exec(select(Goal).where(Goal.id == goal_id)).one()
            return _to_goal_view(row)

    def resolve_goal_id(self, goal_ref: str) -> str:
        with self._store_errors(), Session(self.engine) as session:
            return self._resolve_id(session, Goal, goal_ref, label="goal")

    def resolve_task_id(self, task_ref: str) -> str:
        with self._store_errors(), Session(self.engine) as session:
            return self._resolve_id(session, Task, task_ref, label="task")

    def get_goal(self, goal_ref: str) -> GoalView:
        with self._store_errors(), Session(self.engine) as session:
            goal_id = self._resolve_id(session, Goal, goal_ref, label="goal")
            return _to_goal_view(session.exec(select(Goal).where(Goal.id == goal_id)).one())

    def get_task(self, task_ref: str) -> TaskView:
        with self._store_errors(), Session(self.engine) as session:
            task_id = self._resolve_id(session, Task, task_ref, label="task")
            return _to_task_view(session.exec(select(Task).where(Task.id == task_id)).one())

    def list_goals(self, *, include_archived: bool = True) -> list[GoalView]:
        """List goals, highest priority first."""

        with self._store_errors(), Session(self.engine) as session:
            statement = select(Goal).order_by(
                case(PRIORITY_RANKS, value=col(Goal.priority), else_=0).desc(),
                col(Goal.created_at).asc(),
            )
            if not include_archived:
                statement = statement.where(Goal.status != GoalStatus.ARCHIVED.value)
            rows = session.exec(statement).all()
        return [_to_goal_view(row) for row in rows]

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        goal_ref: str | None = None,
        limit: int = 200,
    ) -> list[TaskView]:
        """List tasks in claim order, optionally filtered by status and goal."""

        with self._store_errors(), Session(self.engine) as session:
            statement = select(Task).order_by(
                _PRIORITY_ORDER.desc(),
                func.coalesce(col(Task.updated_at), col(Task.created_at)).asc(),
            )
            if status is not None:
                statement = statement.where(Task.status == status.value)
            if goal_ref is not None:
                goal_id = self._resolve_id(session, Goal, goal_ref, label="goal")
                statement = statement.where(Task.goal_id == goal_id)
            rows = session.exec(statement.limit(limit)).all()
        return [_to_task_view(row) for row in rows]

    # -- claim scheduler -------------------------------------------------------

    def release_stale_locks(self) -> int:
        """Return expired leases to ``todo`` and resync affected goals.

        A lease is stale when ``now - coalesce(last_ping_at, updated_at,
        created_at)`` exceeds the lease TTL.
        """

        now = to_db_datetime(utc_now())
        cutoff = now - self.lease_ttl
        stale_condition = (
            col(Task.status) == TaskStatus.IN_PROGRESS.value,
            func.coalesce(col(Task.last_ping_at), col(Task.updated_at), col(Task.created_at))
            < cutoff,
        )
        with self._store_errors(), Session(self._write_engine) as session:
            stale = session.exec(select(Task.id, Task.goal_id).where(*stale_condition)).all()
            if not stale:
                session.commit()
                return 0
            result = session.exec(
                sa_update(Task)
                .where(col(Task.id).in_([task_id for task_id, _ in stale]), *stale_condition)
                .values(status=TaskStatus.TODO.value, agent_id=None, updated_at=now),
            )
            for goal_id in sorted({goal_id for _, goal_id in stale if goal_id is not None}):
                sync_goal(session, goal_id)
            session.commit()
            released = int(result.rowcount or 0)
        if released:
            logger.info("Released %d stale in-progress task(s)", released)
        return released

    def claim_next_task(
        self,
        *,
        agent_id: str,
        goal_ref: str | None = None,
        exclude_task_ids: Collection[str] = (),
    ) -> ClaimResult:
        """Atomically lease the highest-priority, oldest ``todo`` task.

        The candidate is selected and conditionally updated inside one
        ``BEGIN IMMEDIATE`` transaction; after commit the row is re-read to
        verify the lease actually belongs to ``agent_id``. Tasks listed in
        ``exclude_task_ids`` are skipped.
        """

        agent = agent_id.strip()
        if not agent:
            raise ValidationError("Agent id is required to claim a task.")
        goal_filter = self.resolve_goal_id(goal_ref) if goal_ref is not None else None

        now = to_db_datetime(utc_now())
        with self._store_errors(), Session(self._write_engine) as session:
            candidate = self._select_candidate(
                session,
                goal_id=goal_filter,
                exclude_task_ids=exclude_task_ids,
            )
            if candidate is None:
                session.commit()
                return ClaimResult(outcome=ClaimOutcome.NO_TASKS)
            task_id = candidate[0]
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.id) == task_id,
                    col(Task.status) == TaskStatus.TODO.value,
                )
                .values(
                    status=TaskStatus.IN_PROGRESS.value,
                    agent_id=agent,
                    updated_at=now,
                    last_ping_at=now,
                ),
            )
            session.commit()
            if result.rowcount != 1:
                logger.info("Claim race lost on task %s (agent=%s)", task_id, agent)
                return ClaimResult(outcome=ClaimOutcome.RACE_LOST)

        claimed = self._verify_lease(task_id=task_id, agent_id=agent)
        if claimed is None:
            logger.info("Claim verification failed on task %s (agent=%s)", task_id, agent)
            return ClaimResult(outcome=ClaimOutcome.RACE_LOST)
        if claimed.goal_id is not None:
            self._sync_goal(claimed.goal_id)
        logger.info("Claimed task %s (agent=%s)", task_id, agent)
        return ClaimResult(outcome=ClaimOutcome.CLAIMED, task=claimed)

    def ensure_in_progress(self, *, task_ref: str, agent_id: str) -> TaskView:
        """Lease a named task directly; idempotent for the current holder."""

        agent = agent_id.strip()
        if not agent:
            raise ValidationError("Agent id is required to start a task.")
        now = to_db_datetime(utc_now())
        with self._store_errors(), Session(self._write_engine) as session:
            task_id = self._resolve_id(session, Task, task_ref, label="task")
            row = session.exec(select(Task).where(Task.id == task_id)).one()
            if row.status == TaskStatus.DONE.value:
                raise AlreadyDoneError(task_id)
            owner = row.agent_id or ""
            if row.status == TaskStatus.IN_PROGRESS.value and owner and owner != agent:
                raise AlreadyOwnedError(task_id, owner)

            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.id) == task_id,
                    col(Task.status) == row.status,
                )
                .values(
                    status=TaskStatus.IN_PROGRESS.value,
                    agent_id=agent,
                    updated_at=now,
                    last_ping_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise QueueError(
                    "Task state changed concurrently while starting; "
                    f"please retry command (task_id={task_id}).",
                )
            if row.goal_id is not None:
                sync_goal(session, row.goal_id)
            session.commit()
            row = session.exec(select(Task).where(Task.id == task_id)).one()
            return _to_task_view(row)

    def complete_task(
        self,
        *,
        task_ref: str,
        summary: str,
        agent_id: str,
        expected_agent_id: str | None = None,
    ) -> TaskView:
        """Mark a task done and record its ``completion_summary``.

        With ``expected_agent_id`` the task is only completed while that agent
        still holds the lease; ``LeaseLostError`` is raised otherwise.
        """

        summary_text = summary.strip() or "completed"
        now = to_db_datetime(utc_now())
        with self._store_errors(), Session(self._write_engine) as session:
            task_id = self._resolve_id(session, Task, task_ref, label="task")
            row = session.exec(select(Task).where(Task.id == task_id)).one()
            conditions = [col(Task.id) == task_id, col(Task.status) != TaskStatus.DONE.value]
            if expected_agent_id is not None:
                conditions.append(col(Task.status) == TaskStatus.IN_PROGRESS.value)
                conditions.append(col(Task.agent_id) == expected_agent_id)
            result = session.exec(
                sa_update(Task)
                .where(*conditions)
                .values(
                    status=TaskStatus.DONE.value,
                    agent_id=None,
                    updated_at=now,
                    completed_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                if expected_agent_id is not None:
                    raise LeaseLostError(task_id, expected_agent_id)
                raise AlreadyDoneError(task_id)
            self._add_memory(
                session=session,
                goal_id=row.goal_id,
                task_id=task_id,
                key=COMPLETION_SUMMARY_KEY,
                value=summary_text,
                memory_type=MemoryType.COMPLETION,
                source=agent_id,
            )
            if row.goal_id is not None:
                sync_goal(session, row.goal_id)
            session.commit()
            row = session.exec(select(Task).where(Task.id == task_id)).one()
            return _to_task_view(row)

    def fail_task(
        self,
        *,
        task_ref: str,
        reason: str,
        agent_id: str,
        expected_agent_id: str | None = None,
    ) -> bool:
        """Return a task to ``todo`` and record its ``failure_reason``.

        With ``expected_agent_id`` the transition only happens while that agent
        still holds the lease; ``False`` is returned otherwise.
        """

        reason_text = reason.strip()
        if not reason_text:
            raise ValidationError("Failure reason is required.")
        now = to_db_datetime(utc_now())
        with self._store_errors(), Session(self._write_engine) as session:
            task_id = self._resolve_id(session, Task, task_ref, label="task")
            row = session.exec(select(Task).where(Task.id == task_id)).one()
            conditions = [col(Task.id) == task_id, col(Task.status) != TaskStatus.DONE.value]
            if expected_agent_id is None:
                if row.status == TaskStatus.DONE.value:
                    raise AlreadyDoneError(task_id)
            else:
                conditions.append(col(Task.status) == TaskStatus.IN_PROGRESS.value)
                conditions.append(col(Task.agent_id) == expected_agent_id)
            result = session.exec(
                sa_update(Task)
                .where(*conditions)
                .values(status=TaskStatus.TODO.value, agent_id=None, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_memory(
                session=session,
                goal_id=row.goal_id,
                task_id=task_id,
                key=FAILURE_REASON_KEY,
                value=reason_text,
                memory_type=MemoryType.FAILURE,
                source=agent_id,
            )
            if row.goal_id is not None:
                sync_goal(session, row.goal_id)
            session.commit()
        logger.info("Task %s returned to todo: %s", task_id, reason_text)
        return True

    def ping_task(self, *, task_ref: str) -> TaskView:
        """Extend the lease of an in-progress task."""

        task_id = self.resolve_task_id(task_ref)
        if not self.touch_lease(task_id=task_id):
            raise ValidationError(f"Task {task_id} is not in progress.")
        return self.get_task(task_id)

    def touch_lease(self, *, task_id: str, agent_id: str | None = None) -> bool:
        """Conditional heartbeat; ``False`` means the task is no longer leased."""

        with self._store_errors(), Session(self._write_engine) as session:
            touched = self._touch(session, task_id=task_id, agent_id=agent_id)
            session.commit()
        return touched

    def checkpoint_task(
        self,
        *,
        task_ref: str,
        note: str,
        agent_id: str,
        lease_agent_id: str | None = None,
    ) -> bool:
        """Record a ``checkpoint`` memory and extend the lease.

        Nothing is written when the task is no longer in progress (or, with
        ``lease_agent_id``, no longer leased to that agent).
        """

        note_text = note.strip()
        if not note_text:
            raise ValidationError("Checkpoint note is required.")
        with self._store_errors(), Session(self._write_engine) as session:
            task_id = self._resolve_id(session, Task, task_ref, label="task")
            if not self._touch(session, task_id=task_id, agent_id=lease_agent_id):
                session.rollback()
                return False
            goal_id = session.exec(select(Task.goal_id).where(Task.id == task_id)).one()
            self._add_memory(
                session=session,
                goal_id=goal_id,
                task_id=task_id,
                key=CHECKPOINT_KEY,
                value=note_text,
                memory_type=MemoryType.CHECKPOINT,
                source=agent_id,
            )
            session.commit()
        return True

    # -- memories --------------------------------------------------------------

    def add_memory(
        self,
        *,
        goal_ref: str,
        key: str,
        value: str,
        memory_type: MemoryType = MemoryType.LEARNING,
        source: str = "agent",
    ) -> MemoryView:
        """Append a free-form memory to a goal."""

        if not key.strip() or not value.strip():
            raise ValidationError("Memory key and value are required.")
        with self._store_errors(), Session(self._write_engine) as session:
            goal_id = self._resolve_id(session, Goal, goal_ref, label="goal")
            row = self._add_memory(
                session=session,
                goal_id=goal_id,
                task_id=None,
                key=key.strip(),
                value=value,
                memory_type=memory_type,
                source=source,
            )
            session.commit()
            session.refresh(row)
            return _to_memory_view(row)

    def list_memories(
        self,
        *,
        goal_id: str | None = None,
        task_id: str | None = None,
        memory_type: MemoryType | None = None,
        limit: int = 50,
    ) -> list[MemoryView]:
        """Most recent memories first."""

        with self._store_errors(), Session(self.engine) as session:
            statement = select(Memory).order_by(col(Memory.created_at).desc())
            if goal_id is not None:
                statement = statement.where(
                    or_(
                        col(Memory.goal_id) == goal_id,
                        col(Memory.task_id).in_(select(Task.id).where(Task.goal_id == goal_id)),
                    ),
                )
            if task_id is not None:
                statement = statement.where(Memory.task_id == task_id)
            if memory_type is not None:
                statement = statement.where(Memory.type == memory_type.value)
            rows = session.exec(statement.limit(limit)).all()
        return [_to_memory_view(row) for row in rows]

    def last_failure(self, *, goal_id: str | None = None) -> str | None:
        """Latest failure reason recorded for a goal (or anywhere)."""

        failures = self.list_memories(goal_id=goal_id, memory_type=MemoryType.FAILURE, limit=1)
        if not failures:
            return None
        return failures[0].value

    # -- maintenance -----------------------------------------------------------

    def delete(self, *, ref: str) -> str:
        """Delete a goal (with its tasks) or a single task; returns the kind."""

        with self._store_errors(), Session(self._write_engine) as session:
            try:
                goal_id = self._resolve_id(session, Goal, ref, label="goal")
            except NotFoundError:
                goal_id = None
            if goal_id is not None:
                goal_tasks = select(Task.id).where(Task.goal_id == goal_id)
                session.exec(
                    delete(Memory).where(
                        or_(col(Memory.goal_id) == goal_id, col(Memory.task_id).in_(goal_tasks)),
                    ),
                )
                session.exec(delete(Task).where(col(Task.goal_id) == goal_id))
                session.exec(delete(Goal).where(col(Goal.id) == goal_id))
                session.commit()
                return "goal"

            task_id = self._resolve_id(session, Task, ref, label="task")
            owner_goal_id = session.exec(select(Task.goal_id).where(Task.id == task_id)).one()
            session.exec(delete(Memory).where(col(Memory.task_id) == task_id))
            session.exec(delete(Task).where(col(Task.id) == task_id))
            if owner_goal_id is not None:
                sync_goal(session, owner_goal_id)
            session.commit()
            return "task"

    def reset(self) -> None:
        """Delete all goals, tasks and memories."""

        with self._store_errors(), Session(self._write_engine) as session:
            session.exec(delete(Memory))
            session.exec(delete(Task))
            session.exec(delete(Goal))
            session.commit()

    def stats(self) -> QueueStats:
        cutoff = to_db_datetime(utc_now()) - self.lease_ttl
        with self._store_errors(), Session(self.engine) as session:
            status_counts = {
                status: int(count)
                for status, count in session.exec(
                    select(Task.status, func.count()).group_by(Task.status),
                ).all()
            }
            stale = session.exec(
                select(func.count()).where(
                    Task.status == TaskStatus.IN_PROGRESS.value,
                    func.coalesce(
                        col(Task.last_ping_at),
                        col(Task.updated_at),
                        col(Task.created_at),
                    )
                    < cutoff,
                ),
            ).one()
            finished = session.exec(
                select(Task.created_at, Task.completed_at).where(
                    Task.status == TaskStatus.DONE.value,
                    col(Task.completed_at).is_not(None),
                ),
            ).all()

        cycle_seconds = [
            (completed_at - created_at).total_seconds()
            for created_at, completed_at in finished
            if completed_at is not None
        ]
        return QueueStats(
            total_tasks=sum(status_counts.values()),
            done_tasks=status_counts.get(TaskStatus.DONE.value, 0),
            in_progress=status_counts.get(TaskStatus.IN_PROGRESS.value, 0),
            stale_leases=int(stale),
            avg_cycle_seconds=(sum(cycle_seconds) / len(cycle_seconds)) if cycle_seconds else None,
            status_counts=status_counts,
        )

    # -- internals -------------------------------------------------------------

    def _select_candidate(
        self,
        session: Session,
        *,
        goal_id: str | None,
        exclude_task_ids: Collection[str] = (),
    ) -> tuple[str, str | None] | None:
        archived_goals = select(Goal.id).where(Goal.status == GoalStatus.ARCHIVED.value)
        statement = (
            select(Task.id, Task.goal_id)
            .where(
                Task.status == TaskStatus.TODO.value,
                or_(col(Task.goal_id).is_(None), col(Task.goal_id).not_in(archived_goals)),
            )
            .order_by(
                _PRIORITY_ORDER.desc(),
                func.coalesce(col(Task.updated_at), col(Task.created_at)).asc(),
                col(Task.created_at).asc(),
                col(Task.id).asc(),
            )
            .limit(1)
        )
        if goal_id is not None:
            statement = statement.where(Task.goal_id == goal_id)
        if exclude_task_ids:
            statement = statement.where(col(Task.id).not_in(list(exclude_task_ids)))
        row = session.exec(statement).first()
        if row is None:
            return None
        return row[0], row[1]

    def _verify_lease(self, *, task_id: str, agent_id: str) -> TaskView | None:
        with self._store_errors(), Session(self.engine) as session:
            row = session.exec(select(Task).where(Task.id == task_id)).one_or_none()
            if row is None:
                return None
            if row.status != TaskStatus.IN_PROGRESS.value or (row.agent_id or "") != agent_id:
                return None
            return _to_task_view(row)

    def _sync_goal(self, goal_id: str) -> None:
        with self._store_errors(), Session(self._write_engine) as session:
            sync_goal(session, goal_id)
            session.commit()

    def _touch(self, session: Session, *, task_id: str, agent_id: str | None) -> bool:
        now = to_db_datetime(utc_now())
        conditions = [
            col(Task.id) == task_id,
            col(Task.status) == TaskStatus.IN_PROGRESS.value,
        ]
        if agent_id is not None:
            conditions.append(col(Task.agent_id) == agent_id)
        result = session.exec(
            sa_update(Task).where(*conditions).values(last_ping_at=now, updated_at=now),
        )
        return result.rowcount == 1

    def _resolve_id(
        self,
        session: Session,
        model: type[SQLModel],
        ref: str,
        *,
        label: str,
    ) -> str:
        value = ref.strip()
        if not value:
            raise ValidationError(f"A {label} id is required.")
        id_column = col(model.id)  # type: ignore[attr-defined]
        exact = session.exec(select(id_column).where(id_column == value)).one_or_none()
        if exact is not None:
            return exact
        matches = session.exec(
            select(id_column).where(id_column.startswith(value, autoescape=True)).limit(2),
        ).all()
        if not matches:
            raise NotFoundError(f"{label.capitalize()} not found: {value}")
        if len(matches) > 1:
            raise ValidationError(f"Ambiguous {label} id prefix: {value}")
        return matches[0]

    def _add_memory(  # noqa: PLR0913
        self,
        *,
        session: Session,
        goal_id: str | None,
        task_id: str | None,
        key: str,
        value: str,
        memory_type: MemoryType,
        source: str,
    ) -> Memory:
        row = Memory(
            id=new_id(),
            goal_id=goal_id,
            task_id=task_id,
            key=key,
            value=value,
            type=memory_type.value,
            source=source or "agent",
            created_at=to_db_datetime(utc_now()),
        )
        session.add(row)
        return row

    @contextmanager
    def _store_errors(self) -> Iterator[None]:
        try:
            yield
        except DBAPIError as error:
            raise StoreError(f"Store failure ({self.db_path}): {error}") from error


def _to_goal_view(row: Goal) -> GoalView:
    return GoalView(
        id=row.id,
        name=row.name,
        description=row.description,
        why=row.why,
        for_who=row.for_who,
        success_signal=row.success_signal,
        priority=Priority(row.priority),
        status=GoalStatus(row.status),
        relevant_files=json.loads(row.relevant_files_json or "[]"),
        workspace_path=row.workspace_path,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_task_view(row: Task) -> TaskView:
    return TaskView(
        id=row.id,
        goal_id=row.goal_id,
        title=row.title,
        description=row.description,
        why=row.why,
        context=row.context,
        status=TaskStatus(row.status),
        priority=Priority(row.priority),
        agent_id=row.agent_id,
        acceptance_criteria=row.acceptance_criteria,
        relevant_files=json.loads(row.relevant_files_json or "[]"),
        tools=json.loads(row.tools_json or "[]"),
        workspace_path=row.workspace_path,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        completed_at=(
            to_utc_aware_datetime(row.completed_at) if row.completed_at is not None else None
        ),
        last_ping_at=(
            to_utc_aware_datetime(row.last_ping_at) if row.last_ping_at is not None else None
        ),
    )


def _to_memory_view(row: Memory) -> MemoryView:
    return MemoryView(
        id=row.id,
        goal_id=row.goal_id,
        task_id=row.task_id,
        key=row.key,
        value=row.value,
        type=row.type,
        source=row.source,
        created_at=to_utc_aware_datetime(row.created_at),
    )
