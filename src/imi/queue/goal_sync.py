"""Goal status derivation from the statuses of its tasks."""

from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from imi.queue.models import GoalStatus, TaskStatus
from imi.storage.common import to_db_datetime, utc_now
from imi.storage.sqlmodel_models import Goal, Task


def derive_goal_status(task_statuses: Iterable[str | TaskStatus]) -> GoalStatus:
    """Compute goal status from the multiset of its task statuses.

    Precedence: in progress wins over review, review over completion; a
    partially done goal is ongoing.
    """

    statuses = [TaskStatus(value) for value in task_statuses]
    if not statuses:
        return GoalStatus.TODO
    if TaskStatus.IN_PROGRESS in statuses:
        return GoalStatus.ONGOING
    if TaskStatus.REVIEW in statuses:
        return GoalStatus.REVIEW
    if all(status == TaskStatus.DONE for status in statuses):
        return GoalStatus.DONE
    if TaskStatus.DONE in statuses:
        return GoalStatus.ONGOING
    return GoalStatus.TODO


def sync_goal(session: Session, goal_id: str) -> GoalStatus | None:
    """Recompute and store the status of one goal inside ``session``.

    Archived goals keep their status. Returns the stored status, or ``None``
    when the goal does not exist. The caller commits.
    """

    goal = session.exec(select(Goal).where(Goal.id == goal_id)).one_or_none()
    if goal is None:
        return None
    if goal.status == GoalStatus.ARCHIVED.value:
        return GoalStatus.ARCHIVED

    statuses = session.exec(select(Task.status).where(Task.goal_id == goal_id)).all()
    derived = derive_goal_status(statuses)
    session.exec(
        sa_update(Goal)
        .where(
            col(Goal.id) == goal_id,
            col(Goal.status) != GoalStatus.ARCHIVED.value,
        )
        .values(status=derived.value, updated_at=to_db_datetime(utc_now())),
    )
    return derived
