from __future__ import annotations

import allure
import pytest

from imi.queue.goal_sync import derive_goal_status
from imi.queue.models import GoalStatus, TaskStatus

pytestmark = [
    allure.epic("Work Queue"),
    allure.feature("Goal Synchronizer"),
]


@pytest.mark.parametrize(
    ("statuses", "expected"),
    [
        ([], GoalStatus.TODO),
        (["todo", "todo"], GoalStatus.TODO),
        (["done", "done", "in_progress"], GoalStatus.ONGOING),
        (["done", "done", "done"], GoalStatus.DONE),
        (["done", "todo"], GoalStatus.ONGOING),
        (["review", "done"], GoalStatus.REVIEW),
        (["review", "in_progress"], GoalStatus.ONGOING),
        (["blocked", "todo"], GoalStatus.TODO),
        ([TaskStatus.DONE], GoalStatus.DONE),
    ],
)
def test_derive_goal_status(statuses: list[str], expected: GoalStatus) -> None:
    assert derive_goal_status(statuses) == expected


def test_derive_goal_status_rejects_unknown_status() -> None:
    with pytest.raises(ValueError):
        derive_goal_status(["paused"])
