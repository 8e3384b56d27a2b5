"""Error taxonomy for queue operations."""

from __future__ import annotations


class QueueError(RuntimeError):
    """Base class for errors surfaced at the command boundary."""


class NotFoundError(QueueError):
    """Referenced goal/task id (or id prefix) does not exist."""


class AlreadyOwnedError(QueueError):
    """Direct lock attempted on a task leased to a different agent."""

    def __init__(self, task_id: str, owner: str) -> None:
        super().__init__(f"Task {task_id} is already in progress by agent {owner!r}.")
        self.task_id = task_id
        self.owner = owner


class AlreadyDoneError(QueueError):
    """Operation attempted on a terminal task."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} is already done.")
        self.task_id = task_id


class ValidationError(QueueError):
    """Required input is missing or malformed; nothing was written."""


class StoreError(QueueError):
    """Underlying persistence failure."""


class ProcessError(QueueError):
    """Worker command could not be rendered, spawned or executed."""


class LeaseLostError(QueueError):
    """Guarded transition attempted by an agent that no longer holds the lease."""

    def __init__(self, task_id: str, agent_id: str) -> None:
        super().__init__(f"Task {task_id} is no longer leased to agent {agent_id!r}.")
        self.task_id = task_id
        self.agent_id = agent_id
