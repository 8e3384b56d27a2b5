"""Bounded pool of claim -> execute -> resolve worker processes."""

from __future__ import annotations

import logging
import os
import secrets
import subprocess
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from imi.queue.errors import QueueError
from imi.queue.models import ClaimOutcome
from imi.queue.repository import QueueRepository
from imi.queue.worker import WorkerAssignment

logger = logging.getLogger(__name__)

RACE_GUARD_FACTOR = 8


class WorkerProcess(Protocol):
    """The part of ``subprocess.Popen`` the pool relies on."""

    def poll(self) -> int | None: ...


SpawnFn = Callable[[WorkerAssignment], WorkerProcess]


def spawn_worker_process(assignment: WorkerAssignment) -> subprocess.Popen[bytes]:
    """Launch ``python -m imi.queue.worker`` for one assignment."""

    env = os.environ.copy()
    env.update(assignment.to_env())
    return subprocess.Popen(  # noqa: S603
        [sys.executable, "-m", "imi.queue.worker"],
        env=env,
    )


@dataclass(slots=True)
class OrchestrationSummary:
    """Aggregate pool counters for CLI reporting."""

    workers: int
    launched: int = 0
    completed: int = 0
    failed: int = 0
    race_losses: int = 0
    released_stale: int = 0

    @property
    def succeeded(self) -> bool:
        return self.failed == 0


@dataclass(slots=True)
class _Slot:
    index: int
    task_id: str
    agent_id: str
    process: WorkerProcess


class QueueOrchestrator:
    """Keep up to ``workers`` worker processes busy until the queue drains.

    Tasks that fail during a run are not relaunched by the same run.
    The pool holds no scheduling state of its own: every task is handed out by
    ``QueueRepository.claim_next_task`` and every worker process opens its own
    store handle.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: QueueRepository,
        base_agent_id: str,
        workers: int,
        goal_ref: str | None = None,
        max_tasks: int | None = None,
        ping_interval_seconds: float = 60.0,
        checkpoint_interval_seconds: float = 0.0,
        command_template: str | None = None,
        runner_timeout_seconds: float | None = None,
        poll_interval_seconds: float = 0.25,
        spawn: SpawnFn = spawn_worker_process,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        if max_tasks is not None and max_tasks < 1:
            raise ValueError("max_tasks must be >= 1")
        self.repository = repository
        self.base_agent_id = base_agent_id
        self.workers = workers
        self.goal_ref = goal_ref
        self.max_tasks = max_tasks
        self.ping_interval_seconds = ping_interval_seconds
        self.checkpoint_interval_seconds = checkpoint_interval_seconds
        self.command_template = command_template
        self.runner_timeout_seconds = runner_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._spawn = spawn
        self._sleep = sleep

    def run(self) -> OrchestrationSummary:
        summary = OrchestrationSummary(workers=self.workers)
        summary.released_stale = self.repository.release_stale_locks()
        goal_id = (
            self.repository.resolve_goal_id(self.goal_ref) if self.goal_ref is not None else None
        )
        race_guard = RACE_GUARD_FACTOR * self.workers
        slots: dict[int, _Slot] = {}
        failed_task_ids: set[str] = set()
        exhausted = False
        consecutive_races = 0

        while True:
            while not exhausted and len(slots) < self.workers and not self._cap_reached(summary):
                index = min(set(range(self.workers)) - set(slots))
                agent_id = f"{self.base_agent_id}/w{index}-{secrets.token_hex(3)}"
                result = self.repository.claim_next_task(
                    agent_id=agent_id,
                    goal_ref=goal_id,
                    exclude_task_ids=failed_task_ids,
                )
                if result.outcome == ClaimOutcome.NO_TASKS:
                    exhausted = True
                    break
                if result.outcome == ClaimOutcome.RACE_LOST or result.task is None:
                    summary.race_losses += 1
                    consecutive_races += 1
                    if consecutive_races > race_guard:
                        logger.warning(
                            "Aborting fill after %d consecutive claim races",
                            consecutive_races,
                        )
                        exhausted = True
                    continue

                consecutive_races = 0
                task = result.task
                summary.launched += 1
                assignment = WorkerAssignment(
                    db_path=self.repository.db_path,
                    agent_id=agent_id,
                    task_id=task.id,
                    goal_id=task.goal_id,
                    ping_interval_seconds=self.ping_interval_seconds,
                    checkpoint_interval_seconds=self.checkpoint_interval_seconds,
                    command_template=self.command_template,
                    timeout_seconds=self.runner_timeout_seconds,
                    sqlite_busy_timeout_ms=self.repository.sqlite_busy_timeout_ms,
                )
                try:
                    process = self._spawn(assignment)
                except (OSError, QueueError) as error:
                    logger.exception("Failed to spawn worker for task %s", task.id)
                    summary.failed += 1
                    failed_task_ids.add(task.id)
                    self._record_failure(
                        task_id=task.id,
                        agent_id=agent_id,
                        reason=f"worker spawn failed: {error}",
                    )
                    continue
                slots[index] = _Slot(
                    index=index,
                    task_id=task.id,
                    agent_id=agent_id,
                    process=process,
                )
                logger.info("Launched worker w%d for task %s (%s)", index, task.id, agent_id)

            for slot in list(slots.values()):
                returncode = slot.process.poll()
                if returncode is None:
                    continue
                del slots[slot.index]
                if returncode == 0:
                    summary.completed += 1
                    logger.info("Worker w%d finished task %s", slot.index, slot.task_id)
                    continue
                summary.failed += 1
                failed_task_ids.add(slot.task_id)
                logger.warning(
                    "Worker w%d exited with code %d on task %s",
                    slot.index,
                    returncode,
                    slot.task_id,
                )
                self._record_failure(
                    task_id=slot.task_id,
                    agent_id=slot.agent_id,
                    reason=f"worker exited with code {returncode}",
                )

            if (exhausted or self._cap_reached(summary)) and not slots:
                break
            self._sleep(self.poll_interval_seconds)

        logger.info(
            "Orchestration finished: launched=%d completed=%d failed=%d",
            summary.launched,
            summary.completed,
            summary.failed,
        )
        return summary

    def _cap_reached(self, summary: OrchestrationSummary) -> bool:
        return self.max_tasks is not None and summary.launched >= self.max_tasks

    def _record_failure(self, *, task_id: str, agent_id: str, reason: str) -> None:
        try:
            released = self.repository.fail_task(
                task_ref=task_id,
                reason=reason,
                agent_id=agent_id,
                expected_agent_id=agent_id,
            )
        except QueueError:
            logger.exception("Could not record failure for task %s", task_id)
            return
        if not released:
            logger.info("Task %s was already released by its worker", task_id)
