"""Worker process: execute one leased task end-to-end.

Launched by the orchestrator as ``python -m imi.queue.worker``. The assignment
(store location, agent identity, task id and watchdog intervals) arrives through
the process environment.
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from imi.queue.backend import CommandRunRequest, CommandRunResult, run_command
from imi.queue.errors import LeaseLostError, ProcessError, QueueError
from imi.queue.models import TaskStatus, TaskView
from imi.queue.repository import QueueRepository
from imi.queue.watchdog import DEFAULT_TICK_SECONDS, start_watchdog

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_TASK_FAILED = 1
EXIT_BAD_ASSIGNMENT = 2
EXIT_LEASE_LOST = 3

NO_RUNNER_REASON = "no runner command configured"


@dataclass(slots=True)
class WorkerAssignment:
    """Everything a worker process needs, read from its environment."""

    db_path: Path
    agent_id: str
    task_id: str
    goal_id: str | None = None
    ping_interval_seconds: float = 60.0
    checkpoint_interval_seconds: float = 0.0
    command_template: str | None = None
    timeout_seconds: float | None = None
    sqlite_busy_timeout_ms: int = 5_000

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> WorkerAssignment:
        source = os.environ if env is None else env
        missing = [
            name for name in ("IMI_DB", "IMI_AGENT_ID", "IMI_TASK_ID") if not source.get(name)
        ]
        if missing:
            raise ValueError(f"Worker environment is missing: {', '.join(missing)}")
        timeout_raw = source.get("IMI_RUNNER_TIMEOUT_SECONDS", "").strip()
        return cls(
            db_path=Path(source["IMI_DB"]),
            agent_id=source["IMI_AGENT_ID"],
            task_id=source["IMI_TASK_ID"],
            goal_id=source.get("IMI_GOAL_ID") or None,
            ping_interval_seconds=float(source.get("IMI_PING_INTERVAL_SECONDS") or 60),
            checkpoint_interval_seconds=float(
                source.get("IMI_CHECKPOINT_INTERVAL_SECONDS") or 0,
            ),
            command_template=(
                source.get("IMI_WRAPPED_COMMAND") or source.get("IMI_RUNNER_COMMAND") or ""
            ).strip()
            or None,
            timeout_seconds=float(timeout_raw) if timeout_raw else None,
            sqlite_busy_timeout_ms=int(source.get("IMI_SQLITE_BUSY_TIMEOUT_MS") or 5_000),
        )

    def to_env(self) -> dict[str, str]:
        env = {
            "IMI_DB": str(self.db_path),
            "IMI_AGENT_ID": self.agent_id,
            "IMI_TASK_ID": self.task_id,
            "IMI_GOAL_ID": self.goal_id or "",
            "IMI_PING_INTERVAL_SECONDS": str(self.ping_interval_seconds),
            "IMI_CHECKPOINT_INTERVAL_SECONDS": str(self.checkpoint_interval_seconds),
            "IMI_SQLITE_BUSY_TIMEOUT_MS": str(self.sqlite_busy_timeout_ms),
        }
        if self.command_template:
            env["IMI_WRAPPED_COMMAND"] = self.command_template
        if self.timeout_seconds is not None:
            env["IMI_RUNNER_TIMEOUT_SECONDS"] = str(self.timeout_seconds)
        return env


def run_assigned_task(
    assignment: WorkerAssignment,
    *,
    tick_seconds: float = DEFAULT_TICK_SECONDS,
) -> int:
    """Run the wrapped command for a leased task and record the outcome.

    Returns the process exit code: 0 when the task was completed, 1 when it was
    failed back to ``todo``, 3 when the lease is no longer held (nothing is
    written in that case).
    """

    repository = QueueRepository(
        assignment.db_path,
        sqlite_busy_timeout_ms=assignment.sqlite_busy_timeout_ms,
    )
    try:
        task = repository.get_task(assignment.task_id)
        if task.status != TaskStatus.IN_PROGRESS or task.agent_id != assignment.agent_id:
            logger.warning(
                "Task %s is not leased to %s (status=%s, agent=%s); exiting",
                task.id,
                assignment.agent_id,
                task.status.value,
                task.agent_id,
            )
            return EXIT_LEASE_LOST

        if not assignment.command_template:
            _fail(repository, assignment, task, NO_RUNNER_REASON)
            return EXIT_TASK_FAILED

        watchdog = start_watchdog(
            db_path=assignment.db_path,
            task_id=task.id,
            agent_id=assignment.agent_id,
            ping_interval_seconds=assignment.ping_interval_seconds,
            checkpoint_interval_seconds=assignment.checkpoint_interval_seconds,
            sqlite_busy_timeout_ms=assignment.sqlite_busy_timeout_ms,
            tick_seconds=tick_seconds,
        )
        try:
            result = run_command(
                CommandRunRequest(
                    command_template=assignment.command_template,
                    values=_placeholder_values(assignment, task),
                    env=assignment.to_env(),
                    timeout_seconds=assignment.timeout_seconds,
                    cwd=_workspace_dir(task),
                ),
            )
        except ProcessError as error:
            _fail(repository, assignment, task, f"runner error: {error}")
            return EXIT_TASK_FAILED
        finally:
            if watchdog is not None:
                watchdog.stop()

        if watchdog is not None and watchdog.lease_lost:
            logger.warning("Task %s lease was lost while the command ran", task.id)
            return EXIT_LEASE_LOST

        if result.succeeded:
            summary = result.summary_line() or f"completed by {assignment.agent_id}"
            try:
                repository.complete_task(
                    task_ref=task.id,
                    summary=summary,
                    agent_id=assignment.agent_id,
                    expected_agent_id=assignment.agent_id,
                )
            except LeaseLostError:
                logger.warning("Task %s finished after its lease was lost; not completed", task.id)
                return EXIT_LEASE_LOST
            logger.info("Task %s completed: %s", task.id, summary)
            return EXIT_OK

        _fail(repository, assignment, task, _failure_reason(result))
        return EXIT_TASK_FAILED
    finally:
        repository.close()


def _placeholder_values(assignment: WorkerAssignment, task: TaskView) -> dict[str, str]:
    return {
        "task_id": task.id,
        "goal_id": task.goal_id or "",
        "agent_id": assignment.agent_id,
        "title": task.title,
        "db_path": str(assignment.db_path),
    }


def _workspace_dir(task: TaskView) -> str | None:
    if task.workspace_path and Path(task.workspace_path).is_dir():
        return task.workspace_path
    return None


def _failure_reason(result: CommandRunResult) -> str:
    if result.timed_out:
        reason = "command timed out"
    else:
        reason = f"command exited with code {result.exit_code}"
    stderr_tail = result.stderr_tail()
    if stderr_tail:
        reason = f"{reason}: {stderr_tail}"
    return reason


def _fail(
    repository: QueueRepository,
    assignment: WorkerAssignment,
    task: TaskView,
    reason: str,
) -> None:
    released = repository.fail_task(
        task_ref=task.id,
        reason=reason,
        agent_id=assignment.agent_id,
        expected_agent_id=assignment.agent_id,
    )
    if released:
        logger.warning("Task %s failed: %s", task.id, reason)
    else:
        logger.warning("Task %s failed but lease was already released: %s", task.id, reason)


def main() -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    try:
        assignment = WorkerAssignment.from_env()
    except ValueError as error:
        logger.error("Invalid worker assignment: %s", error)
        return EXIT_BAD_ASSIGNMENT
    try:
        return run_assigned_task(assignment)
    except QueueError as error:
        logger.error("Worker for task %s aborted: %s", assignment.task_id, error)
        return EXIT_TASK_FAILED


if __name__ == "__main__":
    sys.exit(main())
