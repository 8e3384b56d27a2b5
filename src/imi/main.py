"""CLI entrypoint for imi."""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from imi import __version__
from imi.queue.controllers import (
    AddGoalCommand,
    AddTaskCommand,
    ArchiveGoalCommand,
    CheckpointTaskCommand,
    ClaimNextCommand,
    CompleteTaskCommand,
    DeleteCommand,
    FailTaskCommand,
    InitCommand,
    ListGoalsCommand,
    ListTasksCommand,
    MemoryAddCommand,
    MemoryListCommand,
    OrchestrateCommand,
    PingTaskCommand,
    QueueCliController,
    ResetCommand,
    StartTaskCommand,
    StatsCommand,
)
from imi.queue.errors import QueueError
from imi.queue.models import MemoryType, Priority, TaskStatus

click.rich_click.USE_MARKDOWN = True
QUEUE_CONTROLLER = QueueCliController()

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
PRIORITY_CHOICE = click.Choice([priority.value for priority in Priority], case_sensitive=False)

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path (default: IMI_DB or nearest .imi/state.db).",
)
agent_option = click.option(
    "--agent",
    default=None,
    help="Agent id (default: IMI_AGENT_ID, then $USER).",
)


@click.group()
@click.version_option(version=__version__, prog_name="imi")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def imi(log_level: str) -> None:
    """Local goal/task work queue for autonomous agents."""

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@imi.command("init")
@db_path_option
def init(db_path: Path | None) -> None:
    """Create (or migrate) the queue store."""

    with _queue_errors():
        _emit_lines(QUEUE_CONTROLLER.init(InitCommand(db_path=db_path)))


@imi.command("goals")
@db_path_option
@click.option("--active", is_flag=True, help="Hide archived goals.")
def goals(db_path: Path | None, active: bool) -> None:
    """List goals."""

    with _queue_errors():
        _emit_lines(
            QUEUE_CONTROLLER.list_goals(
                ListGoalsCommand(db_path=db_path, include_archived=not active),
            ),
        )


@imi.command("tasks")
@db_path_option
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus], case_sensitive=False),
    default=None,
    help="Filter by task status.",
)
@click.option("--goal", default=None, help="Filter by goal id or prefix.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=200,
    show_default=True,
)
def tasks(db_path: Path | None, status: str | None, goal: str | None, limit: int) -> None:
    """List tasks in claim order."""

    with _queue_errors():
        _emit_lines(
            QUEUE_CONTROLLER.list_tasks(
                ListTasksCommand(db_path=db_path, status=status, goal=goal, limit=limit),
            ),
        )


@imi.command("add-goal")
@db_path_option
@click.argument("name")
@click.option("--description", default="", help="What the goal is about.")
@click.option("--why", default="", help="Why the goal matters.")
@click.option("--for-who", default="", help="Who benefits.")
@click.option("--success-signal", default="", help="How success is recognized.")
@click.option("--priority", type=PRIORITY_CHOICE, default="medium", show_default=True)
@click.option("--file", "relevant_files", multiple=True, help="Relevant file. Can be repeated.")
@click.option("--workspace", default=None, help="Workspace path (default: current directory).")
def add_goal(  # noqa: PLR0913
    db_path: Path | None,
    name: str,
    description: str,
    why: str,
    for_who: str,
    success_signal: str,
    priority: str,
    relevant_files: tuple[str, ...],
    workspace: str | None,
) -> None:
    """Create a goal."""

    with _queue_errors():
        _emit_lines(
            QUEUE_CONTROLLER.add_goal(
                AddGoalCommand(
                    db_path=db_path,
                    name=name,
                    description=description,
                    why=why,
                    for_who=for_who,
                    success_signal=success_signal,
                    priority=priority,
                    relevant_files=relevant_files,
                    workspace_path=workspace,
                ),
            ),
        )


@imi.command("add-task")
@db_path_option
@click.argument("goal")
@click.argument("title")
@click.option("--description", default="", help="Task details.")
@click.option("--why", default="", help="Why the task matters.")
@click.option("--context", default="", help="Context an agent needs to start.")
@click.option("--priority", type=PRIORITY_CHOICE, default="medium", show_default=True)
@click.option("--acceptance", default=None, help="Acceptance criteria.")
@click.option("--file", "relevant_files", multiple=True, help="Relevant file. Can be repeated.")
@click.option("--tool", "tools", multiple=True, help="Suggested tool. Can be repeated.")
@click.option("--workspace", default=None, help="Workspace path (default: the goal's).")
def add_task(  # noqa: PLR0913
    db_path: Path | None,
    goal: str,
    title: str,
    description: str,
    why: str,
    context: str,
    priority: str,
    acceptance: str | None,
    relevant_files: tuple[str, ...],
    tools: tuple[str, ...],
    workspace: str | None,
) -> None:
    """Add a task under GOAL (id or prefix)."""

    with _queue_errors():
        _emit_lines(
            QUEUE_CONTROLLER.add_task(
                AddTaskCommand(
                    db_path=db_path,
                    goal=goal,
                    title=title,
                    description=description,
                    why=why,
                    context=context,
                    priority=priority,
                    acceptance_criteria=acceptance,
                    relevant_files=relevant_files,
                    tools=tools,
                    workspace_path=workspace,
                ),
            ),
        )


@imi.command("archive")
@db_path_option
@click.argument("goal")
def archive(db_path: Path | None, goal: str) -> None:
    """Archive a goal; its tasks are no longer claimed."""

    with _queue_errors():
        _emit_lines(QUEUE_CONTROLLER.archive_goal(ArchiveGoalCommand(db_path=db_path, goal=goal)))


@imi.command("next")
@db_path_option
@agent_option
@click.argument("goal", required=False)
def next_task(db_path: Path | None, agent: str | None, goal: str | None) -> None:
    """Claim the next task, optionally scoped to GOAL."""

    with _queue_errors():
        _emit_lines(
            QUEUE_CONTROLLER.claim_next(ClaimNextCommand(db_path=db_path, goal=goal, agent=agent)),
        )


@imi.command("start")
@db_path_option
@agent_option
@click.argument("task")
def start(db_path: Path | None, agent: str | None, task: str) -> None:
    """Lease a specific TASK for this agent."""

    with _queue_errors():
        _emit_lines(
            QUEUE_CONTROLLER.start_task(StartTaskCommand(db_path=db_path, task=task, agent=agent)),
        )


@imi.command("complete")
@db_path_option
@agent_option
@click.argument("task")
@click.argument("summary", nargs=-1)
def complete(db_path: Path | None, agent: str | None, task: str, summary: tuple[str, ...]) -> None:
    """Mark TASK done with a completion SUMMARY."""

    with _queue_errors():
        _emit_lines(
            QUEUE_CONTROLLER.complete_task(
                CompleteTaskCommand(
                    db_path=db_path,
                    task=task,
                    summary=" ".join(summary),
                    agent=agent,
                ),
            ),
        )


@imi.command("fail")
@db_path_option
@agent_option
@click.argument("task")
@click.argument("reason", nargs=-1)
def fail(db_path: Path | None, agent: str | None, task: str, reason: tuple[str, ...]) -> None:
    """Return TASK to the queue, recording REASON."""

    with _queue_errors():
        _emit_lines(
            QUEUE_CONTROLLER.fail_task(
                FailTaskCommand(db_path=db_path, task=task, reason=" ".join(reason), agent=agent),
            ),
        )


@imi.command("ping")
@db_path_option
@click.argument("task")
def ping(db_path: Path | None, task: str) -> None:
    """Extend the lease of an in-progress TASK."""

    with _queue_errors():
        _emit_lines(QUEUE_CONTROLLER.ping_task(PingTaskCommand(db_path=db_path, task=task)))


@imi.command("checkpoint")
@db_path_option
@agent_option
@click.argument("task")
@click.argument("note", nargs=-1)
def checkpoint(db_path: Path | None, agent: str | None, task: str, note: tuple[str, ...]) -> None:
    """Record a progress NOTE for an in-progress TASK and extend its lease."""

    with _queue_errors():
        _emit_lines(
            QUEUE_CONTROLLER.checkpoint_task(
                CheckpointTaskCommand(
                    db_path=db_path,
                    task=task,
                    note=" ".join(note),
                    agent=agent,
                ),
            ),
        )


@imi.group()
def memory() -> None:
    """Memory log commands."""


@memory.command("list")
@db_path_option
@click.option("--goal", default=None, help="Goal id or prefix.")
@click.option("--task", default=None, help="Task id or prefix.")
@click.option("--limit", type=click.IntRange(min=1, max=500), default=50, show_default=True)
def memory_list(db_path: Path | None, goal: str | None, task: str | None, limit: int) -> None:
    """Show recent memory entries."""

    with _queue_errors():
        _emit_lines(
            QUEUE_CONTROLLER.list_memories(
                MemoryListCommand(db_path=db_path, goal=goal, task=task, limit=limit),
            ),
        )


@memory.command("add")
@db_path_option
@agent_option
@click.argument("goal")
@click.argument("key")
@click.argument("value", nargs=-1, required=True)
@click.option(
    "--type",
    "memory_type",
    type=click.Choice([item.value for item in MemoryType], case_sensitive=False),
    default=MemoryType.LEARNING.value,
    show_default=True,
)
def memory_add(  # noqa: PLR0913
    db_path: Path | None,
    agent: str | None,
    goal: str,
    key: str,
    value: tuple[str, ...],
    memory_type: str,
) -> None:
    """Append a KEY/VALUE memory to GOAL."""

    with _queue_errors():
        _emit_lines(
            QUEUE_CONTROLLER.add_memory(
                MemoryAddCommand(
                    db_path=db_path,
                    goal=goal,
                    key=key,
                    value=" ".join(value),
                    memory_type=memory_type.lower(),
                    agent=agent,
                ),
            ),
        )


@imi.command("delete")
@db_path_option
@click.argument("ref")
def delete(db_path: Path | None, ref: str) -> None:
    """Delete a goal (with its tasks) or a single task."""

    with _queue_errors():
        _emit_lines(QUEUE_CONTROLLER.delete(DeleteCommand(db_path=db_path, ref=ref)))


@imi.command("reset")
@db_path_option
@click.option("--force", is_flag=True, help="Skip the confirmation prompt.")
def reset(db_path: Path | None, force: bool) -> None:
    """Delete every goal, task and memory."""

    if not force:
        if not sys.stdin.isatty():
            raise click.ClickException("Refusing to reset without --force (stdin is not a TTY).")
        click.confirm("Delete all goals, tasks and memories?", abort=True)
    with _queue_errors():
        _emit_lines(QUEUE_CONTROLLER.reset(ResetCommand(db_path=db_path)))


@imi.command("stats")
@db_path_option
def stats(db_path: Path | None) -> None:
    """Show queue health statistics."""

    with _queue_errors():
        _emit_lines(QUEUE_CONTROLLER.stats(StatsCommand(db_path=db_path)))


@imi.command("orchestrate")
@db_path_option
@agent_option
@click.argument("goal", required=False)
@click.option(
    "--workers",
    type=click.IntRange(min=1),
    default=None,
    help="Concurrent worker processes (default: IMI_ORCHESTRATE_WORKERS or 2).",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop launching after this many tasks.",
)
@click.option(
    "--ping-interval",
    type=click.FloatRange(min=0),
    default=None,
    help="Worker lease heartbeat interval in seconds (0 disables).",
)
@click.option(
    "--checkpoint-interval",
    type=click.FloatRange(min=0),
    default=None,
    help="Worker checkpoint interval in seconds (0 disables).",
)
@click.option(
    "--command",
    "command_template",
    default=None,
    help=(
        "Command each worker runs; placeholders {task_id}, {goal_id}, {agent_id}, "
        "{title}, {db_path}. Default: IMI_RUNNER_COMMAND."
    ),
)
@click.option(
    "--timeout",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Per-task command timeout in seconds.",
)
def orchestrate(  # noqa: PLR0913
    db_path: Path | None,
    agent: str | None,
    goal: str | None,
    workers: int | None,
    max_tasks: int | None,
    ping_interval: float | None,
    checkpoint_interval: float | None,
    command_template: str | None,
    timeout: float | None,
) -> None:
    """Run a pool of workers until the queue (or GOAL) drains."""

    with _queue_errors():
        result = QUEUE_CONTROLLER.orchestrate(
            OrchestrateCommand(
                db_path=db_path,
                goal=goal,
                workers=workers,
                max_tasks=max_tasks,
                ping_interval_seconds=ping_interval,
                checkpoint_interval_seconds=checkpoint_interval,
                command=command_template,
                agent=agent,
                runner_timeout_seconds=timeout,
            ),
        )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Orchestration finished with failed tasks.")


@contextmanager
def _queue_errors() -> Iterator[None]:
    try:
        yield
    except (QueueError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    imi()
