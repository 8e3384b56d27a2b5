from __future__ import annotations

import multiprocessing
from pathlib import Path

import allure
import pytest
from conftest import add_goal_with_tasks, seconds_ago, set_task_times
from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from imi.queue.errors import (
    AlreadyDoneError,
    AlreadyOwnedError,
    LeaseLostError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from imi.queue.models import (
    CHECKPOINT_KEY,
    COMPLETION_SUMMARY_KEY,
    FAILURE_REASON_KEY,
    ClaimOutcome,
    GoalCreate,
    GoalStatus,
    MemoryType,
    Priority,
    TaskCreate,
    TaskStatus,
)
from imi.queue.repository import QueueRepository
from imi.storage.sqlmodel_models import Task

pytestmark = [
    allure.epic("Work Queue"),
    allure.feature("Claim Scheduler"),
]


def _claim_in_process(  # pragma: no cover - executed in child process
    db_path: str,
    agent_id: str,
    start_event: multiprocessing.synchronize.Event,
    result_queue: multiprocessing.queues.Queue[tuple[str, str, str]],
) -> None:
    repository = QueueRepository(Path(db_path))
    try:
        start_event.wait(timeout=5)
        result = repository.claim_next_task(agent_id=agent_id)
        task_id = result.task.id if result.task is not None else ""
        result_queue.put((agent_id, result.outcome.value, task_id))
    except Exception as error:  # noqa: BLE001
        result_queue.put((agent_id, "error", str(error)))
    finally:
        repository.close()


def test_claim_picks_highest_priority_and_marks_goal_ongoing(
    repository: QueueRepository,
) -> None:
    goal_id, (high, critical) = add_goal_with_tasks(repository, Priority.HIGH, Priority.CRITICAL)
    assert repository.get_goal(goal_id).status == GoalStatus.TODO

    result = repository.claim_next_task(agent_id="agent-x", goal_ref=goal_id)

    assert result.outcome == ClaimOutcome.CLAIMED
    assert result.task is not None
    assert result.task.id == critical.id
    assert result.task.status == TaskStatus.IN_PROGRESS
    assert result.task.agent_id == "agent-x"
    assert result.task.last_ping_at is not None
    assert repository.get_goal(goal_id).status == GoalStatus.ONGOING
    assert repository.get_task(high.id).status == TaskStatus.TODO


def test_claim_order_follows_priority_rank(repository: QueueRepository) -> None:
    _, tasks = add_goal_with_tasks(
        repository,
        Priority.LOW,
        Priority.HIGH,
        Priority.CRITICAL,
        Priority.MEDIUM,
    )
    by_priority = {task.priority: task.id for task in tasks}

    claimed = []
    for index in range(4):
        result = repository.claim_next_task(agent_id=f"agent-{index}")
        assert result.task is not None
        claimed.append(result.task.id)

    assert claimed == [
        by_priority[Priority.CRITICAL],
        by_priority[Priority.HIGH],
        by_priority[Priority.MEDIUM],
        by_priority[Priority.LOW],
    ]
    assert repository.claim_next_task(agent_id="agent-late").outcome == ClaimOutcome.NO_TASKS


def test_claim_is_fifo_within_equal_priority(repository: QueueRepository) -> None:
    _, (older, newer) = add_goal_with_tasks(repository, Priority.MEDIUM, Priority.MEDIUM)
    set_task_times(repository, older.id, updated_at=seconds_ago(60))

    first = repository.claim_next_task(agent_id="agent-a")
    second = repository.claim_next_task(agent_id="agent-b")

    assert first.task is not None and first.task.id == older.id
    assert second.task is not None and second.task.id == newer.id


def test_failed_task_goes_behind_equal_priority_peers(repository: QueueRepository) -> None:
    _, (first, second) = add_goal_with_tasks(repository, Priority.MEDIUM, Priority.MEDIUM)
    set_task_times(repository, first.id, updated_at=seconds_ago(120))
    set_task_times(repository, second.id, updated_at=seconds_ago(60))

    claimed = repository.claim_next_task(agent_id="agent-a")
    assert claimed.task is not None and claimed.task.id == first.id
    assert repository.fail_task(task_ref=first.id, reason="flaky", agent_id="agent-a")

    retry = repository.claim_next_task(agent_id="agent-b")
    assert retry.task is not None
    assert retry.task.id == second.id


def test_claim_returns_no_tasks_on_empty_queue(repository: QueueRepository) -> None:
    result = repository.claim_next_task(agent_id="agent-a")

    assert result.outcome == ClaimOutcome.NO_TASKS
    assert result.task is None
    assert result.claimed is False


def test_claim_rejects_blank_agent(repository: QueueRepository) -> None:
    add_goal_with_tasks(repository, Priority.MEDIUM)

    with pytest.raises(ValidationError):
        repository.claim_next_task(agent_id="  ")


def test_claim_scoped_to_goal_ignores_other_goals(repository: QueueRepository) -> None:
    goal_a, _ = add_goal_with_tasks(repository, Priority.LOW, name="A")
    _, (critical_b,) = add_goal_with_tasks(repository, Priority.CRITICAL, name="B")

    scoped = repository.claim_next_task(agent_id="agent-a", goal_ref=goal_a)

    assert scoped.task is not None
    assert scoped.task.goal_id == goal_a
    assert repository.get_task(critical_b.id).status == TaskStatus.TODO


def test_archived_goal_tasks_are_not_claimed(repository: QueueRepository) -> None:
    goal_id, (task,) = add_goal_with_tasks(repository, Priority.CRITICAL)
    repository.archive_goal(goal_ref=goal_id)

    assert repository.claim_next_task(agent_id="agent-a").outcome == ClaimOutcome.NO_TASKS
    assert (
        repository.claim_next_task(agent_id="agent-a", goal_ref=goal_id).outcome
        == ClaimOutcome.NO_TASKS
    )
    assert repository.get_task(task.id).status == TaskStatus.TODO
    with pytest.raises(ValidationError):
        repository.add_task(goal_ref=goal_id, payload=TaskCreate(title="late"))


def test_archived_goal_keeps_status_after_task_mutation(repository: QueueRepository) -> None:
    goal_id, (task,) = add_goal_with_tasks(repository, Priority.MEDIUM)
    repository.ensure_in_progress(task_ref=task.id, agent_id="agent-a")
    repository.archive_goal(goal_ref=goal_id)

    repository.complete_task(task_ref=task.id, summary="finished anyway", agent_id="agent-a")

    assert repository.get_goal(goal_id).status == GoalStatus.ARCHIVED


def test_release_stale_locks_only_reclaims_expired_leases(repository: QueueRepository) -> None:
    goal_id, (stale, fresh) = add_goal_with_tasks(repository, Priority.CRITICAL, Priority.HIGH)
    repository.claim_next_task(agent_id="agent-stale")
    repository.claim_next_task(agent_id="agent-fresh")
    set_task_times(repository, stale.id, last_ping_at=seconds_ago(2_000))
    set_task_times(repository, fresh.id, last_ping_at=seconds_ago(100))

    released = repository.release_stale_locks()

    assert released == 1
    reclaimed = repository.get_task(stale.id)
    assert reclaimed.status == TaskStatus.TODO
    assert reclaimed.agent_id is None
    untouched = repository.get_task(fresh.id)
    assert untouched.status == TaskStatus.IN_PROGRESS
    assert untouched.agent_id == "agent-fresh"
    assert repository.get_goal(goal_id).status == GoalStatus.ONGOING
    assert repository.list_memories(task_id=stale.id) == []


def test_release_stale_locks_falls_back_to_updated_at(repository: QueueRepository) -> None:
    goal_id, (task,) = add_goal_with_tasks(repository, Priority.MEDIUM)
    repository.claim_next_task(agent_id="agent-a")
    with Session(repository.engine) as session:
        session.exec(
            sa_update(Task)
            .where(col(Task.id) == task.id)
            .values(last_ping_at=None, updated_at=seconds_ago(3_600).replace(tzinfo=None)),
        )
        session.commit()

    assert repository.release_stale_locks() == 1
    assert repository.get_task(task.id).status == TaskStatus.TODO
    assert repository.get_goal(goal_id).status == GoalStatus.TODO


def test_release_stale_locks_honours_configured_ttl(db_path: Path) -> None:
    repository = QueueRepository(db_path, lease_ttl_seconds=60)
    repository.init_schema()
    try:
        _, (task,) = add_goal_with_tasks(repository, Priority.MEDIUM)
        repository.claim_next_task(agent_id="agent-a")
        set_task_times(repository, task.id, last_ping_at=seconds_ago(100))

        assert repository.release_stale_locks() == 1
    finally:
        repository.close()


def test_single_task_is_claimed_once_across_processes(tmp_path: Path) -> None:
    db_path = tmp_path / "claims.db"
    repository = QueueRepository(db_path)
    repository.init_schema()
    _, (task,) = add_goal_with_tasks(repository, Priority.MEDIUM)

    context = multiprocessing.get_context("spawn")
    start_event = context.Event()
    result_queue: multiprocessing.queues.Queue[tuple[str, str, str]] = context.Queue()
    processes = [
        context.Process(
            target=_claim_in_process,
            args=(str(db_path), f"agent-{index}", start_event, result_queue),
        )
        for index in range(4)
    ]
    for process in processes:
        process.start()
    start_event.set()
    results = [result_queue.get(timeout=30) for _ in processes]
    for process in processes:
        process.join(timeout=30)
        assert process.exitcode == 0

    outcomes = [outcome for _, outcome, _ in results]
    assert outcomes.count(ClaimOutcome.CLAIMED.value) == 1
    assert set(outcomes) <= {
        ClaimOutcome.CLAIMED.value,
        ClaimOutcome.RACE_LOST.value,
        ClaimOutcome.NO_TASKS.value,
    }
    winner = next(agent for agent, outcome, _ in results if outcome == "claimed")
    stored = repository.get_task(task.id)
    assert stored.status == TaskStatus.IN_PROGRESS
    assert stored.agent_id == winner
    repository.close()


def test_claim_reports_race_lost_when_candidate_was_taken(
    repository: QueueRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _, (task,) = add_goal_with_tasks(repository, Priority.MEDIUM)
    winner = repository.claim_next_task(agent_id="agent-winner")
    assert winner.claimed

    monkeypatch.setattr(
        repository,
        "_select_candidate",
        lambda session, *, goal_id, exclude_task_ids=(): (task.id, task.goal_id),
    )
    loser = repository.claim_next_task(agent_id="agent-loser")

    assert loser.outcome == ClaimOutcome.RACE_LOST
    assert loser.task is None
    assert repository.get_task(task.id).agent_id == "agent-winner"


def test_claim_verification_detects_overwrite_after_commit(
    repository: QueueRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _, (task,) = add_goal_with_tasks(repository, Priority.MEDIUM)
    original_verify = repository._verify_lease

    def _overwrite_then_verify(*, task_id: str, agent_id: str):
        with Session(repository.engine) as session:
            session.exec(
                sa_update(Task).where(col(Task.id) == task_id).values(agent_id="agent-intruder"),
            )
            session.commit()
        return original_verify(task_id=task_id, agent_id=agent_id)

    monkeypatch.setattr(repository, "_verify_lease", _overwrite_then_verify)

    result = repository.claim_next_task(agent_id="agent-a")

    assert result.outcome == ClaimOutcome.RACE_LOST


def test_complete_records_summary_and_resyncs_goal(repository: QueueRepository) -> None:
    goal_id, (task,) = add_goal_with_tasks(repository, Priority.MEDIUM)
    repository.claim_next_task(agent_id="agent-a")

    completed = repository.complete_task(task_ref=task.id, summary="done", agent_id="agent-a")

    assert completed.status == TaskStatus.DONE
    assert completed.agent_id is None
    assert completed.completed_at is not None
    memories = repository.list_memories(task_id=task.id)
    assert [(memory.key, memory.value, memory.type) for memory in memories] == [
        (COMPLETION_SUMMARY_KEY, "done", MemoryType.COMPLETION.value),
    ]
    assert repository.get_goal(goal_id).status == GoalStatus.DONE

    with pytest.raises(AlreadyDoneError):
        repository.complete_task(task_ref=task.id, summary="again", agent_id="agent-a")


def test_complete_with_blank_summary_uses_default(repository: QueueRepository) -> None:
    _, (task,) = add_goal_with_tasks(repository, Priority.MEDIUM)

    repository.complete_task(task_ref=task.id, summary="   ", agent_id="agent-a")

    (memory,) = repository.list_memories(task_id=task.id)
    assert memory.value == "completed"


def test_partially_done_goal_stays_ongoing(repository: QueueRepository) -> None:
    goal_id, (first, _second) = add_goal_with_tasks(repository, Priority.HIGH, Priority.LOW)

    repository.complete_task(task_ref=first.id, summary="half way", agent_id="agent-a")

    assert repository.get_goal(goal_id).status == GoalStatus.ONGOING


def test_fail_returns_task_to_todo_with_reason(repository: QueueRepository) -> None:
    goal_id, (task,) = add_goal_with_tasks(repository, Priority.MEDIUM)
    repository.claim_next_task(agent_id="agent-a")

    assert repository.fail_task(task_ref=task.id, reason="tests broke", agent_id="agent-a")

    failed = repository.get_task(task.id)
    assert failed.status == TaskStatus.TODO
    assert failed.agent_id is None
    assert repository.last_failure(goal_id=goal_id) == "tests broke"
    (memory,) = repository.list_memories(task_id=task.id)
    assert memory.key == FAILURE_REASON_KEY
    assert memory.type == MemoryType.FAILURE.value
    assert repository.get_goal(goal_id).status == GoalStatus.TODO


def test_fail_requires_reason_before_any_write(repository: QueueRepository) -> None:
    _, (task,) = add_goal_with_tasks(repository, Priority.MEDIUM)
    repository.claim_next_task(agent_id="agent-a")

    with pytest.raises(ValidationError):
        repository.fail_task(task_ref=task.id, reason="  ", agent_id="agent-a")

    assert repository.get_task(task.id).status == TaskStatus.IN_PROGRESS
    assert repository.list_memories(task_id=task.id) == []


def test_guarded_fail_skips_task_leased_to_someone_else(repository: QueueRepository) -> None:
    _, (task,) = add_goal_with_tasks(repository, Priority.MEDIUM)
    repository.claim_next_task(agent_id="agent-new")

    released = repository.fail_task(
        task_ref=task.id,
        reason="worker exited with code 1",
        agent_id="agent-old",
        expected_agent_id="agent-old",
    )

    assert released is False
    assert repository.get_task(task.id).agent_id == "agent-new"
    assert repository.list_memories(task_id=task.id) == []


def test_guarded_complete_leaves_task_leased_to_someone_else(repository: QueueRepository) -> None:
    _, (task,) = add_goal_with_tasks(repository, Priority.MEDIUM)
    repository.claim_next_task(agent_id="agent-new")

    with pytest.raises(LeaseLostError):
        repository.complete_task(
            task_ref=task.id,
            summary="finished late",
            agent_id="agent-old",
            expected_agent_id="agent-old",
        )

    current = repository.get_task(task.id)
    assert current.status == TaskStatus.IN_PROGRESS
    assert current.agent_id == "agent-new"
    assert repository.list_memories(task_id=task.id) == []

    repository.complete_task(
        task_ref=task.id,
        summary="done",
        agent_id="agent-new",
        expected_agent_id="agent-new",
    )
    assert repository.get_task(task.id).status == TaskStatus.DONE


def test_fail_on_done_task_is_rejected(repository: QueueRepository) -> None:
    _, (task,) = add_goal_with_tasks(repository, Priority.MEDIUM)
    repository.complete_task(task_ref=task.id, summary="ok", agent_id="agent-a")

    with pytest.raises(AlreadyDoneError):
        repository.fail_task(task_ref=task.id, reason="too late", agent_id="agent-a")


def test_ensure_in_progress_is_idempotent_for_same_agent(repository: QueueRepository) -> None:
    goal_id, (task,) = add_goal_with_tasks(repository, Priority.MEDIUM)

    first = repository.ensure_in_progress(task_ref=task.id, agent_id="agent-a")
    second = repository.ensure_in_progress(task_ref=task.id, agent_id="agent-a")

    assert first.status == second.status == TaskStatus.IN_PROGRESS
    assert second.agent_id == "agent-a"
    assert repository.get_goal(goal_id).status == GoalStatus.ONGOING


def test_ensure_in_progress_rejects_other_owner_and_done(repository: QueueRepository) -> None:
    _, (owned, done) = add_goal_with_tasks(repository, Priority.MEDIUM, Priority.LOW)
    repository.ensure_in_progress(task_ref=owned.id, agent_id="agent-a")
    repository.complete_task(task_ref=done.id, summary="ok", agent_id="agent-a")

    with pytest.raises(AlreadyOwnedError) as owned_error:
        repository.ensure_in_progress(task_ref=owned.id, agent_id="agent-b")
    assert owned_error.value.owner == "agent-a"
    assert repository.get_task(owned.id).agent_id == "agent-a"

    with pytest.raises(AlreadyDoneError):
        repository.ensure_in_progress(task_ref=done.id, agent_id="agent-b")


def test_ping_extends_lease_only_for_in_progress(repository: QueueRepository) -> None:
    _, (task,) = add_goal_with_tasks(repository, Priority.MEDIUM)

    with pytest.raises(ValidationError):
        repository.ping_task(task_ref=task.id)

    repository.claim_next_task(agent_id="agent-a")
    set_task_times(repository, task.id, last_ping_at=seconds_ago(1_000))
    before = repository.get_task(task.id).last_ping_at

    pinged = repository.ping_task(task_ref=task.id)

    assert before is not None and pinged.last_ping_at is not None
    assert pinged.last_ping_at > before


def test_touch_lease_checks_holder(repository: QueueRepository) -> None:
    _, (task,) = add_goal_with_tasks(repository, Priority.MEDIUM)
    repository.claim_next_task(agent_id="agent-a")

    assert repository.touch_lease(task_id=task.id, agent_id="agent-a") is True
    assert repository.touch_lease(task_id=task.id, agent_id="agent-b") is False


def test_checkpoint_writes_memory_only_while_leased(repository: QueueRepository) -> None:
    _, (task,) = add_goal_with_tasks(repository, Priority.MEDIUM)

    assert not repository.checkpoint_task(task_ref=task.id, note="early", agent_id="agent-a")

    repository.claim_next_task(agent_id="agent-a")
    assert repository.checkpoint_task(task_ref=task.id, note="halfway", agent_id="agent-a")

    memories = repository.list_memories(task_id=task.id, memory_type=MemoryType.CHECKPOINT)
    assert [(memory.key, memory.value) for memory in memories] == [(CHECKPOINT_KEY, "halfway")]


def test_ids_resolve_by_unique_prefix(repository: QueueRepository) -> None:
    first = repository.add_goal(GoalCreate(name="first"))
    second = repository.add_goal(GoalCreate(name="second"))

    assert repository.resolve_goal_id(first.id) == first.id
    assert repository.resolve_goal_id(first.id[:-1]) == first.id
    assert repository.resolve_goal_id(second.id[:-1]) == second.id
    with pytest.raises(ValidationError, match="Ambiguous"):
        repository.resolve_goal_id(first.id[:1])
    with pytest.raises(NotFoundError):
        repository.resolve_goal_id("zzzz-missing")
    with pytest.raises(NotFoundError):
        repository.get_task("zzzz-missing")


def test_add_task_to_unknown_goal_fails(repository: QueueRepository) -> None:
    with pytest.raises(NotFoundError):
        repository.add_task(goal_ref="nope", payload=TaskCreate(title="orphan"))


def test_add_goal_and_task_validate_names(repository: QueueRepository) -> None:
    with pytest.raises(ValidationError):
        repository.add_goal(GoalCreate(name=" "))
    goal = repository.add_goal(GoalCreate(name="g", relevant_files=("a.py", "b.py")))
    assert goal.relevant_files == ["a.py", "b.py"]
    with pytest.raises(ValidationError):
        repository.add_task(goal_ref=goal.id, payload=TaskCreate(title=""))


def test_delete_goal_removes_tasks_and_memories(repository: QueueRepository) -> None:
    goal_id, (task,) = add_goal_with_tasks(repository, Priority.MEDIUM)
    repository.complete_task(task_ref=task.id, summary="ok", agent_id="agent-a")

    assert repository.delete(ref=goal_id) == "goal"

    with pytest.raises(NotFoundError):
        repository.get_task(task.id)
    assert repository.list_memories() == []
    assert repository.list_goals() == []


def test_delete_task_resyncs_goal(repository: QueueRepository) -> None:
    goal_id, (done, pending) = add_goal_with_tasks(repository, Priority.HIGH, Priority.LOW)
    repository.complete_task(task_ref=done.id, summary="ok", agent_id="agent-a")
    assert repository.get_goal(goal_id).status == GoalStatus.ONGOING

    assert repository.delete(ref=pending.id) == "task"

    assert repository.get_goal(goal_id).status == GoalStatus.DONE


def test_reset_and_stats(repository: QueueRepository) -> None:
    _, (done, leased, _todo) = add_goal_with_tasks(
        repository,
        Priority.CRITICAL,
        Priority.HIGH,
        Priority.LOW,
    )
    repository.complete_task(task_ref=done.id, summary="ok", agent_id="agent-a")
    repository.ensure_in_progress(task_ref=leased.id, agent_id="agent-b")
    set_task_times(repository, leased.id, last_ping_at=seconds_ago(5_000))

    stats = repository.stats()

    assert stats.total_tasks == 3
    assert stats.done_tasks == 1
    assert stats.in_progress == 1
    assert stats.stale_leases == 1
    assert stats.avg_cycle_seconds is not None
    assert stats.completion_rate == pytest.approx(1 / 3)

    repository.reset()
    assert repository.stats().total_tasks == 0
    assert repository.list_goals() == []


def test_store_failures_surface_as_store_error(tmp_path: Path) -> None:
    blocked = tmp_path / "not-a-db"
    blocked.mkdir()
    repository = QueueRepository(blocked)
    try:
        with pytest.raises(StoreError):
            repository.list_goals()
    finally:
        repository.close()


def test_claim_skips_excluded_tasks(repository: QueueRepository) -> None:
    _, (critical, low) = add_goal_with_tasks(repository, Priority.CRITICAL, Priority.LOW)

    result = repository.claim_next_task(agent_id="agent-a", exclude_task_ids={critical.id})

    assert result.task is not None
    assert result.task.id == low.id
    assert (
        repository.claim_next_task(agent_id="agent-b", exclude_task_ids=[critical.id]).outcome
        == ClaimOutcome.NO_TASKS
    )
