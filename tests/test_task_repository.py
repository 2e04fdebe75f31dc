from __future__ import annotations

import threading
from datetime import timedelta

import allure
import pytest
from sqlalchemy import event
from conftest import REQUESTER, backdate

from lana_advisor.tasks.models import PendingTaskCreate, TaskStatus, UsageLogWrite
from lana_advisor.tasks.repository import TaskRepository

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Task Store"),
]


def _create(
    repository: TaskRepository,
    *,
    requester_id: str = REQUESTER,
    missing: tuple[str, ...] = ("wallet-holdings",),
    max_retries: int = 5,
) -> str:
    task = repository.create(
        PendingTaskCreate(
            requester_id=requester_id,
            question="How much LANA do I hold?",
            missing_fields=missing,
            partial_context={"profile": {"name": "Ana"}},
            partial_answer="Checking your wallets.",
            max_retries=max_retries,
        ),
    )
    return task.task_id


def test_create_stores_pending_task_with_zero_retries(repository: TaskRepository) -> None:
    task_id = _create(repository, missing=("wallet-holdings", "events", "wallet-holdings"))

    task = repository.get_task(task_id)
    assert task is not None
    assert task.status is TaskStatus.PENDING
    assert task.retry_count == 0
    assert task.missing_fields == ("wallet-holdings", "events")
    assert task.partial_context == {"profile": {"name": "Ana"}}
    assert task.full_answer is None


def test_create_cancels_earlier_pending_task_of_same_requester(repository: TaskRepository) -> None:
    first = _create(repository)
    second = _create(repository)
    other = _create(repository, requester_id="b" * 64)

    assert repository.get_task(first).status is TaskStatus.CANCELLED
    assert repository.get_task(second).status is TaskStatus.PENDING
    assert repository.get_task(other).status is TaskStatus.PENDING

    details = repository.get_task_details(first)
    assert details is not None
    cancelled = [event for event in details.events if event.event_type == "cancelled"]
    assert cancelled[0].details["superseded_by"] == second


def test_create_rejects_empty_or_unknown_missing_fields(repository: TaskRepository) -> None:
    with pytest.raises(ValueError, match="at least one missing data category"):
        _create(repository, missing=())
    with pytest.raises(ValueError, match="Unknown data category"):
        _create(repository, missing=("profile",))
    with pytest.raises(ValueError, match="max_retries"):
        _create(repository, max_retries=0)


def test_interleaved_creates_for_same_requester_keep_one_pending(
    db_path,
    repository: TaskRepository,
) -> None:
    other = TaskRepository(db_path)
    interleaved: list[str] = []

    def _create_concurrently(conn, cursor, statement, parameters, context, executemany) -> None:
        if interleaved or not statement.lstrip().upper().startswith("SELECT"):
            return
        if "ai_pending_tasks" not in statement:
            return
        interleaved.append(_create(other))

    event.listen(repository.engine, "after_cursor_execute", _create_concurrently)
    try:
        later = _create(repository)
    finally:
        event.remove(repository.engine, "after_cursor_execute", _create_concurrently)
        other.close()

    assert len(interleaved) == 1
    earlier = interleaved[0]
    assert repository.get_task(later).status is TaskStatus.PENDING
    assert repository.get_task(earlier).status is TaskStatus.CANCELLED
    pending = repository.list_tasks(status=TaskStatus.PENDING, requester_id=REQUESTER)
    assert [task.task_id for task in pending] == [later]


def test_claim_takes_oldest_first_and_marks_processing(repository: TaskRepository) -> None:
    ids = [_create(repository, requester_id=f"{index}" * 64) for index in range(3)]
    backdate(repository, ids[2], created=timedelta(minutes=3))
    backdate(repository, ids[0], created=timedelta(minutes=2))
    backdate(repository, ids[1], created=timedelta(minutes=1))

    claimed = repository.claim_due_batch(2)

    assert [task.task_id for task in claimed] == [ids[2], ids[0]]
    assert all(task.status is TaskStatus.PROCESSING for task in claimed)
    assert all(task.claim_token for task in claimed)
    assert repository.get_task(ids[1]).status is TaskStatus.PENDING


def test_claim_never_hands_a_task_to_two_claimers(db_path, repository: TaskRepository) -> None:
    for index in range(6):
        _create(repository, requester_id=f"{index}" * 64)

    results: list[list[str]] = []
    lock = threading.Lock()
    start = threading.Event()

    def _claim(claimer: str) -> None:
        local = TaskRepository(db_path)
        try:
            start.wait(timeout=2)
            claimed = local.claim_due_batch(6, claimer_id=claimer)
        finally:
            local.close()
        with lock:
            results.append([task.task_id for task in claimed])

    threads = [threading.Thread(target=_claim, args=(f"worker-{i}",)) for i in range(3)]
    for thread in threads:
        thread.start()
    start.set()
    for thread in threads:
        thread.join(timeout=10)

    all_claimed = [task_id for batch in results for task_id in batch]
    assert len(all_claimed) == len(set(all_claimed)) == 6


def test_claim_with_no_due_tasks_returns_empty(repository: TaskRepository) -> None:
    assert repository.claim_due_batch(5) == []
    assert repository.claim_due_batch(0) == []


def test_expire_stale_only_touches_old_pending_tasks(repository: TaskRepository) -> None:
    stale = _create(repository, requester_id="s" * 64)
    fresh = _create(repository, requester_id="f" * 64)
    old_processing = _create(repository, requester_id="p" * 64)
    backdate(repository, old_processing, created=timedelta(hours=2))
    repository.claim_due_batch(1)
    backdate(repository, stale, created=timedelta(minutes=31))

    expired = repository.expire_stale(timedelta(minutes=30))

    assert expired == 1
    assert repository.get_task(stale).status is TaskStatus.EXPIRED
    assert repository.get_task(fresh).status is TaskStatus.PENDING
    assert repository.get_task(old_processing).status is TaskStatus.PROCESSING


def test_reclaim_stuck_returns_task_to_pending_without_consuming_retry(
    repository: TaskRepository,
) -> None:
    task_id = _create(repository)
    repository.claim_due_batch(1)
    backdate(repository, task_id, updated=timedelta(minutes=6))

    assert repository.reclaim_stuck(timedelta(minutes=5)) == 1

    task = repository.get_task(task_id)
    assert task.status is TaskStatus.PENDING
    assert task.retry_count == 0
    assert task.claim_token is None


def test_reclaim_stuck_leaves_recent_processing_tasks(repository: TaskRepository) -> None:
    task_id = _create(repository)
    repository.claim_due_batch(1)

    assert repository.reclaim_stuck(timedelta(minutes=5)) == 0
    assert repository.get_task(task_id).status is TaskStatus.PROCESSING


def test_reclaim_stuck_cancels_task_superseded_by_newer_pending(
    repository: TaskRepository,
) -> None:
    stuck = _create(repository)
    repository.claim_due_batch(1)
    newer = _create(repository)
    backdate(repository, stuck, updated=timedelta(minutes=10))

    assert repository.reclaim_stuck(timedelta(minutes=5)) == 0
    assert repository.get_task(stuck).status is TaskStatus.CANCELLED
    assert repository.get_task(newer).status is TaskStatus.PENDING


def test_retry_budget_expires_task_after_max_retries(repository: TaskRepository) -> None:
    task_id = _create(repository, max_retries=3)

    statuses = []
    for _ in range(3):
        claimed = repository.claim_due_batch(1)
        assert [task.task_id for task in claimed] == [task_id]
        statuses.append(repository.retry_or_expire(task_id))

    assert statuses == [TaskStatus.PENDING, TaskStatus.PENDING, TaskStatus.EXPIRED]
    task = repository.get_task(task_id)
    assert task.retry_count == 3
    assert task.status is TaskStatus.EXPIRED
    assert repository.claim_due_batch(1) == []


def test_fail_records_error_and_consumes_retry(repository: TaskRepository) -> None:
    task_id = _create(repository)
    repository.claim_due_batch(1)

    status = repository.fail(task_id, "PipelineError: completion timed out")

    task = repository.get_task(task_id)
    assert status is TaskStatus.PENDING
    assert task.retry_count == 1
    assert task.error_summary == "PipelineError: completion timed out"
    events = [event.event_type for event in repository.get_task_details(task_id).events]
    assert events == ["created", "claimed", "failed_attempt"]


def test_fail_on_last_retry_expires_task(repository: TaskRepository) -> None:
    task_id = _create(repository, max_retries=2)

    repository.claim_due_batch(1)
    assert repository.fail(task_id, "RuntimeError: boom") is TaskStatus.PENDING
    repository.claim_due_batch(1)
    assert repository.fail(task_id, "RuntimeError: boom again") is TaskStatus.EXPIRED

    task = repository.get_task(task_id)
    assert task.status is TaskStatus.EXPIRED
    assert task.retry_count == 2
    assert task.error_summary == "RuntimeError: boom again"
    assert repository.claim_due_batch(1) == []


def test_retry_of_task_not_processing_is_ignored(repository: TaskRepository) -> None:
    task_id = _create(repository)

    assert repository.retry_or_expire(task_id) is None
    assert repository.get_task(task_id).retry_count == 0


def test_complete_stores_answer_only_from_processing(repository: TaskRepository) -> None:
    task_id = _create(repository)
    answer = {"type": "triad", "final_answer": "You hold 12.5 LANA.", "confidence": 80}

    assert repository.complete(task_id, answer) is False

    repository.claim_due_batch(1)
    assert repository.complete(task_id, answer) is True
    assert repository.complete(task_id, answer) is False

    task = repository.get_task(task_id)
    assert task.status is TaskStatus.COMPLETED
    assert task.full_answer == answer
    assert task.completed_at is not None


def test_complete_loses_to_concurrent_reclaim(repository: TaskRepository) -> None:
    task_id = _create(repository)
    repository.claim_due_batch(1)
    backdate(repository, task_id, updated=timedelta(minutes=10))
    repository.reclaim_stuck(timedelta(minutes=5))

    assert repository.complete(task_id, {"final_answer": "late"}) is False
    assert repository.get_task(task_id).status is TaskStatus.PENDING


def test_event_trail_follows_lifecycle(repository: TaskRepository) -> None:
    task_id = _create(repository)
    repository.claim_due_batch(1)
    repository.complete(task_id, {"final_answer": "done", "confidence": 90})

    details = repository.get_task_details(task_id)

    assert [(event.status_from, event.status_to) for event in details.events] == [
        (None, TaskStatus.PENDING),
        (TaskStatus.PENDING, TaskStatus.PROCESSING),
        (TaskStatus.PROCESSING, TaskStatus.COMPLETED),
    ]
    assert details.events[-1].details == {"confidence": 90}


def test_list_tasks_filters_by_status_and_requester(repository: TaskRepository) -> None:
    _create(repository, requester_id="x" * 64)
    _create(repository, requester_id="y" * 64)
    repository.claim_due_batch(1)

    assert len(repository.list_tasks()) == 2
    assert len(repository.list_tasks(status=TaskStatus.PENDING)) == 1
    assert len(repository.list_tasks(requester_id="y" * 64)) == 1


def test_usage_log_round_trip(repository: TaskRepository) -> None:
    repository.add_usage_log(
        UsageLogWrite(
            requester_id=REQUESTER,
            model="triad-gemini-async",
            prompt_tokens=300,
            completion_tokens=150,
            total_tokens=450,
            cost_usd=0.00002,
            cost_lana=0.0054,
            succeeded=False,
            task_id="task-1",
        ),
    )

    rows = repository.list_usage(requester_id=REQUESTER)

    assert len(rows) == 1
    assert rows[0].total_tokens == 450
    assert rows[0].succeeded is False
    assert rows[0].task_id == "task-1"
    assert repository.list_usage(requester_id="nobody") == []


def test_init_schema_is_idempotent(db_path) -> None:
    repository = TaskRepository(db_path)
    repository.init_schema()
    repository.init_schema()
    try:
        assert repository.list_tasks() == []
    finally:
        repository.close()
