from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure
import pytest
from conftest import submit

from photo_pipeline.tasks.errors import (
    ConflictError,
    DuplicateError,
    InvalidTransitionError,
    NotFoundError,
    StateDataError,
)
from photo_pipeline.tasks.models import TaskParams, TaskStatus
from photo_pipeline.tasks.repository import TaskRepository

pytestmark = [
    allure.epic("Task Store"),
    allure.feature("Conditional Transitions"),
]


def test_create_starts_in_created_with_version_one(repository: TaskRepository) -> None:
    task = repository.create(
        TaskParams(images=("a.png",), generation_params={"style": "noir"}, count=3),
        task_id="task-1",
    )

    assert task.task_id == "task-1"
    assert task.status == TaskStatus.CREATED
    assert task.version == 1
    assert task.retry_count == 0
    assert task.state_data == {}
    assert task.params.generation_params == {"style": "noir"}

    loaded = repository.get("task-1")
    assert loaded.params == task.params
    assert loaded.created_at.tzinfo is not None


def test_create_rejects_duplicate_id(repository: TaskRepository) -> None:
    repository.create(TaskParams(images=()), task_id="dup")

    with pytest.raises(DuplicateError):
        repository.create(TaskParams(images=()), task_id="dup")


def test_get_unknown_task_raises_not_found(repository: TaskRepository) -> None:
    with pytest.raises(NotFoundError):
        repository.get("missing")


def test_commit_transition_bumps_version_and_merges_state(repository: TaskRepository) -> None:
    task_id = submit(repository, "a.png")

    updated = repository.commit_transition(
        task_id,
        expected_status=TaskStatus.CREATED,
        new_status=TaskStatus.DOWNLOADING,
        state_data_patch={"accepted_at": "2026-10-18T12:00:00+00:00"},
        expected_version=1,
    )

    assert updated.status == TaskStatus.DOWNLOADING
    assert updated.version == 2
    assert updated.state_data == {"accepted_at": "2026-10-18T12:00:00+00:00"}


def test_commit_transition_with_stale_status_writes_nothing(repository: TaskRepository) -> None:
    task_id = submit(repository, "a.png")
    repository.commit_transition(
        task_id,
        expected_status=TaskStatus.CREATED,
        new_status=TaskStatus.DOWNLOADING,
    )

    with pytest.raises(ConflictError):
        repository.commit_transition(
            task_id,
            expected_status=TaskStatus.CREATED,
            new_status=TaskStatus.DOWNLOADING,
        )

    task = repository.get(task_id)
    assert task.status == TaskStatus.DOWNLOADING
    assert task.version == 2


def test_commit_transition_with_stale_version_is_conflict(repository: TaskRepository) -> None:
    task_id = submit(repository, "a.png")

    with pytest.raises(ConflictError):
        repository.commit_transition(
            task_id,
            expected_status=TaskStatus.CREATED,
            new_status=TaskStatus.DOWNLOADING,
            expected_version=7,
        )
    assert repository.get(task_id).version == 1


def test_transitions_outside_the_table_are_rejected(repository: TaskRepository) -> None:
    task_id = submit(repository, "a.png")

    with pytest.raises(InvalidTransitionError):
        repository.commit_transition(
            task_id,
            expected_status=TaskStatus.CREATED,
            new_status=TaskStatus.GENERATING,
        )
    with pytest.raises(InvalidTransitionError):
        repository.commit_transition(
            task_id,
            expected_status=TaskStatus.CREATED,
            new_status=TaskStatus.CREATED,
        )


def test_any_non_terminal_status_may_fail(repository: TaskRepository) -> None:
    task_id = submit(repository, "a.png")

    failed = repository.commit_transition(
        task_id,
        expected_status=TaskStatus.CREATED,
        new_status=TaskStatus.FAILED,
    )
    assert failed.status == TaskStatus.FAILED

    with pytest.raises(InvalidTransitionError):
        repository.commit_transition(
            task_id,
            expected_status=TaskStatus.FAILED,
            new_status=TaskStatus.CREATED,
        )


def test_state_data_is_append_only(repository: TaskRepository) -> None:
    task_id = submit(repository, "a.png")
    repository.commit_transition(
        task_id,
        expected_status=TaskStatus.CREATED,
        new_status=TaskStatus.DOWNLOADING,
        state_data_patch={"accepted_at": "t0"},
    )

    with pytest.raises(StateDataError, match="accepted_at"):
        repository.commit_transition(
            task_id,
            expected_status=TaskStatus.DOWNLOADING,
            new_status=TaskStatus.DOWNLOADED,
            state_data_patch={"accepted_at": "t1"},
        )
    with pytest.raises(StateDataError, match="generated_images"):
        repository.commit_transition(
            task_id,
            expected_status=TaskStatus.DOWNLOADING,
            new_status=TaskStatus.DOWNLOADED,
            state_data_patch={"generated_images": []},
        )

    task = repository.get(task_id)
    assert task.status == TaskStatus.DOWNLOADING
    assert task.state_data == {"accepted_at": "t0"}


def test_record_failure_counts_until_budget_then_fails(repository: TaskRepository) -> None:
    task_id = submit(repository, "a.png")
    retry_after = datetime(2026, 10, 18, 12, 5, tzinfo=UTC)

    first = repository.record_failure(
        task_id,
        expected_status=TaskStatus.CREATED,
        expected_version=1,
        error="boom",
        retry_after=retry_after,
        max_retries=2,
    )
    assert first.status == TaskStatus.CREATED
    assert first.retry_count == 1
    assert first.error == "boom"
    assert first.retry_after == retry_after

    second = repository.record_failure(
        task_id,
        expected_status=TaskStatus.CREATED,
        expected_version=first.version,
        error="boom again",
        retry_after=retry_after + timedelta(minutes=1),
        max_retries=2,
    )
    assert second.status == TaskStatus.FAILED
    assert second.retry_count == 2
    assert second.error == "boom again"
    assert second.retry_after is None


def test_successful_transition_clears_pending_error(repository: TaskRepository) -> None:
    task_id = submit(repository, "a.png")
    failed_once = repository.record_failure(
        task_id,
        expected_status=TaskStatus.CREATED,
        expected_version=1,
        error="transient",
        retry_after=datetime(2026, 10, 18, 12, 5, tzinfo=UTC),
        max_retries=3,
    )

    advanced = repository.commit_transition(
        task_id,
        expected_status=TaskStatus.CREATED,
        new_status=TaskStatus.DOWNLOADING,
        expected_version=failed_once.version,
    )

    assert advanced.error is None
    assert advanced.retry_after is None
    assert advanced.retry_count == 1


def test_event_stream_records_every_write(repository: TaskRepository) -> None:
    task_id = submit(repository, "a.png")
    repository.commit_transition(
        task_id,
        expected_status=TaskStatus.CREATED,
        new_status=TaskStatus.DOWNLOADING,
        state_data_patch={"accepted_at": "t0"},
    )

    details = repository.get_task_details(task_id=task_id)

    assert details is not None
    assert [event.event_type for event in details.events] == ["created", "transitioned"]
    transition = details.events[1]
    assert transition.status_from == TaskStatus.CREATED
    assert transition.status_to == TaskStatus.DOWNLOADING
    assert transition.details == {"state_data_keys": ["accepted_at"], "version": 2}
    assert repository.get_task_details(task_id="missing") is None


def test_list_tasks_filters_by_status(repository: TaskRepository) -> None:
    first = submit(repository, "a.png")
    submit(repository, "b.png")
    repository.commit_transition(
        first,
        expected_status=TaskStatus.CREATED,
        new_status=TaskStatus.DOWNLOADING,
    )

    assert len(repository.list_tasks()) == 2
    downloading = repository.list_tasks(status=TaskStatus.DOWNLOADING)
    assert [task.task_id for task in downloading] == [first]


def test_due_tasks_are_oldest_first_and_skip_pending_retries(repository: TaskRepository) -> None:
    now = datetime.now(tz=UTC)
    retrying = submit(repository, "a.png")
    fresh = submit(repository, "b.png")
    failed = submit(repository, "c.png")
    awaiting = submit(repository, "d.png")
    later = submit(repository, "e.png")

    repository.record_failure(
        retrying,
        expected_status=TaskStatus.CREATED,
        expected_version=1,
        error="timeout",
        retry_after=now + timedelta(hours=1),
        max_retries=3,
    )
    repository.record_failure(
        failed,
        expected_status=TaskStatus.CREATED,
        expected_version=1,
        error="fatal",
        retry_after=None,
        max_retries=1,
    )
    downloading = repository.commit_transition(
        awaiting,
        expected_status=TaskStatus.CREATED,
        new_status=TaskStatus.DOWNLOADING,
    )
    downloaded = repository.commit_transition(
        awaiting,
        expected_status=TaskStatus.DOWNLOADING,
        new_status=TaskStatus.DOWNLOADED,
        expected_version=downloading.version,
    )
    repository.mark_handed_off(
        awaiting,
        expected_status=TaskStatus.DOWNLOADED,
        expected_version=downloaded.version,
        invocation_id="inv-1",
    )

    due_now = repository.list_due_tasks(now=now, limit=10)
    assert [task.task_id for task in due_now] == [fresh, later]

    due_later = repository.list_due_tasks(now=now + timedelta(hours=2), limit=10)
    assert [task.task_id for task in due_later] == [retrying, fresh, later]

    assert [task.task_id for task in repository.list_due_tasks(now=now, limit=1)] == [fresh]


def test_count_by_status_reports_every_status(repository: TaskRepository) -> None:
    first = submit(repository, "a.png")
    submit(repository, "b.png")
    repository.commit_transition(
        first,
        expected_status=TaskStatus.CREATED,
        new_status=TaskStatus.DOWNLOADING,
    )

    counts = repository.count_by_status()

    assert counts[TaskStatus.CREATED] == 1
    assert counts[TaskStatus.DOWNLOADING] == 1
    assert counts[TaskStatus.COMPLETED] == 0
    assert set(counts) == set(TaskStatus)


def test_concurrent_transitions_apply_exactly_once(tmp_path: Path) -> None:
    db_path = tmp_path / "race.db"
    setup = TaskRepository(db_path)
    setup.init_schema()
    task_id = submit(setup, "a.png")
    setup.close()

    barrier = threading.Barrier(2)
    outcomes: list[str] = []
    lock = threading.Lock()

    def _advance() -> None:
        repo = TaskRepository(db_path)
        try:
            barrier.wait(timeout=5)
            repo.commit_transition(
                task_id,
                expected_status=TaskStatus.CREATED,
                new_status=TaskStatus.DOWNLOADING,
                expected_version=1,
            )
            result = "ok"
        except ConflictError:
            result = "conflict"
        finally:
            repo.close()
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=_advance) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert sorted(outcomes) == ["conflict", "ok"]
    check = TaskRepository(db_path)
    try:
        task = check.get(task_id)
        details = check.get_task_details(task_id=task_id)
    finally:
        check.close()
    assert task.status == TaskStatus.DOWNLOADING
    assert task.version == 2
    assert details is not None
    assert [event.event_type for event in details.events] == ["created", "transitioned"]
