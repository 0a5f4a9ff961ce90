from __future__ import annotations

import allure
import pytest

from photo_pipeline.tasks.models import TaskStatus
from photo_pipeline.tasks.repository import TaskRepository
from photo_pipeline.tasks.services import SubmitTask, TaskSubmissionService

pytestmark = [
    allure.epic("Task Store"),
    allure.feature("Submission"),
]


def test_submit_creates_task_and_triggers(repository: TaskRepository) -> None:
    triggered: list[str] = []
    service = TaskSubmissionService(repository=repository, trigger=triggered.append)

    task = service.submit(
        SubmitTask(images=(" images/a.png ",), generation_params={"style": "noir"}, count=2),
    )

    assert task.status == TaskStatus.CREATED
    assert task.params.images == ("images/a.png",)
    assert task.params.count == 2
    assert triggered == [task.task_id]


def test_submit_accepts_empty_image_list(repository: TaskRepository) -> None:
    task = TaskSubmissionService(repository=repository).submit(SubmitTask(images=()))

    assert task.params.images == ()


@pytest.mark.parametrize(
    ("command", "message"),
    [
        (SubmitTask(images=("a.png", "  ")), "non-empty"),
        (SubmitTask(images=("a.png",), count=0), "count"),
        (SubmitTask(images=("a", "b", "c")), "At most 2"),
    ],
)
def test_submit_rejects_invalid_requests(
    repository: TaskRepository,
    command: SubmitTask,
    message: str,
) -> None:
    service = TaskSubmissionService(repository=repository, max_images=2)

    with pytest.raises(ValueError, match=message):
        service.submit(command)

    assert repository.list_tasks() == []
