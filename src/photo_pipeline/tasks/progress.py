"""Read-only progress projection of a task for external callers."""

from __future__ import annotations

from dataclasses import dataclass

from photo_pipeline.tasks.models import TaskStatus, TaskView
from photo_pipeline.tasks.repository import TaskRepository

DEFAULT_FAILURE_MESSAGE = "Generation failed"

PROGRESS_TABLE: dict[TaskStatus, tuple[int, str]] = {
    TaskStatus.CREATED: (0, "Queued"),
    TaskStatus.DOWNLOADING: (10, "Downloading source images"),
    TaskStatus.DOWNLOADED: (30, "Images downloaded, preparing generation"),
    TaskStatus.GENERATING: (50, "Generating photos"),
    TaskStatus.GENERATED: (80, "Generation finished, saving results"),
    TaskStatus.UPLOADING: (90, "Uploading results"),
    TaskStatus.COMPLETED: (100, "Completed"),
    TaskStatus.FAILED: (100, DEFAULT_FAILURE_MESSAGE),
}


@dataclass(slots=True, frozen=True)
class ProgressView:
    """Status, human message and completion percentage of one task."""

    task_id: str
    status: TaskStatus
    message: str
    percentage: int

    def to_dict(self) -> dict[str, object]:
        return {
            "task_id": self.task_id,
            "status": self.status.value,
            "message": self.message,
            "percentage": self.percentage,
        }


def get_progress(repository: TaskRepository, task_id: str) -> ProgressView:
    """Project the stored task onto the progress table; raises NotFoundError."""

    return progress_for(repository.get(task_id))


def progress_for(task: TaskView) -> ProgressView:
    percentage, message = PROGRESS_TABLE[task.status]
    if task.status == TaskStatus.FAILED:
        message = task.error or DEFAULT_FAILURE_MESSAGE
    elif task.error:
        message = f"Retrying after error: {task.error}"
    return ProgressView(
        task_id=task.task_id,
        status=task.status,
        message=message,
        percentage=percentage,
    )
