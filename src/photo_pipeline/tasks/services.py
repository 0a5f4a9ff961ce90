"""Use-case services for task submission."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from photo_pipeline.tasks.models import TaskParams, TaskView
from photo_pipeline.tasks.repository import TaskRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SubmitTask:
    """High-level command to submit a photo generation request."""

    images: tuple[str, ...]
    generation_params: dict[str, Any] = field(default_factory=dict)
    count: int = 1
    task_id: str | None = None


class TaskSubmissionService:
    """Validates a submission and creates the task in its initial state."""

    def __init__(
        self,
        *,
        repository: TaskRepository,
        max_images: int = 10,
        trigger: Callable[[str], object] | None = None,
    ) -> None:
        self.repository = repository
        self.max_images = max_images
        self.trigger = trigger

    def submit(self, command: SubmitTask) -> TaskView:
        params = self._validate(command)
        task = self.repository.create(params, task_id=command.task_id)
        logger.info(
            "Task submitted task_id=%s images=%d count=%d",
            task.task_id,
            len(params.images),
            params.count,
        )
        if self.trigger is not None:
            self.trigger(task.task_id)
        return task

    def _validate(self, command: SubmitTask) -> TaskParams:
        images = tuple(ref.strip() for ref in command.images)
        if any(not ref for ref in images):
            raise ValueError("Image references must be non-empty strings.")
        if len(images) > self.max_images:
            raise ValueError(f"At most {self.max_images} images per task, got {len(images)}.")
        if command.count < 1:
            raise ValueError("count must be >= 1.")
        return TaskParams(
            images=images,
            generation_params=dict(command.generation_params),
            count=command.count,
        )
