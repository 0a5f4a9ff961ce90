"""Failure accounting shared by the dispatcher and the generation worker."""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import NamedTuple

from photo_pipeline.storage.common import utc_now
from photo_pipeline.tasks.errors import RetryBudgetExceeded
from photo_pipeline.tasks.models import TaskStatus, TaskView
from photo_pipeline.tasks.repository import TaskRepository
from photo_pipeline.tasks.sanitization import summarize_error

logger = logging.getLogger(__name__)


class RetryOutcome(NamedTuple):
    task: TaskView
    retried: bool
    failed: bool


@dataclass(slots=True)
class FailurePolicy:
    """Counts failed attempts and either schedules a retry or fails the task."""

    repository: TaskRepository
    max_retries: int = 3
    retry_base_seconds: float = 5.0
    retry_max_seconds: float = 300.0
    rng: random.Random | None = None
    clock: Callable[[], datetime] = utc_now
    log: logging.Logger | None = None

    def record(
        self,
        task: TaskView,
        error: BaseException,
        *,
        expected_version: int | None = None,
    ) -> RetryOutcome:
        """Persist one failed attempt against the task as it was read.

        Raises :class:`ConflictError` when the task changed meanwhile.
        """

        log = self.log or logger
        summary = summarize_error(error)
        retry_number = task.retry_count + 1
        retry_after = self.clock() + timedelta(
            seconds=self.compute_retry_delay(retry_number=retry_number),
        )
        updated = self.repository.record_failure(
            task.task_id,
            expected_status=task.status,
            expected_version=expected_version if expected_version is not None else task.version,
            error=summary,
            retry_after=retry_after,
            max_retries=self.max_retries,
        )
        if updated.status == TaskStatus.FAILED:
            exhausted = RetryBudgetExceeded(
                task.task_id,
                retry_count=updated.retry_count,
                last_error=summary,
            )
            log.error("%s stage=%s", exhausted, task.status.value)
            return RetryOutcome(task=updated, retried=False, failed=True)

        log.warning(
            "Stage failed, retry scheduled task_id=%s stage=%s attempt=%d/%d retry_after=%s "
            "error=%s",
            task.task_id,
            task.status.value,
            updated.retry_count,
            self.max_retries,
            updated.retry_after.isoformat() if updated.retry_after else "-",
            summary,
        )
        return RetryOutcome(task=updated, retried=True, failed=False)

    def compute_retry_delay(self, *, retry_number: int) -> float:
        max_delay = min(
            self.retry_max_seconds,
            self.retry_base_seconds * (2 ** max(retry_number - 1, 0)),
        )
        rng = self.rng or random
        return rng.uniform(0, max_delay)
