"""Dispatcher: advance one task by exactly one stage per invocation."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from photo_pipeline.storage.common import utc_now
from photo_pipeline.tasks.errors import (
    ConflictError,
    HandOffError,
    InvalidTransitionError,
    NotFoundError,
    StageError,
    StateDataError,
    StageTimeoutError,
)
from photo_pipeline.tasks.handlers import (
    DEFAULT_HANDLERS,
    StageContext,
    StageHandler,
    StageResult,
)
from photo_pipeline.tasks.models import TaskStatus, TaskView
from photo_pipeline.tasks.repository import TaskRepository
from photo_pipeline.tasks.retry import FailurePolicy

logger = logging.getLogger(__name__)

DEFAULT_STAGE_BUDGET_SECONDS = 50.0


class DispatchOutcome(str, Enum):
    ADVANCED = "advanced"
    HANDED_OFF = "handed_off"
    WAITING = "waiting"
    DEFERRED = "deferred"
    CONFLICT = "conflict"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    TERMINAL = "terminal"
    NOT_FOUND = "not_found"


@dataclass(slots=True)
class DispatchResult:
    """Outcome of one dispatcher invocation."""

    task_id: str
    outcome: DispatchOutcome
    status: TaskStatus | None = None
    message: str = ""
    error: str | None = None


class TaskDispatcher:
    """Loads a task, runs the handler for its status and commits the result.

    The dispatcher never decides when it runs; a timer, a queue message or a
    worker re-trigger calls :meth:`dispatch`.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskRepository,
        context: StageContext,
        failure_policy: FailurePolicy,
        handlers: Mapping[TaskStatus, StageHandler] | None = None,
        stage_budget: Callable[[TaskStatus], float] | None = None,
        clock: Callable[[], datetime] = utc_now,
        log: logging.Logger | None = None,
    ) -> None:
        self.repository = repository
        self.context = context
        self.failure_policy = failure_policy
        self.handlers = handlers if handlers is not None else DEFAULT_HANDLERS
        self.stage_budget = stage_budget or (lambda _status: DEFAULT_STAGE_BUDGET_SECONDS)
        self.clock = clock
        self.log = log or logger

    def dispatch(self, task_id: str) -> DispatchResult:
        try:
            task = self.repository.get(task_id)
        except NotFoundError:
            self.log.warning("Dispatch for unknown task task_id=%s", task_id)
            return DispatchResult(task_id=task_id, outcome=DispatchOutcome.NOT_FOUND)

        if task.is_terminal:
            return DispatchResult(
                task_id=task_id,
                outcome=DispatchOutcome.TERMINAL,
                status=task.status,
                error=task.error,
            )

        if task.retry_after is not None and task.retry_after > self.clock():
            return DispatchResult(
                task_id=task_id,
                outcome=DispatchOutcome.DEFERRED,
                status=task.status,
                message=f"Retry scheduled at {task.retry_after.isoformat()}",
                error=task.error,
            )

        handler = self.handlers.get(task.status)
        if handler is None:
            raise LookupError(f"No handler registered for status {task.status.value}")

        try:
            result = self._run_with_budget(handler, task)
        except ConflictError:
            return self._conflict(task)
        except HandOffError as error:
            return self._record_failure(task, error, expected_version=error.task_version)
        except StageError as error:
            return self._record_failure(task, error)
        except Exception as error:  # noqa: BLE001
            self.log.exception(
                "Unexpected handler error task_id=%s status=%s",
                task.task_id,
                task.status.value,
            )
            return self._record_failure(task, error)

        return self._commit(task, result)

    def run_until_idle(self, task_id: str, *, max_steps: int = 20) -> list[DispatchResult]:
        """Dispatch repeatedly while each step makes progress."""

        results: list[DispatchResult] = []
        for _ in range(max_steps):
            result = self.dispatch(task_id)
            results.append(result)
            if result.outcome not in {DispatchOutcome.ADVANCED, DispatchOutcome.HANDED_OFF}:
                break
            if result.outcome == DispatchOutcome.HANDED_OFF:
                # A background worker leaves the task where it was; stop instead of spinning.
                task = self.repository.get(task_id)
                if task.status == result.status:
                    break
        return results

    def dispatch_due(self, *, limit: int = 10) -> list[DispatchResult]:
        """One dispatch step for each task that is due now, oldest first."""

        due = self.repository.list_due_tasks(now=self.clock(), limit=limit)
        results = [self.dispatch(task.task_id) for task in due]
        self.log.info(
            "Sweep finished due=%d advanced=%d",
            len(due),
            sum(1 for result in results if result.outcome == DispatchOutcome.ADVANCED),
        )
        return results

    def _run_with_budget(self, handler: StageHandler, task: TaskView) -> StageResult:
        budget = self.stage_budget(task.status)
        executor = ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix=f"stage-{task.status.value}",
        )
        try:
            future = executor.submit(handler, task, self.context)
            done, _ = wait_futures([future], timeout=budget)
            if future not in done:
                future.cancel()
                raise StageTimeoutError(
                    f"Stage {task.status.value} exceeded its {budget:g}s time budget",
                )
            return future.result()
        finally:
            executor.shutdown(wait=False)

    def _commit(self, task: TaskView, result: StageResult) -> DispatchResult:
        if result.next_status is None:
            outcome = DispatchOutcome.HANDED_OFF if result.handed_off else DispatchOutcome.WAITING
            return DispatchResult(
                task_id=task.task_id,
                outcome=outcome,
                status=task.status,
                message=result.message,
            )

        try:
            updated = self.repository.commit_transition(
                task.task_id,
                expected_status=task.status,
                new_status=result.next_status,
                state_data_patch=result.state_data_patch,
                expected_version=task.version,
            )
        except ConflictError:
            return self._conflict(task)
        except (InvalidTransitionError, StateDataError) as error:
            self.log.exception(
                "Handler proposed an invalid result task_id=%s status=%s next=%s",
                task.task_id,
                task.status.value,
                result.next_status.value,
            )
            return self._record_failure(task, error)

        self.log.info(
            "Task advanced task_id=%s %s -> %s version=%d",
            task.task_id,
            task.status.value,
            updated.status.value,
            updated.version,
        )
        return DispatchResult(
            task_id=task.task_id,
            outcome=DispatchOutcome.ADVANCED,
            status=updated.status,
            message=result.message,
        )

    def _record_failure(
        self,
        task: TaskView,
        error: BaseException,
        *,
        expected_version: int | None = None,
    ) -> DispatchResult:
        try:
            outcome = self.failure_policy.record(task, error, expected_version=expected_version)
        except ConflictError:
            return self._conflict(task)
        return DispatchResult(
            task_id=task.task_id,
            outcome=DispatchOutcome.FAILED if outcome.failed else DispatchOutcome.RETRY_SCHEDULED,
            status=outcome.task.status,
            error=outcome.task.error,
        )

    def _conflict(self, task: TaskView) -> DispatchResult:
        self.log.info(
            "Task changed concurrently, nothing to do task_id=%s status=%s version=%d",
            task.task_id,
            task.status.value,
            task.version,
        )
        return DispatchResult(
            task_id=task.task_id,
            outcome=DispatchOutcome.CONFLICT,
            status=task.status,
        )
