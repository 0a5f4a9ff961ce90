"""Error taxonomy for the task store, stage handlers and dispatcher."""

from __future__ import annotations


class TaskStoreError(RuntimeError):
    """Base error raised by the task repository."""


class DuplicateError(TaskStoreError):
    """A task with the same id already exists."""


class NotFoundError(TaskStoreError):
    """Task id is unknown."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class ConflictError(TaskStoreError):
    """Stored status/version no longer match what the writer read."""

    def __init__(
        self,
        task_id: str,
        *,
        expected_status: str,
        expected_version: int | None,
    ) -> None:
        super().__init__(
            f"Task {task_id} changed concurrently "
            f"(expected status={expected_status} version={expected_version}).",
        )
        self.task_id = task_id
        self.expected_status = expected_status
        self.expected_version = expected_version


class InvalidTransitionError(TaskStoreError):
    """Requested status change is not an edge of the state machine."""


class StateDataError(TaskStoreError):
    """state_data patch writes a key the stage does not own or that already exists."""


class StageError(RuntimeError):
    """Base error for stage handler failures handled by the retry policy."""


class TransientFetchError(StageError):
    """One blob could not be downloaded or uploaded."""

    def __init__(self, ref: str, reason: str) -> None:
        super().__init__(f"{ref}: {reason}")
        self.ref = ref
        self.reason = reason


class ExhaustionError(StageError):
    """Every item of a non-empty batch failed."""


class StageTimeoutError(StageError):
    """Handler did not return within the stage time budget."""


class GenerationError(StageError):
    """Generation API call failed or returned an unusable payload."""


class RetryBudgetExceeded(StageError):
    """Handler failures exhausted the configured retry budget."""

    def __init__(self, task_id: str, *, retry_count: int, last_error: str) -> None:
        super().__init__(
            f"Task {task_id} failed after {retry_count} attempts: {last_error}",
        )
        self.task_id = task_id
        self.retry_count = retry_count
        self.last_error = last_error


class HandOffError(StageError):
    """Worker invocation failed after the hand-off bookkeeping was committed."""

    def __init__(self, message: str, *, task_version: int) -> None:
        super().__init__(message)
        self.task_version = task_version
