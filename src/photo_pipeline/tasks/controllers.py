"""Controllers for task and worker CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from photo_pipeline.config import Settings
from photo_pipeline.generation import (
    EchoGenerationClient,
    GenerationClient,
    HttpGenerationClient,
)
from photo_pipeline.storage.blobs import BlobStore, LocalBlobStore
from photo_pipeline.tasks.dispatcher import DispatchResult, TaskDispatcher
from photo_pipeline.tasks.errors import NotFoundError
from photo_pipeline.tasks.handlers import StageContext
from photo_pipeline.tasks.handoff import (
    GenerationHandOff,
    GenerationWorker,
    InlineWorkerInvoker,
    SubprocessWorkerInvoker,
    WorkerInvoker,
    WorkerSnapshot,
)
from photo_pipeline.tasks.models import TaskStatus
from photo_pipeline.tasks.progress import get_progress
from photo_pipeline.tasks.repository import TaskRepository
from photo_pipeline.tasks.retry import FailurePolicy
from photo_pipeline.tasks.services import SubmitTask, TaskSubmissionService


@dataclass(slots=True)
class TaskSubmitCommand:
    """CLI input for task submission."""

    db_path: Path | None
    images: tuple[str, ...]
    count: int
    params: tuple[str, ...]
    dispatch: bool = False


@dataclass(slots=True)
class TaskDispatchCommand:
    """CLI input for one dispatcher invocation."""

    db_path: Path | None
    task_id: str
    until_idle: bool = False
    max_steps: int = 20


@dataclass(slots=True)
class TaskSweepCommand:
    """CLI input for one sweep over due tasks."""

    db_path: Path | None
    limit: int = 10


@dataclass(slots=True)
class TaskStatsCommand:
    """CLI input for task counts."""

    db_path: Path | None


@dataclass(slots=True)
class TaskProgressCommand:
    """CLI input for progress query."""

    db_path: Path | None
    task_id: str
    output_format: str = "text"


@dataclass(slots=True)
class TaskInspectCommand:
    """CLI input for task inspection."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for one worker invocation."""

    db_path: Path | None
    snapshot_file: Path
    keep_snapshot: bool = False


@dataclass(slots=True)
class PipelineRuntime:
    """Wired collaborators for one CLI invocation."""

    settings: Settings
    repository: TaskRepository
    blob_store: BlobStore
    client: GenerationClient
    failure_policy: FailurePolicy
    dispatcher: TaskDispatcher


class TaskCliController:
    """Coordinates submission, dispatch, progress and inspection CLI operations."""

    def submit(self, command: TaskSubmitCommand) -> list[str]:
        settings = _settings(command.db_path)
        generation_params = parse_generation_params(command.params)
        with _runtime(settings) as runtime:
            service = TaskSubmissionService(
                repository=runtime.repository,
                max_images=settings.pipeline.max_images,
            )
            task = service.submit(
                SubmitTask(
                    images=command.images,
                    generation_params=generation_params,
                    count=command.count,
                ),
            )
            lines = [
                f"Task submitted: task_id={task.task_id} status={task.status.value} "
                f"images={len(task.params.images)} count={task.params.count}",
            ]
            if command.dispatch:
                results = runtime.dispatcher.run_until_idle(task.task_id)
                lines.extend(_render_dispatch(result) for result in results)
        return lines

    def dispatch(self, command: TaskDispatchCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _runtime(settings) as runtime:
            if command.until_idle:
                results = runtime.dispatcher.run_until_idle(
                    command.task_id,
                    max_steps=command.max_steps,
                )
            else:
                results = [runtime.dispatcher.dispatch(command.task_id)]
        return [_render_dispatch(result) for result in results]

    def sweep(self, command: TaskSweepCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _runtime(settings) as runtime:
            results = runtime.dispatcher.dispatch_due(limit=command.limit)
        return [f"Sweep: due={len(results)}", *(_render_dispatch(result) for result in results)]

    def stats(self, command: TaskStatsCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            counts = repository.count_by_status()
        return [
            f"Tasks total: {sum(counts.values())}",
            *(f"  {status.value}: {total}" for status, total in counts.items()),
        ]

    def progress(self, command: TaskProgressCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            try:
                view = get_progress(repository, command.task_id)
            except NotFoundError:
                return [f"Task not found: {command.task_id}"]
        if command.output_format == "json":
            return [json.dumps(view.to_dict(), ensure_ascii=False, sort_keys=True)]
        return [
            f"Task: {view.task_id}",
            f"Status: {view.status.value}",
            f"Progress: {view.percentage}%",
            f"Message: {view.message}",
        ]

    def inspect(self, command: TaskInspectCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            details = repository.get_task_details(task_id=command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Status: {task.status.value}",
            f"Version: {task.version}",
            f"Retries: {task.retry_count}/{settings.pipeline.max_retries}",
            f"Error: {task.error or '-'}",
            f"Retry after: {task.retry_after.isoformat() if task.retry_after else '-'}",
            f"Worker invocation: {task.worker_invocation_id or '-'}",
            f"Images: {len(task.params.images)} count={task.params.count}",
            f"State data keys: {', '.join(sorted(task.state_data)) or '-'}",
        ]
        for image in task.uploaded_images():
            lines.append(f"  uploaded index={image.index} url={image.url}")
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            tasks = repository.list_tasks(status=status_filter, limit=command.limit)

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} status={task.status.value} version={task.version} "
                f"retries={task.retry_count} updated_at={task.updated_at.isoformat()}",
            )
        return lines

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = _settings(command.db_path)
        snapshot = WorkerSnapshot.read(command.snapshot_file)
        with _runtime(settings) as runtime:
            worker = GenerationWorker(
                repository=runtime.repository,
                client=runtime.client,
                failure_policy=runtime.failure_policy,
                retrigger=runtime.dispatcher.run_until_idle if settings.worker.retrigger else None,
            )
            summary = worker.run(snapshot)
        if not command.keep_snapshot:
            command.snapshot_file.unlink(missing_ok=True)
        return [
            f"Worker finished: task_id={summary.task_id} invocation_id={summary.invocation_id} "
            f"outcome={summary.outcome.value} generated={summary.generated} "
            f"retriggered={summary.retriggered}",
            *([f"Error: {summary.error}"] if summary.error else []),
        ]


def parse_generation_params(raw_params: tuple[str, ...]) -> dict[str, Any]:
    """Parse ``key=value`` pairs; values are JSON when they parse, strings otherwise."""

    params: dict[str, Any] = {}
    for raw in raw_params:
        if "=" not in raw:
            raise ValueError(f"Invalid --param {raw!r}. Expected format 'key=value'.")
        key, value = raw.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError(f"Invalid --param {raw!r}: empty key.")
        try:
            params[key] = json.loads(value)
        except ValueError:
            params[key] = value
    return params


def build_generation_client(settings: Settings) -> GenerationClient:
    if settings.generation.backend == "http":
        return HttpGenerationClient(
            api_url=settings.generation.api_url,
            api_key=settings.generation.api_key,
            timeout_seconds=settings.generation.timeout_seconds,
        )
    return EchoGenerationClient()


def build_failure_policy(settings: Settings, repository: TaskRepository) -> FailurePolicy:
    return FailurePolicy(
        repository=repository,
        max_retries=settings.pipeline.max_retries,
        retry_base_seconds=settings.pipeline.retry_base_seconds,
        retry_max_seconds=settings.pipeline.retry_max_seconds,
    )


def build_dispatcher(
    settings: Settings,
    *,
    repository: TaskRepository,
    blob_store: BlobStore,
    client: GenerationClient,
    failure_policy: FailurePolicy,
) -> TaskDispatcher:
    """Wire the dispatcher with the worker invoker chosen in settings.

    The inline invoker runs the worker synchronously and without re-trigger, so
    ``run_until_idle`` carries the task on from ``generated`` itself.
    """

    invoker: WorkerInvoker
    if settings.worker.invoker == "subprocess":
        invoker = SubprocessWorkerInvoker(
            db_path=settings.db_path,
            spool_dir=settings.worker.spool_dir,
        )
    else:
        invoker = InlineWorkerInvoker(
            lambda: GenerationWorker(
                repository=repository,
                client=client,
                failure_policy=failure_policy,
            ),
            background=False,
        )
    context = StageContext(
        blob_store=blob_store,
        hand_off=GenerationHandOff(repository=repository, invoker=invoker),
        default_mime_type=settings.pipeline.default_mime_type,
    )
    return TaskDispatcher(
        repository=repository,
        context=context,
        failure_policy=failure_policy,
        stage_budget=settings.pipeline.budget_for,
    )


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return TaskStatus(value.strip().lower())


def _render_dispatch(result: DispatchResult) -> str:
    line = (
        f"Dispatch: task_id={result.task_id} outcome={result.outcome.value} "
        f"status={result.status.value if result.status else '-'}"
    )
    if result.message:
        line += f" message={result.message}"
    if result.error:
        line += f" error={result.error}"
    return line


@contextmanager
def _repository(settings: Settings) -> Iterator[TaskRepository]:
    repository = TaskRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _runtime(settings: Settings) -> Iterator[PipelineRuntime]:
    with _repository(settings) as repository:
        blob_store = LocalBlobStore(
            root=settings.storage.storage_root,
            public_base_url=settings.storage.public_base_url,
            timeout_seconds=settings.storage.request_timeout_seconds,
            max_retries=settings.storage.max_retries,
        )
        client = build_generation_client(settings)
        failure_policy = build_failure_policy(settings, repository)
        try:
            yield PipelineRuntime(
                settings=settings,
                repository=repository,
                blob_store=blob_store,
                client=client,
                failure_policy=failure_policy,
                dispatcher=build_dispatcher(
                    settings,
                    repository=repository,
                    blob_store=blob_store,
                    client=client,
                    failure_policy=failure_policy,
                ),
            )
        finally:
            blob_store.close()
            if isinstance(client, HttpGenerationClient):
                client.close()
