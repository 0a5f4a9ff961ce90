"""Shared test fixtures."""

from __future__ import annotations

import base64
import random
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from photo_pipeline.generation import GeneratedArtifact
from photo_pipeline.tasks.dispatcher import TaskDispatcher
from photo_pipeline.tasks.errors import GenerationError, TransientFetchError
from photo_pipeline.tasks.handlers import StageContext
from photo_pipeline.tasks.handoff import GenerationHandOff, GenerationWorker, WorkerSnapshot
from photo_pipeline.tasks.models import DownloadedImage, TaskParams, TaskStatus
from photo_pipeline.tasks.repository import TaskRepository
from photo_pipeline.tasks.retry import FailurePolicy

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 24


def data_uri(payload: bytes, ext: str = "png") -> bytes:
    return f"data:image/{ext};base64,{base64.b64encode(payload).decode('ascii')}".encode()


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 10, 18, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeBlobStore:
    """In-memory blob store recording every call."""

    def __init__(
        self,
        blobs: dict[str, bytes] | None = None,
        *,
        fail_uploads: bool = False,
    ) -> None:
        self.blobs = dict(blobs or {})
        self.fail_uploads = fail_uploads
        self.download_calls: list[str] = []
        self.uploads: dict[str, bytes] = {}

    def download(self, ref: str) -> bytes:
        self.download_calls.append(ref)
        if ref not in self.blobs:
            raise TransientFetchError(ref, "not found")
        return self.blobs[ref]

    def upload(self, data: bytes, *, mime_type: str, name: str) -> str:
        if self.fail_uploads:
            raise TransientFetchError(name, "storage unavailable")
        self.uploads[name] = data
        return f"https://cdn.test/{name}"


class RecordingInvoker:
    """Worker invoker that only remembers the snapshots it was given."""

    def __init__(self, *, fail_with: Exception | None = None) -> None:
        self.snapshots: list[WorkerSnapshot] = []
        self.fail_with = fail_with

    def invoke(self, snapshot: WorkerSnapshot) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.snapshots.append(snapshot)


class ScriptedGenerationClient:
    """Generation client returning canned artifacts or raising a queued error."""

    def __init__(self, *, errors: list[Exception] | None = None) -> None:
        self.errors = list(errors or [])
        self.calls: list[tuple[list[DownloadedImage], dict[str, Any], int]] = []

    def generate(
        self,
        images: list[DownloadedImage],
        parameters: dict[str, Any],
        count: int,
    ) -> list[GeneratedArtifact]:
        self.calls.append((images, parameters, count))
        if self.errors:
            raise self.errors.pop(0)
        if not images:
            raise GenerationError("no source images")
        return [
            GeneratedArtifact(
                base64_data=base64.b64encode(f"generated-{index}".encode()).decode("ascii"),
                mime_type="image/png",
            )
            for index in range(count)
        ]


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[TaskRepository]:
    repo = TaskRepository(tmp_path / "tasks.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def blob_store() -> FakeBlobStore:
    return FakeBlobStore(
        {
            "images/a.png": PNG_BYTES,
            "images/b.png": data_uri(b"second image", ext="webp"),
        },
    )


@pytest.fixture()
def invoker() -> RecordingInvoker:
    return RecordingInvoker()


@pytest.fixture()
def failure_policy(repository: TaskRepository, clock: FakeClock) -> FailurePolicy:
    return FailurePolicy(
        repository=repository,
        max_retries=3,
        retry_base_seconds=10.0,
        retry_max_seconds=60.0,
        rng=random.Random(7),
        clock=clock,
    )


@pytest.fixture()
def dispatcher(
    repository: TaskRepository,
    blob_store: FakeBlobStore,
    invoker: RecordingInvoker,
    failure_policy: FailurePolicy,
    clock: FakeClock,
) -> TaskDispatcher:
    context = StageContext(
        blob_store=blob_store,
        hand_off=GenerationHandOff(repository=repository, invoker=invoker, clock=clock),
        default_mime_type="image/jpeg",
        clock=clock,
    )
    return TaskDispatcher(
        repository=repository,
        context=context,
        failure_policy=failure_policy,
        stage_budget=lambda _status: 5.0,
        clock=clock,
    )


@pytest.fixture()
def generation_client() -> ScriptedGenerationClient:
    return ScriptedGenerationClient()


@pytest.fixture()
def worker(
    repository: TaskRepository,
    generation_client: ScriptedGenerationClient,
    failure_policy: FailurePolicy,
    clock: FakeClock,
) -> GenerationWorker:
    return GenerationWorker(
        repository=repository,
        client=generation_client,
        failure_policy=failure_policy,
        clock=clock,
    )


def submit(repository: TaskRepository, *images: str, count: int = 2) -> str:
    task = repository.create(
        TaskParams(images=tuple(images), generation_params={"style": "studio"}, count=count),
    )
    assert task.status == TaskStatus.CREATED
    return task.task_id
