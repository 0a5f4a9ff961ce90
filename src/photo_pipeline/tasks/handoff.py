"""Worker hand-off for the generation stage.

The dispatcher's synchronous path never waits on the generation API. The
``downloaded`` handler records that a worker owns the stage, then fires a
separate invocation carrying a :class:`WorkerSnapshot`. That invocation claims
the task, calls the generation backend and commits the result itself.
"""

from __future__ import annotations

import json
import logging
import subprocess
import sys
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Protocol
from uuid import uuid4

from photo_pipeline.generation.client import GenerationClient
from photo_pipeline.storage.common import to_utc_aware_datetime, utc_now
from photo_pipeline.tasks.errors import ConflictError, GenerationError, HandOffError
from photo_pipeline.tasks.models import (
    DownloadedImage,
    GeneratedImage,
    TaskParams,
    TaskStatus,
    TaskView,
)
from photo_pipeline.tasks.repository import TaskRepository
from photo_pipeline.tasks.retry import FailurePolicy

logger = logging.getLogger(__name__)

SNAPSHOT_CONTRACT_VERSION = 1


@dataclass(slots=True, frozen=True)
class WorkerSnapshot:
    """Self-contained input of one worker invocation."""

    task_id: str
    version: int
    invocation_id: str
    params: TaskParams
    downloaded_images: tuple[DownloadedImage, ...]
    requested_at: datetime

    @classmethod
    def from_task(
        cls,
        task: TaskView,
        *,
        invocation_id: str,
        requested_at: datetime,
    ) -> WorkerSnapshot:
        return cls(
            task_id=task.task_id,
            version=task.version,
            invocation_id=invocation_id,
            params=task.params,
            downloaded_images=tuple(task.downloaded_images()),
            requested_at=requested_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "contract_version": SNAPSHOT_CONTRACT_VERSION,
            "task_id": self.task_id,
            "version": self.version,
            "invocation_id": self.invocation_id,
            "params": self.params.to_dict(),
            "downloaded_images": [image.to_dict() for image in self.downloaded_images],
            "requested_at": self.requested_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> WorkerSnapshot:
        contract_version = raw.get("contract_version")
        if contract_version != SNAPSHOT_CONTRACT_VERSION:
            raise ValueError(f"Unsupported worker snapshot contract: {contract_version!r}")
        images = raw.get("downloaded_images", [])
        if not isinstance(images, list):
            raise TypeError("downloaded_images must be an array")
        return cls(
            task_id=str(raw["task_id"]),
            version=int(raw["version"]),
            invocation_id=str(raw["invocation_id"]),
            params=TaskParams.from_dict(raw["params"]),
            downloaded_images=tuple(DownloadedImage.from_dict(item) for item in images),
            requested_at=to_utc_aware_datetime(datetime.fromisoformat(raw["requested_at"])),
        )

    def write(self, path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), ensure_ascii=False, sort_keys=True), "utf-8")
        return path

    @classmethod
    def read(cls, path: Path) -> WorkerSnapshot:
        payload = json.loads(path.read_text("utf-8"))
        if not isinstance(payload, dict):
            raise TypeError(f"Expected JSON object in {path}")
        return cls.from_dict(payload)


class WorkerInvoker(Protocol):
    """Fire-and-forget launcher of a worker invocation."""

    def invoke(self, snapshot: WorkerSnapshot) -> None:
        """Start the worker; must not wait for it to finish."""


class SubprocessWorkerInvoker:
    """Launches ``photo-pipeline worker run`` as a detached process."""

    def __init__(
        self,
        *,
        db_path: Path,
        spool_dir: Path,
        python_executable: str | None = None,
        env: dict[str, str] | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self.db_path = db_path
        self.spool_dir = spool_dir
        self.python_executable = python_executable or sys.executable
        self.env = env
        self.log = log or logger

    def build_command(self, snapshot_path: Path) -> list[str]:
        return [
            self.python_executable,
            "-m",
            "photo_pipeline.main",
            "worker",
            "run",
            "--db-path",
            str(self.db_path),
            "--snapshot-file",
            str(snapshot_path),
        ]

    def invoke(self, snapshot: WorkerSnapshot) -> None:
        snapshot_path = snapshot.write(
            self.spool_dir / f"{snapshot.task_id}-{snapshot.invocation_id}.json",
        )
        process = subprocess.Popen(  # noqa: S603
            self.build_command(snapshot_path),
            env=self.env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        self.log.info(
            "Worker process launched task_id=%s invocation_id=%s pid=%s",
            snapshot.task_id,
            snapshot.invocation_id,
            process.pid,
        )


class InlineWorkerInvoker:
    """Runs the worker in this process, in a daemon thread unless ``background`` is off."""

    def __init__(
        self,
        worker_factory: Callable[[], GenerationWorker],
        *,
        background: bool = True,
        log: logging.Logger | None = None,
    ) -> None:
        self._worker_factory = worker_factory
        self._background = background
        self.log = log or logger

    def invoke(self, snapshot: WorkerSnapshot) -> None:
        if not self._background:
            self._worker_factory().run(snapshot)
            return
        thread = threading.Thread(
            target=self._run_in_thread,
            args=(snapshot,),
            daemon=True,
            name=f"photo-worker-{snapshot.task_id[:8]}",
        )
        thread.start()

    def _run_in_thread(self, snapshot: WorkerSnapshot) -> None:
        try:
            self._worker_factory().run(snapshot)
        except Exception:
            self.log.exception(
                "Inline worker crashed task_id=%s invocation_id=%s",
                snapshot.task_id,
                snapshot.invocation_id,
            )


class GenerationHandOff:
    """Records the hand-off, then launches exactly one worker for it."""

    def __init__(
        self,
        *,
        repository: TaskRepository,
        invoker: WorkerInvoker,
        clock: Callable[[], datetime] = utc_now,
        log: logging.Logger | None = None,
    ) -> None:
        self.repository = repository
        self.invoker = invoker
        self.clock = clock
        self.log = log or logger

    def hand_off(self, task: TaskView) -> str:
        """Launch a worker for ``task`` and return its invocation id.

        The bookkeeping write is conditional on the version the caller read, so
        of two racing dispatchers only one gets to launch a worker; the other
        sees :class:`ConflictError`.
        """

        invocation_id = uuid4().hex
        updated = self.repository.mark_handed_off(
            task.task_id,
            expected_status=task.status,
            expected_version=task.version,
            invocation_id=invocation_id,
        )
        snapshot = WorkerSnapshot.from_task(
            updated,
            invocation_id=invocation_id,
            requested_at=self.clock(),
        )
        try:
            self.invoker.invoke(snapshot)
        except (OSError, RuntimeError) as error:
            raise HandOffError(
                f"Worker launch failed: {error}",
                task_version=updated.version,
            ) from error
        self.log.info(
            "Generation handed off task_id=%s invocation_id=%s version=%d",
            task.task_id,
            invocation_id,
            updated.version,
        )
        return invocation_id


class WorkerOutcome(str, Enum):
    GENERATED = "generated"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    SKIPPED = "skipped"
    CONFLICT = "conflict"


@dataclass(slots=True)
class WorkerRunSummary:
    """What one worker invocation did, for CLI reporting."""

    task_id: str
    invocation_id: str
    outcome: WorkerOutcome
    generated: int = 0
    error: str | None = None
    retriggered: bool = False


class GenerationWorker:
    """Separate compute unit that performs the generation stage."""

    def __init__(
        self,
        *,
        repository: TaskRepository,
        client: GenerationClient,
        failure_policy: FailurePolicy,
        retrigger: Callable[[str], object] | None = None,
        clock: Callable[[], datetime] = utc_now,
        log: logging.Logger | None = None,
    ) -> None:
        self.repository = repository
        self.client = client
        self.failure_policy = failure_policy
        self.retrigger = retrigger
        self.clock = clock
        self.log = log or logger

    def run(self, snapshot: WorkerSnapshot) -> WorkerRunSummary:
        claimed = self._claim(snapshot)
        if claimed is None:
            return WorkerRunSummary(
                task_id=snapshot.task_id,
                invocation_id=snapshot.invocation_id,
                outcome=WorkerOutcome.SKIPPED,
            )

        try:
            generated = self._generate(snapshot)
        except Exception as error:  # noqa: BLE001
            return self._record_failure(snapshot, claimed, error)

        try:
            self.repository.commit_transition(
                snapshot.task_id,
                expected_status=TaskStatus.GENERATING,
                new_status=TaskStatus.GENERATED,
                expected_version=claimed.version,
                state_data_patch={
                    "generated_images": [image.to_dict() for image in generated],
                    "generation_finished_at": self.clock().isoformat(),
                },
            )
        except ConflictError:
            self.log.warning(
                "Generation result discarded, task changed concurrently task_id=%s "
                "invocation_id=%s",
                snapshot.task_id,
                snapshot.invocation_id,
            )
            return WorkerRunSummary(
                task_id=snapshot.task_id,
                invocation_id=snapshot.invocation_id,
                outcome=WorkerOutcome.CONFLICT,
            )

        self.log.info(
            "Generation completed task_id=%s invocation_id=%s images=%d",
            snapshot.task_id,
            snapshot.invocation_id,
            len(generated),
        )
        summary = WorkerRunSummary(
            task_id=snapshot.task_id,
            invocation_id=snapshot.invocation_id,
            outcome=WorkerOutcome.GENERATED,
            generated=len(generated),
        )
        if self.retrigger is not None:
            self.retrigger(snapshot.task_id)
            summary.retriggered = True
        return summary

    def _claim(self, snapshot: WorkerSnapshot) -> TaskView | None:
        task = self.repository.get(snapshot.task_id)
        if (
            task.version != snapshot.version
            or task.worker_invocation_id != snapshot.invocation_id
            or task.status not in {TaskStatus.DOWNLOADED, TaskStatus.GENERATING}
        ):
            self.log.info(
                "Worker snapshot is stale task_id=%s invocation_id=%s status=%s "
                "version=%d snapshot_version=%d",
                snapshot.task_id,
                snapshot.invocation_id,
                task.status.value,
                task.version,
                snapshot.version,
            )
            return None
        try:
            if task.status == TaskStatus.DOWNLOADED:
                return self.repository.commit_transition(
                    task.task_id,
                    expected_status=TaskStatus.DOWNLOADED,
                    new_status=TaskStatus.GENERATING,
                    expected_version=task.version,
                    state_data_patch={"generation_started_at": self.clock().isoformat()},
                )
            return self.repository.annotate(
                task.task_id,
                expected_status=TaskStatus.GENERATING,
                expected_version=task.version,
            )
        except ConflictError:
            self.log.info(
                "Worker lost the claim task_id=%s invocation_id=%s",
                snapshot.task_id,
                snapshot.invocation_id,
            )
            return None

    def _generate(self, snapshot: WorkerSnapshot) -> list[GeneratedImage]:
        artifacts = self.client.generate(
            list(snapshot.downloaded_images),
            dict(snapshot.params.generation_params),
            snapshot.params.count,
        )
        if not artifacts:
            raise GenerationError("Generation backend returned no images")
        return [
            GeneratedImage(
                index=index,
                base64_data=artifact.base64_data,
                mime_type=artifact.mime_type,
                size=len(artifact.base64_data),
            )
            for index, artifact in enumerate(artifacts)
        ]

    def _record_failure(
        self,
        snapshot: WorkerSnapshot,
        claimed: TaskView,
        error: Exception,
    ) -> WorkerRunSummary:
        try:
            outcome = self.failure_policy.record(claimed, error)
        except ConflictError:
            return WorkerRunSummary(
                task_id=snapshot.task_id,
                invocation_id=snapshot.invocation_id,
                outcome=WorkerOutcome.CONFLICT,
                error=str(error),
            )
        return WorkerRunSummary(
            task_id=snapshot.task_id,
            invocation_id=snapshot.invocation_id,
            outcome=WorkerOutcome.FAILED if outcome.failed else WorkerOutcome.RETRY_SCHEDULED,
            error=outcome.task.error,
        )
