"""Domain models for the photo task state machine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from photo_pipeline.tasks.errors import InvalidTransitionError, StateDataError


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    CREATED = "created"
    DOWNLOADING = "downloading"
    DOWNLOADED = "downloaded"
    GENERATING = "generating"
    GENERATED = "generated"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES: frozenset[TaskStatus] = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})

_FORWARD_EDGES: dict[TaskStatus, TaskStatus] = {
    TaskStatus.CREATED: TaskStatus.DOWNLOADING,
    TaskStatus.DOWNLOADING: TaskStatus.DOWNLOADED,
    TaskStatus.DOWNLOADED: TaskStatus.GENERATING,
    TaskStatus.GENERATING: TaskStatus.GENERATED,
    TaskStatus.GENERATED: TaskStatus.UPLOADING,
    TaskStatus.UPLOADING: TaskStatus.COMPLETED,
}

# Keys each stage may add to state_data. The stage is the status the task is in
# when the write is committed.
STATE_DATA_KEYS: dict[TaskStatus, frozenset[str]] = {
    TaskStatus.CREATED: frozenset({"accepted_at"}),
    TaskStatus.DOWNLOADING: frozenset({"downloaded_images", "download_failures"}),
    TaskStatus.DOWNLOADED: frozenset({"generation_started_at"}),
    TaskStatus.GENERATING: frozenset({"generated_images", "generation_finished_at"}),
    TaskStatus.GENERATED: frozenset({"upload_started_at"}),
    TaskStatus.UPLOADING: frozenset({"uploaded_images", "upload_failures"}),
}


def next_status(status: TaskStatus) -> TaskStatus | None:
    """Forward successor of a status, None for terminal states."""

    return _FORWARD_EDGES.get(status)


def validate_transition(current: TaskStatus, new: TaskStatus) -> None:
    """Raise when `current -> new` is not an edge of the state machine."""

    if current in TERMINAL_STATUSES:
        raise InvalidTransitionError(f"Task in terminal status {current.value} cannot change.")
    if new == TaskStatus.FAILED or _FORWARD_EDGES.get(current) == new:
        return
    raise InvalidTransitionError(f"Transition {current.value} -> {new.value} is not allowed.")


def validate_state_data_patch(
    *,
    stage: TaskStatus,
    patch: dict[str, Any],
    existing: dict[str, Any],
) -> None:
    """Reject patches with keys foreign to the stage or already present."""

    if not patch:
        return
    allowed = STATE_DATA_KEYS.get(stage, frozenset())
    foreign = sorted(key for key in patch if key not in allowed)
    if foreign:
        raise StateDataError(
            f"Stage {stage.value} cannot write state_data keys: {', '.join(foreign)}",
        )
    overwritten = sorted(key for key in patch if key in existing)
    if overwritten:
        raise StateDataError(
            f"state_data keys already written by an earlier stage: {', '.join(overwritten)}",
        )


@dataclass(slots=True, frozen=True)
class TaskParams:
    """Submission payload, immutable after creation."""

    images: tuple[str, ...]
    generation_params: dict[str, Any] = field(default_factory=dict)
    count: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "images": list(self.images),
            "generation_params": dict(self.generation_params),
            "count": self.count,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> TaskParams:
        images = raw.get("images", [])
        generation_params = raw.get("generation_params", {})
        count = raw.get("count", 1)
        if not isinstance(images, list) or not all(isinstance(item, str) for item in images):
            raise TypeError("params.images must be an array of strings")
        if not isinstance(generation_params, dict):
            raise TypeError("params.generation_params must be an object")
        if not isinstance(count, int) or isinstance(count, bool):
            raise TypeError("params.count must be an integer")
        return cls(images=tuple(images), generation_params=generation_params, count=count)


@dataclass(slots=True, frozen=True)
class DownloadedImage:
    """One source image fetched during the downloading stage."""

    file_id: str
    base64_data: str
    mime_type: str
    size: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "fileId": self.file_id,
            "base64Data": self.base64_data,
            "mimeType": self.mime_type,
            "size": self.size,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> DownloadedImage:
        return cls(
            file_id=str(raw["fileId"]),
            base64_data=str(raw["base64Data"]),
            mime_type=str(raw["mimeType"]),
            size=int(raw["size"]),
        )


@dataclass(slots=True, frozen=True)
class GeneratedImage:
    """One artifact returned by the generation API."""

    index: int
    base64_data: str
    mime_type: str
    size: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "base64Data": self.base64_data,
            "mimeType": self.mime_type,
            "size": self.size,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> GeneratedImage:
        return cls(
            index=int(raw["index"]),
            base64_data=str(raw["base64Data"]),
            mime_type=str(raw["mimeType"]),
            size=int(raw["size"]),
        )


@dataclass(slots=True, frozen=True)
class UploadedImage:
    """Durable public location of one generated artifact."""

    index: int
    url: str
    mime_type: str
    size: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "url": self.url,
            "mimeType": self.mime_type,
            "size": self.size,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> UploadedImage:
        return cls(
            index=int(raw["index"]),
            url=str(raw["url"]),
            mime_type=str(raw["mimeType"]),
            size=int(raw["size"]),
        )


@dataclass(slots=True)
class TaskView:
    """Readable task view for dispatcher, handlers and CLI."""

    task_id: str
    status: TaskStatus
    params: TaskParams
    state_data: dict[str, Any]
    retry_count: int
    error: str | None
    retry_after: datetime | None
    worker_invocation_id: str | None
    worker_dispatched_at: datetime | None
    version: int
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def downloaded_images(self) -> list[DownloadedImage]:
        raw = self.state_data.get("downloaded_images", [])
        return [DownloadedImage.from_dict(item) for item in raw]

    def generated_images(self) -> list[GeneratedImage]:
        raw = self.state_data.get("generated_images", [])
        return [GeneratedImage.from_dict(item) for item in raw]

    def uploaded_images(self) -> list[UploadedImage]:
        raw = self.state_data.get("uploaded_images", [])
        return [UploadedImage.from_dict(item) for item in raw]


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream."""

    task: TaskView
    events: list[TaskEventView]
