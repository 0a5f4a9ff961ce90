"""Stage handlers and the status -> handler registry.

Handlers never write to the task store themselves (the hand-off bookkeeping is
the one exception and goes through its own conditional write). Each returns a
:class:`StageResult` that the dispatcher commits.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Protocol

from photo_pipeline.storage.blobs import BlobStore
from photo_pipeline.storage.common import utc_now
from photo_pipeline.tasks.errors import ExhaustionError, TransientFetchError
from photo_pipeline.tasks.models import (
    DownloadedImage,
    TaskStatus,
    TaskView,
    UploadedImage,
)

logger = logging.getLogger(__name__)

DATA_URI_PREFIX = b"data:image/"
_DATA_URI_PATTERN = re.compile(r"^data:image/([^;]+);base64,(.+)$", re.DOTALL)


@dataclass(slots=True, frozen=True)
class StageResult:
    """Outcome of one handler run.

    ``next_status`` is None when nothing should be committed this invocation:
    the stage is owned by a worker, or was just handed off to one.
    """

    next_status: TaskStatus | None
    state_data_patch: dict[str, Any] = field(default_factory=dict)
    message: str = ""
    handed_off: bool = False

    @classmethod
    def advance(
        cls,
        next_status: TaskStatus,
        state_data_patch: dict[str, Any] | None = None,
        message: str = "",
    ) -> StageResult:
        return cls(
            next_status=next_status,
            state_data_patch=state_data_patch or {},
            message=message,
        )

    @classmethod
    def stay(cls, message: str = "", *, handed_off: bool = False) -> StageResult:
        return cls(next_status=None, message=message, handed_off=handed_off)


class HandOff(Protocol):
    """Delegates the current stage of a task to a separate worker invocation."""

    def hand_off(self, task: TaskView) -> str:
        """Launch a worker for the task and return the invocation id."""


@dataclass(slots=True)
class StageContext:
    """Collaborators available to every handler."""

    blob_store: BlobStore
    hand_off: HandOff
    logger: logging.Logger = logger
    default_mime_type: str = "image/jpeg"
    clock: Callable[[], datetime] = utc_now


class StageHandler(Protocol):
    def __call__(self, task: TaskView, context: StageContext) -> StageResult: ...


def decode_image(ref: str, content: bytes, *, default_mime_type: str) -> DownloadedImage:
    """Turn a downloaded blob into a base64 record.

    Blobs that were pre-processed into a data URI are taken as-is; anything else
    is treated as raw image bytes.
    """

    if content.startswith(DATA_URI_PREFIX):
        text = content.decode("utf-8", errors="strict").strip()
        match = _DATA_URI_PATTERN.match(text)
        if match is None:
            raise TransientFetchError(ref, "malformed data URI")
        mime_type = f"image/{match.group(1)}"
        base64_data = match.group(2)
    else:
        base64_data = base64.b64encode(content).decode("ascii")
        mime_type = default_mime_type
    return DownloadedImage(
        file_id=ref,
        base64_data=base64_data,
        mime_type=mime_type,
        size=len(base64_data),
    )


def handle_created(task: TaskView, context: StageContext) -> StageResult:
    return StageResult.advance(
        TaskStatus.DOWNLOADING,
        {"accepted_at": context.clock().isoformat()},
        message="Task accepted",
    )


def handle_downloading(task: TaskView, context: StageContext) -> StageResult:
    refs = task.params.images
    if not refs:
        return StageResult.advance(
            TaskStatus.DOWNLOADED,
            {"downloaded_images": [], "download_failures": []},
            message="No images to download",
        )

    downloaded: list[DownloadedImage] = []
    failures: list[str] = []
    for ref in refs:
        try:
            content = context.blob_store.download(ref)
            downloaded.append(
                decode_image(ref, content, default_mime_type=context.default_mime_type),
            )
        except (TransientFetchError, UnicodeDecodeError) as error:
            context.logger.warning(
                "Image download failed task_id=%s ref=%s error=%s",
                task.task_id,
                ref,
                error,
            )
            failures.append(ref)

    if not downloaded:
        raise ExhaustionError(f"All {len(refs)} image downloads failed")

    context.logger.info(
        "Images downloaded task_id=%s ok=%d failed=%d",
        task.task_id,
        len(downloaded),
        len(failures),
    )
    return StageResult.advance(
        TaskStatus.DOWNLOADED,
        {
            "downloaded_images": [image.to_dict() for image in downloaded],
            "download_failures": failures,
        },
        message=f"Downloaded {len(downloaded)} images",
    )


def handle_downloaded(task: TaskView, context: StageContext) -> StageResult:
    if task.worker_invocation_id is not None and task.error is None:
        return StageResult.stay(
            f"Generation worker already dispatched invocation_id={task.worker_invocation_id}",
        )
    invocation_id = context.hand_off.hand_off(task)
    return StageResult.stay(
        f"Generation handed off invocation_id={invocation_id}",
        handed_off=True,
    )


def handle_generating(task: TaskView, context: StageContext) -> StageResult:
    # A worker owns this stage; only a failed attempt awaiting retry is re-dispatched.
    if task.error is None:
        return StageResult.stay("Generation in progress")
    context.logger.info(
        "Re-dispatching generation task_id=%s retry_count=%d",
        task.task_id,
        task.retry_count,
    )
    invocation_id = context.hand_off.hand_off(task)
    return StageResult.stay(
        f"Generation retried invocation_id={invocation_id}",
        handed_off=True,
    )


def handle_generated(task: TaskView, context: StageContext) -> StageResult:
    return StageResult.advance(
        TaskStatus.UPLOADING,
        {"upload_started_at": context.clock().isoformat()},
        message=f"Uploading {len(task.generated_images())} images",
    )


def handle_uploading(task: TaskView, context: StageContext) -> StageResult:
    generated = task.generated_images()
    if not generated:
        raise ExhaustionError("No generated images to upload")

    uploaded: list[UploadedImage] = []
    failures: list[int] = []
    for image in generated:
        try:
            data = _decode_base64(image.base64_data, ref=f"generated[{image.index}]")
            url = context.blob_store.upload(
                data,
                mime_type=image.mime_type,
                name=f"{task.task_id}/{image.index:03d}",
            )
        except TransientFetchError as error:
            context.logger.warning(
                "Image upload failed task_id=%s index=%d error=%s",
                task.task_id,
                image.index,
                error,
            )
            failures.append(image.index)
            continue
        uploaded.append(
            UploadedImage(index=image.index, url=url, mime_type=image.mime_type, size=len(data)),
        )

    if not uploaded:
        raise ExhaustionError(f"All {len(generated)} image uploads failed")

    return StageResult.advance(
        TaskStatus.COMPLETED,
        {
            "uploaded_images": [image.to_dict() for image in uploaded],
            "upload_failures": failures,
        },
        message=f"Uploaded {len(uploaded)} images",
    )


def _decode_base64(value: str, *, ref: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as error:
        raise TransientFetchError(ref, "invalid base64 payload") from error


DEFAULT_HANDLERS: Mapping[TaskStatus, StageHandler] = MappingProxyType(
    {
        TaskStatus.CREATED: handle_created,
        TaskStatus.DOWNLOADING: handle_downloading,
        TaskStatus.DOWNLOADED: handle_downloaded,
        TaskStatus.GENERATING: handle_generating,
        TaskStatus.GENERATED: handle_generated,
        TaskStatus.UPLOADING: handle_uploading,
    },
)
