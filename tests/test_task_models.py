from __future__ import annotations

import allure
import pytest

from photo_pipeline.tasks.errors import InvalidTransitionError, StateDataError
from photo_pipeline.tasks.models import (
    STATE_DATA_KEYS,
    TERMINAL_STATUSES,
    DownloadedImage,
    TaskParams,
    TaskStatus,
    next_status,
    validate_state_data_patch,
    validate_transition,
)

pytestmark = [
    allure.epic("Task Store"),
    allure.feature("State Model"),
]


def test_forward_chain_reaches_completed() -> None:
    chain = [TaskStatus.CREATED]
    while (following := next_status(chain[-1])) is not None:
        chain.append(following)

    assert chain == [
        TaskStatus.CREATED,
        TaskStatus.DOWNLOADING,
        TaskStatus.DOWNLOADED,
        TaskStatus.GENERATING,
        TaskStatus.GENERATED,
        TaskStatus.UPLOADING,
        TaskStatus.COMPLETED,
    ]
    assert next_status(TaskStatus.FAILED) is None


@pytest.mark.parametrize("terminal", sorted(TERMINAL_STATUSES))
def test_terminal_statuses_accept_no_transition(terminal: TaskStatus) -> None:
    for target in TaskStatus:
        with pytest.raises(InvalidTransitionError):
            validate_transition(terminal, target)


def test_backward_and_skipping_edges_are_invalid() -> None:
    validate_transition(TaskStatus.UPLOADING, TaskStatus.COMPLETED)
    validate_transition(TaskStatus.GENERATING, TaskStatus.FAILED)

    with pytest.raises(InvalidTransitionError):
        validate_transition(TaskStatus.GENERATED, TaskStatus.GENERATING)
    with pytest.raises(InvalidTransitionError):
        validate_transition(TaskStatus.DOWNLOADING, TaskStatus.GENERATED)


def test_every_state_data_key_has_a_single_owner() -> None:
    owners: dict[str, TaskStatus] = {}
    for stage, keys in STATE_DATA_KEYS.items():
        for key in keys:
            assert key not in owners, f"{key} owned by {owners.get(key)} and {stage}"
            owners[key] = stage

    assert owners["downloaded_images"] == TaskStatus.DOWNLOADING
    assert owners["generated_images"] == TaskStatus.GENERATING
    assert owners["uploaded_images"] == TaskStatus.UPLOADING


def test_state_data_patch_validation() -> None:
    validate_state_data_patch(stage=TaskStatus.DOWNLOADED, patch={}, existing={"x": 1})
    validate_state_data_patch(
        stage=TaskStatus.DOWNLOADING,
        patch={"downloaded_images": []},
        existing={"accepted_at": "t0"},
    )

    with pytest.raises(StateDataError, match="cannot write"):
        validate_state_data_patch(
            stage=TaskStatus.DOWNLOADING,
            patch={"uploaded_images": []},
            existing={},
        )
    with pytest.raises(StateDataError, match="already written"):
        validate_state_data_patch(
            stage=TaskStatus.DOWNLOADING,
            patch={"downloaded_images": []},
            existing={"downloaded_images": [{"fileId": "a"}]},
        )


def test_task_params_from_dict_validates_shape() -> None:
    params = TaskParams.from_dict({"images": ["a", "b"], "generation_params": {"k": 1}})
    assert params.images == ("a", "b")
    assert params.count == 1
    assert TaskParams.from_dict(params.to_dict()) == params

    with pytest.raises(TypeError):
        TaskParams.from_dict({"images": "a.png"})
    with pytest.raises(TypeError):
        TaskParams.from_dict({"images": [], "count": True})


def test_downloaded_image_uses_camel_case_record_keys() -> None:
    image = DownloadedImage(file_id="a.png", base64_data="QUJD", mime_type="image/png", size=4)

    assert image.to_dict() == {
        "fileId": "a.png",
        "base64Data": "QUJD",
        "mimeType": "image/png",
        "size": 4,
    }
