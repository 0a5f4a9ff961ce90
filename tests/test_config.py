from __future__ import annotations

from pathlib import Path

import allure
import pytest

from photo_pipeline.config import GenerationSettings, PipelineSettings, Settings, WorkerSettings
from photo_pipeline.tasks.models import TaskStatus

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_defaults_are_valid_for_local_development(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "PHOTO_PIPELINE_MAX_RETRIES",
        "PHOTO_PIPELINE_STAGE_BUDGETS",
        "PHOTO_PIPELINE_GENERATION_BACKEND",
        "PHOTO_PIPELINE_WORKER_INVOKER",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env(db_path=Path("local.db"))
    settings.validate()

    assert settings.db_path == Path("local.db")
    assert settings.pipeline.max_retries == 3
    assert settings.generation.backend == "echo"
    assert settings.worker.invoker == "inline"
    assert settings.pipeline.budget_for(TaskStatus.DOWNLOADING) == 50.0


def test_stage_budgets_are_parsed_per_status(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PHOTO_PIPELINE_STAGE_BUDGETS", "downloading=20, uploading=45.5")

    settings = Settings.from_env()

    assert settings.pipeline.stage_budgets == {
        TaskStatus.DOWNLOADING: 20.0,
        TaskStatus.UPLOADING: 45.5,
    }
    assert settings.pipeline.budget_for(TaskStatus.CREATED) == 50.0


@pytest.mark.parametrize(
    ("raw", "message"),
    [
        ("downloading", "Expected format"),
        ("sleeping=10", "Unknown status"),
        ("completed=10", "Terminal status"),
        ("uploading=fast", "Invalid PHOTO_PIPELINE_STAGE_BUDGETS value"),
        ("uploading=0", "must be > 0"),
    ],
)
def test_invalid_stage_budgets_are_rejected(
    monkeypatch: pytest.MonkeyPatch,
    raw: str,
    message: str,
) -> None:
    monkeypatch.setenv("PHOTO_PIPELINE_STAGE_BUDGETS", raw)

    with pytest.raises(ValueError, match=message):
        Settings.from_env()


def test_http_backend_requires_absolute_url() -> None:
    settings = Settings(generation=GenerationSettings(backend="http", api_url="/generate"))

    with pytest.raises(ValueError, match="GENERATION_API_URL"):
        settings.validate()

    Settings(
        generation=GenerationSettings(backend="http", api_url="https://gen.example/v1/images"),
    ).validate()


def test_unknown_backends_and_invokers_are_rejected() -> None:
    with pytest.raises(ValueError, match="generation backend"):
        Settings(generation=GenerationSettings(backend="magic")).validate()
    with pytest.raises(ValueError, match="worker invoker"):
        Settings(worker=WorkerSettings(invoker="lambda")).validate()


def test_retry_budget_must_allow_one_attempt() -> None:
    with pytest.raises(ValueError, match="MAX_RETRIES"):
        Settings(pipeline=PipelineSettings(max_retries=0)).validate()


def test_worker_retrigger_flag_parsing(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PHOTO_PIPELINE_WORKER_RETRIGGER", "off")
    assert Settings.from_env().worker.retrigger is False

    monkeypatch.setenv("PHOTO_PIPELINE_WORKER_RETRIGGER", "maybe")
    with pytest.raises(ValueError, match="Invalid boolean"):
        Settings.from_env()
