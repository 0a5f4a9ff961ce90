"""Runtime configuration for the photo task pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from photo_pipeline.tasks.models import TERMINAL_STATUSES, TaskStatus

SUPPORTED_GENERATION_BACKENDS = ("echo", "http")
SUPPORTED_WORKER_INVOKERS = ("inline", "subprocess")


@dataclass(slots=True)
class PipelineSettings:
    """Dispatcher retry policy and per-stage time budgets."""

    max_retries: int = 3
    retry_base_seconds: float = 5.0
    retry_max_seconds: float = 300.0
    default_stage_budget_seconds: float = 50.0
    stage_budgets: dict[TaskStatus, float] = field(default_factory=dict)
    default_mime_type: str = "image/jpeg"
    max_images: int = 10

    def budget_for(self, status: TaskStatus) -> float:
        return self.stage_budgets.get(status, self.default_stage_budget_seconds)


@dataclass(slots=True)
class StorageSettings:
    """Blob storage settings."""

    storage_root: Path = Path(".photo_pipeline_blobs")
    public_base_url: str = "http://localhost:8000/blobs"
    request_timeout_seconds: float = 30.0
    max_retries: int = 3


@dataclass(slots=True)
class GenerationSettings:
    """Generation API settings."""

    backend: str = "echo"
    api_url: str = ""
    api_key: str | None = None
    timeout_seconds: float = 600.0


@dataclass(slots=True)
class WorkerSettings:
    """Worker hand-off settings."""

    invoker: str = "inline"
    spool_dir: Path = Path(".photo_pipeline_spool")
    retrigger: bool = True


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".photo_pipeline.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "INFO"
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    generation: GenerationSettings = field(default_factory=GenerationSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("PHOTO_PIPELINE_DB_PATH", ".photo_pipeline.db")),
            sqlite_busy_timeout_ms=int(os.getenv("PHOTO_PIPELINE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            log_level=os.getenv("PHOTO_PIPELINE_LOG_LEVEL", "INFO").strip().upper(),
            pipeline=PipelineSettings(
                max_retries=int(os.getenv("PHOTO_PIPELINE_MAX_RETRIES", "3")),
                retry_base_seconds=float(os.getenv("PHOTO_PIPELINE_RETRY_BASE_SECONDS", "5")),
                retry_max_seconds=float(os.getenv("PHOTO_PIPELINE_RETRY_MAX_SECONDS", "300")),
                default_stage_budget_seconds=float(
                    os.getenv("PHOTO_PIPELINE_DEFAULT_STAGE_BUDGET_SECONDS", "50"),
                ),
                stage_budgets=_collect_stage_budgets(),
                default_mime_type=os.getenv("PHOTO_PIPELINE_DEFAULT_MIME_TYPE", "image/jpeg"),
                max_images=int(os.getenv("PHOTO_PIPELINE_MAX_IMAGES", "10")),
            ),
            storage=StorageSettings(
                storage_root=Path(
                    os.getenv("PHOTO_PIPELINE_STORAGE_ROOT", ".photo_pipeline_blobs"),
                ),
                public_base_url=os.getenv(
                    "PHOTO_PIPELINE_PUBLIC_BASE_URL",
                    "http://localhost:8000/blobs",
                ),
                request_timeout_seconds=float(
                    os.getenv("PHOTO_PIPELINE_STORAGE_TIMEOUT_SECONDS", "30"),
                ),
                max_retries=int(os.getenv("PHOTO_PIPELINE_STORAGE_MAX_RETRIES", "3")),
            ),
            generation=GenerationSettings(
                backend=os.getenv("PHOTO_PIPELINE_GENERATION_BACKEND", "echo").strip().lower(),
                api_url=os.getenv("PHOTO_PIPELINE_GENERATION_API_URL", "").strip(),
                api_key=os.getenv("PHOTO_PIPELINE_GENERATION_API_KEY") or None,
                timeout_seconds=float(
                    os.getenv("PHOTO_PIPELINE_GENERATION_TIMEOUT_SECONDS", "600"),
                ),
            ),
            worker=WorkerSettings(
                invoker=os.getenv("PHOTO_PIPELINE_WORKER_INVOKER", "inline").strip().lower(),
                spool_dir=Path(os.getenv("PHOTO_PIPELINE_SPOOL_DIR", ".photo_pipeline_spool")),
                retrigger=_env_bool("PHOTO_PIPELINE_WORKER_RETRIGGER", default=True),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on inconsistent values."""

        if self.pipeline.max_retries < 1:
            raise ValueError("PHOTO_PIPELINE_MAX_RETRIES must be >= 1.")
        if self.pipeline.retry_base_seconds < 0 or self.pipeline.retry_max_seconds < 0:
            raise ValueError("Retry backoff seconds must be >= 0.")
        if self.pipeline.default_stage_budget_seconds <= 0:
            raise ValueError("PHOTO_PIPELINE_DEFAULT_STAGE_BUDGET_SECONDS must be > 0.")
        if self.pipeline.max_images < 1:
            raise ValueError("PHOTO_PIPELINE_MAX_IMAGES must be >= 1.")
        if self.generation.backend not in SUPPORTED_GENERATION_BACKENDS:
            raise ValueError(
                f"Unsupported generation backend: {self.generation.backend!r}. "
                f"Expected one of: {', '.join(SUPPORTED_GENERATION_BACKENDS)}.",
            )
        if self.generation.backend == "http":
            parsed = urlparse(self.generation.api_url)
            if parsed.scheme not in {"http", "https"} or not parsed.netloc:
                raise ValueError(
                    "PHOTO_PIPELINE_GENERATION_API_URL must be an absolute http(s) URL "
                    "when the http generation backend is selected.",
                )
        if self.worker.invoker not in SUPPORTED_WORKER_INVOKERS:
            raise ValueError(
                f"Unsupported worker invoker: {self.worker.invoker!r}. "
                f"Expected one of: {', '.join(SUPPORTED_WORKER_INVOKERS)}.",
            )


def _collect_stage_budgets() -> dict[TaskStatus, float]:
    raw = os.getenv("PHOTO_PIPELINE_STAGE_BUDGETS", "").strip()
    if not raw:
        return {}

    budgets: dict[TaskStatus, float] = {}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if "=" not in token:
            raise ValueError(
                "Invalid PHOTO_PIPELINE_STAGE_BUDGETS entry: "
                f"{token!r}. Expected format '<status>=<seconds>'.",
            )
        status_raw, seconds_raw = token.split("=", 1)
        try:
            status = TaskStatus(status_raw.strip().lower())
        except ValueError as error:
            raise ValueError(
                f"Unknown status in PHOTO_PIPELINE_STAGE_BUDGETS: {status_raw!r}",
            ) from error
        if status in TERMINAL_STATUSES:
            raise ValueError(f"Terminal status has no stage budget: {status.value!r}")
        try:
            seconds = float(seconds_raw.strip())
        except ValueError as error:
            raise ValueError(
                "Invalid PHOTO_PIPELINE_STAGE_BUDGETS value for "
                f"{status.value!r}: {seconds_raw!r}",
            ) from error
        if seconds <= 0:
            raise ValueError(
                f"Invalid PHOTO_PIPELINE_STAGE_BUDGETS value for {status.value!r}: "
                f"{seconds!r} (must be > 0)",
            )
        budgets[status] = seconds
    return budgets


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
