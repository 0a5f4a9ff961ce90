"""Generation API clients invoked from the worker hand-off."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from photo_pipeline.tasks.errors import GenerationError
from photo_pipeline.tasks.models import DownloadedImage

logger = logging.getLogger(__name__)

# 1x1 transparent PNG
PLACEHOLDER_PNG_BASE64 = (
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNk"
    "YPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)


@dataclass(slots=True, frozen=True)
class GeneratedArtifact:
    """One image returned by a generation backend."""

    base64_data: str
    mime_type: str


class GenerationClient(Protocol):
    """Protocol implemented by generation backends."""

    def generate(
        self,
        images: list[DownloadedImage],
        parameters: dict[str, Any],
        count: int,
    ) -> list[GeneratedArtifact]:
        """Produce `count` artifacts from the source images."""


class HttpGenerationClient:
    """JSON-over-HTTP generation API client."""

    def __init__(
        self,
        *,
        api_url: str,
        api_key: str | None = None,
        timeout_seconds: float = 600.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_url = api_url
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=headers,
            transport=transport,
        )

    def generate(
        self,
        images: list[DownloadedImage],
        parameters: dict[str, Any],
        count: int,
    ) -> list[GeneratedArtifact]:
        payload = {
            "images": [
                {"mimeType": image.mime_type, "base64Data": image.base64_data} for image in images
            ],
            "parameters": parameters,
            "count": count,
        }
        try:
            response = self._client.post(self.api_url, json=payload)
        except httpx.TimeoutException as error:
            raise GenerationError("Generation API timed out") from error
        except httpx.HTTPError as error:
            raise GenerationError(f"Generation API request failed: {error}") from error
        if not response.is_success:
            raise GenerationError(f"Generation API returned HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError as error:
            raise GenerationError("Generation API returned invalid JSON") from error
        return _parse_artifacts(body)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpGenerationClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


class EchoGenerationClient:
    """Deterministic local backend: returns the source images cycled `count` times.

    Without source images it returns `count` placeholder PNGs.
    """

    def generate(
        self,
        images: list[DownloadedImage],
        parameters: dict[str, Any],
        count: int,
    ) -> list[GeneratedArtifact]:
        if not images:
            logger.debug("Echo generation without sources count=%d", count)
            return [
                GeneratedArtifact(base64_data=PLACEHOLDER_PNG_BASE64, mime_type="image/png")
                for _ in range(count)
            ]
        logger.debug("Echo generation images=%d count=%d", len(images), count)
        return [
            GeneratedArtifact(
                base64_data=images[index % len(images)].base64_data,
                mime_type=images[index % len(images)].mime_type,
            )
            for index in range(count)
        ]


def _parse_artifacts(body: object) -> list[GeneratedArtifact]:
    if not isinstance(body, dict):
        raise GenerationError("Generation API response must be an object")
    raw_images = body.get("images")
    if not isinstance(raw_images, list) or not raw_images:
        raise GenerationError("Generation API response has no images")

    artifacts: list[GeneratedArtifact] = []
    for index, item in enumerate(raw_images):
        if not isinstance(item, dict):
            raise GenerationError(f"images[{index}] must be an object")
        data = item.get("base64Data")
        mime_type = item.get("mimeType", "image/png")
        if not isinstance(data, str) or not data:
            raise GenerationError(f"images[{index}].base64Data must be a non-empty string")
        if not isinstance(mime_type, str):
            raise GenerationError(f"images[{index}].mimeType must be a string")
        artifacts.append(GeneratedArtifact(base64_data=data, mime_type=mime_type))
    return artifacts
