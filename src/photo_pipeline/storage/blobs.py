"""Blob storage collaborator used by the downloading and uploading stages."""

from __future__ import annotations

import logging
import mimetypes
from pathlib import Path
from typing import Protocol
from urllib.parse import unquote, urlparse

import httpx

from photo_pipeline.tasks.errors import TransientFetchError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 3


class BlobStore(Protocol):
    """Download source blobs and persist generated artifacts."""

    def download(self, ref: str) -> bytes:
        """Return the raw bytes behind an image reference."""

    def upload(self, data: bytes, *, mime_type: str, name: str) -> str:
        """Persist bytes durably and return their public URL."""


class LocalBlobStore:
    """Filesystem-backed blob store with HTTP(S) download support.

    Relative refs, absolute paths and ``file://`` URLs must resolve under
    ``root``; ``http(s)://`` refs are fetched with httpx. Uploads land in
    ``root/uploads`` and are addressed through ``public_base_url``.
    """

    def __init__(
        self,
        *,
        root: Path,
        public_base_url: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.root = root
        self.public_base_url = public_base_url.rstrip("/")
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport or httpx.HTTPTransport(retries=max_retries),
            follow_redirects=True,
        )

    def download(self, ref: str) -> bytes:
        parsed = urlparse(ref)
        if parsed.scheme in {"http", "https"}:
            try:
                response = self._client.get(ref)
            except httpx.TimeoutException as error:
                raise TransientFetchError(ref, "timeout") from error
            except httpx.HTTPError as error:
                raise TransientFetchError(ref, str(error)) from error
            if not response.is_success:
                raise TransientFetchError(ref, f"HTTP {response.status_code}")
            return response.content

        path = self._resolve_local(ref)
        try:
            return path.read_bytes()
        except OSError as error:
            raise TransientFetchError(ref, error.strerror or str(error)) from error

    def upload(self, data: bytes, *, mime_type: str, name: str) -> str:
        filename = _with_extension(name, mime_type)
        target = self._inside_root(filename, self.root / "uploads" / filename)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as error:
            raise TransientFetchError(filename, error.strerror or str(error)) from error
        logger.debug("Stored blob path=%s size=%d", target, len(data))
        return f"{self.public_base_url}/uploads/{filename}"

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> LocalBlobStore:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _resolve_local(self, ref: str) -> Path:
        parsed = urlparse(ref)
        candidate = Path(unquote(parsed.path)) if parsed.scheme == "file" else Path(ref)
        if not candidate.is_absolute():
            candidate = self.root / candidate
        return self._inside_root(ref, candidate)

    def _inside_root(self, ref: str, candidate: Path) -> Path:
        resolved = candidate.resolve()
        if not resolved.is_relative_to(self.root.resolve()):
            raise TransientFetchError(ref, "outside storage root")
        return resolved


def _with_extension(name: str, mime_type: str) -> str:
    if Path(name).suffix:
        return name
    extension = mimetypes.guess_extension(mime_type) or ".bin"
    if extension == ".jpe":
        extension = ".jpg"
    return f"{name}{extension}"
