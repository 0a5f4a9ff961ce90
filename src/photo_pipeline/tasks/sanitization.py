"""Sanitization for error summaries persisted in the task record."""

from __future__ import annotations

import re
from collections.abc import Callable

MAX_ERROR_CHARS = 500

_Replacement = str | Callable[[re.Match[str]], str]

_REPLACEMENTS: tuple[tuple[re.Pattern[str], _Replacement], ...] = (
    (
        re.compile(r"(?i)\b(bearer)\s+[a-z0-9._\-]{8,}\b"),
        r"\1 [redacted-token]",
    ),
    (
        re.compile(r"(?i)\b(sk-[a-z0-9\-]{8,})\b"),
        "[redacted-token]",
    ),
    (
        re.compile(
            r"(?i)\b(photo_pipeline|generation|api)[a-z0-9_]*_?(api_)?(key|token|secret)\b"
            r"\s*[:=]\s*['\"]?[^'\" \n\r\t]+['\"]?",
        ),
        "[redacted-secret]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|key|signature|auth|sign)=[^&\s]+)"),
        lambda match: match.group(1).split("=")[0] + "=[redacted]",
    ),
    (
        re.compile(r"data:image/[^;\s]+;base64,[A-Za-z0-9+/=]{16,}"),
        "[inline-image]",
    ),
)


def summarize_error(error: BaseException, *, max_chars: int = MAX_ERROR_CHARS) -> str:
    """Short human-readable, single-line description of a failure."""

    text = str(error).strip() or type(error).__name__
    return sanitize_text(" ".join(text.split()), max_chars=max_chars)


def sanitize_text(text: str, *, max_chars: int = MAX_ERROR_CHARS) -> str:
    """Redact obvious secrets and clamp payload size."""

    compact = text.strip()
    if not compact:
        return ""

    redacted = compact
    for pattern, replacement in _REPLACEMENTS:
        redacted = pattern.sub(replacement, redacted)

    if len(redacted) <= max_chars:
        return redacted
    return redacted[: max_chars - 3] + "..."
