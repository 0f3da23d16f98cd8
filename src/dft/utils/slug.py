"""Filesystem-safe names derived from task identifiers."""

from __future__ import annotations

import hashlib
import re
from typing import Pattern

_UNSAFE_PATTERN: Pattern[str] = re.compile(r"[^A-Za-z0-9._-]+")


def safe_name(value: str | None, *, fallback: str = "task", max_length: int = 120) -> str:
    """Return ``value`` with unsafe runs replaced by ``_`` and bounded in length.

    Over-long names keep a short digest of the full value so two long task ids
    sharing a prefix still map to different directories.
    """

    cleaned = _UNSAFE_PATTERN.sub("_", (value or "").strip())
    if cleaned in {"", ".", ".."}:
        cleaned = fallback
    if len(cleaned) <= max_length:
        return cleaned
    digest = hashlib.sha256(cleaned.encode("utf-8")).hexdigest()[:8]
    prefix = cleaned[: max(max_length - len(digest) - 1, 1)]
    return f"{prefix}_{digest}"


__all__ = ["safe_name"]
