"""Workspace hygiene helpers that undo known agent side effects.

Some agents save the marker-delimited perspective table they were asked to
print into the workspace root (``test_perspectives.md``,
``test_perspectives_output.json`` and similar). Those files are extraction
scaffolding, not user content, so after generation we delete them. Only files
directly under the root that match the fixed name patterns *and* contain a full
marker pair are touched; anything else is left alone.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from ..prompts import (
    PERSPECTIVE_JSON_BEGIN,
    PERSPECTIVE_JSON_END,
    PERSPECTIVE_LEGACY_BEGIN,
    PERSPECTIVE_LEGACY_END,
)

_STRAY_PATTERNS: tuple[str, ...] = ("test_perspectives*.md", "test_perspectives*.json")
_MARKER_PAIRS: tuple[tuple[str, str], ...] = (
    (PERSPECTIVE_LEGACY_BEGIN, PERSPECTIVE_LEGACY_END),
    (PERSPECTIVE_JSON_BEGIN, PERSPECTIVE_JSON_END),
)


@dataclass(slots=True)
class HygieneResult:
    """Report emitted after enforcing workspace hygiene rules."""

    removed: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.errors


def _has_marker_pair(text: str) -> bool:
    return any(begin in text and end in text for begin, end in _MARKER_PAIRS)


def cleanup_unexpected_perspective_files(workspace_root: Path | str) -> HygieneResult:
    """Delete stray marker-bearing perspective files from ``workspace_root``."""

    root = Path(workspace_root)
    candidates: dict[Path, None] = {}
    for pattern in _STRAY_PATTERNS:
        for path in sorted(root.glob(pattern)):
            if path.is_file():
                candidates[path] = None

    removed: list[str] = []
    errors: list[str] = []
    for path in candidates:
        relative = path.relative_to(root).as_posix()
        try:
            text = path.read_text(encoding="utf-8", errors="replace")
            if not _has_marker_pair(text):
                continue
            path.unlink()
        except OSError as error:
            errors.append(f"Failed to delete stray perspective file {relative}: {error}")
            continue
        removed.append(relative)

    warnings: tuple[str, ...] = ()
    if removed:
        warnings = (f"Deleted stray perspective files written by the agent: {', '.join(removed)}",)
    return HygieneResult(removed=tuple(removed), warnings=warnings, errors=tuple(errors))


__all__ = ["HygieneResult", "cleanup_unexpected_perspective_files"]
