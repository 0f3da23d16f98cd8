"""Structured view over unified diffs produced by ``git diff`` / ``git show``."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List, Literal, Tuple

ChangeType = Literal["added", "modified", "deleted", "renamed", "binary"]

_DIFF_HEADER = "diff --git "
_NEW_FILE = "new file mode "
_DELETED_FILE = "deleted file mode "
_RENAME_FROM = "rename from "
_RENAME_TO = "rename to "
_BINARY_PREFIXES = ("Binary files ", "GIT binary patch")


@dataclass(frozen=True, slots=True)
class FileChange:
    """One file section of a unified diff.

    ``old_path`` is ``None`` for additions and ``new_path`` is ``None`` for
    deletions; both are set for every other change type.
    """

    old_path: str | None
    new_path: str | None
    change_type: ChangeType

    @property
    def path(self) -> str:
        """Workspace-relative path that identifies this change."""
        if self.change_type == "deleted" or self.new_path is None:
            return self.old_path or ""
        return self.new_path


@dataclass(frozen=True, slots=True)
class DiffAnalysis:
    files: Tuple[FileChange, ...] = ()

    def __len__(self) -> int:
        return len(self.files)

    def __iter__(self):
        return iter(self.files)


@dataclass(slots=True)
class _Section:
    a_path: str
    b_path: str
    added: bool = False
    deleted: bool = False
    renamed: bool = False
    binary: bool = False
    rename_from: str | None = None

    def build(self) -> FileChange:
        if self.renamed:
            return FileChange(self.rename_from or self.a_path, self.b_path, "renamed")
        if self.deleted:
            return FileChange(self.a_path, None, "binary" if self.binary else "deleted")
        if self.added:
            return FileChange(None, self.b_path, "binary" if self.binary else "added")
        return FileChange(self.a_path, self.b_path, "binary" if self.binary else "modified")


def normalize_path(path: str) -> str:
    cleaned = path.replace("\\", "/").strip()
    while cleaned.startswith("./"):
        cleaned = cleaned[2:]
    return cleaned


def analyze_unified_diff(diff_text: str) -> DiffAnalysis:
    """Parse ``diff_text`` into per-file :class:`FileChange` records.

    Empty input yields an empty analysis. Sections whose ``diff --git`` header
    cannot be parsed are skipped rather than raising, and hunk bodies are never
    retained.
    """

    if not diff_text:
        return DiffAnalysis()

    changes: List[FileChange] = []
    current: _Section | None = None

    for raw_line in diff_text.split("\n"):
        line = raw_line.rstrip("\r")
        if line.startswith(_DIFF_HEADER):
            if current is not None:
                changes.append(current.build())
            paths = _parse_header_paths(line[len(_DIFF_HEADER):])
            current = _Section(*paths) if paths else None
            continue

        if current is None:
            continue

        if line.startswith(_NEW_FILE):
            current.added = True
        elif line.startswith(_DELETED_FILE):
            current.deleted = True
        elif line.startswith(_RENAME_FROM):
            current.renamed = True
            current.rename_from = normalize_path(_unquote(line[len(_RENAME_FROM):].strip()))
        elif line.startswith(_RENAME_TO):
            # the header's b-path stays authoritative for the new name
            current.renamed = True
        elif line.startswith(_BINARY_PREFIXES):
            current.binary = True

    if current is not None:
        changes.append(current.build())

    return DiffAnalysis(files=tuple(_dedupe(changes)))


def extract_changed_paths(analysis: DiffAnalysis) -> List[str]:
    """Return unique, normalised paths in order of first appearance."""
    seen: set[str] = set()
    ordered: List[str] = []
    for change in analysis.files:
        path = normalize_path(change.path)
        if not path or path in seen:
            continue
        seen.add(path)
        ordered.append(path)
    return ordered


def _dedupe(changes: Iterable[FileChange]) -> List[FileChange]:
    """Keep the first record per path; a later rename replaces it in place."""
    by_path: dict[str, FileChange] = {}
    for change in changes:
        existing = by_path.get(change.path)
        if existing is None:
            by_path[change.path] = change
            continue
        if existing.change_type != "renamed" and change.change_type == "renamed":
            by_path[change.path] = change
    return list(by_path.values())


def _parse_header_paths(rest: str) -> tuple[str, str] | None:
    if '"' not in rest:
        symmetric = _split_symmetric(rest)
        if symmetric is not None:
            return symmetric
    tokens = _split_tokens(rest)
    if len(tokens) < 2:
        return None
    a_token, b_token = tokens[0], tokens[1]
    if not a_token.startswith("a/") or not b_token.startswith("b/"):
        return None
    return normalize_path(a_token[2:]), normalize_path(b_token[2:])


def _split_symmetric(rest: str) -> tuple[str, str] | None:
    """Handle unquoted paths containing spaces, e.g. ``a/my file b/my file``."""
    if not rest.startswith("a/"):
        return None
    length = len(rest)
    if (length - 5) % 2 != 0:
        return None
    half = (length - 5) // 2
    a_path = rest[2 : 2 + half]
    tail = rest[2 + half :]
    if tail != f" b/{a_path}" or " " not in a_path:
        return None
    normalized = normalize_path(a_path)
    return normalized, normalized


def _split_tokens(text: str) -> List[str]:
    """Split on spaces while honouring git's C-style double quoted paths."""
    tokens: List[str] = []
    index = 0
    length = len(text)
    while index < length:
        while index < length and text[index] == " ":
            index += 1
        if index >= length:
            break
        if text[index] == '"':
            index += 1
            buffer = bytearray()
            while index < length:
                char = text[index]
                if char == "\\" and index + 1 < length:
                    octal = _OCTAL_RE.match(text, index + 1)
                    if octal:
                        # git escapes non-ASCII bytes as \ooo when core.quotepath is on
                        buffer.append(int(octal.group(0), 8) & 0xFF)
                        index = octal.end()
                        continue
                    buffer += _ESCAPES.get(text[index + 1], text[index + 1]).encode("utf-8")
                    index += 2
                    continue
                if char == '"':
                    index += 1
                    break
                buffer += char.encode("utf-8")
                index += 1
            tokens.append(buffer.decode("utf-8", errors="replace"))
            continue
        start = index
        while index < length and text[index] != " ":
            index += 1
        tokens.append(text[start:index])
    return tokens


_ESCAPES = {"n": "\n", "t": "\t", '"': '"', "\\": "\\"}
_OCTAL_RE = re.compile(r"[0-7]{1,3}")


def _unquote(value: str) -> str:
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        tokens = _split_tokens(value)
        return tokens[0] if tokens else value
    return value


__all__ = [
    "ChangeType",
    "DiffAnalysis",
    "FileChange",
    "analyze_unified_diff",
    "extract_changed_paths",
    "normalize_path",
]
