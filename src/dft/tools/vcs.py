"""Minimal git helpers.

Every invocation disables path quoting so non-ASCII paths come back verbatim,
and output is read in bounded chunks; git is killed once a stream passes the
limit, so a runaway diff cannot exhaust memory.
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Literal, Sequence

import subprocess

from .process import run_bounded

DiffMode = Literal["staged", "unstaged", "both"]

MAX_OUTPUT_BYTES = 20 * 1024 * 1024
_BASE_ARGS: tuple[str, ...] = ("-c", "core.quotepath=false")


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str, *, max_output_bytes: int = MAX_OUTPUT_BYTES) -> None:
        self.root = Path(root).resolve()
        self.max_output_bytes = max_output_bytes
        # Linked worktrees carry a ``.git`` file instead of a directory.
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")

    @classmethod
    def discover(cls, start: Path | str | None = None) -> "GitRepository":
        """Locate the nearest git repository starting from ``start``."""

        path = Path(start or Path.cwd()).resolve()
        for candidate in (path, *path.parents):
            if (candidate / ".git").exists():
                return cls(candidate)
        raise GitError(f"Unable to locate a git repository from {path}")

    # ------------------------------------------------------------------ git IO
    def _run_git(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        command = ["git", *_BASE_ARGS, *args]
        try:
            process = run_bounded(command, limit=self.max_output_bytes, kill_on_overflow=True, cwd=self.root)
        except OSError as error:
            raise GitError(f"git {' '.join(args)} could not be started: {error}") from error
        if process.overflowed:
            raise GitError(
                f"git {' '.join(args)} produced more than {self.max_output_bytes} bytes of output"
            )
        result = subprocess.CompletedProcess(command, process.returncode, process.stdout.decode(), process.stderr.decode())
        if check and result.returncode != 0:
            message = _failure_text(result)
            raise GitError(f"git {' '.join(args)} failed: {message}")
        return result

    def git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Execute ``git`` with ``args`` relative to the repository root."""

        return self._run_git(list(args), check=check)

    def head(self) -> str | None:
        result = self._run_git(["rev-parse", "--verify", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    # ----------------------------------------------------------- diff helpers
    def diff(self, *args: str) -> str:
        """Return ``git diff --no-color`` output for ``args``."""

        return self._run_git(["diff", "--no-color", *args]).stdout

    def working_tree_diff(self, mode: DiffMode = "both") -> str:
        """Return uncommitted changes; ``both`` joins staged then unstaged hunks."""

        if mode == "staged":
            return self.diff("--cached").rstrip()
        if mode == "unstaged":
            return self.diff().rstrip()
        staged = self.diff("--cached").rstrip()
        unstaged = self.diff().rstrip()
        return "\n\n".join(part for part in (staged, unstaged) if part)

    def commit_diff(self, ref: str = "HEAD") -> str:
        """Return the patch introduced by ``ref`` with a short commit header."""

        result = self._run_git(
            ["show", "--no-color", "--pretty=format:COMMIT %H%nSUBJECT %s%n", ref]
        )
        return result.stdout.strip()

    def range_diff(self, revision_range: str) -> str:
        """Return the diff for a range such as ``main..HEAD``."""

        return self.diff(revision_range).rstrip()

    # ------------------------------------------------------------- repo status
    def list_changed_paths(self, mode: Literal["tracked", "untracked", "all"] = "all") -> List[str]:
        """Return changed paths relative to the root, tracked ones first."""

        paths: List[str] = []
        if mode in ("tracked", "all"):
            tracked = self._run_git(["diff", "--name-only"]).stdout
            paths.extend(line.strip() for line in tracked.splitlines() if line.strip())
        if mode in ("untracked", "all"):
            untracked = self._run_git(["ls-files", "--others", "--exclude-standard"]).stdout
            paths.extend(line.strip() for line in untracked.splitlines() if line.strip())
        seen: set[str] = set()
        ordered: List[str] = []
        for path in paths:
            if path in seen:
                continue
            seen.add(path)
            ordered.append(path)
        return ordered

    def intent_to_add(self, paths: Sequence[str]) -> None:
        """Record ``paths`` with ``git add -N`` so they show up in ``git diff``."""

        if not paths:
            return
        self._run_git(["add", "-N", "--", *paths])

    # ---------------------------------------------------------------- patches
    def apply_check(self, patch_path: Path | str) -> str | None:
        """Dry-run ``git apply``; return ``None`` when clean or the failure text."""

        return self._apply(["apply", "--check", str(patch_path)])

    def apply(self, patch_path: Path | str) -> str | None:
        """Apply ``patch_path``; return ``None`` on success or the failure text."""

        return self._apply(["apply", str(patch_path)])

    def _apply(self, args: List[str]) -> str | None:
        try:
            result = self._run_git(args, check=False)
        except GitError as error:
            return str(error)
        if result.returncode == 0:
            return None
        return _failure_text(result)


def _failure_text(result: subprocess.CompletedProcess[str]) -> str:
    parts = [result.stderr.strip(), result.stdout.strip()]
    joined = "\n".join(part for part in parts if part)
    return joined or f"unknown git error (exit={result.returncode})"


__all__ = ["DiffMode", "GitError", "GitRepository", "MAX_OUTPUT_BYTES"]
