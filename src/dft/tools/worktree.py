"""Ephemeral linked worktrees used to isolate agent writes from the real checkout."""

from __future__ import annotations

import logging
import shutil
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from ..utils.slug import safe_name
from .vcs import GitError, GitRepository

LOGGER = logging.getLogger(__name__)

WORKTREES_DIRNAME = "worktrees"


class WorktreeError(RuntimeError):
    """Raised when an isolated worktree cannot be created."""


def worktree_path_for(base_dir: Path, task_id: str) -> Path:
    return Path(base_dir) / WORKTREES_DIRNAME / safe_name(task_id)


def create_temporary_worktree(
    repo_root: Path | str,
    base_dir: Path | str,
    task_id: str,
    ref: str = "HEAD",
) -> Path:
    """Check out ``ref`` as a detached worktree under ``base_dir/worktrees/<task>``.

    Leftovers from an earlier crashed run with the same task id are deleted
    first. The directory lives outside the workspace so the user's checkout
    never sees it as untracked content.
    """

    worktree_dir = worktree_path_for(Path(base_dir), task_id)
    worktree_dir.parent.mkdir(parents=True, exist_ok=True)
    if worktree_dir.exists():
        shutil.rmtree(worktree_dir, ignore_errors=True)

    target_ref = ref.strip() or "HEAD"
    try:
        repo = GitRepository(repo_root)
        # stale registrations for the same path would make ``worktree add`` refuse
        repo.git("worktree", "prune", check=False)
        repo.git("worktree", "add", "--detach", str(worktree_dir), target_ref)
    except GitError as error:
        raise WorktreeError(f"Failed to create temporary worktree: {error}") from error
    return worktree_dir


def remove_temporary_worktree(repo_root: Path | str, worktree_dir: Path | str) -> None:
    """Remove ``worktree_dir``; calling this for a missing worktree is a no-op."""

    target = Path(worktree_dir)
    try:
        repo: GitRepository | None = GitRepository(repo_root)
    except GitError as error:
        LOGGER.debug("Skipping git worktree cleanup for %s: %s", target, error)
        repo = None

    if repo is not None:
        for args in (("worktree", "remove", "--force", str(target)), ("worktree", "prune")):
            try:
                repo.git(*args, check=False)
            except GitError as error:
                LOGGER.debug("git %s failed: %s", " ".join(args[:2]), error)

    if target.exists():
        try:
            shutil.rmtree(target)
        except OSError as error:
            LOGGER.warning("Failed to delete worktree directory %s: %s", target, error)


@contextmanager
def temporary_worktree(
    repo_root: Path | str,
    base_dir: Path | str,
    task_id: str,
    ref: str = "HEAD",
) -> Iterator[Path]:
    """Create a disposable worktree that is always removed on exit."""
    worktree_dir = create_temporary_worktree(repo_root, base_dir, task_id, ref)
    try:
        yield worktree_dir
    finally:
        remove_temporary_worktree(repo_root, worktree_dir)


__all__ = [
    "WorktreeError",
    "create_temporary_worktree",
    "remove_temporary_worktree",
    "temporary_worktree",
    "worktree_path_for",
]
