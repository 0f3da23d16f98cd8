"""Collect a change set (working tree, commit or range) and turn it into a run request."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from .events import now_ms
from .prompts import render_generation_prompt, truncate_for_prompt
from .tools.diff_analyzer import DiffAnalysis, analyze_unified_diff, extract_changed_paths
from .tools.vcs import DiffMode, GitRepository

SourceKind = Literal["working-tree", "commit", "range"]

_TASK_PREFIXES: dict[str, str] = {
    "working-tree": "fromWorkingTree",
    "commit": "fromCommit",
    "range": "fromCommitRange",
}


class NoChangesError(RuntimeError):
    """Raised when the selected source has nothing to generate tests for."""


@dataclass(frozen=True, slots=True)
class ChangeSource:
    """A diff plus the paths it touches and the label shown in reports."""

    kind: SourceKind
    label: str
    diff_text: str
    analysis: DiffAnalysis

    @property
    def target_paths(self) -> tuple[str, ...]:
        return tuple(extract_changed_paths(self.analysis))

    @property
    def prompt_diff(self) -> str:
        return truncate_for_prompt(self.diff_text)


def _build(kind: SourceKind, label: str, diff_text: str) -> ChangeSource:
    if not diff_text.strip():
        raise NoChangesError(f"No changes found for {label}.")
    return ChangeSource(kind=kind, label=label, diff_text=diff_text, analysis=analyze_unified_diff(diff_text))


def collect_working_tree(repo: GitRepository, mode: DiffMode = "both") -> ChangeSource:
    return _build("working-tree", f"uncommitted changes ({mode})", repo.working_tree_diff(mode))


def collect_commit(repo: GitRepository, ref: str = "HEAD") -> ChangeSource:
    sha = repo.git("rev-parse", "--verify", f"{ref}^{{commit}}").stdout.strip()
    return _build("commit", f"commit {sha[:7]}", repo.commit_diff(sha))


def collect_range(repo: GitRepository, revision_range: str) -> ChangeSource:
    if ".." not in revision_range:
        raise ValueError(f"Expected a revision range such as main..HEAD, got {revision_range!r}.")
    return _build("range", f"commit range {revision_range}", repo.range_diff(revision_range))


def collect_changes(
    repo: GitRepository,
    kind: SourceKind,
    *,
    diff_mode: DiffMode = "both",
    ref: str = "HEAD",
    revision_range: str | None = None,
) -> ChangeSource:
    """Dispatch to the collector for ``kind``."""
    if kind == "working-tree":
        return collect_working_tree(repo, diff_mode)
    if kind == "commit":
        return collect_commit(repo, ref)
    if not revision_range:
        raise ValueError("A revision range is required for --source range.")
    return collect_range(repo, revision_range)


def build_generation_prompt(source: ChangeSource, *, pre_test_check_command: str = "") -> str:
    return render_generation_prompt(
        label=source.label,
        target_paths=source.target_paths,
        diff_text=source.diff_text,
        pre_test_check_command=pre_test_check_command,
    )


def new_task_id(kind: SourceKind) -> str:
    return f"{_TASK_PREFIXES[kind]}-{now_ms()}"


__all__ = [
    "ChangeSource",
    "NoChangesError",
    "SourceKind",
    "build_generation_prompt",
    "collect_changes",
    "collect_commit",
    "collect_range",
    "collect_working_tree",
    "new_task_id",
]
