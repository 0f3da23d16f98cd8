"""Git, diff, worktree and test-execution helpers used by the orchestrator."""

from .diff_analyzer import DiffAnalysis, FileChange, analyze_unified_diff, extract_changed_paths
from .hygiene import HygieneResult, cleanup_unexpected_perspective_files
from .merge import MergeBundle, MergeOutcome, apply_worktree_test_changes
from .test_paths import filter_test_like_paths, is_test_like_path
from .test_runner import execute_tests, run_test_command
from .vcs import GitError, GitRepository
from .worktree import WorktreeError, create_temporary_worktree, remove_temporary_worktree, temporary_worktree

__all__ = [
    "DiffAnalysis",
    "FileChange",
    "GitError",
    "GitRepository",
    "HygieneResult",
    "MergeBundle",
    "MergeOutcome",
    "WorktreeError",
    "analyze_unified_diff",
    "apply_worktree_test_changes",
    "cleanup_unexpected_perspective_files",
    "create_temporary_worktree",
    "execute_tests",
    "extract_changed_paths",
    "filter_test_like_paths",
    "is_test_like_path",
    "remove_temporary_worktree",
    "run_test_command",
    "temporary_worktree",
]
