"""Bring test changes from an isolated worktree back into the real workspace.

Only test-like paths are ever carried over. The patch is applied when the
generation succeeded and ``git apply --check`` passes; in every other case the
patch, a snapshot of the generated test files and merge instructions are
persisted under the storage directory so the merge can be finished by hand.
"""

from __future__ import annotations

import json
import logging
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Literal, Mapping, Sequence

from ..events import EventSink, emit_log_event
from ..prompts import render_merge_assistance_prompt, render_merge_instructions
from ..utils.slug import safe_name
from .test_paths import filter_test_like_paths, normalize_test_path
from .vcs import GitError, GitRepository

LOGGER = logging.getLogger(__name__)
TELEMETRY_LOGGER = logging.getLogger("dft.telemetry")

PATCHES_DIRNAME = "patches"
SNAPSHOTS_DIRNAME = "snapshots"
INSTRUCTIONS_DIRNAME = "merge-instructions"
TMP_DIRNAME = "tmp"

MergeStatus = Literal["no-test-changes", "empty-patch", "applied", "bundled", "failed"]


@dataclass(frozen=True, slots=True)
class MergeBundle:
    """Artifacts persisted when a test patch could not be applied cleanly."""

    patch_path: Path
    snapshot_dir: Path
    instruction_path: Path
    test_paths: tuple[str, ...]
    apply_check_output: str


@dataclass(frozen=True, slots=True)
class MergeOutcome:
    status: MergeStatus
    test_paths: tuple[str, ...] = ()
    bundle: MergeBundle | None = None
    message: str = ""

    @property
    def applied_count(self) -> int:
        return len(self.test_paths) if self.status == "applied" else 0


def _serialise_event_value(value: Any) -> Any:
    """Convert telemetry payload values into JSON-friendly representations."""
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, (list, tuple, set)):
        return [_serialise_event_value(item) for item in value]
    if isinstance(value, Mapping):
        return {str(key): _serialise_event_value(child) for key, child in value.items()}
    return str(value)


def _emit_merge_event(event: str, **fields: Any) -> None:
    """Log structured telemetry events for the worktree merge."""
    payload = {"event": event, "timestamp": datetime.now(timezone.utc).isoformat()}
    for key, value in fields.items():
        payload[key] = _serialise_event_value(value)
    TELEMETRY_LOGGER.info(json.dumps(payload, separators=(",", ":"), ensure_ascii=True))


def _not_applied_message(exit_code: int | None) -> str:
    exit_text = "null" if exit_code is None else str(exit_code)
    return f"agent exit code is not 0, not auto-applied (exit={exit_text})"


def apply_worktree_test_changes(
    *,
    task_id: str,
    generation_exit_code: int | None,
    local_root: Path,
    isolated_root: Path,
    storage_dir: Path,
    on_event: EventSink,
    pre_test_check_command: str = "",
) -> MergeOutcome:
    """Merge test-only changes from ``isolated_root`` into ``local_root``.

    Git and filesystem failures never escape: they are reported as a warning
    event and a ``failed`` outcome so the run can continue.
    """

    try:
        return _apply(
            task_id=task_id,
            generation_exit_code=generation_exit_code,
            local_root=local_root,
            isolated_root=isolated_root,
            storage_dir=storage_dir,
            on_event=on_event,
            pre_test_check_command=pre_test_check_command,
        )
    except (GitError, OSError) as error:
        message = f"Applying the worktree test changes failed; continuing: {error}"
        LOGGER.warning("%s", message)
        on_event(emit_log_event(task_id, "warn", message))
        _emit_merge_event("merge_failed", task_id=task_id, error=str(error))
        return MergeOutcome(status="failed", message=message)


def _apply(
    *,
    task_id: str,
    generation_exit_code: int | None,
    local_root: Path,
    isolated_root: Path,
    storage_dir: Path,
    on_event: EventSink,
    pre_test_check_command: str,
) -> MergeOutcome:
    isolated = GitRepository(isolated_root)
    tracked = isolated.list_changed_paths("tracked")
    untracked = isolated.list_changed_paths("untracked")
    test_paths = tuple(filter_test_like_paths([*tracked, *untracked]))
    if not test_paths:
        message = "No test changes were found in the worktree; nothing to apply."
        on_event(emit_log_event(task_id, "info", message))
        _emit_merge_event("merge_skipped", task_id=task_id, reason="no-test-changes")
        return MergeOutcome(status="no-test-changes", message=message)

    untracked_set = {normalize_test_path(path) for path in untracked}
    new_tests = [path for path in test_paths if path in untracked_set]
    if new_tests:
        try:
            isolated.intent_to_add(new_tests)
        except GitError as error:
            on_event(
                emit_log_event(
                    task_id,
                    "warn",
                    f"Failed to include new test files in the diff (git add -N); continuing: {error}",
                )
            )

    patch_text = isolated.diff("--binary", "--", *test_paths)
    if not patch_text.strip():
        message = "The worktree test diff was empty; nothing to apply."
        on_event(emit_log_event(task_id, "info", message))
        _emit_merge_event("merge_skipped", task_id=task_id, reason="empty-patch", test_paths=test_paths)
        return MergeOutcome(status="empty-patch", test_paths=test_paths, message=message)
    if not patch_text.endswith("\n"):
        patch_text += "\n"

    file_stem = safe_name(task_id)
    tmp_dir = storage_dir / TMP_DIRNAME
    tmp_dir.mkdir(parents=True, exist_ok=True)
    tmp_patch = tmp_dir / f"{file_stem}.patch"
    tmp_patch.write_text(patch_text, encoding="utf-8")

    if generation_exit_code == 0:
        local = GitRepository(local_root)
        apply_check_output = local.apply_check(tmp_patch)
        if apply_check_output is None:
            apply_check_output = local.apply(tmp_patch)
            if apply_check_output is None:
                tmp_patch.unlink(missing_ok=True)
                message = f"Applied the worktree test changes to the local workspace ({len(test_paths)} files)."
                on_event(emit_log_event(task_id, "info", message))
                _emit_merge_event("merge_applied", task_id=task_id, test_paths=test_paths)
                return MergeOutcome(status="applied", test_paths=test_paths, message=message)
    else:
        apply_check_output = _not_applied_message(generation_exit_code)

    bundle = persist_merge_bundle(
        task_id=task_id,
        storage_dir=storage_dir,
        tmp_patch=tmp_patch,
        patch_text=patch_text,
        test_paths=test_paths,
        isolated_root=isolated_root,
        apply_check_output=apply_check_output,
        pre_test_check_command=pre_test_check_command,
        on_event=on_event,
    )
    message = (
        "Automatic merge was not possible; manual merge required. "
        f"patch={bundle.patch_path} snapshot={bundle.snapshot_dir} instruction={bundle.instruction_path}"
    )
    LOGGER.warning("%s", message)
    on_event(emit_log_event(task_id, "warn", message))
    _emit_merge_event(
        "merge_bundled",
        task_id=task_id,
        test_paths=test_paths,
        patch_path=bundle.patch_path,
        apply_check_output=apply_check_output,
    )
    return MergeOutcome(status="bundled", test_paths=test_paths, bundle=bundle, message=message)


def persist_merge_bundle(
    *,
    task_id: str,
    storage_dir: Path,
    tmp_patch: Path,
    patch_text: str,
    test_paths: Sequence[str],
    isolated_root: Path,
    apply_check_output: str,
    on_event: EventSink,
    pre_test_check_command: str = "",
) -> MergeBundle:
    """Write the patch, the test file snapshots and the merge instructions."""

    file_stem = safe_name(task_id)
    patches_dir = storage_dir / PATCHES_DIRNAME
    snapshot_dir = storage_dir / SNAPSHOTS_DIRNAME / file_stem
    instructions_dir = storage_dir / INSTRUCTIONS_DIRNAME
    for directory in (patches_dir, snapshot_dir, instructions_dir):
        directory.mkdir(parents=True, exist_ok=True)

    patch_path = patches_dir / f"{file_stem}.patch"
    try:
        tmp_patch.replace(patch_path)
    except OSError:
        patch_path.write_text(patch_text, encoding="utf-8")
        tmp_patch.unlink(missing_ok=True)

    copied: List[str] = []
    for relative in test_paths:
        source = isolated_root / relative
        if not source.is_file():
            continue
        target = snapshot_dir / relative
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, target)
        except OSError as error:
            on_event(emit_log_event(task_id, "warn", f"Failed to snapshot {relative}; skipping: {error}"))
            continue
        copied.append(relative)

    instruction_path = instructions_dir / f"{file_stem}.md"
    prompt = render_merge_assistance_prompt(
        task_id=task_id,
        apply_check_output=apply_check_output,
        patch_path=patch_path,
        snapshot_dir=snapshot_dir,
        test_paths=test_paths,
        pre_test_check_command=pre_test_check_command,
    )
    instruction_path.write_text(render_merge_instructions(prompt), encoding="utf-8")

    on_event(
        emit_log_event(
            task_id,
            "info",
            f"Saved merge artifacts: patch={patch_path} snapshot={snapshot_dir} "
            f"instruction={instruction_path} (snapshots: {len(copied)}/{len(test_paths)})",
        )
    )
    return MergeBundle(
        patch_path=patch_path,
        snapshot_dir=snapshot_dir,
        instruction_path=instruction_path,
        test_paths=tuple(test_paths),
        apply_check_output=apply_check_output,
    )


__all__ = [
    "MergeBundle",
    "MergeOutcome",
    "MergeStatus",
    "apply_worktree_test_changes",
    "persist_merge_bundle",
]
