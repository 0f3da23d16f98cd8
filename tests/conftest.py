from __future__ import annotations

import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Tuple

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from dft.agents.base import AgentRunOptions, RunningTask  # noqa: E402
from dft.events import CompletedEvent, EventSink, emit_log_event, now_ms  # noqa: E402


@dataclass(slots=True)
class ScriptedRun:
    """Canned agent behaviour for task ids ending with a given suffix."""

    messages: Tuple[str, ...] = ()
    files: Dict[str, str] = field(default_factory=dict)
    exit_code: int | None = 0


class FakeProvider:
    """Agent provider that replays scripted log lines and file writes synchronously."""

    id = "fake"

    def __init__(self) -> None:
        self.scripts: Dict[str, ScriptedRun] = {}
        self.calls: List[AgentRunOptions] = []

    def script(
        self,
        suffix: str,
        *,
        messages: Tuple[str, ...] | List[str] = (),
        files: Dict[str, str] | None = None,
        exit_code: int | None = 0,
    ) -> None:
        self.scripts[suffix] = ScriptedRun(messages=tuple(messages), files=dict(files or {}), exit_code=exit_code)

    def task_ids(self) -> List[str]:
        return [options.task_id for options in self.calls]

    def run(self, options: AgentRunOptions, on_event: EventSink) -> RunningTask:
        self.calls.append(options)
        scripted = next(
            (run for suffix, run in self.scripts.items() if options.task_id.endswith(suffix)),
            ScriptedRun(),
        )
        for relative, content in scripted.files.items():
            target = Path(options.workspace_root) / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        for message in scripted.messages:
            on_event(emit_log_event(options.task_id, "info", message))
        on_event(CompletedEvent(task_id=options.task_id, exit_code=scripted.exit_code, timestamp_ms=now_ms()))
        return RunningTask(task_id=options.task_id, dispose=lambda: None)


def run_git(repo_root: Path, *cmd: str) -> str:
    completed = subprocess.run(
        ["git", *cmd],
        cwd=repo_root,
        check=True,
        capture_output=True,
        text=True,
    )
    return completed.stdout


@pytest.fixture()
def git_repo(tmp_path: Path) -> Path:
    """Create a small committed repository with one production source file."""

    repo_root = tmp_path / "workspace"
    repo_root.mkdir()
    run_git(repo_root, "init")
    run_git(repo_root, "config", "user.email", "dft@example.com")
    run_git(repo_root, "config", "user.name", "dontforgetest")
    run_git(repo_root, "config", "commit.gpgsign", "false")

    (repo_root / "src").mkdir()
    (repo_root / "src" / "a.ts").write_text("export const a = 1;\n", encoding="utf-8")
    (repo_root / "README.md").write_text("# sample\n", encoding="utf-8")

    run_git(repo_root, "add", ".")
    run_git(repo_root, "commit", "-m", "Initial sample state")
    return repo_root


@pytest.fixture()
def fake_provider() -> FakeProvider:
    return FakeProvider()
