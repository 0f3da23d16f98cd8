"""Markdown artifacts persisted for every run: perspective tables and execution reports."""

from __future__ import annotations

import platform
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Sequence

from .events import now_ms

PERSPECTIVE_PREFIX = "test-perspectives_"
EXECUTION_PREFIX = "test-execution_"
MAX_REPORT_CHARS = 200_000

_ANSI_RE = re.compile(r"[\u001B\u009B][\[\]()#;?]*(?:(?:\d{1,4}(?:;\d{0,4})*)?[\dA-ORZcf-nqry=><])")
_SYSTEM_REMINDER_RE = re.compile(r"<system_reminder>.*?</system_reminder>", re.DOTALL)
_NOISE_LINES = frozenset({"event:tool_call", "system:init"})


@dataclass(frozen=True, slots=True)
class TestExecutionResult:
    """Outcome of one test execution attempt, persisted whether it ran or not."""

    __test__ = False

    command: str
    cwd: str
    exit_code: int | None
    signal: str | None
    duration_ms: int
    stdout: str
    stderr: str
    error_message: str | None = None
    skipped: bool = False
    skip_reason: str | None = None
    extension_log: str = ""

    @property
    def ok(self) -> bool:
        return not self.skipped and self.exit_code == 0 and not self.error_message


@dataclass(frozen=True, slots=True)
class SavedArtifact:
    absolute_path: Path
    relative_path: str | None = None

    @property
    def display_path(self) -> str:
        return self.relative_path or str(self.absolute_path)


@dataclass(slots=True)
class ReportContext:
    """Metadata shared by the report headers."""

    label: str
    target_paths: Sequence[str] = field(default_factory=tuple)
    model: str | None = None


def format_timestamp(moment: datetime | None = None) -> str:
    """Return ``YYYYMMDD_HHMMSS`` in local time."""
    return (moment or datetime.now()).strftime("%Y%m%d_%H%M%S")


def resolve_dir(workspace_root: Path, directory: str) -> Path:
    trimmed = directory.strip()
    if not trimmed:
        return workspace_root
    candidate = Path(trimmed).expanduser()
    return candidate if candidate.is_absolute() else workspace_root / candidate


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text)


def truncate_text(text: str, max_chars: int = MAX_REPORT_CHARS) -> str:
    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}\n\n... (truncated: {len(text)} chars -> {max_chars} chars)"


def sanitize_agent_log(message: str) -> str:
    """Drop agent bookkeeping noise and collapse blank runs to a single line."""
    text = _SYSTEM_REMINDER_RE.sub("", message.replace("\r\n", "\n"))
    collapsed: list[str] = []
    previous_blank = False
    for raw_line in text.split("\n"):
        line = raw_line.rstrip()
        if line.strip() in _NOISE_LINES:
            continue
        if not line.strip():
            if previous_blank:
                continue
            previous_blank = True
            collapsed.append("")
            continue
        previous_blank = False
        collapsed.append(line)
    return "\n".join(collapsed).strip()


def _code_block(lang: str, content: str) -> str:
    return f"```{lang}\n{content}\n```"


def _iso(timestamp_ms: int) -> str:
    moment = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _targets_block(paths: Sequence[str]) -> str:
    return "\n".join(f"- {path}" for path in paths) if paths else "- (none)"


def build_perspective_markdown(context: ReportContext, table: str, *, generated_at_ms: int | None = None) -> str:
    body = table.strip() or "(the perspective table was empty)"
    return "\n".join(
        [
            "# Test perspectives (generated)",
            "",
            f"- Generated at: {_iso(generated_at_ms or now_ms())}",
            f"- Target: {context.label}",
            "- Target files:",
            _targets_block(context.target_paths),
            "",
            "---",
            "",
            body,
            "",
        ]
    )


def build_execution_markdown(
    context: ReportContext,
    result: TestExecutionResult,
    *,
    generated_at_ms: int | None = None,
) -> str:
    """Render the execution report; empty optional lines are dropped."""
    model_line = f"- model: {context.model}" if context.model and context.model.strip() else "- model: (auto)"
    status_line = "- status: skipped" if result.skipped else "- status: executed"
    skip_line = ""
    if result.skipped and result.skip_reason and result.skip_reason.strip():
        skip_line = f"- skipReason: {result.skip_reason.strip()}"
    error_line = f"- spawn error: {result.error_message}" if result.error_message else ""
    extension_log = result.extension_log.strip() or "(no log)"

    lines = [
        "# Test execution report (generated)",
        "",
        f"- Generated at: {_iso(generated_at_ms or now_ms())}",
        f"- Target: {context.label}",
        model_line,
        "- Target files:",
        _targets_block(context.target_paths),
        "",
        "## Environment",
        f"- OS: {platform.system()} ({platform.machine()})",
        f"- Python: {platform.python_version()}",
        "",
        "## Command",
        _code_block("bash", result.command),
        "",
        "## Result",
        status_line,
        skip_line,
        f"- exitCode: {'null' if result.exit_code is None else result.exit_code}",
        f"- signal: {result.signal or 'null'}",
        f"- durationMs: {result.duration_ms}",
        error_line,
        "",
        "## stdout",
        _code_block("text", truncate_text(strip_ansi(result.stdout))),
        "",
        "## stderr",
        _code_block("text", truncate_text(strip_ansi(result.stderr))),
        "",
        "## Execution log",
        _code_block("text", truncate_text(strip_ansi(extension_log))),
        "",
    ]
    return "\n".join(line for line in lines if line != "")


def _write(directory: Path, filename: str, content: str, workspace_root: Path) -> SavedArtifact:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / filename
    path.write_text(content, encoding="utf-8")
    try:
        relative: str | None = path.resolve().relative_to(workspace_root.resolve()).as_posix()
    except ValueError:
        relative = None
    return SavedArtifact(absolute_path=path, relative_path=relative)


def save_test_perspective_table(
    workspace_root: Path,
    report_dir: str,
    context: ReportContext,
    table: str,
    *,
    timestamp: str | None = None,
) -> SavedArtifact:
    directory = resolve_dir(workspace_root, report_dir)
    filename = f"{PERSPECTIVE_PREFIX}{timestamp or format_timestamp()}.md"
    return _write(directory, filename, build_perspective_markdown(context, table), workspace_root)


def save_test_execution_report(
    workspace_root: Path,
    report_dir: str,
    context: ReportContext,
    result: TestExecutionResult,
    *,
    timestamp: str | None = None,
) -> SavedArtifact:
    directory = resolve_dir(workspace_root, report_dir)
    filename = f"{EXECUTION_PREFIX}{timestamp or format_timestamp()}.md"
    return _write(directory, filename, build_execution_markdown(context, result), workspace_root)


def latest_artifact(directory: Path, prefix: str) -> Path | None:
    """Return the most recently modified ``<prefix>*.md`` file in ``directory``."""
    if not directory.is_dir():
        return None
    candidates = [path for path in directory.glob(f"{prefix}*.md") if path.is_file()]
    if not candidates:
        return None
    return max(candidates, key=lambda path: (path.stat().st_mtime_ns, path.name))


__all__ = [
    "EXECUTION_PREFIX",
    "PERSPECTIVE_PREFIX",
    "ReportContext",
    "SavedArtifact",
    "TestExecutionResult",
    "build_execution_markdown",
    "build_perspective_markdown",
    "format_timestamp",
    "latest_artifact",
    "resolve_dir",
    "sanitize_agent_log",
    "save_test_execution_report",
    "save_test_perspective_table",
    "strip_ansi",
    "truncate_text",
]
