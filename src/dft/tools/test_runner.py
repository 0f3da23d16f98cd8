"""Test command execution: direct subprocess or delegated to the coding agent."""

from __future__ import annotations

import json
import logging
import os
import re
import signal as signal_module
import time
from pathlib import Path
from typing import Callable, Dict, List, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..agents.base import AgentProvider, AgentRunOptions, RunningTask, run_to_completion
from ..artifacts import TestExecutionResult
from ..events import CompletedEvent, EventSink, LogEvent, RunEvent, StartedEvent, emit_log_event, now_ms
from ..prompts import (
    EXECUTION_JSON_BEGIN,
    EXECUTION_JSON_END,
    extract_between_markers,
    render_test_execution_prompt,
)
from .process import CapturedStream, run_bounded

LOGGER = logging.getLogger(__name__)

TestRunnerKind = Literal["agent", "direct"]

MAX_CAPTURE_BYTES = 5 * 1024 * 1024
RESULT_NOT_FOUND = "result not found"

EXECUTION_RESULT_BEGIN = "<!-- BEGIN TEST EXECUTION RESULT -->"
EXECUTION_RESULT_END = "<!-- END TEST EXECUTION RESULT -->"
STDOUT_BEGIN = "<!-- BEGIN STDOUT -->"
STDOUT_END = "<!-- END STDOUT -->"
STDERR_BEGIN = "<!-- BEGIN STDERR -->"
STDERR_END = "<!-- END STDERR -->"

_EXIT_LINE_RE = re.compile(r"^\s*exitCode:\s*(.+?)\s*$", re.MULTILINE)
_SIGNAL_LINE_RE = re.compile(r"^\s*signal:\s*(.+?)\s*$", re.MULTILINE)
_DURATION_LINE_RE = re.compile(r"^\s*durationMs:\s*(\d+)\s*$", re.MULTILINE)

_NESTED_HOST_COMMAND_RE = re.compile(r"(^|[\s/])out[/\\]test[/\\]runTest(\.js)?\b|@vscode/test-electron")
_NPM_TEST_RE = re.compile(r"^npm(\s+run)?\s+test\b")
_NESTED_HOST_SCRIPT_RE = re.compile(r"(@vscode/test-electron|vscode-test|out/test/runTest\.js|out\\test\\runTest\.js)")
_REJECTION_PHRASES = ("Tool execution rejected", "Execution rejected")
_REJECTION_CONTEXT = ("execution", "tool", "command")


def _merge_env(extra: Mapping[str, str] | None) -> Dict[str, str]:
    """Merge provided environment overrides with the current process state."""
    env: Dict[str, str] = os.environ.copy()
    if extra:
        env.update({str(key): str(value) for key, value in extra.items()})
    return env


def _elapsed_ms(started: float) -> int:
    return max(0, int((time.monotonic() - started) * 1000))


def _decode_capped(captured: CapturedStream, stream: str) -> str:
    text = captured.decode()
    if not captured.overflowed:
        return text
    return f"{text}\n... ({stream} truncated)"


def _signal_name(returncode: int) -> str:
    try:
        return signal_module.Signals(-returncode).name
    except ValueError:
        return str(-returncode)


# ---------------------------------------------------------------- direct
def run_test_command(
    command: str,
    cwd: Path | str,
    *,
    env: Mapping[str, str] | None = None,
    max_capture_bytes: int = MAX_CAPTURE_BYTES,
) -> TestExecutionResult:
    """Run ``command`` through the shell in ``cwd`` and capture its outcome.

    Each stream keeps at most ``max_capture_bytes`` bytes while the command runs;
    the rest is drained and dropped behind a truncation note. A process killed
    by a signal reports ``exit_code=None`` and the signal name; a spawn failure
    reports ``error_message``.
    """

    workdir = Path(cwd)
    started = time.monotonic()
    try:
        completed = run_bounded(  # noqa: S602 - the test command is user configuration
            command,
            limit=max_capture_bytes,
            cwd=workdir,
            env=_merge_env(env),
            shell=True,
        )
    except OSError as error:
        LOGGER.error("Failed to start test command %r: %s", command, error)
        return TestExecutionResult(
            command=command,
            cwd=str(workdir),
            exit_code=None,
            signal=None,
            duration_ms=_elapsed_ms(started),
            stdout="",
            stderr="",
            error_message=str(error),
        )

    returncode = completed.returncode
    exit_code: int | None = returncode if returncode >= 0 else None
    signal_name = _signal_name(returncode) if returncode < 0 else None
    return TestExecutionResult(
        command=command,
        cwd=str(workdir),
        exit_code=exit_code,
        signal=signal_name,
        duration_ms=_elapsed_ms(started),
        stdout=_decode_capped(completed.stdout, "stdout"),
        stderr=_decode_capped(completed.stderr, "stderr"),
    )


# ---------------------------------------------------------------- agent
class ExecutionPayload(BaseModel):
    """JSON block the agent prints between the execution markers (version 1)."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    version: Literal[1]
    exit_code: int | None = Field(default=None, alias="exitCode")
    signal: str | None = None
    duration_ms: float | None = Field(default=None, alias="durationMs")
    stdout: str = ""
    stderr: str = ""


def _parse_json_block(block: str) -> ExecutionPayload | None:
    try:
        return ExecutionPayload.model_validate(json.loads(block))
    except (json.JSONDecodeError, ValidationError) as error:
        LOGGER.debug("Ignoring malformed test execution JSON: %s", error)
        return None


def _parse_exit_line(value: str | None, fallback: int | None) -> int | None:
    if not value or value == "null":
        return None
    try:
        return int(value)
    except ValueError:
        return fallback


def parse_agent_test_output(
    raw: str,
    *,
    command: str,
    cwd: Path | str,
    agent_exit_code: int | None,
    measured_ms: int,
) -> TestExecutionResult:
    """Turn the agent's collected log text into a :class:`TestExecutionResult`.

    The JSON block wins; the legacy text block is the second choice. Without
    either, the agent's own exit code is reported, the raw log becomes stderr
    and ``error_message`` is ``"result not found"``.
    """

    workdir = str(cwd)
    json_block = extract_between_markers(raw, EXECUTION_JSON_BEGIN, EXECUTION_JSON_END)
    if json_block:
        payload = _parse_json_block(json_block)
        if payload is not None:
            duration = int(payload.duration_ms) if payload.duration_ms and payload.duration_ms > 0 else measured_ms
            return TestExecutionResult(
                command=command,
                cwd=workdir,
                exit_code=payload.exit_code,
                signal=payload.signal or None,
                duration_ms=duration,
                stdout=payload.stdout,
                stderr=payload.stderr,
            )

    legacy = extract_between_markers(raw, EXECUTION_RESULT_BEGIN, EXECUTION_RESULT_END)
    if not legacy:
        prefix = "JSON could not be parsed; " if json_block else ""
        return TestExecutionResult(
            command=command,
            cwd=workdir,
            exit_code=agent_exit_code,
            signal=None,
            duration_ms=measured_ms,
            stdout="",
            stderr=raw,
            error_message=f"{prefix}{RESULT_NOT_FOUND}",
        )

    exit_match = _EXIT_LINE_RE.search(legacy)
    signal_match = _SIGNAL_LINE_RE.search(legacy)
    duration_match = _DURATION_LINE_RE.search(legacy)
    signal_value = signal_match.group(1) if signal_match else None
    return TestExecutionResult(
        command=command,
        cwd=workdir,
        exit_code=_parse_exit_line(exit_match.group(1) if exit_match else None, agent_exit_code),
        signal=None if not signal_value or signal_value == "null" else signal_value,
        duration_ms=int(duration_match.group(1)) if duration_match else measured_ms,
        stdout=extract_between_markers(legacy, STDOUT_BEGIN, STDOUT_END) or "",
        stderr=extract_between_markers(legacy, STDERR_BEGIN, STDERR_END) or "",
    )


def run_test_via_agent(
    provider: AgentProvider,
    *,
    task_id: str,
    command: str,
    cwd: Path,
    on_event: EventSink,
    agent_command: str | None = None,
    model: str | None = None,
    allow_write: bool = False,
    timeout: float | None = None,
    on_running_task: Callable[[RunningTask], None] | None = None,
) -> TestExecutionResult:
    """Ask the agent to run ``command`` once and parse the reported result."""

    logs: List[str] = []

    def collect(event: RunEvent) -> None:
        on_event(event)
        if isinstance(event, LogEvent):
            logs.append(event.message)

    started = time.monotonic()
    exit_code = run_to_completion(
        provider,
        AgentRunOptions(
            task_id=task_id,
            workspace_root=cwd,
            prompt=render_test_execution_prompt(command=command, cwd=cwd),
            agent_command=agent_command,
            model=model,
            output_format="stream-json",
            allow_write=allow_write,
        ),
        on_event=collect,
        on_running_task=on_running_task,
        timeout=timeout,
    )
    return parse_agent_test_output(
        "\n".join(logs),
        command=command,
        cwd=cwd,
        agent_exit_code=exit_code,
        measured_ms=_elapsed_ms(started),
    )


# ---------------------------------------------------------------- classifiers
def looks_like_rejected_execution(result: TestExecutionResult) -> bool:
    """Heuristic: the agent reported that its shell tool call was refused.

    Matches English rejection phrasing in stderr. It can misfire on a test suite
    whose own output talks about rejected commands, and it misses refusals
    worded differently; :func:`is_suspicious_empty_result` covers the silent
    case.
    """

    stderr = result.stderr
    lowered = stderr.lower()
    if "rejected" in lowered and any(word in lowered for word in _REJECTION_CONTEXT):
        return True
    return any(phrase in stderr for phrase in _REJECTION_PHRASES)


def is_suspicious_empty_result(result: TestExecutionResult) -> bool:
    """Heuristic: a result with no exit code, no duration and no output at all.

    This is a proxy for an agent that silently declined to run anything. A
    legitimately instantaneous command that prints nothing still has an exit
    code, so the false-positive case needs the exit code to be lost as well.
    """

    return (
        result.exit_code is None
        and result.duration_ms == 0
        and result.signal is None
        and not result.stdout.strip()
        and not result.stderr.strip()
        and not (result.error_message or "").strip()
    )


def should_fall_back_to_direct(result: TestExecutionResult) -> bool:
    return looks_like_rejected_execution(result) or is_suspicious_empty_result(result)


def looks_like_nested_host_launch(command: str, cwd: Path | str) -> bool:
    """Heuristic: would ``command`` start an editor-host test harness?

    Recognises direct ``out/test/runTest`` and ``@vscode/test-electron``
    invocations, and ``npm test`` / ``npm run test`` whose ``package.json``
    script references such a harness. Unreadable manifests count as "no".
    """

    text = command.strip()
    if _NESTED_HOST_COMMAND_RE.search(text):
        return True
    if not _NPM_TEST_RE.search(text):
        return False
    manifest = Path(cwd) / "package.json"
    try:
        data = json.loads(manifest.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return False
    scripts = data.get("scripts") if isinstance(data, dict) else None
    script = scripts.get("test") if isinstance(scripts, dict) else None
    return isinstance(script, str) and bool(_NESTED_HOST_SCRIPT_RE.search(script))


# ---------------------------------------------------------------- entry point
def execute_tests(
    *,
    runner: TestRunnerKind,
    command: str,
    cwd: Path,
    task_id: str,
    on_event: EventSink,
    provider: AgentProvider | None = None,
    agent_command: str | None = None,
    model: str | None = None,
    allow_write: bool = False,
    timeout: float | None = None,
    on_running_task: Callable[[RunningTask], None] | None = None,
) -> TestExecutionResult:
    """Run the configured test command with the selected strategy.

    Events are published under ``<task_id>-test``; the agent sub-run uses
    ``<task_id>-test-agent``. When the agent result looks rejected the direct
    strategy runs exactly once and its result is returned instead.
    """

    test_task_id = f"{task_id}-test"
    if looks_like_nested_host_launch(command, cwd):
        on_event(
            emit_log_event(
                test_task_id,
                "warn",
                "The test command may launch a nested editor host; it will still be run.",
            )
        )

    if runner == "agent" and provider is None:
        LOGGER.warning("No agent provider available; running tests directly.")
        runner = "direct"

    detail = f"runner={runner} cmd={command}"
    on_event(StartedEvent(task_id=test_task_id, label="test-command", detail=detail, timestamp_ms=now_ms()))

    if runner == "agent" and provider is not None:
        result = run_test_via_agent(
            provider,
            task_id=f"{test_task_id}-agent",
            command=command,
            cwd=cwd,
            on_event=on_event,
            agent_command=agent_command,
            model=model,
            allow_write=allow_write,
            timeout=timeout,
            on_running_task=on_running_task,
        )
        if should_fall_back_to_direct(result):
            on_event(
                emit_log_event(
                    test_task_id,
                    "warn",
                    "The agent did not run the test command (rejected or empty result); running it directly instead.",
                )
            )
            result = run_test_command(command, cwd)
    else:
        result = run_test_command(command, cwd)

    exit_text = "null" if result.exit_code is None else str(result.exit_code)
    on_event(
        emit_log_event(
            test_task_id,
            "info" if result.exit_code == 0 else "error",
            f"Test command finished (exit={exit_text}, durationMs={result.duration_ms}).",
        )
    )
    on_event(CompletedEvent(task_id=test_task_id, exit_code=result.exit_code, timestamp_ms=now_ms()))
    return result


__all__ = [
    "EXECUTION_RESULT_BEGIN",
    "EXECUTION_RESULT_END",
    "ExecutionPayload",
    "MAX_CAPTURE_BYTES",
    "RESULT_NOT_FOUND",
    "STDERR_BEGIN",
    "STDERR_END",
    "STDOUT_BEGIN",
    "STDOUT_END",
    "TestRunnerKind",
    "execute_tests",
    "is_suspicious_empty_result",
    "looks_like_nested_host_launch",
    "looks_like_rejected_execution",
    "parse_agent_test_output",
    "run_test_command",
    "run_test_via_agent",
    "should_fall_back_to_direct",
]
