"""Claude Code CLI adapter speaking ``--output-format stream-json``."""

from __future__ import annotations

import json
import logging
import os
import subprocess
import threading
from pathlib import Path
from typing import IO, Any, Dict, List, Mapping

from ..events import (
    CompletedEvent,
    EventSink,
    FileWriteEvent,
    LogLevel,
    RunEvent,
    StartedEvent,
    emit_log_event,
    now_ms,
)
from .base import AgentError, AgentRunOptions, RunningTask

LOGGER = logging.getLogger(__name__)

DEFAULT_COMMAND = "claude"

# claude may shell out to an editor or pager; keep it headless
_HEADLESS_ENV: Dict[str, str] = {
    "EDITOR": "true",
    "VISUAL": "true",
    "GIT_EDITOR": "true",
    "PAGER": "cat",
    "GIT_PAGER": "cat",
    "LESS": "FRX",
}
_IGNORED_TYPES = frozenset({"thinking", "user"})


def build_command(options: AgentRunOptions) -> List[str]:
    """Return the argv for a headless ``claude -p`` invocation."""
    command = [options.agent_command or DEFAULT_COMMAND, "-p", "--output-format", options.output_format]
    if options.output_format == "stream-json":
        command.append("--verbose")
    command += ["--input-format", "text"]
    if options.model:
        command += ["--model", options.model]
    if options.allow_write:
        command += ["--permission-mode", "acceptEdits"]
    command += ["--allowedTools", "Bash"]
    return command


class StreamJsonTranslator:
    """Map stream-json records from one task onto :data:`RunEvent` values."""

    def __init__(self, task_id: str, workspace_root: Path) -> None:
        self.task_id = task_id
        self.workspace_root = workspace_root
        self._last_write_path: str | None = None

    def translate_line(self, line: str) -> List[RunEvent]:
        text = line.strip()
        if not text:
            return []
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return [emit_log_event(self.task_id, "warn", text)]
        if not isinstance(payload, dict):
            return [emit_log_event(self.task_id, "warn", text)]
        return self.translate(payload)

    def translate(self, payload: Mapping[str, Any]) -> List[RunEvent]:
        kind = _string(payload, "type")
        if kind in _IGNORED_TYPES:
            return []
        if kind == "assistant":
            text = _assistant_text(payload.get("message"))
            return [self._log("info", text)] if text else []
        if kind == "system":
            subtype = _string(payload, "subtype")
            return [self._log("info", f"system:{subtype}")] if subtype else []
        if kind == "result":
            duration = payload.get("duration_ms")
            duration_text = duration if isinstance(duration, (int, float)) else "unknown"
            events: List[RunEvent] = [self._log("info", f"result: duration_ms={duration_text}")]
            body = _result_text(payload)
            if body:
                events.append(self._log("info", body))
            return events
        if kind == "tool_call":
            return self._tool_call(payload)
        return [self._log("info", f"event:{kind or 'unknown'}")]

    def _tool_call(self, payload: Mapping[str, Any]) -> List[RunEvent]:
        tool_call = payload.get("tool_call")
        if not isinstance(tool_call, dict) or not tool_call:
            return []
        name = next(
            (key for key in tool_call if key.endswith("ToolCall") or key in {"Write", "Edit"}),
            next(iter(tool_call)),
        )
        lowered = name.lower()
        if "write" not in lowered and "edit" not in lowered:
            return []
        body = tool_call.get(name) if isinstance(tool_call.get(name), dict) else {}
        args = body.get("args") if isinstance(body.get("args"), dict) else {}
        result = body.get("result") if isinstance(body.get("result"), dict) else {}
        success = result.get("success") if isinstance(result.get("success"), dict) else {}

        arg_path = _string(args, "path") or _string(args, "file_path")
        if arg_path:
            self._last_write_path = arg_path
        subtype = _string(payload, "subtype")
        if subtype == "started":
            path = arg_path or self._last_write_path
            return [self._write(path)] if path else []
        if subtype == "completed":
            path = _string(success, "path") or arg_path or self._last_write_path
            if not path:
                return []
            lines = success.get("linesAdded")
            return [self._write(path, lines if isinstance(lines, int) else None)]
        return []

    def _log(self, level: LogLevel, message: str) -> RunEvent:
        return emit_log_event(self.task_id, level, message)

    def _write(self, path: str, lines: int | None = None) -> RunEvent:
        return FileWriteEvent(
            task_id=self.task_id,
            path=_workspace_relative(path, self.workspace_root),
            lines_created=lines,
            timestamp_ms=now_ms(),
        )


class ClaudeCodeProvider:
    """Runs the ``claude`` CLI as a subprocess and streams its events."""

    id = "claude-code"
    display_name = "Claude Code"

    def __init__(self, *, extra_env: Mapping[str, str] | None = None) -> None:
        self._extra_env = dict(extra_env or {})
        self._lock = threading.Lock()
        self._active: subprocess.Popen[bytes] | None = None
        self._active_task_id: str | None = None

    def run(self, options: AgentRunOptions, on_event: EventSink) -> RunningTask:
        self._stop_previous(options, on_event)
        try:
            process = self._spawn(options)
        except AgentError as error:
            LOGGER.error("%s", error)
            on_event(emit_log_event(options.task_id, "error", str(error)))
            on_event(CompletedEvent(task_id=options.task_id, exit_code=None, timestamp_ms=now_ms()))
            return RunningTask(task_id=options.task_id, dispose=lambda: None)

        with self._lock:
            self._active = process
            self._active_task_id = options.task_id

        detail = f"cmd={options.agent_command or DEFAULT_COMMAND} format={options.output_format}"
        if options.model:
            detail += f" model={options.model}"
        detail += " write=on" if options.allow_write else " write=off"
        on_event(StartedEvent(task_id=options.task_id, label=self.id, detail=detail, timestamp_ms=now_ms()))

        self._wire_output(process, options, on_event)
        self._write_prompt(process, options.prompt)

        def dispose() -> None:
            try:
                if process.poll() is None:
                    process.terminate()
            except OSError as error:
                LOGGER.debug("Failed to terminate claude for %s: %s", options.task_id, error)
            finally:
                self._clear_active(process)

        return RunningTask(task_id=options.task_id, dispose=dispose)

    # ----------------------------------------------------------------- process
    def _spawn(self, options: AgentRunOptions) -> subprocess.Popen[bytes]:
        env = os.environ.copy()
        env.update(_HEADLESS_ENV)
        env.update(self._extra_env)
        command = build_command(options)
        try:
            return subprocess.Popen(  # noqa: S603 - argv built from configuration
                command,
                cwd=options.workspace_root,
                env=env,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as error:
            raise AgentError(f"Failed to start {command[0]}: {error}") from error

    @staticmethod
    def _write_prompt(process: subprocess.Popen[bytes], prompt: str) -> None:
        stdin = process.stdin
        if stdin is None:
            return
        try:
            stdin.write(prompt.encode("utf-8"))
        except OSError as error:
            # stderr and the exit code tell the rest of the story
            LOGGER.debug("Failed to write prompt to claude stdin: %s", error)
        finally:
            try:
                stdin.close()
            except OSError as error:
                LOGGER.debug("Failed to close claude stdin: %s", error)

    def _stop_previous(self, options: AgentRunOptions, on_event: EventSink) -> None:
        with self._lock:
            previous, previous_id = self._active, self._active_task_id
        if previous is None or previous.poll() is not None:
            return
        try:
            previous.terminate()
        except OSError as error:
            LOGGER.debug("Failed to stop previous claude task %s: %s", previous_id, error)
        on_event(
            emit_log_event(
                options.task_id,
                "warn",
                f"Stopped the previous claude task ({previous_id}) because it had not finished.",
            )
        )
        self._clear_active(previous)

    def _clear_active(self, process: subprocess.Popen[bytes]) -> None:
        with self._lock:
            if self._active is process:
                self._active = None
                self._active_task_id = None

    def _wire_output(
        self,
        process: subprocess.Popen[bytes],
        options: AgentRunOptions,
        on_event: EventSink,
    ) -> None:
        translator = StreamJsonTranslator(options.task_id, Path(options.workspace_root))
        emit_lock = threading.Lock()

        def emit(event: RunEvent) -> None:
            with emit_lock:
                on_event(event)

        def read_stdout(stream: IO[bytes]) -> None:
            for raw in iter(stream.readline, b""):
                for event in translator.translate_line(raw.decode("utf-8", errors="replace")):
                    emit(event)
            stream.close()

        def read_stderr(stream: IO[bytes]) -> None:
            for raw in iter(stream.readline, b""):
                message = raw.decode("utf-8", errors="replace").strip()
                if message:
                    emit(emit_log_event(options.task_id, "error", message))
            stream.close()

        readers = []
        if process.stdout is not None:
            readers.append(threading.Thread(target=read_stdout, args=(process.stdout,), daemon=True))
        if process.stderr is not None:
            readers.append(threading.Thread(target=read_stderr, args=(process.stderr,), daemon=True))
        for reader in readers:
            reader.start()

        def wait_for_exit() -> None:
            for reader in readers:
                reader.join()
            returncode = process.wait()
            self._clear_active(process)
            exit_code = returncode if returncode >= 0 else None
            emit(CompletedEvent(task_id=options.task_id, exit_code=exit_code, timestamp_ms=now_ms()))

        threading.Thread(target=wait_for_exit, daemon=True).start()


def _string(payload: Mapping[str, Any], key: str) -> str | None:
    value = payload.get(key)
    return value if isinstance(value, str) else None


def _assistant_text(message: Any) -> str | None:
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    if not isinstance(content, list) or not content or not isinstance(content[0], dict):
        return None
    text = content[0].get("text")
    return text if isinstance(text, str) else None


def _result_text(payload: Mapping[str, Any]) -> str | None:
    result = payload.get("result")
    if isinstance(result, str):
        return result or None
    if not isinstance(result, dict):
        return None
    for key in ("text", "content", "message"):
        value = result.get(key)
        if isinstance(value, str):
            return value
    content = result.get("content")
    if isinstance(content, list) and content and isinstance(content[0], dict):
        text = content[0].get("text")
        if isinstance(text, str):
            return text
    return None


def _workspace_relative(path: str, workspace_root: Path) -> str:
    candidate = Path(path)
    if not candidate.is_absolute():
        return path
    try:
        return candidate.relative_to(workspace_root).as_posix()
    except ValueError:
        return path


__all__ = ["ClaudeCodeProvider", "StreamJsonTranslator", "build_command"]
