"""Run events shared by the agent adapters, the orchestrator and report writers."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Literal, Union, assert_never

LOGGER = logging.getLogger(__name__)

LogLevel = Literal["info", "warn", "error"]

_LOGGING_LEVELS: dict[str, int] = {
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


class RunPhase(str, Enum):
    """Phases of a single generation run, in execution order."""

    PREPARING = "preparing"
    PERSPECTIVES = "perspectives"
    GENERATING = "generating"
    RUNNING_TESTS = "running-tests"
    COMPLETED = "completed"


PHASE_LABELS: dict[RunPhase, str] = {
    RunPhase.PREPARING: "Preparing",
    RunPhase.PERSPECTIVES: "Generating test perspectives",
    RunPhase.GENERATING: "Generating tests",
    RunPhase.RUNNING_TESTS: "Running tests",
    RunPhase.COMPLETED: "Completed",
}


def now_ms() -> int:
    """Return the current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True, slots=True)
class StartedEvent:
    task_id: str
    label: str
    detail: str | None = None
    timestamp_ms: int = 0


@dataclass(frozen=True, slots=True)
class LogEvent:
    task_id: str
    level: LogLevel
    message: str
    timestamp_ms: int = 0


@dataclass(frozen=True, slots=True)
class FileWriteEvent:
    """A file the agent created or updated, workspace-relative when possible."""

    task_id: str
    path: str
    lines_created: int | None = None
    bytes_written: int | None = None
    timestamp_ms: int = 0


@dataclass(frozen=True, slots=True)
class CompletedEvent:
    """Terminal event for a task id; ``exit_code`` is ``None`` for signals or spawn errors."""

    task_id: str
    exit_code: int | None
    timestamp_ms: int = 0


@dataclass(frozen=True, slots=True)
class PhaseEvent:
    task_id: str
    phase: RunPhase
    phase_label: str
    timestamp_ms: int = 0


RunEvent = Union[StartedEvent, LogEvent, FileWriteEvent, CompletedEvent, PhaseEvent]
EventSink = Callable[[RunEvent], None]


def emit_log_event(task_id: str, level: LogLevel, message: str) -> LogEvent:
    """Build a timestamped :class:`LogEvent`."""
    return LogEvent(task_id=task_id, level=level, message=message, timestamp_ms=now_ms())


def phase_event(task_id: str, phase: RunPhase) -> PhaseEvent:
    return PhaseEvent(
        task_id=task_id,
        phase=phase,
        phase_label=PHASE_LABELS[phase],
        timestamp_ms=now_ms(),
    )


def _iso(timestamp_ms: int) -> str:
    moment = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def format_event_line(event: RunEvent) -> str:
    """Render ``event`` as a single log line for execution reports.

    Multi-line log messages keep their continuation lines indented under the
    header so the report stays readable.
    """

    prefix = f"[{_iso(event.timestamp_ms)}] [{event.task_id}]"
    if isinstance(event, StartedEvent):
        detail = f" ({event.detail})" if event.detail else ""
        return f"{prefix} START {event.label}{detail}"
    if isinstance(event, LogEvent):
        lines = event.message.splitlines() or [""]
        head = f"{prefix} {event.level.upper()} {lines[0]}"
        if len(lines) == 1:
            return head
        continuation = "\n".join(f"  {line}" for line in lines[1:])
        return f"{head}\n{continuation}"
    if isinstance(event, FileWriteEvent):
        lines_part = f" lines={event.lines_created}" if event.lines_created is not None else ""
        bytes_part = f" bytes={event.bytes_written}" if event.bytes_written is not None else ""
        return f"{prefix} WRITE {event.path}{lines_part}{bytes_part}"
    if isinstance(event, CompletedEvent):
        exit_text = "null" if event.exit_code is None else str(event.exit_code)
        return f"{prefix} DONE exit={exit_text}"
    if isinstance(event, PhaseEvent):
        return f"{prefix} PHASE {event.phase.value}: {event.phase_label}"
    assert_never(event)


def log_event(event: RunEvent, logger: logging.Logger | None = None) -> None:
    """Mirror ``event`` onto the standard logging tree at a matching level."""
    target = logger or LOGGER
    level = _LOGGING_LEVELS[event.level] if isinstance(event, LogEvent) else logging.DEBUG
    target.log(level, "%s", format_event_line(event))


__all__ = [
    "CompletedEvent",
    "EventSink",
    "FileWriteEvent",
    "LogEvent",
    "LogLevel",
    "PHASE_LABELS",
    "PhaseEvent",
    "RunEvent",
    "RunPhase",
    "StartedEvent",
    "emit_log_event",
    "format_event_line",
    "log_event",
    "now_ms",
    "phase_event",
]
