"""Contract shared by every coding-agent integration."""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Literal, Protocol

from ..events import CompletedEvent, EventSink, RunEvent, emit_log_event

LOGGER = logging.getLogger(__name__)

OutputFormat = Literal["text", "json", "stream-json"]

DEFAULT_CHANNEL_SIZE = 1024
_PUT_POLL_SECONDS = 0.1


class AgentError(RuntimeError):
    """Raised when an agent process cannot be started or driven."""


@dataclass(frozen=True, slots=True)
class AgentRunOptions:
    """Parameters for a single agent invocation."""

    task_id: str
    workspace_root: Path
    prompt: str
    agent_command: str | None = None
    model: str | None = None
    output_format: OutputFormat = "stream-json"
    allow_write: bool = False


@dataclass(slots=True)
class RunningTask:
    """Handle for an in-flight agent invocation; ``dispose`` aborts it."""

    task_id: str
    dispose: Callable[[], None]


class AgentProvider(Protocol):
    """Anything that runs an agent and reports progress as :data:`RunEvent` values.

    Implementations must deliver exactly one :class:`CompletedEvent` for the
    task id, after every other event for it.
    """

    id: str

    def run(self, options: AgentRunOptions, on_event: EventSink) -> RunningTask:
        ...


def run_to_completion(
    provider: AgentProvider,
    options: AgentRunOptions,
    *,
    on_event: EventSink | None = None,
    on_running_task: Callable[[RunningTask], None] | None = None,
    timeout: float | None = None,
    channel_size: int = DEFAULT_CHANNEL_SIZE,
) -> int | None:
    """Run ``provider`` and block until its completion event; return the exit code.

    Events travel over a bounded queue so a chatty agent applies backpressure
    to its reader thread instead of growing memory. When ``timeout`` elapses
    first an error event is emitted, the task is disposed and ``None`` is
    returned.
    """

    channel: queue.Queue[RunEvent] = queue.Queue(maxsize=max(1, channel_size))
    closed = threading.Event()

    def forward(event: RunEvent) -> None:
        while not closed.is_set():
            try:
                channel.put(event, timeout=_PUT_POLL_SECONDS)
                return
            except queue.Full:
                continue

    running = provider.run(options, forward)
    if on_running_task is not None:
        on_running_task(running)

    deadline = time.monotonic() + timeout if timeout and timeout > 0 else None
    try:
        while True:
            remaining = None if deadline is None else max(deadline - time.monotonic(), 0.0)
            try:
                event = channel.get(timeout=remaining)
            except queue.Empty:
                message = f"Timed out: the agent did not finish within {timeout:g}s and was stopped."
                LOGGER.error("%s (task=%s)", message, options.task_id)
                if on_event is not None:
                    on_event(emit_log_event(options.task_id, "error", message))
                _dispose_quietly(running)
                return None
            if on_event is not None:
                on_event(event)
            if isinstance(event, CompletedEvent) and event.task_id == options.task_id:
                return event.exit_code
    finally:
        closed.set()


def _dispose_quietly(running: RunningTask) -> None:
    try:
        running.dispose()
    except Exception as error:  # noqa: BLE001 - dispose failures must not mask the timeout
        LOGGER.warning("Failed to dispose task %s: %s", running.task_id, error)


__all__ = [
    "AgentError",
    "AgentProvider",
    "AgentRunOptions",
    "OutputFormat",
    "RunningTask",
    "run_to_completion",
]
