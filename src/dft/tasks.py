"""Registry of in-flight runs with cooperative cancellation."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List

from .agents.base import RunningTask
from .events import RunPhase

LOGGER = logging.getLogger(__name__)

TaskStateListener = Callable[[bool, int, str | None], None]


@dataclass(slots=True)
class ManagedTask:
    """One registered run and the handle that aborts its current sub-step."""

    task_id: str
    label: str
    handle: RunningTask
    started_at: float = field(default_factory=time.time)
    cancelled: bool = False
    phase: RunPhase | None = None
    phase_label: str | None = None


class TaskRegistry:
    """Thread-safe table of running tasks.

    The registry is an explicit service: construct one, call :meth:`init`, share
    it between the orchestrators and front ends of a process, and call
    :meth:`dispose` on shutdown to cancel whatever is still running. Listeners
    are invoked synchronously after every mutation, outside the internal lock,
    with ``(is_running, running_count, current_phase_label)``.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tasks: dict[str, ManagedTask] = {}
        self._listeners: List[TaskStateListener] = []
        self._active = False

    # --------------------------------------------------------------- lifecycle
    def init(self) -> "TaskRegistry":
        with self._lock:
            self._active = True
        return self

    def dispose(self) -> None:
        self.cancel_all()
        with self._lock:
            self._listeners.clear()
            self._active = False

    @property
    def active(self) -> bool:
        return self._active

    def __enter__(self) -> "TaskRegistry":
        return self.init()

    def __exit__(self, *exc_info: object) -> None:
        self.dispose()

    # --------------------------------------------------------------- mutation
    def register(self, task_id: str, label: str, handle: RunningTask) -> None:
        """Track ``task_id``; an existing entry with the same id is replaced."""
        with self._lock:
            if not self._active:
                raise RuntimeError("TaskRegistry.init() must be called before registering tasks.")
            self._tasks[task_id] = ManagedTask(task_id=task_id, label=label, handle=handle)
        self._notify()

    def update_handle(self, task_id: str, handle: RunningTask) -> bool:
        """Swap the abortable handle as a run moves to its next sub-step.

        A handle arriving for a task that was cancelled or is no longer
        registered is disposed at once and False is returned, so a sub-step
        started while a cancel was in flight does not outlive the run.
        """
        with self._lock:
            task = self._tasks.get(task_id)
            if task is not None and not task.cancelled:
                task.handle = handle
                return True
        LOGGER.info("Task %s is no longer running; disposing its new handle.", task_id)
        self._dispose_handle(task_id, handle)
        return False

    def update_phase(self, task_id: str, phase: RunPhase, phase_label: str) -> bool:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                return False
            task.phase = phase
            task.phase_label = phase_label
        self._notify()
        return True

    def unregister(self, task_id: str) -> None:
        with self._lock:
            self._tasks.pop(task_id, None)
        self._notify()

    def cancel(self, task_id: str) -> bool:
        """Dispose and drop ``task_id``; return False when nothing was registered."""
        with self._lock:
            task = self._tasks.pop(task_id, None)
            if task is None:
                return False
            task.cancelled = True
        self._dispose_handle(task_id, task.handle)
        self._notify()
        return True

    def _dispose_handle(self, task_id: str, handle: RunningTask) -> None:
        try:
            handle.dispose()
        except Exception as error:  # noqa: BLE001 - a broken handle must not block cancellation
            LOGGER.warning("Failed to dispose task %s: %s", task_id, error)

    def cancel_all(self) -> int:
        count = 0
        for task_id in self.get_running_task_ids():
            if self.cancel(task_id):
                count += 1
        return count

    # ---------------------------------------------------------------- queries
    def is_cancelled(self, task_id: str) -> bool:
        """Return True when ``task_id`` was cancelled.

        An id that is no longer registered also reports True: the run either
        finished or was cancelled and removed, and in both cases must not start
        another phase.
        """
        with self._lock:
            task = self._tasks.get(task_id)
            return True if task is None else task.cancelled

    def get_running_task_ids(self) -> List[str]:
        with self._lock:
            return list(self._tasks)

    def running_count(self) -> int:
        with self._lock:
            return len(self._tasks)

    def current_phase_label(self) -> str | None:
        """Phase label of the earliest registered task that has one."""
        with self._lock:
            return self._current_phase_label_locked()

    def _current_phase_label_locked(self) -> str | None:
        for task in self._tasks.values():
            if task.phase_label:
                return task.phase_label
        return None

    # -------------------------------------------------------------- listeners
    def add_listener(self, listener: TaskStateListener) -> None:
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_listener(self, listener: TaskStateListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self) -> None:
        with self._lock:
            count = len(self._tasks)
            label = self._current_phase_label_locked()
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(count > 0, count, label)
            except Exception as error:  # noqa: BLE001 - one faulty listener must not starve the rest
                LOGGER.warning("Task state listener failed: %s", error)


__all__ = ["ManagedTask", "TaskRegistry", "TaskStateListener"]
