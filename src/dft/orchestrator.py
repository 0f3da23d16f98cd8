"""Run orchestration: perspectives, generation, worktree merge and test execution."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, List, Literal

from .agents.base import AgentProvider, AgentRunOptions, RunningTask, run_to_completion
from .artifacts import (
    ReportContext,
    SavedArtifact,
    TestExecutionResult,
    format_timestamp,
    sanitize_agent_log,
    save_test_execution_report,
)
from .config import Settings
from .events import (
    PHASE_LABELS,
    CompletedEvent,
    EventSink,
    LogEvent,
    LogLevel,
    RunEvent,
    RunPhase,
    StartedEvent,
    emit_log_event,
    format_event_line,
    log_event,
    now_ms,
    phase_event,
)
from .perspectives import PerspectiveStepResult, run_perspective_step
from .prompts import append_perspective_to_prompt
from .tasks import TaskRegistry
from .tools.hygiene import cleanup_unexpected_perspective_files
from .tools.merge import MergeOutcome, apply_worktree_test_changes
from .tools.test_runner import execute_tests, run_test_command
from .tools.worktree import WorktreeError, create_temporary_worktree, remove_temporary_worktree

LOGGER = logging.getLogger(__name__)

RunLocation = Literal["local", "worktree"]
RunMode = Literal["full", "perspective-only"]
RunStatus = Literal["completed", "aborted", "failed"]

CreateWorktree = Callable[[Path, Path, str, str], Path]
RemoveWorktree = Callable[[Path, Path], None]


@dataclass(frozen=True, slots=True)
class RunRequest:
    """Everything needed to run one generation; immutable for the run's lifetime.

    ``storage_dir`` is the durable per-workspace storage base. It is required
    when the effective location is ``worktree``.
    """

    generation_task_id: str
    workspace_root: Path
    target_paths: tuple[str, ...]
    generation_prompt: str
    generation_label: str
    model: str | None = None
    run_location: RunLocation = "local"
    run_mode: RunMode = "full"
    storage_dir: Path | None = None
    perspective_reference_text: str = ""

    @property
    def effective_location(self) -> RunLocation:
        # perspective-only runs never write code, so they never need isolation
        return "local" if self.run_mode == "perspective-only" else self.run_location


@dataclass(slots=True)
class RunState:
    """Mutable state owned by a single :meth:`Orchestrator.run` call."""

    run_workspace_root: Path
    phase: RunPhase = RunPhase.PREPARING
    isolated_root: Path | None = None
    cancelled: bool = False
    torn_down: bool = False


@dataclass(slots=True)
class RunResult:
    task_id: str
    status: RunStatus
    run_location: RunLocation
    generation_exit_code: int | None = None
    perspective: PerspectiveStepResult | None = None
    merge: MergeOutcome | None = None
    test_result: TestExecutionResult | None = None
    execution_report: SavedArtifact | None = None
    error: str | None = None
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == "completed" and self.error is None


class Orchestrator:
    """Drives a :class:`RunRequest` through its phases.

    The phase order is fixed: preparing, perspectives (optional), generating,
    running-tests, completed. Cancellation is checked at every boundary; a
    cancelled run returns ``None``. Worktree removal and registry
    unregistration happen exactly once per run, whatever the outcome.
    """

    def __init__(
        self,
        *,
        provider: AgentProvider,
        registry: TaskRegistry,
        settings: Settings,
        sink: EventSink | None = None,
        create_worktree: CreateWorktree = create_temporary_worktree,
        remove_worktree: RemoveWorktree = remove_temporary_worktree,
    ) -> None:
        self._provider = provider
        self._registry = registry
        self._settings = settings
        self._sink = sink
        self._create_worktree = create_worktree
        self._remove_worktree = remove_worktree

    # ------------------------------------------------------------------ public
    def run(self, request: RunRequest) -> RunResult | None:
        task_id = request.generation_task_id
        location = request.effective_location
        state = RunState(run_workspace_root=request.workspace_root)

        self._emit(
            StartedEvent(
                task_id=task_id,
                label=request.generation_label,
                detail=", ".join(request.target_paths) or None,
                timestamp_ms=now_ms(),
            )
        )
        self._registry.register(task_id, request.generation_label, RunningTask(task_id=task_id, dispose=lambda: None))
        if location != request.run_location:
            self._log(task_id, "info", "Perspective-only runs always use the local workspace; ignoring worktree.")

        result: RunResult | None = None
        try:
            result = self._run_phases(request, state, location)
        except Exception as error:  # noqa: BLE001 - the run must still report and tear down
            LOGGER.exception("Run %s failed unexpectedly", task_id)
            self._log(task_id, "error", f"The run failed unexpectedly: {error}")
            result = RunResult(task_id=task_id, status="failed", run_location=location, error=str(error))
        finally:
            self._teardown(request, state)

        exit_code = None if result is None else result.generation_exit_code
        self._emit(CompletedEvent(task_id=task_id, exit_code=exit_code, timestamp_ms=now_ms()))
        return result

    # ------------------------------------------------------------------ phases
    def _run_phases(self, request: RunRequest, state: RunState, location: RunLocation) -> RunResult | None:
        task_id = request.generation_task_id
        timestamp = format_timestamp()
        result = RunResult(task_id=task_id, status="completed", run_location=location)

        if self._cancelled(task_id, state):
            return None
        self._enter(task_id, state, RunPhase.PREPARING)
        if location == "worktree":
            error = self._prepare_isolation(request, state)
            if error is not None:
                result.status = "aborted"
                result.error = error
                return result

        if self._cancelled(task_id, state):
            return None
        perspective_only = request.run_mode == "perspective-only"
        if perspective_only or self._settings.artifacts.include_perspective_table:
            self._enter(task_id, state, RunPhase.PERSPECTIVES)
            result.perspective = self._generate_perspectives(request, state, timestamp)
            if not result.perspective.extracted:
                result.warnings.append("Perspective table extraction failed; the raw log was saved instead.")
        if perspective_only:
            return result

        if self._cancelled(task_id, state):
            return None
        self._enter(task_id, state, RunPhase.GENERATING)
        result.generation_exit_code = self._generate_tests(request, state, result)

        if self._cancelled(task_id, state):
            return None
        if state.isolated_root is not None and request.storage_dir is not None:
            result.merge = apply_worktree_test_changes(
                task_id=task_id,
                generation_exit_code=result.generation_exit_code,
                local_root=request.workspace_root,
                isolated_root=state.isolated_root,
                storage_dir=request.storage_dir,
                on_event=self._emit,
                pre_test_check_command=self._settings.tests.pre_check_command,
            )
            if result.merge.bundle is not None:
                result.warnings.append(f"Manual merge required: {result.merge.bundle.instruction_path}")

        self._enter(task_id, state, RunPhase.RUNNING_TESTS)
        result.test_result, result.execution_report = self._run_tests(request, state, location, timestamp)
        return result

    def _prepare_isolation(self, request: RunRequest, state: RunState) -> str | None:
        task_id = request.generation_task_id
        if request.storage_dir is None:
            message = "A storage directory is required for worktree runs; aborting."
            self._log(task_id, "error", message)
            return message
        try:
            request.storage_dir.mkdir(parents=True, exist_ok=True)
            self._log(task_id, "info", "Creating a temporary worktree...")
            isolated = self._create_worktree(request.workspace_root, request.storage_dir, task_id, "HEAD")
        except (WorktreeError, OSError) as error:
            message = f"Failed to create the temporary worktree: {error}"
            self._log(task_id, "error", message)
            return message
        state.isolated_root = isolated
        state.run_workspace_root = isolated
        self._log(task_id, "info", f"Created the temporary worktree: {isolated}")
        return None

    def _generate_perspectives(self, request: RunRequest, state: RunState, timestamp: str) -> PerspectiveStepResult:
        task_id = request.generation_task_id
        return run_perspective_step(
            self._provider,
            base_task_id=task_id,
            run_workspace_root=state.run_workspace_root,
            artifact_workspace_root=request.workspace_root,
            label=request.generation_label,
            target_paths=request.target_paths,
            report_dir=self._settings.artifacts.perspective_report_dir,
            on_event=self._emit,
            reference_text=request.perspective_reference_text,
            agent_command=self._settings.agent.command,
            model=self._model(request),
            timeout=Settings.timeout_or_none(self._settings.artifacts.perspective_timeout_seconds),
            timestamp=timestamp,
            on_running_task=self._handle_updater(task_id),
        )

    def _generate_tests(self, request: RunRequest, state: RunState, result: RunResult) -> int | None:
        task_id = request.generation_task_id
        prompt = request.generation_prompt
        if result.perspective is not None and result.perspective.extracted:
            prompt = append_perspective_to_prompt(prompt, result.perspective.markdown)

        exit_code = run_to_completion(
            self._provider,
            AgentRunOptions(
                task_id=f"{task_id}-generate",
                workspace_root=state.run_workspace_root,
                prompt=prompt,
                agent_command=self._settings.agent.command,
                model=self._model(request),
                output_format="stream-json",
                allow_write=True,
            ),
            on_event=self._emit,
            on_running_task=self._handle_updater(task_id),
            timeout=Settings.timeout_or_none(self._settings.agent.timeout_seconds),
        )

        cleanup = cleanup_unexpected_perspective_files(request.workspace_root)
        for message in (*cleanup.warnings, *cleanup.errors):
            self._log(f"{task_id}-guard", "warn", message)
            result.warnings.append(message)

        exit_text = "null" if exit_code is None else str(exit_code)
        if exit_code == 0:
            self._log(task_id, "info", f"Test generation finished: {request.generation_label}")
        else:
            self._log(task_id, "error", f"Test generation failed: {request.generation_label} (exit={exit_text})")
        return exit_code

    def _run_tests(
        self,
        request: RunRequest,
        state: RunState,
        location: RunLocation,
        timestamp: str,
    ) -> tuple[TestExecutionResult, SavedArtifact]:
        task_id = request.generation_task_id
        test_task_id = f"{task_id}-test"
        settings = self._settings
        command = settings.tests.command.strip()
        log_lines: List[str] = []

        def capture(event: RunEvent) -> None:
            self._emit(event)
            line = _report_line(event)
            if line:
                log_lines.append(line)

        skip_reason = self._skip_reason(location, command, state, test_task_id, capture)
        if skip_reason is not None:
            capture(StartedEvent(task_id=test_task_id, label="test-command", detail="skipped", timestamp_ms=now_ms()))
            capture(emit_log_event(test_task_id, "warn", skip_reason))
            capture(CompletedEvent(task_id=test_task_id, exit_code=None, timestamp_ms=now_ms()))
            outcome = TestExecutionResult(
                command=command,
                cwd=str(state.run_workspace_root),
                exit_code=None,
                signal=None,
                duration_ms=0,
                stdout="",
                stderr="",
                skipped=True,
                skip_reason=skip_reason,
            )
        else:
            outcome = execute_tests(
                runner=settings.tests.runner,
                command=command,
                cwd=state.run_workspace_root,
                task_id=task_id,
                on_event=capture,
                provider=self._provider,
                agent_command=settings.agent.command,
                model=self._model(request),
                allow_write=settings.agent.force_for_test_execution,
                timeout=Settings.timeout_or_none(settings.agent.timeout_seconds),
                on_running_task=self._handle_updater(task_id),
            )

        outcome = replace(outcome, extension_log="\n".join(log_lines))
        saved = save_test_execution_report(
            request.workspace_root,
            settings.artifacts.test_execution_report_dir,
            ReportContext(label=request.generation_label, target_paths=request.target_paths, model=self._model(request)),
            outcome,
            timestamp=timestamp,
        )
        self._log(test_task_id, "info", f"Saved the test execution report: {saved.display_path}")
        return outcome, saved

    def _skip_reason(
        self,
        location: RunLocation,
        command: str,
        state: RunState,
        test_task_id: str,
        capture: EventSink,
    ) -> str | None:
        if location == "worktree":
            return "Test execution is skipped for worktree runs; run the tests after the merge."
        if not command:
            return "Test execution is skipped because no test command is configured (tests.command)."
        pre_check = self._settings.tests.pre_check_command.strip()
        if not pre_check:
            return None
        check = run_test_command(pre_check, state.run_workspace_root)
        if check.ok:
            capture(emit_log_event(test_task_id, "info", f"Pre-test check passed: {pre_check}"))
            return None
        exit_text = "null" if check.exit_code is None else str(check.exit_code)
        detail = (check.error_message or check.stderr or check.stdout).strip()
        reason = f"Test execution is skipped because the pre-test check failed (exit={exit_text}): {pre_check}"
        return f"{reason}\n{detail}" if detail else reason

    # ---------------------------------------------------------------- teardown
    def _teardown(self, request: RunRequest, state: RunState) -> None:
        if state.torn_down:
            return
        state.torn_down = True
        task_id = request.generation_task_id
        try:
            if state.isolated_root is not None:
                try:
                    self._remove_worktree(request.workspace_root, state.isolated_root)
                except (WorktreeError, OSError) as error:
                    self._log(task_id, "warn", f"Failed to remove the temporary worktree {state.isolated_root}: {error}")
                else:
                    self._log(task_id, "info", f"Removed the temporary worktree: {state.isolated_root}")
                state.isolated_root = None
                state.run_workspace_root = request.workspace_root
            state.phase = RunPhase.COMPLETED
            self._emit(phase_event(task_id, RunPhase.COMPLETED))
        finally:
            self._registry.unregister(task_id)

    # ----------------------------------------------------------------- helpers
    def _cancelled(self, task_id: str, state: RunState) -> bool:
        if self._registry.is_cancelled(task_id):
            state.cancelled = True
            self._log(task_id, "warn", "The run was cancelled.")
            return True
        return False

    def _enter(self, task_id: str, state: RunState, phase: RunPhase) -> None:
        state.phase = phase
        self._registry.update_phase(task_id, phase, PHASE_LABELS[phase])
        self._emit(phase_event(task_id, phase))

    def _handle_updater(self, task_id: str) -> Callable[[RunningTask], None]:
        def update(handle: RunningTask) -> None:
            self._registry.update_handle(task_id, handle)

        return update

    def _model(self, request: RunRequest) -> str | None:
        return request.model or self._settings.agent.model

    def _log(self, task_id: str, level: LogLevel, message: str) -> None:
        self._emit(emit_log_event(task_id, level, message))

    def _emit(self, event: RunEvent) -> None:
        log_event(event)
        if self._sink is None:
            return
        try:
            self._sink(event)
        except Exception as error:  # noqa: BLE001 - a broken front end must not derail the run
            LOGGER.warning("Event sink failed for task %s: %s", event.task_id, error)


def _report_line(event: RunEvent) -> str | None:
    """Format ``event`` for the execution report; blank log messages are dropped."""
    if isinstance(event, LogEvent):
        message = sanitize_agent_log(event.message)
        if not message:
            return None
        event = replace(event, message=message)
    return format_event_line(event)


__all__ = [
    "Orchestrator",
    "RunLocation",
    "RunMode",
    "RunRequest",
    "RunResult",
    "RunState",
    "RunStatus",
]
