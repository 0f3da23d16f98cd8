"""CLI commands for generating tests from a change set and inspecting artifacts."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Optional

import typer

from .agents import ClaudeCodeProvider
from .artifacts import EXECUTION_PREFIX, PERSPECTIVE_PREFIX, latest_artifact, resolve_dir
from .config import (
    DEFAULT_CONFIG_NAME,
    ConfigError,
    Settings,
    copy_config_template,
    load_config,
    write_config,
)
from .events import RunEvent, format_event_line
from .orchestrator import Orchestrator, RunRequest, RunResult
from .sources import NoChangesError, build_generation_prompt, collect_changes, new_task_id
from .tasks import TaskRegistry
from .tools.vcs import GitError, GitRepository

APP_HELP = "Generate tests for a change set with a coding agent and keep every artifact."
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_JOIN_POLL_SECONDS = 0.2

app = typer.Typer(help=APP_HELP)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING, format=LOG_FORMAT)
    # run events are echoed to the terminal already; only mirror them when verbose
    logging.getLogger("dft.events").setLevel(logging.DEBUG if verbose else logging.CRITICAL)


def _load_settings(config_path: Path) -> Settings:
    try:
        return load_config(config_path)
    except ConfigError as error:
        raise typer.BadParameter(str(error), param_hint="--config") from error


def _resolve_repo(workspace: str) -> GitRepository:
    try:
        return GitRepository.discover(Path(workspace))
    except GitError as error:
        typer.echo(f"Error: {error}")
        raise typer.Exit(code=1) from error


def _echo_event(event: RunEvent) -> None:
    typer.echo(format_event_line(event))


def _run_with_interrupts(orchestrator: Orchestrator, registry: TaskRegistry, request: RunRequest) -> RunResult | None:
    """Run on a worker thread so Ctrl-C can cancel through the registry."""

    outcome: dict[str, RunResult | None] = {"result": None}

    def target() -> None:
        outcome["result"] = orchestrator.run(request)

    worker = threading.Thread(target=target, name=f"dft-run-{request.generation_task_id}", daemon=True)
    worker.start()
    while worker.is_alive():
        try:
            worker.join(_JOIN_POLL_SECONDS)
        except KeyboardInterrupt:
            typer.echo("Cancelling; waiting for the current step to stop...")
            registry.cancel(request.generation_task_id)
    return outcome["result"]


def _render_result(result: RunResult) -> None:
    typer.echo("")
    typer.echo(f"Run {result.task_id}: {result.status} (location={result.run_location})")
    if result.error:
        typer.echo(f"Error: {result.error}")
    if result.perspective is not None:
        state = "extracted" if result.perspective.extracted else "extraction failed"
        typer.echo(f"Perspective table ({state}): {result.perspective.saved.display_path}")
    if result.generation_exit_code is not None or result.status == "completed":
        exit_text = "null" if result.generation_exit_code is None else result.generation_exit_code
        typer.echo(f"Generation exit code: {exit_text}")
    if result.merge is not None:
        typer.echo(f"Worktree merge: {result.merge.status}")
        if result.merge.bundle is not None:
            typer.echo(f"  Instructions: {result.merge.bundle.instruction_path}")
    if result.test_result is not None:
        if result.test_result.skipped:
            typer.echo(f"Tests: skipped ({result.test_result.skip_reason})")
        else:
            exit_text = "null" if result.test_result.exit_code is None else result.test_result.exit_code
            typer.echo(f"Tests: exit={exit_text} durationMs={result.test_result.duration_ms}")
    if result.execution_report is not None:
        typer.echo(f"Execution report: {result.execution_report.display_path}")
    for warning in result.warnings:
        typer.echo(f"Warning: {warning}")


@app.command()
def init(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file to create.",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        help="Overwrite an existing configuration file with the defaults.",
    ),
) -> None:
    """Write a default configuration file."""
    config_path = Path(config)
    if config_path.exists() and not force:
        _load_settings(config_path)
        typer.echo(f"Config already exists at {config_path}; leaving it unchanged.")
        return
    write_config(config_path, copy_config_template())
    typer.echo(f"Wrote default configuration to {config_path}.")


@app.command()
def generate(
    source: str = typer.Option(
        "working-tree",
        "--source",
        "-s",
        help="Change set to generate tests for: working-tree, commit or range.",
    ),
    diff_mode: str = typer.Option(
        "both",
        "--diff-mode",
        help="Working-tree changes to include: staged, unstaged or both.",
    ),
    ref: str = typer.Option("HEAD", "--ref", help="Commit to use with --source commit."),
    revision_range: Optional[str] = typer.Option(
        None,
        "--range",
        help="Revision range such as main..HEAD, used with --source range.",
    ),
    location: Optional[str] = typer.Option(
        None,
        "--location",
        help="Where the agent writes: local or worktree (defaults to run.location).",
    ),
    mode: Optional[str] = typer.Option(
        None,
        "--mode",
        help="Run mode: full or perspective-only (defaults to run.mode).",
    ),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model override for the agent."),
    workspace: str = typer.Option(".", "--workspace", "-w", help="Path inside the git workspace."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Generate tests for a change set, run them and save the reports."""
    _configure_logging(verbose)
    if source not in ("working-tree", "commit", "range"):
        raise typer.BadParameter("Expected working-tree, commit or range.", param_hint="--source")
    if diff_mode not in ("staged", "unstaged", "both"):
        raise typer.BadParameter("Expected staged, unstaged or both.", param_hint="--diff-mode")
    if location is not None and location not in ("local", "worktree"):
        raise typer.BadParameter("Expected local or worktree.", param_hint="--location")
    if mode is not None and mode not in ("full", "perspective-only"):
        raise typer.BadParameter("Expected full or perspective-only.", param_hint="--mode")

    settings = _load_settings(Path(config))
    repo = _resolve_repo(workspace)
    try:
        change_set = collect_changes(
            repo,
            source,  # type: ignore[arg-type]
            diff_mode=diff_mode,  # type: ignore[arg-type]
            ref=ref,
            revision_range=revision_range,
        )
    except NoChangesError as error:
        typer.echo(str(error))
        return
    except ValueError as error:
        raise typer.BadParameter(str(error), param_hint="--range") from error
    except GitError as error:
        typer.echo(f"Error: {error}")
        raise typer.Exit(code=1) from error

    run_location = location or settings.run.location
    request = RunRequest(
        generation_task_id=new_task_id(change_set.kind),
        workspace_root=repo.root,
        target_paths=change_set.target_paths,
        generation_prompt=build_generation_prompt(
            change_set,
            pre_test_check_command=settings.tests.pre_check_command,
        ),
        generation_label=change_set.label,
        model=model,
        run_location=run_location,  # type: ignore[arg-type]
        run_mode=(mode or settings.run.mode),  # type: ignore[arg-type]
        storage_dir=settings.storage_root(repo.root),
        perspective_reference_text=change_set.prompt_diff,
    )

    typer.echo(f"Target: {change_set.label} ({len(change_set.target_paths)} file(s))")
    with TaskRegistry() as registry:
        orchestrator = Orchestrator(
            provider=ClaudeCodeProvider(),
            registry=registry,
            settings=settings,
            sink=_echo_event,
        )
        result = _run_with_interrupts(orchestrator, registry, request)

    if result is None:
        typer.echo("Run cancelled.")
        raise typer.Exit(code=130)
    _render_result(result)
    generation_failed = request.run_mode == "full" and result.generation_exit_code != 0
    if not result.ok or generation_failed:
        raise typer.Exit(code=1)


@app.command()
def latest(
    workspace: str = typer.Option(".", "--workspace", "-w", help="Path inside the git workspace."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
) -> None:
    """Show the newest perspective table and test execution report."""
    settings = _load_settings(Path(config))
    root = _resolve_repo(workspace).root
    found = False
    for title, directory, prefix in (
        ("Perspective table", settings.artifacts.perspective_report_dir, PERSPECTIVE_PREFIX),
        ("Execution report", settings.artifacts.test_execution_report_dir, EXECUTION_PREFIX),
    ):
        path = latest_artifact(resolve_dir(root, directory), prefix)
        if path is None:
            typer.echo(f"{title}: (none)")
            continue
        found = True
        typer.echo(f"{title}: {path}")
    if not found:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
