"""Perspective table step: ask the agent for test cases before generating tests."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, List, Literal, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .agents.base import AgentProvider, AgentRunOptions, RunningTask, run_to_completion
from .artifacts import (
    MAX_REPORT_CHARS,
    ReportContext,
    SavedArtifact,
    sanitize_agent_log,
    save_test_perspective_table,
    truncate_text,
)
from .events import EventSink, LogEvent, RunEvent, emit_log_event
from .prompts import (
    PERSPECTIVE_JSON_BEGIN,
    PERSPECTIVE_JSON_END,
    PERSPECTIVE_LEGACY_BEGIN,
    PERSPECTIVE_LEGACY_END,
    extract_between_markers,
    render_perspective_prompt,
)

TABLE_HEADER = "| Case ID | Input / Precondition | Perspective (Equivalence / Boundary) | Expected Result | Notes |"
TABLE_SEPARATOR = "|---|---|---|---|---|"
EXTRACTION_FAILURE_CASE_ID = "TC-E-EXTRACT-01"

_TABLE_PIPE_COUNT = 6
_HEADER_KEYWORDS = ("Case ID", "Input", "Expected", "Notes")
_SEPARATOR_RE = re.compile(r"^\|(?:\s*:?-+:?\s*\|)+$")


class PerspectiveCase(BaseModel):
    """One row of the perspective table."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    case_id: str = Field(default="", alias="caseId")
    input_precondition: str = Field(default="", alias="inputPrecondition")
    perspective: str = ""
    expected_result: str = Field(default="", alias="expectedResult")
    notes: str = ""


class PerspectiveDocument(BaseModel):
    model_config = ConfigDict(extra="ignore")

    version: Literal[1]
    cases: List[PerspectiveCase] = Field(default_factory=list)


@dataclass(frozen=True, slots=True)
class PerspectiveStepResult:
    """Saved artifact plus the table to inject into the generation prompt.

    ``markdown`` is only meant for the prompt when ``extracted`` is True;
    otherwise it holds the failure table written to the artifact.
    """

    saved: SavedArtifact
    markdown: str
    extracted: bool


def parse_perspective_json(text: str) -> PerspectiveDocument:
    """Validate a version 1 perspective document; raises ``ValueError`` when invalid."""
    if not text.strip():
        raise ValueError("empty")
    try:
        return PerspectiveDocument.model_validate(json.loads(text))
    except json.JSONDecodeError as error:
        raise ValueError(f"invalid JSON: {error.msg}") from error
    except ValidationError as error:
        raise ValueError(f"invalid document: {error.error_count()} validation error(s)") from error


def _cell(value: str) -> str:
    return " ".join(value.replace("\r\n", "\n").split("\n")).replace("|", "\\|").strip()


def render_perspective_table(cases: Iterable[PerspectiveCase]) -> str:
    rows = [
        "| "
        + " | ".join(
            _cell(value)
            for value in (case.case_id, case.input_precondition, case.perspective, case.expected_result, case.notes)
        )
        + " |"
        for case in cases
    ]
    return "\n".join([TABLE_HEADER, TABLE_SEPARATOR, *rows]) + "\n"


def _is_header(line: str) -> bool:
    trimmed = line.strip()
    if trimmed == TABLE_HEADER:
        return True
    if trimmed.count("|") != _TABLE_PIPE_COUNT:
        return False
    return any(keyword in trimmed for keyword in _HEADER_KEYWORDS)


def _is_separator(line: str) -> bool:
    trimmed = line.strip()
    return bool(_SEPARATOR_RE.match(trimmed)) and trimmed.count("|") == _TABLE_PIPE_COUNT


def coerce_legacy_table(markdown: str) -> str | None:
    """Normalise a free-form five-column Markdown table, or return ``None``.

    The first header-looking line must be followed by a separator. Body rows
    are the consecutive ``|`` lines after it; the header and separator are
    replaced by the canonical ones.
    """

    lines = markdown.replace("\r\n", "\n").split("\n")
    header_index = next((index for index, line in enumerate(lines) if _is_header(line)), None)
    if header_index is None or header_index + 1 >= len(lines):
        return None
    if not _is_separator(lines[header_index + 1]):
        return None
    body: List[str] = []
    for line in lines[header_index + 2 :]:
        if not line.strip().startswith("|"):
            break
        body.append(line.rstrip())
    return "\n".join([TABLE_HEADER, TABLE_SEPARATOR, *body]) + "\n"


def build_failure_table(reason: str, raw_log: str) -> str:
    """A one-row table naming the failure, followed by the collapsed raw log."""
    table = render_perspective_table([PerspectiveCase(case_id=EXTRACTION_FAILURE_CASE_ID, notes=reason)])
    log_text = sanitize_agent_log(raw_log.strip() or "(the log was empty)")
    details = "\n".join(
        [
            "<details>",
            "<summary>Extraction log</summary>",
            "",
            "```text",
            truncate_text(log_text, MAX_REPORT_CHARS),
            "```",
            "",
            "</details>",
            "",
        ]
    )
    return f"{table}\n{details}".rstrip()


def extract_perspective_table(raw: str, exit_code: int | None) -> tuple[str, bool]:
    """Return ``(markdown, extracted)`` for the agent's collected log text."""
    json_block = extract_between_markers(raw, PERSPECTIVE_JSON_BEGIN, PERSPECTIVE_JSON_END)
    if json_block:
        try:
            document = parse_perspective_json(json_block)
        except ValueError as error:
            return build_failure_table(f"Failed to parse the perspective JSON: {error}", raw), False
        if not document.cases:
            return build_failure_table("The perspective JSON had no cases.", raw), False
        return render_perspective_table(document.cases).rstrip(), True

    legacy_block = extract_between_markers(raw, PERSPECTIVE_LEGACY_BEGIN, PERSPECTIVE_LEGACY_END)
    if legacy_block:
        normalized = coerce_legacy_table(legacy_block)
        if normalized is None:
            return build_failure_table("Could not extract the legacy Markdown perspective table.", raw), False
        return normalized.rstrip(), True

    exit_text = "null" if exit_code is None else str(exit_code)
    return build_failure_table(f"Perspective table extraction failed: provider exit={exit_text}", raw), False


def run_perspective_step(
    provider: AgentProvider,
    *,
    base_task_id: str,
    run_workspace_root: Path,
    artifact_workspace_root: Path,
    label: str,
    target_paths: Sequence[str],
    report_dir: str,
    on_event: EventSink,
    reference_text: str = "",
    agent_command: str | None = None,
    model: str | None = None,
    timeout: float | None = None,
    timestamp: str | None = None,
    on_running_task: Callable[[RunningTask], None] | None = None,
) -> PerspectiveStepResult:
    """Run the read-only perspective request and persist whatever came back."""

    task_id = f"{base_task_id}-perspectives"
    logs: List[str] = []

    def collect(event: RunEvent) -> None:
        on_event(event)
        if isinstance(event, LogEvent):
            logs.append(event.message)

    exit_code = run_to_completion(
        provider,
        AgentRunOptions(
            task_id=task_id,
            workspace_root=run_workspace_root,
            prompt=render_perspective_prompt(label=label, target_paths=target_paths, reference_text=reference_text),
            agent_command=agent_command,
            model=model,
            output_format="stream-json",
            allow_write=False,
        ),
        on_event=collect,
        on_running_task=on_running_task,
        timeout=timeout,
    )

    markdown, extracted = extract_perspective_table("\n".join(logs), exit_code)
    saved = save_test_perspective_table(
        artifact_workspace_root,
        report_dir,
        ReportContext(label=label, target_paths=tuple(target_paths), model=model),
        markdown,
        timestamp=timestamp,
    )
    level = "info" if extracted else "warn"
    on_event(emit_log_event(task_id, level, f"Saved the test perspective table: {saved.display_path}"))
    return PerspectiveStepResult(saved=saved, markdown=markdown, extracted=extracted)


__all__ = [
    "EXTRACTION_FAILURE_CASE_ID",
    "PerspectiveCase",
    "PerspectiveDocument",
    "PerspectiveStepResult",
    "TABLE_HEADER",
    "TABLE_SEPARATOR",
    "build_failure_table",
    "coerce_legacy_table",
    "extract_perspective_table",
    "parse_perspective_json",
    "render_perspective_table",
    "run_perspective_step",
]
