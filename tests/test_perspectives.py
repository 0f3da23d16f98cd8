from __future__ import annotations

import json
from pathlib import Path
from typing import List

import pytest

from dft.events import LogEvent, RunEvent
from dft.perspectives import (
    EXTRACTION_FAILURE_CASE_ID,
    TABLE_HEADER,
    TABLE_SEPARATOR,
    PerspectiveCase,
    coerce_legacy_table,
    extract_perspective_table,
    parse_perspective_json,
    render_perspective_table,
    run_perspective_step,
)
from dft.prompts import PERSPECTIVE_JSON_BEGIN, PERSPECTIVE_JSON_END, PERSPECTIVE_LEGACY_BEGIN, PERSPECTIVE_LEGACY_END


def _json_block(payload: object) -> str:
    return f"{PERSPECTIVE_JSON_BEGIN}\n{json.dumps(payload)}\n{PERSPECTIVE_JSON_END}"


CASE = {
    "caseId": "TC-N-01",
    "inputPrecondition": "a = 1",
    "perspective": "Equivalence - normal",
    "expectedResult": "returns 1",
    "notes": "-",
}


def test_render_escapes_pipes_and_newlines() -> None:
    table = render_perspective_table([PerspectiveCase(case_id="TC-1", notes="a|b\nc")])

    lines = table.splitlines()
    assert lines[0] == TABLE_HEADER
    assert lines[1] == TABLE_SEPARATOR
    assert lines[2] == "| TC-1 |  |  |  | a\\|b c |"
    assert table.endswith("\n")


def test_parse_perspective_json_errors() -> None:
    with pytest.raises(ValueError, match="empty"):
        parse_perspective_json("  ")
    with pytest.raises(ValueError, match="invalid JSON"):
        parse_perspective_json("{not json")
    with pytest.raises(ValueError, match="invalid document"):
        parse_perspective_json('{"version": 2, "cases": []}')


def test_extract_prefers_json_block() -> None:
    raw = "chatter\n" + _json_block({"version": 1, "cases": [CASE]}) + "\ntrailing"

    markdown, extracted = extract_perspective_table(raw, 0)

    assert extracted
    assert markdown.splitlines()[0] == TABLE_HEADER
    assert "| TC-N-01 | a = 1 | Equivalence - normal | returns 1 | - |" in markdown


def test_extract_reports_empty_case_list() -> None:
    markdown, extracted = extract_perspective_table(_json_block({"version": 1, "cases": []}), 0)

    assert not extracted
    assert EXTRACTION_FAILURE_CASE_ID in markdown
    assert "no cases" in markdown
    assert "<details>" in markdown


def test_extract_reports_unparseable_json() -> None:
    raw = f"{PERSPECTIVE_JSON_BEGIN}\n{{broken\n{PERSPECTIVE_JSON_END}"

    markdown, extracted = extract_perspective_table(raw, 0)

    assert not extracted
    assert "Failed to parse the perspective JSON" in markdown


def test_extract_accepts_legacy_markdown_table() -> None:
    legacy = "\n".join(
        [
            PERSPECTIVE_LEGACY_BEGIN,
            "| Case ID | Input | Perspective | Expected | Notes |",
            "| :--- | --- | --- | --- | ---: |",
            "| TC-1 | x | boundary | ok | - |",
            "| TC-2 | y | error | throws | - |",
            "",
            "summary text",
            PERSPECTIVE_LEGACY_END,
        ]
    )

    markdown, extracted = extract_perspective_table(legacy, 0)

    assert extracted
    assert markdown.splitlines() == [
        TABLE_HEADER,
        TABLE_SEPARATOR,
        "| TC-1 | x | boundary | ok | - |",
        "| TC-2 | y | error | throws | - |",
    ]


def test_coerce_legacy_table_requires_separator() -> None:
    assert coerce_legacy_table("| Case ID | Input | P | Expected | Notes |\n| TC-1 | x | y | z | - |") is None
    assert coerce_legacy_table("no table here") is None


def test_extract_without_markers_mentions_exit_code() -> None:
    markdown, extracted = extract_perspective_table("the agent said nothing useful", None)

    assert not extracted
    assert "provider exit=null" in markdown
    assert "the agent said nothing useful" in markdown


def test_run_perspective_step_saves_table(tmp_path: Path, fake_provider) -> None:
    fake_provider.script("-perspectives", messages=[_json_block({"version": 1, "cases": [CASE]})])
    events: List[RunEvent] = []

    result = run_perspective_step(
        fake_provider,
        base_task_id="fromCommit-1",
        run_workspace_root=tmp_path,
        artifact_workspace_root=tmp_path,
        label="commit abc1234",
        target_paths=["src/a.ts"],
        report_dir="docs/test-perspectives",
        on_event=events.append,
        reference_text="diff --git a/src/a.ts b/src/a.ts",
        timestamp="20250101_000000",
    )

    assert result.extracted
    assert result.saved.relative_path == "docs/test-perspectives/test-perspectives_20250101_000000.md"
    assert "TC-N-01" in result.saved.absolute_path.read_text(encoding="utf-8")
    (options,) = fake_provider.calls
    assert options.task_id == "fromCommit-1-perspectives"
    assert options.allow_write is False
    assert "diff --git a/src/a.ts" in options.prompt
    saved_logs = [event for event in events if isinstance(event, LogEvent) and "Saved the test perspective" in event.message]
    assert saved_logs and saved_logs[0].level == "info"


def test_run_perspective_step_saves_failure_table(tmp_path: Path, fake_provider) -> None:
    fake_provider.script("-perspectives", messages=["I refuse"], exit_code=1)
    events: List[RunEvent] = []

    result = run_perspective_step(
        fake_provider,
        base_task_id="t",
        run_workspace_root=tmp_path,
        artifact_workspace_root=tmp_path,
        label="x",
        target_paths=[],
        report_dir="out",
        on_event=events.append,
        timestamp="20250101_000000",
    )

    assert not result.extracted
    content = result.saved.absolute_path.read_text(encoding="utf-8")
    assert EXTRACTION_FAILURE_CASE_ID in content
    assert "provider exit=1" in content
    assert "I refuse" in content
    assert isinstance(events[-1], LogEvent) and events[-1].level == "warn"
