"""Prompt templates handed to the coding agent."""

from __future__ import annotations

from pathlib import Path
from typing import Sequence

PERSPECTIVE_JSON_BEGIN = "<!-- BEGIN TEST PERSPECTIVES JSON -->"
PERSPECTIVE_JSON_END = "<!-- END TEST PERSPECTIVES JSON -->"
PERSPECTIVE_LEGACY_BEGIN = "<!-- BEGIN TEST PERSPECTIVES -->"
PERSPECTIVE_LEGACY_END = "<!-- END TEST PERSPECTIVES -->"

EXECUTION_JSON_BEGIN = "<!-- BEGIN TEST EXECUTION JSON -->"
EXECUTION_JSON_END = "<!-- END TEST EXECUTION JSON -->"

MAX_PROMPT_DIFF_CHARS = 20_000


def _bullets(items: Sequence[str], *, empty: str = "- (none)") -> str:
    body = "\n".join(f"- {item}" for item in items)
    return body or empty


def truncate_for_prompt(text: str, max_chars: int = MAX_PROMPT_DIFF_CHARS) -> str:
    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}\n\n... (truncated: {len(text)} chars -> {max_chars} chars)"


def extract_between_markers(text: str, begin: str, end: str) -> str | None:
    """Return the stripped text between the first ``begin`` and the next ``end``.

    ``None`` means the pair is missing or encloses nothing.
    """
    start = text.find(begin)
    if start < 0:
        return None
    start += len(begin)
    stop = text.find(end, start)
    if stop < 0:
        return None
    body = text[start:stop].strip()
    return body or None


def render_generation_prompt(
    *,
    label: str,
    target_paths: Sequence[str],
    diff_text: str,
    pre_test_check_command: str = "",
) -> str:
    """Build the test-generation instruction for a change set."""
    lines = [
        "You are a software engineer. Add or update unit tests for the target below.",
        "",
        "## Target",
        f"- Run type: {label}",
        "- Target files:",
        _bullets(target_paths),
        "",
        "## Required execution flow",
    ]
    check = pre_test_check_command.strip()
    if check:
        lines += [
            "1. Add or update test code.",
            "2. Run the following check and fix test code until it passes (at most 3 attempts):",
            "   ```bash",
            f"   {check}",
            "   ```",
            "3. Stop when the check passes or the attempts are exhausted.",
        ]
    else:
        lines.append("- Add or update test code. Test execution is handled by the caller afterwards.")
    lines += [
        "",
        "## Constraints",
        "- Do NOT run the test suite yourself.",
        "- Do NOT start debugging, watch mode, or any interactive session.",
        "- Do NOT modify production code; only add or update test code.",
        "- Do NOT create or edit documentation or Markdown files (`docs/**`, `README.md`, `*.md`).",
        "- Do NOT create helper files at the workspace root (for example `test_perspectives.md`).",
        "- If production changes seem necessary, report the reason and stop.",
        "- Finish with a short summary of the tests you added and any known limitations.",
        "",
        "## Changes under test",
        truncate_for_prompt(diff_text.strip()) or "(empty diff)",
    ]
    return "\n".join(lines)


def append_perspective_to_prompt(prompt: str, perspective_markdown: str) -> str:
    """Attach an extracted perspective table so generation covers every case."""
    table = perspective_markdown.strip()
    if not table:
        return prompt
    return "\n".join(
        [
            prompt,
            "",
            "## Test perspectives (required)",
            "Implement a test for every case in the following table.",
            "",
            table,
        ]
    )


def render_perspective_prompt(
    *,
    label: str,
    target_paths: Sequence[str],
    reference_text: str = "",
) -> str:
    """Ask for a JSON perspective table only, wrapped in extraction markers."""
    lines = [
        "You are a software engineer.",
        "Create only a test perspective table for the target below.",
        "Do NOT generate test code, do NOT edit files, and do NOT output any additional explanation.",
        "",
        "## Target",
        f"- Run type: {label}",
        "- Target files:",
        _bullets(target_paths),
        "",
        "## Output requirements",
        "- Output JSON only, wrapped in these marker lines:",
        f"  - {PERSPECTIVE_JSON_BEGIN}",
        f"  - {PERSPECTIVE_JSON_END}",
        '- Root: `{ "version": 1, "cases": PerspectiveCase[] }`',
        '- `PerspectiveCase`: `{ "caseId": string, "inputPrecondition": string, "perspective": string, '
        '"expectedResult": string, "notes": string }`',
        "- Keep each field on a single line.",
        "- Cover normal, error and boundary cases (0, min, max, +/-1, empty, null).",
        "- Include at least as many failure cases as success cases.",
        "- One case per branch; expected results must be concrete and observable.",
        "",
        "## Tooling constraints",
        "- Do NOT run shell commands or launch external processes.",
        "- Do NOT edit or add files.",
    ]
    reference = reference_text.strip()
    if reference:
        lines += [
            "",
            "## Reference (diff / additional context)",
            truncate_for_prompt(reference),
        ]
    lines += [
        "",
        "## Output format",
        PERSPECTIVE_JSON_BEGIN,
        '{"version": 1, "cases": [{"caseId": "TC-N-01", "inputPrecondition": "...", '
        '"perspective": "Equivalence - normal", "expectedResult": "...", "notes": "-"}]}',
        PERSPECTIVE_JSON_END,
    ]
    return "\n".join(lines)


def render_test_execution_prompt(*, command: str, cwd: Path) -> str:
    """Ask the agent to run ``command`` exactly once and report a JSON result."""
    return "\n".join(
        [
            "You are a test runner. Execute the command below exactly once and report the result.",
            "",
            "## Rules",
            "- Read-only: do NOT create, edit or delete any file.",
            "- Run the command exactly once; do NOT retry or run anything else.",
            "- Do NOT start debugging, watch mode, or any interactive session.",
            "",
            "## Command",
            f"- cwd: {cwd.as_posix()}",
            "```bash",
            command,
            "```",
            "",
            "## Output format",
            "Output only the JSON below between the marker lines, with stdout and stderr verbatim.",
            EXECUTION_JSON_BEGIN,
            '{"version": 1, "exitCode": 0, "signal": null, "durationMs": 0, "stdout": "", "stderr": ""}',
            EXECUTION_JSON_END,
        ]
    )


def render_merge_assistance_prompt(
    *,
    task_id: str,
    apply_check_output: str,
    patch_path: Path,
    snapshot_dir: Path,
    test_paths: Sequence[str],
    pre_test_check_command: str = "",
) -> str:
    """Prompt a human can paste into an agent to finish a conflicted merge."""
    apply_log = apply_check_output.strip() or "(none)"
    check = pre_test_check_command.strip()
    step3 = "3. Run the type check / lint and fix only test code on errors (at most 3 attempts)"
    if check:
        step3 = f"{step3}: {check}"
    return "\n".join(
        [
            "Merge the test changes generated in an isolated worktree into the current workspace by hand.",
            "The automatic `git apply --check` failed, so conflicts need to be resolved.",
            "",
            "## Note",
            "The temporary worktree has probably been removed already. The patch and snapshots below are enough.",
            "",
            "## Background",
            f"- taskId: {task_id}",
            "",
            "## Failure log (git apply --check)",
            apply_log,
            "",
            "## Inputs",
            f"- Patch file: {patch_path}",
            f"- Snapshot of generated tests (final content): {snapshot_dir}",
            "- Changed files (tests only):",
            _bullets(test_paths),
            "",
            "## Constraints",
            "- Only test code may change (for example `tests/**`, `**/*.test.ts`, `**/__tests__/**`).",
            "- Do not create or edit `docs/**` or `*.md` files.",
            "- Do not edit production code.",
            "- Do not edit configuration files (`pyproject.toml`, `package.json`, `tsconfig.json`, ...).",
            "",
            "## Steps",
            "1. Read the patch to understand the intended test changes.",
            "2. Compare with the local files, resolve the conflicts and apply the tests.",
            step3,
            "4. Briefly summarise which tests were added or updated.",
        ]
    )


def render_merge_instructions(prompt: str) -> str:
    return "\n".join(
        [
            "# Manual merge assistance",
            "",
            "Automatic application failed. Paste the prompt below into an agent to finish the merge.",
            "",
            "```text",
            prompt,
            "```",
            "",
        ]
    )


__all__ = [
    "EXECUTION_JSON_BEGIN",
    "EXECUTION_JSON_END",
    "MAX_PROMPT_DIFF_CHARS",
    "PERSPECTIVE_JSON_BEGIN",
    "PERSPECTIVE_JSON_END",
    "PERSPECTIVE_LEGACY_BEGIN",
    "PERSPECTIVE_LEGACY_END",
    "append_perspective_to_prompt",
    "extract_between_markers",
    "render_generation_prompt",
    "render_merge_assistance_prompt",
    "render_merge_instructions",
    "render_perspective_prompt",
    "render_test_execution_prompt",
    "truncate_for_prompt",
]
