from __future__ import annotations

import subprocess
import textwrap
from pathlib import Path

from dft.tools.diff_analyzer import analyze_unified_diff, extract_changed_paths
from dft.tools.vcs import GitRepository


def _diff(text: str) -> str:
    return textwrap.dedent(text).lstrip()


def test_empty_diff_yields_no_changes() -> None:
    analysis = analyze_unified_diff("")

    assert len(analysis) == 0
    assert extract_changed_paths(analysis) == []


def test_added_modified_and_deleted_sections() -> None:
    diff = _diff(
        """
        diff --git a/src/a.ts b/src/a.ts
        index 1111111..2222222 100644
        --- a/src/a.ts
        +++ b/src/a.ts
        @@ -1 +1 @@
        -export const a = 1;
        +export const a = 2;
        diff --git a/src/new.ts b/src/new.ts
        new file mode 100644
        index 0000000..3333333
        --- /dev/null
        +++ b/src/new.ts
        @@ -0,0 +1 @@
        +export const b = 1;
        diff --git a/src/old.ts b/src/old.ts
        deleted file mode 100644
        index 4444444..0000000
        --- a/src/old.ts
        +++ /dev/null
        @@ -1 +0,0 @@
        -export const c = 1;
        """
    )

    analysis = analyze_unified_diff(diff)

    kinds = [(change.change_type, change.old_path, change.new_path) for change in analysis]
    assert kinds == [
        ("modified", "src/a.ts", "src/a.ts"),
        ("added", None, "src/new.ts"),
        ("deleted", "src/old.ts", None),
    ]
    assert extract_changed_paths(analysis) == ["src/a.ts", "src/new.ts", "src/old.ts"]


def test_rename_uses_new_path() -> None:
    diff = _diff(
        """
        diff --git a/src/before.ts b/src/after.ts
        similarity index 100%
        rename from src/before.ts
        rename to src/after.ts
        """
    )

    (change,) = analyze_unified_diff(diff).files

    assert change.change_type == "renamed"
    assert change.old_path == "src/before.ts"
    assert change.new_path == "src/after.ts"
    assert change.path == "src/after.ts"


def test_binary_sections_are_flagged() -> None:
    diff = _diff(
        """
        diff --git a/assets/logo.png b/assets/logo.png
        new file mode 100644
        index 0000000..5555555
        Binary files /dev/null and b/assets/logo.png differ
        """
    )

    (change,) = analyze_unified_diff(diff).files

    assert change.change_type == "binary"
    assert change.path == "assets/logo.png"


def test_unparseable_header_is_skipped() -> None:
    diff = _diff(
        """
        diff --git broken-header
        --- a/x
        +++ b/x
        diff --git a/src/ok.ts b/src/ok.ts
        index 1111111..2222222 100644
        """
    )

    assert extract_changed_paths(analyze_unified_diff(diff)) == ["src/ok.ts"]


def test_quoted_and_spaced_paths() -> None:
    diff = _diff(
        """
        diff --git "a/docs/caf\\303\\251 notes.md" "b/docs/tab\\tname.md"
        similarity index 90%
        rename from "docs/caf\\303\\251 notes.md"
        rename to "docs/tab\\tname.md"
        diff --git a/src/my file.ts b/src/my file.ts
        index 1111111..2222222 100644
        """
    )

    analysis = analyze_unified_diff(diff)

    assert extract_changed_paths(analysis) == ["docs/tab\tname.md", "src/my file.ts"]
    assert analysis.files[0].old_path == "docs/café notes.md"
    assert analysis.files[1].change_type == "modified"


def test_duplicate_paths_are_reported_once() -> None:
    staged = "diff --git a/src/a.ts b/src/a.ts\nindex 1..2 100644\n"
    unstaged = "diff --git a/src/a.ts b/src/a.ts\nindex 2..3 100644\n"

    analysis = analyze_unified_diff(f"{staged}\n{unstaged}")

    assert len(analysis) == 1
    assert extract_changed_paths(analysis) == ["src/a.ts"]


def test_crlf_line_endings_are_tolerated() -> None:
    diff = "diff --git a/src/a.ts b/src/a.ts\r\nnew file mode 100644\r\n"

    (change,) = analyze_unified_diff(diff).files

    assert change.change_type == "added"
    assert change.new_path == "src/a.ts"


def test_working_tree_diff_of_two_modified_files(tmp_path: Path) -> None:
    subprocess.run(["git", "init"], cwd=tmp_path, check=True, capture_output=True)
    repo = GitRepository(tmp_path)
    repo.git("config", "user.email", "dft@example.com")
    repo.git("config", "user.name", "dontforgetest")
    repo.git("config", "commit.gpgsign", "false")
    (tmp_path / "src").mkdir()
    for name in ("a.ts", "b.ts"):
        (tmp_path / "src" / name).write_text("export {};\n", encoding="utf-8")
    repo.git("add", ".")
    repo.git("commit", "-m", "init")
    for name in ("a.ts", "b.ts"):
        (tmp_path / "src" / name).write_text("export const changed = true;\n", encoding="utf-8")

    analysis = analyze_unified_diff(repo.working_tree_diff("both"))

    assert extract_changed_paths(analysis) == ["src/a.ts", "src/b.ts"]
    assert {change.change_type for change in analysis} == {"modified"}
