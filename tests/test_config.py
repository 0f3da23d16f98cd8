from __future__ import annotations

import textwrap
from pathlib import Path

import pytest
import yaml

from dft.config import (
    ConfigError,
    Settings,
    copy_config_template,
    load_config,
    write_config,
)


def test_missing_config_yields_defaults(tmp_path: Path) -> None:
    settings = load_config(tmp_path / "config.yaml")

    assert settings.tests.command == ""
    assert settings.tests.runner == "agent"
    assert settings.run.location == "local"
    assert settings.run.mode == "full"
    assert settings.artifacts.include_perspective_table is True
    assert settings.artifacts.perspective_report_dir == "docs/test-perspectives"


def test_template_round_trips_through_yaml(tmp_path: Path) -> None:
    config_path = tmp_path / "nested" / "config.yaml"
    data = copy_config_template()
    data["tests"]["command"] = "npm test"

    write_config(config_path, data)
    settings = load_config(config_path)

    assert settings.tests.command == "npm test"
    assert yaml.safe_load(config_path.read_text(encoding="utf-8"))["run"]["location"] == "local"
    assert copy_config_template()["tests"]["command"] == ""


def test_partial_config_is_merged_with_defaults(tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        textwrap.dedent(
            """
            tests:
              runner: direct
            run:
              location: worktree
            """
        ).strip()
        + "\n",
        encoding="utf-8",
    )

    settings = load_config(config_path)

    assert settings.tests.runner == "direct"
    assert settings.run.location == "worktree"
    assert settings.agent.command == "claude"


@pytest.mark.parametrize(
    "content",
    [
        "tests:\n  runner: sometimes\n",
        "run:\n  mode: half\n",
        "unknown_section: {}\n",
        "- just\n- a list\n",
        "tests: [unclosed\n",
    ],
)
def test_invalid_config_raises(tmp_path: Path, content: str) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigError):
        load_config(config_path)


def test_storage_root_is_scoped_per_workspace(tmp_path: Path) -> None:
    workspace = tmp_path / "my-project"
    workspace.mkdir()
    settings = Settings.model_validate({"artifacts": {"storage_dir": str(tmp_path / "store")}})

    assert settings.storage_root(workspace) == tmp_path / "store" / "my-project"

    relative = Settings.model_validate({"artifacts": {"storage_dir": ".dft"}})
    assert relative.storage_root(workspace) == (workspace / ".dft").resolve() / "my-project"


def test_timeout_or_none() -> None:
    assert Settings.timeout_or_none(0) is None
    assert Settings.timeout_or_none(12.5) == 12.5
