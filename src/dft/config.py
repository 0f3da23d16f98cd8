"""Configuration loading for dontforgetest runs."""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any, Dict, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

DEFAULT_CONFIG_NAME = "config.yaml"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "agent": {
        "command": "claude",
        "model": None,
        "timeout_seconds": 0,
        "force_for_test_execution": False,
    },
    "artifacts": {
        "include_perspective_table": True,
        "perspective_report_dir": "docs/test-perspectives",
        "test_execution_report_dir": "docs/test-execution-reports",
        "perspective_timeout_seconds": 600,
        "storage_dir": "~/.dontforgetest",
    },
    "tests": {
        "command": "",
        "runner": "agent",
        "pre_check_command": "",
    },
    "run": {
        "location": "local",
        "mode": "full",
    },
}


class ConfigError(RuntimeError):
    """Raised when configuration cannot be read or fails validation."""


class SettingsModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=True)


class AgentSettings(SettingsModel):
    command: str = "claude"
    model: str | None = None
    timeout_seconds: float = Field(default=0, ge=0)
    force_for_test_execution: bool = False


class ArtifactSettings(SettingsModel):
    include_perspective_table: bool = True
    perspective_report_dir: str = "docs/test-perspectives"
    test_execution_report_dir: str = "docs/test-execution-reports"
    perspective_timeout_seconds: float = Field(default=600, ge=0)
    storage_dir: str = "~/.dontforgetest"


class ExecutionSettings(SettingsModel):
    command: str = ""
    runner: Literal["agent", "direct"] = "agent"
    pre_check_command: str = ""


class RunSettings(SettingsModel):
    location: Literal["local", "worktree"] = "local"
    mode: Literal["full", "perspective-only"] = "full"


class Settings(SettingsModel):
    """Validated view over ``config.yaml``."""

    agent: AgentSettings = Field(default_factory=AgentSettings)
    artifacts: ArtifactSettings = Field(default_factory=ArtifactSettings)
    tests: ExecutionSettings = Field(default_factory=ExecutionSettings)
    run: RunSettings = Field(default_factory=RunSettings)

    def storage_root(self, workspace_root: Path) -> Path:
        """Return the durable storage directory scoped to ``workspace_root``.

        Runs for different workspaces never share patches or worktrees, so the
        configured base is suffixed with the workspace directory name.
        """

        base = Path(self.artifacts.storage_dir).expanduser()
        if not base.is_absolute():
            base = (workspace_root / base).resolve()
        return base / workspace_root.resolve().name

    @staticmethod
    def timeout_or_none(seconds: float) -> float | None:
        return seconds if seconds > 0 else None


def copy_config_template() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def write_config(config_path: Path, config_data: Dict[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(config_data, handle, sort_keys=False)


def parse_settings(data: Dict[str, Any]) -> Settings:
    try:
        return Settings.model_validate(data)
    except ValidationError as error:
        raise ConfigError(f"Invalid configuration: {error}") from error


def load_config(config_path: Path) -> Settings:
    """Load YAML configuration from ``config_path``; a missing file yields defaults."""
    if not config_path.exists():
        return Settings()

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config {config_path}: {error}") from error

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")

    return parse_settings(data)


__all__ = [
    "AgentSettings",
    "ArtifactSettings",
    "ConfigError",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "ExecutionSettings",
    "RunSettings",
    "Settings",
    "copy_config_template",
    "load_config",
    "parse_settings",
    "write_config",
]
