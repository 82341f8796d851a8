"""Configuration management for the flowcrew system."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

CONFIG_FILE_NAME = "flowcrew.json"


@dataclass
class LoggingConfig:
    """Configuration for logging system."""

    level: str = "INFO"
    log_dir: str = "logs"
    json_format: bool = False
    rotate_daily: bool = True


@dataclass
class RunnerConfig:
    """Configuration for the external Agent Runner process.

    The runner is an opaque command-line program.  flowcrew starts it,
    feeds it a prompt on stdin and only observes whether it exited
    successfully.
    """

    command: str = "opencode"
    config_dir_name: str = ".flowcrew"
    mcp_url: str = ""
    timeout_seconds: float | None = None


@dataclass
class ContinuousConfig:
    """Configuration for unattended continuous-mode cycles."""

    poll_interval_seconds: float = 2.0
    max_prompt_attempts: int = 3


@dataclass
class WorkflowConfig:
    """Configuration for workflow execution."""

    max_iterations: int = 200


@dataclass
class ProjectConfig:
    """Top-level per-workspace configuration."""

    goal_file: str = "GOAL.md"
    state_dir: str = ".flowcrew"
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    continuous: ContinuousConfig = field(default_factory=ContinuousConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def goal_path(self, workspace: str | Path) -> Path:
        return Path(workspace) / self.goal_file

    def state_path(self, workspace: str | Path) -> Path:
        return Path(workspace) / self.state_dir / "state.json"

    def to_dict(self) -> dict[str, Any]:
        """Serialize project config to a JSON-compatible dictionary."""
        return {
            "goal_file": self.goal_file,
            "state_dir": self.state_dir,
            "workflow": {
                "max_iterations": self.workflow.max_iterations,
            },
            "runner": {
                "command": self.runner.command,
                "config_dir_name": self.runner.config_dir_name,
                "mcp_url": self.runner.mcp_url,
                "timeout_seconds": self.runner.timeout_seconds,
            },
            "continuous": {
                "poll_interval_seconds": self.continuous.poll_interval_seconds,
                "max_prompt_attempts": self.continuous.max_prompt_attempts,
            },
            "logging": {
                "level": self.logging.level,
                "log_dir": self.logging.log_dir,
                "json_format": self.logging.json_format,
                "rotate_daily": self.logging.rotate_daily,
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProjectConfig:
        """Build project config from a dictionary."""
        config = cls()

        if "goal_file" in data:
            config.goal_file = str(data["goal_file"])
        if "state_dir" in data:
            config.state_dir = str(data["state_dir"])

        workflow_data = data.get("workflow", {})
        if isinstance(workflow_data, dict):
            config.workflow = WorkflowConfig(
                max_iterations=int(workflow_data.get("max_iterations", config.workflow.max_iterations)),
            )

        runner_data = data.get("runner", {})
        if isinstance(runner_data, dict):
            timeout = runner_data.get("timeout_seconds", config.runner.timeout_seconds)
            config.runner = RunnerConfig(
                command=str(runner_data.get("command", config.runner.command)),
                config_dir_name=str(runner_data.get("config_dir_name", config.runner.config_dir_name)),
                mcp_url=str(runner_data.get("mcp_url", config.runner.mcp_url)),
                timeout_seconds=float(timeout) if timeout is not None else None,
            )

        continuous_data = data.get("continuous", {})
        if isinstance(continuous_data, dict):
            config.continuous = ContinuousConfig(
                poll_interval_seconds=float(
                    continuous_data.get("poll_interval_seconds", config.continuous.poll_interval_seconds)
                ),
                max_prompt_attempts=int(
                    continuous_data.get("max_prompt_attempts", config.continuous.max_prompt_attempts)
                ),
            )

        logging_data = data.get("logging", {})
        if isinstance(logging_data, dict):
            config.logging = LoggingConfig(
                level=str(logging_data.get("level", config.logging.level)),
                log_dir=str(logging_data.get("log_dir", config.logging.log_dir)),
                json_format=bool(logging_data.get("json_format", config.logging.json_format)),
                rotate_daily=bool(logging_data.get("rotate_daily", config.logging.rotate_daily)),
            )

        return config

    @classmethod
    def from_json_file(cls, file_path: str | Path) -> ProjectConfig:
        """Load project config from a JSON file."""
        path = Path(file_path)
        with path.open(encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Expected JSON object in {path}")
        return cls.from_dict(data)

    def to_json_file(self, file_path: str | Path) -> None:
        """Write project config to a JSON file."""
        path = Path(file_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, workspace: str | Path) -> ProjectConfig:
        """Load ``flowcrew.json`` from a workspace, or defaults when absent."""
        path = Path(workspace) / CONFIG_FILE_NAME
        if not path.exists():
            return cls()
        return cls.from_json_file(path)
