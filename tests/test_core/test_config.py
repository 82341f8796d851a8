"""Tests for project configuration loading."""

import json

import pytest

from flowcrew.config import CONFIG_FILE_NAME, ProjectConfig


class TestProjectConfig:
    def test_defaults(self, tmp_path):
        config = ProjectConfig()
        assert config.goal_path(tmp_path) == tmp_path / "GOAL.md"
        assert config.state_path(tmp_path) == tmp_path / ".flowcrew" / "state.json"
        assert config.continuous.poll_interval_seconds == 2.0
        assert config.continuous.max_prompt_attempts == 3
        assert config.runner.command == "opencode"

    def test_round_trip(self, tmp_path):
        config = ProjectConfig()
        config.runner.command = "my-runner"
        config.runner.timeout_seconds = 90
        config.workflow.max_iterations = 12
        path = tmp_path / CONFIG_FILE_NAME
        config.to_json_file(path)
        loaded = ProjectConfig.from_json_file(path)
        assert loaded.to_dict() == config.to_dict()

    def test_partial_dict_keeps_defaults(self):
        config = ProjectConfig.from_dict({"continuous": {"poll_interval_seconds": 0.5}})
        assert config.continuous.poll_interval_seconds == 0.5
        assert config.continuous.max_prompt_attempts == 3
        assert config.runner.timeout_seconds is None

    def test_non_dict_sections_are_ignored(self):
        config = ProjectConfig.from_dict({"runner": "nope", "logging": []})
        assert config.runner.command == "opencode"

    def test_load_without_file_gives_defaults(self, tmp_path):
        assert ProjectConfig.load(tmp_path).to_dict() == ProjectConfig().to_dict()

    def test_load_reads_workspace_file(self, tmp_path):
        (tmp_path / CONFIG_FILE_NAME).write_text(json.dumps({"goal_file": "TARGET.md"}))
        assert ProjectConfig.load(tmp_path).goal_path(tmp_path) == tmp_path / "TARGET.md"

    def test_non_object_file_raises(self, tmp_path):
        path = tmp_path / CONFIG_FILE_NAME
        path.write_text("[]")
        with pytest.raises(ValueError):
            ProjectConfig.from_json_file(path)
