"""Tests for the orchestrator's workspace registry and continuous loops."""

import asyncio
import json
import threading

import pytest

from flowcrew.config import CONFIG_FILE_NAME, ProjectConfig
from flowcrew.core.errors import FlowcrewError, GoalError
from flowcrew.core.goal import GoalMetadata
from flowcrew.core.orchestrator import Orchestrator, initial_interaction_mode
from flowcrew.core.runner import RunResult
from flowcrew.core.state import StateStore
from flowcrew.core.workflow import WorkflowStateMachine


class CompletingRunner:
    """Every agent turn marks the workflow complete; prompts always succeed."""

    def __init__(self, config):
        self.config = config
        self.turns = []
        self.prompts = []

    def run(self, prompt, workspace, *, agent=None, **kwargs):
        self.turns.append(agent)
        machine = WorkflowStateMachine(StateStore(self.config.state_path(workspace)))
        machine.update_workflow_state("complete")
        return RunResult(ok=True, returncode=0)

    async def arun(self, prompt, workspace, **kwargs):
        self.prompts.append(prompt)
        return RunResult(ok=True, returncode=0)

    def cancel(self):
        return 0


class HangingRunner:
    """Agent turns block until cancelled, like a runner process that never exits."""

    def __init__(self):
        self.started = threading.Event()
        self.killed = threading.Event()
        self.turns = 0

    def run(self, prompt, workspace, **kwargs):
        self.turns += 1
        self.started.set()
        self.killed.wait(10)
        return RunResult(ok=False, returncode=-9)

    async def arun(self, prompt, workspace, **kwargs):
        return RunResult(ok=True, returncode=0)

    def cancel(self):
        self.killed.set()
        return 1


@pytest.fixture
def config():
    cfg = ProjectConfig()
    cfg.continuous.poll_interval_seconds = 0.01
    return cfg


@pytest.fixture
def orchestrator(config):
    runners = []

    def factory(cfg):
        runner = CompletingRunner(cfg)
        runners.append(runner)
        return runner

    orch = Orchestrator(config, runner_factory=factory)
    orch.runners = runners
    return orch


class TestWorkspaces:
    def test_workspace_is_cached(self, tmp_path, orchestrator):
        first = orchestrator.workspace(tmp_path)
        assert orchestrator.workspace(tmp_path / ".") is first
        assert first.store.path == tmp_path.resolve() / ".flowcrew" / "state.json"

    def test_workspace_config_is_loaded_when_not_given(self, tmp_path):
        (tmp_path / CONFIG_FILE_NAME).write_text(json.dumps({"state_dir": ".state"}))
        ws = Orchestrator().workspace(tmp_path)
        assert ws.store.path == tmp_path.resolve() / ".state" / "state.json"

    def test_load_dag_from_goal_flow(self, tmp_path, orchestrator):
        (tmp_path / "GOAL.md").write_text("---\nflow: '\"planner\" -> \"builder\"'\n---\n# Goal\n")
        dag = orchestrator.load_dag(tmp_path)
        assert set(dag.nodes) == {"coordinator", "planner", "builder", "project-critic-council"}

    def test_load_dag_with_explicit_flow(self, tmp_path, orchestrator):
        (tmp_path / "GOAL.md").write_text("# Goal\n")
        dag = orchestrator.load_dag(tmp_path, flow='"a" -> "b"')
        assert "a" in dag.nodes

    def test_load_dag_without_goal_fails(self, tmp_path, orchestrator):
        with pytest.raises(GoalError):
            orchestrator.load_dag(tmp_path)


class TestInteractionMode:
    def test_modes(self):
        assert initial_interaction_mode(GoalMetadata()) == "brainstorming"
        assert initial_interaction_mode(GoalMetadata(), auto=True) == "self-drive"
        assert initial_interaction_mode(GoalMetadata(continuous_mode_prompt="go"), auto=True) == "continuous"


class TestRunWorkflow:
    def test_auto_run_completes_in_self_drive(self, tmp_path, orchestrator):
        (tmp_path / "GOAL.md").write_text("# Goal\n")
        state = orchestrator.run_workflow(tmp_path, auto=True)
        assert state.status == "complete"
        assert state.interaction_mode == "self-drive"
        assert orchestrator.runners[-1].turns == ["coordinator"]


class TestContinuous:
    def test_requires_prompt(self, tmp_path, orchestrator):
        (tmp_path / "GOAL.md").write_text("# Goal\n")
        with pytest.raises(GoalError):
            asyncio.run(orchestrator.start_continuous(tmp_path))
        assert not orchestrator.is_continuous_running(tmp_path)

    def test_single_loop_per_workspace_and_stop(self, tmp_path, orchestrator):
        (tmp_path / "GOAL.md").write_text("---\ncontinuousModePrompt: improve things\n---\n# Goal\n")

        async def scenario():
            task = asyncio.create_task(orchestrator.start_continuous(tmp_path))
            for _ in range(500):
                if orchestrator.is_continuous_running(tmp_path):
                    break
                await asyncio.sleep(0.01)
            assert orchestrator.is_continuous_running(tmp_path)

            with pytest.raises(FlowcrewError):
                await orchestrator.start_continuous(tmp_path)

            for _ in range(500):
                if any(runner.prompts for runner in orchestrator.runners):
                    break
                await asyncio.sleep(0.01)

            assert orchestrator.stop_continuous(tmp_path)
            await asyncio.wait_for(task, timeout=5)

        asyncio.run(scenario())
        assert not orchestrator.is_continuous_running(tmp_path)
        assert not orchestrator.stop_continuous(tmp_path)
        state = orchestrator.workspace(tmp_path).store.load()
        assert state.interaction_mode == "continuous"
        assert any(runner.prompts == ["improve things"] for runner in orchestrator.runners)

    def test_stop_kills_agent_turn_in_flight(self, tmp_path, config):
        (tmp_path / "GOAL.md").write_text("---\ncontinuousModePrompt: improve things\n---\n# Goal\n")
        config.workflow.max_iterations = 20
        runner = HangingRunner()
        orchestrator = Orchestrator(config, runner_factory=lambda cfg: runner)

        async def scenario():
            task = asyncio.create_task(orchestrator.start_continuous(tmp_path))
            while not runner.started.is_set():
                await asyncio.sleep(0.01)
            assert orchestrator.stop_continuous(tmp_path)
            await asyncio.wait_for(task, timeout=5)

        asyncio.run(asyncio.wait_for(scenario(), timeout=15))
        assert runner.killed.is_set()
        assert runner.turns == 1
        assert not orchestrator.is_continuous_running(tmp_path)
