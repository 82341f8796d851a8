"""Orchestrator: the per-process context tying workspaces to their runs."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from ..config import ProjectConfig
from ..utils.logging import get_logger
from .continuous import ContinuousModeLoop
from .dag import FlowDag, parse_flow
from .errors import FlowcrewError, GoalError
from .goal import GoalMetadata, load_goal_metadata
from .message import MessageBus
from .runner import AgentRunner
from .singleflight import Singleflight
from .state import InteractionMode, StateStore, WorkflowState
from .workflow import WorkflowStateMachine
from .workflow_runner import WorkflowRunner

logger = get_logger(__name__)


@dataclass
class Workspace:
    """Everything bound to one workspace directory."""

    path: Path
    config: ProjectConfig
    store: StateStore
    bus: MessageBus
    machine: WorkflowStateMachine

    @property
    def goal_path(self) -> Path:
        return self.config.goal_path(self.path)


def initial_interaction_mode(metadata: GoalMetadata, auto: bool = False) -> str:
    """Mode a new run starts in: continuous, self-drive or brainstorming."""
    if metadata.continuous_mode_prompt:
        return InteractionMode.CONTINUOUS.value
    if auto:
        return InteractionMode.SELF_DRIVE.value
    return InteractionMode.BRAINSTORMING.value


class Orchestrator:
    """Holds the workspace registry, DAG loading and continuous loops.

    Args:
        config: Config used for every workspace.  When omitted each
            workspace loads its own ``flowcrew.json``.
        runner_factory: Builds the Agent Runner for a workspace config.
    """

    def __init__(
        self,
        config: ProjectConfig | None = None,
        runner_factory: Callable[[ProjectConfig], AgentRunner] | None = None,
    ) -> None:
        self._config = config
        self._runner_factory = runner_factory or (lambda cfg: AgentRunner(cfg.runner))
        self._lock = threading.Lock()
        self._workspaces: dict[Path, Workspace] = {}
        self._dag_flight: Singleflight[Path, FlowDag] = Singleflight()
        self._continuous: dict[Path, ContinuousModeLoop] = {}
        logger.info("Orchestrator initialized")

    @staticmethod
    def _key(path: str | Path) -> Path:
        return Path(path).resolve()

    def workspace(self, path: str | Path) -> Workspace:
        """Return the (cached) workspace bundle for ``path``."""
        key = self._key(path)
        with self._lock:
            ws = self._workspaces.get(key)
            if ws is None:
                config = self._config or ProjectConfig.load(key)
                store = StateStore(config.state_path(key))
                ws = Workspace(
                    path=key,
                    config=config,
                    store=store,
                    bus=MessageBus(store),
                    machine=WorkflowStateMachine(store),
                )
                self._workspaces[key] = ws
                logger.info("Workspace registered: path=%s state=%s", key, store.path)
            return ws

    def load_metadata(self, path: str | Path) -> GoalMetadata:
        return load_goal_metadata(self.workspace(path).goal_path)

    def load_dag(self, path: str | Path, flow: str | None = None) -> FlowDag:
        """Parse the workspace's flow; concurrent callers share one parse.

        Args:
            path: Workspace directory.
            flow: Explicit flow spec; defaults to the goal's ``flow`` field.
        """
        key = self._key(path)

        def compute() -> FlowDag:
            spec = flow if flow is not None else self.load_metadata(key).flow
            return parse_flow(spec, key)

        if flow is not None:
            return compute()
        return self._dag_flight.do(key, compute)

    def make_workflow_runner(
        self,
        path: str | Path,
        runner: AgentRunner | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> WorkflowRunner:
        ws = self.workspace(path)
        return WorkflowRunner(
            ws.path,
            ws.store,
            self.load_dag(ws.path),
            runner=runner or self._runner_factory(ws.config),
            config=ws.config,
            should_stop=should_stop,
        )

    def run_workflow(
        self,
        path: str | Path,
        fresh: bool = False,
        auto: bool = False,
        interaction_mode: str | None = None,
        runner: AgentRunner | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> WorkflowState:
        """Start or resume the workflow of ``path`` and run it until it stops."""
        if interaction_mode is None:
            interaction_mode = initial_interaction_mode(self.load_metadata(path), auto=auto)
        workflow = self.make_workflow_runner(path, runner=runner, should_stop=should_stop)
        return workflow.run(fresh=fresh, interaction_mode=interaction_mode)

    async def start_continuous(self, path: str | Path) -> None:
        """Run continuous mode for ``path`` until :meth:`stop_continuous`.

        Raises:
            FlowcrewError: If a loop is already running for the workspace.
            GoalError: If the goal has no continuous-mode prompt.
        """
        ws = self.workspace(path)
        metadata = self.load_metadata(ws.path)
        if not metadata.continuous_mode_prompt:
            raise GoalError(f"{ws.goal_path} has no continuousModePrompt")

        # One runner per session so stopping can kill whichever turn is in flight.
        runner = self._runner_factory(ws.config)

        def run_cycle() -> WorkflowState:
            return self.run_workflow(
                ws.path,
                interaction_mode=InteractionMode.CONTINUOUS.value,
                runner=runner,
                should_stop=lambda: loop.stopped,
            )

        with self._lock:
            if ws.path in self._continuous:
                raise FlowcrewError(f"continuous mode already running for {ws.path}")
            loop = ContinuousModeLoop(ws.path, ws.store, runner, run_cycle, ws.config, on_stop=runner.cancel)
            self._continuous[ws.path] = loop

        try:
            await loop.run()
        finally:
            with self._lock:
                self._continuous.pop(ws.path, None)

    def stop_continuous(self, path: str | Path) -> bool:
        """Ask a running loop to stop.  Returns False if none was running."""
        with self._lock:
            loop = self._continuous.get(self._key(path))
        if loop is None:
            return False
        loop.stop()
        logger.info("Continuous mode stop requested: path=%s", self._key(path))
        return True

    def is_continuous_running(self, path: str | Path) -> bool:
        with self._lock:
            return self._key(path) in self._continuous
