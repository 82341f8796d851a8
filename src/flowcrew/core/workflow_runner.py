"""Starts or resumes a workflow and drives it through the LangGraph run loop.

Each graph step is either one agent turn (the Agent Runner invoked with the
composed prompt) or the router, which reads the state document and picks
who runs next.  The run ends when the workflow completes, a human question
is pending, or the iteration guard trips.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

from ..config import ProjectConfig
from ..langchain.graph import build_flow_graph
from ..langchain.state import FlowGraphState
from ..utils.logging import get_logger
from .dag import FlowDag, ensure_critic_council_model
from .errors import GoalError, StateError
from .goal import GoalMetadata, compute_goal_checksum, load_goal_metadata
from .message import ENVIRONMENT, append_message, apply_handoff, route_after_agent
from .prompts import build_flow_message, build_multi_model_section, build_turn_notices, compose_prompt
from .runner import AgentRunner, RunResult, format_completion_gate_failure, run_completion_gate_script
from .state import (
    COORDINATOR,
    InteractionMode,
    StateStore,
    WorkflowState,
    WorkflowStatus,
    init_visit_counts,
)
from .workflow import WorkflowStateMachine

logger = get_logger(__name__)

_TURN_ENDING = (WorkflowStatus.COMPLETE.value, WorkflowStatus.WAITING_FOR_HUMAN.value)

_RESUMABLE = (
    WorkflowStatus.WORKING.value,
    WorkflowStatus.AGENT_DONE.value,
    WorkflowStatus.WAITING_FOR_HUMAN.value,
)


def can_resume_workflow(state: WorkflowState | None, fresh: bool, goal_checksum: str) -> bool:
    """A run resumes only an unfinished workflow for an unchanged goal."""
    if fresh or state is None:
        return False
    if state.goal_checksum != goal_checksum:
        return False
    return state.status in _RESUMABLE


def workflow_agents(dag: FlowDag) -> list[str]:
    agents = dag.all_agents()
    if COORDINATOR not in agents:
        agents = [COORDINATOR, *agents]
    return agents


class WorkflowRunner:
    """Runs the workflow for one workspace.

    Args:
        workspace: Workspace directory.
        store: The workspace's state store.
        dag: Normalized flow DAG.
        runner: Agent Runner used for every agent turn.
        config: Project config.
        should_stop: Polled between turns; once it returns True the run ends
            after the current turn.
    """

    def __init__(
        self,
        workspace: str | Path,
        store: StateStore,
        dag: FlowDag,
        runner: AgentRunner | None = None,
        config: ProjectConfig | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> None:
        self.workspace = Path(workspace)
        self.store = store
        self.dag = dag
        self.config = config or ProjectConfig()
        self.runner = runner or AgentRunner(self.config.runner)
        self.should_stop = should_stop
        self.machine = WorkflowStateMachine(store)
        self.goal_path = self.config.goal_path(self.workspace)
        self.max_iterations = self.config.workflow.max_iterations
        self._metadata = GoalMetadata()

    # ------------------------------------------------------------------
    # Start / resume
    # ------------------------------------------------------------------

    def prepare(self, fresh: bool = False, interaction_mode: str | None = None) -> bool:
        """Resume the existing state or write a fresh one.

        Returns:
            True when an existing workflow was resumed.

        Raises:
            GoalChecksumError: If the goal document cannot be read.
            StateError: If an existing state document is corrupt.
        """
        checksum = compute_goal_checksum(self.goal_path)
        existing: WorkflowState | None = None
        if not fresh:
            try:
                existing = self.store.load()
            except FileNotFoundError:
                existing = None

        if can_resume_workflow(existing, fresh, checksum):
            if interaction_mode:
                self.store.update(lambda state: setattr(state, "interaction_mode", interaction_mode))
            logger.info("Resuming workflow: workspace=%s agent=%s", self.workspace, existing.resolved_agent())
            return True

        state = WorkflowState(
            status=WorkflowStatus.WORKING.value,
            goal_checksum=checksum,
            visit_counts=init_visit_counts(workflow_agents(self.dag)),
            interaction_mode=interaction_mode or InteractionMode.BRAINSTORMING.value,
        )
        self.store.delete()
        self.store.save(state)
        logger.info("Starting fresh workflow: workspace=%s agents=%d", self.workspace, len(state.visit_counts))
        return False

    def stopping(self) -> bool:
        return self.should_stop is not None and self.should_stop()

    def _reload_metadata(self) -> GoalMetadata:
        try:
            metadata = load_goal_metadata(self.goal_path)
        except GoalError as exc:
            logger.warning("Goal frontmatter reload failed, keeping previous: goal=%s error=%s", self.goal_path, exc)
            return self._metadata
        ensure_critic_council_model(self.dag, metadata.models)
        self._metadata = metadata
        return metadata

    # ------------------------------------------------------------------
    # Agent turns
    # ------------------------------------------------------------------

    def build_prompt(self, state: WorkflowState, agent: str, metadata: GoalMetadata) -> str:
        flow_message = build_flow_message(self.dag, agent, state.visit_counts)
        prompt = compose_prompt(agent, flow_message, state.interaction_mode)
        prompt += build_multi_model_section(state.current_model, metadata, agent)
        prefix, suffix = build_turn_notices(state, agent)
        return prefix + prompt + suffix

    def _interactive(self, state: WorkflowState, metadata: GoalMetadata) -> bool:
        if metadata.interactive in ("no", "auto"):
            return False
        return state.interaction_mode == InteractionMode.BRAINSTORMING.value

    def _run_once(self, agent: str, model_spec: str, metadata: GoalMetadata) -> RunResult:
        if self.stopping():
            return RunResult(ok=False, error="stopped")
        state = self.store.load()
        prompt = self.build_prompt(state, agent, metadata)
        title = f"{agent} [{model_spec}]" if model_spec else agent
        result = self.runner.run(
            prompt,
            self.workspace,
            agent=agent,
            model=model_spec or None,
            title=title,
            interactive=self._interactive(state, metadata),
        )
        if not result.ok:
            logger.warning("Agent run failed, marking agent done: agent=%s error=%s", agent, result)
            self.store.update(lambda s: setattr(s, "status", WorkflowStatus.AGENT_DONE.value))
        return result

    def run_agent_turn(self, agent: str) -> RunResult:
        """Run ``agent`` once per configured model, then apply completion checks."""
        metadata = self._reload_metadata()
        specs = metadata.models_for_agent(agent)

        if len(specs) <= 1:
            result = self._run_once(agent, specs[0] if specs else "", metadata)
        else:
            result = RunResult(ok=True)
            for spec in specs:
                model_id = f"{agent}:{spec}"
                self.store.update(lambda s, model_id=model_id: setattr(s, "current_model", model_id))
                logger.info("Running model: agent=%s model=%s", agent, model_id)
                result = self._run_once(agent, spec, metadata)
                status = self.store.load().status
                if self.stopping() or status in _TURN_ENDING:
                    break
            self.store.update(lambda s: setattr(s, "current_model", ""))

        if agent == COORDINATOR:
            self._check_completion(metadata)
        return result

    def _check_completion(self, metadata: GoalMetadata) -> None:
        """Hold back a coordinator ``complete`` that has not earned it."""
        state = self.store.load()
        if state.status != WorkflowStatus.COMPLETE.value:
            return

        pending = state.pending_todo_count()
        if pending:
            body = (
                "# Pending TODO items.\n"
                f"You have {pending} pending TODO items. Please complete them before marking workflow complete.\n"
            )
            self._block_completion(body)
            logger.info("Completion blocked: reason=pending_todos count=%d", pending)
            return

        script = metadata.completion_gate_script
        if not script:
            return
        logger.info("Running completion gate: script=%s", script)
        passed, output = run_completion_gate_script(script, self.workspace)
        if not passed:
            self._block_completion(format_completion_gate_failure(script, output))
            logger.info("Completion blocked: reason=completion_gate script=%s", script)

    def _block_completion(self, body: str) -> None:
        def apply(state: WorkflowState) -> None:
            state.status = WorkflowStatus.WORKING.value
            append_message(state, ENVIRONMENT, COORDINATOR, body)

        self.store.update(apply)

    # ------------------------------------------------------------------
    # Graph nodes
    # ------------------------------------------------------------------

    def make_agent_node(self, agent: str) -> Callable[[FlowGraphState], dict[str, Any]]:
        def agent_node(graph_state: FlowGraphState) -> dict[str, Any]:
            result = self.run_agent_turn(agent)
            return {
                "last_agent": agent,
                "last_result": str(result),
                "iteration": graph_state.get("iteration", 0) + 1,
            }

        return agent_node

    def route(self, graph_state: FlowGraphState) -> dict[str, Any]:
        """Router node: choose the next agent and record the handoff."""
        last_agent = graph_state.get("last_agent", "")
        iteration = graph_state.get("iteration", 0)

        if self.stopping():
            logger.info("Workflow run stopped: workspace=%s last_agent=%s", self.workspace, last_agent or "-")
            return {"next_agent": "", "route_reason": "stopped"}

        if not last_agent:
            state = self.store.load()
            if state.status == WorkflowStatus.WAITING_FOR_HUMAN.value:
                logger.info("Workflow paused, waiting for human: workspace=%s", self.workspace)
                return {"next_agent": "", "route_reason": "waiting for human"}
            next_agent = state.resolved_agent()
            if next_agent not in self.dag.nodes:
                next_agent = COORDINATOR
            reason = "start"
        else:
            self.machine.consume_work_gate_approval()
            route = route_after_agent(self.store.load(), self.dag, last_agent)
            if route.finished:
                logger.info("Workflow run ended: workspace=%s reason=%s", self.workspace, route.reason)
                return {"next_agent": "", "route_reason": route.reason}
            if iteration >= self.max_iterations:
                logger.warning("Iteration limit reached, stopping: workspace=%s limit=%d", self.workspace, iteration)
                return {"next_agent": "", "route_reason": "iteration limit"}
            next_agent, reason = route.next_agent, route.reason
            if not route.handoff:
                return {"next_agent": next_agent, "route_reason": reason}
            if next_agent not in self.dag.nodes:
                logger.warning("Route target not in DAG, using coordinator: target=%s", next_agent)
                next_agent = COORDINATOR

        self.store.update(lambda state: apply_handoff(state, next_agent))
        logger.info("Handoff: from=%s to=%s reason=%s", last_agent or "-", next_agent, reason)
        return {"next_agent": next_agent, "route_reason": reason}

    def build_graph(self) -> Any:
        nodes = {agent: self.make_agent_node(agent) for agent in workflow_agents(self.dag)}
        return build_flow_graph(nodes, self.route)

    def run(self, fresh: bool = False, interaction_mode: str | None = None) -> WorkflowState:
        """Start or resume the workflow and run it until it stops.

        Returns:
            The state document as left by the final step.
        """
        self.prepare(fresh=fresh, interaction_mode=interaction_mode)
        self._reload_metadata()
        graph = self.build_graph()
        # Each turn is two graph steps (router, agent) plus the final router step.
        limit = self.max_iterations * 2 + 10
        final = graph.invoke({"workspace": str(self.workspace), "iteration": 0}, config={"recursion_limit": limit})
        logger.info(
            "Workflow run finished: workspace=%s iterations=%d reason=%s",
            self.workspace,
            final.get("iteration", 0),
            final.get("route_reason", ""),
        )
        try:
            return self.store.load()
        except (FileNotFoundError, StateError) as exc:
            logger.warning("Final state unreadable: path=%s error=%s", self.store.path, exc)
            return WorkflowState()
