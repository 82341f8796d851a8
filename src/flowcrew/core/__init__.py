"""Core framework components."""

from .continuous import ContinuousModeLoop, Trigger
from .dag import COORDINATOR, CRITIC_COUNCIL, FlowDag, determine_next_agent, parse_flow
from .errors import FlowConfigError, FlowcrewError, GoalChecksumError, GoalError, StateError
from .goal import GoalMetadata, compute_goal_checksum, load_goal_metadata
from .message import MessageBus, Route, route_after_agent
from .orchestrator import Orchestrator, Workspace
from .runner import AgentRunner, RunResult
from .singleflight import Singleflight
from .state import InteractionMode, Message, StateStore, WorkflowState, WorkflowStatus
from .workflow import WorkflowStateMachine
from .workflow_runner import WorkflowRunner

__all__ = [
    "AgentRunner",
    "COORDINATOR",
    "CRITIC_COUNCIL",
    "ContinuousModeLoop",
    "FlowConfigError",
    "FlowDag",
    "FlowcrewError",
    "GoalChecksumError",
    "GoalError",
    "GoalMetadata",
    "InteractionMode",
    "Message",
    "MessageBus",
    "Orchestrator",
    "Route",
    "RunResult",
    "Singleflight",
    "StateError",
    "StateStore",
    "Trigger",
    "WorkflowRunner",
    "WorkflowState",
    "WorkflowStateMachine",
    "WorkflowStatus",
    "Workspace",
    "compute_goal_checksum",
    "determine_next_agent",
    "load_goal_metadata",
    "parse_flow",
    "route_after_agent",
]
