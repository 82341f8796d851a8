"""flowcrew - DAG-driven orchestration of cooperating AI agents."""

__version__ = "0.1.0"

from .config import ProjectConfig
from .core import (
    FlowDag,
    MessageBus,
    Orchestrator,
    StateStore,
    WorkflowState,
    WorkflowStateMachine,
    parse_flow,
)

__all__ = [
    "FlowDag",
    "MessageBus",
    "Orchestrator",
    "ProjectConfig",
    "StateStore",
    "WorkflowState",
    "WorkflowStateMachine",
    "parse_flow",
]
