"""LangChain / LangGraph integration for flowcrew.

Modules
-------
state
    :class:`FlowGraphState` TypedDict carried between graph nodes.
graph
    LangGraph :class:`~langgraph.graph.StateGraph` builder for the
    workflow run loop (one node per agent plus a router).
tool_adapter
    The agent tool-call surface as LangChain
    :class:`~langchain_core.tools.StructuredTool` instances.
"""

from .graph import ROUTER_NODE, build_flow_graph
from .state import FlowGraphState
from .tool_adapter import create_workflow_tools

__all__ = [
    "FlowGraphState",
    "ROUTER_NODE",
    "build_flow_graph",
    "create_workflow_tools",
]
