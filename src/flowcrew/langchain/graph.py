"""LangGraph StateGraph builder for the workflow run loop."""

from __future__ import annotations

from typing import Any, Callable

from langgraph.graph import END, START, StateGraph

from ..utils.logging import get_logger
from .state import FlowGraphState

logger = get_logger(__name__)

ROUTER_NODE = "flowcrew_router"


def _route_from_router(state: FlowGraphState) -> str:
    """Conditional edge function: maps ``next_agent`` to a node, or ``END``."""
    next_agent = state.get("next_agent", "")
    if not next_agent:
        return END
    return next_agent


def build_flow_graph(
    agent_nodes: dict[str, Callable[[FlowGraphState], dict[str, Any]]],
    router_fn: Callable[[FlowGraphState], dict[str, Any]],
) -> Any:
    """Build and compile the :class:`StateGraph` for one workflow DAG.

    Graph topology
    --------------
    ::

        START → router ─┬─→ coordinator     ─┐
                        ├─→ general-purpose ─┤→ (loop back) → router
                        ├─→ ...             ─┘
                        └─→ END  (when next_agent is empty)

    Agent-to-agent handoff is decided by the router from the message bus
    and the workflow status, not by the DAG edges, so every agent node
    reports back to the router.

    Args:
        agent_nodes: Mapping of agent name to LangGraph node callable.
        router_fn: Router node deciding the next agent.

    Returns:
        Compiled LangGraph application (``CompiledStateGraph``).
    """
    graph: StateGraph = StateGraph(FlowGraphState)

    graph.add_node(ROUTER_NODE, router_fn)

    for agent_name, agent_fn in agent_nodes.items():
        graph.add_node(agent_name, agent_fn)
        graph.add_edge(agent_name, ROUTER_NODE)

    route_map: dict[str, str] = {name: name for name in agent_nodes}
    route_map[END] = END

    graph.add_conditional_edges(ROUTER_NODE, _route_from_router, route_map)
    graph.add_edge(START, ROUTER_NODE)

    compiled = graph.compile()
    logger.info(
        "Flow graph compiled: nodes=%d agents=%s",
        len(agent_nodes) + 1,
        sorted(agent_nodes.keys()),
    )
    return compiled
