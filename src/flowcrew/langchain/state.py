"""Graph state flowing through the LangGraph workflow run loop."""

from __future__ import annotations

from typing_extensions import TypedDict


class FlowGraphState(TypedDict, total=False):
    """Routing bookkeeping passed between LangGraph nodes.

    The authoritative workflow state lives in the workspace's JSON
    document; this dict only carries what the router needs between steps.
    """

    # Workspace directory the run belongs to
    workspace: str

    # Agent whose turn just finished ("" before the first turn)
    last_agent: str

    # Set by the router, consumed by the conditional edge ("" ends the run)
    next_agent: str

    # Why the router picked ``next_agent``
    route_reason: str

    # Outcome of the last Agent Runner invocation ("ok" or an error)
    last_result: str

    # Number of agent turns taken, guards against endless loops
    iteration: int
