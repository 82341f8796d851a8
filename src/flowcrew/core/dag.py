"""Agent execution topology: flow parsing, normalization and queries.

A flow is written in Graphviz DOT.  Whatever the author declares, the
resulting DAG always has ``coordinator`` as its single entry node and a
``coordinator -> project-critic-council`` edge, and it never contains a
cycle.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator

import pydot

from ..utils.logging import get_logger
from .errors import FlowConfigError

logger = get_logger(__name__)

COORDINATOR = "coordinator"
CRITIC_COUNCIL = "project-critic-council"
DEFAULT_FLOW = 'digraph G {\n"coordinator" -> "general-purpose"\n}'

# Attribute statements that pydot reports as pseudo-nodes.
_DOT_KEYWORDS = frozenset({"node", "edge", "graph"})


@dataclass
class DagNode:
    """One agent in the flow, linked to its neighbours by name only."""

    name: str
    predecessors: list[str] = field(default_factory=list)
    successors: list[str] = field(default_factory=list)


@dataclass
class FlowDag:
    """Name-indexed agent graph with derived entry nodes."""

    nodes: dict[str, DagNode] = field(default_factory=dict)
    entry_nodes: list[str] = field(default_factory=list)

    def ensure_node(self, name: str) -> DagNode:
        node = self.nodes.get(name)
        if node is None:
            node = DagNode(name=name)
            self.nodes[name] = node
        return node

    def add_edge(self, src: str, dst: str) -> None:
        src_node = self.ensure_node(src)
        dst_node = self.ensure_node(dst)
        if dst not in src_node.successors:
            src_node.successors.append(dst)
        if src not in dst_node.predecessors:
            dst_node.predecessors.append(src)

    def compute_entry_nodes(self) -> list[str]:
        self.entry_nodes = sorted(name for name, node in self.nodes.items() if not node.predecessors)
        return self.entry_nodes

    # -- Normalization -------------------------------------------------------

    def inject_coordinator_edges(self) -> None:
        """Make ``coordinator`` the sole entry node.

        Every original entry node gets an incoming edge from the
        coordinator, not just the first one.
        """
        if self.entry_nodes == [COORDINATOR]:
            return
        original_entries = list(self.entry_nodes)
        coordinator = self.ensure_node(COORDINATOR)
        for entry in original_entries:
            if entry == COORDINATOR:
                continue
            self.add_edge(COORDINATOR, entry)
        coordinator.successors.sort()
        self.compute_entry_nodes()
        logger.debug("Coordinator edges injected: entries=%s", original_entries)

    def inject_critic_council_edge(self) -> None:
        coordinator = self.ensure_node(COORDINATOR)
        self.add_edge(COORDINATOR, CRITIC_COUNCIL)
        coordinator.successors.sort()

    def detect_cycles(self) -> None:
        """Raise :class:`FlowConfigError` naming the first back edge found."""
        visited: set[str] = set()
        on_stack: set[str] = set()

        # Iterative so long agent chains cannot exhaust the interpreter stack.
        for root in sorted(self.nodes):
            if root in visited:
                continue
            visited.add(root)
            on_stack.add(root)
            stack: list[tuple[str, Iterator[str]]] = [(root, iter(self.nodes[root].successors))]
            while stack:
                name, successors = stack[-1]
                for successor in successors:
                    if successor not in visited:
                        visited.add(successor)
                        on_stack.add(successor)
                        stack.append((successor, iter(self.nodes[successor].successors)))
                        break
                    if successor in on_stack:
                        raise FlowConfigError(f"cycle detected: {name} -> {successor}")
                else:
                    on_stack.discard(name)
                    stack.pop()

    # -- Queries -------------------------------------------------------------

    def get_successors(self, name: str) -> list[str]:
        node = self.nodes.get(name)
        return list(node.successors) if node else []

    def get_predecessors(self, name: str) -> list[str]:
        node = self.nodes.get(name)
        return list(node.predecessors) if node else []

    def is_terminal(self, name: str) -> bool:
        node = self.nodes.get(name)
        return node is not None and not node.successors

    def all_agents(self) -> list[str]:
        return sorted(self.nodes)

    def to_dot(self) -> str:
        """Render the DAG back to DOT with a stable ordering."""
        agents = self.all_agents()
        lines = ["strict digraph G {", "    rankdir=LR;"]
        lines.extend(f'    "{name}"' for name in agents)
        for name in agents:
            for successor in sorted(self.nodes[name].successors):
                lines.append(f'    "{name}" -> "{successor}"')
        lines.append("}")
        return "\n".join(lines)


def determine_next_agent(dag: FlowDag, current_agent: str) -> str:
    """Every non-terminal handoff returns to the coordinator hub."""
    if dag.is_terminal(current_agent):
        return ""
    return COORDINATOR


def _resolve_flow_text(flow_spec: str, workspace_dir: str | Path) -> str:
    spec = flow_spec.strip()
    if spec in ("", "auto"):
        return DEFAULT_FLOW
    if spec.startswith(("digraph", "strict digraph")):
        return spec
    if spec.startswith("@"):
        flow_file = Path(workspace_dir) / spec[1:]
        try:
            return flow_file.read_text(encoding="utf-8")
        except OSError as exc:
            raise FlowConfigError(f"failed to read flow file {spec[1:]}: {exc}") from exc
    return "digraph G {\n" + spec + "\n}"


def _unquote(name: str) -> str:
    return name.strip().strip('"')


def _walk_graphs(graph: Any) -> Iterator[Any]:
    yield graph
    for subgraph in graph.get_subgraph_list():
        yield from _walk_graphs(subgraph)


def _load_dot(text: str) -> FlowDag:
    try:
        graphs = pydot.graph_from_dot_data(text)
    except Exception as exc:
        raise FlowConfigError(f"failed to parse flow: {exc}") from exc
    if not graphs:
        raise FlowConfigError("failed to parse flow: no graph found in DOT text")

    dag = FlowDag()
    for graph in _walk_graphs(graphs[0]):
        for node in graph.get_nodes():
            name = _unquote(node.get_name())
            if name and name not in _DOT_KEYWORDS:
                dag.ensure_node(name)
        for edge in graph.get_edges():
            src, dst = edge.get_source(), edge.get_destination()
            if not isinstance(src, str) or not isinstance(dst, str):
                raise FlowConfigError("failed to parse flow: subgraph edge endpoints are not supported")
            dag.add_edge(_unquote(src), _unquote(dst))
    return dag


def parse_flow(flow_spec: str, workspace_dir: str | Path = ".") -> FlowDag:
    """Build a normalized, validated DAG from a flow specification.

    Args:
        flow_spec: ``""``/``"auto"`` for the default flow, literal DOT text,
            ``@relative/path`` to a DOT file, or a bare edge fragment.
        workspace_dir: Directory that ``@`` references are resolved against.

    Returns:
        The normalized :class:`FlowDag`.

    Raises:
        FlowConfigError: If the text cannot be parsed, no entry node exists,
            or the normalized graph contains a cycle.
    """
    dag = _load_dot(_resolve_flow_text(flow_spec, workspace_dir))

    if not dag.compute_entry_nodes():
        raise FlowConfigError("no entry nodes found in DAG (all nodes have predecessors, which implies a cycle)")

    dag.inject_coordinator_edges()
    dag.inject_critic_council_edge()
    dag.detect_cycles()

    logger.info("Flow parsed: nodes=%d entry=%s", len(dag.nodes), dag.entry_nodes)
    return dag


def ensure_critic_council_model(dag: FlowDag, models: dict[str, Any]) -> dict[str, Any]:
    """Give the critic council the coordinator's model when it has none."""
    if CRITIC_COUNCIL in dag.nodes and CRITIC_COUNCIL not in models and COORDINATOR in models:
        models[CRITIC_COUNCIL] = models[COORDINATOR]
    return models
