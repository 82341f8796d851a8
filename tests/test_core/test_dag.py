"""Tests for flow parsing and DAG normalization."""

import pytest

from flowcrew.core.dag import (
    COORDINATOR,
    CRITIC_COUNCIL,
    FlowDag,
    determine_next_agent,
    ensure_critic_council_model,
    parse_flow,
)
from flowcrew.core.errors import FlowConfigError


class TestParseFlow:
    def test_empty_spec_yields_default_flow(self, tmp_path):
        dag = parse_flow("", tmp_path)
        assert dag.entry_nodes == [COORDINATOR]
        assert set(dag.nodes) == {COORDINATOR, "general-purpose", CRITIC_COUNCIL}
        assert dag.is_terminal("general-purpose")
        assert dag.get_successors(COORDINATOR) == ["general-purpose", CRITIC_COUNCIL]

    def test_auto_is_the_default_flow(self, tmp_path):
        assert parse_flow("auto", tmp_path).to_dot() == parse_flow("", tmp_path).to_dot()

    def test_literal_digraph(self, tmp_path):
        dag = parse_flow('digraph G { "coordinator" -> "backend"; "backend" -> "reviewer" }', tmp_path)
        assert dag.get_successors("backend") == ["reviewer"]
        assert dag.get_predecessors("reviewer") == ["backend"]
        assert dag.entry_nodes == [COORDINATOR]

    def test_strict_digraph_is_accepted(self, tmp_path):
        dag = parse_flow('strict digraph G { "coordinator" -> "backend" }', tmp_path)
        assert "backend" in dag.nodes

    def test_bare_fragment_is_wrapped(self, tmp_path):
        dag = parse_flow('"planner" -> "builder"', tmp_path)
        assert dag.entry_nodes == [COORDINATOR]
        assert "planner" in dag.get_successors(COORDINATOR)
        assert dag.get_successors("planner") == ["builder"]

    def test_file_reference(self, tmp_path):
        (tmp_path / "flows").mkdir()
        (tmp_path / "flows" / "team.dot").write_text('digraph G { "coordinator" -> "writer" }')
        dag = parse_flow("@flows/team.dot", tmp_path)
        assert "writer" in dag.nodes

    def test_missing_file_reference_raises(self, tmp_path):
        with pytest.raises(FlowConfigError):
            parse_flow("@missing.dot", tmp_path)

    def test_every_entry_node_is_linked_from_coordinator(self, tmp_path):
        dag = parse_flow('"a" -> "c"\n"b" -> "c"', tmp_path)
        assert dag.entry_nodes == [COORDINATOR]
        successors = dag.get_successors(COORDINATOR)
        assert "a" in successors
        assert "b" in successors

    def test_critic_council_edge_always_present(self, tmp_path):
        for spec in ("", '"x" -> "y"', 'digraph G { "coordinator" -> "z" }'):
            dag = parse_flow(spec, tmp_path)
            assert CRITIC_COUNCIL in dag.get_successors(COORDINATOR)
            assert COORDINATOR in dag.get_predecessors(CRITIC_COUNCIL)

    def test_duplicate_edges_are_collapsed(self, tmp_path):
        dag = parse_flow('"coordinator" -> "a"\n"coordinator" -> "a"', tmp_path)
        assert dag.get_successors(COORDINATOR).count("a") == 1

    def test_full_cycle_has_no_entry_nodes(self, tmp_path):
        with pytest.raises(FlowConfigError, match="no entry nodes"):
            parse_flow('"a" -> "b"\n"b" -> "a"', tmp_path)

    def test_cycle_below_an_entry_node_is_rejected(self, tmp_path):
        with pytest.raises(FlowConfigError, match="cycle detected"):
            parse_flow('"start" -> "a"\n"a" -> "b"\n"b" -> "a"', tmp_path)

    def test_acyclic_diamond_is_accepted(self, tmp_path):
        dag = parse_flow('"a" -> "b"\n"a" -> "c"\n"b" -> "d"\n"c" -> "d"', tmp_path)
        assert dag.is_terminal("d")
        assert sorted(dag.get_predecessors("d")) == ["b", "c"]


class TestFlowDagQueries:
    def test_next_agent_is_empty_only_for_terminal_nodes(self, tmp_path):
        dag = parse_flow('"a" -> "b"', tmp_path)
        assert determine_next_agent(dag, "b") == ""
        assert determine_next_agent(dag, "a") == COORDINATOR
        assert determine_next_agent(dag, COORDINATOR) == COORDINATOR

    def test_unknown_node_queries(self):
        dag = FlowDag()
        assert dag.get_successors("nobody") == []
        assert dag.get_predecessors("nobody") == []
        assert not dag.is_terminal("nobody")

    def test_successor_lists_are_copies(self, tmp_path):
        dag = parse_flow("", tmp_path)
        dag.get_successors(COORDINATOR).append("intruder")
        assert "intruder" not in dag.get_successors(COORDINATOR)

    def test_to_dot_is_stable_and_reparseable(self, tmp_path):
        dag = parse_flow('"b" -> "c"\n"a" -> "c"', tmp_path)
        dot = dag.to_dot()
        assert dot.startswith("strict digraph G {")
        assert '"coordinator" -> "a"' in dot
        again = parse_flow(dot, tmp_path)
        assert again.to_dot() == dot

    def test_all_agents_sorted(self, tmp_path):
        dag = parse_flow('"zeta" -> "alpha"', tmp_path)
        assert dag.all_agents() == sorted(dag.all_agents())

    def test_long_chain_is_acyclic(self):
        dag = FlowDag()
        for i in range(3000):
            dag.add_edge(f"agent-{i}", f"agent-{i + 1}")
        dag.detect_cycles()

    def test_long_chain_with_back_edge_is_rejected(self):
        dag = FlowDag()
        for i in range(3000):
            dag.add_edge(f"agent-{i}", f"agent-{i + 1}")
        dag.add_edge("agent-3000", "agent-0")
        with pytest.raises(FlowConfigError, match="cycle detected: agent-3000 -> agent-0"):
            dag.detect_cycles()


class TestCriticCouncilModel:
    def test_inherits_coordinator_model(self, tmp_path):
        dag = parse_flow("", tmp_path)
        models = ensure_critic_council_model(dag, {COORDINATOR: "anthropic/claude"})
        assert models[CRITIC_COUNCIL] == "anthropic/claude"

    def test_explicit_model_is_kept(self, tmp_path):
        dag = parse_flow("", tmp_path)
        models = ensure_critic_council_model(dag, {COORDINATOR: "m1", CRITIC_COUNCIL: "m2"})
        assert models[CRITIC_COUNCIL] == "m2"

    def test_no_coordinator_model_no_change(self, tmp_path):
        dag = parse_flow("", tmp_path)
        assert ensure_critic_council_model(dag, {}) == {}
