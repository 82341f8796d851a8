"""Tests for the LangGraph run-loop builder."""

from langgraph.graph import END

from flowcrew.langchain.graph import ROUTER_NODE, _route_from_router, build_flow_graph


class TestRouteFromRouter:
    def test_empty_next_agent_ends(self):
        assert _route_from_router({}) == END
        assert _route_from_router({"next_agent": ""}) == END

    def test_next_agent_is_the_node(self):
        assert _route_from_router({"next_agent": "backend"}) == "backend"


class TestBuildFlowGraph:
    def test_router_drives_agents_until_done(self):
        plan = ["coordinator", "backend", "coordinator"]
        visited = []

        def router(state):
            step = len(visited)
            if step >= len(plan):
                return {"next_agent": "", "route_reason": "complete"}
            return {"next_agent": plan[step], "route_reason": "next"}

        def make_node(name):
            def node(state):
                visited.append(name)
                return {"last_agent": name, "iteration": state.get("iteration", 0) + 1}

            return node

        graph = build_flow_graph({"coordinator": make_node("coordinator"), "backend": make_node("backend")}, router)
        final = graph.invoke({"workspace": "/tmp/ws", "iteration": 0})

        assert visited == plan
        assert final["iteration"] == 3
        assert final["last_agent"] == "coordinator"
        assert final["route_reason"] == "complete"
        assert final["workspace"] == "/tmp/ws"

    def test_router_can_end_immediately(self):
        graph = build_flow_graph(
            {"coordinator": lambda state: {"last_agent": "coordinator"}},
            lambda state: {"next_agent": "", "route_reason": "waiting for human"},
        )
        final = graph.invoke({"iteration": 0})
        assert "last_agent" not in final
        assert final["route_reason"] == "waiting for human"

    def test_graph_contains_router_and_agents(self):
        graph = build_flow_graph(
            {"coordinator": lambda state: {}, "qa": lambda state: {}},
            lambda state: {"next_agent": ""},
        )
        nodes = set(graph.get_graph().nodes)
        assert {ROUTER_NODE, "coordinator", "qa"} <= nodes
