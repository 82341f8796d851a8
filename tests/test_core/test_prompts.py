"""Tests for prompt composition."""

from flowcrew.core.dag import COORDINATOR, parse_flow
from flowcrew.core.goal import GoalMetadata
from flowcrew.core.message import append_message
from flowcrew.core.prompts import (
    BRAINSTORMING_SECTION,
    BUILDING_PLAN,
    BUILDING_SECTION,
    CONTINUOUS_PLAN,
    CONTINUOUS_SECTION,
    SELF_DRIVE_SECTION,
    build_flow_message,
    build_multi_model_section,
    build_turn_notices,
    compose_prompt,
    mode_section_for_mode,
)
from flowcrew.core.state import TodoItem, WorkflowState


class TestFlowMessage:
    def test_position_and_roster(self, tmp_path):
        dag = parse_flow('"backend" -> "frontend"', tmp_path)
        message = build_flow_message(dag, "backend", {"backend": 2})
        assert "Current agent: backend" in message
        assert f"Predecessors (can receive work from): {COORDINATOR}" in message
        assert "Successors (can pass work to): frontend" in message
        assert "  backend: 2 visits" in message
        assert "  frontend: 0 visits" in message
        assert "backend <-- YOU ARE HERE" in message
        assert "%" not in message

    def test_coordinator_gets_peek_and_goal_ownership(self, tmp_path):
        dag = parse_flow("", tmp_path)
        message = build_flow_message(dag, COORDINATOR, {})
        assert "peek_message_bus()" in message
        assert "SOLE owner of GOAL.md checkboxes" in message
        assert "(none - entry node)" in message

    def test_other_agents_report_to_coordinator(self, tmp_path):
        dag = parse_flow("", tmp_path)
        message = build_flow_message(dag, "general-purpose", {})
        assert "peek_message_bus()" not in message
        assert "GOAL COMPLETE:" in message
        assert "(none - terminal node)" in message


class TestModeSections:
    def test_mode_lookup(self):
        assert mode_section_for_mode("brainstorming") == (BRAINSTORMING_SECTION, "")
        assert mode_section_for_mode("self-drive")[0] == SELF_DRIVE_SECTION
        assert mode_section_for_mode("building") == (BUILDING_SECTION, BUILDING_PLAN)
        assert mode_section_for_mode("continuous") == (CONTINUOUS_SECTION, CONTINUOUS_PLAN)
        assert mode_section_for_mode("unknown") == (BRAINSTORMING_SECTION, "")

    def test_plan_only_for_coordinator(self):
        coordinator = compose_prompt(COORDINATOR, "BASE", "continuous")
        worker = compose_prompt("backend", "BASE", "continuous")
        assert coordinator.startswith("BASE\n\n")
        assert CONTINUOUS_PLAN in coordinator
        assert CONTINUOUS_PLAN not in worker
        assert CONTINUOUS_SECTION in worker

    def test_continuous_plan_skips_retrospective(self):
        assert "Do NOT send work to the retrospective agent" in CONTINUOUS_PLAN


class TestMultiModelSection:
    def test_lists_siblings(self):
        meta = GoalMetadata(models={"backend": ["gpt", "claude"]})
        section = build_multi_model_section("backend:gpt", meta, "backend")
        assert "**Your identity:** backend:gpt" in section
        assert "backend:gpt  <-- YOU" in section
        assert "  - backend:claude" in section

    def test_empty_for_single_model_or_no_model(self):
        meta = GoalMetadata(models={"backend": "gpt"})
        assert build_multi_model_section("backend:gpt", meta, "backend") == ""
        assert build_multi_model_section("", GoalMetadata(models={"backend": ["a", "b"]}), "backend") == ""


class TestTurnNotices:
    def test_pending_messages_prefix(self):
        state = WorkflowState()
        append_message(state, COORDINATOR, "backend", "do it")
        append_message(state, COORDINATOR, "backend:gpt", "you too")
        prefix, suffix = build_turn_notices(state, "backend")
        assert "YOU HAVE 2 PENDING MESSAGE(S)" in prefix
        assert suffix == ""

    def test_todo_and_outbox_suffix(self):
        state = WorkflowState(todos=[TodoItem(content="x")])
        append_message(state, "backend", COORDINATOR, "done?")
        prefix, suffix = build_turn_notices(state, "backend")
        assert prefix == ""
        assert "You have 1 pending TODO items." in suffix
        assert "haven't been read yet" in suffix

    def test_coordinator_gets_no_outbox_nudge(self):
        state = WorkflowState()
        append_message(state, COORDINATOR, "backend", "go")
        _, suffix = build_turn_notices(state, COORDINATOR)
        assert suffix == ""
