"""Tests for the workflow state document and its store."""

import json
import threading

import pytest

from flowcrew.core.errors import StateError
from flowcrew.core.state import (
    COORDINATOR,
    Message,
    StateStore,
    TodoItem,
    WorkflowState,
    WorkflowStatus,
    bare_agent_name,
    init_visit_counts,
)


class TestWorkflowState:
    def test_defaults(self):
        state = WorkflowState()
        assert state.status == WorkflowStatus.WORKING.value
        assert state.messages == []
        assert state.resolved_agent() == COORDINATOR
        assert state.caller_identity() == COORDINATOR

    def test_caller_identity_prefers_model(self):
        state = WorkflowState(current_agent="backend", current_model="backend:gpt")
        assert state.resolved_agent() == "backend"
        assert state.caller_identity() == "backend:gpt"

    def test_json_uses_camel_case(self):
        state = WorkflowState(current_agent="a", goal_checksum="abc", visit_counts={"a": 1})
        data = json.loads(state.to_json())
        assert data["currentAgent"] == "a"
        assert data["goalChecksum"] == "abc"
        assert data["visitCounts"] == {"a": 1}
        assert "multiChoiceQuestion" not in data

    def test_unknown_fields_survive_round_trip(self):
        raw = {
            "status": "agent-done",
            "futureField": {"nested": [1, 2]},
            "messages": [{"id": 1, "fromAgent": "a", "toAgent": "b", "body": "hi", "read": False, "extra": "x"}],
        }
        state = WorkflowState.from_json(json.dumps(raw))
        data = json.loads(state.to_json())
        assert data["futureField"] == {"nested": [1, 2]}
        assert data["messages"][0]["extra"] == "x"
        assert data["status"] == "agent-done"

    def test_unknown_null_fields_survive_round_trip(self):
        raw = {
            "futureField": None,
            "messages": [{"id": 1, "fromAgent": "a", "toAgent": "b", "extraNull": None, "readAt": None}],
        }
        data = json.loads(WorkflowState.from_json(json.dumps(raw)).to_json())
        assert "futureField" in data and data["futureField"] is None
        message = data["messages"][0]
        assert "extraNull" in message and message["extraNull"] is None
        # Declared optional fields are still left out while unset.
        assert "readAt" not in message
        assert "multiChoiceQuestion" not in data

    def test_missing_fields_take_defaults(self):
        state = WorkflowState.from_json("{}")
        assert state.status == "working"
        assert state.visit_counts == {}

    def test_invalid_json_raises_state_error(self):
        with pytest.raises(StateError):
            WorkflowState.from_json("{not json")

    def test_non_object_raises_state_error(self):
        with pytest.raises(StateError):
            WorkflowState.from_json("[1, 2]")

    def test_next_message_id_is_max_plus_one(self):
        state = WorkflowState(
            messages=[
                Message(id=3, from_agent="a", to_agent="b"),
                Message(id=7, from_agent="a", to_agent="b"),
            ]
        )
        assert state.next_message_id() == 8
        assert WorkflowState().next_message_id() == 1

    def test_pending_todos_exclude_completed_and_cancelled(self):
        state = WorkflowState(
            todos=[
                TodoItem(content="a", status="pending"),
                TodoItem(content="b", status="in_progress"),
                TodoItem(content="c", status="completed"),
                TodoItem(content="d", status="cancelled"),
            ]
        )
        assert state.pending_todo_count() == 2

    def test_mark_current_agent(self):
        state = WorkflowState()
        state.mark_current_agent("a")
        state.mark_current_agent("a")
        state.mark_current_agent("b")
        assert [e.agent for e in state.agent_sequence] == ["a", "b"]
        assert [e.is_current for e in state.agent_sequence] == [False, True]


class TestHelpers:
    def test_bare_agent_name(self):
        assert bare_agent_name("backend:openai/gpt") == "backend"
        assert bare_agent_name("backend") == "backend"

    def test_init_visit_counts(self):
        assert init_visit_counts(["a", "b"]) == {"a": 0, "b": 0}


class TestStateStore:
    def test_load_missing_raises_file_not_found(self, tmp_path):
        store = StateStore(tmp_path / ".flowcrew" / "state.json")
        with pytest.raises(FileNotFoundError):
            store.load()
        assert store.load_or_default() == WorkflowState()

    def test_save_and_load(self, tmp_path):
        store = StateStore(tmp_path / ".flowcrew" / "state.json")
        store.save(WorkflowState(task="build"))
        assert store.load().task == "build"

    def test_update_keeps_null_unknown_fields_on_disk(self, tmp_path):
        store = StateStore(tmp_path / "state.json")
        store.path.write_text(json.dumps({"task": "a", "futureField": None}))
        store.update(lambda s: setattr(s, "task", "b"))
        data = json.loads(store.path.read_text())
        assert data["task"] == "b"
        assert "futureField" in data and data["futureField"] is None

    def test_update_persists_changes(self, tmp_path):
        store = StateStore(tmp_path / "state.json")
        result = store.update(lambda s: setattr(s, "task", "x") or "done")
        assert result == "done"
        assert store.load().task == "x"

    def test_update_without_change_does_not_rewrite(self, tmp_path):
        store = StateStore(tmp_path / "state.json")
        store.save(WorkflowState(task="x"))
        inode = store.path.stat().st_ino
        assert store.update(lambda s: s.task) == "x"
        # An atomic rewrite would replace the file with a new inode.
        assert store.path.stat().st_ino == inode
        store.update(lambda s: setattr(s, "task", "y"))
        assert store.path.stat().st_ino != inode

    def test_update_corrupt_raises_unless_recover(self, tmp_path):
        store = StateStore(tmp_path / "state.json")
        store.path.write_text("garbage")
        with pytest.raises(StateError):
            store.update(lambda s: None)
        store.update(lambda s: setattr(s, "task", "fresh"), recover=True)
        state = store.load()
        assert state.task == "fresh"
        assert state.current_agent == COORDINATOR

    def test_delete(self, tmp_path):
        store = StateStore(tmp_path / "state.json")
        store.save(WorkflowState())
        store.delete()
        assert not store.exists
        store.delete()

    def test_no_temp_files_left_behind(self, tmp_path):
        store = StateStore(tmp_path / "state.json")
        store.save(WorkflowState())
        store.update(lambda s: setattr(s, "task", "y"))
        leftovers = [p.name for p in tmp_path.iterdir() if p.name.startswith(".state-")]
        assert leftovers == []

    def test_concurrent_updates_are_not_lost(self, tmp_path):
        store = StateStore(tmp_path / "state.json")
        store.save(WorkflowState(visit_counts={"a": 0}))

        def bump():
            for _ in range(20):
                store.update(lambda s: s.visit_counts.__setitem__("a", s.visit_counts["a"] + 1))

        threads = [threading.Thread(target=bump) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert store.load().visit_counts["a"] == 80
