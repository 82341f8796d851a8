"""Workflow state document and its transactional file store.

There is exactly one JSON document per workspace.  Several independent
processes read and write it (tool-call handlers, the run loop, continuous
mode, viewers), so every mutation goes through :meth:`StateStore.update`,
which performs load, mutate and save as one critical section guarded by a
``filelock.FileLock``.  Documents are written to a temporary file and then
moved into place, so a reader never sees a partial write.
"""

from __future__ import annotations

import json
import os
import tempfile
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, TypeVar

from filelock import FileLock
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from ..utils.logging import get_logger
from .errors import StateError

logger = get_logger(__name__)

T = TypeVar("T")

COORDINATOR = "coordinator"


class WorkflowStatus(Enum):
    """Status values an agent may put the workflow into."""

    WORKING = "working"
    AGENT_DONE = "agent-done"
    COMPLETE = "complete"
    WAITING_FOR_HUMAN = "waiting-for-human"


VALID_STATUSES: list[str] = [status.value for status in WorkflowStatus]


class InteractionMode(Enum):
    """How much human interaction the workflow allows."""

    BRAINSTORMING = "brainstorming"
    BUILDING = "building"
    SELF_DRIVE = "self-drive"
    CONTINUOUS = "continuous"


def utc_now() -> str:
    """RFC3339 UTC timestamp with second precision."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def bare_agent_name(identity: str) -> str:
    """Strip the ``:model`` suffix from a multi-model identity."""
    return identity.split(":", 1)[0]


class _StateModel(BaseModel):
    """Base for persisted models: camelCase on disk, unknown keys preserved."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def to_document(self) -> dict[str, Any]:
        """Dump with camelCase keys, leaving out declared fields that are unset.

        Unknown keys are written back exactly as they were read, explicit
        nulls included.
        """
        data: dict[str, Any] = {}
        for name, info in type(self).model_fields.items():
            value = getattr(self, name)
            if value is not None:
                data[info.alias or to_camel(name)] = _document_value(value)
        data.update(self.model_extra or {})
        return data


def _document_value(value: Any) -> Any:
    if isinstance(value, _StateModel):
        return value.to_document()
    if isinstance(value, list):
        return [_document_value(item) for item in value]
    if isinstance(value, dict):
        return {key: _document_value(item) for key, item in value.items()}
    return value


class Message(_StateModel):
    id: int
    from_agent: str
    to_agent: str
    body: str = ""
    read: bool = False
    read_at: str | None = None
    read_by: str | None = None
    created_at: str | None = None


class ProgressEntry(_StateModel):
    timestamp: str
    agent: str
    description: str


class TodoItem(_StateModel):
    id: str = ""
    content: str = ""
    status: str = "pending"
    priority: str = "medium"

    @property
    def is_pending(self) -> bool:
        return self.status not in ("completed", "cancelled")


class QuestionItem(_StateModel):
    question: str
    choices: list[str] = Field(default_factory=list)
    multi_select: bool = False


class MultiChoiceQuestion(_StateModel):
    questions: list[QuestionItem] = Field(default_factory=list)
    is_work_gate: bool = False


class AgentSequenceEntry(_StateModel):
    agent: str
    start_time: str
    is_current: bool = False


class WorkflowState(_StateModel):
    """The shared, persisted state of one workspace's workflow."""

    status: str = WorkflowStatus.WORKING.value
    task: str = ""
    progress: list[ProgressEntry] = Field(default_factory=list)
    human_message: str = ""
    multi_choice_question: MultiChoiceQuestion | None = None
    messages: list[Message] = Field(default_factory=list)
    goal_checksum: str = ""
    visit_counts: dict[str, int] = Field(default_factory=dict)
    current_agent: str = ""
    current_model: str = ""
    todos: list[TodoItem] = Field(default_factory=list)
    project_todos: list[TodoItem] = Field(default_factory=list)
    agent_sequence: list[AgentSequenceEntry] = Field(default_factory=list)
    interaction_mode: str = InteractionMode.BRAINSTORMING.value
    work_gate_approved: bool = False

    def resolved_agent(self) -> str:
        return self.current_agent or COORDINATOR

    def caller_identity(self) -> str:
        """The model-variant identity when one is active, else the agent name."""
        return self.current_model or self.resolved_agent()

    def add_progress(self, agent: str, description: str) -> ProgressEntry:
        entry = ProgressEntry(timestamp=utc_now(), agent=agent, description=description)
        self.progress.append(entry)
        return entry

    def next_message_id(self) -> int:
        return max((m.id for m in self.messages), default=0) + 1

    def pending_todo_count(self) -> int:
        return sum(1 for todo in self.todos if todo.is_pending)

    def mark_current_agent(self, agent: str) -> None:
        """Record ``agent`` as the current entry in the agent sequence."""
        if self.agent_sequence and self.agent_sequence[-1].agent == agent:
            self.agent_sequence[-1].is_current = True
            return
        for entry in self.agent_sequence:
            entry.is_current = False
        self.agent_sequence.append(AgentSequenceEntry(agent=agent, start_time=utc_now(), is_current=True))

    def to_json(self) -> str:
        return json.dumps(self.to_document(), indent=2)

    @classmethod
    def from_json(cls, text: str) -> WorkflowState:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise StateError(f"invalid state JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise StateError("state document must be a JSON object")
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise StateError(f"invalid state document: {exc}") from exc


class StateStore:
    """Transactional accessor for a workspace's ``state.json``.

    Args:
        path: Location of the state document.
        lock_timeout: Seconds to wait for the file lock before giving up.
    """

    def __init__(self, path: str | Path, lock_timeout: float = 10.0) -> None:
        self.path = Path(path)
        self._lock = FileLock(str(self.path) + ".lock", timeout=lock_timeout)

    @property
    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> WorkflowState:
        """Read the document.

        Raises:
            FileNotFoundError: If no state has been written yet.
            StateError: If the document is unreadable or malformed.
        """
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise
        except OSError as exc:
            raise StateError(f"failed to read {self.path}: {exc}") from exc
        return WorkflowState.from_json(text)

    def load_or_default(self) -> WorkflowState:
        try:
            return self.load()
        except FileNotFoundError:
            return WorkflowState()

    def save(self, state: WorkflowState) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            self._write(state)

    def delete(self) -> None:
        with self._lock:
            self.path.unlink(missing_ok=True)

    def update(self, fn: Callable[[WorkflowState], T], *, recover: bool = False) -> T:
        """Apply ``fn`` to the current state as one atomic transaction.

        The document is rewritten only if ``fn`` changed it.  When
        ``recover`` is set, a corrupt document is replaced by an empty
        coordinator-owned state instead of raising.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            try:
                state = self.load_or_default()
            except StateError:
                if not recover:
                    raise
                logger.warning("State document unreadable, starting fresh: path=%s", self.path)
                state = WorkflowState(current_agent=COORDINATOR)
            before = state.model_copy(deep=True)
            result = fn(state)
            if state != before or not self.path.exists():
                self._write(state)
            return result

    def _write(self, state: WorkflowState) -> None:
        fd, tmp_name = tempfile.mkstemp(prefix=".state-", suffix=".json", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(state.to_json())
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


def init_visit_counts(agents: list[str]) -> dict[str, int]:
    return {agent: 0 for agent in agents}
