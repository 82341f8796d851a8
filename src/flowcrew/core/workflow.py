"""Workflow status state machine and human-question gates.

Statuses are ``working``, ``agent-done``, ``complete`` and
``waiting-for-human``.  There is no transition table; the rules are:

* a pending human question pins the status to ``waiting-for-human`` until
  the human answers, though task and progress notes still apply;
* an agent with open todos cannot declare itself done or complete;
* finishing (``agent-done``/``complete``) clears the current task.

Every rejection is returned to the calling agent as an ``"Error: ..."``
string and leaves the state untouched.
"""

from __future__ import annotations

from typing import Any, Callable, Iterable, TypeVar

from ..utils.logging import get_logger
from .errors import StateError
from .message import HUMAN_PARTNER, append_message
from .state import (
    COORDINATOR,
    VALID_STATUSES,
    InteractionMode,
    MultiChoiceQuestion,
    QuestionItem,
    StateStore,
    TodoItem,
    WorkflowState,
    WorkflowStatus,
)

logger = get_logger(__name__)

T = TypeVar("T")

WORK_GATE_QUESTION = "Is the definition complete? May I begin implementation?"
WORK_GATE_APPROVAL = "DEFINITION IS COMPLETE, BUILD MAY BEGIN"
WORK_GATE_DECLINE = "Not ready yet, need more clarification"

_FINISHING = (WorkflowStatus.AGENT_DONE.value, WorkflowStatus.COMPLETE.value)


def _coerce_question(item: QuestionItem | dict[str, Any]) -> QuestionItem:
    if isinstance(item, QuestionItem):
        return item
    return QuestionItem.model_validate(item)


def _coerce_todo(item: TodoItem | dict[str, Any]) -> TodoItem:
    if isinstance(item, TodoItem):
        return item
    return TodoItem.model_validate(item)


def format_todo_list(todos: list[TodoItem]) -> str:
    symbols = {"completed": "[x]", "in_progress": "[~]", "cancelled": "[-]"}
    lines = [f"{sum(1 for t in todos if t.status != 'completed')} todos"]
    lines.extend(f"-> {symbols.get(t.status, '[ ]')} {t.content} ({t.priority})" for t in todos)
    return "\n".join(lines)


class WorkflowStateMachine:
    """Status transitions and question gates for one workspace."""

    def __init__(self, store: StateStore) -> None:
        self.store = store

    def _transact(self, fn: Callable[[WorkflowState], T]) -> T | str:
        try:
            return self.store.update(fn)
        except StateError as exc:
            logger.warning("Workflow state unreadable: path=%s error=%s", self.store.path, exc)
            return "Error: Could not read state.json. Has the workflow been initialized?"

    def update_workflow_state(self, status: str = "", task: str = "", add_progress: str = "") -> str:
        """Apply a status, task and optional progress note from the current agent.

        Args:
            status: Requested status; surrounding quotes are ignored.
            task: Free text describing the agent's current activity.
            add_progress: Optional progress note appended to the log.

        Returns:
            A human-readable confirmation, or an ``"Error: ..."`` string.
        """
        requested = status.strip().strip("\"'")

        def apply(state: WorkflowState) -> str:
            agent = state.resolved_agent()
            preserved = state.status == WorkflowStatus.WAITING_FOR_HUMAN.value
            # A pending human gate suppresses any requested status, valid or not.
            if requested and not preserved and requested not in VALID_STATUSES:
                return f"Error: Invalid status '{requested}'. Must be one of: {', '.join(VALID_STATUSES)}"

            new_status = state.status if preserved or not requested else requested

            if new_status in _FINISHING:
                pending = state.pending_todo_count()
                if pending > 0:
                    logger.info(
                        "Status transition refused: agent=%s status=%s pending_todos=%d", agent, new_status, pending
                    )
                    return (
                        f"Error: Cannot transition to '{new_status}' with {pending} pending TODO items. "
                        "Please complete all TODO items first."
                    )

            state.status = new_status
            state.task = "" if new_status in _FINISHING else task
            if add_progress:
                state.add_progress(agent, add_progress)

            logger.info(
                "Workflow state updated: agent=%s status=%s preserved=%s", agent, state.status, preserved
            )
            if preserved:
                lines = [
                    f"Status is currently '{state.status}'. Waiting for human response. "
                    "Your task and progress notes were updated but status was preserved."
                ]
            else:
                lines = ["State updated successfully."]
            lines.append(f"  Status: {state.status}")
            if state.task:
                lines.append(f"  Current task: {state.task}")
            if add_progress:
                lines.append(f"  Added progress note: {add_progress}")
            lines.append(f"  Total progress notes: {len(state.progress)}")
            return "\n".join(lines)

        return self._transact(apply)

    def ask_user_question(self, questions: Iterable[QuestionItem | dict[str, Any]]) -> str:
        """Present structured multiple-choice questions to the human partner."""
        items = [_coerce_question(q) for q in questions]
        if not items:
            return "Error: At least one question is required"
        for i, item in enumerate(items, start=1):
            if not item.choices:
                return f"Error: Question {i} has no choices"

        def apply(state: WorkflowState) -> str:
            state.multi_choice_question = MultiChoiceQuestion(questions=items)
            state.human_message = items[0].question
            state.status = WorkflowStatus.WAITING_FOR_HUMAN.value
            logger.info("Questions presented: agent=%s count=%d", state.resolved_agent(), len(items))

            lines = [f"Presented {len(items)} question(s) to user:"]
            for i, item in enumerate(items, start=1):
                lines.append("")
                lines.append(f"Question {i}: {item.question}")
                lines.append(f"  Choices: {', '.join(item.choices)}")
                lines.append(f"  MultiSelect: {str(item.multi_select).lower()}")
            return "\n".join(lines)

        return self._transact(apply)

    def ask_user_work_gate(self, summary: str) -> str:
        """Ask the human to approve moving from definition into building."""
        if not summary or not summary.strip():
            return "Error: A summary of the agreed definition is required"

        question = f"{summary.strip()}\n\n{WORK_GATE_QUESTION}"

        def apply(state: WorkflowState) -> str:
            state.multi_choice_question = MultiChoiceQuestion(
                questions=[QuestionItem(question=question, choices=[WORK_GATE_APPROVAL, WORK_GATE_DECLINE])],
                is_work_gate=True,
            )
            state.human_message = question
            state.status = WorkflowStatus.WAITING_FOR_HUMAN.value
            logger.info("Work gate presented: agent=%s", state.resolved_agent())
            return (
                "Presented work gate question to user:\n\n"
                f"Question: {question}\n"
                f"  Choices: {WORK_GATE_APPROVAL}, {WORK_GATE_DECLINE}\n"
                "  MultiSelect: false"
            )

        return self._transact(apply)

    def answer_question(self, answer: str) -> bool:
        """Record the human's answer to the pending question.

        The answer is delivered to the coordinator as a message and the
        workflow resumes.  Approving a work gate flags the approval so the
        run loop can switch into building mode.

        Returns:
            True if a question was pending.
        """

        def apply(state: WorkflowState) -> bool:
            question = state.multi_choice_question
            if state.status != WorkflowStatus.WAITING_FOR_HUMAN.value and question is None:
                return False
            if question is not None and question.is_work_gate and WORK_GATE_APPROVAL in answer:
                state.work_gate_approved = True
            append_message(state, HUMAN_PARTNER, COORDINATOR, answer)
            state.multi_choice_question = None
            state.human_message = ""
            state.status = WorkflowStatus.WORKING.value
            logger.info("Human answer recorded: work_gate_approved=%s", state.work_gate_approved)
            return True

        return self.store.update(apply)

    def consume_work_gate_approval(self) -> bool:
        """Switch to building mode once the work gate has been approved."""

        def apply(state: WorkflowState) -> bool:
            if not state.work_gate_approved:
                return False
            state.work_gate_approved = False
            state.interaction_mode = InteractionMode.BUILDING.value
            return True

        approved = self.store.update(apply)
        if approved:
            logger.info("Work gate approved, switching to building mode: path=%s", self.store.path)
        return approved

    def write_todos(self, todos: Iterable[TodoItem | dict[str, Any]]) -> str:
        """Replace the current agent's todo list."""
        items = [_coerce_todo(t) for t in todos]

        def apply(state: WorkflowState) -> str:
            state.todos = items
            return format_todo_list(items)

        return self._transact(apply)

    def project_todo_write(self, todos: Iterable[TodoItem | dict[str, Any]]) -> str:
        """Replace the project-level todo list shared by all agents."""
        items = [_coerce_todo(t) for t in todos]

        def apply(state: WorkflowState) -> str:
            state.project_todos = items
            return format_todo_list(items)

        return self._transact(apply)

    def project_todo_read(self) -> str:
        try:
            state = self.store.load()
        except (FileNotFoundError, StateError):
            return "0 todos"
        return format_todo_list(state.project_todos)
