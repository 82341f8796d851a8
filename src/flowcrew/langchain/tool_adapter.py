"""Exposes the agent tool-call surface as LangChain StructuredTools.

Every tool returns a plain string: either a confirmation or an
``"Error: ..."`` message the calling agent can act on.  Tool failures are
never raised to the agent framework.
"""

from __future__ import annotations

from typing import Any

from langchain_core.tools import StructuredTool
from pydantic import BaseModel, Field

from ..core.message import MessageBus
from ..core.workflow import WorkflowStateMachine
from ..utils.logging import get_logger

logger = get_logger(__name__)


class SendMessageSchema(BaseModel):
    to_agent: str = Field(description="Name of the receiving agent (or agent:model for a sibling model).")
    body: str = Field(description="Message body. The first line is used as its subject.")


class EmptySchema(BaseModel):
    """Tools that take no arguments."""


class UpdateWorkflowStateSchema(BaseModel):
    status: str = Field(
        default="",
        description="One of: working, agent-done, complete, waiting-for-human. Empty keeps the current status.",
    )
    task: str = Field(default="", description="What you are currently doing.")
    add_progress: str = Field(default="", description="Optional note appended to the progress log.")


class QuestionSchema(BaseModel):
    question: str = Field(description="The question text.")
    choices: list[str] = Field(default_factory=list, description="Answer choices; at least one is required.")
    multi_select: bool = Field(default=False, description="Whether several choices may be selected.")


class AskUserQuestionSchema(BaseModel):
    questions: list[QuestionSchema] = Field(description="Questions to present to the human partner.")


class AskUserWorkGateSchema(BaseModel):
    summary: str = Field(description="Summary of the agreed definition of the work.")


class TodoSchema(BaseModel):
    id: str = Field(default="", description="Stable identifier of the item.")
    content: str = Field(description="What needs to be done.")
    status: str = Field(default="pending", description="pending, in_progress, completed or cancelled.")
    priority: str = Field(default="medium", description="high, medium or low.")


class TodoWriteSchema(BaseModel):
    todos: list[TodoSchema] = Field(description="The complete, updated todo list.")


def _dump(items: list[Any]) -> list[dict[str, Any]]:
    return [item.model_dump() if isinstance(item, BaseModel) else dict(item) for item in items]


def create_workflow_tools(
    bus: MessageBus,
    machine: WorkflowStateMachine,
    *,
    interactive: bool = True,
) -> list[StructuredTool]:
    """Create the tools agents use to message each other and steer the workflow.

    Args:
        bus: Message bus of the workspace.
        machine: Status machine of the workspace.
        interactive: Include the human-question tools.  Self-drive and
            continuous runs leave them out.

    Returns:
        List of :class:`~langchain_core.tools.StructuredTool` instances.
    """

    def send_message(to_agent: str, body: str) -> str:
        return bus.send_message(to_agent, body)

    def check_inbox() -> str:
        return bus.check_inbox()

    def check_outbox() -> str:
        return bus.check_outbox()

    def peek_message_bus() -> str:
        return bus.peek_message_bus()

    def update_workflow_state(status: str = "", task: str = "", add_progress: str = "") -> str:
        return machine.update_workflow_state(status=status, task=task, add_progress=add_progress)

    def ask_user_question(questions: list[Any]) -> str:
        return machine.ask_user_question(_dump(questions))

    def ask_user_work_gate(summary: str) -> str:
        return machine.ask_user_work_gate(summary)

    def todo_write(todos: list[Any]) -> str:
        return machine.write_todos(_dump(todos))

    def project_todo_write(todos: list[Any]) -> str:
        return machine.project_todo_write(_dump(todos))

    def project_todo_read() -> str:
        return machine.project_todo_read()

    tools = [
        StructuredTool.from_function(
            func=send_message,
            name="send_message",
            description="Send a message to another agent in the workflow.",
            args_schema=SendMessageSchema,
        ),
        StructuredTool.from_function(
            func=check_inbox,
            name="check_inbox",
            description="Read your unread messages. They are marked read.",
            args_schema=EmptySchema,
        ),
        StructuredTool.from_function(
            func=check_outbox,
            name="check_outbox",
            description="List messages you have sent, pending and delivered.",
            args_schema=EmptySchema,
        ),
        StructuredTool.from_function(
            func=peek_message_bus,
            name="peek_message_bus",
            description="Coordinator only: list every message in the system.",
            args_schema=EmptySchema,
        ),
        StructuredTool.from_function(
            func=update_workflow_state,
            name="update_workflow_state",
            description="Set the workflow status, your current task and an optional progress note.",
            args_schema=UpdateWorkflowStateSchema,
        ),
        StructuredTool.from_function(
            func=todo_write,
            name="todo_write",
            description="Replace your own todo list.",
            args_schema=TodoWriteSchema,
        ),
        StructuredTool.from_function(
            func=project_todo_write,
            name="project_todo_write",
            description="Replace the project-level todo list shared by all agents.",
            args_schema=TodoWriteSchema,
        ),
        StructuredTool.from_function(
            func=project_todo_read,
            name="project_todo_read",
            description="Read the project-level todo list.",
            args_schema=EmptySchema,
        ),
    ]
    if interactive:
        tools.extend(
            [
                StructuredTool.from_function(
                    func=ask_user_question,
                    name="ask_user_question",
                    description="Present structured multiple-choice questions to the human partner.",
                    args_schema=AskUserQuestionSchema,
                ),
                StructuredTool.from_function(
                    func=ask_user_work_gate,
                    name="ask_user_work_gate",
                    description="Ask the human partner to approve moving from definition to building.",
                    args_schema=AskUserWorkGateSchema,
                ),
            ]
        )
    logger.debug("Workflow tools created: count=%d names=%s", len(tools), [t.name for t in tools])
    return tools
