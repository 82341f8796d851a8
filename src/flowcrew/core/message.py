"""Per-workspace message bus for inter-agent communication.

Messages live in the workflow state document.  Sending appends a message,
reading the inbox flips the read flag, and nothing ever deletes a message.
Agent-to-agent navigation is driven by these messages: once an agent yields,
the workflow routes to whoever holds the oldest unread message.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, TypeVar

from ..utils.logging import format_text_preview, get_logger
from .dag import FlowDag, determine_next_agent
from .errors import StateError
from .state import COORDINATOR, Message, StateStore, WorkflowState, WorkflowStatus, bare_agent_name, utc_now

logger = get_logger(__name__)

T = TypeVar("T")

HUMAN_PARTNER = "Human Partner"
ENVIRONMENT = "environment"

NO_STATE_ERROR = "Error: Could not read state.json. Has the workflow been initialized?"
NO_MESSAGES = "You have no messages."
NO_SENT_MESSAGES = "You have not sent any messages."
EMPTY_BUS = "No messages in the system."

_YIELD_REMINDER = (
    "\n\nIMPORTANT: Since you are not the coordinator, consider yielding control back to the main loop "
    "using update_workflow_state({status: 'agent-done'}) after completing your message-related tasks."
)


def _addressed_to(msg: Message, agent: str, model: str) -> bool:
    return msg.to_agent == agent or (bool(model) and msg.to_agent == model)


def _sent_by(msg: Message, agent: str, model: str) -> bool:
    return msg.from_agent == agent or (bool(model) and msg.from_agent == model)


def _subject(body: str) -> str:
    return body.split("\n", 1)[0]


def append_message(state: WorkflowState, from_agent: str, to_agent: str, body: str) -> Message:
    """Append a new unread message with the next free id."""
    message = Message(
        id=state.next_message_id(),
        from_agent=from_agent,
        to_agent=to_agent,
        body=body,
        read=False,
        created_at=utc_now(),
    )
    state.messages.append(message)
    return message


def find_first_pending_message_agent(state: WorkflowState) -> str:
    """Bare name of the recipient of the oldest unread message, or ``""``."""
    for msg in state.messages:
        if not msg.read:
            return bare_agent_name(msg.to_agent)
    return ""


def find_human_partner_message(state: WorkflowState) -> Message | None:
    for msg in state.messages:
        if not msg.read and msg.from_agent == HUMAN_PARTNER:
            return msg
    return None


def has_unread_outgoing(state: WorkflowState, agent: str) -> bool:
    return any(msg.from_agent == agent and not msg.read for msg in state.messages)


def count_pending_for(state: WorkflowState, agent: str) -> int:
    return sum(1 for msg in state.messages if not msg.read and bare_agent_name(msg.to_agent) == agent)


class MessageBus:
    """Tool-call operations over the messages of one workspace.

    The caller's identity is taken from the state document: the active
    model variant (``agent:model``) when one is set, otherwise the current
    agent, defaulting to the coordinator.
    """

    def __init__(self, store: StateStore) -> None:
        self.store = store

    def _transact(self, fn: Callable[[WorkflowState], T]) -> T | str:
        if not self.store.exists:
            return NO_STATE_ERROR
        try:
            return self.store.update(fn)
        except StateError as exc:
            logger.warning("Message bus state unreadable: path=%s error=%s", self.store.path, exc)
            return NO_STATE_ERROR

    def send_message(self, to_agent: str, body: str) -> str:
        """Send ``body`` to ``to_agent`` on behalf of the current agent."""

        def apply(state: WorkflowState) -> str:
            current_agent = state.resolved_agent()
            from_agent = state.caller_identity()
            known_agents = sorted(state.visit_counts)
            if bare_agent_name(to_agent) not in known_agents:
                logger.info("Message rejected: from=%s to=%s reason=unknown_agent", from_agent, to_agent)
                return (
                    f"Error: Agent '{to_agent}' is not in the workflow. "
                    f"Valid agents are: {', '.join(known_agents)}"
                )

            message = append_message(state, from_agent, to_agent, body)
            logger.info(
                "Message sent: msg_id=%d from=%s to=%s body=%s",
                message.id,
                from_agent,
                to_agent,
                format_text_preview(body),
            )
            result = f"Message sent successfully to {to_agent}.\nFrom: {from_agent}\nTo: {to_agent}\nBody: {body}"
            if current_agent != COORDINATOR:
                result += _YIELD_REMINDER
            return result

        return self._transact(apply)

    def check_inbox(self) -> str:
        """Return unread messages for the caller and mark exactly those read."""

        def apply(state: WorkflowState) -> str:
            agent = state.resolved_agent()
            model = state.current_model
            reader = state.caller_identity()
            unread = [msg for msg in state.messages if not msg.read and _addressed_to(msg, agent, model)]
            if not unread:
                return NO_MESSAGES

            read_at = utc_now()
            for msg in unread:
                msg.read = True
                msg.read_at = read_at
                msg.read_by = reader
            logger.info("Inbox read: reader=%s count=%d", reader, len(unread))

            blocks = [
                f"Message {i}:\n  From: {msg.from_agent}\n  Body: {msg.body}"
                for i, msg in enumerate(unread, start=1)
            ]
            return f"You have {len(unread)} message(s):\n\n" + "\n\n".join(blocks)

        return self._transact(apply)

    def check_outbox(self) -> str:
        """List the caller's sent messages, split into pending and delivered."""
        try:
            state = self.store.load()
        except (FileNotFoundError, StateError):
            return NO_STATE_ERROR

        agent = state.resolved_agent()
        model = state.current_model
        sent = [msg for msg in state.messages if _sent_by(msg, agent, model)]
        if not sent:
            return NO_SENT_MESSAGES

        pending = [msg for msg in sent if not msg.read]
        delivered = [msg for msg in sent if msg.read]
        sections = []
        if pending:
            lines = [f"Pending messages ({len(pending)}):"]
            lines.extend(
                f"  {i}. To: {msg.to_agent} | Subject: {_subject(msg.body)}" for i, msg in enumerate(pending, start=1)
            )
            sections.append("\n".join(lines))
        if delivered:
            lines = [f"Delivered messages ({len(delivered)}):"]
            for i, msg in enumerate(delivered, start=1):
                read_status = f"Read at {msg.read_at}" if msg.read_at else "Unread"
                lines.append(f"  {i}. To: {msg.to_agent} | Subject: {_subject(msg.body)} | {read_status}")
            sections.append("\n".join(lines))
        return "\n\n".join(sections)

    def peek_message_bus(self) -> str:
        """List every message regardless of read state.  Coordinator only."""
        try:
            state = self.store.load()
        except (FileNotFoundError, StateError):
            return NO_STATE_ERROR

        if state.resolved_agent() != COORDINATOR:
            return "Error: peek_message_bus is only available to the coordinator."
        if not state.messages:
            return EMPTY_BUS

        blocks = []
        for i, msg in enumerate(state.messages, start=1):
            lines = [f"Message {i} (ID: {msg.id}):", f"  From: {msg.from_agent}", f"  To: {msg.to_agent}"]
            if msg.read:
                lines.append("  Status: read")
                if msg.read_at:
                    lines.append(f"  Read At: {msg.read_at}")
            else:
                lines.append("  Status: pending")
            lines.append(f"  Body: {msg.body}")
            blocks.append("\n".join(lines))
        return f"Total messages: {len(state.messages)}\n\n" + "\n\n".join(blocks)

    def post_human_message(self, body: str, to_agent: str = COORDINATOR) -> Message:
        """Record a message from the human partner, e.g. a steering note."""
        message = self.store.update(lambda state: append_message(state, HUMAN_PARTNER, to_agent, body))
        logger.info("Human message posted: msg_id=%d to=%s", message.id, to_agent)
        return message

    def mark_read(self, message_id: int, reader: str) -> bool:
        """Mark one message read on behalf of ``reader``.  Returns False if absent."""

        def apply(state: WorkflowState) -> bool:
            for msg in state.messages:
                if msg.id == message_id:
                    msg.read = True
                    msg.read_at = utc_now()
                    msg.read_by = reader
                    return True
            return False

        return self.store.update(apply)


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------

HANDOFF_AGENT = "flowcrew"


@dataclass
class Route:
    """Where control goes after an agent turn.

    An empty ``next_agent`` ends the run; ``handoff`` is False when the same
    agent simply takes another turn.
    """

    next_agent: str
    reason: str
    handoff: bool = True

    @property
    def finished(self) -> bool:
        return not self.next_agent


def route_after_agent(state: WorkflowState, dag: FlowDag, agent: str) -> Route:
    """Decide the next agent once ``agent`` has finished a turn.

    Unread messages take priority: control goes to the recipient of the
    oldest one.  Otherwise a yielding agent hands back to the coordinator.
    """
    pending = find_first_pending_message_agent(state)
    status = state.status

    if status == WorkflowStatus.COMPLETE.value:
        if pending:
            return Route(pending, "pending messages before completion")
        return Route("", "complete")

    if status == WorkflowStatus.WAITING_FOR_HUMAN.value:
        return Route("", "waiting for human")

    if status == WorkflowStatus.AGENT_DONE.value:
        if pending:
            return Route(pending, "oldest unread message")
        return Route(determine_next_agent(dag, agent) or COORDINATOR, "agent done")

    if status == WorkflowStatus.WORKING.value:
        sender = state.current_model or agent
        if has_unread_outgoing(state, sender) or has_unread_outgoing(state, agent):
            return Route(pending or COORDINATOR, "yielding after sending messages")
        return Route(agent, "still working", handoff=False)

    logger.warning("Unexpected workflow status, returning to coordinator: status=%s agent=%s", status, agent)
    return Route(COORDINATOR, f"unexpected status {status}")


def apply_handoff(state: WorkflowState, agent: str) -> None:
    """Make ``agent`` current: count the visit and log the handoff."""
    previous = state.current_agent
    if previous and previous != agent:
        state.todos = []
    state.current_agent = agent
    state.current_model = ""
    state.status = WorkflowStatus.WORKING.value
    state.visit_counts[agent] = state.visit_counts.get(agent, 0) + 1
    state.add_progress(HANDOFF_AGENT, f"Handing off to {agent}")
    state.mark_current_agent(agent)
