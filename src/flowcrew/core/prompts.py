"""Prompt text handed to the Agent Runner.

Each agent turn gets a flow message: fixed working instructions, the
agent's position in the DAG, visit counts and the agent roster, followed
by a section chosen by the workflow's interaction mode.
"""

from __future__ import annotations

from .dag import FlowDag
from .goal import GoalMetadata
from .state import COORDINATOR, InteractionMode, WorkflowState, bare_agent_name

_PREAMBLE = """<UserInstructions>
REMEMBER: file references like @FILENAME.md mean you must read the file $currentWorkingDirectory/FILENAME.md in the workspace.

RIGHT NOW, you must read @GOAL.md, then work to achieve @GOAL.md;"""

_HUMAN_COMM_COORDINATOR = "if you want to tell me something, use ask_user_question to present structured questions;"

_HUMAN_COMM_AGENT = (
    "if you need something from the human partner, send a message to the coordinator; "
    "only the coordinator talks to the human."
)

_MESSAGING = (
    "You can send messages to other agents using send_message() (call check_outbox() first so you do not "
    "send the same message twice) and read messages using check_inbox()."
)

_PEEK = "You can use peek_message_bus() to monitor ALL inter-agent communication, both pending and read messages."

_WORK_FOCUS = "Critically, you must strictly do the work that you are an expert in, and leave other work to other agents."

_NAVIGATION = """## Message-Driven Navigation
Navigation between agents is driven by inter-agent messages:
- Send a message to an agent using send_message() to route work to them
- When you set status "agent-done", the system checks for pending messages and routes to the agent with the oldest unread message
- When no messages are pending, control returns to coordinator

## Your Position in the Workflow
Current agent: %CURRENT_AGENT%
Predecessors (can receive work from): %PREDECESSORS%
Successors (can pass work to): %SUCCESSORS%

## Visit Counts
%VISIT_COUNTS%

## All Agents
%AGENTS_LIST%

</UserInstructions>"""

_GUIDELINES = """# PRODUCTIVE WORK GUIDELINES
Status "working" is for substantial work that needs another turn. If your work is done, use status "agent-done" so the workflow can move forward.
Repeatedly calling update_workflow_state({status:"working"}) without doing real work creates infinite loops.

# WHAT HAPPENS AFTER "agent-done"
1. The system checks for pending messages and routes to the agent with the oldest unread message
2. If no messages are pending, control returns to coordinator
3. Your turn is over: STOP making tool calls
4. Do NOT call update_workflow_state again with the same status"""

_TAIL_COORDINATOR = (
    "IMPORTANT: You are the SOLE owner of GOAL.md checkboxes. When delegated work is confirmed complete, "
    "mark the corresponding checkbox by changing '- [ ]' to '- [x]'. Look for 'GOAL COMPLETE:' messages "
    "from agents as triggers."
)

_TAIL_AGENT = (
    "IMPORTANT: When you complete a task listed in GOAL.md, notify the coordinator: "
    'send_message({toAgent: "coordinator", body: "GOAL COMPLETE: [exact checkbox text from GOAL.md]"}). '
    "Do NOT edit GOAL.md yourself."
)

BRAINSTORMING_SECTION = "CRITICAL: think hard and ASK ME QUESTIONS BEFORE BUILDING\n"

SELF_DRIVE_SECTION = """# SELF-DRIVE MODE ACTIVE
You are running in Self-Drive mode. This means:
- NO human interaction is allowed at any point
- The ask_user_question and ask_user_work_gate tools DO NOT EXIST
- Skip the BRAINSTORMING step entirely - go directly to work
- Skip the WORK-GATE step entirely - it is implicitly approved
"""

SELF_DRIVE_PLAN = """- Your master plan starts at reading GOAL.md, then immediately delegate work to specialized agents
- Proceed directly: read GOAL.md -> delegate to agents -> verify -> complete
"""

BUILDING_SECTION = """# BUILDING MODE ACTIVE
You are running in Building mode. The brainstorming and work-gate phases are complete.
- The human partner has approved the definition; proceed directly to work
- Do NOT use ask_user_question or ask_user_work_gate during the building phase
- The retrospective phase is STILL ACTIVE; run it when all work is complete
"""

BUILDING_PLAN = """- Your master plan: read GOAL.md -> delegate to agents -> verify -> run retrospective -> complete
- When delegated work is done, send a message to the retrospective agent to start analysis
"""

CONTINUOUS_SECTION = """# CONTINUOUS MODE ACTIVE
You are running in Continuous Mode. This means:
- NO human interaction is allowed at any point
- The ask_user_question and ask_user_work_gate tools DO NOT EXIST
- Skip the BRAINSTORMING and WORK-GATE steps entirely
- Retrospectives are NEVER run in this mode
"""

CONTINUOUS_PLAN = """- Your master plan starts at reading GOAL.md, then immediately delegate work to specialized agents
- Proceed directly: read GOAL.md -> delegate to agents -> verify -> complete
- Do NOT send work to the retrospective agent
"""

# Mode -> (mode section, coordinator-only plan).
_MODE_SECTIONS: dict[str, tuple[str, str]] = {
    InteractionMode.SELF_DRIVE.value: (SELF_DRIVE_SECTION, SELF_DRIVE_PLAN),
    InteractionMode.CONTINUOUS.value: (CONTINUOUS_SECTION, CONTINUOUS_PLAN),
    InteractionMode.BUILDING.value: (BUILDING_SECTION, BUILDING_PLAN),
}


def mode_section_for_mode(mode: str) -> tuple[str, str]:
    """Return ``(mode_section, coordinator_plan)`` for an interaction mode.

    Unknown modes, including brainstorming, get the ask-questions-first
    section and no coordinator plan.
    """
    return _MODE_SECTIONS.get(mode, (BRAINSTORMING_SECTION, ""))


def _flow_template(agent: str) -> str:
    is_coordinator = agent == COORDINATOR
    parts = [
        _PREAMBLE,
        _HUMAN_COMM_COORDINATOR if is_coordinator else _HUMAN_COMM_AGENT,
        _MESSAGING,
    ]
    if is_coordinator:
        parts.append(_PEEK)
    parts.extend([_WORK_FOCUS, _NAVIGATION, _GUIDELINES, _TAIL_COORDINATOR if is_coordinator else _TAIL_AGENT])
    return "\n\n".join(parts)


def build_flow_message(dag: FlowDag, agent: str, visit_counts: dict[str, int]) -> str:
    """Render the base instructions for ``agent`` at its position in ``dag``."""
    agents = dag.all_agents()
    roster = [f"{name} <-- YOU ARE HERE" if name == agent else name for name in agents]
    replacements = {
        "%CURRENT_AGENT%": agent,
        "%PREDECESSORS%": ", ".join(dag.get_predecessors(agent)) or "(none - entry node)",
        "%SUCCESSORS%": ", ".join(dag.get_successors(agent)) or "(none - terminal node)",
        "%VISIT_COUNTS%": "\n".join(f"  {name}: {visit_counts.get(name, 0)} visits" for name in agents),
        "%AGENTS_LIST%": "\n".join(roster),
    }
    message = _flow_template(agent)
    for placeholder, value in replacements.items():
        message = message.replace(placeholder, value)
    return message


def compose_prompt(agent: str, flow_message: str, mode: str) -> str:
    section, plan = mode_section_for_mode(mode)
    prompt = flow_message + "\n\n" + section
    if agent == COORDINATOR and plan:
        prompt += plan
    return prompt


def build_multi_model_section(current_model: str, metadata: GoalMetadata, agent: str) -> str:
    """Tell a model that sibling models share its agent, or ``""`` if none do."""
    if not current_model:
        return ""
    specs = metadata.models_for_agent(agent)
    if len(specs) <= 1:
        return ""
    lines = [
        "",
        "## Multi-Model Agent Context",
        "",
        "You are running as part of a multi-model agent. Multiple models collaborate within this agent.",
        "",
        f"**Your identity:** {current_model}",
        "",
        "**Sibling models in this agent:**",
    ]
    for spec in specs:
        model_id = f"{agent}:{spec}"
        lines.append(f"  - {model_id}  <-- YOU" if model_id == current_model else f"  - {model_id}")
    lines.append("")
    lines.append('Use `send_message({toAgent: "<sibling-model-id>", body: "..."})` to message siblings.')
    return "\n".join(lines) + "\n"


def build_turn_notices(state: WorkflowState, agent: str) -> tuple[str, str]:
    """Nudges prepended and appended to a turn's prompt.

    Returns ``(prefix, suffix)`` built from unread inbox messages, open
    todos and unread outgoing messages.
    """
    pending = sum(1 for m in state.messages if not m.read and bare_agent_name(m.to_agent) == agent)
    prefix = ""
    if pending:
        prefix = f"\nYOU HAVE {pending} PENDING MESSAGE(S). YOU MUST CALL `check_inbox()` TO READ THEM.\n"

    suffix = ""
    open_todos = state.pending_todo_count()
    if open_todos:
        suffix += f"\nYou have {open_todos} pending TODO items. Please complete them before marking agent-done.\n"
    if agent != COORDINATOR and any(m.from_agent == agent and not m.read for m in state.messages):
        suffix += (
            "\nYou have sent messages that haven't been read yet. For the recipient agents to process them, "
            "you MUST yield control by calling update_workflow_state({status: 'agent-done'}).\n"
        )
    return prefix, suffix
