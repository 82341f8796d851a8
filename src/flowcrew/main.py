"""CLI entry point for flowcrew."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import signal
import sys
from pathlib import Path

from .config import ProjectConfig
from .core.errors import FlowcrewError
from .core.message import count_pending_for
from .core.orchestrator import Orchestrator
from .core.state import COORDINATOR, WorkflowState
from .utils.logging import configure_logging, get_logger

logger = get_logger(__name__)


def _setup_logging(workspace: Path) -> ProjectConfig:
    """Load the workspace config and send logs under its state directory."""
    config = ProjectConfig.load(workspace)
    log_dir = Path(config.logging.log_dir)
    if not log_dir.is_absolute():
        log_dir = workspace / config.state_dir / log_dir
    configure_logging(dataclasses.replace(config.logging, log_dir=str(log_dir)), workspace=workspace)
    return config


def format_status(state: WorkflowState) -> str:
    """Render a short, human-readable summary of the workflow state."""
    lines = [
        f"Status: {state.status}",
        f"Mode: {state.interaction_mode}",
        f"Current agent: {state.resolved_agent()}",
    ]
    if state.current_model:
        lines.append(f"Current model: {state.current_model}")
    if state.task:
        lines.append(f"Task: {state.task}")
    unread = sum(1 for m in state.messages if not m.read)
    lines.append(f"Messages: {len(state.messages)} total, {unread} unread")
    if state.visit_counts:
        lines.append("Visits:")
        lines.extend(f"  {agent}: {count}" for agent, count in sorted(state.visit_counts.items()))
    if state.multi_choice_question is not None:
        lines.append("Pending question:")
        for item in state.multi_choice_question.questions:
            lines.append(f"  {item.question}")
            lines.extend(f"    - {choice}" for choice in item.choices)
    elif state.human_message:
        lines.append(f"Pending question: {state.human_message}")
    if state.progress:
        last = state.progress[-1]
        lines.append(f"Last progress: [{last.agent}] {last.description}")
    return "\n".join(lines)


async def _run_continuous(orchestrator: Orchestrator, workspace: Path) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, orchestrator.stop_continuous, workspace)
        except (NotImplementedError, RuntimeError):
            pass
    await orchestrator.start_continuous(workspace)


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and run the requested command.

    Returns:
        Process exit code: 0 on success, 1 on a fatal error.
    """
    parser = argparse.ArgumentParser(
        prog="flowcrew",
        description="flowcrew - DAG-driven orchestration of cooperating AI agents",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Start or resume the workflow of a workspace")
    run_parser.add_argument("workspace", help="Workspace directory containing GOAL.md")
    run_parser.add_argument("--fresh", action="store_true", help="Discard existing state and start over")
    run_parser.add_argument(
        "--auto",
        action="store_true",
        help="Self-drive: run without asking the human partner any questions",
    )

    continuous_parser = subparsers.add_parser("continuous", help="Run the workspace in continuous mode")
    continuous_parser.add_argument("workspace", help="Workspace directory containing GOAL.md")

    dag_parser = subparsers.add_parser("dag", help="Print the normalized workflow DAG as DOT")
    dag_parser.add_argument("workspace", help="Workspace directory containing GOAL.md")
    dag_parser.add_argument("--flow", default=None, help="Flow spec to use instead of the goal's 'flow' field")

    answer_parser = subparsers.add_parser("answer", help="Answer the pending human question")
    answer_parser.add_argument("workspace", help="Workspace directory")
    answer_parser.add_argument("text", help="Answer text")

    steer_parser = subparsers.add_parser("steer", help="Send a steering message from the human partner")
    steer_parser.add_argument("workspace", help="Workspace directory")
    steer_parser.add_argument("text", help="Message text")
    steer_parser.add_argument("--to", default=COORDINATOR, help="Receiving agent (default: coordinator)")

    status_parser = subparsers.add_parser("status", help="Show the workflow state of a workspace")
    status_parser.add_argument("workspace", help="Workspace directory")

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    workspace = Path(args.workspace).resolve()
    try:
        config = _setup_logging(workspace)
        orchestrator = Orchestrator(config)
        ws = orchestrator.workspace(workspace)

        if args.command == "run":
            state = orchestrator.run_workflow(workspace, fresh=args.fresh, auto=args.auto)
            print(format_status(state))

        elif args.command == "continuous":
            asyncio.run(_run_continuous(orchestrator, workspace))
            print("Continuous mode stopped.")

        elif args.command == "dag":
            print(orchestrator.load_dag(workspace, flow=args.flow).to_dot())

        elif args.command == "answer":
            if not ws.machine.answer_question(args.text):
                print("No question is pending.")
                return 1
            print("Answer recorded. Run 'flowcrew run' to continue the workflow.")

        elif args.command == "steer":
            message = ws.bus.post_human_message(args.text, to_agent=args.to)
            print(f"Message {message.id} sent to {args.to}.")

        elif args.command == "status":
            if not ws.store.exists:
                print(f"No workflow state in {workspace}.")
                return 1
            state = ws.store.load()
            print(format_status(state))
            pending = count_pending_for(state, COORDINATOR)
            if pending:
                print(f"Coordinator has {pending} unread message(s).")

    except (FlowcrewError, OSError, ValueError) as exc:
        logger.error("Command failed: command=%s error=%s", args.command, exc)
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
