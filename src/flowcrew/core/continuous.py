"""Continuous mode: unattended workflow cycles restarted by triggers.

One cycle runs the workflow to completion, runs the goal's continuous-mode
prompt through the Agent Runner (bounded retries), then polls until
something asks for another cycle: an edit to the goal body, a steering
message from the human partner, the auto-restart timer or the next cron
tick.  ``stop()`` wins over any trigger at every wait point, and its
``on_stop`` hook lets the owner interrupt a workflow step running in a
worker thread.
"""

from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar

from croniter import croniter

from ..config import ProjectConfig
from ..utils.logging import format_text_preview, get_logger
from .errors import GoalError, StateError
from .goal import compute_goal_checksum, load_goal_metadata, prepend_steering_message
from .message import MessageBus, find_human_partner_message
from .runner import AgentRunner
from .state import COORDINATOR, InteractionMode, StateStore, WorkflowState, WorkflowStatus

logger = get_logger(__name__)

T = TypeVar("T")

CONTINUOUS_AGENT = "continuous-mode"
PROMPT_TITLE = "continuous-mode-prompt"


class Trigger(Enum):
    """Why the watch loop woke up.  ``NONE`` means it was stopped."""

    NONE = ""
    GOAL_CHANGED = "goal-changed"
    STEERING_MESSAGE = "steering-message"
    AUTO_TIMER = "auto-timer"
    CRON_SCHEDULE = "cron-schedule"


def next_cron_tick(expression: str, now: datetime | None = None) -> datetime | None:
    """Next time ``expression`` fires after ``now``, or ``None`` if invalid."""
    base = now or datetime.now().astimezone()
    try:
        return croniter(expression, base).get_next(datetime)
    except (ValueError, KeyError) as exc:
        logger.warning("Invalid cron expression ignored: expr=%s error=%s", expression, exc)
        return None


def compute_deadline(
    auto: timedelta | None, cron: str, now: datetime | None = None
) -> tuple[datetime | None, Trigger]:
    """Pick the earlier of the auto timer and the next cron tick."""
    now = now or datetime.now().astimezone()
    deadline: datetime | None = None
    kind = Trigger.NONE
    if cron:
        tick = next_cron_tick(cron, now)
        if tick is not None:
            deadline, kind = tick, Trigger.CRON_SCHEDULE
    if auto is not None and auto > timedelta(0):
        candidate = now + auto
        if deadline is None or candidate < deadline:
            deadline, kind = candidate, Trigger.AUTO_TIMER
    return deadline, kind


class ContinuousModeLoop:
    """Drives continuous-mode cycles for a single workspace.

    Args:
        workspace: Workspace directory; the runner's working directory.
        store: The workspace's state store.
        runner: Agent Runner used for the continuous-mode prompt.
        run_workflow: Blocking callable running the workflow to completion.
        config: Project config (goal location, poll interval, attempts).
        on_stop: Called once by :meth:`stop`, from the stopping thread, to
            interrupt work running outside the event loop.
    """

    def __init__(
        self,
        workspace: str | Path,
        store: StateStore,
        runner: AgentRunner,
        run_workflow: Callable[[], Any],
        config: ProjectConfig | None = None,
        on_stop: Callable[[], None] | None = None,
    ) -> None:
        self.workspace = Path(workspace)
        self.store = store
        self.runner = runner
        self.run_workflow = run_workflow
        self.config = config or ProjectConfig()
        self.goal_path = self.config.goal_path(self.workspace)
        self.poll_interval = self.config.continuous.poll_interval_seconds
        self.max_attempts = self.config.continuous.max_prompt_attempts
        self.on_stop = on_stop
        self._halt = threading.Event()
        self._stop = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self.cycles = 0

    @property
    def stopped(self) -> bool:
        return self._halt.is_set()

    def stop(self) -> None:
        """Request the loop to end.  Safe to call from any thread."""
        if self._halt.is_set():
            return
        self._halt.set()
        if self.on_stop is not None:
            self.on_stop()
        loop = self._loop
        if loop is None or loop.is_closed():
            self._stop.set()
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._stop.set()
        else:
            loop.call_soon_threadsafe(self._stop.set)

    async def _sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; True if stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return self.stopped
        return True

    async def _race(self, awaitable: Awaitable[T]) -> tuple[T | None, bool]:
        """Await ``awaitable`` unless stop comes first, which cancels it."""
        task = asyncio.ensure_future(awaitable)
        stopper = asyncio.ensure_future(self._stop.wait())
        done, _ = await asyncio.wait({task, stopper}, return_when=asyncio.FIRST_COMPLETED)
        if task in done:
            stopper.cancel()
            return task.result(), False
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        return None, True

    # ------------------------------------------------------------------
    # State helpers; failures here never stop the loop
    # ------------------------------------------------------------------

    def _safe_update(self, fn: Callable[[WorkflowState], Any], action: str) -> None:
        try:
            self.store.update(fn, recover=True)
        except (StateError, OSError) as exc:
            logger.warning("Continuous mode state write failed: action=%s error=%s", action, exc)

    def _note(self, description: str) -> None:
        self._safe_update(lambda state: state.add_progress(CONTINUOUS_AGENT, description), "progress")

    def _mark_prompt_started(self) -> None:
        def apply(state: WorkflowState) -> None:
            state.task = "Running continuous mode prompt..."
            state.current_agent = CONTINUOUS_AGENT
            state.add_progress(CONTINUOUS_AGENT, "continuous mode prompt started")

        self._safe_update(apply, "prompt-start")

    def reset_for_next_cycle(self) -> None:
        def apply(state: WorkflowState) -> None:
            state.status = WorkflowStatus.WORKING.value
            state.interaction_mode = InteractionMode.CONTINUOUS.value
            state.current_agent = COORDINATOR

        self._safe_update(apply, "reset")

    def _read_goal_settings(self) -> tuple[str, timedelta | None, str]:
        try:
            metadata = load_goal_metadata(self.goal_path)
        except GoalError as exc:
            logger.warning("Goal frontmatter unreadable: goal=%s error=%s", self.goal_path, exc)
            return "", None, ""
        return (
            metadata.continuous_mode_prompt,
            metadata.continuous_auto_duration(),
            metadata.continuous_mode_cron,
        )

    # ------------------------------------------------------------------
    # Cycle steps
    # ------------------------------------------------------------------

    async def run_prompt(self, prompt: str) -> bool:
        """Run the continuous-mode prompt with bounded retries.

        Returns:
            True if an attempt succeeded.  Exhausting every attempt is
            reported through progress notes, not raised.
        """
        self._mark_prompt_started()
        for attempt in range(1, self.max_attempts + 1):
            if self.stopped:
                return False
            result, stopped = await self._race(self.runner.arun(prompt, self.workspace, title=PROMPT_TITLE))
            if stopped:
                return False
            if result is not None and result.ok:
                self._note("continuous mode prompt completed successfully")
                return True
            logger.info("Continuous prompt attempt failed: attempt=%d/%d error=%s", attempt, self.max_attempts, result)
            self._note(f"continuous mode prompt attempt {attempt}/{self.max_attempts} failed: {result}")
        self._note("continuous mode prompt failed after all retries, proceeding to watch loop")
        return False

    async def watch_for_trigger(self, last_checksum: str, auto: timedelta | None, cron: str) -> Trigger:
        """Poll until a trigger fires or the loop is stopped.

        Args:
            last_checksum: Goal body checksum at the end of the cycle.
            auto: Auto-restart delay, if configured.
            cron: Cron expression, if configured.
        """
        deadline, deadline_trigger = compute_deadline(auto, cron)
        logger.info(
            "Watching for trigger: deadline=%s kind=%s",
            deadline.isoformat() if deadline else "none",
            deadline_trigger.value or "none",
        )
        while True:
            if await self._sleep(self.poll_interval):
                return Trigger.NONE

            # An unreadable goal or state skips only its own check for this tick.
            try:
                checksum = compute_goal_checksum(self.goal_path)
            except GoalError:
                checksum = last_checksum
            if checksum != last_checksum:
                return Trigger.GOAL_CHANGED

            try:
                state: WorkflowState | None = self.store.load()
            except (FileNotFoundError, StateError):
                state = None
            if state is not None and find_human_partner_message(state) is not None:
                return Trigger.STEERING_MESSAGE

            if deadline is not None and datetime.now().astimezone() >= deadline:
                return deadline_trigger

    def apply_steering_message(self) -> None:
        """Move the pending human message into the goal and mark it read."""
        try:
            state = self.store.load()
        except (FileNotFoundError, StateError) as exc:
            logger.warning("Cannot load state for steering message: path=%s error=%s", self.store.path, exc)
            return
        message = find_human_partner_message(state)
        if message is None:
            return
        try:
            prepend_steering_message(self.goal_path, message.body)
        except OSError as exc:
            logger.warning("Failed to prepend steering message: goal=%s error=%s", self.goal_path, exc)
        try:
            MessageBus(self.store).mark_read(message.id, CONTINUOUS_AGENT)
        except (StateError, OSError) as exc:
            logger.warning("Failed to mark steering message read: msg_id=%d error=%s", message.id, exc)
        logger.info("Steering message applied: msg_id=%d body=%s", message.id, format_text_preview(message.body))

    async def run(self) -> None:
        """Run cycles until stopped.

        Raises:
            GoalChecksumError: If the goal document cannot be checksummed.
        """
        self._loop = asyncio.get_running_loop()
        logger.info("Continuous mode started: workspace=%s", self.workspace)
        while not self.stopped:
            self.cycles += 1
            logger.info("Continuous cycle started: workspace=%s cycle=%d", self.workspace, self.cycles)
            await asyncio.to_thread(self.run_workflow)
            if self.stopped:
                break

            prompt, auto, cron = self._read_goal_settings()
            if prompt:
                await self.run_prompt(prompt)
            else:
                logger.warning("No continuousModePrompt configured, skipping prompt: goal=%s", self.goal_path)
            if self.stopped:
                break

            checksum = compute_goal_checksum(self.goal_path)
            trigger = await self.watch_for_trigger(checksum, auto, cron)
            if trigger is Trigger.NONE:
                break
            logger.info("Continuous trigger fired: workspace=%s trigger=%s", self.workspace, trigger.value)

            if trigger is Trigger.STEERING_MESSAGE:
                self.apply_steering_message()
            self.reset_for_next_cycle()
        logger.info("Continuous mode stopped: workspace=%s cycles=%d", self.workspace, self.cycles)
