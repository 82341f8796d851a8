"""Launching the external Agent Runner process.

The runner performs the actual LLM-driven work.  flowcrew only starts it
with a prompt on stdin inside the workspace directory and looks at the
exit status; its output is passed through untouched.
"""

from __future__ import annotations

import asyncio
import os
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path

from ..config import RunnerConfig
from ..utils.logging import get_logger
from .goal import parse_model_and_variant

logger = get_logger(__name__)

MCP_URL_ENV = "FLOWCREW_MCP_URL"
MCP_INTERACTIVE_ENV = "FLOWCREW_MCP_INTERACTIVE"
CONFIG_DIR_ENV = "OPENCODE_CONFIG_DIR"


@dataclass
class RunResult:
    """Outcome of one runner invocation."""

    ok: bool
    returncode: int | None = None
    error: str = ""

    def __str__(self) -> str:
        if self.ok:
            return "ok"
        return self.error or f"exit status {self.returncode}"


class AgentRunner:
    """Starts the Agent Runner command for a single prompt.

    Args:
        config: Command name, config directory and RPC endpoint.
    """

    def __init__(self, config: RunnerConfig | None = None) -> None:
        self.config = config or RunnerConfig()
        self._active: set[subprocess.Popen] = set()
        self._lock = threading.Lock()

    def build_command(self, *, agent: str | None = None, model: str | None = None, title: str = "") -> list[str]:
        args = [self.config.command, "run"]
        if agent:
            args += ["--agent", agent]
        if model:
            model_name, variant = parse_model_and_variant(model)
            args += ["--model", model_name]
            if variant:
                args += ["--variant", variant]
        args += ["--title", title or agent or "flowcrew"]
        return args

    def build_env(self, workspace: str | Path, *, interactive: bool = False) -> dict[str, str]:
        env = dict(os.environ)
        env[CONFIG_DIR_ENV] = str(Path(workspace) / self.config.config_dir_name)
        env[MCP_URL_ENV] = self.config.mcp_url
        env[MCP_INTERACTIVE_ENV] = "yes" if interactive else "auto"
        return env

    def run(
        self,
        prompt: str,
        workspace: str | Path,
        *,
        agent: str | None = None,
        model: str | None = None,
        title: str = "",
        interactive: bool = False,
    ) -> RunResult:
        """Run the command to completion and report success or failure.

        :meth:`cancel` from another thread kills the process, which then
        reports as a failed run.
        """
        command = self.build_command(agent=agent, model=model, title=title)
        logger.info("Agent runner started: command=%s workspace=%s", " ".join(command), workspace)
        try:
            proc = subprocess.Popen(
                command,
                stdin=subprocess.PIPE,
                text=True,
                cwd=str(workspace),
                env=self.build_env(workspace, interactive=interactive),
            )
        except OSError as exc:
            logger.warning("Agent runner could not start: command=%s error=%s", command[0], exc)
            return RunResult(ok=False, error=str(exc))

        with self._lock:
            self._active.add(proc)
        try:
            proc.communicate(prompt, timeout=self.config.timeout_seconds)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()
            logger.warning("Agent runner timed out: timeout=%s", self.config.timeout_seconds)
            return RunResult(ok=False, error=f"timed out after {self.config.timeout_seconds}s")
        finally:
            with self._lock:
                self._active.discard(proc)

        returncode = proc.returncode if proc.returncode is not None else -1
        logger.info("Agent runner finished: agent=%s returncode=%d", agent or title, returncode)
        return RunResult(ok=returncode == 0, returncode=returncode)

    def cancel(self) -> int:
        """Kill every process started by :meth:`run` that is still running.

        Returns:
            The number of processes killed.
        """
        with self._lock:
            active = list(self._active)
        killed = 0
        for proc in active:
            if proc.poll() is None:
                proc.kill()
                killed += 1
        if killed:
            logger.info("Agent runner cancelled: killed=%d", killed)
        return killed

    async def arun(
        self,
        prompt: str,
        workspace: str | Path,
        *,
        agent: str | None = None,
        model: str | None = None,
        title: str = "",
        interactive: bool = False,
    ) -> RunResult:
        """Async variant of :meth:`run`; cancelling the task kills the process."""
        command = self.build_command(agent=agent, model=model, title=title)
        logger.info("Agent runner started: command=%s workspace=%s", " ".join(command), workspace)
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                cwd=str(workspace),
                env=self.build_env(workspace, interactive=interactive),
            )
        except OSError as exc:
            logger.warning("Agent runner could not start: command=%s error=%s", command[0], exc)
            return RunResult(ok=False, error=str(exc))

        try:
            await asyncio.wait_for(proc.communicate(prompt.encode("utf-8")), timeout=self.config.timeout_seconds)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning("Agent runner timed out: timeout=%s", self.config.timeout_seconds)
            return RunResult(ok=False, error=f"timed out after {self.config.timeout_seconds}s")
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise

        returncode = proc.returncode if proc.returncode is not None else -1
        logger.info("Agent runner finished: agent=%s returncode=%d", agent or title, returncode)
        return RunResult(ok=returncode == 0, returncode=returncode)


def run_completion_gate_script(script: str, workspace: str | Path) -> tuple[bool, str]:
    """Run the goal's completion check through ``sh -c``.

    Returns:
        ``(passed, combined_output)``.
    """
    try:
        completed = subprocess.run(
            ["sh", "-c", script],
            cwd=str(workspace),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            check=False,
        )
    except OSError as exc:
        return False, str(exc)
    return completed.returncode == 0, completed.stdout or ""


def format_completion_gate_failure(script: str, output: str) -> str:
    return (
        "Subject: computable definition of success has failed\n\n"
        f"The script {script} has failed with this output:\n<pre>\n{output}\n</pre>\n"
    )
