"""Goal document handling: YAML frontmatter, body checksum, steering.

The goal document is Markdown with an optional ``---`` delimited YAML
frontmatter block.  The frontmatter is machine configuration; the body is
human content.  Only the body is checksummed, so edits to configuration
never look like a changed goal.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

from ..utils.logging import get_logger
from .errors import GoalChecksumError, GoalError

logger = get_logger(__name__)

_DELIMITER = "---"

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_MODEL_VARIANT = re.compile(r"^(.+?)\s*\(([^)]+)\)$")


def _split_frontmatter(content: str) -> tuple[str, int] | None:
    """Locate a well-formed frontmatter block.

    Returns the YAML text and the offset where the body begins (just past
    the closing delimiter and one optional newline), or ``None`` when the
    document has no leading delimiter or the block is never closed.
    """
    if not content.startswith(_DELIMITER):
        return None
    start = len(_DELIMITER)
    if content[start:start + 1] == "\n":
        start += 1
    closing = content.find(_DELIMITER, start)
    if closing == -1:
        return None
    end = closing + len(_DELIMITER)
    if content[end:end + 1] == "\n":
        end += 1
    return content[start:closing], end


def extract_body(content: str) -> str:
    """Return the document body with any frontmatter removed."""
    split = _split_frontmatter(content)
    if split is None:
        return content
    return content[split[1]:]


def compute_goal_checksum(goal_path: str | Path) -> str:
    """SHA-256 hex digest of the goal body.

    Raises:
        GoalChecksumError: If the document cannot be read.
    """
    try:
        content = Path(goal_path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise GoalChecksumError(f"failed to read {goal_path}: {exc}") from exc
    return hashlib.sha256(extract_body(content).encode("utf-8")).hexdigest()


def prepend_steering_message(goal_path: str | Path, message: str) -> None:
    """Insert ``message`` at the top of the goal body.

    With well-formed frontmatter the message lands right after the closing
    delimiter, leaving the frontmatter untouched.  Otherwise, including an
    unclosed block, it goes at the very top of the file.
    """
    path = Path(goal_path)
    content = path.read_text(encoding="utf-8")
    split = _split_frontmatter(content)
    if split is None:
        new_content = message + "\n\n" + content
    else:
        end = split[1]
        new_content = content[:end] + "\n" + message + "\n\n" + content[end:]
    path.write_text(new_content, encoding="utf-8")
    logger.info("Steering message prepended: goal=%s length=%d", path, len(message))


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as ``"1h30m"``, ``"45s"`` or ``"250ms"``.

    Raises:
        ValueError: If the text is not a valid duration.
    """
    value = text.strip()
    sign = 1.0
    if value[:1] in ("+", "-"):
        sign = -1.0 if value[0] == "-" else 1.0
        value = value[1:]
    if value == "0":
        return timedelta(0)
    if not value:
        raise ValueError(f"invalid duration {text!r}")

    seconds = 0.0
    pos = 0
    for match in _DURATION_PART.finditer(value):
        if match.start() != pos:
            raise ValueError(f"invalid duration {text!r}")
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(value):
        raise ValueError(f"invalid duration {text!r}")
    return timedelta(seconds=sign * seconds)


def parse_model_and_variant(model_spec: str) -> tuple[str, str]:
    """Split ``"provider/model (variant)"`` into model and variant."""
    match = _MODEL_VARIANT.match(model_spec)
    if match:
        return match.group(1), match.group(2)
    return model_spec, ""


def _yes_no(value: Any) -> str:
    # YAML 1.1 reads bare yes/no as booleans.
    if isinstance(value, bool):
        return "yes" if value else "no"
    return str(value or "")


@dataclass
class GoalMetadata:
    """Configuration carried in the goal document's frontmatter."""

    flow: str = ""
    models: dict[str, Any] = field(default_factory=dict)
    interactive: str = ""
    completion_gate_script: str = ""
    continuous_mode_prompt: str = ""
    continuous_mode_auto: str = ""
    continuous_mode_cron: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GoalMetadata:
        models = data.get("models") or {}
        return cls(
            flow=str(data.get("flow") or ""),
            models=dict(models) if isinstance(models, dict) else {},
            interactive=_yes_no(data.get("interactive")),
            completion_gate_script=str(data.get("completionGateScript") or ""),
            continuous_mode_prompt=str(data.get("continuousModePrompt") or ""),
            continuous_mode_auto=str(data.get("continuousModeAuto") or ""),
            continuous_mode_cron=str(data.get("continuousModeCron") or ""),
        )

    def models_for_agent(self, agent: str) -> list[str]:
        """Model specs configured for ``agent``; a single string or a list."""
        value = self.models.get(agent)
        if isinstance(value, str):
            return [value] if value else []
        if isinstance(value, list):
            return [item for item in value if isinstance(item, str) and item]
        return []

    def continuous_auto_duration(self) -> timedelta | None:
        """The auto-restart delay, or ``None`` when unset or invalid."""
        if not self.continuous_mode_auto:
            return None
        try:
            duration = parse_duration(self.continuous_mode_auto)
        except ValueError as exc:
            logger.warning("Invalid continuousModeAuto ignored: value=%s error=%s", self.continuous_mode_auto, exc)
            return None
        return duration if duration > timedelta(0) else None


def parse_frontmatter(content: str) -> GoalMetadata:
    """Parse the YAML frontmatter of a goal document.

    Raises:
        GoalError: If the block is never closed or is not a YAML mapping.
    """
    if not content.startswith(_DELIMITER):
        return GoalMetadata()
    split = _split_frontmatter(content)
    if split is None:
        raise GoalError("no closing '---' found for frontmatter")
    try:
        data = yaml.safe_load(split[0])
    except yaml.YAMLError as exc:
        raise GoalError(f"failed to parse YAML frontmatter: {exc}") from exc
    if data is None:
        return GoalMetadata()
    if not isinstance(data, dict):
        raise GoalError("frontmatter must be a YAML mapping")
    return GoalMetadata.from_dict(data)


def load_goal_metadata(goal_path: str | Path) -> GoalMetadata:
    path = Path(goal_path)
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise GoalError(f"failed to read {path}: {exc}") from exc
    return parse_frontmatter(content)
