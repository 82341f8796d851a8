"""Centralized logging helpers for flowcrew.

Every record leaving a configured handler is stamped with the workspace the
process is serving, so logs from several workspaces can share one sink.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Any

from ..config import LoggingConfig

_LOGGER_NAME = "flowcrew"
_NO_WORKSPACE = "-"
_configured_signature: tuple[str, str, bool, bool, str] | None = None

# Attributes every LogRecord carries; anything else was passed via ``extra=``.
_RECORD_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__.keys()
) | {"message", "asctime", "taskName"}


class _WorkspaceFilter(logging.Filter):
    """Add ``record.workspace`` unless the caller passed one via ``extra=``."""

    def __init__(self, workspace: str) -> None:
        super().__init__()
        self.workspace = workspace

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "workspace"):
            record.workspace = self.workspace
        return True


class _JsonFormatter(logging.Formatter):
    """Serialize log records into one compact JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "workspace": getattr(record, "workspace", _NO_WORKSPACE),
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        for key, value in record.__dict__.items():
            if key in payload or key in _RECORD_ATTRS or key.startswith("_"):
                continue
            payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def configure_logging(
    config: LoggingConfig | None = None,
    *,
    workspace: str | Path | None = None,
    force: bool = False,
) -> None:
    """Configure root logging once, with optional forced reconfiguration.

    Args:
        config: Level, directory and format settings.
        workspace: Workspace stamped on every record; ``-`` when omitted.
        force: Reconfigure even if the settings are unchanged.
    """
    global _configured_signature

    cfg = config or LoggingConfig()
    level_name = str(cfg.level).upper()
    workspace_label = str(workspace) if workspace else _NO_WORKSPACE
    signature = (level_name, str(cfg.log_dir), bool(cfg.json_format), bool(cfg.rotate_daily), workspace_label)
    if not force and _configured_signature == signature:
        return

    level = getattr(logging, level_name, logging.INFO)
    log_dir = Path(cfg.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "flowcrew.log"

    root = logging.getLogger()
    root.setLevel(level)

    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter: logging.Formatter
    if cfg.json_format:
        formatter = _JsonFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s | %(levelname)s | %(workspace)s | %(name)s | %(message)s",
            "%Y-%m-%d %H:%M:%S",
        )

    workspace_filter = _WorkspaceFilter(workspace_label)
    console = logging.StreamHandler()
    console.setFormatter(formatter)
    console.addFilter(workspace_filter)
    root.addHandler(console)

    if cfg.rotate_daily:
        file_handler: logging.Handler = TimedRotatingFileHandler(
            filename=str(log_file),
            when="midnight",
            backupCount=7,
            encoding="utf-8",
        )
    else:
        file_handler = logging.FileHandler(filename=str(log_file), encoding="utf-8")
    file_handler.setFormatter(formatter)
    file_handler.addFilter(workspace_filter)
    root.addHandler(file_handler)

    logging.getLogger(_LOGGER_NAME).setLevel(level)
    _configured_signature = signature
    logging.getLogger(__name__).info(
        "Logging configured: level=%s log_dir=%s json_format=%s rotate_daily=%s workspace=%s",
        level_name,
        log_dir,
        cfg.json_format,
        cfg.rotate_daily,
        workspace_label,
    )


def format_text_preview(text: Any, limit: int = 60) -> str:
    """Shorten message bodies and prompts for log lines."""
    value = str(text).replace("\n", "\\n")
    if len(value) <= limit:
        return value
    return f"<len={len(value)} head={value[:24]!r} tail={value[-16:]!r}>"
