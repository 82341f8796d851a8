"""Shared utility helpers for flowcrew."""

from .logging import configure_logging, format_text_preview, get_logger

__all__ = ["configure_logging", "format_text_preview", "get_logger"]
