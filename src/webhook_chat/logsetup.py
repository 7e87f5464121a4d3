"""Logger construction for the chat server.

The forwarder is handed a :class:`logging.Logger` built here instead of
reaching for a module-level singleton, so the level is decided once from
:class:`~webhook_chat.config.Settings` rather than by poking at the
environment at every call site.
"""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .config import Settings

SERVICE_NAME = "webhook_chat"


def _utc_iso(created: float) -> str:
    return datetime.fromtimestamp(created, tz=timezone.utc).isoformat(timespec="milliseconds")


class JsonFormatter(logging.Formatter):
    """One JSON object per line; used in production."""

    def __init__(self, service: str = SERVICE_NAME) -> None:
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "level": record.levelname.lower(),
            "message": record.getMessage(),
            "timestamp": _utc_iso(record.created),
            "service": self.service,
        }
        metadata = getattr(record, "metadata", None)
        if metadata:
            entry["metadata"] = metadata
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ConsoleFormatter(logging.Formatter):
    """``[timestamp] LEVEL [service]: message {metadata}``"""

    def __init__(self, service: str = SERVICE_NAME) -> None:
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        line = f"[{_utc_iso(record.created)}] {record.levelname} [{self.service}]: {record.getMessage()}"
        metadata = getattr(record, "metadata", None)
        if metadata:
            line += " " + json.dumps(metadata, ensure_ascii=False, default=str)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def resolve_level(settings: Settings) -> int:
    if settings.log_level:
        level = logging.getLevelName(str(settings.log_level).upper())
        if isinstance(level, int):
            return level
    return logging.DEBUG if settings.is_development else logging.INFO


def configure_logging(
    settings: Settings,
    *,
    name: str = SERVICE_NAME,
    stream: Optional[Any] = None,
) -> logging.Logger:
    """Build (or rebuild) the named logger according to ``settings``.

    Calling this twice replaces the handler installed by the first call
    instead of stacking a second one.
    """
    log = logging.getLogger(name)
    log.setLevel(resolve_level(settings))
    log.propagate = False

    for handler in list(log.handlers):
        if getattr(handler, "_webhook_chat", False):
            log.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler._webhook_chat = True  # type: ignore[attr-defined]
    if settings.environment.lower() == "production":
        handler.setFormatter(JsonFormatter(name))
    else:
        handler.setFormatter(ConsoleFormatter(name))
    log.addHandler(handler)
    return log
