"""
Remote Watch — Structured Logging with Session Trace IDs

Every monitor session gets a trace_id; every phase change, failed tick,
quota check and completion is emitted as one JSON line carrying it, so a
single dispatched input can be followed end to end across the channel
and engine loggers.

Design decisions:
  - Transport: Python logging with a JSON formatter
  - Namespace: all loggers live under "remote_watch" (remote_watch.channel,
    remote_watch.query, remote_watch.session, ...)
  - Level: DEBUG shows every tick, INFO shows phases and completions

Usage:
    from engine.logging import StructuredLogger, configure_logging

    configure_logging(level="INFO")
    slog = StructuredLogger(session="ws-main")
    slog.on_phase_change("thinking", text_chars=0)
"""

from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from typing import Any

ROOT_LOGGER = "remote_watch"


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """Formats log records as JSON lines."""

    def __init__(self, service_name: str = ROOT_LOGGER):
        super().__init__()
        self.service_name = service_name
        self.service_version = os.environ.get("RW_VERSION", "0.1.0")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
            "service.version": self.service_version,
        }

        if hasattr(record, "structured"):
            entry.update(record.structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str)


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    service_name: str = ROOT_LOGGER,
) -> logging.Logger:
    """
    Configure the remote_watch logger with JSON output.

    Args:
        level: DEBUG, INFO, WARNING, ERROR
        stream: Output stream (default: sys.stderr)
        service_name: Service name in log entries

    Returns:
        The configured remote_watch logger
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    logger.handlers.clear()

    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith(ROOT_LOGGER + "."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter(service_name=service_name))
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.addHandler(handler)

    logger.propagate = False
    return logger


def get_logger(name: str = "") -> logging.Logger:
    """Get a child logger under the remote_watch namespace."""
    if name:
        return logging.getLogger(f"{ROOT_LOGGER}.{name}")
    return logging.getLogger(ROOT_LOGGER)


def generate_trace_id() -> str:
    """32 hex chars, OTel-compatible."""
    return uuid.uuid4().hex


# ═══════════════════════════════════════════════════════════════════
# Structured Session Logger
# ═══════════════════════════════════════════════════════════════════

class StructuredLogger:
    """
    Emits one structured entry per session event.

    Every entry carries trace_id and session (a caller-supplied label,
    typically the workspace name).
    """

    def __init__(self, session: str = "", trace_id: str | None = None):
        self.session = session
        self.trace_id = trace_id or generate_trace_id()
        self._logger = get_logger("session")

    def _emit(self, level: int, action: str, **fields: Any) -> None:
        if not self._logger.isEnabledFor(level):
            return
        structured = {
            "trace_id": self.trace_id,
            "session": self.session,
            "action": action,
            **fields,
        }
        record = self._logger.makeRecord(
            name=self._logger.name,
            level=level,
            fn="", lno=0, msg=action,
            args=(), exc_info=None,
        )
        record.structured = structured
        self._logger.handle(record)

    def on_session_start(self, passive: bool, poll_interval: float,
                         max_duration: float, baseline_chars: int) -> None:
        self._emit(
            logging.INFO, "session_start",
            passive=passive,
            poll_interval_s=poll_interval,
            max_duration_s=max_duration,
            baseline_chars=baseline_chars,
        )

    def on_tick(self, tick: int, active: bool | None, text_chars: int,
                activity_lines: int) -> None:
        self._emit(
            logging.DEBUG, "tick",
            tick=tick,
            active=active,
            text_chars=text_chars,
            activity_lines=activity_lines,
        )

    def on_tick_failed(self, tick: int, error: str) -> None:
        self._emit(logging.WARNING, "tick_failed", tick=tick, error=error[:500])

    def on_phase_change(self, phase: str, text_chars: int = 0) -> None:
        self._emit(logging.INFO, "phase_change", phase=phase, text_chars=text_chars)

    def on_quota_check(self, reason: str, quota_reached: bool) -> None:
        self._emit(
            logging.WARNING if quota_reached else logging.DEBUG,
            "quota_check",
            reason=reason,
            quota_reached=quota_reached,
        )

    def on_completion(self, phase: str, reason: str, text_chars: int,
                      timed_out: bool, elapsed_s: float) -> None:
        self._emit(
            logging.WARNING if timed_out else logging.INFO,
            "completion",
            phase=phase,
            reason=reason,
            text_chars=text_chars,
            timed_out=timed_out,
            elapsed_s=round(elapsed_s, 2),
        )

    def on_callback_error(self, callback: str, error: str) -> None:
        self._emit(logging.ERROR, "callback_error", callback=callback, error=error[:500])

    def on_stopped(self, phase: str) -> None:
        self._emit(logging.INFO, "session_stopped", phase=phase)
