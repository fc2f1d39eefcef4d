"""
Logging configuration for the MDT streaming engine.

Every line carries the id of the venue connection it belongs to, so the
open/login/replay sequence of one socket can be read back in order. Frames
are logged only after session identifiers have been masked.
"""

import json
import logging
import sys
from collections import deque
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

# Id of the venue connection the current task works for
current_connection_id: ContextVar[str | None] = ContextVar("current_connection_id", default=None)

# Keys (lowercased) whose values never reach logs or notifications
REDACTED_FIELDS = frozenset({"sessionid", "session_id", "deviceid", "device_id", "authorization"})

REDACTED = "[REDACTED]"


def redact_sensitive(data: Any, depth: int = 0) -> Any:
    """
    Mask session identifiers in a decoded frame.

    Keys are matched case-insensitively; nested objects and arrays are
    walked. Instrument tokens and venue ids (gscid/gcid) are kept.

    Args:
        data: Frame or fragment (dict, list, or scalar)
        depth: Current recursion depth

    Returns:
        Copy of the data with identifier values replaced by "[REDACTED]"
    """
    if depth > 10:
        return data

    if isinstance(data, dict):
        return {
            k: REDACTED if str(k).lower() in REDACTED_FIELDS else redact_sensitive(v, depth + 1)
            for k, v in data.items()
        }
    elif isinstance(data, list):
        return [redact_sensitive(item, depth + 1) for item in data]
    return data


class MDTFormatter(logging.Formatter):
    """
    Formatter adding an ISO timestamp and the connection tag.

    With ``json_output`` each record becomes one JSON object per line, so
    messages that quote raw frames stay parseable.
    """

    def __init__(self, fmt: str | None = None, json_output: bool = False):
        super().__init__(fmt)
        self.json_output = json_output

    def format(self, record: logging.LogRecord) -> str:
        record.timestamp = datetime.now(UTC).isoformat()

        connection_id = current_connection_id.get()
        record.connection_id = f"[{connection_id}] " if connection_id else ""

        if not self.json_output:
            return super().format(record)

        entry: dict[str, Any] = {
            "timestamp": record.timestamp,
            "level": record.levelname,
            "module": record.name,
            "connection_id": connection_id,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry)


class InMemoryHandler(logging.Handler):
    """Bounded buffer of recent log lines served by ``GET /logs``."""

    def __init__(self, capacity: int = 1000):
        super().__init__()
        self.logs: deque[dict[str, Any]] = deque(maxlen=capacity)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.logs.append(
                {
                    "timestamp": getattr(record, "timestamp", datetime.now(UTC).isoformat()),
                    "level": record.levelname,
                    "level_no": record.levelno,
                    "logger": record.name,
                    "connection_id": current_connection_id.get(),
                    "message": record.getMessage(),
                }
            )
        except Exception:
            self.handleError(record)


_in_memory_handler = InMemoryHandler()


def setup_logging(level: str = "INFO", json_output: bool = False) -> logging.Logger:
    """
    Configure the root logger for the engine process.

    Args:
        level: Logging level name
        json_output: Emit one JSON object per line instead of text

    Returns:
        Configured root logger
    """
    root = logging.getLogger()
    root.handlers.clear()

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root.setLevel(numeric_level)

    formatter = MDTFormatter(
        "%(timestamp)s | %(levelname)-8s | %(name)s | %(connection_id)s%(message)s",
        json_output=json_output,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(formatter)
    root.addHandler(handler)

    _in_memory_handler.setLevel(numeric_level)
    root.addHandler(_in_memory_handler)

    # websockets logs every frame at DEBUG
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return root


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def get_in_memory_logs(
    level: str = "INFO",
    limit: int = 50,
    connection_id: str | None = None,
) -> list[dict[str, Any]]:
    """Recent log lines at or above ``level``, optionally for one connection."""
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    filtered = [
        log
        for log in _in_memory_handler.logs
        if log["level_no"] >= numeric_level
        and (connection_id is None or log["connection_id"] == connection_id)
    ]
    return filtered[-limit:]


def set_connection_id(connection_id: str) -> None:
    """Tag log lines from the current context with a connection id."""
    current_connection_id.set(connection_id)


def clear_connection_id() -> None:
    current_connection_id.set(None)
