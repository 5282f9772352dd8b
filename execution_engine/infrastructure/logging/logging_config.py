"""
Logging configuration for the execution engine.

Configures structlog for human-readable text logging (default) with optional
JSON format. Session-scoped context (session_id, language) is carried through
contextvars so every line of a run can be correlated.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict

LEVEL_COLORS = {
    "debug": "\033[36m",
    "info": "\033[32m",
    "warning": "\033[33m",
    "error": "\033[31m",
    "critical": "\033[35m",
}
RESET = "\033[0m"


def add_color(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Wrap the level name in ANSI color codes."""
    color = LEVEL_COLORS.get(method_name, RESET)
    if "level" in event_dict:
        event_dict["level"] = f"{color}{event_dict['level'].upper()}{RESET}"
    return event_dict


def human_readable_renderer(logger: Any, method_name: str, event_dict: EventDict) -> str:
    """
    Render one log line.

    Format: [timestamp] [level] [logger] message key=value key2=value2
    Example: [2025-01-14 10:30:45] [INFO] [orchestrator] Run finished session_id=abc status=success
    """
    timestamp = event_dict.pop("timestamp", "")
    level = event_dict.pop("level", "INFO").upper()
    logger_name = event_dict.pop("logger_name", event_dict.pop("logger", "unknown"))
    message = event_dict.pop("event", "")
    exception = event_dict.pop("exception", None)

    parts = []
    if timestamp:
        parts.append(f"[{timestamp}]")
    parts.append(f"[{level}]")
    if logger_name != "root":
        parts.append(f"[{logger_name}]")
    parts.append(str(message))

    for key, value in sorted(event_dict.items()):
        if key in ("exc_info", "stack_info"):
            continue
        if isinstance(value, (str, int, float, bool)):
            parts.append(f"{key}={value}")
        else:
            parts.append(f"{key}={value!r}")

    line = " ".join(parts)
    if exception:
        line += "\n" + exception
    return line


def configure_logging(log_level: str = "INFO", log_format: str = "text") -> None:
    """
    Configure structlog for the engine.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: "text" (default) or "json"
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
        force=True,
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format.lower() == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(add_color)
        processors.append(human_readable_renderer)

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = None, **context) -> structlog.stdlib.BoundLogger:
    """
    Get a logger instance.

    Args:
        name: Logger name (usually __name__)
        **context: Additional context to bind to the logger

    Example:
        logger = get_logger(__name__)
        logger.info("Sandbox acquired", session_id="abc", backend="docker")
    """
    if name:
        return structlog.get_logger(name, **context)
    return structlog.get_logger(**context)


def bind_context(**context) -> None:
    """Bind context to every logger in the current task."""
    structlog.contextvars.bind_contextvars(**context)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
