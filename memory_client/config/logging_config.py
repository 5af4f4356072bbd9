"""Logging configuration for the memory context client.

Provides structured JSON logging with automatic sanitization of
sensitive fields. Fact triples, tool arguments and raw response bodies
describe a person's stored memory and must not appear in logs.

What to log:
    - Method and tool names
    - Request ids, attempt numbers, backoff delays
    - Circuit breaker transitions
    - HTTP status codes and error types
    - Result counts

What NOT to log:
    - Fact subjects, predicates, objects
    - Tool arguments
    - Raw response bodies or resource text

Usage:
    from memory_client.config import configure_logging

    configure_logging()  # Call once at startup
"""

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, FrozenSet, Optional

from .settings import LoggingSettings, get_settings

_LOGGER_NAMESPACE = "memory_client"


class SafeJSONFormatter(logging.Formatter):
    """JSON formatter that sanitizes sensitive fields.

    Automatically redacts any log record field whose key matches
    a known sensitive name. For string values, logs the length
    instead. For collections, logs the item count. For all other
    types, replaces the value with ``[REDACTED]``.

    Attributes:
        SENSITIVE_KEYS: Field names that must never appear in logs.
        FACT_KEYS: Fact triple fields, redacted unless explicitly allowed.
    """

    SENSITIVE_KEYS: FrozenSet[str] = frozenset({
        "arguments",
        "body",
        "content",
        "contents",
        "text",
        "raw_response",
        "facts",
    })

    FACT_KEYS: FrozenSet[str] = frozenset({
        "subject",
        "predicate",
        "object",
        "fact",
    })

    # Standard LogRecord attributes to exclude from extra fields
    _BUILTIN_ATTRS: FrozenSet[str] = frozenset({
        "args", "created", "exc_info", "exc_text", "filename",
        "funcName", "levelname", "levelno", "lineno", "message",
        "module", "msecs", "msg", "name", "pathname", "process",
        "processName", "relativeCreated", "stack_info", "taskName",
        "thread", "threadName",
    })

    def __init__(self, redact_facts: bool = True) -> None:
        super().__init__()
        self._redacted = (
            self.SENSITIVE_KEYS | self.FACT_KEYS if redact_facts else self.SENSITIVE_KEYS
        )

    def is_sensitive(self, key: str) -> bool:
        return key.lower() in self._redacted

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as sanitized JSON.

        Args:
            record: The log record to format.

        Returns:
            JSON string with sensitive fields redacted.
        """
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
        }

        if record.exc_info and record.exc_info[1] is not None:
            log_data["exception_type"] = type(record.exc_info[1]).__name__
            log_data["exception"] = str(record.exc_info[1])

        for key, value in record.__dict__.items():
            if key.startswith("_") or key in self._BUILTIN_ATTRS:
                continue
            if key in log_data:
                continue

            if self.is_sensitive(key):
                if isinstance(value, str):
                    log_data[f"{key}_length"] = len(value)
                elif isinstance(value, (list, dict, tuple, set)):
                    log_data[f"{key}_count"] = len(value)
                else:
                    log_data[key] = "[REDACTED]"
            else:
                log_data[key] = value

        return json.dumps(log_data, default=str)


class SafeTextFormatter(logging.Formatter):
    """Human-readable text formatter with sensitive field sanitization.

    Uses a standard log format and appends extra fields, redacting
    sensitive ones. Intended for development/debugging use.
    """

    def __init__(self, redact_facts: bool = True) -> None:
        super().__init__(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        self._json = SafeJSONFormatter(redact_facts=redact_facts)

    def format(self, record: logging.LogRecord) -> str:
        """Format with sensitive field redaction."""
        base = super().format(record)

        extras = []
        for key, value in record.__dict__.items():
            if key.startswith("_") or key in SafeJSONFormatter._BUILTIN_ATTRS:
                continue
            if key in {"message", "asctime"}:
                continue

            if self._json.is_sensitive(key):
                if isinstance(value, str):
                    extras.append(f"{key}_length={len(value)}")
                elif isinstance(value, (list, dict, tuple, set)):
                    extras.append(f"{key}_count={len(value)}")
                else:
                    extras.append(f"{key}=[REDACTED]")
            else:
                extras.append(f"{key}={value}")

        if extras:
            base += f" | {', '.join(extras)}"

        return base


def configure_logging(
    log_settings: Optional[LoggingSettings] = None,
    level: Optional[str] = None,
) -> logging.Logger:
    """Configure logging for the ``memory_client`` namespace.

    Reads ``LoggingSettings`` to determine:
    - Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    - Output format (json or text)
    - Optional log directory for file output

    Call this once at application startup before any logging occurs.

    Args:
        log_settings: Explicit settings (defaults to ``get_settings().logging``).
        level: Level override, e.g. from a CLI flag.

    Returns:
        The configured namespace logger.
    """
    log_settings = log_settings or get_settings().logging
    redact_facts = not log_settings.fact_content

    if log_settings.format == "json":
        formatter: logging.Formatter = SafeJSONFormatter(redact_facts=redact_facts)
    else:
        formatter = SafeTextFormatter(redact_facts=redact_facts)

    root_logger = logging.getLogger(_LOGGER_NAMESPACE)
    root_logger.setLevel(getattr(logging, (level or log_settings.level).upper()))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_settings.dir is not None:
        log_dir = Path(log_settings.dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / "memory_client.log", encoding="utf-8")
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    root_logger.debug(
        "Logging configured",
        extra={
            "log_level": root_logger.level,
            "log_format": log_settings.format,
            "log_dir": str(log_settings.dir) if log_settings.dir else None,
        },
    )
    return root_logger
