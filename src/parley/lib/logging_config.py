"""
Structured logging configuration with audit trail support for Parley.

Application logs and audit events are written as one JSON object per line.
Records emitted inside a recording OpenTelemetry span carry its trace and
span ids, so a negotiation's log lines can be joined with its spans.
"""

import json
import logging
import logging.config
import logging.handlers
import sys
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional
from pathlib import Path

from opentelemetry import trace


AUDIT_LOGGER_NAME = "parley.audit"
DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024

# Attributes every LogRecord has; anything else arrived through ``extra``
_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__
) | {"message", "asctime", "taskName"}


def _trace_context() -> Dict[str, str]:
    span = trace.get_current_span()
    if not span.is_recording():
        return {}
    context = span.get_span_context()
    return {
        "trace_id": format(context.trace_id, "032x"),
        "span_id": format(context.span_id, "016x"),
    }


class StructuredFormatter(logging.Formatter):
    """Render log records as JSON lines.

    Args:
        include_trace: Add ``trace_id`` / ``span_id`` of the active span
        extra_fields: Static fields added to every line, e.g. the service name
    """

    def __init__(self, include_trace: bool = True, extra_fields: Optional[Dict[str, Any]] = None):
        super().__init__()
        self.include_trace = include_trace
        self.extra_fields = extra_fields or {}

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "source": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        if self.include_trace:
            entry.update(_trace_context())
        if record.exc_info:
            exc_type, exc_value, _ = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__ if exc_type else None,
                "message": str(exc_value) if exc_value else None,
                "traceback": self.formatException(record.exc_info),
            }

        entry.update(
            (key, value) for key, value in record.__dict__.items()
            if key not in _STANDARD_ATTRS
        )
        entry.update(self.extra_fields)
        return json.dumps(entry, ensure_ascii=False, default=str)


class AuditLogger:
    """Writes negotiation lifecycle and agent turn events to the audit log."""

    def __init__(self, logger_name: str = AUDIT_LOGGER_NAME):
        self.logger = logging.getLogger(logger_name)

    def _write(self, message: str, audit_type: str, **fields: Any) -> None:
        fields["metadata"] = fields.get("metadata") or {}
        self.logger.info(message, extra={"audit_type": audit_type, **fields})

    def log_session_event(
        self,
        event_type: str,
        session_id: str,
        action: Optional[str] = None,
        result: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Record a session lifecycle event (start, finish, request, startup)."""
        self._write(
            f"Session event: {event_type}",
            "session",
            event_type=event_type,
            session_id=session_id,
            action=action,
            result=result,
            metadata=metadata,
        )

    def log_agent_event(
        self,
        event_type: str,
        session_id: str,
        party: str,
        model: str,
        action: str,
        execution_time_ms: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Record a sealed agent turn."""
        self._write(
            f"Agent event: {event_type} - {party} {action}",
            "agent",
            event_type=event_type,
            session_id=session_id,
            party=party,
            model=model,
            action=action,
            execution_time_ms=execution_time_ms,
            metadata=metadata,
        )


def _rotating_file(path: Path, level: str, config: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "class": "logging.handlers.RotatingFileHandler",
        "level": level,
        "formatter": "structured",
        "filename": str(path),
        "maxBytes": config.get("max_file_size", DEFAULT_MAX_FILE_SIZE),
        "backupCount": config.get("backup_count", 5),
    }


def setup_logging(config: Dict[str, Any]) -> None:
    """Configure the ``parley`` and ``parley.audit`` loggers.

    Args:
        config: ``LoggingConfig`` as a dict. With a ``directory`` the
            application log goes to ``parley.log`` as well as stderr and the
            audit trail to ``audit.jsonl`` only; without one both stay on
            stderr.
    """
    level = config.get("level", "INFO").upper()
    console_format = "structured" if config.get("format", "structured") == "structured" else "simple"

    handlers: Dict[str, Dict[str, Any]] = {
        "console": {
            "class": "logging.StreamHandler",
            "level": level,
            "formatter": console_format,
            "stream": sys.stderr,
        }
    }
    app_handlers: List[str] = ["console"]
    audit_handlers: List[str] = ["console"]

    directory = config.get("directory")
    if directory:
        log_dir = Path(directory).expanduser()
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers["application_file"] = _rotating_file(log_dir / "parley.log", level, config)
        handlers["audit_file"] = _rotating_file(log_dir / "audit.jsonl", "INFO", config)
        app_handlers.append("application_file")
        audit_handlers = ["audit_file"]

    logger_levels = {
        "parley": (level, app_handlers),
        AUDIT_LOGGER_NAME: ("INFO", audit_handlers),
        "opentelemetry": ("WARNING", ["console"]),
        "uvicorn": (level, app_handlers),
    }

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {
                "()": StructuredFormatter,
                "include_trace": config.get("include_trace", True),
                "extra_fields": {
                    "service": "parley",
                    "environment": config.get("environment", "development"),
                },
            },
            "simple": {"format": "%(asctime)s %(levelname)-8s %(name)s: %(message)s"},
        },
        "handlers": handlers,
        "loggers": {
            name: {"level": logger_level, "handlers": names, "propagate": False}
            for name, (logger_level, names) in logger_levels.items()
        },
        "root": {"level": level, "handlers": ["console"]},
    })

    logging.getLogger("parley.logging").debug(
        f"Logging configured at {level} ({console_format} console"
        f"{', files in ' + str(directory) if directory else ''})"
    )


def get_audit_logger() -> AuditLogger:
    """Return an audit logger bound to ``parley.audit``."""
    return AuditLogger()
