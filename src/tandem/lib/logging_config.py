"""
Structured logging configuration with an audit trail for Tandem.

Provides JSON-formatted logging with OpenTelemetry correlation and a
dedicated audit logger for session, approval, routing and inference events.
"""

import json
import logging
import logging.config
import logging.handlers
import sys
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from pathlib import Path

from opentelemetry import trace

from ..models.audit_record import AuditRecord


# Attributes every LogRecord carries; anything else arrived through ``extra``.
_RESERVED_ATTRS = frozenset({
    "name", "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "exc_info", "exc_text", "stack_info",
    "lineno", "funcName", "created", "msecs", "relativeCreated",
    "thread", "threadName", "processName", "process", "message", "taskName",
})


class StructuredFormatter(logging.Formatter):
    """JSON formatter with OpenTelemetry trace correlation."""

    def __init__(self, include_trace: bool = True, extra_fields: Optional[Dict[str, Any]] = None):
        super().__init__()
        self.include_trace = include_trace
        self.extra_fields = extra_fields or {}

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON."""
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        if self.include_trace:
            current_span = trace.get_current_span()
            if current_span and current_span.is_recording():
                span_context = current_span.get_span_context()
                log_entry.update({
                    "trace_id": format(span_context.trace_id, "032x"),
                    "span_id": format(span_context.span_id, "016x")
                })

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info)
            }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_entry[key] = value

        log_entry.update(self.extra_fields)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class AuditLogger:
    """Logger for session, approval, routing and inference audit events."""

    def __init__(self, logger_name: str = "tandem.audit"):
        self.logger = logging.getLogger(logger_name)

    def log_record(self, record: AuditRecord) -> None:
        """Emit a structured AuditRecord."""
        self.logger.info(
            f"Audit: {record.event_type} - {record.action}",
            extra={"audit_type": "record", **record.to_log_entry()}
        )

    def log_session_event(
        self,
        event_type: str,
        session_id: str,
        actor: Optional[str] = None,
        result: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Log a session lifecycle event."""
        self.logger.info(
            f"Session event: {event_type}",
            extra={
                "audit_type": "session",
                "event_type": event_type,
                "session_id": session_id,
                "actor": actor,
                "result": result,
                "metadata": metadata or {}
            }
        )

    def log_action_event(
        self,
        event_type: str,
        action_id: str,
        kind: str,
        classification: str,
        session_id: Optional[str] = None,
        actor: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Log an action gate transition."""
        log = self.logger.warning if classification == "destructive" else self.logger.info
        log(
            f"Action event: {event_type} - {kind} ({classification})",
            extra={
                "audit_type": "action",
                "event_type": event_type,
                "action_id": action_id,
                "kind": kind,
                "classification": classification,
                "session_id": session_id,
                "actor": actor,
                "metadata": metadata or {}
            }
        )

    def log_routing_event(
        self,
        request_id: str,
        backend_id: Optional[str],
        decision: str,
        session_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Log a routing decision or routing failure."""
        self.logger.info(
            f"Routing event: {decision} -> {backend_id}",
            extra={
                "audit_type": "routing",
                "request_id": request_id,
                "backend_id": backend_id,
                "decision": decision,
                "session_id": session_id,
                "metadata": metadata or {}
            }
        )

    def log_inference_event(
        self,
        request_id: str,
        backend_id: str,
        result: str,
        duration_ms: Optional[float] = None,
        cost_usd: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Log the terminal outcome of an inference call."""
        self.logger.info(
            f"Inference event: {backend_id} - {result}",
            extra={
                "audit_type": "inference",
                "request_id": request_id,
                "backend_id": backend_id,
                "result": result,
                "duration_ms": duration_ms,
                "cost_usd": cost_usd,
                "metadata": metadata or {}
            }
        )


def setup_logging(config: Dict[str, Any]) -> None:
    """Setup structured logging configuration."""
    log_level = config.get("level", "INFO").upper()
    log_format = config.get("format", "structured")

    log_dir = Path(config.get("directory", "~/.tandem/logs")).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)

    logging_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {
                "()": StructuredFormatter,
                "include_trace": config.get("include_trace", True),
                "extra_fields": {
                    "service": "tandem-orchestrator",
                    "environment": config.get("environment", "development")
                }
            },
            "simple": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": "structured" if log_format == "structured" else "simple",
                "stream": sys.stderr
            },
            "application_file": {
                "class": "logging.handlers.RotatingFileHandler",
                "level": log_level,
                "formatter": "structured",
                "filename": str(log_dir / "orchestrator.log"),
                "maxBytes": config.get("max_file_size", 10 * 1024 * 1024),
                "backupCount": config.get("backup_count", 5)
            },
            "audit_file": {
                "class": "logging.handlers.RotatingFileHandler",
                "level": "INFO",
                "formatter": "structured",
                "filename": str(log_dir / "audit.jsonl"),
                "maxBytes": config.get("max_file_size", 10 * 1024 * 1024),
                "backupCount": config.get("backup_count", 10)
            }
        },
        "loggers": {
            "tandem": {
                "level": log_level,
                "handlers": ["console", "application_file"],
                "propagate": False
            },
            "tandem.audit": {
                "level": "INFO",
                "handlers": ["audit_file"],
                "propagate": False
            },
            "opentelemetry": {
                "level": "WARNING",
                "handlers": ["console", "application_file"],
                "propagate": False
            }
        },
        "root": {
            "level": log_level,
            "handlers": ["console"]
        }
    }

    logging.config.dictConfig(logging_config)

    logger = logging.getLogger("tandem.logging")
    logger.info("Structured logging initialized", extra={
        "config": {
            "level": log_level,
            "format": log_format,
            "directory": str(log_dir)
        }
    })


def get_audit_logger() -> AuditLogger:
    """Get the configured audit logger instance."""
    return AuditLogger()
