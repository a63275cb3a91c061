"""
Structured JSON logging for whispr services.

Every record carries the service name plus, where known, the tenant, session
and job it belongs to, so one run can be followed across components. Context
is passed per call or bound once with ``StructuredLogger.bind``; nothing is
kept in thread or task locals.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

CONTEXT_FIELDS = ("service_name", "tenant_id", "session_id", "job_id")

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


class StructuredJSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": getattr(record, "component", None) or record.module,
            "message": record.getMessage(),
            "pid": record.process,
        }
        entry.update({name: getattr(record, name) for name in CONTEXT_FIELDS if hasattr(record, name)})

        # Nested so caller fields never shadow the envelope
        extra_fields = getattr(record, "extra_fields", None)
        if extra_fields:
            entry["extra_fields"] = extra_fields

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }

        return json.dumps(entry, default=str, ensure_ascii=False)


class StructuredLogger:
    """
    Logger wrapper that attaches tenant, session and job fields to each record.

    Handlers and levels come from the ``whispr`` logger set up by
    ``configure_logging``; records propagate to it.
    """

    def __init__(self, name: str, service_name: str, context: Optional[Dict[str, Any]] = None):
        self.logger = logging.getLogger(name)
        self.service_name = service_name
        self.context: Dict[str, Any] = dict(context or {})

    def bind(self, **context: Any) -> "StructuredLogger":
        """Return a logger that adds ``context`` to every call; per-call values still win."""
        return StructuredLogger(self.logger.name, self.service_name, {**self.context, **context})

    def log(
        self,
        level: Union[int, str],
        message: str,
        *,
        extra_fields: Optional[Dict[str, Any]] = None,
        tenant_id: Optional[str] = None,
        session_id: Optional[str] = None,
        job_id: Optional[str] = None,
        module: Optional[str] = None,
        **log_kwargs,
    ):
        if isinstance(level, str):
            level = _LEVELS[level.lower()]

        given = {"tenant_id": tenant_id, "session_id": session_id, "job_id": job_id, "module": module}
        context = {**self.context, **{k: v for k, v in given.items() if v is not None}}

        # LogRecord reserves 'module', so the caller's component travels as 'component'
        extra = {
            "service_name": self.service_name,
            "tenant_id": context.get("tenant_id"),
            "session_id": context.get("session_id"),
            "job_id": context.get("job_id"),
            "component": context.get("module"),
            "extra_fields": extra_fields or {},
        }
        self.logger.log(level, message, extra={k: v for k, v in extra.items() if v is not None}, **log_kwargs)

    def debug(self, message: str, **kwargs):
        self.log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        self.log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self.log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs):
        self.log(logging.ERROR, message, **kwargs)

    def critical(self, message: str, **kwargs):
        self.log(logging.CRITICAL, message, **kwargs)

    def log_job_event(self, event_type: str, job_id: str, tenant_id: str,
                      status: Optional[str] = None, attempts: Optional[int] = None,
                      error: Optional[str] = None, execution_time_ms: Optional[int] = None,
                      extra_fields: Optional[Dict[str, Any]] = None):
        """Log an analysis job lifecycle event; events carrying an error log at ERROR."""
        fields = {
            "event_type": f"job_{event_type}",
            "status": status,
            "attempts": attempts,
            "error": error,
            "execution_time_ms": execution_time_ms,
        }
        fields = {k: v for k, v in fields.items() if v is not None}
        fields.update(extra_fields or {})

        self.log(logging.ERROR if error else logging.INFO, f"Job {job_id} {event_type}",
                 extra_fields=fields, tenant_id=tenant_id, job_id=job_id, module="job_queue")
