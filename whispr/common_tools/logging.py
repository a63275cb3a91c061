"""
Logging setup and shared log helpers for whispr services.

``configure_logging`` installs one handler on the ``whispr`` logger; every
``get_logger`` logger is a child of it. JSON is the default output, and
``console`` gives a human-readable line for local runs.
"""

import logging
import logging.config
import os
import sys
from typing import Any, Dict, Optional

from .structured_logging import StructuredJSONFormatter, StructuredLogger

CONSOLE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Chatty third-party loggers held at WARNING
QUIET_LOGGERS = ("aiohttp.access", "openai", "httpx")


def build_logging_config(log_level: str = "INFO", log_format: str = "json",
                         log_file: Optional[str] = None) -> Dict[str, Any]:
    """dictConfig for the ``whispr`` logger tree."""
    formatter = "json" if log_format.lower() == "json" else "console"
    handlers: Dict[str, Dict[str, Any]] = {
        "stdout": {"class": "logging.StreamHandler", "formatter": formatter, "stream": "ext://sys.stdout"},
    }
    if log_file:
        handlers["file"] = {"class": "logging.FileHandler", "formatter": "json",
                            "filename": log_file, "mode": "a"}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {"()": StructuredJSONFormatter},
            "console": {"format": CONSOLE_FORMAT},
        },
        "handlers": handlers,
        "loggers": {
            "whispr": {"level": log_level.upper(), "handlers": list(handlers), "propagate": False},
            **{name: {"level": "WARNING"} for name in QUIET_LOGGERS},
        },
        "root": {"level": "WARNING", "handlers": ["stdout"]},
    }


def configure_logging(service_name: Optional[str] = None, log_level: Optional[str] = None,
                      log_format: Optional[str] = None, log_file: Optional[str] = None) -> None:
    """
    Configure logging for the process.

    Args:
        service_name: Emits a ``logging_configured`` event under this name
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL (default $LOG_LEVEL or INFO)
        log_format: json or console (default $LOG_FORMAT or json)
        log_file: Also append JSON lines to this file
    """
    level = log_level or os.getenv("LOG_LEVEL", "INFO")
    fmt = log_format or os.getenv("LOG_FORMAT", "json")
    logging.config.dictConfig(build_logging_config(level, fmt, log_file))

    if service_name:
        get_logger(service_name).info(
            f"Logging configured for {service_name}",
            extra_fields={
                "event_type": "logging_configured",
                "log_level": level.upper(),
                "log_format": fmt.lower(),
                "python_version": sys.version.split()[0],
            },
        )


def get_logger(name: str) -> StructuredLogger:
    """Structured logger named ``whispr.<name>``."""
    return StructuredLogger(f"whispr.{name}", name)


def log_processing_error(
    logger: StructuredLogger,
    error: Exception,
    context: str,
    tenant_id: Optional[str] = None,
    session_id: Optional[str] = None,
    recovery_action: Optional[str] = None,
    extra_data: Optional[Dict[str, Any]] = None
) -> None:
    """
    Log a failure together with what was done about it.

    Args:
        logger: StructuredLogger instance
        error: The exception
        context: Where it happened, e.g. ``pipeline_run`` or ``analysis_job``
        tenant_id: Tenant the failing work belongs to
        session_id: Pipeline session, when inside a run
        recovery_action: What the caller does next
        extra_data: Merged into ``extra_fields``
    """
    fields = {
        "event_type": "processing_error",
        "error_type": type(error).__name__,
        "error_message": str(error),
        "context": context,
        "recovery_action": recovery_action,
        **(extra_data or {}),
    }
    logger.error(f"Processing error in {context}: {error}", tenant_id=tenant_id, session_id=session_id,
                 extra_fields=fields)


def log_service_startup(service_name: str, version: Optional[str] = None,
                        config: Optional[Dict[str, Any]] = None) -> None:
    get_logger(service_name).info(
        f"Service {service_name} starting up",
        extra_fields={"event_type": "service_startup", "version": version, "config": config}
    )


def log_service_shutdown(service_name: str, reason: Optional[str] = None) -> None:
    get_logger(service_name).info(
        f"Service {service_name} shutting down",
        extra_fields={"event_type": "service_shutdown", "reason": reason}
    )


def setup_logging(name: str) -> logging.Logger:
    """
    Plain stdlib logger for low-level clients (stores, HTTP channels).

    Named under ``whispr`` so it shares the configured handlers.
    """
    return logging.getLogger(f"whispr.{name}")


__all__ = [
    "build_logging_config",
    "configure_logging",
    "get_logger",
    "log_processing_error",
    "log_service_startup",
    "log_service_shutdown",
    "setup_logging",
    "StructuredLogger",
    "StructuredJSONFormatter",
]
