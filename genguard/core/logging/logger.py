#!/usr/bin/env python3
"""
Structured Logging Module using structlog

This module provides structured logging with:
- Job ID correlation across every line emitted while a job runs
- Stage identifiers for the breaker / probe / queue flow
- JSON formatting for log aggregation
- Automatic PII redaction

Architectural Decision: structlog for production logging
- Context-aware logging with automatic field injection
- JSON output for log aggregation
- Async-safe correlation through context variables
"""

import logging
import re
import sys
from contextvars import ContextVar
from datetime import datetime, timezone

import structlog
from structlog.types import EventDict, WrappedLogger

from genguard.core.config.settings import get_settings

# Context variable for the job currently being processed in this task
job_id_ctx: ContextVar[str | None] = ContextVar("job_id", default=None)


def add_job_id(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Add job ID to log event from context variable.

    STAGE-L.1: Job ID injection
    """
    job_id = job_id_ctx.get()
    if job_id and "job_id" not in event_dict:
        event_dict["job_id"] = job_id
    return event_dict


def add_timestamp(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Add ISO timestamp to log event.

    STAGE-L.2: Timestamp injection
    """
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def redact_pii(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Redact PII from log messages.

    STAGE-L.3: PII redaction

    Patterns redacted:
    - Email addresses -> [EMAIL]
    - API keys (sk-...) -> [REDACTED]
    """
    message = event_dict.get("event", "")

    if isinstance(message, str):
        message = re.sub(r"\b[\w.-]+@[\w.-]+\.\w+\b", "[EMAIL]", message)
        message = re.sub(r"\bsk-[a-zA-Z0-9]+\b", "[REDACTED]", message)
        event_dict["event"] = message

    return event_dict


def add_log_level_name(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Uppercase the log level.

    STAGE-L.4: Log level injection
    """
    if "level" in event_dict:
        event_dict["level"] = event_dict["level"].upper()
    return event_dict


def setup_logging(log_level: str | None = None, log_format: str | None = None) -> None:
    """
    Setup structured logging with structlog.

    STAGE-L: Logging initialization

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Log format ('json' or 'console')
    """
    settings = get_settings()

    log_level = log_level or settings.logging.LOG_LEVEL
    log_format = log_format or settings.logging.LOG_FORMAT

    logging.basicConfig(
        format="%(message)s", stream=sys.stdout, level=getattr(logging, log_level.upper())
    )

    if log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_job_id,
            add_timestamp,
            structlog.stdlib.add_log_level,
            add_log_level_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            redact_pii,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("Job claimed", job_id=job.id, stage=Stage.QUEUE_CLAIM.value)
    """
    return structlog.get_logger(name)


def set_job_id(job_id: str):
    """
    Bind a job ID to the current task context.

    Returns the context token so callers can restore the previous value.
    """
    return job_id_ctx.set(job_id)


def get_job_id() -> str | None:
    return job_id_ctx.get()


def clear_job_id(token=None) -> None:
    """Reset the job ID, restoring the previous value when a token is given."""
    if token is not None:
        job_id_ctx.reset(token)
    else:
        job_id_ctx.set(None)


def log_stage(
    logger: structlog.stdlib.BoundLogger, stage: str, message: str, level: str = "info", **kwargs
) -> None:
    """
    Log a message with stage information.

    Usage:
        log_stage(logger, Stage.PROBE_EXECUTE.value, "Probe started", attempt=3)
    """
    log_func = getattr(logger, level.lower())
    log_func(message, stage=stage, **kwargs)
