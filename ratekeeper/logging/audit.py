"""Structured JSON audit logging for the rate limiting service.

Logs go to stdout as JSON lines (12-factor/cloud-native pattern).
Optional file output via AUDIT_LOG_FILE env var.

Limiter blocks, admin resets and monitoring delivery failures all flow
through the same logger so a single log pipeline sees every decision.
"""

import json
import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone

from ratekeeper.config.settings import get_settings

AUDIT_LOGGER_NAME = "ratekeeper.audit"

# Request-scoped context for correlating log entries
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
limiter_var: ContextVar[str] = ContextVar("limiter", default="")
identifier_var: ContextVar[str] = ContextVar("identifier", default="")


class JSONFormatter(logging.Formatter):
    """Formats log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": request_id_var.get(""),
        }
        # Limit decisions carry which limiter and identifier they concern
        for key, var in (("limiter", limiter_var), ("identifier", identifier_var)):
            value = var.get("")
            if value:
                log_entry[key] = value
        # Merge any extra fields passed via `extra={}` kwarg
        if hasattr(record, "audit_data"):
            log_entry.update(record.audit_data)
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def setup_logging() -> None:
    """Configure the audit logger with JSON output."""
    settings = get_settings()

    logger = logging.getLogger(AUDIT_LOGGER_NAME)
    logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    logger.handlers.clear()

    formatter = JSONFormatter()

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(formatter)
    logger.addHandler(stdout_handler)

    if settings.audit_log_file:
        file_handler = logging.FileHandler(settings.audit_log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    # Prevent propagation to root logger (avoids duplicate output)
    logger.propagate = False


def get_audit_logger() -> logging.Logger:
    return logging.getLogger(AUDIT_LOGGER_NAME)


def generate_request_id() -> str:
    return uuid.uuid4().hex[:12]


class RequestTimer:
    """Context manager to measure request latency."""

    def __init__(self):
        self.start_time: float = 0
        self.elapsed_ms: float = 0

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args):
        self.elapsed_ms = round((time.perf_counter() - self.start_time) * 1000, 2)


@contextmanager
def limit_context(limiter: str, identifier: str):
    """Tag every log line emitted inside the block with limiter and identifier."""
    limiter_token = limiter_var.set(limiter)
    identifier_token = identifier_var.set(identifier)
    try:
        yield
    finally:
        identifier_var.reset(identifier_token)
        limiter_var.reset(limiter_token)
