"""Logging configuration for the integration core."""

from __future__ import annotations

import contextvars
import logging
import uuid

from nhs_interop.config import settings

correlation_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "correlation_id",
    default=None,
)


def ensure_correlation_id() -> str:
    """Return the active correlation id, starting a new one when absent."""
    current = correlation_id_var.get()
    if current:
        return current
    current = uuid.uuid4().hex
    correlation_id_var.set(current)
    return current


class CorrelationIdFilter(logging.Filter):
    """Attach correlation_id from contextvars to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = correlation_id_var.get() or "-"
        else:
            record.correlation_id = record.correlation_id or correlation_id_var.get() or "-"
        return True


def configure_logging() -> None:
    """Configure structured logging for the service."""
    factory = logging.getLogRecordFactory()

    def record_factory(*args, **kwargs):
        record = factory(*args, **kwargs)
        if not hasattr(record, "correlation_id"):
            record.correlation_id = correlation_id_var.get() or "-"
        return record

    logging.setLogRecordFactory(record_factory)
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s correlation_id=%(correlation_id)s",
    )
    root_logger = logging.getLogger()
    root_logger.addFilter(CorrelationIdFilter())
    for handler in root_logger.handlers:
        handler.addFilter(CorrelationIdFilter())
