"""Structured logging setup for the engine."""

from work_order_engine.observability.logging import (
    LOG_FILENAME,
    REDACTED_VALUE,
    ROOT_LOGGER_NAME,
    correlation_scope,
    redact_event,
    setup_logging,
)

__all__ = [
    "LOG_FILENAME",
    "REDACTED_VALUE",
    "ROOT_LOGGER_NAME",
    "correlation_scope",
    "redact_event",
    "setup_logging",
]
