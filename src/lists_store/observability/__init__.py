"""Public observability primitives: structured logging and metrics."""

from lists_store.observability.logging import (
    LoggingConfig,
    LogRedactor,
    StructuredLoggingHandle,
    correlation_scope,
    default_log_redactor,
    get_active_logging_handle,
    get_correlation_context,
    new_session_id,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)
from lists_store.observability.metrics import MetricsRegistry

__all__ = [
    "LogRedactor",
    "LoggingConfig",
    "MetricsRegistry",
    "StructuredLoggingHandle",
    "correlation_scope",
    "default_log_redactor",
    "get_active_logging_handle",
    "get_correlation_context",
    "new_session_id",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
