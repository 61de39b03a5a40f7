"""Public observability primitives: JSON-lines logging and correlation context."""

from testrepository.observability.logging import (
    LoggingHandle,
    correlation_scope,
    get_active_logging_handle,
    get_correlation_context,
    reset_correlation_fields,
    set_correlation_fields,
    setup_logging,
    shutdown_logging,
    verbosity_to_level,
)

__all__ = [
    "LoggingHandle",
    "correlation_scope",
    "get_active_logging_handle",
    "get_correlation_context",
    "reset_correlation_fields",
    "set_correlation_fields",
    "setup_logging",
    "shutdown_logging",
    "verbosity_to_level",
]
