"""
Utilities module for the UniModel serving core.

Provides:
- Async helpers (retry with backoff, timeouts)
- Structured logging configuration
"""

from unimodel_core.utils.async_helpers import (
    async_retry,
    backoff_delay,
    retry_with_backoff,
    run_with_timeout,
)

from unimodel_core.utils.logging_config import (
    setup_logging,
    get_logger,
    LoggingConfig,
    LogContext,
    set_request_id,
    set_model,
    get_request_id,
    set_context,
    clear_context,
    log_duration,
)

__all__ = [
    # Async helpers
    "async_retry",
    "backoff_delay",
    "retry_with_backoff",
    "run_with_timeout",
    # Logging
    "setup_logging",
    "get_logger",
    "LoggingConfig",
    "LogContext",
    "set_request_id",
    "set_model",
    "get_request_id",
    "set_context",
    "clear_context",
    "log_duration",
]
