"""
Structured logging module.

Provides JSON logging with per-message context propagation across
asyncio tasks.
"""

from core.logging.context import (
    MessageLogContext,
    clear_log_context,
    get_log_context,
    set_log_context,
)
from core.logging.setup import setup_logging, setup_multi_worker_logging
from core.logging.utilities import (
    LoggedClass,
    get_logger,
    log_exception,
    log_with_context,
)

__all__ = [
    "MessageLogContext",
    "clear_log_context",
    "get_log_context",
    "set_log_context",
    "setup_logging",
    "setup_multi_worker_logging",
    "LoggedClass",
    "get_logger",
    "log_exception",
    "log_with_context",
]
