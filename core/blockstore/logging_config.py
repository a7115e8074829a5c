"""
Structured Logging Configuration

Logging for the block registry with structlog:
- JSON output for log aggregation
- Request IDs for tracing a CLI invocation or API call
- Operation timings in logs
- Secret redaction: SecretValue / SecretStr values never reach a renderer
"""

from __future__ import annotations

import contextvars
import logging
import sys
import time
from functools import wraps
from typing import Any, Callable, Optional, TypeVar

import structlog
from pydantic import SecretBytes, SecretStr
from structlog.types import Processor

from .vault import SecretValue, mask

# Context variables for request tracing
request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="")

T = TypeVar("T")


def add_context_vars(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Add context variables to log entries."""
    request_id = request_id_var.get()
    if request_id:
        event_dict["request_id"] = request_id
    return event_dict


def add_service_info(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Add service information to log entries."""
    event_dict["service"] = "hive-blockstore"
    return event_dict


def redact_secrets(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Replace secret wrappers anywhere in the event with their masked form."""
    for key, value in list(event_dict.items()):
        if isinstance(value, (SecretValue, SecretStr, SecretBytes, dict, list, tuple)):
            event_dict[key] = mask(value)
    return event_dict


def configure_logging(
    json_output: bool = False,
    log_level: str = "INFO",
    include_timestamps: bool = True,
) -> None:
    """
    Configure structured logging for the application.

    Args:
        json_output: Output logs as JSON (for production)
        log_level: Minimum log level
        include_timestamps: Include ISO timestamps

    Usage:
        # Development (colored console output)
        configure_logging(json_output=False, log_level="DEBUG")

        # Production (JSON for log aggregation)
        configure_logging(json_output=True, log_level="INFO")
    """
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        add_context_vars,
        add_service_info,
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if include_timestamps:
        shared_processors.insert(0, structlog.processors.TimeStamper(fmt="iso", utc=True))

    if json_output:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(
                colors=sys.stderr.isatty(),
                exception_formatter=structlog.dev.plain_traceback,
            )
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Logs go to stderr so CLI output on stdout stays machine-readable
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, log_level.upper(), logging.INFO),
        force=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """
    Get a configured logger.

    Usage:
        logger = get_logger(__name__)
        logger.info("document_saved", type_slug="cube", name="rubiks-cube")
    """
    return structlog.get_logger(name)


# =============================================================================
# Context Managers
# =============================================================================


class LogContext:
    """
    Context manager for adding a request id to logs.

    Usage:
        with LogContext(request_id="req-123"):
            logger.info("Processing")  # Includes request_id
    """

    def __init__(self, request_id: Optional[str] = None):
        self.request_id = request_id
        self._token: contextvars.Token | None = None

    def __enter__(self) -> LogContext:
        if self.request_id:
            self._token = request_id_var.set(self.request_id)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._token is not None:
            request_id_var.reset(self._token)
            self._token = None


# =============================================================================
# Performance Logging
# =============================================================================


def log_performance(
    operation: str,
    logger: Optional[structlog.stdlib.BoundLogger] = None,
):
    """
    Decorator to log how long an operation took and whether it failed.

    Only the error type and message are logged; arguments never are.

    Usage:
        @log_performance("block_save")
        def save(...):
            ...
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        _logger = logger or get_logger(func.__module__)

        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            start = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                duration_ms = (time.perf_counter() - start) * 1000
                _logger.warning(
                    f"{operation} failed",
                    operation=operation,
                    duration_ms=round(duration_ms, 2),
                    success=False,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise
            duration_ms = (time.perf_counter() - start) * 1000
            _logger.debug(
                f"{operation} completed",
                operation=operation,
                duration_ms=round(duration_ms, 2),
                success=True,
            )
            return result

        return wrapper

    return decorator
