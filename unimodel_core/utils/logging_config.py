"""
Structured logging configuration for the UniModel serving core.

Features:
- JSON structured logging for production
- Colored console logging for development
- Request/model correlation through context variables
- Duration logging for lifecycle operations
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import time
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar

# Context variables for log correlation
_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_model: ContextVar[Optional[str]] = ContextVar("model", default=None)
_extra_context: ContextVar[Dict[str, Any]] = ContextVar("extra_context", default={})

T = TypeVar("T")


def set_request_id(request_id: Optional[str]) -> None:
    """Set the current request (correlation) id."""
    _request_id.set(request_id)


def set_model(model: Optional[str]) -> None:
    """Set the model the current task works on."""
    _model.set(model)


def get_request_id() -> Optional[str]:
    return _request_id.get()


def set_context(**kwargs: Any) -> None:
    """Set additional context fields."""
    current = _extra_context.get().copy()
    current.update(kwargs)
    _extra_context.set(current)


def clear_context() -> None:
    """Clear extra context."""
    _extra_context.set({})


_STANDARD_FIELDS = {
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "taskName", "message",
}


class StructuredFormatter(logging.Formatter):
    """
    JSON structured log formatter for production.

    Output format:
    {
        "timestamp": "2026-01-12T02:15:30.123456Z",
        "level": "INFO",
        "logger": "unimodel_core.serving.scheduler",
        "message": "[Scheduler] Batch formed",
        "request_id": "3f2a9c1b-41e",
        "model": "sentiment",
        "extra": {...}
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).replace(tzinfo=None).isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = _request_id.get()
        model = _model.get()
        extra = _extra_context.get()

        if request_id:
            log_data["request_id"] = request_id
        if model:
            log_data["model"] = model
        if extra:
            log_data["context"] = extra

        record_extras = {
            k: v for k, v in record.__dict__.items()
            if k not in _STANDARD_FIELDS and not k.startswith("_")
        }
        if record_extras:
            log_data["extra"] = record_extras

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class ConsoleFormatter(logging.Formatter):
    """
    Console formatter for development with ANSI colors.
    """

    COLORS = {
        "DEBUG": "\033[36m",    # Cyan
        "INFO": "\033[32m",     # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",    # Red
        "CRITICAL": "\033[35m", # Magenta
    }
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]

        context_parts = []
        request_id = _request_id.get()
        model = _model.get()

        if model:
            context_parts.append(f"model={model}")
        if request_id:
            context_parts.append(f"req={request_id[:12]}")

        context_str = f" [{', '.join(context_parts)}]" if context_parts else ""

        output = (
            f"{self.DIM}{timestamp}{self.RESET} "
            f"{color}{self.BOLD}{record.levelname:8}{self.RESET} "
            f"{self.DIM}{record.name}{self.RESET}"
            f"{context_str}: "
            f"{record.getMessage()}"
        )

        if record.exc_info:
            output += "\n" + self.formatException(record.exc_info)

        return output


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = field(
        default_factory=lambda: os.getenv("UNIMODEL_LOG_LEVEL", "INFO")
    )
    format: str = field(
        default_factory=lambda: os.getenv("UNIMODEL_LOG_FORMAT", "console")
    )  # "console" or "json"

    # File logging
    log_file: Optional[Path] = field(
        default_factory=lambda: Path(os.getenv("UNIMODEL_LOG_FILE", ""))
        if os.getenv("UNIMODEL_LOG_FILE") else None
    )
    max_file_size_mb: int = 50
    backup_count: int = 5

    console_enabled: bool = True

    quiet_loggers: List[str] = field(
        default_factory=lambda: ["asyncio", "urllib3", "torch"]
    )


def setup_logging(config: Optional[LoggingConfig] = None) -> None:
    """
    Configure logging for the serving core.

    Args:
        config: Logging configuration. Uses defaults if None.
    """
    if config is None:
        config = LoggingConfig()

    level = getattr(logging, str(config.level).upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    if config.console_enabled:
        console_handler = logging.StreamHandler(sys.stderr)
        if config.format == "json":
            console_handler.setFormatter(StructuredFormatter())
        else:
            console_handler.setFormatter(ConsoleFormatter())
        root_logger.addHandler(console_handler)

    if config.log_file:
        log_file = Path(config.log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)

        from logging.handlers import RotatingFileHandler

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=config.max_file_size_mb * 1024 * 1024,
            backupCount=config.backup_count,
        )
        file_handler.setFormatter(StructuredFormatter())
        root_logger.addHandler(file_handler)

    for logger_name in config.quiet_loggers:
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    logging.getLogger("unimodel_core").setLevel(level)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name."""
    return logging.getLogger(name)


class LogContext:
    """
    Context manager for temporary log context.

    Example:
        with LogContext(model="sentiment", batch_id=batch.batch_id):
            logger.info("Executing")  # Includes model and batch_id
        logger.info("Done")  # No longer includes them

    `model` and `request_id` keys go to their dedicated context variables.
    """

    def __init__(self, **kwargs: Any):
        self._model = kwargs.pop("model", None)
        self._request_id = kwargs.pop("request_id", None)
        self._context = kwargs
        self._tokens: List[Any] = []

    def __enter__(self) -> "LogContext":
        if self._model is not None:
            self._tokens.append((_model, _model.set(self._model)))
        if self._request_id is not None:
            self._tokens.append((_request_id, _request_id.set(self._request_id)))
        new_context = _extra_context.get().copy()
        new_context.update(self._context)
        self._tokens.append((_extra_context, _extra_context.set(new_context)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        while self._tokens:
            var, token = self._tokens.pop()
            var.reset(token)


def log_duration(
    logger: logging.Logger,
    level: int = logging.INFO,
    message: str = "Operation completed",
) -> Callable:
    """
    Decorator to log coroutine duration.

    Example:
        @log_duration(logger, message="[Engine] Model load")
        async def load_model(name):
            ...
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        if not asyncio.iscoroutinefunction(func):
            raise TypeError("log_duration only wraps coroutine functions")

        @wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            start = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                duration = (time.perf_counter() - start) * 1000
                logger.error(
                    f"{message} failed ({duration:.2f}ms): {e}",
                    extra={
                        "duration_ms": duration,
                        "function": func.__name__,
                        "error": str(e),
                    },
                )
                raise
            duration = (time.perf_counter() - start) * 1000
            logger.log(
                level,
                f"{message} ({duration:.2f}ms)",
                extra={"duration_ms": duration, "function": func.__name__},
            )
            return result

        return wrapper

    return decorator
