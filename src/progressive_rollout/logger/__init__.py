"""
Structured logging for the progressive rollout engine.

This module provides:
- Structured logging with JSON output
- Rollout and subject context tracking across a rollout's task
- Exception formatting with automatic metadata
- Configurable log levels and formats
"""

import contextvars
import logging
import logging.config
import sys
import time
import traceback
from typing import Any

import structlog
from pythonjsonlogger.json import JsonFormatter

from ..config import LogLevel, ObservabilityConfig
from ..exceptions import ConfigurationError

# Context variables for rollout tracking
rollout_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "rollout_id", default=None
)
subject_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "subject", default=None
)


class RolloutContextProcessor:
    """Processor to add the active rollout id and subject to log records."""

    def __call__(self, logger, method_name, event_dict):
        rollout_id = rollout_id_var.get()
        if rollout_id:
            event_dict.setdefault("rollout_id", rollout_id)

        subject = subject_var.get()
        if subject:
            event_dict.setdefault("subject", subject)

        return event_dict


class TimestampProcessor:
    """Processor to add timestamps to log records."""

    def __call__(self, logger, method_name, event_dict):
        event_dict["timestamp"] = time.time()
        return event_dict


class ServiceInfoProcessor:
    """Processor to add service information to log records."""

    def __init__(self, service_name: str, service_version: str):
        self.service_name = service_name
        self.service_version = service_version

    def __call__(self, logger, method_name, event_dict):
        event_dict["service_name"] = self.service_name
        event_dict["service_version"] = self.service_version
        return event_dict


class ExceptionProcessor:
    """Processor to format exceptions in log records."""

    def __call__(self, logger, method_name, event_dict):
        exc_info = event_dict.pop("exc_info", None)
        if exc_info:
            if exc_info is True:
                exc_info = sys.exc_info()
            elif isinstance(exc_info, BaseException):
                exc_info = (type(exc_info), exc_info, exc_info.__traceback__)

            if exc_info[0] is not None:
                event_dict["exception"] = {
                    "type": exc_info[0].__name__,
                    "message": str(exc_info[1]),
                    "traceback": "".join(traceback.format_tb(exc_info[2]))
                    if exc_info[2]
                    else "",
                }
        return event_dict


class LogConfig:
    """Configuration class for logging setup."""

    def __init__(
        self,
        service_name: str,
        service_version: str = "0.1.0",
        level: LogLevel = LogLevel.INFO,
        format_type: str = "json",
        enable_rollout_context: bool = True,
        log_file: str | None = None,
    ):
        self.service_name = service_name
        self.service_version = service_version
        self.level = level
        self.format_type = format_type
        self.enable_rollout_context = enable_rollout_context
        self.log_file = log_file

    @classmethod
    def from_observability(
        cls, observability: ObservabilityConfig, service_version: str = "0.1.0"
    ) -> "LogConfig":
        """Build a LogConfig from the engine's observability settings."""
        return cls(
            service_name=observability.service_name,
            service_version=service_version,
            level=observability.log_level,
            format_type=observability.log_format,
            log_file=observability.log_file,
        )


def setup_logging(config: LogConfig) -> None:
    """
    Setup structured logging with the given configuration.

    Args:
        config: LogConfig instance with logging configuration
    """
    processors: list[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        TimestampProcessor(),
        ServiceInfoProcessor(config.service_name, config.service_version),
        ExceptionProcessor(),
    ]

    if config.enable_rollout_context:
        processors.insert(-1, RolloutContextProcessor())

    if config.format_type == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    formatter = "json" if config.format_type == "json" else "standard"
    logging_config: dict[str, Any] = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": JsonFormatter,
                "format": "%(asctime)s %(name)s %(levelname)s %(message)s",
            },
            "standard": {
                "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": config.level.value,
                "formatter": formatter,
                "stream": sys.stdout,
            },
        },
        "loggers": {
            "": {
                "handlers": ["console"],
                "level": config.level.value,
                "propagate": False,
            },
        },
    }

    if config.log_file:
        logging_config["handlers"]["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": config.level.value,
            "formatter": formatter,
            "filename": config.log_file,
            "maxBytes": 10 * 1024 * 1024,  # 10MB
            "backupCount": 5,
        }
        logging_config["loggers"][""]["handlers"].append("file")

    try:
        logging.config.dictConfig(logging_config)
    except (ValueError, TypeError, AttributeError, ImportError) as e:
        raise ConfigurationError(f"Failed to configure logging: {e}")


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name, typically __name__
    """
    return structlog.get_logger(name)


def bind_rollout_context(rollout_id: str | None, subject: str | None) -> None:
    """Bind rollout id and subject to the current context."""
    rollout_id_var.set(rollout_id)
    subject_var.set(subject)


def get_rollout_id() -> str | None:
    """Get the rollout id bound to the current context."""
    return rollout_id_var.get()


def get_subject() -> str | None:
    """Get the subject bound to the current context."""
    return subject_var.get()


def clear_context() -> None:
    """Clear all context variables."""
    rollout_id_var.set(None)
    subject_var.set(None)


class RolloutLogContext:
    """Context manager scoping log context and timing to one rollout run."""

    def __init__(
        self,
        logger: structlog.stdlib.BoundLogger,
        rollout_id: str,
        subject: str,
        operation: str = "rollout",
        **kwargs,
    ):
        self.logger = logger
        self.rollout_id = rollout_id
        self.subject = subject
        self.operation = operation
        self.extra_context = kwargs
        self.start_time: float | None = None
        self._tokens: tuple[contextvars.Token, contextvars.Token] | None = None

    def __enter__(self):
        self.start_time = time.time()
        self._tokens = (
            rollout_id_var.set(self.rollout_id),
            subject_var.set(self.subject),
        )

        self.logger.info(
            "Operation started", operation=self.operation, **self.extra_context
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = time.time() - (self.start_time or 0)

        if exc_type is None:
            self.logger.info(
                "Operation completed",
                operation=self.operation,
                duration_ms=round(duration * 1000, 2),
                **self.extra_context,
            )
        else:
            self.logger.error(
                "Operation failed",
                operation=self.operation,
                duration_ms=round(duration * 1000, 2),
                error_type=exc_type.__name__,
                error_message=str(exc_val),
                **self.extra_context,
            )

        if self._tokens:
            rollout_id_var.reset(self._tokens[0])
            subject_var.reset(self._tokens[1])
            self._tokens = None


__all__ = [
    "LogConfig",
    "RolloutLogContext",
    "bind_rollout_context",
    "clear_context",
    "get_logger",
    "get_rollout_id",
    "get_subject",
    "setup_logging",
]
