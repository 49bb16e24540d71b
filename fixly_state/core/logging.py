"""Structured logging configuration."""

import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from fixly_state.core.config import Settings

# Event fields that may carry secrets or stored payloads.
REDACTED_FIELDS = frozenset({"code", "otp", "candidate_code", "value", "payload", "body"})


def redact_sensitive(logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Processor masking OTP codes and stored values."""
    for field in REDACTED_FIELDS.intersection(event_dict):
        event_dict[field] = "***"
    return event_dict


def _handlers(settings: Settings, level: int) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if settings.log_file:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))
    for handler in handlers:
        handler.setLevel(level)
    return handlers


def _processors(log_format: str) -> list:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        redact_sensitive,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    if log_format == "json":
        processors.insert(0, structlog.processors.TimeStamper(fmt="iso", utc=True))
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.insert(0, structlog.processors.TimeStamper(fmt="%H:%M:%S"))
        processors.append(structlog.dev.ConsoleRenderer(colors=False, pad_event=30))
    return processors


def configure_logging(settings: Settings) -> None:
    """Route structlog through stdlib logging at the configured level and format."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        format="%(message)s",
        level=level,
        handlers=_handlers(settings, level),
        force=True,
    )
    structlog.configure(
        processors=_processors(settings.log_format),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def log_store_failure(logger: structlog.BoundLogger, operation: str,
                      key: Optional[str], error: BaseException) -> None:
    """Log a key-value store failure.

    Only the operation, key and error type/message are recorded. Stored values
    never reach the log.
    """
    logger.warning(
        "Store operation failed",
        operation=operation,
        store_key=key,
        error_type=type(error).__name__,
        error=str(error) or type(error).__name__,
    )


def log_cache_operation(logger: structlog.BoundLogger, operation: str,
                        key: str, hit: Optional[bool] = None, **kwargs) -> None:
    """Log cache operations at debug level."""
    log_data = {"operation": operation, "cache_key": key, **kwargs}
    if hit is not None:
        log_data["cache_hit"] = hit
    logger.debug("Cache operation", **log_data)
