"""Structured logging configuration using structlog."""

from __future__ import annotations

import logging
import re
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from .settings import Settings
from .utils import request_id_ctx

SERVICE_NAME = "places-gateway"
SERVICE_VERSION = "0.1.0"

_KEY_PARAM = re.compile(r"([?&]key=)[^&\s]+")
_GOOGLE_KEY = re.compile(r"AIza[0-9A-Za-z\-_]{35}")


def add_request_id(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Add request ID to log event if available.

    This processor extracts the request ID from context and adds it to every log entry.
    """
    request_id = request_id_ctx.get("")
    if request_id:
        event_dict["request_id"] = request_id
    return event_dict


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add service name and version to every log entry."""
    event_dict["service"] = SERVICE_NAME
    event_dict["version"] = SERVICE_VERSION
    return event_dict


def _scrub(value: Any) -> Any:
    if isinstance(value, str):
        value = _KEY_PARAM.sub(r"\1REDACTED", value)
        return _GOOGLE_KEY.sub("REDACTED", value)
    if isinstance(value, list):
        return [_scrub(item) for item in value]
    if isinstance(value, dict):
        return {key: _scrub(inner) for key, inner in value.items()}
    return value


def redact_api_keys(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Scrub API keys from every string value in the event dict.

    Embed URLs carry the Maps key as a ``key=`` query parameter, and provider
    errors sometimes echo the request URL back.
    """
    for key, value in list(event_dict.items()):
        event_dict[key] = _scrub(value)
    return event_dict


def drop_color_message_key(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Remove the 'color_message' key from the event dict.

    Uvicorn adds a 'color_message' key which is redundant in JSON output.
    """
    event_dict.pop("color_message", None)
    return event_dict


def configure_structlog(settings: Settings, json_logs: bool | None = None) -> None:
    """
    Configure structlog for the application.

    Args:
        settings: Application settings; ``DEBUG`` selects console output.
        json_logs: Force JSON (True) or console (False) output. Defaults to JSON
                   unless running in DEBUG mode.
    """
    if json_logs is None:
        json_logs = not settings.DEBUG

    shared: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_request_id,
        add_app_context,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
    ]
    if json_logs:
        processors: list[Processor] = [
            *shared,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            drop_color_message_key,
            redact_api_keys,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            *shared,
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            redact_api_keys,
            structlog.dev.ConsoleRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=logging.DEBUG if settings.DEBUG else logging.INFO,
    )

    # Set log levels for noisy libraries; httpx logs full URLs including the key
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("places_search_completed", count=3)
    """
    return structlog.get_logger(name)


__all__ = ["configure_structlog", "get_logger", "redact_api_keys"]
