"""
Structured logging for the provisioning engine.

Every event is a snake_case name plus keyword context. Card secrets are
masked before rendering so a stray `card_code=` never reaches the log sink.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from giftcard_engine.config import settings

SECRET_FIELDS = frozenset({"card_code", "card_number", "pin"})

# Chatty at INFO; their failures still surface through our own events
QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine")


def add_service_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Stamp service name and version on every event."""
    event_dict.setdefault("service", settings.service_name)
    event_dict.setdefault("version", settings.api_version)
    return event_dict


def mask_card_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Keep the last four characters of card codes and numbers."""
    for key in SECRET_FIELDS.intersection(event_dict):
        value = event_dict[key]
        if value is None:
            continue
        text = str(value)
        event_dict[key] = f"***{text[-4:]}" if len(text) > 4 else "***"
    return event_dict


def build_processors(log_format: str, log_level: str) -> list[Processor]:
    """Processor chain for the configured renderer."""
    chain: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_service_context,
        mask_card_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        (
            structlog.processors.ExceptionRenderer()
            if log_level.upper() == "DEBUG"
            else structlog.processors.format_exc_info
        ),
    ]
    renderer: Processor = (
        structlog.processors.JSONRenderer()
        if log_format == "json"
        else structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    )
    chain.append(renderer)
    return chain


def setup_logging() -> None:
    """
    Route stdlib logging to stdout and configure structlog on top of it.

    A JSON event looks like:
    {
        "event": "inventory_card_claimed",
        "level": "info",
        "timestamp": "2026-01-08T12:00:00.123456Z",
        "logger": "giftcard_engine.services.inventory",
        "service": "giftcard-provisioning-api",
        "request_id": "prov-123",
        "card_id": "..."
    }
    """
    level = getattr(logging, settings.log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=build_processors(settings.log_format, settings.log_level),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Named structlog logger, e.g. `get_logger(__name__)`."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]


class log_context:
    """
    Bind context variables for the duration of a block.

    Usage:
        with log_context(request_id="prov-123", campaign_id=str(campaign_id)):
            logger.info("provisioning_started")
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = {k: v for k, v in kwargs.items() if v is not None}

    def __enter__(self) -> None:
        structlog.contextvars.bind_contextvars(**self.context)

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        structlog.contextvars.unbind_contextvars(*self.context)
