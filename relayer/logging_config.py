"""
Structured logging for the relay.

Every event is rendered through structlog, including stdlib records from
``logging.getLogger(__name__)``. Events carry the relay's identity (service,
network, chain id and, once the ledger is up, the relay address) so lines
from several relays can be told apart. Pipeline events add the bound
``tx_id`` and HTTP events the ``request_id``.
"""

import logging
import sys
from typing import Any, Dict

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from .config import Settings

SERVICE_NAME = "gasless-relayer"

_service_context: Dict[str, Any] = {}


def bind_service_context(**fields: Any) -> None:
    """Attach fields to every event from now on; a None value removes the field."""
    for key, value in fields.items():
        if value is None:
            _service_context.pop(key, None)
        else:
            _service_context[key] = value


def add_service_context(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    # Fields bound on the event or in contextvars win
    for key, value in _service_context.items():
        event_dict.setdefault(key, value)
    return event_dict


def _renderer(settings: Settings, level: int) -> Processor:
    fmt = settings.log_format
    if fmt == "auto":
        fmt = "console" if level == logging.DEBUG else "json"
    if fmt == "console":
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def setup_logging(settings: Settings) -> None:
    """Route structlog and stdlib logging through one handler configured from ``settings``."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    _service_context.clear()
    bind_service_context(service=SERVICE_NAME, network=settings.network, chain_id=settings.chain_id)

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_service_context,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    renderer = _renderer(settings, level)
    if isinstance(renderer, structlog.processors.JSONRenderer):
        shared_processors.append(structlog.processors.format_exc_info)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        # Records from logging.getLogger() skip structlog's chain, give them the same fields
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    # Per-request lines come from RequestLoggingMiddleware
    for name in ("uvicorn.access", "httpcore", "httpx"):
        logging.getLogger(name).setLevel(logging.WARNING)
