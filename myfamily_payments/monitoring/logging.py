"""
Structured logging for the payment service.

Every event is a JSON object carrying the service name, environment and any
family/user context bound for the current task. Raw card fields never reach
the output.
"""
import logging
import sys
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional

import structlog
from pythonjsonlogger import jsonlogger

from myfamily_payments.config import Settings, get_settings

REDACTED = "[redacted]"
CARD_FIELDS = frozenset({"card_number", "CardNumber", "cvv", "CVV", "ExpDate_MMYY"})

EventDict = dict[str, Any]
Processor = Callable[[Any, str, EventDict], EventDict]


def app_context(settings: Settings) -> Processor:
    """Build a processor stamping ``app_name`` and ``app_env`` on each event."""
    app_name, app_env = settings.app_name, settings.app_env

    def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("app_name", app_name)
        event_dict.setdefault("app_env", app_env)
        return event_dict

    return add_app_context


def drop_card_numbers(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Replace raw card fields that slipped into an event."""
    for key in CARD_FIELDS.intersection(event_dict):
        event_dict[key] = REDACTED
    return event_dict


def _processor_chain(settings: Settings) -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
        drop_card_numbers,
        app_context(settings),
        # Hebrew decline texts stay readable in the output
        structlog.processors.JSONRenderer(ensure_ascii=False),
    ]


def _stdout_handler() -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "@timestamp", "levelname": "level", "name": "logger"},
        )
    )
    return handler


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Route structlog and the standard library through one JSON handler.

    Safe to call more than once; earlier root handlers are replaced.
    """
    settings = settings or get_settings()

    structlog.configure(
        processors=_processor_chain(settings),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(_stdout_handler())
    root.setLevel(settings.log_level)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        simulation_mode=settings.zcredit_simulation_mode,
    )


@contextmanager
def payment_context(**fields: Any) -> Iterator[None]:
    """
    Bind ``fields`` to every event logged inside the block.

    Example:
        with payment_context(family_id=7, user_id=3):
            await engine.process_cascade_payment(...)
    """
    with structlog.contextvars.bound_contextvars(**fields):
        yield


def get_logger(name: str) -> Any:
    """Return a structlog logger named ``name``."""
    return structlog.get_logger(name)
