"""
ECOF Delivery - Logging
=======================
One stdout handler for the `ecof` and `uvicorn` loggers, text or JSON.

Every record carries a correlation id: the API sets it per request,
pipelines set it per tick (`tick-<pipeline>-<n>`), everything else
logs "-".
"""

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Iterator, Optional

from core.config import get_settings

NO_CORRELATION = "-"
HANDLER_NAME = "ecof-delivery"
TEXT_FORMAT = "%(asctime)s %(levelname)-7s %(name)s [%(correlation_id)s] %(message)s"

_correlation_id: ContextVar[str] = ContextVar("correlation_id", default=NO_CORRELATION)


def current_correlation_id() -> str:
    return _correlation_id.get()


@contextmanager
def correlation(value: str) -> Iterator[str]:
    """Tag every record logged inside the block (and tasks it spawns) with `value`."""
    value = value or NO_CORRELATION
    token = _correlation_id.set(value)
    try:
        yield value
    finally:
        _correlation_id.reset(token)


class CorrelationFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "correlation_id", None) is None:
            record.correlation_id = current_correlation_id()
        return True


class DeliveryJSONFormatter(logging.Formatter):
    """One JSON object per line; delivery identifiers passed via `extra=` are lifted to top level."""

    DELIVERY_FIELDS = ("category", "destination_id", "org_id", "item_id", "document_id", "job_id", "attempt")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "correlation_id": getattr(record, "correlation_id", None) or NO_CORRELATION,
            "message": record.getMessage(),
        }
        entry.update({key: getattr(record, key) for key in self.DELIVERY_FIELDS if hasattr(record, key)})
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def _attach(logger: logging.Logger, handler: logging.Handler, level) -> None:
    logger.handlers = [h for h in logger.handlers if h.get_name() != HANDLER_NAME]
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False


def setup_logging(level: Optional[str] = None, json_format: Optional[bool] = None) -> logging.Logger:
    """
    Route `ecof.*` and uvicorn logs through a single stdout handler.

    Calling it again replaces the handler, so level and format can be
    changed after settings are reloaded.
    """
    settings = get_settings()
    level = str(level or settings.LOG_LEVEL).upper()
    if json_format is None:
        json_format = settings.JSON_LOGS

    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(HANDLER_NAME)
    handler.addFilter(CorrelationFilter())
    handler.setFormatter(DeliveryJSONFormatter() if json_format else logging.Formatter(TEXT_FORMAT))

    for name in ("ecof", "uvicorn"):
        _attach(logging.getLogger(name), handler, level)

    for noisy in ("httpx", "httpcore", "asyncpg"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return logging.getLogger("ecof")


__all__ = [
    "NO_CORRELATION",
    "CorrelationFilter",
    "DeliveryJSONFormatter",
    "correlation",
    "current_correlation_id",
    "setup_logging",
]
