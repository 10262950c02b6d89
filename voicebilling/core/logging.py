"""JSON logging keyed by correlation id.

HTTP requests carry the caller's X-Correlation-ID; invoice runs use their
job id. Lines logged outside either have no correlation id.
"""

import json
import logging
import sys
import traceback
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Optional

_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Attributes every LogRecord has; anything else arrived through `extra`
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "correlation_id"}


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def set_correlation_id(correlation_id: str) -> None:
    _correlation_id.set(correlation_id)


def clear_correlation_id() -> None:
    _correlation_id.set(None)


class JsonFormatter(logging.Formatter):
    """One JSON object per line.

    Billing context passed as keyword fields (tenant_id, invoice_id,
    period...) lands under "context". UUIDs, dates and Decimals are
    rendered with str().
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
        }

        context = {k: v for k, v in record.__dict__.items() if k not in _RECORD_ATTRS}
        if context:
            entry["context"] = context

        if record.exc_info and record.exc_info[1] is not None:
            exc_type, exc, tb = record.exc_info
            entry["error"] = {
                "type": exc_type.__name__,
                "message": str(exc),
                "traceback": "".join(traceback.format_exception(exc_type, exc, tb)),
            }

        return json.dumps(entry, default=str)


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "correlation_id", None) is None:
            record.correlation_id = get_correlation_id()
        return True


def setup_logging(level: str = "INFO", json_format: bool = True) -> None:
    """Route the root logger to stdout, as JSON unless running locally."""
    root = logging.getLogger()
    root.setLevel(level.upper())
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(CorrelationIdFilter())
    if json_format:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s [%(correlation_id)s] %(message)s"
        ))
    root.addHandler(handler)

    for noisy in ("uvicorn.access", "sqlalchemy.engine", "stripe"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def log_error(
    logger: logging.Logger,
    message: str,
    exception: Optional[BaseException] = None,
    **context: Any,
) -> None:
    """Log at ERROR with billing context; a given exception adds its traceback."""
    logger.error(
        message,
        exc_info=exception,
        extra={**context, "correlation_id": get_correlation_id()},
    )


def log_warning(logger: logging.Logger, message: str, **context: Any) -> None:
    logger.warning(message, extra={**context, "correlation_id": get_correlation_id()})


def log_info(logger: logging.Logger, message: str, **context: Any) -> None:
    logger.info(message, extra={**context, "correlation_id": get_correlation_id()})
