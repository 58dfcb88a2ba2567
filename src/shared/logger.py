"""
Structured JSON Logging Configuration

Structured logging shared by the order consumer process and the order service
components (repository, cache, service, backoff).

WHY STRUCTURED LOGGING?
- Every order event crosses three systems (Kafka, PostgreSQL, cache)
- JSON lines can be filtered by order_uid across all of them
- Retry attempts, delays and error types become queryable fields

COMPONENT LOGGERS:
- Components never configure logging themselves
- Each accepts an optional logger in its constructor and falls back to
  logging.getLogger(__name__)
- The entry point calls setup_logger("src", ...) once, so every module logger
  under the src package inherits the handler

EXAMPLE OUTPUT:
{
  "timestamp": "2025-01-10T14:30:00.123Z",
  "level": "WARNING",
  "service": "order-service",
  "logger": "src.shared.backoff",
  "correlation_id": "b563feb7b2b84b6test",
  "message": "Retrying after transient failure",
  "extra": {"operation": "repository.create", "attempt": 2, "delay_s": 0.148}
}
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict

# ==============================================================================
# JSON FORMATTER
# ==============================================================================

# LogRecord attributes that are not user-supplied extra fields
_STANDARD_ATTRS = frozenset(
    {
        "name", "msg", "args", "created", "filename", "funcName",
        "levelname", "levelno", "lineno", "module", "msecs",
        "message", "pathname", "process", "processName", "relativeCreated",
        "thread", "threadName", "exc_info", "exc_text", "stack_info",
        "taskName", "correlation_id",
    }
)


class JSONFormatter(logging.Formatter):
    """
    Log formatter that renders each record as a single JSON object.

    Fields: timestamp, level, service, logger, message, correlation_id
    (order_uid, when present), exception (formatted traceback, when present)
    and extra (everything passed through ``extra=``).
    """

    def __init__(self, service_name: str = "order-service", include_extra: bool = True):
        super().__init__()
        self.service_name = service_name
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": self._format_timestamp(record.created),
            "level": record.levelname,
            "service": self.service_name,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if getattr(record, "correlation_id", None) is not None:
            log_data["correlation_id"] = record.correlation_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if self.include_extra:
            extra_fields = {
                k: v
                for k, v in record.__dict__.items()
                if k not in _STANDARD_ATTRS and not k.startswith("_")
            }
            if extra_fields:
                log_data["extra"] = extra_fields

        return json.dumps(log_data, default=str)

    @staticmethod
    def _format_timestamp(created: float) -> str:
        """Format a record timestamp as ISO 8601 UTC with millisecond precision."""
        dt = datetime.fromtimestamp(created, tz=timezone.utc)
        return dt.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


# ==============================================================================
# PLAIN TEXT FORMATTER (for development)
# ==============================================================================


class PlainTextFormatter(logging.Formatter):
    """
    Human-readable formatter for local development.

    Format: [2025-01-10 14:30:00] INFO [order-service] Order persisted
    """

    def __init__(self, service_name: str = "order-service"):
        super().__init__(
            fmt=f"[%(asctime)s] %(levelname)s [{service_name}] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


# ==============================================================================
# LOGGER SETUP
# ==============================================================================


def setup_logger(
    name: str,
    service_name: str,
    log_level: str = "INFO",
    log_format: str = "json",
) -> logging.Logger:
    """
    Configure a logger with one stdout handler.

    Args:
        name: Logger name. Use the package name ("src") to configure every
            component logger at once.
        service_name: Service identifier written into every record
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        log_format: "json" or "text"

    Returns:
        The configured logger. Calling again with the same name does not add a
        second handler.
    """
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    if logger.handlers:
        return logger

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logger.level)

    if log_format.lower() == "json":
        formatter: logging.Formatter = JSONFormatter(service_name=service_name)
    else:
        formatter = PlainTextFormatter(service_name=service_name)

    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


# ==============================================================================
# CORRELATION ID ADAPTER
# ==============================================================================


class CorrelationAdapter(logging.LoggerAdapter):
    """
    Logger adapter that stamps every record with the adapter's correlation_id.

    The consumer opens one adapter per message, keyed by order_uid, so that the
    decode, persist and commit stages of one order can be traced together.

    Example:
        >>> order_logger = CorrelationAdapter(logger, {"correlation_id": order.order_uid})
        >>> order_logger.info("Order persisted")
    """

    def process(self, msg: str, kwargs: dict) -> tuple:
        extra = dict(kwargs.get("extra") or {})

        if "correlation_id" in self.extra:
            extra["correlation_id"] = self.extra["correlation_id"]

        kwargs["extra"] = extra
        return msg, kwargs
