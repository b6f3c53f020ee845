"""Logging configuration for testdock."""
import json
import logging
from typing import Any, Dict

_RESERVED = set(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """Formats log records as JSON strings."""

    def format(self, record: logging.LogRecord) -> str:
        """
        Format a log record into a JSON string.

        Attributes passed through ``extra=`` (dsn, database, attempt, ...)
        become top-level keys next to the standard fields.
        """
        log_object: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "message": record.getMessage(),
            "name": record.name,
        }

        log_object.update(
            {
                key: value
                for key, value in record.__dict__.items()
                if key not in _RESERVED and key not in log_object
            }
        )

        if record.exc_info:
            log_object["exception"] = self.formatException(record.exc_info)
        elif record.exc_text:
            log_object["exception"] = record.exc_text

        return json.dumps(log_object, default=str)


def configure_logging(level: int = logging.INFO, json_output: bool = True) -> None:
    """
    Configure the root logger.

    Existing handlers are removed and a single stream handler is installed,
    using `JSONFormatter` unless ``json_output`` is false.
    """
    logger = logging.getLogger()
    logger.setLevel(level)

    if logger.hasHandlers():
        logger.handlers.clear()

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    logger.addHandler(handler)
