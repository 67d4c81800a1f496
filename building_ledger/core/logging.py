import logging
from logging.config import dictConfig
from typing import Literal

LogLevel = Literal["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"]

JSON_FORMATTER_CLASS = "pythonjsonlogger.json.JsonFormatter"


class RequestIdFilter(logging.Filter):
    """Attach the current request id (if any) to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        from .request_context import current_request_id

        record.request_id = current_request_id() or "-"
        return True


def configure_logging(level: LogLevel = "INFO", json_logs: bool = False) -> None:
    """Configure structured logging across the app."""
    formatters = {
        "default": {
            "format": "%(asctime)s | %(levelname)s | %(name)s | %(request_id)s | %(message)s",
        },
        "json": {
            "()": JSON_FORMATTER_CLASS,
            "format": "%(asctime)s %(levelname)s %(name)s %(request_id)s %(message)s",
        },
    }

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {"request_id": {"()": RequestIdFilter}},
            "formatters": formatters,
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "json" if json_logs else "default",
                    "filters": ["request_id"],
                }
            },
            "root": {"handlers": ["console"], "level": level.upper()},
        }
    )

    logging.getLogger("uvicorn").handlers = []
    logging.getLogger("uvicorn.error").handlers = []
    logging.getLogger("uvicorn.access").handlers = []
