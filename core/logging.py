"""
Structured logging

JSON records in deployed environments, plain text during development. Module
loggers carry bound context (domain, event id, draft key prefix) on every
record they emit.
"""
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pythonjsonlogger import jsonlogger

from core.config import settings

JSON_FORMAT = "%(timestamp)s %(level)s %(name)s %(message)s"
TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Held at WARNING; SQL echo is governed by DATABASE_ECHO instead
QUIET_LOGGERS = ("uvicorn", "httpx", "stripe")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Stamps app, environment and UTC time on every record"""

    def add_fields(
        self,
        log_record: Dict[str, Any],
        record: logging.LogRecord,
        message_dict: Dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record.update(
            timestamp=datetime.now(timezone.utc).isoformat(),
            app=settings.app_name,
            environment=settings.environment,
            level=record.levelname,
            logger=record.name,
        )
        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)


def build_formatter(log_format: str) -> logging.Formatter:
    if log_format == "json":
        return CustomJsonFormatter(JSON_FORMAT)
    return logging.Formatter(TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")


def setup_logging() -> None:
    """Send everything to stdout at LOG_LEVEL in LOG_FORMAT"""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(build_formatter(settings.log_format))

    root_logger = logging.getLogger()
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(settings.log_level.upper())

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if settings.database_echo else logging.WARNING)


class LoggerAdapter(logging.LoggerAdapter):
    """Adds bound context to every record; call-site ``extra`` wins on key clashes"""

    def __init__(self, logger: logging.Logger, extra: Optional[Dict[str, Any]] = None):
        super().__init__(logger, extra or {})

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs

    def with_context(self, **context) -> "LoggerAdapter":
        """Child logger with ``context`` bound on top of this one's"""
        return LoggerAdapter(self.logger, {**self.extra, **context})


def get_logger(name: str, **context) -> LoggerAdapter:
    """Module logger with ``context`` (usually ``domain=...``) bound"""
    return LoggerAdapter(logging.getLogger(name), context)


# Initialize logging on import
setup_logging()
