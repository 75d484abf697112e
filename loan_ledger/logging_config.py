"""
Structured Logging Module

One JSON object per log line for every facade operation, carrying the
action performed and the loan or account it touched.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

ROOT_LOGGER = "loan_ledger"

# Attributes log_action attaches to a record, in output order
STRUCTURED_FIELDS = ("action", "resource", "correlation_id", "context")

TEXT_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"


class JSONFormatter(logging.Formatter):
    """Renders a record as a single-line JSON object"""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in STRUCTURED_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = ROOT_LOGGER,
                  log_format: str = "json") -> logging.Logger:
    """
    Attach a single stderr handler to the engine's logger.

    Calling it again replaces the handler rather than adding a second one.

    Args:
        level: Level name, e.g. "DEBUG"
        logger_name: Logger to configure; children inherit it
        log_format: "json", or "text" for human-readable lines
    """
    logger = logging.getLogger(logger_name)
    logger.handlers.clear()

    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if log_format == "json" else logging.Formatter(TEXT_FORMAT))
    logger.addHandler(handler)
    logger.setLevel(level.upper())
    logger.propagate = False
    return logger


def configure_from(settings) -> logging.Logger:
    """Apply the log level and format of a LedgerConfig"""
    return setup_logging(settings.log_level, ROOT_LOGGER, settings.log_format)


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               action: Optional[str] = None, resource: Optional[str] = None,
               correlation_id: Optional[str] = None, extra: Optional[dict] = None):
    """Log message with the structured fields JSONFormatter emits"""
    fields = {
        "action": action,
        "resource": resource,
        "correlation_id": correlation_id,
        "context": extra,
    }
    logger.log(logging.getLevelName(level.upper()), message,
               extra={k: v for k, v in fields.items() if v is not None})
