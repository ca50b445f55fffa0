"""
Structured Logging Configuration Module

JSON log lines for ledger operations. Each record carries the ledger
fields below when they are set, so a posting can be traced by account or
transaction id.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional


STRUCTURED_FIELDS = (
    "correlation_id", "account_id", "transaction_id", "action", "resource", "extra"
)


class JSONFormatter(logging.Formatter):
    """One JSON object per record, unset ledger fields omitted"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in STRUCTURED_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "minibank") -> logging.Logger:
    """
    Attach a JSON stream handler to the application logger.

    Calling it again replaces the handler instead of adding a second one.
    """
    logger = logging.getLogger(logger_name)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logger.addHandler(handler)
    logger.setLevel(level.upper())
    logger.propagate = False
    return logger


def get_logger(name: str = "minibank") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               account_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None, transaction_id: Optional[str] = None):
    """
    Log a ledger action with its structured fields.

    Args:
        logger: Logger instance
        level: Level name (info, warning, ...)
        message: Log message
        account_id: Account the action was performed for
        action: Operation name, e.g. ``post_transaction``
        resource: Resource acted upon, e.g. ``account:<id>``
        correlation_id: Request correlation id
        extra: Additional structured data
        transaction_id: Audit entry the action produced
    """
    levelno = logging.getLevelName(level.upper())
    fields = {
        "account_id": account_id,
        "transaction_id": transaction_id,
        "action": action,
        "resource": resource,
        "correlation_id": correlation_id,
        "extra": extra,
    }
    logger.log(levelno, message, extra={k: v for k, v in fields.items() if v})
