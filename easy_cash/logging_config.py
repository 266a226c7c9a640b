"""
Structured Logging Configuration Module

JSON-formatted logging for ledger operations. Besides the usual actor and
action fields, records carry the ledger ``trx_id``, the float ``request_id``
and the rejection ``reason`` as top-level keys so operations can be traced
and filtered without parsing messages.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# Record attributes promoted to top-level JSON keys, in output order
STRUCTURED_FIELDS = (
    "correlation_id",
    "user_id",
    "action",
    "resource",
    "trx_id",
    "request_id",
    "reason",
)

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """One JSON object per record"""

    def format(self, record):
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in STRUCTURED_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = value

        extra = getattr(record, 'extra', None)
        if extra:
            log_entry["extra"] = extra

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(
    level: str = "INFO",
    logger_name: str = "easycash",
    log_format: str = "json",
    log_file: Optional[str] = None
) -> logging.Logger:
    """
    Install a single handler on the application logger

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Application logger; module loggers are its children
        log_format: "json" for structured output, "text" for plain lines
        log_file: Optional path; logs go to stderr when omitted

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if log_format == "json" else logging.Formatter(TEXT_FORMAT))

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    return logger


def get_logger(name: str = "easycash") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               trx_id: Optional[str] = None, request_id: Optional[str] = None,
               reason: Optional[str] = None, extra: Optional[dict] = None):
    """
    Log a ledger action with structured fields

    Args:
        logger: Logger instance
        level: Level name (info, warning, error, ...)
        message: Human-readable message
        user_id: Email of the acting account
        action: Operation name, e.g. ``send_money``
        resource: Entity acted upon, e.g. ``account:<email>``
        correlation_id: Caller-supplied tracing id
        trx_id: Ledger entry written by the action
        request_id: Float request created or resolved by the action
        reason: Rejection code when the action was refused
        extra: Any further context
    """
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return

    record = logger.makeRecord(logger.name, levelno, __name__, 0, message, (), None)

    fields = {
        "user_id": user_id,
        "action": action,
        "resource": resource,
        "correlation_id": correlation_id,
        "trx_id": trx_id,
        "request_id": request_id,
        "reason": reason,
    }
    for name, value in fields.items():
        if value:
            setattr(record, name, value)
    if extra:
        record.extra = extra

    logger.handle(record)
