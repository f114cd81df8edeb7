"""
Structured Logging Configuration Module

JSON log lines for transfer and loan operations. `log_action` attaches the
acting user, the action name and the affected resource as separate fields.
Each API request runs under a correlation id (see `correlation_context`) which
is stamped on every line logged while it is active. Values under sensitive
keys (verification codes, PINs, tokens) are masked before they are written.
"""

import contextvars
import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

ROOT_LOGGER = "funds_ledger"

SENSITIVE_KEYS = frozenset({
    "verification_code", "code", "code_hash", "pin", "password", "token", "authorization"
})
REDACTED = "***"

_correlation_id = contextvars.ContextVar('correlation_id', default=None)


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


@contextmanager
def correlation_context(correlation_id: str) -> Iterator[str]:
    """Tag every log line emitted inside the block with correlation_id"""
    token = _correlation_id.set(correlation_id)
    try:
        yield correlation_id
    finally:
        _correlation_id.reset(token)


def redact(value: Any) -> Any:
    """Copy of value with sensitive keys masked, recursing into dicts and lists"""
    if isinstance(value, dict):
        return {
            k: REDACTED if str(k).lower() in SENSITIVE_KEYS else redact(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(v) for v in value]
    return value


class JSONFormatter(logging.Formatter):
    """One JSON object per log line"""

    def format(self, record):
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, 'correlation_id', None) or get_correlation_id(),
            "user_id": getattr(record, 'user_id', None),
            "action": getattr(record, 'action', None),
            "resource": getattr(record, 'resource', None),
            "details": redact(getattr(record, 'details', None))
        }
        entry = {k: v for k, v in entry.items() if v is not None}

        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO", log_format: str = "json",
                  logger_name: str = ROOT_LOGGER) -> logging.Logger:
    """
    Configure the package logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: "json" for structured lines, "text" for plain lines
        logger_name: Logger to configure; children inherit its handler

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False
    return logger


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    """Logger under the funds_ledger hierarchy"""
    if name != ROOT_LOGGER and not name.startswith(ROOT_LOGGER + "."):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Log one operation outcome with structured fields.

    `extra` lands under "details" in JSON output, with sensitive keys masked.
    """
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return

    fields = {
        'user_id': user_id,
        'action': action,
        'resource': resource,
        'correlation_id': correlation_id,
        'details': extra
    }
    logger.log(levelno, message, extra={k: v for k, v in fields.items() if v})
