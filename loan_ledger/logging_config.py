"""
Structured Logging

One JSON object per line. Ledger operations attach the caller context
(tenant, user, correlation id) plus the action and the loan it touched, so a
single payment can be traced from the API request to the audit row.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# Attributes copied from a LogRecord into the JSON line when present
CONTEXT_FIELDS = ('correlation_id', 'tenant_id', 'user_id', 'action', 'resource', 'extra')

TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class JSONFormatter(logging.Formatter):
    """Render a record and its ledger context as a JSON line"""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                payload[name] = value

        if record.exc_info:
            payload['exception'] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "loan_ledger",
                  log_format: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Attach a single handler to the ledger logger.

    Calling this again replaces the previous handler. Records do not
    propagate to the root logger.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        logger_name: Logger to configure
        log_format: "json" or "text"
        log_file: Write to this file instead of stderr
    """
    logger = logging.getLogger(logger_name)
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if log_format == "json" else logging.Formatter(TEXT_FORMAT))

    logger.addHandler(handler)
    logger.setLevel(level.upper())
    logger.propagate = False
    return logger


def log_action(logger: logging.Logger, level: str, message: str,
               tenant_id: Optional[str] = None, user_id: Optional[str] = None,
               action: Optional[str] = None, resource: Optional[str] = None,
               correlation_id: Optional[str] = None, extra: Optional[dict] = None):
    """Log ``message`` with whichever context fields are set"""
    context = {
        'tenant_id': tenant_id,
        'user_id': user_id,
        'action': action,
        'resource': resource,
        'correlation_id': correlation_id,
        'extra': extra or None,
    }
    logger.log(
        logging.getLevelName(level.upper()), message,
        extra={k: v for k, v in context.items() if v is not None}
    )
