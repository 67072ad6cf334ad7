"""
Outreach logging.

Every module logs through a ``StructuredLogger``: a message plus keyword
context, rendered as one JSON object per line (or colored text when
``OUTREACH_LOG_FORMAT=text``). Token-like keys are masked before output.
"""
import json
import logging
import os
import sys
import time
import traceback
from datetime import datetime
from functools import wraps
from typing import Any, Dict, Optional

LOG_LEVEL = os.environ.get("OUTREACH_LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.environ.get("OUTREACH_LOG_FORMAT", "json")  # json or text

# Never written to the log stream
REDACTED_KEYS = frozenset({
    "access_token",
    "refresh_token",
    "page_token",
    "client_secret",
    "webhook_secret",
    "signed_request",
    "code",
    "password",
})


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(getattr(record, "context", {}))
        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """Colored single-line output for local development"""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
    }
    DIM = "\033[90m"
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        line = f"{color}{datetime.utcnow():%H:%M:%S} {record.levelname:<7}{self.RESET} {record.name}: {record.getMessage()}"
        context = {k: v for k, v in getattr(record, "context", {}).items() if k != "traceback"}
        if context:
            line += f" {self.DIM}" + " ".join(f"{k}={v}" for k, v in context.items()) + self.RESET
        return line


_handler = logging.StreamHandler(sys.stdout)
_handler.setFormatter(TextFormatter() if LOG_FORMAT == "text" else JsonFormatter())


class StructuredLogger:
    """Thin wrapper over ``logging`` that carries keyword context"""

    def __init__(self, name: str, context: Optional[Dict[str, Any]] = None):
        self.name = name
        self.context = dict(context or {})
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
        if _handler not in self.logger.handlers:
            self.logger.addHandler(_handler)
        self.logger.propagate = False

    def bind(self, **context) -> "StructuredLogger":
        """Same logger with ``context`` added to every record."""
        return StructuredLogger(self.name, {**self.context, **context})

    def _log(self, level: int, message: str, context: Dict[str, Any]) -> None:
        merged = {**self.context, **context}
        for key in REDACTED_KEYS & merged.keys():
            merged[key] = "***"
        self.logger.log(level, message, extra={"context": merged})

    def debug(self, message: str, **context):
        self._log(logging.DEBUG, message, context)

    def info(self, message: str, **context):
        self._log(logging.INFO, message, context)

    def warning(self, message: str, **context):
        self._log(logging.WARNING, message, context)

    def error(self, message: str, error: Optional[Exception] = None, **context):
        if error is not None:
            context.setdefault("error_type", type(error).__name__)
            context.setdefault("error_message", str(error))
            context.setdefault("traceback", traceback.format_exc())
        self._log(logging.ERROR, message, context)


def timed(logger: StructuredLogger):
    """Log duration of an outbound provider call; failures are logged and re-raised."""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                logger.warning(
                    "Provider call failed",
                    call=func.__qualname__,
                    error_type=type(e).__name__,
                    duration_ms=round((time.perf_counter() - start) * 1000, 2),
                )
                raise
            logger.debug(
                "Provider call completed",
                call=func.__qualname__,
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
            )
            return result
        return wrapper

    return decorator


def get_logger(name: str) -> StructuredLogger:
    return StructuredLogger(f"outreach.{name}")


api_logger = get_logger("api")
campaign_logger = get_logger("campaigns")
delivery_logger = get_logger("delivery")
tracking_logger = get_logger("tracking")
oauth_logger = get_logger("oauth")
wallet_logger = get_logger("wallet")
social_logger = get_logger("social")
payments_logger = get_logger("payments")
