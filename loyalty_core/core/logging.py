from __future__ import annotations

import json
import logging
import logging.config
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any

from loyalty_core.core.config import settings

_RESERVED = set(logging.makeLogRecord({}).__dict__.keys()) | {"message", "asctime"}

_request_id: ContextVar[str | None] = ContextVar("request_id", default=None)


def bind_request_id(request_id: str | None) -> Token:
    return _request_id.set(request_id)


def reset_request_id(token: Token) -> None:
    _request_id.reset(token)


def current_request_id() -> str | None:
    return _request_id.get()


class JsonFormatter(logging.Formatter):
    """One JSON object per line, tagged with the service and the active request id."""

    def __init__(self, service: str | None = None) -> None:
        super().__init__()
        self.service = service or settings.PROJECT_NAME

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        request_id = getattr(record, "request_id", None) or current_request_id()
        if request_id:
            entry["request_id"] = request_id

        context = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED and key != "request_id"
        }
        if context:
            entry["context"] = context
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def setup_logging() -> None:
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"json": {"()": JsonFormatter}},
            "handlers": {
                "stdout": {"class": "logging.StreamHandler", "formatter": "json"},
            },
            "root": {"handlers": ["stdout"], "level": level},
            "loggers": {
                # Security alerts are always emitted, whatever LOG_LEVEL says.
                "loyalty_core.security": {"level": logging.WARNING},
                "uvicorn.access": {"handlers": ["stdout"], "level": level, "propagate": False},
                "celery": {"level": level},
            },
        }
    )


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def security_alert(message: str, **context: Any) -> None:
    """Warning on ``loyalty_core.security``; alerting rules match on ``alert``."""
    get_logger("loyalty_core.security").warning(message, extra={"alert": True, **context})
