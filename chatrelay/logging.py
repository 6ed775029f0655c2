"""Application logging configuration utilities."""

from __future__ import annotations

import contextvars
import json
import logging
import os
import pathlib
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any, Dict

_LOG_CONFIGURED = False
_REQUEST_ID_CTX: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "request_id", default=None
)
_CHAT_SESSION_CTX: contextvars.ContextVar[int | None] = contextvars.ContextVar(
    "chat_session_id", default=None
)

BASE_DIR = pathlib.Path(__file__).resolve().parent.parent


class DispatchContextFilter(logging.Filter):
    """Inject request and chat-session identifiers into log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _REQUEST_ID_CTX.get()
        if getattr(record, "session_id", None) is None:
            record.session_id = _CHAT_SESSION_CTX.get()
        return True


class JsonFormatter(logging.Formatter):
    """Serialize log records as JSON lines."""

    _RESERVED = set(
        logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__
    ) | {"message", "asctime"}

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key in self._RESERVED or key.startswith("_") or value is None:
                continue
            payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=True, default=str)


def set_request_id(request_id: str | None) -> contextvars.Token[str | None]:
    """Bind the current request ID to the logging context."""
    return _REQUEST_ID_CTX.set(request_id)


def reset_request_id(token: contextvars.Token[str | None]) -> None:
    _REQUEST_ID_CTX.reset(token)


def get_request_id() -> str | None:
    return _REQUEST_ID_CTX.get()


def bind_chat_session(session_id: int | None) -> contextvars.Token[int | None]:
    """Tag subsequent log records in this context with a chat session id."""
    return _CHAT_SESSION_CTX.set(session_id)


def reset_chat_session(token: contextvars.Token[int | None]) -> None:
    _CHAT_SESSION_CTX.reset(token)


def _log_file_path() -> pathlib.Path:
    configured = os.getenv("LOG_FILE", "logs/chatrelay.jsonl")
    path = pathlib.Path(configured)
    if not path.is_absolute():
        path = BASE_DIR.parent / path
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def configure_logging() -> None:
    """Configure global logging for the application."""
    global _LOG_CONFIGURED
    if _LOG_CONFIGURED:
        return

    console_level_name = os.getenv("LOG_LEVEL", "WARNING").upper()
    console_level = getattr(logging, console_level_name, logging.WARNING)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.INFO)

    # Remove default handlers that may exist in certain execution environments.
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    context_filter = DispatchContextFilter()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(console_level)
    console_handler.addFilter(context_filter)
    console_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s %(levelname)s [%(name)s] %(message)s "
            "(request_id=%(request_id)s session_id=%(session_id)s)"
        )
    )
    root_logger.addHandler(console_handler)

    file_handler = RotatingFileHandler(
        _log_file_path(),
        maxBytes=10_000_000,
        backupCount=5,
    )
    file_handler.setLevel(logging.INFO)
    file_handler.addFilter(context_filter)
    file_handler.setFormatter(JsonFormatter())
    root_logger.addHandler(file_handler)

    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    _LOG_CONFIGURED = True


__all__ = [
    "bind_chat_session",
    "configure_logging",
    "get_request_id",
    "reset_chat_session",
    "reset_request_id",
    "set_request_id",
]
