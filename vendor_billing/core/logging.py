from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar, Token
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TextIO

from vendor_billing.core.settings import get_settings

_run_id_var: ContextVar[str | None] = ContextVar("billing_run_id", default=None)
_billing_pass_var: ContextVar[str | None] = ContextVar("billing_pass", default=None)

# Attributes every LogRecord carries; anything else arrived through ``extra``.
_RECORD_ATTRIBUTES = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}
_CONTEXT_KEYS = ("run_id", "billing_pass")
_SENSITIVE_KEY_FRAGMENTS = ("secret", "token", "password", "apikey", "api_key", "card_number")
_REDACTED = "[redacted]"
_MAX_ERROR_LENGTH = 500


def set_run_id(run_id: str | None) -> Token[str | None]:
    return _run_id_var.set(run_id)


def reset_run_id(token: Token[str | None]) -> None:
    _run_id_var.reset(token)


def get_run_id() -> str | None:
    return _run_id_var.get()


def set_billing_pass(billing_pass: str | None) -> Token[str | None]:
    return _billing_pass_var.set(billing_pass)


def reset_billing_pass(token: Token[str | None]) -> None:
    _billing_pass_var.reset(token)


def _context_value(key: str) -> str | None:
    if key == "run_id":
        return _run_id_var.get()
    return _billing_pass_var.get()


def _json_safe_value(value: Any) -> Any:
    if value is None or isinstance(value, str | int | float | bool):
        return value
    if isinstance(value, Enum):
        return _json_safe_value(value.value)
    if isinstance(value, datetime):
        return value.isoformat().replace("+00:00", "Z")
    if isinstance(value, dict):
        return {str(key): _json_safe_value(item) for key, item in value.items()}
    if isinstance(value, list | tuple | set | frozenset):
        return [_json_safe_value(item) for item in value]
    return str(value)


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(fragment in lowered for fragment in _SENSITIVE_KEY_FRAGMENTS)


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line; the message is a dotted event name."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "component": getattr(record, "component", record.name.split(".", 1)[0]),
        }

        for key in _CONTEXT_KEYS:
            value = getattr(record, key, None) or _context_value(key)
            if value:
                payload[key] = _json_safe_value(value)

        for key, value in vars(record).items():
            if key in _RECORD_ATTRIBUTES or key in payload or key.startswith("_"):
                continue
            payload[key] = _REDACTED if _is_sensitive_key(key) else _json_safe_value(value)

        if record.exc_info and record.exc_info[1] is not None:
            exc = record.exc_info[1]
            payload["error_type"] = type(exc).__name__
            payload["error"] = str(exc)[:_MAX_ERROR_LENGTH]

        return json.dumps(payload, separators=(",", ":"), ensure_ascii=True)


def configure_logging(level: str | None = None, *, stream: TextIO | None = None) -> None:
    root_logger = logging.getLogger()
    if any(isinstance(handler.formatter, JsonLogFormatter) for handler in root_logger.handlers):
        return

    level_name = (level or get_settings().LOG_LEVEL).strip().upper() or "INFO"
    resolved = logging.getLevelName(level_name)
    if not isinstance(resolved, int):
        resolved = logging.INFO

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JsonLogFormatter())
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(resolved)

    # Both clients log one INFO line per HTTP request.
    for noisy in ("stripe", "httpx"):
        logging.getLogger(noisy).setLevel(max(resolved, logging.WARNING))


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)
