from __future__ import annotations

import re
from datetime import UTC, datetime, time, timedelta
from zoneinfo import ZoneInfo

from fastapi import HTTPException

_MAX_ERROR_LENGTH = 500
_SENSITIVE_PATTERNS = (
    re.compile(r"bearer\s+[a-z0-9\-_\.]+", re.IGNORECASE),
    re.compile(r"(api[_-]?key|token|secret|password)\s*[:=]\s*[^\s,;]+", re.IGNORECASE),
    re.compile(r"\b(sk|rk)_(live|test)_[a-z0-9]+", re.IGNORECASE),
)

_FIRST_RETRY_AFTERNOON = time(15, 0)
_MORNING_RETRY = time(7, 0)
_NOON = time(12, 0)
_SECOND_RETRY_DELAY_DAYS = 3


def next_retry_at(attempt: int, failed_at: datetime, tz: ZoneInfo) -> datetime:
    """Next charge attempt after the ``attempt``-th consecutive failure, in UTC."""
    local_failed_at = failed_at.astimezone(tz)
    local_day = local_failed_at.date()

    if attempt <= 1:
        if local_failed_at.time() < _NOON:
            retry_local = datetime.combine(local_day, _FIRST_RETRY_AFTERNOON, tzinfo=tz)
        else:
            retry_local = datetime.combine(local_day + timedelta(days=1), _MORNING_RETRY, tzinfo=tz)
    else:
        retry_day = local_day + timedelta(days=_SECOND_RETRY_DELAY_DAYS)
        retry_local = datetime.combine(retry_day, _MORNING_RETRY, tzinfo=tz)

    return retry_local.astimezone(UTC)


def sanitize_error(exc: Exception, *, default_message: str) -> str:
    if isinstance(exc, HTTPException) and isinstance(exc.detail, str) and exc.detail.strip():
        message = exc.detail.strip()
    else:
        message = str(exc).strip()
    if not message:
        message = default_message

    sanitized = message
    for pattern in _SENSITIVE_PATTERNS:
        sanitized = pattern.sub("[redacted]", sanitized)
    return sanitized[:_MAX_ERROR_LENGTH]
