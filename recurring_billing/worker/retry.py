from __future__ import annotations

import re
from datetime import datetime, timedelta

from recurring_billing.billing.errors import BillingError

_BACKOFF_BASE_MINUTES = 60
_BACKOFF_CAP_MINUTES = 24 * 60
_MAX_ERROR_LENGTH = 500
_SENSITIVE_PATTERNS = (
    re.compile(r"bearer\s+[a-z0-9\-_\.]+", re.IGNORECASE),
    re.compile(r"(api[_-]?key|token|secret|password|signature)\s*[:=]\s*[^\s,;]+", re.IGNORECASE),
)


def next_retry_delay_minutes(attempt: int) -> int:
    attempt = max(0, attempt)
    if attempt > 10:
        return _BACKOFF_CAP_MINUTES
    return min(2**attempt * _BACKOFF_BASE_MINUTES, _BACKOFF_CAP_MINUTES)


def next_retry_delay(attempt: int) -> timedelta:
    return timedelta(minutes=next_retry_delay_minutes(attempt))


def next_retry_at(attempt: int, now: datetime) -> datetime:
    return now + next_retry_delay(attempt)


def sanitize_error(exc: BaseException, *, default_message: str) -> str:
    if isinstance(exc, BillingError) and exc.message.strip():
        message = exc.message.strip()
    else:
        message = str(exc).strip()
    if not message:
        message = default_message
    return sanitize_text(message)


def sanitize_text(message: str) -> str:
    sanitized = message
    for pattern in _SENSITIVE_PATTERNS:
        sanitized = pattern.sub("[redacted]", sanitized)
    return sanitized[:_MAX_ERROR_LENGTH]
