"""Redaction utilities – keep session tokens and credentials out of logs."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping

# Header names that must never appear in logs.
_SENSITIVE_HEADERS = frozenset(
    {
        "authorization",
        "cookie",
        "set-cookie",
        "x-api-key",
    }
)

# Patterns matched in values.
_SECRET_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"\bs[a-z2-7]{31}\.[A-Za-z0-9_-]{43}(?![A-Za-z0-9_-])"),  # session token
    re.compile(r"\bsid=[^;\s]+"),  # cookie pair
    re.compile(r"eyJ[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]+"),  # JWT-like
]


def redact_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Return a copy of *headers* with sensitive entries masked."""
    out: dict[str, str] = {}
    for k, v in headers.items():
        if k.lower() in _SENSITIVE_HEADERS:
            out[k] = "[REDACTED]"
        else:
            out[k] = v
    return out


def redact_value(value: str) -> str:
    """Replace known secret patterns in *value* with ``[REDACTED]``."""
    result = value
    for pat in _SECRET_PATTERNS:
        result = pat.sub("[REDACTED]", result)
    return result


class RedactingFilter(logging.Filter):
    """Scrub secrets from the fully formatted message of each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact_value(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True
