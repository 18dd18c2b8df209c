"""Observability helpers: trace ids, logging setup and secret redaction."""

from keybound.obs.redaction import RedactingFilter, redact_headers, redact_value
from keybound.obs.setup import TraceIdMiddleware, configure_logging, init_observability

__all__ = [
    "RedactingFilter",
    "TraceIdMiddleware",
    "configure_logging",
    "init_observability",
    "redact_headers",
    "redact_value",
]
