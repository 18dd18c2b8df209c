"""Logging setup and request tracing middleware."""

from __future__ import annotations

import logging
import uuid

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from keybound.obs.redaction import RedactingFilter, redact_headers

logger = logging.getLogger("keybound.request")

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class TraceIdMiddleware(BaseHTTPMiddleware):
    """Attach a ``X-Trace-Id`` header to every response."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        trace_id = request.headers.get("x-trace-id", uuid.uuid4().hex)
        request.state.trace_id = trace_id
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "%s %s trace=%s headers=%s",
                request.method,
                request.url.path,
                trace_id,
                redact_headers(request.headers),
            )
        response = await call_next(request)
        response.headers["X-Trace-Id"] = trace_id
        logger.info(
            "%s %s -> %d trace=%s",
            request.method,
            request.url.path,
            response.status_code,
            trace_id,
        )
        return response


def configure_logging(level: str | int = "INFO") -> None:
    """Install a redacting stream handler on the ``keybound`` logger once."""
    root = logging.getLogger("keybound")
    root.setLevel(level if isinstance(level, int) else level.upper())
    if any(getattr(h, "_keybound", False) for h in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    handler.addFilter(RedactingFilter())
    handler._keybound = True  # type: ignore[attr-defined]
    root.addHandler(handler)


def init_observability(app: FastAPI, *, log_level: str = "INFO") -> None:
    """Configure logging and wire up the trace id middleware."""
    configure_logging(log_level)
    app.add_middleware(TraceIdMiddleware)
