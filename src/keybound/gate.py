"""Edge gate: fixed-window rate limiting and a codec-only session presence check.

The gate never touches the store.  A token that passes here has only been
shown to be untampered; protected endpoints still run the full session
lookup downstream.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse
from starlette.types import ASGIApp

from keybound.auth.codec import verify_session_token
from keybound.config import Settings
from keybound.errors import ConfigError, SessionInvalid

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    allowed: bool
    retry_after: int = 0


@dataclass(slots=True)
class _Window:
    count: int
    reset_at: float


class FixedWindowRateLimiter:
    """Per-key request counter with a fixed reset window.

    Process-local and best effort: state is lost on restart and the
    count is approximate across workers.  Updates are serialized by a lock.
    """

    def __init__(
        self,
        max_requests: int = 10,
        window_seconds: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._lock = threading.Lock()
        self._next_sweep = clock() + window_seconds

    def hit(self, key: str) -> RateLimitDecision:
        """Count one request for *key* and decide whether it may proceed."""
        now = self._clock()
        with self._lock:
            if now >= self._next_sweep:
                self._sweep(now)
            window = self._windows.get(key)
            if window is None or now > window.reset_at:
                self._windows[key] = _Window(count=1, reset_at=now + self.window_seconds)
                return RateLimitDecision(allowed=True)
            if window.count >= self.max_requests:
                return RateLimitDecision(
                    allowed=False, retry_after=max(1, math.ceil(window.reset_at - now))
                )
            window.count += 1
            return RateLimitDecision(allowed=True)

    def _sweep(self, now: float) -> None:
        expired = [k for k, w in self._windows.items() if now > w.reset_at]
        for k in expired:
            del self._windows[k]
        self._next_sweep = now + self.window_seconds

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()

    def __len__(self) -> int:
        return len(self._windows)


def client_ip(request: Request, *, trust_forwarded_for: bool = False) -> str:
    """Client address: the socket peer, or the first ``X-Forwarded-For`` hop.

    The header is client-controlled, so it is only read when the app sits
    behind a proxy that overwrites it (``trust_forwarded_for``).
    """
    forwarded = request.headers.get("x-forwarded-for", "") if trust_forwarded_for else ""
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client is not None and request.client.host:
        return request.client.host
    return "unknown"


def _error(status_code: int, code: str, message: str, **headers: str) -> JSONResponse:
    return JSONResponse(
        {"detail": {"code": code, "message": message}},
        status_code=status_code,
        headers=headers or None,
    )


class EdgeGateMiddleware(BaseHTTPMiddleware):
    """Rate-limit the unauthenticated auth endpoints and pre-check protected paths."""

    def __init__(
        self,
        app: ASGIApp,
        *,
        settings: Settings,
        limiter: FixedWindowRateLimiter,
        rate_limited_paths: Iterable[str],
    ) -> None:
        super().__init__(app)
        self.settings = settings
        self.limiter = limiter
        self.rate_limited_paths = frozenset(rate_limited_paths)
        self.protected_prefixes = tuple(settings.protected_path_prefixes)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path

        if request.method == "POST" and path in self.rate_limited_paths:
            ip = client_ip(request, trust_forwarded_for=self.settings.trust_forwarded_for)
            decision = self.limiter.hit(f"{ip}:{path}")
            if not decision.allowed:
                logger.warning("rate limit exceeded for %s on %s", ip, path)
                return _error(
                    429,
                    "RATE_LIMITED",
                    "Too many requests",
                    **{"Retry-After": str(decision.retry_after)},
                )

        if path.startswith(self.protected_prefixes):
            try:
                secret = self.settings.require_session_secret()
            except ConfigError:
                logger.exception("edge gate cannot verify session cookies")
                return _error(500, ConfigError.code, ConfigError.message)
            token = request.cookies.get(self.settings.cookie_name)
            if verify_session_token(token, secret) is None:
                return _error(401, SessionInvalid.code, SessionInvalid.message)

        return await call_next(request)

