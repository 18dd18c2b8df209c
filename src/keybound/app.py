"""Application factory."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from keybound.auth.router import router as auth_router
from keybound.auth.sessions import purge_expired
from keybound.config import RATE_LIMITED_PATHS, Settings
from keybound.db.base import Base
from keybound.db.engine import create_async_engine_from_settings
from keybound.db.migrations.runtime import (
    PackagedMigrationsError,
    get_schema_status,
    run_upgrade_to_head_async,
)
from keybound.errors import InternalError, KeyboundError
from keybound.gate import EdgeGateMiddleware, FixedWindowRateLimiter
from keybound.obs import init_observability
from keybound.version import __version__ as KEYBOUND_VERSION

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------


def _internal_error() -> JSONResponse:
    return JSONResponse(
        {"detail": InternalError().to_detail()},
        status_code=InternalError.status_code,
    )


async def _keybound_error_handler(request: Request, exc: KeyboundError) -> JSONResponse:
    if isinstance(exc, InternalError):
        logger.error("internal error on %s %s", request.method, request.url.path, exc_info=exc)
        return _internal_error()
    return JSONResponse({"detail": exc.to_detail()}, status_code=exc.status_code)


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
    detail = {"code": "VALIDATION_ERROR", "message": "Invalid request data", "fields": fields}
    return JSONResponse({"detail": detail}, status_code=400)


async def _database_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("database error on %s %s", request.method, request.url.path, exc_info=exc)
    return _internal_error()


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create a FastAPI application serving the device auth endpoints."""
    if settings is None:
        settings = Settings()

    # --- database (async) ---
    async_engine = create_async_engine_from_settings(settings)

    # Import models so they register with Base.metadata before create_all.
    import keybound.auth.models  # noqa: F401

    async_session_factory = async_sessionmaker(async_engine, expire_on_commit=False)

    async def _purge_loop() -> None:
        while True:
            await asyncio.sleep(settings.purge_interval_seconds)
            try:
                async with async_session_factory() as db:
                    await purge_expired(db)
            except Exception:  # noqa: BLE001
                logger.exception("purge of expired challenges and sessions failed")

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        if not settings.session_secret:
            logger.warning("KEYBOUND_SESSION_SECRET is not set; verify and refresh will fail")

        if settings.auto_upgrade:
            if settings.env == "production":
                logger.warning(
                    "KEYBOUND_AUTO_UPGRADE is enabled in production; "
                    "this is an explicit operator decision."
                )
            try:
                await run_upgrade_to_head_async(settings.database_url)
            except PackagedMigrationsError:
                logger.warning("packaged migrations not found; installation may be broken")
            except Exception:  # noqa: BLE001
                logger.exception("database auto-upgrade failed")
                raise

        try:
            schema_status = await asyncio.to_thread(get_schema_status, settings.database_url)
            if schema_status.warning:
                logger.warning(schema_status.warning)
        except PackagedMigrationsError:
            logger.warning("packaged migrations not found; installation may be broken")

        async with async_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        purge_task = None
        if settings.purge_interval_seconds > 0:
            purge_task = asyncio.create_task(_purge_loop())
        try:
            yield
        finally:
            if purge_task is not None:
                purge_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await purge_task
            await async_engine.dispose()

    app = FastAPI(
        title="keybound",
        description="Passwordless device-key authentication.",
        version=KEYBOUND_VERSION,
        lifespan=lifespan,
    )

    # Store on app.state for dependency access.
    rate_limiter = FixedWindowRateLimiter(
        max_requests=settings.rate_limit_max_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )
    app.state.settings = settings
    app.state.async_engine = async_engine
    app.state.async_session_factory = async_session_factory
    app.state.rate_limiter = rate_limiter

    # --- errors ---
    app.add_exception_handler(KeyboundError, _keybound_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(SQLAlchemyError, _database_error_handler)

    # --- middleware (last added runs first) ---
    app.add_middleware(
        EdgeGateMiddleware,
        settings=settings,
        limiter=rate_limiter,
        rate_limited_paths=RATE_LIMITED_PATHS,
    )
    init_observability(app, log_level=settings.log_level)

    # --- routers ---
    app.include_router(auth_router)

    class HealthResponse(BaseModel):
        status: str = Field(..., description="Health status string.")

    @app.get(
        "/health",
        response_model=HealthResponse,
        summary="Health",
        description="Basic health check for the app.",
    )
    def health() -> HealthResponse:
        return HealthResponse(status="healthy")

    return app
