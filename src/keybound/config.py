"""Environment-driven configuration using pydantic-settings."""

from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict

from keybound.errors import ConfigError

# Unauthenticated auth endpoints that sit behind the rate limiter.
RATE_LIMITED_PATHS: tuple[str, ...] = (
    "/device/register",
    "/auth/challenge",
    "/auth/verify",
    "/auth/refresh",
    "/auth/logout",
)


class Settings(BaseSettings):
    """Central configuration. All values can be overridden via env vars prefixed ``KEYBOUND_``."""

    model_config = SettingsConfigDict(
        env_prefix="KEYBOUND_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- environment ---
    env: str = "development"
    log_level: str = "INFO"

    # --- database ---
    database_url: str = "sqlite:///./keybound.db"
    auto_upgrade: bool = False
    purge_interval_seconds: int = 300

    # --- session cookie ---
    session_secret: str = ""
    cookie_name: str = "sid"
    cookie_secure: bool | None = None

    # --- protocol constants ---
    challenge_ttl_seconds: int = 120
    session_ttl_seconds: int = 900
    lockout_threshold: int = 5

    # --- edge gate ---
    rate_limit_max_requests: int = 10
    rate_limit_window_seconds: int = 60
    protected_path_prefixes: list[str] = ["/user/"]
    # Only enable behind a proxy that sets X-Forwarded-For itself.
    trust_forwarded_for: bool = False

    def require_session_secret(self) -> str:
        """Return the session-signing secret, raising :class:`ConfigError` when unset."""
        if not self.session_secret:
            raise ConfigError("KEYBOUND_SESSION_SECRET must be set to mint or verify sessions.")
        return self.session_secret

    def effective_cookie_secure(self) -> bool:
        """Return whether the ``Secure`` cookie attribute should be set."""
        if self.cookie_secure is not None:
            return self.cookie_secure
        return self.env == "production"
