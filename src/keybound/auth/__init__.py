"""Device-key authentication: registry, ledgers and the protocol orchestrator."""

from keybound.auth.router import require_session
from keybound.auth.router import router as auth_router

__all__ = ["auth_router", "require_session"]
