from __future__ import annotations

from dataclasses import dataclass

from sunrise.db.models import ROLE_ADMIN, User


@dataclass(slots=True)
class Principal:
    """Authenticated user for a request."""

    user: User
    role: str

    @property
    def user_id(self) -> int:
        return self.user.id

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


PUBLIC_PATHS = frozenset(
    {
        "/api/health",
        "/api/csp-report",
        "/api/auth/login",
        "/api/auth/refresh",
        "/api/auth/logout",
        "/api/auth/signup",
        "/api/auth/verify-email",
        "/api/auth/send-verification-email",
        "/api/auth/clear-session",
        "/api/auth/accept-invite",
        "/api/auth/forgot-password",
        "/api/auth/reset-password",
        "/api/v1/contact",
        "/api/v1/invitations/metadata",
    }
)


def is_path_allowlisted(path: str, *, env: str) -> bool:
    """Decide if the path should bypass auth enforcement.

    Everything outside ``/api`` is static content (uploads and the SPA) and is
    left to its own handlers.
    """

    path = (path or "/").strip() or "/"
    if len(path) > 1:
        path = path.rstrip("/")

    if not path.startswith("/api"):
        return True

    if path in PUBLIC_PATHS:
        return True

    # Swagger docs only in dev
    if env.lower() in ("dev", "development", "local"):
        if path in ("/api/docs", "/api/openapi.json", "/api/redoc"):
            return True

    return False
