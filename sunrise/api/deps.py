from __future__ import annotations

from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from sunrise.api.context import get_route_logger
from sunrise.api.errors import ForbiddenError, RateLimitExceededError, UnauthorizedError
from sunrise.api.security import Principal
from sunrise.core.logging import StructuredLogger
from sunrise.core.settings import Settings
from sunrise.db.models import ROLE_ADMIN, User
from sunrise.security.ip import get_client_ip
from sunrise.services.auth_service import AuthService, InvalidToken
from sunrise.services.email_service import EmailService
from sunrise.services.feature_flags import FeatureFlagService
from sunrise.services.invitation_service import InvitationService
from sunrise.services.log_buffer import LogBuffer
from sunrise.services.rate_limiter import RateLimiters, RateLimitResult
from sunrise.services.storage import UploadService


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


# -----------------
# Database / Services
# -----------------

def get_db(request: Request):
    SessionLocal = request.app.state.db_sessionmaker
    db: Session = SessionLocal()  # type: ignore
    try:
        yield db
    finally:
        db.close()


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_invitation_service(request: Request) -> InvitationService:
    return request.app.state.invitation_service


def get_feature_flag_service(request: Request) -> FeatureFlagService:
    return request.app.state.feature_flag_service


def get_email_service(request: Request) -> EmailService:
    return request.app.state.email_service


def get_upload_service(request: Request) -> UploadService:
    return request.app.state.upload_service


def get_rate_limiters(request: Request) -> RateLimiters:
    return request.app.state.rate_limiters


def get_log_buffer(request: Request) -> LogBuffer:
    return request.app.state.log_buffer


def get_ip(request: Request) -> str:
    """Client IP for rate limiting and logging (proxy headers first)."""
    return get_client_ip(request.headers)


def check_rate_limit(request: Request, name: str, key: Optional[str] = None, log: Optional[StructuredLogger] = None) -> RateLimitResult:
    """Consume one slot from limiter ``name``; raise a 429 when exhausted."""
    key = key or get_ip(request)
    result = get_rate_limiters(request).get(name).check(key)
    if not result.success:
        if log is not None:
            log.warn("Rate limit exceeded", {"limiter": name, "key": key, "reset": result.reset})
        raise RateLimitExceededError(result)
    return result


# -----------------
# Auth
# -----------------

_bearer = HTTPBearer(auto_error=False)


def get_current_principal(
    request: Request,
    creds: HTTPAuthorizationCredentials = Depends(_bearer),
    db: Session = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
) -> Principal:
    # Preferred path: AuthEnforcementMiddleware already validated the request.
    principal = getattr(request.state, "principal", None)
    if isinstance(principal, Principal):
        return principal

    # Fallback path (public routes that optionally read the user).
    if not creds or not creds.credentials:
        raise UnauthorizedError("Not authenticated")

    try:
        user_id = auth.decode_access_token(creds.credentials)
    except InvalidToken:
        raise UnauthorizedError("Invalid token")

    user = db.get(User, user_id)
    if not user:
        raise UnauthorizedError("Invalid token")
    principal = Principal(user=user, role=user.role)
    request.state.principal = principal
    return principal


def get_current_user(
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
) -> User:
    # Re-load in the request session so route handlers can modify it.
    user = db.get(User, principal.user_id)
    if not user:
        raise UnauthorizedError("Invalid token")
    return user


def get_current_user_optional(
    request: Request,
    creds: HTTPAuthorizationCredentials = Depends(_bearer),
    db: Session = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
) -> Optional[User]:
    if not creds or not creds.credentials:
        return None
    try:
        p = get_current_principal(request, creds, db, auth)
    except UnauthorizedError:
        return None
    return db.get(User, p.user_id)


def require_role(role: str):
    def _inner(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role != role:
            raise ForbiddenError(f"{role.title()} access required")
        return principal

    return _inner


require_admin = require_role(ROLE_ADMIN)


def rate_limit(name: str):
    """Dependency: consume from limiter ``name`` keyed by client IP.

    Runs before body validation so throttled clients never reach the handler.
    """

    def _inner(request: Request) -> RateLimitResult:
        return check_rate_limit(request, name, log=get_route_logger(request))

    return _inner
