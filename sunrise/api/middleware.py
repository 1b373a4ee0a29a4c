from __future__ import annotations

from typing import Callable, Optional, Sequence, Union
from urllib.parse import urlsplit

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from sunrise.api.context import REQUEST_ID_HEADER, get_request_id
from sunrise.api.errors import ErrorCodes
from sunrise.api.responses import error_response
from sunrise.api.security import Principal, is_path_allowlisted
from sunrise.db.models import User
from sunrise.security.cors import (
    ALLOWED_HEADERS,
    ALLOWED_METHODS,
    EXPOSED_HEADERS,
    MAX_AGE_S,
    is_origin_allowed,
)
from sunrise.security.csp import generate_nonce, set_security_headers
from sunrise.security.ip import get_client_ip
from sunrise.services.auth_service import InvalidToken

STATE_CHANGING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


def _unauthorized(message: str) -> Response:
    return error_response(message, code=ErrorCodes.UNAUTHORIZED, status_code=401)


class AuthEnforcementMiddleware(BaseHTTPMiddleware):
    """Default-deny auth enforcement for the API.

    This middleware validates Bearer access tokens for all non-allowlisted paths.
    On success, it attaches a `Principal` to `request.state.principal` for reuse
    in FastAPI dependencies.
    """

    async def dispatch(self, request: Request, call_next):
        settings = request.app.state.settings

        # Allow CORS preflight to pass through (actual endpoints still require auth).
        if request.method.upper() == "OPTIONS":
            return await call_next(request)
        if is_path_allowlisted(request.url.path, env=settings.env):
            return await call_next(request)

        raw = (request.headers.get("authorization") or "").strip()
        if not raw.lower().startswith("bearer "):
            return _unauthorized("Not authenticated")
        token = raw.split(" ", 1)[1].strip()
        if not token:
            return _unauthorized("Not authenticated")

        auth = request.app.state.auth_service
        try:
            user_id = auth.decode_access_token(token)
        except InvalidToken:
            return _unauthorized("Invalid token")

        SessionLocal = request.app.state.db_sessionmaker
        db = SessionLocal()  # type: ignore
        try:
            user = db.get(User, user_id)
        finally:
            db.close()
        if not user:
            return _unauthorized("Invalid token")

        request.state.principal = Principal(user=user, role=user.role)
        return await call_next(request)


class ProxyMiddleware(BaseHTTPMiddleware):
    """Request id, CSRF origin check, API rate limit and security headers."""

    async def dispatch(self, request: Request, call_next):
        settings = request.app.state.settings
        request_id = get_request_id(request)
        nonce = generate_nonce()
        request.state.csp_nonce = nonce

        response: Optional[Response] = None
        api_limit = None

        if request.method.upper() in STATE_CHANGING_METHODS:
            origin = request.headers.get("origin")
            host = request.headers.get("host")
            if origin and (not host or urlsplit(origin).netloc != host):
                response = error_response(
                    "Invalid request origin",
                    code=ErrorCodes.FORBIDDEN,
                    status_code=403,
                )

        if response is None and request.url.path.startswith("/api/v1/"):
            limiter = request.app.state.rate_limiters.get("api")
            ip = get_client_ip(request.headers)
            result = limiter.check(ip)
            if not result.success:
                headers = result.headers()
                headers["Retry-After"] = str(result.retry_after())
                response = error_response(
                    "Too many requests. Please try again later.",
                    code=ErrorCodes.RATE_LIMIT_EXCEEDED,
                    status_code=429,
                    headers=headers,
                )
            else:
                api_limit = limiter.peek(ip)

        if response is None:
            response = await call_next(request)

        if api_limit is not None:
            for k, v in api_limit.headers().items():
                response.headers.setdefault(k, v)
        response.headers[REQUEST_ID_HEADER] = request_id
        set_security_headers(response.headers, settings, nonce)
        return response


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, max_bytes: int) -> None:
        super().__init__(app)
        self.max_bytes = max(1, int(max_bytes))

    async def dispatch(self, request: Request, call_next):
        cl = request.headers.get("content-length")
        if cl:
            try:
                too_large = int(cl) > self.max_bytes
            except ValueError:
                too_large = False
            if too_large:
                return error_response("Request too large", code="PAYLOAD_TOO_LARGE", status_code=413)
        return await call_next(request)


class AppCORSMiddleware(CORSMiddleware):
    """Starlette CORS with origin matching delegated to ``is_origin_allowed``."""

    def __init__(self, app: ASGIApp, allowed: Union[Sequence[str], Callable[[str], bool]]) -> None:
        super().__init__(
            app,
            allow_origins=list(allowed) if not callable(allowed) else [],
            allow_methods=ALLOWED_METHODS,
            allow_headers=ALLOWED_HEADERS,
            allow_credentials=True,
            expose_headers=EXPOSED_HEADERS,
            max_age=MAX_AGE_S,
        )
        self._allowed = allowed

    def is_allowed_origin(self, origin: str) -> bool:
        return is_origin_allowed(origin, self._allowed)
