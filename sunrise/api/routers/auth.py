from __future__ import annotations

import datetime as dt
import logging
from typing import Optional
from urllib.parse import quote, urlencode

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from sunrise.api.context import get_route_logger
from sunrise.api.cookies import clear_session_cookies, set_session_cookie
from sunrise.api.deps import (
    get_auth_service,
    get_current_user,
    get_current_user_optional,
    get_db,
    get_email_service,
    get_invitation_service,
    get_ip,
    get_settings,
    rate_limit,
)
from sunrise.api.errors import APIError, ErrorCodes, ForbiddenError, NotFoundError, UnauthorizedError, ValidationError
from sunrise.api.responses import success_response
from sunrise.api.schemas import (
    AcceptInvitationRequest,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    RefreshRequest,
    ResetPasswordRequest,
    SendVerificationEmailRequest,
    SignupRequest,
)
from sunrise.api.serializers import user_to_dict
from sunrise.core.settings import Settings
from sunrise.db.models import ROLE_USER, ROLES, User, utcnow
from sunrise.security.sanitize import sanitize_redirect_url
from sunrise.services.auth_service import (
    EMAIL_VERIFICATION_TTL_S,
    PASSWORD_RESET_TTL_S,
    AuthService,
    EmailTaken,
    InvalidCredentials,
    InvalidToken,
    TokenPair,
    UserLocked,
)
from sunrise.services.email_service import EmailError, EmailService
from sunrise.services.email_templates import reset_password_html, verify_email_html
from sunrise.services.invitation_service import InvitationService
from sunrise.services.rate_limiter import RateLimitResult


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

VERIFICATION_SENT_MESSAGE = "If an account exists with this email, a verification email has been sent."
PASSWORD_RESET_SENT_MESSAGE = "If an account exists with this email, a password reset link has been sent."


def _token_payload(tokens: TokenPair) -> dict:
    return {
        "tokenType": "bearer",
        "accessToken": tokens.access_token,
        "refreshToken": tokens.refresh_token,
        "accessExpiresAt": tokens.access_expires_at,
        "refreshExpiresAt": tokens.refresh_expires_at,
    }


def _session_response(
    data: dict,
    tokens: TokenPair,
    settings: Settings,
    auth: AuthService,
    *,
    status_code: int = 200,
    limit: Optional[RateLimitResult] = None,
):
    resp = success_response(
        {**data, **_token_payload(tokens)},
        status_code=status_code,
        headers=limit.headers() if limit else None,
    )
    set_session_cookie(resp, settings, tokens.refresh_token, auth.refresh_ttl_s)
    return resp


def send_verification(
    db: Session,
    *,
    user: User,
    auth: AuthService,
    email: EmailService,
    settings: Settings,
) -> None:
    """Issue a fresh verification token and mail the link; failures are logged, not raised."""
    token = auth.create_email_verification_token(db, user.email)
    url = f"{settings.app_url}/api/auth/verify-email?{urlencode({'token': token, 'email': user.email})}"
    expires_at = utcnow() + dt.timedelta(seconds=EMAIL_VERIFICATION_TTL_S)
    try:
        email.send_email(
            to=user.email,
            subject="Verify your email address",
            html=verify_email_html(user_name=user.name, verification_url=url, expires_at=expires_at),
        )
    except EmailError as e:
        logger.error("Failed to send verification email", extra={"error": e, "meta": {"userId": user.id}})


@router.post("/login")
def login(
    req: LoginRequest,
    request: Request,
    db: Session = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
    settings: Settings = Depends(get_settings),
    limit: RateLimitResult = Depends(rate_limit("auth")),
):
    ip = get_ip(request)
    log = get_route_logger(request)
    try:
        tokens = auth.authenticate(
            db,
            email=req.email,
            password=req.password,
            ip_address=ip,
            user_agent=request.headers.get("user-agent"),
        )
    except UserLocked:
        log.warn("Login attempt on locked account", {"email": req.email, "ip": ip})
        raise APIError(
            "Account temporarily locked due to too many failed attempts. Please try again later.",
            ErrorCodes.ACCOUNT_LOCKED,
            423,
        )
    except InvalidCredentials:
        log.warn("Login failed", {"email": req.email, "ip": ip})
        raise UnauthorizedError("Invalid email or password")

    user = db.query(User).filter(User.email == req.email).one()
    if settings.require_email_verification and not user.email_verified:
        auth.logout(db, refresh_token=tokens.refresh_token)
        raise ForbiddenError("Please verify your email address before signing in")

    log.info("User logged in", {"userId": user.id, "ip": ip})

    return _session_response({"user": user_to_dict(user)}, tokens, settings, auth, limit=limit)


@router.post("/refresh")
def refresh(
    request: Request,
    req: Optional[RefreshRequest] = None,
    db: Session = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
    settings: Settings = Depends(get_settings),
):
    refresh_token = (req.refresh_token if req else None) or request.cookies.get(settings.session_cookie_name)
    if not refresh_token:
        raise UnauthorizedError("Invalid refresh token")
    try:
        tokens = auth.refresh(db, refresh_token=refresh_token)
    except InvalidToken:
        get_route_logger(request).warn("Refresh token rejected", {"ip": get_ip(request)})
        raise UnauthorizedError("Invalid refresh token")

    return _session_response({}, tokens, settings, auth)


@router.post("/logout")
def logout(
    request: Request,
    req: Optional[LogoutRequest] = None,
    db: Session = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
    settings: Settings = Depends(get_settings),
    user: Optional[User] = Depends(get_current_user_optional),
):
    refresh_token = (req.refresh_token if req else None) or request.cookies.get(settings.session_cookie_name)
    auth.logout(db, refresh_token=refresh_token)
    get_route_logger(request).info("User logged out", {"userId": user.id if user else None})
    resp = success_response({"message": "Logged out successfully"})
    clear_session_cookies(resp, settings)
    return resp


@router.post("/signup")
def signup(
    req: SignupRequest,
    request: Request,
    db: Session = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
    email: EmailService = Depends(get_email_service),
    settings: Settings = Depends(get_settings),
    limit: RateLimitResult = Depends(rate_limit("auth")),
):
    log = get_route_logger(request)
    ip = get_ip(request)
    try:
        user = auth.create_user(db, name=req.name, email=req.email, password=req.password, role=ROLE_USER)
    except EmailTaken:
        raise ValidationError("User already exists with this email", code=ErrorCodes.EMAIL_TAKEN)

    log.info("User signed up", {"userId": user.id, "ip": ip})

    send_verification(db, user=user, auth=auth, email=email, settings=settings)

    if settings.require_email_verification:
        return success_response(
            {
                "user": user_to_dict(user),
                "requiresVerification": True,
                "message": "Account created. Please check your email to verify your account.",
            },
            status_code=201,
            headers=limit.headers(),
        )

    tokens = auth.issue_tokens(db, user, ip_address=ip, user_agent=request.headers.get("user-agent"))
    return _session_response(
        {"user": user_to_dict(user), "requiresVerification": False},
        tokens,
        settings,
        auth,
        status_code=201,
        limit=limit,
    )


@router.get("/verify-email")
def verify_email(
    request: Request,
    token: str = Query(min_length=1),
    email: str = Query(min_length=1),
    db: Session = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
):
    try:
        user = auth.verify_email(db, email=email, token=token)
    except InvalidToken:
        raise ValidationError("Invalid or expired verification token")

    get_route_logger(request).info("Email verified", {"userId": user.id})
    return success_response({"message": "Email verified successfully", "user": user_to_dict(user)})


@router.get("/me")
def me(user: User = Depends(get_current_user)):
    return success_response(user_to_dict(user, full=True))


@router.get("/clear-session")
def clear_session(
    request: Request,
    returnUrl: Optional[str] = None,
    db: Session = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
    settings: Settings = Depends(get_settings),
):
    """Drop a stale session and bounce to the login page."""
    origin = f"{request.url.scheme}://{request.url.netloc}"
    target = sanitize_redirect_url(returnUrl or "/", origin, [])

    refresh_token = request.cookies.get(settings.session_cookie_name)
    if refresh_token:
        auth.logout(db, refresh_token=refresh_token)

    resp = RedirectResponse(f"/login?callbackUrl={quote(target, safe='')}", status_code=307)
    clear_session_cookies(resp, settings)
    return resp


@router.post("/send-verification-email")
def send_verification_email(
    req: SendVerificationEmailRequest,
    request: Request,
    db: Session = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
    email: EmailService = Depends(get_email_service),
    settings: Settings = Depends(get_settings),
    limit: RateLimitResult = Depends(rate_limit("verification_email")),
):
    # Same answer whether or not the account exists.
    log = get_route_logger(request)
    body = {"message": VERIFICATION_SENT_MESSAGE}

    user = db.query(User).filter(User.email == req.email).one_or_none()
    if not user:
        log.info("Verification email requested for non-existent user", {"email": req.email})
    elif user.email_verified:
        log.info("Verification email requested for already verified user", {"userId": user.id})
    else:
        log.info("Sending verification email", {"userId": user.id})
        send_verification(db, user=user, auth=auth, email=email, settings=settings)

    return success_response(body, headers=limit.headers())


@router.post("/forgot-password")
def forgot_password(
    req: ForgotPasswordRequest,
    request: Request,
    db: Session = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
    email: EmailService = Depends(get_email_service),
    settings: Settings = Depends(get_settings),
    limit: RateLimitResult = Depends(rate_limit("password_reset")),
):
    # Same answer whether or not the account exists.
    log = get_route_logger(request)
    user = db.query(User).filter(User.email == req.email).one_or_none()
    if not user:
        log.info("Password reset requested for non-existent user", {"email": req.email})
    else:
        token = auth.create_password_reset_token(db, user.email)
        url = f"{settings.app_url}/reset-password?{urlencode({'token': token})}"
        expires_at = utcnow() + dt.timedelta(seconds=PASSWORD_RESET_TTL_S)
        try:
            email.send_email(
                to=user.email,
                subject="Reset your password",
                html=reset_password_html(user_name=user.name, reset_url=url, expires_at=expires_at),
            )
            log.info("Password reset email sent", {"userId": user.id})
        except EmailError as e:
            log.error("Failed to send password reset email", e, {"userId": user.id})

    return success_response({"message": PASSWORD_RESET_SENT_MESSAGE}, headers=limit.headers())


@router.post("/reset-password")
def reset_password(
    req: ResetPasswordRequest,
    request: Request,
    db: Session = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
    limit: RateLimitResult = Depends(rate_limit("password_reset")),
):
    log = get_route_logger(request)
    try:
        user = auth.reset_password(db, token=req.token, new_password=req.password)
    except InvalidToken:
        log.warn("Invalid password reset token", {"ip": get_ip(request)})
        raise ValidationError("Invalid or expired reset token")

    log.info("Password reset", {"userId": user.id})
    return success_response(
        {"message": "Password has been reset. Please sign in with your new password."},
        headers=limit.headers(),
    )


@router.post("/accept-invite")
def accept_invite(
    req: AcceptInvitationRequest,
    request: Request,
    db: Session = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
    invitations: InvitationService = Depends(get_invitation_service),
    settings: Settings = Depends(get_settings),
    limit: RateLimitResult = Depends(rate_limit("accept_invite")),
):
    log = get_route_logger(request)
    ip = get_ip(request)

    if not invitations.validate(db, req.email, req.token):
        log.warn("Invalid invitation token", {"email": req.email})
        raise ValidationError("Invalid or expired invitation token")

    invitation = invitations.get_valid_invitation(db, req.email)
    if not invitation:
        raise NotFoundError("Invitation not found")

    meta = invitation.metadata
    role = meta.get("role") if meta.get("role") in ROLES else ROLE_USER
    try:
        user = auth.create_user(
            db,
            name=meta.get("name") or req.email.split("@", 1)[0],
            email=req.email,
            password=req.password,
            role=role,
            email_verified=True,
        )
    except EmailTaken:
        raise ValidationError("User already exists with this email", code=ErrorCodes.EMAIL_TAKEN)

    invitations.delete(db, req.email)
    log.info("Invitation accepted", {"userId": user.id, "role": role, "invitedBy": meta.get("invitedBy")})

    tokens = auth.issue_tokens(db, user, ip_address=ip, user_agent=request.headers.get("user-agent"))
    return _session_response(
        {
            "message": "Invitation accepted successfully. Redirecting to dashboard...",
            "user": user_to_dict(user),
        },
        tokens,
        settings,
        auth,
        limit=limit,
    )
