from __future__ import annotations

import datetime as dt
import hashlib
import logging
import secrets
from dataclasses import dataclass
from typing import Optional

import jwt
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerifyMismatchError
from sqlalchemy.orm import Session

from sunrise.db.models import ROLE_ADMIN, ROLE_USER, Session as UserSession, User, Verification, as_utc, utcnow

logger = logging.getLogger(__name__)

EMAIL_VERIFICATION_PREFIX = "email-verification:"
EMAIL_VERIFICATION_TTL_S = 60 * 60 * 24
PASSWORD_RESET_PREFIX = "password-reset:"
PASSWORD_RESET_TTL_S = 60 * 60


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: dt.datetime
    refresh_expires_at: dt.datetime


class AuthError(RuntimeError):
    pass


class InvalidCredentials(AuthError):
    pass


class UserLocked(AuthError):
    def __init__(self, until: dt.datetime):
        super().__init__(f"User is locked until {until.isoformat()}")
        self.until = until


class InvalidToken(AuthError):
    pass


class EmailTaken(AuthError):
    pass


def sha256_hex(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class AuthService:
    """Password auth, JWT access tokens and rotating refresh sessions."""

    def __init__(
        self,
        *,
        jwt_secret_key: str,
        jwt_issuer: str = "sunrise",
        access_ttl_s: int = 900,
        refresh_ttl_s: int = 60 * 60 * 24 * 7,
        lockout_threshold: int = 5,
        lockout_duration_s: int = 900,
    ) -> None:
        if not jwt_secret_key:
            raise ValueError("JWT secret key must be provided via env var JWT_SECRET_KEY")

        self._jwt_secret_key = jwt_secret_key
        self._jwt_issuer = jwt_issuer
        self._access_ttl_s = int(access_ttl_s)
        self._refresh_ttl_s = int(refresh_ttl_s)
        self._lockout_threshold = int(lockout_threshold)
        self._lockout_duration_s = int(lockout_duration_s)

        self._hasher = PasswordHasher()

    @property
    def refresh_ttl_s(self) -> int:
        return self._refresh_ttl_s

    def hash_password(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify_password(self, password: str, password_hash: Optional[str]) -> bool:
        if not password_hash:
            return False
        try:
            return self._hasher.verify(password_hash, password)
        except (VerifyMismatchError, InvalidHashError):
            return False

    def ensure_initial_admin(self, db: Session, *, email: str, name: str, password: str) -> None:
        """Create an initial admin user if DB is empty."""
        if db.query(User).count() > 0:
            return

        db.add(
            User(
                name=name,
                email=email.strip().lower(),
                password_hash=self.hash_password(password),
                role=ROLE_ADMIN,
                email_verified=True,
            )
        )
        db.commit()
        logger.info("Initial admin user created", extra={"meta": {"email": email}})

    def create_user(
        self,
        db: Session,
        *,
        name: str,
        email: str,
        password: str,
        role: str = ROLE_USER,
        email_verified: bool = False,
    ) -> User:
        email = email.strip().lower()
        if db.query(User).filter(User.email == email).first():
            raise EmailTaken("Email already in use")

        user = User(
            name=name,
            email=email,
            password_hash=self.hash_password(password),
            role=role,
            email_verified=email_verified,
            preferences={},
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    def authenticate(
        self,
        db: Session,
        *,
        email: str,
        password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        user = db.query(User).filter(User.email == email.strip().lower()).one_or_none()
        if not user:
            # Intentionally ambiguous (don't reveal existence)
            raise InvalidCredentials("Invalid email or password")

        now = utcnow()
        locked_until = as_utc(user.locked_until)
        if locked_until and locked_until > now:
            raise UserLocked(locked_until)

        if not self.verify_password(password, user.password_hash):
            user.failed_login_count = int(user.failed_login_count or 0) + 1
            if user.failed_login_count >= self._lockout_threshold:
                user.locked_until = now + dt.timedelta(seconds=self._lockout_duration_s)
                user.failed_login_count = 0
            db.add(user)
            db.commit()
            raise InvalidCredentials("Invalid email or password")

        user.failed_login_count = 0
        user.locked_until = None
        user.last_login_at = now
        db.add(user)
        db.commit()

        return self.issue_tokens(db, user, ip_address=ip_address, user_agent=user_agent)

    def issue_tokens(
        self,
        db: Session,
        user: User,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        now = utcnow()

        access_expires = now + dt.timedelta(seconds=self._access_ttl_s)
        refresh_expires = now + dt.timedelta(seconds=self._refresh_ttl_s)

        payload = {
            "iss": self._jwt_issuer,
            "sub": str(user.id),
            "email": user.email,
            "role": user.role,
            "iat": int(now.timestamp()),
            "exp": int(access_expires.timestamp()),
            # unique per token so two logins in the same second differ
            "jti": secrets.token_hex(8),
        }

        access_token = jwt.encode(payload, self._jwt_secret_key, algorithm="HS256")

        refresh_token = secrets.token_urlsafe(48)
        db.add(
            UserSession(
                user_id=user.id,
                token_sha256=sha256_hex(refresh_token),
                revoked=False,
                expires_at=refresh_expires,
                ip_address=ip_address,
                user_agent=(user_agent or "")[:500] or None,
            )
        )
        db.commit()

        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_expires,
            refresh_expires_at=refresh_expires,
        )

    def _find_session(self, db: Session, refresh_token: str) -> Optional[UserSession]:
        return (
            db.query(UserSession)
            .filter(UserSession.token_sha256 == sha256_hex(refresh_token))
            .one_or_none()
        )

    def refresh(self, db: Session, *, refresh_token: str) -> TokenPair:
        sess = self._find_session(db, refresh_token)
        if not sess or sess.revoked or as_utc(sess.expires_at) <= utcnow():
            raise InvalidToken("Invalid or expired refresh token")

        user = db.query(User).filter(User.id == sess.user_id).one_or_none()
        if not user:
            raise InvalidToken("User not found")

        # Rotate refresh token
        sess.revoked = True
        db.add(sess)
        db.commit()

        return self.issue_tokens(db, user, ip_address=sess.ip_address, user_agent=sess.user_agent)

    def logout(self, db: Session, *, refresh_token: Optional[str]) -> None:
        if not refresh_token:
            return
        sess = self._find_session(db, refresh_token)
        if not sess:
            return
        sess.revoked = True
        db.add(sess)
        db.commit()

    def revoke_user_sessions(self, db: Session, user_id: int) -> int:
        count = (
            db.query(UserSession)
            .filter(UserSession.user_id == user_id, UserSession.revoked == False)  # noqa: E712
            .update({UserSession.revoked: True}, synchronize_session=False)
        )
        db.commit()
        return int(count or 0)

    def decode_access_token(self, token: str) -> int:
        try:
            payload = jwt.decode(
                token,
                self._jwt_secret_key,
                algorithms=["HS256"],
                issuer=self._jwt_issuer,
                options={"require": ["exp", "iat", "iss", "sub"]},
            )
        except Exception as e:
            raise InvalidToken("Invalid access token") from e

        sub = payload.get("sub")
        try:
            return int(sub)
        except Exception as e:
            raise InvalidToken("Invalid access token subject") from e

    # -----------------
    # Email verification
    # -----------------

    def _issue_single_use_token(self, db: Session, identifier: str, ttl_s: int) -> str:
        """Replace any outstanding token for ``identifier``; only the sha256 is stored."""
        db.query(Verification).filter(Verification.identifier == identifier).delete(synchronize_session=False)

        token = secrets.token_hex(32)
        db.add(
            Verification(
                identifier=identifier,
                value=sha256_hex(token),
                expires_at=utcnow() + dt.timedelta(seconds=ttl_s),
                meta={},
            )
        )
        db.commit()
        return token

    def create_email_verification_token(self, db: Session, email: str) -> str:
        identifier = f"{EMAIL_VERIFICATION_PREFIX}{email.strip().lower()}"
        return self._issue_single_use_token(db, identifier, EMAIL_VERIFICATION_TTL_S)

    def verify_email(self, db: Session, *, email: str, token: str) -> User:
        email = email.strip().lower()
        identifier = f"{EMAIL_VERIFICATION_PREFIX}{email}"
        record = (
            db.query(Verification)
            .filter(Verification.identifier == identifier)
            .order_by(Verification.created_at.desc(), Verification.id.desc())
            .first()
        )
        if not record or as_utc(record.expires_at) <= utcnow() or record.value != sha256_hex(token):
            raise InvalidToken("Invalid or expired verification token")

        user = db.query(User).filter(User.email == email).one_or_none()
        if not user:
            raise InvalidToken("Invalid or expired verification token")

        user.email_verified = True
        db.add(user)
        db.query(Verification).filter(Verification.identifier == identifier).delete(synchronize_session=False)
        db.commit()
        return user

    # -----------------
    # Passwords
    # -----------------

    def create_password_reset_token(self, db: Session, email: str) -> str:
        identifier = f"{PASSWORD_RESET_PREFIX}{email.strip().lower()}"
        return self._issue_single_use_token(db, identifier, PASSWORD_RESET_TTL_S)

    def reset_password(self, db: Session, *, token: str, new_password: str) -> User:
        """Consume a reset token, set the new password and sign out every session."""
        record = (
            db.query(Verification)
            .filter(
                Verification.identifier.like(f"{PASSWORD_RESET_PREFIX}%"),
                Verification.value == sha256_hex(token),
            )
            .first()
        )
        if not record or as_utc(record.expires_at) <= utcnow():
            raise InvalidToken("Invalid or expired reset token")

        email = record.identifier[len(PASSWORD_RESET_PREFIX):]
        user = db.query(User).filter(User.email == email).one_or_none()
        if not user:
            raise InvalidToken("Invalid or expired reset token")

        user.password_hash = self.hash_password(new_password)
        user.failed_login_count = 0
        user.locked_until = None
        db.add(user)
        db.query(Verification).filter(Verification.identifier == record.identifier).delete(synchronize_session=False)
        db.commit()
        self.revoke_user_sessions(db, user.id)
        return user

    def change_password(self, db: Session, user: User, *, current_password: str, new_password: str) -> int:
        """Returns the number of refresh sessions revoked."""
        if not self.verify_password(current_password, user.password_hash):
            raise InvalidCredentials("Current password is incorrect")
        user.password_hash = self.hash_password(new_password)
        db.add(user)
        db.commit()
        return self.revoke_user_sessions(db, user.id)
