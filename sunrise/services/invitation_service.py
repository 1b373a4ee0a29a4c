from __future__ import annotations

import datetime as dt
import hashlib
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional, Tuple

from sqlalchemy.orm import Session

from sunrise.db.models import User, Verification, as_utc, utcnow

logger = logging.getLogger(__name__)

TOKEN_BYTE_LENGTH = 32
TOKEN_EXPIRY_DAYS = 7
IDENTIFIER_PREFIX = "invitation:"

SORT_FIELDS = ("name", "email", "invitedAt", "expiresAt")


class InvitationError(RuntimeError):
    pass


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _identifier(email: str) -> str:
    return f"{IDENTIFIER_PREFIX}{email}"


@dataclass(frozen=True)
class InvitationRecord:
    email: str
    metadata: Dict[str, Any]
    expires_at: dt.datetime
    created_at: dt.datetime


@dataclass(frozen=True)
class InvitationMetadataResult:
    valid: bool
    reason: Optional[Literal["not_found", "expired", "invalid_token"]] = None
    metadata: Optional[Dict[str, Any]] = None
    expires_at: Optional[dt.datetime] = None


class InvitationService:
    """Invitation token lifecycle.

    Tokens are 32 random bytes (hex); only their SHA-256 is stored in the
    ``verifications`` table under ``invitation:{email}``.
    """

    def _newest(self, db: Session, email: str, *, include_expired: bool) -> Optional[Verification]:
        q = db.query(Verification).filter(Verification.identifier == _identifier(email))
        if not include_expired:
            q = q.filter(Verification.expires_at > utcnow())
        return q.order_by(Verification.created_at.desc(), Verification.id.desc()).first()

    def generate(self, db: Session, email: str, metadata: Dict[str, Any]) -> str:
        try:
            token = secrets.token_hex(TOKEN_BYTE_LENGTH)
            expires_at = utcnow() + dt.timedelta(days=TOKEN_EXPIRY_DAYS)
            db.add(
                Verification(
                    identifier=_identifier(email),
                    value=hash_token(token),
                    expires_at=expires_at,
                    meta=dict(metadata),
                )
            )
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error("Failed to generate invitation token", extra={"error": e, "meta": {"email": email}})
            raise InvitationError("Failed to generate invitation token") from e

        logger.info(
            "Invitation token generated",
            extra={"meta": {"email": email, "expiresAt": expires_at.isoformat(), "metadata": metadata}},
        )
        return token

    def validate(self, db: Session, email: str, token: str) -> bool:
        try:
            record = self._newest(db, email, include_expired=False)
            if not record:
                logger.warning("Invitation token not found or expired", extra={"meta": {"email": email}})
                return False
            if not secrets.compare_digest(record.value, hash_token(token)):
                logger.warning("Invitation token mismatch", extra={"meta": {"email": email}})
                return False
            logger.info("Invitation token validated", extra={"meta": {"email": email}})
            return True
        except Exception as e:
            logger.error("Failed to validate invitation token", extra={"error": e, "meta": {"email": email}})
            return False

    def delete(self, db: Session, email: str) -> int:
        try:
            count = (
                db.query(Verification)
                .filter(Verification.identifier == _identifier(email))
                .delete(synchronize_session=False)
            )
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error("Failed to delete invitation token", extra={"error": e, "meta": {"email": email}})
            raise InvitationError("Failed to delete invitation token") from e

        logger.info("Invitation tokens deleted", extra={"meta": {"email": email, "count": count}})
        return int(count or 0)

    def get_valid_invitation(self, db: Session, email: str) -> Optional[InvitationRecord]:
        try:
            record = self._newest(db, email, include_expired=False)
        except Exception as e:
            logger.error("Failed to get valid invitation", extra={"error": e, "meta": {"email": email}})
            return None
        if not record:
            return None
        return InvitationRecord(
            email=email,
            metadata=dict(record.meta or {}),
            expires_at=as_utc(record.expires_at),
            created_at=as_utc(record.created_at),
        )

    def update(self, db: Session, email: str, metadata: Dict[str, Any]) -> str:
        """Replace any outstanding invitation for ``email`` with a fresh token."""
        self.delete(db, email)
        token = self.generate(db, email, metadata)
        logger.info("Invitation token updated (regenerated)", extra={"meta": {"email": email}})
        return token

    def get_invitation_metadata(self, db: Session, email: str, token: str) -> InvitationMetadataResult:
        try:
            record = self._newest(db, email, include_expired=True)
            if not record:
                logger.warning("Invitation not found for metadata lookup", extra={"meta": {"email": email}})
                return InvitationMetadataResult(valid=False, reason="not_found")

            expires_at = as_utc(record.expires_at)
            if expires_at <= utcnow():
                logger.warning(
                    "Invitation expired for metadata lookup",
                    extra={"meta": {"email": email, "expiredAt": expires_at.isoformat()}},
                )
                return InvitationMetadataResult(valid=False, reason="expired")

            if not secrets.compare_digest(record.value, hash_token(token)):
                logger.warning("Invitation token mismatch for metadata lookup", extra={"meta": {"email": email}})
                return InvitationMetadataResult(valid=False, reason="invalid_token")

            logger.info("Invitation metadata retrieved", extra={"meta": {"email": email}})
            return InvitationMetadataResult(valid=True, metadata=dict(record.meta or {}), expires_at=expires_at)
        except Exception as e:
            logger.error("Failed to get invitation metadata", extra={"error": e, "meta": {"email": email}})
            return InvitationMetadataResult(valid=False, reason="not_found")

    def get_all_pending_invitations(
        self,
        db: Session,
        *,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
        sort_by: str = "invitedAt",
        sort_order: str = "desc",
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Pending (non-expired) invitations, one per email, newest record wins.

        Returns (page_items, total) where total counts matches after search but
        before pagination.
        """
        rows = (
            db.query(Verification)
            .filter(Verification.identifier.like(f"{IDENTIFIER_PREFIX}%"))
            .filter(Verification.expires_at > utcnow())
            .order_by(Verification.created_at.desc(), Verification.id.desc())
            .all()
        )

        latest: Dict[str, Verification] = {}
        for row in rows:
            email = row.identifier[len(IDENTIFIER_PREFIX):]
            latest.setdefault(email, row)

        inviter_ids = set()
        for row in latest.values():
            try:
                inviter_ids.add(int((row.meta or {}).get("invitedBy")))
            except (TypeError, ValueError):
                continue
        inviters: Dict[int, str] = {}
        if inviter_ids:
            inviters = {u.id: u.name for u in db.query(User).filter(User.id.in_(inviter_ids)).all()}

        items: List[Dict[str, Any]] = []
        for email, row in latest.items():
            meta = row.meta or {}
            invited_by = meta.get("invitedBy")
            try:
                inviter_name = inviters.get(int(invited_by))
            except (TypeError, ValueError):
                inviter_name = None
            invited_at = _parse_ts(meta.get("invitedAt")) or as_utc(row.created_at)
            items.append(
                {
                    "email": email,
                    "name": meta.get("name") or "",
                    "role": meta.get("role") or "USER",
                    "invitedBy": invited_by,
                    "invitedByName": inviter_name,
                    "invitedAt": invited_at,
                    "expiresAt": as_utc(row.expires_at),
                }
            )

        if search:
            needle = search.strip().lower()
            items = [i for i in items if needle in i["name"].lower() or needle in i["email"].lower()]

        key = sort_by if sort_by in SORT_FIELDS else "invitedAt"
        if key in ("name", "email"):
            items.sort(key=lambda i: i[key].lower(), reverse=sort_order == "desc")
        else:
            items.sort(key=lambda i: i[key], reverse=sort_order == "desc")

        total = len(items)
        page = max(1, int(page))
        limit = max(1, int(limit))
        start = (page - 1) * limit
        logger.info(
            "Pending invitations listed",
            extra={"meta": {"search": search, "page": page, "limit": limit, "total": total}},
        )
        return items[start : start + limit], total


def _parse_ts(raw: Any) -> Optional[dt.datetime]:
    if not raw or not isinstance(raw, str):
        return None
    try:
        return as_utc(dt.datetime.fromisoformat(raw.replace("Z", "+00:00")))
    except ValueError:
        return None
