from __future__ import annotations

import datetime as dt
import logging

from sqlalchemy.orm import Session

from sunrise.db.models import Session as UserSession, Verification

logger = logging.getLogger(__name__)


def _cutoff(days: int) -> dt.datetime:
    days = int(days)
    if days <= 0:
        # 0 means keep forever
        return dt.datetime.min.replace(tzinfo=dt.timezone.utc)
    return dt.datetime.now(dt.timezone.utc) - dt.timedelta(days=days)


class RetentionService:
    def cleanup(
        self,
        db: Session,
        *,
        sessions_days: int,
        verifications_days: int,
    ) -> dict:
        """Apply retention policy. Returns counts deleted per table.

        Sessions and verifications are removed once they have been expired
        (or, for sessions, revoked) for longer than the configured number of days.
        """
        summary: dict = {}

        c = _cutoff(sessions_days)
        summary["sessions"] = (
            db.query(UserSession)
            .filter((UserSession.expires_at < c) | ((UserSession.revoked == True) & (UserSession.created_at < c)))  # noqa: E712
            .delete(synchronize_session=False)
        )

        c = _cutoff(verifications_days)
        summary["verifications"] = (
            db.query(Verification).filter(Verification.expires_at < c).delete(synchronize_session=False)
        )

        db.commit()
        logger.info("Retention cleanup finished", extra={"meta": summary})
        return summary
