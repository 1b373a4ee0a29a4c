from __future__ import annotations

import datetime as dt
import platform
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy import func, text
from sqlalchemy.orm import Session

from sunrise.api.context import get_route_logger
from sunrise.api.deps import (
    get_db,
    get_feature_flag_service,
    get_invitation_service,
    get_log_buffer,
    get_settings,
    rate_limit,
    require_admin,
)
from sunrise.api.errors import ConflictError, NotFoundError
from sunrise.api.responses import paginated_response, success_response
from sunrise.api.routers.health import uptime_s
from sunrise.api.schemas import FeatureFlagCreate, FeatureFlagUpdate, ListInvitationsQuery, LogsQuery
from sunrise.api.security import Principal
from sunrise.core.settings import Settings
from sunrise.db.models import ROLES, User, utcnow
from sunrise.services.feature_flags import FeatureFlagService, flag_to_dict
from sunrise.services.invitation_service import InvitationService
from sunrise.services.log_buffer import LogBuffer

router = APIRouter(prefix="/api/v1/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@router.get("/stats")
def stats(db: Session = Depends(get_db), settings: Settings = Depends(get_settings)):
    since = utcnow() - dt.timedelta(hours=24)

    total = db.query(func.count(User.id)).scalar() or 0
    verified = db.query(func.count(User.id)).filter(User.email_verified.is_(True)).scalar() or 0
    recent = db.query(func.count(User.id)).filter(User.created_at >= since).scalar() or 0
    by_role = {role: 0 for role in ROLES}
    for role, count in db.query(User.role, func.count(User.id)).group_by(User.role).all():
        by_role[role] = count

    try:
        db.execute(text("SELECT 1"))
        db_status = "connected"
    except Exception:
        db_status = "error"

    return success_response(
        {
            "users": {
                "total": total,
                "verified": verified,
                "recentSignups": recent,
                "byRole": by_role,
            },
            "system": {
                "pythonVersion": platform.python_version(),
                "appVersion": settings.app_version,
                "environment": settings.env,
                "uptime": uptime_s(),
                "databaseStatus": db_status,
            },
        }
    )


@router.get("/logs")
def logs(q: Annotated[LogsQuery, Query()], buffer: LogBuffer = Depends(get_log_buffer)):
    entries, total = buffer.get_log_entries(level=q.level, search=q.search, page=q.page, limit=q.limit)
    return paginated_response(entries, page=q.page, limit=q.limit, total=total)


# -----------------
# Feature flags
# -----------------

@router.get("/feature-flags")
def list_flags(db: Session = Depends(get_db), flags: FeatureFlagService = Depends(get_feature_flag_service)):
    return success_response([flag_to_dict(f) for f in flags.get_all_flags(db)])


@router.post("/feature-flags", dependencies=[Depends(rate_limit("admin"))])
def create_flag(
    req: FeatureFlagCreate,
    request: Request,
    db: Session = Depends(get_db),
    admin: Principal = Depends(require_admin),
    flags: FeatureFlagService = Depends(get_feature_flag_service),
):
    if flags.get_flag(db, req.name):
        raise ConflictError(f"Feature flag '{req.name}' already exists")

    flag = flags.create_flag(
        db,
        name=req.name,
        description=req.description,
        enabled=req.enabled,
        metadata=req.metadata,
        created_by=admin.user_id,
    )
    get_route_logger(request).info(
        "Feature flag created",
        {"name": flag.name, "enabled": flag.enabled, "adminId": admin.user_id},
    )
    return success_response(flag_to_dict(flag), status_code=201)


def _flag_or_404(db: Session, flags: FeatureFlagService, flag_id: int):
    flag = flags.get_flag_by_id(db, flag_id)
    if not flag:
        raise NotFoundError("Feature flag not found")
    return flag


@router.get("/feature-flags/{flag_id}")
def get_flag(
    flag_id: int,
    db: Session = Depends(get_db),
    flags: FeatureFlagService = Depends(get_feature_flag_service),
):
    return success_response(flag_to_dict(_flag_or_404(db, flags, flag_id)))


@router.patch("/feature-flags/{flag_id}", dependencies=[Depends(rate_limit("admin"))])
def update_flag(
    flag_id: int,
    req: FeatureFlagUpdate,
    request: Request,
    db: Session = Depends(get_db),
    admin: Principal = Depends(require_admin),
    flags: FeatureFlagService = Depends(get_feature_flag_service),
):
    flag = _flag_or_404(db, flags, flag_id)
    changes = req.model_dump(exclude_unset=True)
    flag = flags.update_flag(db, flag, changes)
    get_route_logger(request).info("Feature flag updated", {"name": flag.name, "changes": changes, "adminId": admin.user_id})
    return success_response(flag_to_dict(flag))


@router.delete("/feature-flags/{flag_id}", dependencies=[Depends(rate_limit("admin"))])
def delete_flag(
    flag_id: int,
    request: Request,
    db: Session = Depends(get_db),
    admin: Principal = Depends(require_admin),
    flags: FeatureFlagService = Depends(get_feature_flag_service),
):
    flag = _flag_or_404(db, flags, flag_id)
    name = flag.name
    flags.delete_flag(db, flag)
    get_route_logger(request).info("Feature flag deleted", {"name": name, "adminId": admin.user_id})
    return success_response({"id": flag_id, "deleted": True})


# -----------------
# Invitations
# -----------------

@router.get("/invitations")
def list_invitations(
    q: Annotated[ListInvitationsQuery, Query()],
    db: Session = Depends(get_db),
    invitations: InvitationService = Depends(get_invitation_service),
):
    items, total = invitations.get_all_pending_invitations(
        db,
        search=q.search,
        page=q.page,
        limit=q.limit,
        sort_by=q.sortBy,
        sort_order=q.sortOrder,
    )
    return paginated_response(items, page=q.page, limit=q.limit, total=total)


@router.delete("/invitations/{email}", dependencies=[Depends(rate_limit("admin"))])
def delete_invitation(
    email: str,
    request: Request,
    db: Session = Depends(get_db),
    admin: Principal = Depends(require_admin),
    invitations: InvitationService = Depends(get_invitation_service),
):
    email = email.strip().lower()
    if not invitations.get_valid_invitation(db, email):
        raise NotFoundError("Invitation not found or already expired")

    invitations.delete(db, email)
    get_route_logger(request).info("Invitation deleted", {"email": email, "adminId": admin.user_id})
    return success_response({"message": f"Invitation for {email} has been deleted"})
