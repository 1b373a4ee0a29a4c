from __future__ import annotations

from typing import Annotated
from urllib.parse import quote

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from sunrise.api.context import get_route_logger
from sunrise.api.deps import (
    get_auth_service,
    get_current_principal,
    get_db,
    get_email_service,
    get_invitation_service,
    get_settings,
    get_upload_service,
    rate_limit,
    require_admin,
)
from sunrise.api.errors import APIError, ErrorCodes, ForbiddenError, NotFoundError, ValidationError
from sunrise.api.responses import paginated_response, parse_pagination_params, success_response
from sunrise.api.schemas import AdminUserUpdate, InviteUserRequest, ListUsersQuery
from sunrise.api.security import Principal
from sunrise.api.serializers import user_to_dict
from sunrise.core.settings import Settings
from sunrise.db.models import ROLE_ADMIN, User, utcnow
from sunrise.services.auth_service import AuthService
from sunrise.services.email_service import EmailError, EmailService
from sunrise.services.email_templates import invitation_html
from sunrise.services.invitation_service import InvitationService
from sunrise.services.rate_limiter import RateLimitResult
from sunrise.services.storage import UploadService

router = APIRouter(prefix="/api/v1/users", tags=["users"])

_SORT_COLUMNS = {
    "name": User.name,
    "email": User.email,
    "createdAt": User.created_at,
}


@router.get("")
def list_users(
    q: Annotated[ListUsersQuery, Query()],
    db: Session = Depends(get_db),
    _admin: Principal = Depends(require_admin),
):
    query = db.query(User)
    if q.search:
        needle = f"%{q.search.strip().lower()}%"
        query = query.filter(or_(func.lower(User.name).like(needle), func.lower(User.email).like(needle)))

    pg = parse_pagination_params(q.page, q.limit)
    total = query.count()
    column = _SORT_COLUMNS[q.sortBy]
    order = column.asc() if q.sortOrder == "asc" else column.desc()
    users = query.order_by(order, User.id.asc()).offset(pg.skip).limit(pg.limit).all()

    return paginated_response(
        [user_to_dict(u) for u in users],
        page=pg.page,
        limit=pg.limit,
        total=total,
    )


def _invite_message(status: str, *, regenerated: bool) -> str:
    if status == "sent":
        return f"Invitation {'resent' if regenerated else 'sent'} successfully"
    verb = "regenerated" if regenerated else "created"
    if status == "failed":
        return f"Invitation {verb} but email failed to send"
    return f"Invitation {verb} (email service not configured)"


@router.post("/invite")
def invite_user(
    req: InviteUserRequest,
    request: Request,
    resend: bool = False,
    db: Session = Depends(get_db),
    admin: Principal = Depends(require_admin),
    invitations: InvitationService = Depends(get_invitation_service),
    email: EmailService = Depends(get_email_service),
    settings: Settings = Depends(get_settings),
    limit: RateLimitResult = Depends(rate_limit("invite")),
):
    log = get_route_logger(request)

    if db.query(User).filter(User.email == req.email).first():
        raise APIError("User already exists with this email", ErrorCodes.EMAIL_TAKEN, 409)

    existing = invitations.get_valid_invitation(db, req.email)
    if existing and not resend:
        return success_response(
            {
                "message": "Invitation already pending. Use ?resend=true to send a new invitation email.",
                "invitation": {
                    "email": req.email,
                    "name": existing.metadata.get("name"),
                    "role": existing.metadata.get("role"),
                    "invitedAt": existing.metadata.get("invitedAt") or existing.created_at,
                    "expiresAt": existing.expires_at,
                },
                "emailStatus": "pending",
            },
            headers=limit.headers(),
        )

    invited_at = utcnow()
    metadata = {
        "name": req.name,
        "role": req.role,
        "invitedBy": admin.user_id,
        "invitedAt": invited_at.isoformat(),
    }
    if existing:
        token = invitations.update(db, req.email, metadata)
    else:
        token = invitations.generate(db, req.email, metadata)

    invitation = invitations.get_valid_invitation(db, req.email)
    expires_at = invitation.expires_at if invitation else None
    link = f"{settings.app_url}/accept-invite?token={token}&email={quote(req.email, safe='')}"

    try:
        result = email.send_email(
            to=req.email,
            subject="You've been invited to join Sunrise",
            html=invitation_html(
                inviter_name=admin.user.name,
                invitee_name=req.name,
                invitee_email=req.email,
                invitation_url=link,
                expires_at=expires_at or invited_at,
            ),
        )
        email_status = result.status
    except EmailError as e:
        log.error("Invitation email failed", e, {"email": req.email})
        email_status = "failed"

    log.info(
        "Invitation resent" if existing else "User invited",
        {"email": req.email, "role": req.role, "emailStatus": email_status, "adminId": admin.user_id},
    )

    return success_response(
        {
            "message": _invite_message(email_status, regenerated=existing is not None),
            "invitation": {
                "email": req.email,
                "name": req.name,
                "role": req.role,
                "invitedAt": invited_at,
                "expiresAt": expires_at,
                "link": link,
            },
            "emailStatus": email_status,
        },
        status_code=201,
        headers=limit.headers(),
    )


@router.get("/{user_id}")
def get_user(
    user_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    if principal.user_id != user_id and not principal.is_admin:
        raise ForbiddenError()
    user = db.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")
    return success_response(user_to_dict(user, full=True))


@router.patch("/{user_id}")
def update_user(
    user_id: int,
    req: AdminUserUpdate,
    request: Request,
    db: Session = Depends(get_db),
    admin: Principal = Depends(require_admin),
    auth: AuthService = Depends(get_auth_service),
):
    changes = req.model_dump(exclude_none=True)
    if not changes:
        raise ValidationError("At least one field must be provided")

    user = db.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")

    if admin.user_id == user_id and req.role and req.role != ROLE_ADMIN:
        raise ValidationError("Cannot change your own role", code=ErrorCodes.SELF_ROLE_CHANGE)

    if req.name is not None:
        user.name = req.name
    role_changed = req.role is not None and req.role != user.role
    if req.role is not None:
        user.role = req.role
    if req.emailVerified is not None:
        user.email_verified = req.emailVerified
    db.commit()
    # Force a fresh login after a role change.
    if role_changed:
        auth.revoke_user_sessions(db, user_id)
    db.refresh(user)

    get_route_logger(request).info("User updated by admin", {"userId": user_id, "adminId": admin.user_id, "changes": changes})
    return success_response(user_to_dict(user))


@router.delete("/{user_id}")
def delete_user(
    user_id: int,
    request: Request,
    db: Session = Depends(get_db),
    admin: Principal = Depends(require_admin),
    uploads: UploadService = Depends(get_upload_service),
):
    log = get_route_logger(request)
    if admin.user_id == user_id:
        raise ValidationError("Cannot delete your own account")

    user = db.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")

    if uploads.enabled:
        try:
            uploads.delete_by_prefix(f"avatars/{user_id}/")
        except Exception as e:
            log.error("Failed to remove avatar files", e, {"userId": user_id})

    db.delete(user)
    db.commit()

    log.info("User deleted by admin", {"userId": user_id, "adminId": admin.user_id})
    return success_response({"id": user_id, "deleted": True})
