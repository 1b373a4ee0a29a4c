from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from sunrise.api.context import get_route_logger
from sunrise.api.deps import get_db, get_invitation_service
from sunrise.api.errors import NotFoundError, ValidationError
from sunrise.api.responses import success_response
from sunrise.api.schemas import InvitationMetadataQuery
from sunrise.services.invitation_service import InvitationService

router = APIRouter(prefix="/api/v1/invitations", tags=["invitations"])


@router.get("/metadata")
def invitation_metadata(
    q: Annotated[InvitationMetadataQuery, Query()],
    request: Request,
    db: Session = Depends(get_db),
    invitations: InvitationService = Depends(get_invitation_service),
):
    """Name and role of a pending invitation, for pre-filling the accept form."""
    log = get_route_logger(request)
    log.info("Invitation metadata requested", {"email": q.email})

    result = invitations.get_invitation_metadata(db, q.email, q.token)
    if result.reason == "not_found":
        raise NotFoundError("Invitation not found")
    if not result.valid:
        raise ValidationError("Invalid or expired invitation token")

    meta = result.metadata or {}
    return success_response({"name": meta.get("name"), "role": meta.get("role")})
