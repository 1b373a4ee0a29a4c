from __future__ import annotations

import time
from typing import Optional

from fastapi import APIRouter, Depends, File, Request, UploadFile
from sqlalchemy.orm import Session

from sunrise.api.context import get_route_logger
from sunrise.api.cookies import clear_session_cookies
from sunrise.api.deps import (
    get_auth_service,
    get_current_user,
    get_db,
    get_settings,
    get_upload_service,
    rate_limit,
)
from sunrise.api.errors import APIError, ErrorCodes, ValidationError
from sunrise.api.responses import success_response
from sunrise.api.schemas import ChangePasswordRequest, DeleteAccountRequest, PreferencesUpdate, UpdateProfileRequest
from sunrise.api.serializers import merge_preferences, user_to_dict
from sunrise.core.settings import Settings
from sunrise.db.models import User
from sunrise.services.auth_service import AuthService, InvalidCredentials
from sunrise.services.image import SUPPORTED_IMAGE_TYPES, ImageError, validate_image_magic_bytes
from sunrise.services.rate_limiter import RateLimitResult
from sunrise.services.storage import FileTooLargeError, StorageError, StorageNotConfiguredError, UploadService

router = APIRouter(prefix="/api/v1/users/me", tags=["me"])


@router.get("")
def get_me(user: User = Depends(get_current_user)):
    return success_response(user_to_dict(user, full=True))


@router.patch("")
def update_me(
    req: UpdateProfileRequest,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    changes = req.model_dump(exclude_unset=True)

    new_email = changes.get("email")
    if new_email and new_email != user.email:
        taken = db.query(User).filter(User.email == new_email, User.id != user.id).first()
        if taken:
            raise ValidationError("Email already in use", code=ErrorCodes.EMAIL_TAKEN)

    for field, value in changes.items():
        setattr(user, field, value)
    db.commit()
    db.refresh(user)

    get_route_logger(request).info("User profile updated", {"userId": user.id, "fields": sorted(changes)})
    return success_response(user_to_dict(user, full=True))


@router.delete("")
def delete_me(
    req: DeleteAccountRequest,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    uploads: UploadService = Depends(get_upload_service),
    settings: Settings = Depends(get_settings),
):
    log = get_route_logger(request)
    user_id = user.id

    if uploads.enabled:
        try:
            uploads.delete_by_prefix(f"avatars/{user_id}/")
        except Exception as e:
            log.error("Failed to remove avatar files", e, {"userId": user_id})

    db.delete(user)
    db.commit()

    log.info("User account deleted successfully", {"userId": user_id})

    resp = success_response({"deleted": True, "message": "Account deleted successfully"})
    clear_session_cookies(resp, settings)
    return resp


# -----------------
# Password
# -----------------

@router.post("/password")
def change_password(
    req: ChangePasswordRequest,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    auth: AuthService = Depends(get_auth_service),
    settings: Settings = Depends(get_settings),
    limit: RateLimitResult = Depends(rate_limit("password_reset")),
):
    log = get_route_logger(request)
    try:
        revoked = auth.change_password(db, user, current_password=req.currentPassword, new_password=req.newPassword)
    except InvalidCredentials:
        log.warn("Password change rejected", {"userId": user.id})
        raise ValidationError("Current password is incorrect")

    log.info("Password changed", {"userId": user.id, "revokedSessions": revoked})
    resp = success_response({"message": "Password changed successfully. Please sign in again."}, headers=limit.headers())
    clear_session_cookies(resp, settings)
    return resp


# -----------------
# Preferences
# -----------------

@router.get("/preferences")
def get_preferences(user: User = Depends(get_current_user)):
    return success_response(merge_preferences(user.preferences))


@router.patch("/preferences")
def update_preferences(
    req: PreferencesUpdate,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    current = merge_preferences(user.preferences)
    if req.email is not None:
        current["email"].update(req.email.model_dump(exclude_none=True))
    # Cannot be disabled
    current["email"]["securityAlerts"] = True

    user.preferences = current
    db.commit()

    get_route_logger(request).info("User preferences updated", {"userId": user.id})
    return success_response(current)


# -----------------
# Avatar
# -----------------

@router.post("/avatar")
def upload_avatar(
    request: Request,
    file: Optional[UploadFile] = File(default=None),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    uploads: UploadService = Depends(get_upload_service),
    limit: RateLimitResult = Depends(rate_limit("upload")),
):
    log = get_route_logger(request)

    if not uploads.enabled:
        raise APIError("File uploads are not configured", ErrorCodes.STORAGE_NOT_CONFIGURED, 503)
    if file is None:
        raise ValidationError("No file provided")

    data = file.file.read()
    if len(data) > uploads.max_file_size:
        raise ValidationError(
            f"File size exceeds maximum of {uploads.max_file_size_mb} MB",
            details={"maxSize": uploads.max_file_size, "actualSize": len(data)},
            code=ErrorCodes.FILE_TOO_LARGE,
        )

    check = validate_image_magic_bytes(data)
    if not check.valid:
        raise ValidationError(
            check.error or "Invalid image format",
            details={"supportedTypes": list(SUPPORTED_IMAGE_TYPES)},
            code=ErrorCodes.INVALID_FILE_TYPE,
        )

    try:
        result = uploads.upload_avatar(data, user_id=user.id)
    except FileTooLargeError as e:
        raise ValidationError(str(e), code=ErrorCodes.FILE_TOO_LARGE)
    except StorageNotConfiguredError:
        raise APIError("File uploads are not configured", ErrorCodes.STORAGE_NOT_CONFIGURED, 503)
    except StorageError as e:
        log.error("Avatar upload failed", e, {"userId": user.id})
        raise APIError("Failed to upload avatar", ErrorCodes.INTERNAL_ERROR, 500)
    except (ImageError, OSError) as e:
        # Undecodable despite a valid signature, or too large to decode.
        log.warn("Avatar processing failed", {"userId": user.id, "error": str(e)})
        raise ValidationError("Invalid or unsupported image format", code=ErrorCodes.INVALID_FILE_TYPE)

    user.image = f"{result.url}?v={int(time.time() * 1000)}"
    db.commit()

    log.info("Avatar uploaded", {"userId": user.id, "key": result.key, "size": result.size})
    return success_response(
        {
            "url": user.image,
            "key": result.key,
            "size": result.size,
            "width": result.width,
            "height": result.height,
        },
        headers=limit.headers(),
    )


@router.delete("/avatar")
def delete_avatar(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    uploads: UploadService = Depends(get_upload_service),
):
    if uploads.enabled:
        uploads.delete_by_prefix(f"avatars/{user.id}/")

    user.image = None
    db.commit()

    get_route_logger(request).info("Avatar removed", {"userId": user.id})
    return success_response({"success": True, "message": "Avatar removed"})
