from __future__ import annotations

from typing import Any, Dict

from sunrise.db.models import User, as_utc

DEFAULT_PREFERENCES: Dict[str, Any] = {
    "email": {
        "marketing": False,
        "productUpdates": True,
        "securityAlerts": True,
    }
}


def merge_preferences(stored: Any) -> Dict[str, Any]:
    """Stored preferences layered over the defaults (security alerts stay on)."""
    stored_email = (stored or {}).get("email") if isinstance(stored, dict) else None
    email = {**DEFAULT_PREFERENCES["email"], **(stored_email if isinstance(stored_email, dict) else {})}
    email["securityAlerts"] = True
    return {"email": email}


def user_to_dict(user: User, *, full: bool = False) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "emailVerified": bool(user.email_verified),
        "image": user.image,
        "role": user.role,
        "createdAt": as_utc(user.created_at),
        "updatedAt": as_utc(user.updated_at),
    }
    if full:
        data.update(
            {
                "bio": user.bio,
                "phone": user.phone,
                "timezone": user.timezone,
                "location": user.location,
                "preferences": merge_preferences(user.preferences),
                "lastLoginAt": as_utc(user.last_login_at),
            }
        )
    return data
