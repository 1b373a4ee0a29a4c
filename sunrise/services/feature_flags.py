from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from sqlalchemy.orm import Session

from sunrise.db.models import FeatureFlag, as_utc

logger = logging.getLogger(__name__)

DEFAULT_FLAGS: List[Dict[str, Any]] = [
    {
        "name": "MAINTENANCE_MODE",
        "description": (
            "When enabled, shows a maintenance page to all non-admin users. Admins can still access the site."
        ),
        "enabled": False,
        "metadata": {
            "message": "We are currently performing scheduled maintenance. Please check back soon.",
            "estimatedDowntime": None,
        },
    }
]


def load_default_flags(path: Optional[str]) -> List[Dict[str, Any]]:
    """Read default flags from YAML, falling back to the built-in list."""
    if not path or not Path(path).is_file():
        return [dict(f) for f in DEFAULT_FLAGS]
    with open(path, "r", encoding="utf-8") as f:
        doc = yaml.safe_load(f) or {}
    flags = doc.get("flags") if isinstance(doc, dict) else None
    if not isinstance(flags, list):
        raise ValueError(f"{path}: expected a top-level 'flags' list")
    out: List[Dict[str, Any]] = []
    for raw in flags:
        if not isinstance(raw, dict) or not raw.get("name"):
            raise ValueError(f"{path}: every flag needs a name")
        out.append(
            {
                "name": str(raw["name"]).upper(),
                "description": raw.get("description"),
                "enabled": bool(raw.get("enabled", False)),
                "metadata": dict(raw.get("metadata") or {}),
            }
        )
    return out


def flag_to_dict(flag: FeatureFlag) -> Dict[str, Any]:
    return {
        "id": flag.id,
        "name": flag.name,
        "enabled": flag.enabled,
        "description": flag.description,
        "metadata": flag.meta or {},
        "createdBy": flag.created_by,
        "createdAt": as_utc(flag.created_at),
        "updatedAt": as_utc(flag.updated_at),
    }


class FeatureFlagService:
    """DB-backed feature flags.

    Read helpers swallow DB errors (logged) and return a safe default so a
    flag lookup can never take a request down.
    """

    def __init__(self, defaults: Optional[List[Dict[str, Any]]] = None) -> None:
        self._defaults = defaults if defaults is not None else [dict(f) for f in DEFAULT_FLAGS]

    @property
    def defaults(self) -> List[Dict[str, Any]]:
        return list(self._defaults)

    def is_feature_enabled(self, db: Session, name: str) -> bool:
        try:
            flag = db.query(FeatureFlag).filter(FeatureFlag.name == name.upper()).one_or_none()
            return bool(flag and flag.enabled)
        except Exception as e:
            logger.error("Failed to check feature flag", extra={"error": e, "meta": {"name": name}})
            return False

    def get_all_flags(self, db: Session) -> List[FeatureFlag]:
        try:
            return db.query(FeatureFlag).order_by(FeatureFlag.name.asc()).all()
        except Exception as e:
            logger.error("Failed to get feature flags", extra={"error": e})
            return []

    def get_flag(self, db: Session, name: str) -> Optional[FeatureFlag]:
        try:
            return db.query(FeatureFlag).filter(FeatureFlag.name == name.upper()).one_or_none()
        except Exception as e:
            logger.error("Failed to get feature flag", extra={"error": e, "meta": {"name": name}})
            return None

    def get_flag_by_id(self, db: Session, flag_id: int) -> Optional[FeatureFlag]:
        return db.query(FeatureFlag).filter(FeatureFlag.id == flag_id).one_or_none()

    def toggle_flag(self, db: Session, name: str, enabled: bool) -> Optional[FeatureFlag]:
        try:
            flag = db.query(FeatureFlag).filter(FeatureFlag.name == name.upper()).one_or_none()
            if not flag:
                return None
            flag.enabled = bool(enabled)
            db.commit()
            db.refresh(flag)
        except Exception as e:
            db.rollback()
            logger.error("Failed to toggle feature flag", extra={"error": e, "meta": {"name": name}})
            return None
        logger.info("Feature flag toggled", extra={"meta": {"name": flag.name, "enabled": flag.enabled}})
        return flag

    def create_flag(
        self,
        db: Session,
        *,
        name: str,
        description: Optional[str] = None,
        enabled: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
        created_by: Optional[int] = None,
    ) -> FeatureFlag:
        flag = FeatureFlag(
            name=name.upper(),
            description=description,
            enabled=bool(enabled),
            meta=dict(metadata or {}),
            created_by=created_by,
        )
        db.add(flag)
        db.commit()
        db.refresh(flag)
        logger.info("Feature flag created", extra={"meta": {"name": flag.name, "enabled": flag.enabled}})
        return flag

    def update_flag(self, db: Session, flag: FeatureFlag, changes: Dict[str, Any]) -> FeatureFlag:
        if "description" in changes:
            flag.description = changes["description"]
        if "enabled" in changes and changes["enabled"] is not None:
            flag.enabled = bool(changes["enabled"])
        if "metadata" in changes and changes["metadata"] is not None:
            flag.meta = dict(changes["metadata"])
        db.commit()
        db.refresh(flag)
        logger.info("Feature flag updated", extra={"meta": {"name": flag.name, "changes": changes}})
        return flag

    def delete_flag(self, db: Session, flag: FeatureFlag) -> None:
        name = flag.name
        db.delete(flag)
        db.commit()
        logger.info("Feature flag deleted", extra={"meta": {"name": name}})

    def seed_default_flags(self, db: Session) -> int:
        """Create any default flags that don't exist yet. Returns how many were created."""
        existing = {name for (name,) in db.query(FeatureFlag.name).all()}
        created = 0
        for default in self._defaults:
            if default["name"] in existing:
                continue
            db.add(
                FeatureFlag(
                    name=default["name"],
                    description=default.get("description"),
                    enabled=bool(default.get("enabled", False)),
                    meta=dict(default.get("metadata") or {}),
                )
            )
            created += 1
        if created:
            db.commit()
            logger.info("Default feature flags seeded", extra={"meta": {"created": created}})
        return created
