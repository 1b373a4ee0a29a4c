from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import List


def _env_bool(key: str, default: str = "1") -> bool:
    return os.getenv(key, default).strip().lower() not in ("0", "false", "no", "off")


def _env_int(key: str, default: str) -> int:
    raw = os.getenv(key, default)
    try:
        return int(str(raw).strip())
    except Exception:
        return int(default)


def _env_list(key: str, default: str = "") -> List[str]:
    raw = os.getenv(key, default).strip()
    if not raw:
        return []
    if raw == "*":
        return ["*"]
    if raw.startswith("["):
        try:
            v = json.loads(raw)
            if isinstance(v, list):
                return [str(x) for x in v if str(x).strip()]
        except Exception:
            pass
    return [x.strip() for x in raw.split(",") if x.strip()]


def _default_require_verification() -> bool:
    env = os.getenv("APP_ENV", "development").strip().lower()
    return _env_bool("REQUIRE_EMAIL_VERIFICATION", "1" if env == "production" else "0")


@dataclass(frozen=True, slots=True)
class Settings:
    # development | test | production
    env: str = field(default_factory=lambda: os.getenv("APP_ENV", "development").strip().lower())
    app_name: str = field(default_factory=lambda: os.getenv("APP_NAME", "Sunrise").strip())
    app_version: str = field(default_factory=lambda: os.getenv("APP_VERSION", "1.0.0").strip())
    app_url: str = field(default_factory=lambda: os.getenv("APP_URL", "http://localhost:3000").strip().rstrip("/"))

    # Files/dirs (relative to repo root unless absolute)
    feature_flags_file: str = field(default_factory=lambda: os.getenv("FEATURE_FLAGS_FILE", "config/feature_flags.yaml"))
    public_dir: str = field(default_factory=lambda: os.getenv("PUBLIC_DIR", "public"))

    # Logging. Empty means "info" in production and "debug" elsewhere.
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "").strip().lower())

    # CORS
    allowed_origins: List[str] = field(default_factory=lambda: _env_list("ALLOWED_ORIGINS", ""))

    # Database
    database_url: str = field(default_factory=lambda: os.getenv("DATABASE_URL", "sqlite:///./sunrise.db"))
    db_echo: bool = field(default_factory=lambda: _env_bool("DB_ECHO", "0"))
    # NOTE: In production, use Alembic migrations (alembic upgrade head). AUTO_CREATE_DB is a dev/test escape hatch.
    auto_create_db: bool = field(default_factory=lambda: _env_bool("AUTO_CREATE_DB", "0"))

    # Auth
    jwt_secret_key: str = field(default_factory=lambda: os.getenv("JWT_SECRET_KEY", "").strip())
    jwt_issuer: str = field(default_factory=lambda: os.getenv("JWT_ISSUER", "sunrise").strip())
    access_token_ttl_s: int = field(default_factory=lambda: _env_int("ACCESS_TOKEN_TTL_S", "900"))
    refresh_token_ttl_s: int = field(default_factory=lambda: _env_int("REFRESH_TOKEN_TTL_S", str(60 * 60 * 24 * 7)))
    auth_lockout_threshold: int = field(default_factory=lambda: _env_int("AUTH_LOCKOUT_THRESHOLD", "5"))
    auth_lockout_duration_s: int = field(default_factory=lambda: _env_int("AUTH_LOCKOUT_DURATION_S", "900"))
    require_email_verification: bool = field(default_factory=_default_require_verification)
    session_cookie_name: str = field(default_factory=lambda: os.getenv("SESSION_COOKIE_NAME", "sunrise.session_token").strip())

    # Bootstrap
    initial_admin_email: str = field(default_factory=lambda: os.getenv("INITIAL_ADMIN_EMAIL", "admin@localhost").strip().lower())
    initial_admin_name: str = field(default_factory=lambda: os.getenv("INITIAL_ADMIN_NAME", "Administrator").strip())
    initial_admin_password: str = field(default_factory=lambda: os.getenv("INITIAL_ADMIN_PASSWORD", "").strip())

    # Request limits / hardening
    max_request_size_bytes: int = field(default_factory=lambda: _env_int("MAX_REQUEST_SIZE_BYTES", str(10 * 1024 * 1024)))

    # Background scheduler (retention).
    enable_scheduler: bool = field(default_factory=lambda: _env_bool("ENABLE_SCHEDULER", "1"))

    # Retention (days)
    retention_sessions_days: int = field(default_factory=lambda: _env_int("RETENTION_SESSIONS_DAYS", "7"))
    retention_verifications_days: int = field(default_factory=lambda: _env_int("RETENTION_VERIFICATIONS_DAYS", "30"))

    # Email (Resend HTTP API)
    resend_api_key: str = field(default_factory=lambda: os.getenv("RESEND_API_KEY", "").strip())
    email_from: str = field(default_factory=lambda: os.getenv("EMAIL_FROM", "").strip())
    email_from_name: str = field(default_factory=lambda: os.getenv("EMAIL_FROM_NAME", "").strip())
    contact_email: str = field(default_factory=lambda: os.getenv("CONTACT_EMAIL", "").strip())

    # Storage
    storage_provider: str = field(default_factory=lambda: os.getenv("STORAGE_PROVIDER", "").strip().lower())
    max_file_size_mb: str = field(default_factory=lambda: os.getenv("MAX_FILE_SIZE_MB", "").strip())
    s3_bucket: str = field(default_factory=lambda: os.getenv("S3_BUCKET", "").strip())
    s3_region: str = field(default_factory=lambda: os.getenv("S3_REGION", "us-east-1").strip())
    s3_access_key_id: str = field(default_factory=lambda: os.getenv("S3_ACCESS_KEY_ID", "").strip())
    s3_secret_access_key: str = field(default_factory=lambda: os.getenv("S3_SECRET_ACCESS_KEY", "").strip())
    s3_endpoint: str = field(default_factory=lambda: os.getenv("S3_ENDPOINT", "").strip().rstrip("/"))
    s3_public_url_base: str = field(default_factory=lambda: os.getenv("S3_PUBLIC_URL_BASE", "").strip().rstrip("/"))
    s3_use_acl: bool = field(default_factory=lambda: _env_bool("S3_USE_ACL", "0"))

    # Analytics sources allowed by the CSP
    posthog_key: str = field(default_factory=lambda: os.getenv("POSTHOG_KEY", "").strip())
    posthog_host: str = field(default_factory=lambda: os.getenv("POSTHOG_HOST", "https://us.i.posthog.com").strip())
    ga4_measurement_id: str = field(default_factory=lambda: os.getenv("GA4_MEASUREMENT_ID", "").strip())
    plausible_domain: str = field(default_factory=lambda: os.getenv("PLAUSIBLE_DOMAIN", "").strip())
    plausible_host: str = field(default_factory=lambda: os.getenv("PLAUSIBLE_HOST", "https://plausible.io").strip())

    # Health
    health_include_memory: bool = field(default_factory=lambda: _env_bool("HEALTH_INCLUDE_MEMORY", "0"))

    @property
    def is_production(self) -> bool:
        return self.env == "production"

    @property
    def is_development(self) -> bool:
        return self.env in ("dev", "development", "local")
