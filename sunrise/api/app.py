from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles
from sqlalchemy.exc import OperationalError

from sunrise.api.errors import register_error_handlers
from sunrise.api.middleware import (
    AppCORSMiddleware,
    AuthEnforcementMiddleware,
    ProxyMiddleware,
    RequestSizeLimitMiddleware,
)
from sunrise.api.routers import admin, auth, contact, csp_report, health, invitations, me, users
from sunrise.core.logging import configure_logging
from sunrise.core.settings import Settings
from sunrise.db.base import Base
from sunrise.db.models import User
from sunrise.db.session import create_engine_and_sessionmaker
from sunrise.security.cors import get_allowed_origins
from sunrise.services.auth_service import AuthService
from sunrise.services.email_service import EmailService
from sunrise.services.feature_flags import FeatureFlagService, load_default_flags
from sunrise.services.invitation_service import InvitationService
from sunrise.services.log_buffer import LogBuffer, LogBufferHandler
from sunrise.services.rate_limiter import RateLimiters
from sunrise.services.retention_service import RetentionService
from sunrise.services.storage import (
    LOCAL_BASE_URL,
    LocalStorageProvider,
    UploadService,
    create_storage_provider,
    get_max_file_size,
)

logger = logging.getLogger(__name__)


def _repo_root() -> Path:
    # .../repo_root/sunrise/api/app.py -> parents[2] == repo_root
    return Path(__file__).resolve().parents[2]


def _resolve(p: str) -> Path:
    path = Path(p)
    if path.is_absolute():
        return path
    return (_repo_root() / path).resolve()


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings()

    log_buffer = LogBuffer()
    configure_logging(settings, LogBufferHandler(log_buffer))

    storage_provider = create_storage_provider(settings, public_dir=_resolve(settings.public_dir))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting Sunrise app...", extra={"meta": {"env": settings.env, "version": settings.app_version}})

        app.state.settings = settings
        app.state.log_buffer = log_buffer

        # --- DB ---
        db_rt = create_engine_and_sessionmaker(settings.database_url, echo=settings.db_echo)
        app.state.db_engine = db_rt.engine
        app.state.db_sessionmaker = db_rt.SessionLocal
        if settings.auto_create_db:
            Base.metadata.create_all(bind=db_rt.engine)

        # --- Services ---
        if not settings.jwt_secret_key:
            raise RuntimeError("JWT_SECRET_KEY is required")

        app.state.auth_service = AuthService(
            jwt_secret_key=settings.jwt_secret_key,
            jwt_issuer=settings.jwt_issuer,
            access_ttl_s=settings.access_token_ttl_s,
            refresh_ttl_s=settings.refresh_token_ttl_s,
            lockout_threshold=settings.auth_lockout_threshold,
            lockout_duration_s=settings.auth_lockout_duration_s,
        )
        app.state.invitation_service = InvitationService()
        app.state.feature_flag_service = FeatureFlagService(
            load_default_flags(str(_resolve(settings.feature_flags_file)))
        )
        app.state.email_service = EmailService(
            api_key=settings.resend_api_key,
            email_from=settings.email_from,
            email_from_name=settings.email_from_name,
            env=settings.env,
            require_verification=settings.require_email_verification,
        )
        app.state.email_service.validate_config()
        app.state.upload_service = UploadService(storage_provider, max_file_size=get_max_file_size(settings))
        app.state.rate_limiters = RateLimiters()
        app.state.retention_service = RetentionService()

        # Bootstrap initial admin if DB empty, then default feature flags
        with db_rt.SessionLocal() as db:
            try:
                user_count = db.query(User).count()
            except OperationalError as e:
                raise RuntimeError(
                    "Database schema not initialized. Run `alembic upgrade head` (or set AUTO_CREATE_DB=1 for dev)."
                ) from e

            if user_count == 0:
                if not settings.initial_admin_password:
                    raise RuntimeError(
                        "INITIAL_ADMIN_PASSWORD is required on first run to bootstrap the admin user"
                    )
                app.state.auth_service.ensure_initial_admin(
                    db,
                    email=settings.initial_admin_email,
                    name=settings.initial_admin_name,
                    password=settings.initial_admin_password,
                )

            app.state.feature_flag_service.seed_default_flags(db)

        # --- Scheduler ---
        app.state.scheduler = None
        if settings.enable_scheduler:
            sched = BackgroundScheduler(timezone="UTC")

            def _run_retention():
                with db_rt.SessionLocal() as db:
                    app.state.retention_service.cleanup(
                        db,
                        sessions_days=settings.retention_sessions_days,
                        verifications_days=settings.retention_verifications_days,
                    )

            # Run retention hourly
            sched.add_job(_run_retention, "interval", hours=1, id="retention")
            sched.start()
            app.state.scheduler = sched

        try:
            yield
        finally:
            logger.info("Shutting down Sunrise app...")
            if app.state.scheduler:
                app.state.scheduler.shutdown(wait=False)
            app.state.db_engine.dispose()
            logger.info("Sunrise app shutdown complete.")

    is_dev = settings.is_development
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/api/docs" if is_dev else None,
        redoc_url="/api/redoc" if is_dev else None,
        openapi_url="/api/openapi.json" if is_dev else None,
    )

    # Middleware (last added runs first)
    app.add_middleware(RequestSizeLimitMiddleware, max_bytes=settings.max_request_size_bytes)
    app.add_middleware(AuthEnforcementMiddleware)
    app.add_middleware(ProxyMiddleware)
    app.add_middleware(AppCORSMiddleware, allowed=get_allowed_origins(settings))

    register_error_handlers(app, development=is_dev)

    if isinstance(storage_provider, LocalStorageProvider):
        storage_provider.root.mkdir(parents=True, exist_ok=True)
        app.mount(LOCAL_BASE_URL, StaticFiles(directory=str(storage_provider.root)), name="uploads")

    app.include_router(health.router)
    app.include_router(csp_report.router)
    app.include_router(auth.router)
    app.include_router(invitations.router)
    app.include_router(contact.router)
    # /users/me must be matched before /users/{user_id}
    app.include_router(me.router)
    app.include_router(users.router)
    app.include_router(admin.router)

    return app
