from __future__ import annotations

import datetime as dt
from pathlib import Path

import pytest
import requests
from sqlalchemy.exc import OperationalError

from sunrise.db.base import Base
from sunrise.db.models import FeatureFlag, Session as UserSession, User, Verification, utcnow
from sunrise.db.session import create_engine_and_sessionmaker
from sunrise.services.auth_service import AuthService, EmailTaken, InvalidCredentials, InvalidToken, UserLocked
from sunrise.services.email_service import EmailError, EmailService
from sunrise.services.feature_flags import DEFAULT_FLAGS, FeatureFlagService, load_default_flags
from sunrise.services.invitation_service import IDENTIFIER_PREFIX, InvitationService, hash_token
from sunrise.services.retention_service import RetentionService

REPO_ROOT = Path(__file__).resolve().parents[1]


@pytest.fixture()
def db(tmp_path: Path):
    rt = create_engine_and_sessionmaker(f"sqlite:///{tmp_path / 'svc.db'}")
    Base.metadata.create_all(bind=rt.engine)
    session = rt.SessionLocal()
    try:
        yield session
    finally:
        session.close()
        rt.engine.dispose()


@pytest.fixture()
def auth() -> AuthService:
    return AuthService(jwt_secret_key="secret", lockout_threshold=3, lockout_duration_s=60)


# -----------------
# Auth
# -----------------

def test_auth_requires_secret():
    with pytest.raises(ValueError):
        AuthService(jwt_secret_key="")


def test_create_user_and_authenticate(db, auth: AuthService):
    user = auth.create_user(db, name="Ann", email=" Ann@Example.com ", password="Secret!234a")
    assert user.email == "ann@example.com"
    assert user.password_hash != "Secret!234a"

    with pytest.raises(EmailTaken):
        auth.create_user(db, name="Ann 2", email="ann@example.com", password="Secret!234a")

    tokens = auth.authenticate(db, email="ann@example.com", password="Secret!234a")
    assert auth.decode_access_token(tokens.access_token) == user.id
    db.refresh(user)
    assert user.last_login_at is not None


def test_failed_logins_lock_account(db, auth: AuthService):
    auth.create_user(db, name="Bob", email="bob@example.com", password="Secret!234a")
    for _ in range(3):
        with pytest.raises(InvalidCredentials):
            auth.authenticate(db, email="bob@example.com", password="wrong")
    with pytest.raises(UserLocked):
        auth.authenticate(db, email="bob@example.com", password="Secret!234a")


def test_unknown_user_is_invalid_credentials(db, auth: AuthService):
    with pytest.raises(InvalidCredentials):
        auth.authenticate(db, email="ghost@example.com", password="x")


def test_refresh_rotates_and_logout_revokes(db, auth: AuthService):
    user = auth.create_user(db, name="Cy", email="cy@example.com", password="Secret!234a")
    first = auth.issue_tokens(db, user)
    second = auth.refresh(db, refresh_token=first.refresh_token)
    assert second.refresh_token != first.refresh_token
    with pytest.raises(InvalidToken):
        auth.refresh(db, refresh_token=first.refresh_token)

    auth.logout(db, refresh_token=second.refresh_token)
    with pytest.raises(InvalidToken):
        auth.refresh(db, refresh_token=second.refresh_token)


def test_decode_rejects_foreign_tokens(db, auth: AuthService):
    user = auth.create_user(db, name="Fay", email="fay@example.com", password="Secret!234a")
    foreign = AuthService(jwt_secret_key="other").issue_tokens(db, user)
    with pytest.raises(InvalidToken):
        auth.decode_access_token(foreign.access_token)
    with pytest.raises(InvalidToken):
        auth.decode_access_token("not-a-jwt")


def test_email_verification(db, auth: AuthService):
    user = auth.create_user(db, name="Di", email="di@example.com", password="Secret!234a")
    token = auth.create_email_verification_token(db, user.email)
    with pytest.raises(InvalidToken):
        auth.verify_email(db, email=user.email, token="wrong")
    verified = auth.verify_email(db, email=user.email, token=token)
    assert verified.email_verified
    # single use
    with pytest.raises(InvalidToken):
        auth.verify_email(db, email=user.email, token=token)


def test_password_reset_is_single_use_and_signs_out(db, auth: AuthService):
    user = auth.create_user(db, name="Gus", email="gus@example.com", password="Secret!234a")
    session = auth.issue_tokens(db, user)
    token = auth.create_password_reset_token(db, "GUS@example.com")

    record = db.query(Verification).one()
    assert record.identifier == "password-reset:gus@example.com"
    assert record.value != token

    with pytest.raises(InvalidToken):
        auth.reset_password(db, token="wrong", new_password="Changed!234a")

    auth.reset_password(db, token=token, new_password="Changed!234a")
    assert auth.authenticate(db, email="gus@example.com", password="Changed!234a")
    with pytest.raises(InvalidToken):
        auth.refresh(db, refresh_token=session.refresh_token)
    with pytest.raises(InvalidToken):
        auth.reset_password(db, token=token, new_password="Another!234a")


def test_expired_password_reset_token(db, auth: AuthService):
    auth.create_user(db, name="Hal", email="hal@example.com", password="Secret!234a")
    token = auth.create_password_reset_token(db, "hal@example.com")
    record = db.query(Verification).one()
    record.expires_at = utcnow() - dt.timedelta(minutes=1)
    db.commit()
    with pytest.raises(InvalidToken):
        auth.reset_password(db, token=token, new_password="Changed!234a")


def test_change_password_checks_current(db, auth: AuthService):
    user = auth.create_user(db, name="Ivy", email="ivy@example.com", password="Secret!234a")
    auth.issue_tokens(db, user)
    with pytest.raises(InvalidCredentials):
        auth.change_password(db, user, current_password="nope", new_password="Changed!234a")
    assert auth.change_password(db, user, current_password="Secret!234a", new_password="Changed!234a") == 1
    assert auth.verify_password("Changed!234a", user.password_hash)


def test_initial_admin_only_when_empty(db, auth: AuthService):
    auth.ensure_initial_admin(db, email="root@example.com", name="Root", password="Secret!234a")
    auth.ensure_initial_admin(db, email="other@example.com", name="Other", password="Secret!234a")
    users = db.query(User).all()
    assert [(u.email, u.role, u.email_verified) for u in users] == [("root@example.com", "ADMIN", True)]


# -----------------
# Invitations
# -----------------

def test_invitation_token_lifecycle(db):
    svc = InvitationService()
    token = svc.generate(db, "new@example.com", {"name": "New", "role": "USER", "invitedBy": 1})
    assert len(token) == 64

    row = db.query(Verification).one()
    assert row.identifier == f"{IDENTIFIER_PREFIX}new@example.com"
    assert row.value == hash_token(token)
    assert row.value != token

    assert svc.validate(db, "new@example.com", token)
    assert not svc.validate(db, "new@example.com", "0" * 64)
    assert not svc.validate(db, "other@example.com", token)

    inv = svc.get_valid_invitation(db, "new@example.com")
    assert inv.metadata["name"] == "New"
    assert inv.expires_at > utcnow() + dt.timedelta(days=6)

    assert svc.delete(db, "new@example.com") == 1
    assert svc.get_valid_invitation(db, "new@example.com") is None


def test_update_replaces_previous_token(db):
    svc = InvitationService()
    old = svc.generate(db, "x@example.com", {"name": "X"})
    new = svc.update(db, "x@example.com", {"name": "X2"})
    assert not svc.validate(db, "x@example.com", old)
    assert svc.validate(db, "x@example.com", new)
    assert db.query(Verification).count() == 1


def test_invitation_metadata_reasons(db):
    svc = InvitationService()
    assert svc.get_invitation_metadata(db, "none@example.com", "t").reason == "not_found"

    token = svc.generate(db, "m@example.com", {"name": "M", "role": "ADMIN"})
    bad = svc.get_invitation_metadata(db, "m@example.com", "wrong")
    assert (bad.valid, bad.reason) == (False, "invalid_token")
    good = svc.get_invitation_metadata(db, "m@example.com", token)
    assert good.valid
    assert good.metadata == {"name": "M", "role": "ADMIN"}

    row = db.query(Verification).one()
    row.expires_at = utcnow() - dt.timedelta(minutes=1)
    db.commit()
    expired = svc.get_invitation_metadata(db, "m@example.com", token)
    assert (expired.valid, expired.reason) == (False, "expired")
    assert not svc.validate(db, "m@example.com", token)


def test_pending_invitations_listing(db):
    svc = InvitationService()
    inviter = User(name="Boss", email="boss@example.com", role="ADMIN", preferences={})
    db.add(inviter)
    db.commit()

    svc.generate(db, "alice@example.com", {"name": "Alice", "role": "USER", "invitedBy": inviter.id})
    svc.generate(db, "bob@example.com", {"name": "Bob", "role": "ADMIN", "invitedBy": inviter.id})
    svc.generate(db, "bob@example.com", {"name": "Bobby", "role": "ADMIN", "invitedBy": inviter.id})
    # email verification tokens are not invitations
    db.add(Verification(identifier="email-verification:z@example.com", value="v", expires_at=utcnow() + dt.timedelta(days=1)))
    db.commit()

    items, total = svc.get_all_pending_invitations(db, sort_by="email", sort_order="asc")
    assert total == 2
    assert [i["email"] for i in items] == ["alice@example.com", "bob@example.com"]
    assert items[1]["name"] == "Bobby"
    assert items[0]["invitedByName"] == "Boss"

    items, total = svc.get_all_pending_invitations(db, search="ALI")
    assert total == 1
    assert items[0]["email"] == "alice@example.com"

    items, total = svc.get_all_pending_invitations(db, page=2, limit=1, sort_by="name", sort_order="asc")
    assert total == 2
    assert [i["name"] for i in items] == ["Bobby"]


# -----------------
# Email
# -----------------

def _email(env: str, **kw) -> EmailService:
    return EmailService(api_key=kw.pop("api_key", ""), email_from=kw.pop("email_from", ""), env=env, **kw)


def test_unconfigured_email_is_mocked_outside_production():
    result = _email("development").send_email(to="a@example.com", subject="Hi", html="<p>x</p>")
    assert result.success
    assert result.status == "disabled"
    assert result.id.startswith("mock-")

    result = _email("test").send_email(to=["a@example.com"], subject="Hi", html="<p>x</p>")
    assert result.id.startswith("mock-test-")


def test_unconfigured_email_fails_in_production():
    with pytest.raises(EmailError):
        _email("production").send_email(to="a@example.com", subject="Hi", html="<p>x</p>")


class _Resp:
    def __init__(self, status_code: int, body: dict):
        self.status_code = status_code
        self._body = body
        self.text = str(body)

    def json(self):
        return self._body


class _Session:
    def __init__(self, resp=None, exc=None):
        self.resp = resp
        self.exc = exc
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers})
        if self.exc:
            raise self.exc
        return self.resp


def test_configured_email_posts_to_provider():
    http = _Session(_Resp(200, {"id": "em_1"}))
    svc = EmailService(api_key="re_key", email_from="noreply@example.com", email_from_name="Sunrise", session=http)
    result = svc.send_email(to="a@example.com", subject="Hi", html="<p>x</p>", reply_to="r@example.com")
    assert (result.success, result.status, result.id) == (True, "sent", "em_1")
    call = http.calls[0]
    assert call["json"]["from"] == "Sunrise <noreply@example.com>"
    assert call["json"]["to"] == ["a@example.com"]
    assert call["json"]["reply_to"] == "r@example.com"
    assert call["headers"]["Authorization"] == "Bearer re_key"


def test_provider_errors_become_failed_results():
    rejected = EmailService(
        api_key="k", email_from="f@example.com", session=_Session(_Resp(422, {"message": "bad from"}))
    ).send_email(to="a@example.com", subject="s", html="h")
    assert (rejected.success, rejected.status, rejected.error) == (False, "failed", "bad from")

    down = EmailService(
        api_key="k", email_from="f@example.com", session=_Session(exc=requests.ConnectionError("down"))
    ).send_email(to="a@example.com", subject="s", html="h")
    assert (down.success, down.status) == (False, "failed")


# -----------------
# Feature flags
# -----------------

def test_load_default_flags_from_yaml(tmp_path: Path):
    flags = load_default_flags(str(REPO_ROOT / "config" / "feature_flags.yaml"))
    assert [f["name"] for f in flags] == ["MAINTENANCE_MODE"]
    assert flags[0]["enabled"] is False

    assert load_default_flags(str(tmp_path / "missing.yaml")) == DEFAULT_FLAGS

    bad = tmp_path / "bad.yaml"
    bad.write_text("flags: {}\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_default_flags(str(bad))


def test_flag_crud_and_seed(db):
    svc = FeatureFlagService()
    assert svc.seed_default_flags(db) == 1
    assert svc.seed_default_flags(db) == 0
    assert not svc.is_feature_enabled(db, "maintenance_mode")

    svc.toggle_flag(db, "MAINTENANCE_MODE", True)
    assert svc.is_feature_enabled(db, "MAINTENANCE_MODE")
    assert svc.toggle_flag(db, "MISSING", True) is None
    assert not svc.is_feature_enabled(db, "MISSING")

    flag = svc.create_flag(db, name="new_checkout", description="d", metadata={"pct": 10})
    assert flag.name == "NEW_CHECKOUT"
    flag = svc.update_flag(db, flag, {"enabled": True, "metadata": {"pct": 50}})
    assert flag.enabled and flag.meta == {"pct": 50}
    assert [f.name for f in svc.get_all_flags(db)] == ["MAINTENANCE_MODE", "NEW_CHECKOUT"]

    svc.delete_flag(db, flag)
    assert svc.get_flag(db, "NEW_CHECKOUT") is None
    assert db.query(FeatureFlag).count() == 1


class _BrokenSession:
    def query(self, *args, **kwargs):
        raise OperationalError("SELECT feature_flags", {}, Exception("database is locked"))

    def rollback(self):
        pass


def test_flag_reads_fall_back_when_database_fails():
    svc = FeatureFlagService()
    broken = _BrokenSession()
    assert svc.is_feature_enabled(broken, "MAINTENANCE_MODE") is False
    assert svc.get_all_flags(broken) == []
    assert svc.get_flag(broken, "MAINTENANCE_MODE") is None
    assert svc.toggle_flag(broken, "MAINTENANCE_MODE", True) is None


# -----------------
# Retention
# -----------------

def test_retention_cleanup(db, auth: AuthService):
    user = auth.create_user(db, name="Eve", email="eve@example.com", password="Secret!234a")

    tokens = auth.issue_tokens(db, user)
    sess = db.query(UserSession).one()
    sess.expires_at = utcnow() - dt.timedelta(days=30)
    db.add(Verification(identifier="x", value="v", expires_at=utcnow() - dt.timedelta(days=60)))
    db.commit()

    summary = RetentionService().cleanup(db, sessions_days=7, verifications_days=30)
    assert summary == {"sessions": 1, "verifications": 1}
    with pytest.raises(InvalidToken):
        auth.refresh(db, refresh_token=tokens.refresh_token)
