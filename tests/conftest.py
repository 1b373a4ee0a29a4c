from __future__ import annotations

from pathlib import Path
import struct
import sys
import zlib

# Ensure repo root is importable
REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))


import pytest
from fastapi.testclient import TestClient

from sunrise.api.app import create_app
from sunrise.core.settings import Settings

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "TestPassword!12345"
USER_PASSWORD = "UserPassword!234"


def make_settings(tmp_path: Path, **overrides) -> Settings:
    db_path = tmp_path / "test.db"
    values = dict(
        env="test",
        database_url=f"sqlite:///{db_path}",
        auto_create_db=True,
        jwt_secret_key="test_jwt_secret",
        enable_scheduler=False,
        initial_admin_email=ADMIN_EMAIL,
        initial_admin_name="Admin",
        initial_admin_password=ADMIN_PASSWORD,
        require_email_verification=False,
        feature_flags_file=str(REPO_ROOT / "config" / "feature_flags.yaml"),
        public_dir=str(tmp_path / "public"),
        allowed_origins=["https://app.example.com"],
        resend_api_key="",
        email_from="",
        contact_email="",
        storage_provider="",
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture()
def client(settings: Settings):
    app = create_app(settings)
    with TestClient(app) as c:
        yield c


def auth_headers(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def login(client: TestClient, email: str, password: str, ip: str = "10.0.0.1") -> dict:
    resp = client.post(
        "/api/auth/login",
        json={"email": email, "password": password},
        headers={"X-Forwarded-For": ip},
    )
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]


@pytest.fixture()
def admin_token(client: TestClient) -> str:
    return login(client, ADMIN_EMAIL, ADMIN_PASSWORD)["accessToken"]


@pytest.fixture()
def user_token(client: TestClient) -> str:
    resp = client.post(
        "/api/auth/signup",
        json={"name": "Regular User", "email": "user@example.com", "password": USER_PASSWORD},
        headers={"X-Forwarded-For": "10.0.0.2"},
    )
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]["accessToken"]


def _png_chunk(kind: bytes, body: bytes) -> bytes:
    return struct.pack(">I", len(body)) + kind + body + struct.pack(">I", zlib.crc32(kind + body))


def png_with_dimensions(width: int, height: int) -> bytes:
    """A tiny PNG whose header claims ``width`` x ``height`` pixels."""
    ihdr = struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0)
    idat = zlib.compress(b"\x00" * 64)
    return b"\x89PNG\r\n\x1a\n" + _png_chunk(b"IHDR", ihdr) + _png_chunk(b"IDAT", idat) + _png_chunk(b"IEND", b"")
