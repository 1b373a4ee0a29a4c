from __future__ import annotations

from fastapi.testclient import TestClient

from conftest import auth_headers


def test_admin_routes_forbidden_for_users(client: TestClient, user_token: str):
    h = auth_headers(user_token)
    for path in ("/api/v1/admin/stats", "/api/v1/admin/logs", "/api/v1/admin/feature-flags", "/api/v1/admin/invitations"):
        r = client.get(path, headers=h)
        assert r.status_code == 403, path


def test_stats(client: TestClient, admin_token: str, user_token: str):
    r = client.get("/api/v1/admin/stats", headers=auth_headers(admin_token))
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["users"]["total"] == 2
    assert data["users"]["verified"] == 1
    assert data["users"]["recentSignups"] == 2
    assert data["users"]["byRole"] == {"USER": 1, "ADMIN": 1}
    assert data["system"]["environment"] == "test"
    assert data["system"]["databaseStatus"] == "connected"
    assert data["system"]["appVersion"] == "1.0.0"


def test_logs_endpoint_filters_buffer(client: TestClient, admin_token: str):
    client.post("/api/auth/login", json={"email": "ghost@example.com", "password": "nope"})
    h = auth_headers(admin_token)

    r = client.get("/api/v1/admin/logs", params={"search": "Invalid email or password"}, headers=h)
    assert r.status_code == 200
    body = r.json()
    assert body["meta"]["total"] >= 1
    assert all(e["level"] == "warn" for e in body["data"])

    r = client.get("/api/v1/admin/logs", params={"level": "error", "limit": 5}, headers=h)
    assert r.status_code == 200
    assert r.json()["meta"]["limit"] == 5

    r = client.get("/api/v1/admin/logs", params={"level": "fatal"}, headers=h)
    assert r.status_code == 400


def test_logs_never_contain_secrets(client: TestClient, admin_token: str):
    client.post("/api/auth/login", json={"email": "ghost@example.com", "password": "SuperSecret!1"})
    r = client.get("/api/v1/admin/logs", params={"limit": 100}, headers=auth_headers(admin_token))
    assert "SuperSecret!1" not in r.text


def test_default_flags_seeded(client: TestClient, admin_token: str):
    r = client.get("/api/v1/admin/feature-flags", headers=auth_headers(admin_token))
    assert r.status_code == 200
    flags = r.json()["data"]
    assert [f["name"] for f in flags] == ["MAINTENANCE_MODE"]
    assert flags[0]["enabled"] is False
    assert "message" in flags[0]["metadata"]


def test_feature_flag_crud(client: TestClient, admin_token: str):
    h = auth_headers(admin_token)

    r = client.post(
        "/api/v1/admin/feature-flags",
        json={"name": "new_dashboard", "description": "Beta dashboard", "metadata": {"rollout": 25}},
        headers=h,
    )
    assert r.status_code == 201
    flag = r.json()["data"]
    assert flag["name"] == "NEW_DASHBOARD"
    assert flag["enabled"] is False
    assert flag["createdBy"] is not None

    r = client.post("/api/v1/admin/feature-flags", json={"name": "NEW_DASHBOARD"}, headers=h)
    assert r.status_code == 409
    assert r.json()["error"] == {"message": "Feature flag 'NEW_DASHBOARD' already exists", "code": "CONFLICT"}

    r = client.post("/api/v1/admin/feature-flags", json={"name": "bad-name"}, headers=h)
    assert r.status_code == 400

    r = client.patch(f"/api/v1/admin/feature-flags/{flag['id']}", json={"enabled": True}, headers=h)
    assert r.status_code == 200
    assert r.json()["data"]["enabled"] is True
    assert r.json()["data"]["metadata"] == {"rollout": 25}

    r = client.get(f"/api/v1/admin/feature-flags/{flag['id']}", headers=h)
    assert r.json()["data"]["enabled"] is True
    assert client.app.state.feature_flag_service.is_feature_enabled(
        client.app.state.db_sessionmaker(), "NEW_DASHBOARD"
    )

    r = client.delete(f"/api/v1/admin/feature-flags/{flag['id']}", headers=h)
    assert r.status_code == 200
    assert r.json()["data"] == {"id": flag["id"], "deleted": True}
    assert client.get(f"/api/v1/admin/feature-flags/{flag['id']}", headers=h).status_code == 404


def test_flag_metadata_limits(client: TestClient, admin_token: str):
    too_many = {f"k{i}": i for i in range(51)}
    r = client.post(
        "/api/v1/admin/feature-flags",
        json={"name": "BIG_META", "metadata": too_many},
        headers=auth_headers(admin_token),
    )
    assert r.status_code == 400
    assert r.json()["error"]["details"]["errors"][0]["message"] == "Metadata cannot have more than 50 keys"


def test_admin_mutations_rate_limited(client: TestClient, admin_token: str):
    client.app.state.rate_limiters.get("admin").limit = 1
    h = auth_headers(admin_token)
    assert client.post("/api/v1/admin/feature-flags", json={"name": "ONE"}, headers=h).status_code == 201
    r = client.post("/api/v1/admin/feature-flags", json={"name": "TWO"}, headers=h)
    assert r.status_code == 429
