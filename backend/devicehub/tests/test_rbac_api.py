from __future__ import annotations

import time
from typing import Dict

import pytest

pytest.importorskip("httpx")

from fastapi.testclient import TestClient
from sqlmodel import Session, select

from devicehub.core.config import settings
from devicehub.main import app
from devicehub.models import AuditEvent, Permission, Role
from devicehub.services import roles as role_service


@pytest.fixture
def client(clean_db) -> TestClient:
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def admin_headers(client: TestClient) -> Dict[str, str]:
    response = client.post(
        "/api/v1/auth/login",
        json={"username": settings.first_superuser, "password": settings.first_superuser_password},
    )
    assert response.status_code == 200, response.text
    client.cookies.clear()
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


def _permission_ids(session: Session, *names: str) -> list[int]:
    rows = session.exec(select(Permission).where(Permission.name.in_(names))).all()
    return [row.id for row in rows]


def test_permission_listing_hides_reserved_names(client: TestClient, admin_headers) -> None:
    response = client.get("/api/v1/permissions/", headers=admin_headers)

    assert response.status_code == 200
    names = {item["name"] for item in response.json()}
    assert "system.bootstrap" not in names
    assert {"system.admin", "device.read", "role.manage"} <= names


def test_hidden_permission_cannot_be_assigned_via_api(
    client: TestClient, admin_headers, session: Session
) -> None:
    created = client.post("/api/v1/roles/", json={"name": "auditors"}, headers=admin_headers)
    assert created.status_code == 201
    role_id = created.json()["id"]

    response = client.post(
        f"/api/v1/roles/{role_id}/permissions",
        json={"permission_ids": _permission_ids(session, "system.bootstrap")},
        headers=admin_headers,
    )

    assert response.status_code == 403
    assert response.json()["code"] == "PERMISSION_NOT_ASSIGNABLE"
    listed = client.get(f"/api/v1/roles/{role_id}/permissions", headers=admin_headers).json()
    assert listed == []


def test_role_lifecycle_through_the_api(
    client: TestClient, admin_headers, session: Session, make_user
) -> None:
    user = make_user("nurse.api")
    created = client.post(
        "/api/v1/roles/", json={"name": "ward-staff", "description": "Ward devices"}, headers=admin_headers
    )
    role_id = created.json()["id"]

    duplicate = client.post("/api/v1/roles/", json={"name": "ward-staff"}, headers=admin_headers)
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "ROLE_NAME_TAKEN"

    granted = client.post(
        f"/api/v1/roles/{role_id}/permissions",
        json={"permission_ids": _permission_ids(session, "device.read", "audit.read")},
        headers=admin_headers,
    )
    assert granted.status_code == 200
    assert [item["name"] for item in granted.json()["granted"]] == ["audit.read", "device.read"]

    assigned = client.post(f"/api/v1/users/{user.id}/roles", json={"role_id": role_id}, headers=admin_headers)
    assert assigned.status_code == 201
    assert assigned.json()["is_active"] is True

    effective = client.get(f"/api/v1/users/{user.id}/permissions", headers=admin_headers)
    assert effective.json() == {
        "user_id": user.id,
        "permissions": ["audit.read", "device.read"],
        "roles": ["ward-staff"],
    }

    removed = client.delete(
        f"/api/v1/roles/{role_id}/permissions/{_permission_ids(session, 'audit.read')[0]}",
        headers=admin_headers,
    )
    assert removed.status_code == 204
    effective = client.get(f"/api/v1/users/{user.id}/permissions", headers=admin_headers)
    assert effective.json()["permissions"] == ["device.read"]

    in_use = client.delete(f"/api/v1/roles/{role_id}", headers=admin_headers)
    assert in_use.status_code == 409
    assert in_use.json()["code"] == "ROLE_IN_USE"

    assert client.delete(f"/api/v1/users/{user.id}/roles/{role_id}", headers=admin_headers).status_code == 204
    assert client.delete(f"/api/v1/roles/{role_id}", headers=admin_headers).status_code == 204
    missing = client.get(f"/api/v1/roles/{role_id}/permissions", headers=admin_headers)
    assert missing.status_code == 404

    actions = set(session.exec(select(AuditEvent.action)).all())
    assert {"role.created", "role.permissions_assigned", "user.role_assigned", "role.deleted"} <= actions


def test_unknown_user_and_role_are_not_found(client: TestClient, admin_headers) -> None:
    response = client.post("/api/v1/users/999999/roles", json={"role_id": 1}, headers=admin_headers)

    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"


def test_audit_listing_requires_audit_read(client: TestClient, admin_headers, make_user, session: Session) -> None:
    listing = client.get("/api/v1/audit/", params={"action": "auth.login"}, headers=admin_headers)
    assert listing.status_code == 200
    body = listing.json()
    assert body["total"] >= 1
    assert body["items"][0]["action"] == "auth.login"
    assert "metadata" in body["items"][0]

    as_csv = client.get("/api/v1/audit/", params={"format": "csv"}, headers=admin_headers)
    assert as_csv.headers["content-type"].startswith("application/json")
    assert "items" in as_csv.json()

    make_user("plain.user")
    token = client.post("/api/v1/auth/login", json={"username": "plain.user", "password": "correct-horse"})
    client.cookies.clear()
    denied = client.get(
        "/api/v1/audit/", headers={"Authorization": f"Bearer {token.json()['access_token']}"}
    )
    assert denied.status_code == 403
    assert denied.json()["required"] == "audit.read"


def test_role_update_and_permission_replacement(
    client: TestClient, admin_headers, session: Session, make_user
) -> None:
    user = make_user("porter.api")
    role_id = client.post("/api/v1/roles/", json={"name": "porters"}, headers=admin_headers).json()["id"]
    client.post(f"/api/v1/users/{user.id}/roles", json={"role_id": role_id}, headers=admin_headers)

    renamed = client.patch(
        f"/api/v1/roles/{role_id}", json={"name": "transport", "description": "Patient transport"}, headers=admin_headers
    )
    assert renamed.status_code == 200
    assert renamed.json()["name"] == "transport"

    system_role_id = session.exec(select(Role.id).where(Role.name == "system-admin")).one()
    protected = client.patch(f"/api/v1/roles/{system_role_id}", json={"name": "root"}, headers=admin_headers)
    assert protected.status_code == 409
    assert protected.json()["code"] == "ROLE_SYSTEM_PROTECTED"

    replaced = client.put(
        f"/api/v1/roles/{role_id}/permissions",
        json={"permission_ids": _permission_ids(session, "device.read", "department.read")},
        headers=admin_headers,
    )
    assert replaced.status_code == 200
    assert [item["name"] for item in replaced.json()["permissions"]] == ["department.read", "device.read"]

    replaced = client.put(
        f"/api/v1/roles/{role_id}/permissions",
        json={"permission_ids": _permission_ids(session, "device.read")},
        headers=admin_headers,
    )
    assert [item["name"] for item in replaced.json()["permissions"]] == ["device.read"]
    effective = client.get(f"/api/v1/users/{user.id}/permissions", headers=admin_headers).json()
    assert effective["permissions"] == ["device.read"]
    assert effective["roles"] == ["transport"]


def test_custom_permission_create_and_delete(client: TestClient, admin_headers, session: Session) -> None:
    created = client.post(
        "/api/v1/permissions/", json={"name": "firmware.push", "description": "Push firmware"}, headers=admin_headers
    )
    assert created.status_code == 201
    permission_id = created.json()["id"]
    assert created.json()["category"] == "firmware"

    duplicate = client.post("/api/v1/permissions/", json={"name": "firmware.push"}, headers=admin_headers)
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "PERMISSION_NAME_TAKEN"

    builtin = client.delete(
        f"/api/v1/permissions/{_permission_ids(session, 'device.read')[0]}", headers=admin_headers
    )
    assert builtin.status_code == 409
    assert builtin.json()["code"] == "PERMISSION_SYSTEM_PROTECTED"

    role_id = client.post("/api/v1/roles/", json={"name": "firmware-team"}, headers=admin_headers).json()["id"]
    client.post(f"/api/v1/roles/{role_id}/permissions", json={"permission_ids": [permission_id]}, headers=admin_headers)

    in_use = client.delete(f"/api/v1/permissions/{permission_id}", headers=admin_headers)
    assert in_use.status_code == 409
    assert in_use.json()["code"] == "PERMISSION_IN_USE"

    forced = client.delete(f"/api/v1/permissions/{permission_id}", params={"force": "true"}, headers=admin_headers)
    assert forced.status_code == 204
    assert client.get(f"/api/v1/roles/{role_id}/permissions", headers=admin_headers).json() == []
    names = {item["name"] for item in client.get("/api/v1/permissions/", headers=admin_headers).json()}
    assert "firmware.push" not in names


def test_permission_management_needs_permission_manage(client: TestClient, make_user) -> None:
    make_user("plain.manager")
    token = client.post("/api/v1/auth/login", json={"username": "plain.manager", "password": "correct-horse"})
    client.cookies.clear()

    response = client.post(
        "/api/v1/permissions/",
        json={"name": "firmware.push"},
        headers={"Authorization": f"Bearer {token.json()['access_token']}"},
    )
    assert response.status_code == 403
    assert response.json()["required"] == "permission.manage"


def test_slow_effective_permission_lookup_fails_closed(
    client: TestClient, admin_headers, make_user, monkeypatch: pytest.MonkeyPatch
) -> None:
    user = make_user("slow.lookup")

    def slow_lookup(*args, **kwargs):
        time.sleep(1.5)

    monkeypatch.setattr(role_service, "effective_permissions", slow_lookup)
    monkeypatch.setattr(settings, "auth_query_timeout_seconds", 0.5)

    response = client.get(f"/api/v1/users/{user.id}/permissions", headers=admin_headers)
    assert response.status_code == 401
    assert response.json()["code"] == "AUTH_RESOLUTION_FAILED"
