from __future__ import annotations

from datetime import datetime, timedelta

import jwt
import pytest
from sqlmodel import Session

from devicehub.core.config import settings
from devicehub.core.errors import (
    PermissionsChanged,
    SessionInvalid,
    TokenExpired,
    TokenInvalid,
    Unauthenticated,
)
from devicehub.core.timeutil import to_epoch_millis, utcnow
from devicehub.models import SessionState, UserSession
from devicehub.services import roles as role_service
from devicehub.services import security, sessions
from devicehub.services.access import AuthorizedClaims, authorize
from devicehub.services.permission_cache import PermissionCache
from devicehub.services.permissions import PermissionSet, resolve_permissions
from devicehub.services.tokens import (
    SOURCE_BEARER,
    SOURCE_COOKIE,
    decode_access_token,
    is_stale,
    issue_access_token,
    permission_version_for,
    verify_access_token,
)

PERMISSIONS = PermissionSet(
    permissions=frozenset({"device.update", "device.read", "system.bootstrap"}),
    roles=frozenset({"technician"}),
)


@pytest.fixture
def user(make_user, organization):
    return make_user("token.user", organization_id=organization.id)


@pytest.fixture
def user_session(session: Session, user) -> UserSession:
    entry, _ = sessions.create_session(session, user.id, ip_address="10.0.0.1", user_agent="pytest")
    return entry


def test_issued_token_embeds_sorted_visible_permissions(user, user_session) -> None:
    token, expires_in = issue_access_token(user, PERMISSIONS, user_session.id)
    payload = decode_access_token(token)

    assert payload["sub"] == str(user.id)
    assert payload["permissions"] == ["device.read", "device.update"]
    assert payload["roles"] == ["technician"]
    assert payload["permission_version"] == permission_version_for(user)
    assert payload["jti"] == user_session.id
    assert payload["organization_id"] == user.organization_id
    assert expires_in == settings.access_token_expire_minutes * 60


def test_verify_returns_authorized_claims(session: Session, user, user_session) -> None:
    token, _ = issue_access_token(user, PERMISSIONS, user_session.id)

    claims = verify_access_token(session, token)

    assert claims.user_id == user.id
    assert claims.has_permission("device.update")
    assert not claims.has_permission("system.bootstrap")
    assert claims.has_role("technician")
    assert claims.session_id == user_session.id
    assert claims.source == SOURCE_BEARER


def test_expired_token_is_rejected() -> None:
    token, _ = security._create_token({"sub": "1", "type": "access"}, timedelta(seconds=-30))

    with pytest.raises(TokenExpired) as excinfo:
        decode_access_token(token)
    assert excinfo.value.code == "AUTH_TOKEN_EXPIRED"


def test_foreign_signature_and_wrong_type_are_invalid() -> None:
    forged = jwt.encode(
        {"sub": "1", "type": "access", "iat": 1, "exp": 9999999999},
        "not-the-secret",
        algorithm=settings.jwt_algorithm,
    )
    with pytest.raises(TokenInvalid):
        decode_access_token(forged)

    other_type, _ = security._create_token({"sub": "1", "type": "refresh"}, timedelta(minutes=5))
    with pytest.raises(TokenInvalid):
        decode_access_token(other_type)


def test_cookie_flow_requires_an_active_session(session: Session, user, user_session) -> None:
    token, _ = issue_access_token(user, PERMISSIONS, user_session.id)
    assert verify_access_token(session, token, source=SOURCE_COOKIE).source == SOURCE_COOKIE

    sessions.revoke_session(session, user_session, sessions.REASON_LOGOUT)

    with pytest.raises(SessionInvalid) as excinfo:
        verify_access_token(session, token, source=SOURCE_COOKIE)
    assert excinfo.value.code == "AUTH_SESSION_INVALID"


def test_bearer_flow_does_not_check_the_session_row(session: Session, user, user_session) -> None:
    token, _ = issue_access_token(user, PERMISSIONS, user_session.id)
    sessions.revoke_session(session, user_session, sessions.REASON_LOGOUT)

    assert verify_access_token(session, token, source=SOURCE_BEARER).user_id == user.id


def test_inactive_user_cannot_use_existing_token(session: Session, user, user_session) -> None:
    token, _ = issue_access_token(user, PERMISSIONS, user_session.id)
    user.is_active = False
    session.add(user)
    session.commit()

    with pytest.raises(Unauthenticated) as excinfo:
        verify_access_token(session, token)
    assert excinfo.value.code == "AUTH_USER_INACTIVE"


def _set_clock(session: Session, user, value: datetime) -> None:
    user.updated_at = value
    session.add(user)
    session.commit()
    session.refresh(user)


def test_staleness_rule() -> None:
    base = 1_700_000_000_000
    now = datetime(2024, 1, 1)
    current = to_epoch_millis(now)

    assert not is_stale(base, base, 300, now)
    assert is_stale(base, base + 301_000, 300, now)
    assert not is_stale(current - 10_000, current - 5_000, 300, now)
    assert is_stale(current - 10_000, current - 5_000, 300, now + timedelta(minutes=6))


def test_revoked_role_stays_usable_only_for_the_grace_window(
    session: Session, make_role, make_user, organization
) -> None:
    role = make_role("dept-manager", ["device.read", "device.manage"])
    user = make_user("dept.manager", roles=[role], organization_id=organization.id)
    _set_clock(session, user, utcnow() - timedelta(seconds=10))
    entry, _ = sessions.create_session(session, user.id)
    token, _ = issue_access_token(user, resolve_permissions(session, user.id), entry.id)
    admin = AuthorizedClaims(user_id=1, username="root", permissions=frozenset({"system.admin"}))
    cache = PermissionCache(lambda user_id: resolve_permissions(session, user_id))

    role_service.revoke_role(session, cache, admin, user.id, role.id)
    session.refresh(user)
    revoked_at = user.updated_at

    claims = verify_access_token(session, token, now=revoked_at + timedelta(minutes=1))
    assert authorize(claims, "device.manage").allowed
    assert resolve_permissions(session, user.id).is_empty

    with pytest.raises(PermissionsChanged) as excinfo:
        verify_access_token(session, token, now=revoked_at + timedelta(minutes=6))
    assert excinfo.value.status_code == 401
    assert excinfo.value.code == "AUTH_PERMISSIONS_CHANGED"
    session.refresh(entry)
    assert entry.state() is SessionState.REVOKED
    assert entry.revoke_reason == sessions.REASON_PERMISSIONS_CHANGED

    fresh_entry, _ = sessions.create_session(session, user.id)
    reissued, _ = issue_access_token(user, cache.get(user.id), fresh_entry.id)
    assert decode_access_token(reissued)["permissions"] == []
    assert verify_access_token(session, reissued, now=revoked_at + timedelta(minutes=6)).permissions == frozenset()


def test_clock_far_ahead_of_token_is_stale_immediately(session: Session, user, user_session) -> None:
    token, _ = issue_access_token(user, PERMISSIONS, user_session.id)
    _set_clock(session, user, user.updated_at + timedelta(seconds=60))

    assert verify_access_token(session, token, now=user.updated_at).user_id == user.id
    with pytest.raises(PermissionsChanged):
        verify_access_token(session, token, grace_seconds=30, now=user.updated_at)
