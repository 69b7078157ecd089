from __future__ import annotations

import hashlib
from datetime import timedelta

import pytest
from sqlmodel import Session, select

from devicehub.core.config import settings
from devicehub.core.errors import (
    InsufficientPermission,
    PermissionsChanged,
    SessionInvalid,
    Unauthenticated,
    ValidationFailed,
)
from devicehub.core.timeutil import utcnow
from devicehub.models import AuditEvent, Permission, Role, SessionState, User, UserSession
from devicehub.services import auth as auth_service
from devicehub.services import sessions
from devicehub.services.access import AuthorizedClaims
from devicehub.services.background import cleanup_expired_sessions
from devicehub.services.permission_cache import PermissionCache
from devicehub.services.permissions import resolve_permissions
from devicehub.services.tokens import SOURCE_COOKIE, permission_version_for, verify_access_token


@pytest.fixture
def cache(session: Session) -> PermissionCache:
    return PermissionCache(lambda user_id: resolve_permissions(session, user_id))


@pytest.fixture
def technician(make_role, make_user, organization) -> User:
    role = make_role("technician", ["device.read", "device.update"])
    return make_user("tech.login", roles=[role], organization_id=organization.id)


def test_login_issues_tokens_with_resolved_permissions(session: Session, cache, technician) -> None:
    version_before = permission_version_for(technician)

    result = auth_service.login(session, cache, "tech.login", "correct-horse", ip_address="10.1.1.1")

    assert result.permission_set.permissions == frozenset({"device.read", "device.update"})
    claims = verify_access_token(session, result.access_token)
    assert claims.session_id == result.session_id
    assert claims.permission_version == version_before
    session.refresh(technician)
    assert technician.last_login_at is not None
    assert permission_version_for(technician) == version_before
    entry = session.get(UserSession, result.session_id)
    assert entry.state() is SessionState.ACTIVE
    assert entry.ip_address == "10.1.1.1"


def test_login_with_wrong_password_is_audited(session: Session, cache, technician) -> None:
    with pytest.raises(Unauthenticated) as excinfo:
        auth_service.login(session, cache, "tech.login", "wrong")
    assert excinfo.value.code == "AUTH_INVALID_CREDENTIALS"

    event = session.exec(select(AuditEvent).where(AuditEvent.action == "auth.login_failed")).one()
    assert event.actor_id == technician.id
    assert "password" not in event.metadata_json


def test_legacy_hash_is_upgraded_on_login(session: Session, cache, make_user) -> None:
    user = make_user("old.timer")
    user.password_hash = hashlib.sha256(b"legacy-secret").hexdigest()
    session.add(user)
    session.commit()

    auth_service.login(session, cache, "old.timer", "legacy-secret")

    session.refresh(user)
    assert user.password_hash.startswith("$2")
    auth_service.authenticate_user(session, "old.timer", "legacy-secret")


def test_refresh_rotates_credential_within_the_same_session(session: Session, cache, technician) -> None:
    first = auth_service.login(session, cache, "tech.login", "correct-horse")

    second = auth_service.refresh(session, cache, first.refresh_token)

    assert second.session_id == first.session_id
    assert second.refresh_token != first.refresh_token
    with pytest.raises(Unauthenticated) as excinfo:
        auth_service.refresh(session, cache, first.refresh_token)
    assert excinfo.value.code == "AUTH_REFRESH_TOKEN_INVALID"


def test_refresh_after_logout_is_rejected(session: Session, cache, technician) -> None:
    result = auth_service.login(session, cache, "tech.login", "correct-horse")

    assert auth_service.logout(session, refresh_token=result.refresh_token)
    assert not auth_service.logout(session, refresh_token=result.refresh_token)

    with pytest.raises(Unauthenticated):
        auth_service.refresh(session, cache, result.refresh_token)


def test_change_password_revokes_other_sessions(session: Session, cache, technician) -> None:
    current = auth_service.login(session, cache, "tech.login", "correct-horse")
    other = auth_service.login(session, cache, "tech.login", "correct-horse")

    with pytest.raises(ValidationFailed):
        auth_service.change_password(session, technician.id, "correct-horse", "short")
    with pytest.raises(Unauthenticated):
        auth_service.change_password(session, technician.id, "nope", "new-long-password")

    revoked = auth_service.change_password(
        session, technician.id, "correct-horse", "new-long-password", keep_session_id=current.session_id
    )

    assert revoked == 1
    assert session.get(UserSession, other.session_id).revoke_reason == sessions.REASON_PASSWORD_CHANGED
    assert session.get(UserSession, current.session_id).state() is SessionState.ACTIVE
    verify_access_token(session, current.access_token)
    auth_service.authenticate_user(session, "tech.login", "new-long-password")


def test_terminating_foreign_session_needs_session_manage(
    session: Session, cache, technician, make_user, organization
) -> None:
    result = auth_service.login(session, cache, "tech.login", "correct-horse")
    peer = AuthorizedClaims(user_id=technician.id + 100, username="peer", organization_id=organization.id)
    manager = AuthorizedClaims(
        user_id=technician.id + 101,
        username="manager",
        organization_id=organization.id,
        permissions=frozenset({"session.manage"}),
    )

    with pytest.raises(InsufficientPermission):
        auth_service.terminate_session(session, peer, result.session_id)

    assert auth_service.terminate_session(session, manager, result.session_id)
    assert session.get(UserSession, result.session_id).revoke_reason == sessions.REASON_TERMINATED


def test_session_state_machine_and_cleanup(session: Session, make_user) -> None:
    user = make_user("sleepy")
    active, _ = sessions.create_session(session, user.id)
    stale, _ = sessions.create_session(session, user.id)
    stale.expires_at = utcnow() - timedelta(minutes=1)
    session.add(stale)
    session.commit()

    assert stale.state() is SessionState.EXPIRED
    assert not sessions.revoke_session(session, stale, sessions.REASON_LOGOUT)
    assert [entry.id for entry in sessions.list_active_sessions(session, user.id)] == [active.id]

    assert cleanup_expired_sessions(session) == 1
    session.refresh(stale)
    assert not stale.is_active
    assert stale.state() is SessionState.EXPIRED

    assert sessions.revoke_session(session, active, sessions.REASON_LOGOUT)
    assert active.state() is SessionState.REVOKED
    assert not sessions.revoke_session(session, active, sessions.REASON_LOGOUT)


def test_seed_data_is_idempotent_and_hides_bootstrap(session: Session) -> None:
    auth_service.ensure_seed_data(session)
    auth_service.ensure_seed_data(session)

    assert len(session.exec(select(Role).where(Role.name == "system-admin")).all()) == 1
    assert session.exec(select(Permission).where(Permission.name == "system.bootstrap")).one().is_system
    assert all(permission.is_system for permission in session.exec(select(Permission)).all())
    admin = session.exec(select(User).where(User.username == "admin")).one()
    resolved = resolve_permissions(session, admin.id)
    assert "system.admin" in resolved.permissions
    assert "permission.manage" in resolved.permissions
    assert "system.bootstrap" not in resolved.permissions
    assert resolved.roles == frozenset({"system-admin"})


def test_logout_all_revokes_every_session_and_moves_the_clock(session: Session, cache, technician) -> None:
    first = auth_service.login(session, cache, "tech.login", "correct-horse")
    second = auth_service.login(session, cache, "tech.login", "correct-horse")
    version_before = permission_version_for(technician)

    assert auth_service.logout_all(session, cache, technician.id) == 2

    for result in (first, second):
        assert session.get(UserSession, result.session_id).state() is SessionState.REVOKED
    session.refresh(technician)
    assert permission_version_for(technician) > version_before
    with pytest.raises(SessionInvalid):
        verify_access_token(session, first.access_token, source=SOURCE_COOKIE)
    past_grace = technician.updated_at + timedelta(seconds=settings.permission_staleness_grace_seconds + 1)
    with pytest.raises(PermissionsChanged):
        verify_access_token(session, second.access_token, now=past_grace)
    with pytest.raises(Unauthenticated):
        auth_service.refresh(session, cache, second.refresh_token)
    event = session.exec(select(AuditEvent).where(AuditEvent.action == "auth.logout_all")).one()
    assert event.metadata_json == {"revoked_sessions": 2}
