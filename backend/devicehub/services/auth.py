from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from sqlalchemy import or_, update
from sqlmodel import Session, select

from devicehub.core.config import settings
from devicehub.core.errors import (
    InsufficientPermission,
    NotFoundError,
    OrganizationMismatch,
    Unauthenticated,
    ValidationFailed,
)
from devicehub.core.timeutil import utcnow
from devicehub.models import Organization, Permission, Role, RolePermission, SessionState, User, UserRole, UserSession
from devicehub.services import audit, roles, security, sessions, tokens
from devicehub.services.access import AuthorizedClaims
from devicehub.services.permission_cache import PermissionCache
from devicehub.services.permissions import PermissionSet

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = "AUTH_INVALID_CREDENTIALS"
INVALID_REFRESH_TOKEN = "AUTH_REFRESH_TOKEN_INVALID"
SESSION_MANAGE_PERMISSION = "session.manage"


@dataclass
class AuthResult:
    access_token: str
    refresh_token: str
    expires_in: int
    session_id: str
    user: User
    permission_set: PermissionSet


def get_user_by_login(session: Session, login: str) -> Optional[User]:
    statement = select(User).where(or_(User.username == login, User.email == login))
    return session.exec(statement).first()


def _update_credentials(session: Session, user: User, **values: object) -> None:
    # Credential writes leave updated_at (the permission clock) untouched.
    values["updated_at"] = User.updated_at
    session.connection().execute(update(User).where(User.id == user.id).values(**values))
    session.commit()
    session.refresh(user)


def _record_login(session: Session, user: User, new_password_hash: Optional[str] = None) -> None:
    values: Dict[str, object] = {"last_login_at": utcnow()}
    if new_password_hash is not None:
        values["password_hash"] = new_password_hash
    _update_credentials(session, user, **values)


def authenticate_user(
    session: Session, login: str, password: str, context: Optional[Dict[str, object]] = None
) -> User:
    user = get_user_by_login(session, login)
    if not user or not user.is_active or not security.verify_password(password, user.password_hash):
        audit.notify(
            session,
            actor_id=user.id if user else None,
            action="auth.login_failed",
            resource_type="auth",
            metadata={"username": login},
            context=context,
        )
        raise Unauthenticated("Invalid credentials", code=INVALID_CREDENTIALS)

    upgraded_hash = security.hash_password(password) if security.is_legacy_hash(user.password_hash) else None
    if upgraded_hash:
        logger.info("Upgrading legacy password hash for user %s", user.id)
    _record_login(session, user, upgraded_hash)
    return user


def login(
    session: Session,
    cache: PermissionCache,
    username: str,
    password: str,
    *,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> AuthResult:
    context = {"ip": ip_address, "user_agent": user_agent}
    user = authenticate_user(session, username, password, context)
    permission_set = cache.get(user.id)
    entry, refresh_token = sessions.create_session(
        session, user.id, ip_address=ip_address, user_agent=user_agent
    )
    access_token, expires_in = tokens.issue_access_token(user, permission_set, entry.id)
    audit.notify(
        session,
        actor_id=user.id,
        action="auth.login",
        resource_type="session",
        resource_id=entry.id,
        metadata={"username": user.username},
        context=context,
    )
    return AuthResult(access_token, refresh_token, expires_in, entry.id, user, permission_set)


def refresh(session: Session, cache: PermissionCache, refresh_token: str) -> AuthResult:
    entry = sessions.find_by_refresh_token(session, refresh_token)
    if entry is None or entry.state() is not SessionState.ACTIVE:
        raise Unauthenticated("Invalid or expired refresh token", code=INVALID_REFRESH_TOKEN)
    user = session.get(User, entry.user_id)
    if user is None or not user.is_active:
        sessions.revoke_session(session, entry, sessions.REASON_TERMINATED)
        raise Unauthenticated("User not found or inactive", code="AUTH_USER_INACTIVE")

    permission_set = cache.get(user.id)
    new_refresh = sessions.rotate_refresh_token(session, entry)
    access_token, expires_in = tokens.issue_access_token(user, permission_set, entry.id)
    return AuthResult(access_token, new_refresh, expires_in, entry.id, user, permission_set)


def logout(
    session: Session,
    *,
    refresh_token: Optional[str] = None,
    session_id: Optional[str] = None,
    actor_id: Optional[int] = None,
) -> bool:
    entry: Optional[UserSession] = None
    if refresh_token:
        entry = sessions.find_by_refresh_token(session, refresh_token)
    if entry is None and session_id:
        entry = session.get(UserSession, session_id)
    if entry is None:
        return False
    revoked = sessions.revoke_session(session, entry, sessions.REASON_LOGOUT)
    audit.notify(
        session,
        actor_id=actor_id or entry.user_id,
        action="auth.logout",
        resource_type="session",
        resource_id=entry.id,
    )
    return revoked


def logout_all(session: Session, cache: PermissionCache, user_id: int) -> int:
    """Revoke every session of the user and move its permission clock on.

    Bearer tokens never consult the session row, so the clock bump is what
    retires them once the staleness grace window has passed.
    """
    revoked = sessions.revoke_all_user_sessions(session, user_id, sessions.REASON_LOGOUT)
    roles.invalidate_user(session, cache, user_id)
    audit.notify(
        session,
        actor_id=user_id,
        action="auth.logout_all",
        resource_type="user",
        resource_id=str(user_id),
        metadata={"revoked_sessions": revoked},
    )
    return revoked


def terminate_session(session: Session, actor: AuthorizedClaims, session_id: str) -> bool:
    entry = session.get(UserSession, session_id)
    if entry is None:
        raise NotFoundError("Session not found")
    if entry.user_id != actor.user_id and not actor.is_system_admin():
        if not actor.has_permission(SESSION_MANAGE_PERMISSION):
            raise InsufficientPermission(
                "Cannot terminate another user's session", required=SESSION_MANAGE_PERMISSION
            )
        owner = session.get(User, entry.user_id)
        if owner is None or owner.organization_id != actor.organization_id:
            raise OrganizationMismatch(required=f"organization:{owner.organization_id if owner else None}")
    revoked = sessions.revoke_session(session, entry, sessions.REASON_TERMINATED)
    audit.notify(
        session,
        actor_id=actor.user_id,
        action="session.revoked",
        resource_type="session",
        resource_id=entry.id,
        metadata={"user_id": entry.user_id},
    )
    return revoked


def change_password(
    session: Session,
    user_id: int,
    current_password: str,
    new_password: str,
    *,
    keep_session_id: Optional[str] = None,
) -> int:
    """Replace the password and revoke every other session. Returns the revoked count."""
    user = session.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")
    if len(new_password) < settings.password_min_length:
        raise ValidationFailed(
            f"Password must be at least {settings.password_min_length} characters",
            code="AUTH_PASSWORD_TOO_SHORT",
        )
    if not security.verify_password(current_password, user.password_hash):
        audit.notify(session, actor_id=user_id, action="auth.password_change_failed", resource_type="auth")
        raise Unauthenticated("Current password is incorrect", code="AUTH_INVALID_PASSWORD")

    _update_credentials(session, user, password_hash=security.hash_password(new_password))
    revoked = sessions.revoke_all_user_sessions(
        session, user_id, sessions.REASON_PASSWORD_CHANGED, except_session_id=keep_session_id
    )
    audit.notify(
        session,
        actor_id=user_id,
        action="auth.password_changed",
        resource_type="user",
        resource_id=str(user_id),
        metadata={"revoked_sessions": revoked},
    )
    return revoked


PERMISSION_CATALOGUE = {
    "device.read": ("device", "View devices"),
    "device.create": ("device", "Register devices"),
    "device.update": ("device", "Update devices"),
    "device.delete": ("device", "Delete devices"),
    "device.manage": ("device", "Manage devices across departments"),
    "organization.read": ("organization", "View organization"),
    "organization.admin": ("organization", "Administer organization"),
    "department.read": ("department", "View departments"),
    "department.manage": ("department", "Manage departments"),
    "user.read": ("user", "View users"),
    "user.manage": ("user", "Manage users and role assignments"),
    "role.read": ("role", "View roles"),
    "role.manage": ("role", "Manage roles and role permissions"),
    "permission.read": ("permission", "View permissions"),
    "permission.manage": ("permission", "Create and delete custom permissions"),
    "session.manage": ("session", "Terminate sessions of other users"),
    "audit.read": ("audit", "Read audit trail"),
    "system.admin": ("system", "Full system administration"),
    "system.bootstrap": ("system", "Internal bootstrap capability"),
}

ROLE_CATALOGUE = {
    "system-admin": {
        "description": "System administrator",
        "is_system_role": True,
        "permissions": list(PERMISSION_CATALOGUE),
    },
    "org-admin": {
        "description": "Organization administrator",
        "is_system_role": False,
        "permissions": [
            "device.read",
            "device.create",
            "device.update",
            "device.delete",
            "device.manage",
            "organization.read",
            "organization.admin",
            "department.read",
            "department.manage",
            "user.read",
            "user.manage",
            "role.read",
            "role.manage",
            "permission.read",
            "session.manage",
            "audit.read",
        ],
    },
    "dept-manager": {
        "description": "Department manager",
        "is_system_role": False,
        "permissions": ["device.read", "device.update", "device.manage", "department.read", "user.read"],
    },
    "technician": {
        "description": "Maintenance technician",
        "is_system_role": False,
        "permissions": ["device.read", "device.update"],
    },
    "viewer": {
        "description": "Read-only access",
        "is_system_role": False,
        "permissions": ["device.read"],
    },
}

DEFAULT_ORGANIZATION = "Default Organization"


def ensure_seed_data(session: Session) -> None:
    """Create the permission catalogue, built-in roles and the first superuser."""
    organization = session.exec(select(Organization).where(Organization.name == DEFAULT_ORGANIZATION)).first()
    if organization is None:
        organization = Organization(name=DEFAULT_ORGANIZATION)
        session.add(organization)
        session.commit()
        session.refresh(organization)

    permissions: Dict[str, Permission] = {}
    for name, (category, description) in PERMISSION_CATALOGUE.items():
        permission = session.exec(select(Permission).where(Permission.name == name)).first()
        if permission is None:
            resource, action = name.split(".", 1)
            permission = Permission(
                name=name,
                category=category,
                resource=resource,
                action=action,
                description=description,
                is_system=True,
            )
            session.add(permission)
            session.commit()
            session.refresh(permission)
        permissions[name] = permission

    for role_name, data in ROLE_CATALOGUE.items():
        role = session.exec(
            select(Role).where(Role.name == role_name, Role.organization_id.is_(None))
        ).first()
        if role is not None:
            continue
        role = Role(
            name=role_name,
            description=data["description"],
            is_system_role=data["is_system_role"],
        )
        session.add(role)
        session.commit()
        session.refresh(role)
        for permission_name in data["permissions"]:
            session.add(RolePermission(role_id=role.id, permission_id=permissions[permission_name].id))
        session.commit()

    admin_user = session.exec(select(User).where(User.username == settings.first_superuser)).first()
    if admin_user is None:
        admin_user = User(
            username=settings.first_superuser,
            password_hash=security.hash_password(settings.first_superuser_password),
            full_name="System Administrator",
            organization_id=organization.id,
        )
        session.add(admin_user)
        session.commit()
        session.refresh(admin_user)
        admin_role = session.exec(select(Role).where(Role.name == "system-admin")).one()
        session.add(UserRole(user_id=admin_user.id, role_id=admin_role.id))
        session.commit()
