"""Role, role-permission and user-role administration.

Every mutation commits first, then bumps ``updated_at`` of the affected users
(the permission clock read by token verification) and invalidates their
cached permission sets.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from sqlmodel import Session, select

from devicehub.core.config import settings
from devicehub.core.errors import (
    ConflictError,
    InsufficientPermission,
    NotFoundError,
    OrganizationMismatch,
    ValidationFailed,
)
from devicehub.core.timeutil import utcnow
from devicehub.models import AssignmentState, Permission, Role, RolePermission, User, UserRole
from devicehub.services import audit
from devicehub.services.access import AuthorizedClaims
from devicehub.services.permission_cache import PermissionCache
from devicehub.services.permissions import (
    PermissionSet,
    ensure_assignable,
    filter_hidden_permissions,
    is_hidden_permission,
)

logger = logging.getLogger(__name__)

PERMISSION_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*\.[a-z][a-z0-9_-]*$")


def touch_users(session: Session, user_ids: Iterable[int]) -> None:
    ids = set(user_ids)
    if not ids:
        return
    now = utcnow()
    for user in session.exec(select(User).where(User.id.in_(ids))).all():
        user.updated_at = now
        session.add(user)
    session.commit()


def role_holders(session: Session, role_id: int) -> List[int]:
    rows = session.exec(
        select(UserRole.user_id).where(UserRole.role_id == role_id, UserRole.is_active == True)  # noqa: E712
    ).all()
    return sorted(set(rows))


def invalidate_by_role(session: Session, cache: PermissionCache, role_id: int) -> List[int]:
    """Bump and invalidate every current holder of ``role_id``."""
    holders = role_holders(session, role_id)
    touch_users(session, holders)
    cache.invalidate_many(holders)
    logger.info("Permissions of role %s changed; %d holder(s) invalidated", role_id, len(holders))
    return holders


def invalidate_user(session: Session, cache: PermissionCache, user_id: int) -> None:
    touch_users(session, [user_id])
    cache.invalidate(user_id)


def list_permissions(session: Session) -> List[Permission]:
    permissions = session.exec(select(Permission).order_by(Permission.category, Permission.name)).all()
    return filter_hidden_permissions(permissions)


def get_role(session: Session, role_id: int) -> Role:
    role = session.get(Role, role_id)
    if role is None or not role.is_active:
        raise NotFoundError("Role not found")
    return role


def list_roles(session: Session, actor: AuthorizedClaims) -> List[Role]:
    statement = select(Role).where(Role.is_active == True).order_by(Role.name)  # noqa: E712
    roles = session.exec(statement).all()
    if actor.is_system_admin():
        return list(roles)
    return [role for role in roles if role.organization_id in (None, actor.organization_id)]


def list_role_permissions(session: Session, role_id: int) -> List[Permission]:
    get_role(session, role_id)
    permissions = session.exec(
        select(Permission)
        .join(RolePermission, RolePermission.permission_id == Permission.id)
        .where(RolePermission.role_id == role_id)
        .order_by(Permission.name)
    ).all()
    return filter_hidden_permissions(permissions)


def _require_system_admin(actor: AuthorizedClaims, message: str) -> None:
    if not actor.is_system_admin():
        raise InsufficientPermission(message, required=settings.system_admin_permission)


def ensure_can_manage_role(actor: AuthorizedClaims, role: Role) -> None:
    if actor.is_system_admin():
        return
    if role.is_system_role:
        _require_system_admin(actor, "Only system administrators can modify system roles")
    if role.organization_id is None:
        _require_system_admin(actor, "Only system administrators can modify global roles")
    if role.organization_id != actor.organization_id:
        raise OrganizationMismatch(required=f"organization:{role.organization_id}")


def _ensure_role_name_free(
    session: Session, name: str, organization_id: Optional[int], exclude_id: Optional[int] = None
) -> None:
    scope_filter = (
        Role.organization_id.is_(None) if organization_id is None else Role.organization_id == organization_id
    )
    statement = select(Role).where(Role.name == name, Role.is_active == True, scope_filter)  # noqa: E712
    if exclude_id is not None:
        statement = statement.where(Role.id != exclude_id)
    if session.exec(statement).first() is not None:
        raise ConflictError(f"Role '{name}' already exists", code="ROLE_NAME_TAKEN")


def create_role(
    session: Session,
    actor: AuthorizedClaims,
    *,
    name: str,
    description: str = "",
    organization_id: Optional[int] = None,
    is_system_role: bool = False,
) -> Role:
    if not actor.is_system_admin():
        if is_system_role:
            _require_system_admin(actor, "Only system administrators can create system roles")
        if organization_id is None:
            organization_id = actor.organization_id
        if organization_id != actor.organization_id:
            raise OrganizationMismatch(required=f"organization:{organization_id}")

    _ensure_role_name_free(session, name, organization_id)

    role = Role(
        name=name,
        description=description,
        organization_id=organization_id,
        is_system_role=is_system_role,
    )
    session.add(role)
    session.commit()
    session.refresh(role)
    audit.notify(
        session,
        actor_id=actor.user_id,
        action="role.created",
        resource_type="role",
        resource_id=role.id,
        metadata={"name": name, "organization_id": organization_id},
    )
    return role


def update_role(
    session: Session,
    cache: PermissionCache,
    actor: AuthorizedClaims,
    role_id: int,
    *,
    name: Optional[str] = None,
    description: Optional[str] = None,
) -> Role:
    """Rename or re-describe a role. A rename reaches the holders' tokens through the permission clock."""
    role = get_role(session, role_id)
    ensure_can_manage_role(actor, role)
    changes = {}
    if name is not None and name != role.name:
        if role.is_system_role:
            raise ConflictError("System roles cannot be renamed", code="ROLE_SYSTEM_PROTECTED")
        _ensure_role_name_free(session, name, role.organization_id, exclude_id=role.id)
        changes["name"] = {"old": role.name, "new": name}
        role.name = name
    if description is not None and description != role.description:
        changes["description"] = {"old": role.description, "new": description}
        role.description = description
    if not changes:
        return role

    session.add(role)
    session.commit()
    session.refresh(role)
    if "name" in changes:
        invalidate_by_role(session, cache, role_id)
    audit.notify(
        session,
        actor_id=actor.user_id,
        action="role.updated",
        resource_type="role",
        resource_id=role_id,
        metadata=changes,
    )
    return role


def delete_role(session: Session, cache: PermissionCache, actor: AuthorizedClaims, role_id: int) -> None:
    role = get_role(session, role_id)
    if role.is_system_role:
        raise ConflictError("System roles cannot be deleted", code="ROLE_SYSTEM_PROTECTED")
    ensure_can_manage_role(actor, role)
    holders = role_holders(session, role_id)
    if holders:
        raise ConflictError(
            f"Role is assigned to {len(holders)} user(s)",
            code="ROLE_IN_USE",
        )

    role.is_active = False
    session.add(role)
    session.commit()
    invalidate_by_role(session, cache, role_id)
    audit.notify(
        session,
        actor_id=actor.user_id,
        action="role.deleted",
        resource_type="role",
        resource_id=role_id,
        metadata={"name": role.name},
    )


def assign_permissions(
    session: Session,
    cache: PermissionCache,
    actor: AuthorizedClaims,
    role_id: int,
    permission_ids: Sequence[int],
) -> List[Permission]:
    """Grant permissions to a role. Returns the permissions that were newly granted."""
    role = get_role(session, role_id)
    ensure_can_manage_role(actor, role)
    if not permission_ids:
        raise ValidationFailed("No permissions given")

    permissions = session.exec(select(Permission).where(Permission.id.in_(set(permission_ids)))).all()
    found = {permission.id for permission in permissions}
    missing = sorted(set(permission_ids) - found)
    if missing:
        raise NotFoundError(f"Permissions not found: {missing}")

    # Validate the whole batch before writing anything.
    for permission in permissions:
        ensure_assignable(permission.name)
        if permission.name == settings.system_admin_permission:
            _require_system_admin(actor, "Only system administrators can grant system administration")

    existing = set(
        session.exec(select(RolePermission.permission_id).where(RolePermission.role_id == role_id)).all()
    )
    granted = [permission for permission in permissions if permission.id not in existing]
    for permission in granted:
        session.add(RolePermission(role_id=role_id, permission_id=permission.id, granted_by=actor.user_id))
    session.commit()

    invalidate_by_role(session, cache, role_id)
    audit.notify(
        session,
        actor_id=actor.user_id,
        action="role.permissions_assigned",
        resource_type="role",
        resource_id=role_id,
        metadata={"permissions": sorted(permission.name for permission in granted)},
    )
    return sorted(granted, key=lambda permission: permission.name)


def remove_permission(
    session: Session,
    cache: PermissionCache,
    actor: AuthorizedClaims,
    role_id: int,
    permission_id: int,
) -> None:
    role = get_role(session, role_id)
    ensure_can_manage_role(actor, role)
    permission = session.get(Permission, permission_id)
    if permission is None or is_hidden_permission(permission.name):
        raise NotFoundError("Permission not found")
    link = session.get(RolePermission, (role_id, permission_id))
    if link is None:
        raise NotFoundError("Permission is not granted to this role")

    session.delete(link)
    session.commit()
    invalidate_by_role(session, cache, role_id)
    audit.notify(
        session,
        actor_id=actor.user_id,
        action="role.permission_removed",
        resource_type="role",
        resource_id=role_id,
        metadata={"permission": permission.name},
    )


def replace_permissions(
    session: Session,
    cache: PermissionCache,
    actor: AuthorizedClaims,
    role_id: int,
    permission_ids: Sequence[int],
) -> List[Permission]:
    """Make the visible permission set of a role exactly ``permission_ids``.

    Hidden grants already on the role are left alone. An empty list clears the
    role. Returns the visible permissions of the role afterwards.
    """
    role = get_role(session, role_id)
    ensure_can_manage_role(actor, role)

    wanted_ids = set(permission_ids)
    wanted: List[Permission] = []
    if wanted_ids:
        wanted = list(session.exec(select(Permission).where(Permission.id.in_(wanted_ids))).all())
    missing = sorted(wanted_ids - {permission.id for permission in wanted})
    if missing:
        raise NotFoundError(f"Permissions not found: {missing}")
    for permission in wanted:
        ensure_assignable(permission.name)

    current = {permission.id: permission for permission in list_role_permissions(session, role_id)}
    added = [permission for permission in wanted if permission.id not in current]
    removed = [permission for permission_id, permission in current.items() if permission_id not in wanted_ids]
    if settings.system_admin_permission in {permission.name for permission in added + removed}:
        _require_system_admin(actor, "Only system administrators can grant or withdraw system administration")
    if not added and not removed:
        return sorted(wanted, key=lambda permission: permission.name)

    for permission in removed:
        link = session.get(RolePermission, (role_id, permission.id))
        if link is not None:
            session.delete(link)
    for permission in added:
        session.add(RolePermission(role_id=role_id, permission_id=permission.id, granted_by=actor.user_id))
    session.commit()

    invalidate_by_role(session, cache, role_id)
    audit.notify(
        session,
        actor_id=actor.user_id,
        action="role.permissions_replaced",
        resource_type="role",
        resource_id=role_id,
        metadata={
            "added": sorted(permission.name for permission in added),
            "removed": sorted(permission.name for permission in removed),
        },
    )
    return sorted(wanted, key=lambda permission: permission.name)


def create_permission(
    session: Session,
    actor: AuthorizedClaims,
    *,
    name: str,
    category: Optional[str] = None,
    description: Optional[str] = None,
) -> Permission:
    if not PERMISSION_NAME_PATTERN.match(name):
        raise ValidationFailed("Permission names take the form resource.action", code="PERMISSION_NAME_INVALID")
    ensure_assignable(name)
    if session.exec(select(Permission).where(Permission.name == name)).first() is not None:
        raise ConflictError(f"Permission '{name}' already exists", code="PERMISSION_NAME_TAKEN")

    resource, action = name.split(".", 1)
    permission = Permission(
        name=name,
        category=category or resource,
        resource=resource,
        action=action,
        description=description,
    )
    session.add(permission)
    session.commit()
    session.refresh(permission)
    audit.notify(
        session,
        actor_id=actor.user_id,
        action="permission.created",
        resource_type="permission",
        resource_id=permission.id,
        metadata={"name": name},
    )
    return permission


def delete_permission(
    session: Session,
    cache: PermissionCache,
    actor: AuthorizedClaims,
    permission_id: int,
    *,
    force: bool = False,
) -> None:
    """Delete a custom permission. Built-in permissions are protected.

    A permission still granted to roles is only deleted with ``force``; the
    grants go with it and every holder of those roles is invalidated.
    """
    permission = session.get(Permission, permission_id)
    if permission is None or is_hidden_permission(permission.name):
        raise NotFoundError("Permission not found")
    if permission.is_system:
        raise ConflictError("System permissions cannot be deleted", code="PERMISSION_SYSTEM_PROTECTED")
    links = session.exec(select(RolePermission).where(RolePermission.permission_id == permission_id)).all()
    role_ids = sorted({link.role_id for link in links})
    if role_ids and not force:
        raise ConflictError(f"Permission is granted to {len(role_ids)} role(s)", code="PERMISSION_IN_USE")

    name = permission.name
    for link in links:
        session.delete(link)
    session.flush()
    session.delete(permission)
    session.commit()

    for role_id in role_ids:
        invalidate_by_role(session, cache, role_id)
    audit.notify(
        session,
        actor_id=actor.user_id,
        action="permission.deleted",
        resource_type="permission",
        resource_id=permission_id,
        metadata={"name": name, "roles": role_ids},
    )


def _get_user(session: Session, user_id: int) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


def _ensure_can_manage_assignment(actor: AuthorizedClaims, user: User, role: Role) -> None:
    if actor.is_system_admin():
        return
    if user.organization_id != actor.organization_id:
        raise OrganizationMismatch(required=f"organization:{user.organization_id}")
    if role.is_system_role:
        _require_system_admin(actor, "Only system administrators can assign system roles")
    if role.organization_id is not None and role.organization_id != actor.organization_id:
        raise OrganizationMismatch(required=f"organization:{role.organization_id}")


def assign_role(
    session: Session,
    cache: PermissionCache,
    actor: AuthorizedClaims,
    user_id: int,
    role_id: int,
    *,
    valid_until: Optional[datetime] = None,
) -> UserRole:
    user = _get_user(session, user_id)
    role = get_role(session, role_id)
    _ensure_can_manage_assignment(actor, user, role)
    if role.organization_id is not None and role.organization_id != user.organization_id:
        raise ConflictError("Role belongs to a different organization than the user", code="ROLE_ORGANIZATION_MISMATCH")
    now = utcnow()
    if valid_until is not None and valid_until <= now:
        raise ValidationFailed("valid_until must be in the future")

    assignment = session.exec(
        select(UserRole).where(UserRole.user_id == user_id, UserRole.role_id == role_id)
    ).first()
    if assignment is not None and assignment.state(now) is AssignmentState.ACTIVE:
        raise ConflictError("Role already assigned to user", code="ROLE_ALREADY_ASSIGNED")
    if assignment is None:
        assignment = UserRole(user_id=user_id, role_id=role_id)
    assignment.is_active = True
    assignment.valid_until = valid_until
    assignment.assigned_by = actor.user_id
    assignment.assigned_at = now
    assignment.revoked_at = None
    session.add(assignment)
    session.commit()
    session.refresh(assignment)

    invalidate_user(session, cache, user_id)
    audit.notify(
        session,
        actor_id=actor.user_id,
        action="user.role_assigned",
        resource_type="user",
        resource_id=user_id,
        metadata={"role": role.name, "valid_until": valid_until.isoformat() if valid_until else None},
    )
    return assignment


def revoke_role(
    session: Session,
    cache: PermissionCache,
    actor: AuthorizedClaims,
    user_id: int,
    role_id: int,
) -> UserRole:
    user = _get_user(session, user_id)
    role = session.get(Role, role_id)
    if role is None:
        raise NotFoundError("Role not found")
    _ensure_can_manage_assignment(actor, user, role)
    assignment = session.exec(
        select(UserRole).where(
            UserRole.user_id == user_id,
            UserRole.role_id == role_id,
            UserRole.is_active == True,  # noqa: E712
        )
    ).first()
    if assignment is None:
        raise NotFoundError("Role assignment not found")

    assignment.is_active = False
    assignment.revoked_at = utcnow()
    session.add(assignment)
    session.commit()
    session.refresh(assignment)

    invalidate_user(session, cache, user_id)
    audit.notify(
        session,
        actor_id=actor.user_id,
        action="user.role_revoked",
        resource_type="user",
        resource_id=user_id,
        metadata={"role": role.name},
    )
    return assignment


def effective_permissions(
    session: Session, cache: PermissionCache, actor: AuthorizedClaims, user_id: int
) -> PermissionSet:
    user = _get_user(session, user_id)
    if not actor.is_system_admin() and user.organization_id != actor.organization_id:
        raise OrganizationMismatch(required=f"organization:{user.organization_id}")
    return cache.get(user_id)
