"""Permission resolution over the user -> role -> permission graph.

Hidden permissions are reserved names (bootstrap/internal capabilities) that
must never be listed, embedded in a token or assigned through the API. Every
edge that serializes or assigns permissions goes through :func:`filter_hidden`
or :func:`ensure_assignable`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import FrozenSet, Iterable, List, Optional, Sequence

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from devicehub.core.config import settings
from devicehub.core.errors import HiddenPermissionError, NotFoundError, ResolutionFailed
from devicehub.core.timeutil import utcnow
from devicehub.models import Permission, Role, RolePermission, User, UserRole

logger = logging.getLogger(__name__)


def hidden_permission_names() -> FrozenSet[str]:
    return frozenset(settings.hidden_permissions)


def is_hidden_permission(name: str) -> bool:
    return name in hidden_permission_names()


def filter_hidden(permissions: Iterable[str]) -> FrozenSet[str]:
    hidden = hidden_permission_names()
    return frozenset(name for name in permissions if name not in hidden)


def filter_hidden_permissions(permissions: Sequence[Permission]) -> List[Permission]:
    visible = filter_hidden(permission.name for permission in permissions)
    return [permission for permission in permissions if permission.name in visible]


def ensure_assignable(name: str) -> None:
    if is_hidden_permission(name):
        raise HiddenPermissionError(
            f"Permission '{name}' cannot be assigned via API",
            required=name,
        )


@dataclass(frozen=True)
class PermissionSet:
    permissions: FrozenSet[str] = field(default_factory=frozenset)
    roles: FrozenSet[str] = field(default_factory=frozenset)

    def sorted_permissions(self) -> List[str]:
        return sorted(self.permissions)

    def sorted_roles(self) -> List[str]:
        return sorted(self.roles)

    @property
    def is_empty(self) -> bool:
        return not self.permissions and not self.roles


def in_effect_assignments(user_id: int, now: Optional[datetime] = None):
    """Select statement for the role assignments of a user that are in effect."""
    now = now or utcnow()
    return select(UserRole).where(
        UserRole.user_id == user_id,
        UserRole.is_active == True,  # noqa: E712
        or_(UserRole.valid_until.is_(None), UserRole.valid_until > now),
    )


def resolve_permissions(session: Session, user_id: int, now: Optional[datetime] = None) -> PermissionSet:
    """Flatten the in-effect roles of ``user_id`` into permission and role names."""
    now = now or utcnow()
    try:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")

        role_rows = session.exec(
            select(Role.id, Role.name)
            .join(UserRole, UserRole.role_id == Role.id)
            .where(
                UserRole.user_id == user_id,
                UserRole.is_active == True,  # noqa: E712
                or_(UserRole.valid_until.is_(None), UserRole.valid_until > now),
                Role.is_active == True,  # noqa: E712
            )
        ).all()
        role_ids = {role_id for role_id, _ in role_rows}
        role_names = frozenset(name for _, name in role_rows)

        permission_names: FrozenSet[str] = frozenset()
        if role_ids:
            names = session.exec(
                select(Permission.name)
                .join(RolePermission, RolePermission.permission_id == Permission.id)
                .where(RolePermission.role_id.in_(role_ids))
            ).all()
            permission_names = frozenset(names)
    except SQLAlchemyError as exc:
        logger.error("Permission resolution failed for user %s: %s", user_id, exc.__class__.__name__)
        raise ResolutionFailed() from exc

    return PermissionSet(permissions=filter_hidden(permission_names), roles=role_names)
