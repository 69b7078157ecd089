from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from devicehub.core.timeutil import utcnow
from devicehub.models.base import TimestampMixin


class AssignmentState(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


class Permission(TimestampMixin, SQLModel, table=True):
    __tablename__ = "permissions"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True, max_length=100)
    category: str = Field(default="general", max_length=50)
    resource: str = Field(max_length=50)
    action: str = Field(max_length=50)
    description: Optional[str] = Field(default=None, max_length=500)
    is_system: bool = Field(default=False)


class Role(TimestampMixin, SQLModel, table=True):
    __tablename__ = "roles"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, max_length=100)
    description: str = Field(default="", max_length=500)
    is_system_role: bool = Field(default=False)
    organization_id: Optional[int] = Field(default=None, foreign_key="organizations.id", index=True)
    is_active: bool = Field(default=True)


class RolePermission(SQLModel, table=True):
    __tablename__ = "role_permissions"

    role_id: int = Field(foreign_key="roles.id", primary_key=True)
    permission_id: int = Field(foreign_key="permissions.id", primary_key=True)
    granted_by: Optional[int] = Field(default=None, foreign_key="users.id")
    granted_at: datetime = Field(default_factory=utcnow)


class UserRole(SQLModel, table=True):
    __tablename__ = "user_roles"
    __table_args__ = (UniqueConstraint("user_id", "role_id", name="uq_user_roles_user_role"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="users.id", index=True)
    role_id: int = Field(foreign_key="roles.id", index=True)
    is_active: bool = Field(default=True)
    valid_until: Optional[datetime] = Field(default=None)
    assigned_by: Optional[int] = Field(default=None, foreign_key="users.id")
    assigned_at: datetime = Field(default_factory=utcnow)
    revoked_at: Optional[datetime] = Field(default=None)

    def state(self, now: Optional[datetime] = None) -> AssignmentState:
        now = now or utcnow()
        if not self.is_active:
            return AssignmentState.REVOKED
        if self.valid_until is not None and self.valid_until <= now:
            return AssignmentState.EXPIRED
        return AssignmentState.ACTIVE
