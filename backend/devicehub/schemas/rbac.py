from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class PermissionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    category: str
    resource: str
    action: str
    description: Optional[str] = None


class PermissionCreate(BaseModel):
    name: str = Field(min_length=3, max_length=100)
    category: Optional[str] = Field(default=None, max_length=50)
    description: Optional[str] = Field(default=None, max_length=500)


class RoleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: str
    is_system_role: bool
    organization_id: Optional[int] = None


class RoleCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: str = Field(default="", max_length=500)
    organization_id: Optional[int] = None
    is_system_role: bool = False


class RoleUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)


class RolePermissionsAssign(BaseModel):
    permission_ids: List[int] = Field(min_length=1)


class RolePermissionsAssigned(BaseModel):
    role_id: int
    granted: List[PermissionRead]


class RolePermissionsReplace(BaseModel):
    permission_ids: List[int]


class RolePermissionsReplaced(BaseModel):
    role_id: int
    permissions: List[PermissionRead]


class UserRoleAssign(BaseModel):
    role_id: int
    valid_until: Optional[datetime] = None


class UserRoleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    role_id: int
    is_active: bool
    valid_until: Optional[datetime] = None
    assigned_by: Optional[int] = None
    assigned_at: datetime
    revoked_at: Optional[datetime] = None


class EffectivePermissionsRead(BaseModel):
    user_id: int
    permissions: List[str]
    roles: List[str]
