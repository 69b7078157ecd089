from __future__ import annotations


from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class LoginRequest(BaseModel):
    username: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    permissions: List[str] = []
    roles: List[str] = []


class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = None


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str


class ChangePasswordResponse(BaseModel):
    detail: str
    revoked_sessions: int


class LogoutAllResponse(BaseModel):
    detail: str
    revoked_sessions: int


class MeResponse(BaseModel):
    id: int
    username: str
    full_name: Optional[str] = None
    organization_id: Optional[int] = None
    department_id: Optional[int] = None
    permissions: List[str]
    roles: List[str]
    permission_version: int
    auth_source: str


class SessionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    current: bool = False
