from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel

from devicehub.core.timeutil import utcnow


class SessionState(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


class UserSession(SQLModel, table=True):
    """Server-side record backing one refresh-token lineage.

    ``id`` is embedded in access tokens as the ``jti`` claim.
    """

    __tablename__ = "user_sessions"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True, max_length=36)
    user_id: int = Field(foreign_key="users.id", index=True)
    refresh_token_hash: str = Field(index=True, unique=True, max_length=64)
    expires_at: datetime
    is_active: bool = Field(default=True)
    last_activity: datetime = Field(default_factory=utcnow)
    revoked_at: Optional[datetime] = Field(default=None)
    revoke_reason: Optional[str] = Field(default=None, max_length=50)
    ip_address: Optional[str] = Field(default=None, max_length=64)
    user_agent: Optional[str] = Field(default=None, max_length=500)
    created_at: datetime = Field(default_factory=utcnow)

    def state(self, now: Optional[datetime] = None) -> SessionState:
        now = now or utcnow()
        if self.revoked_at is not None:
            return SessionState.REVOKED
        if self.expires_at <= now:
            return SessionState.EXPIRED
        if not self.is_active:
            return SessionState.REVOKED
        return SessionState.ACTIVE
