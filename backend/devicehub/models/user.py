from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from devicehub.models.base import TimestampMixin


class User(TimestampMixin, SQLModel, table=True):
    __tablename__ = "users"

    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, unique=True, max_length=150)
    email: Optional[str] = Field(default=None, index=True, max_length=255)
    full_name: str = Field(default="", max_length=255)
    password_hash: str = Field(max_length=255)
    is_active: bool = Field(default=True)
    organization_id: Optional[int] = Field(default=None, foreign_key="organizations.id", index=True)
    department_id: Optional[int] = Field(default=None, foreign_key="departments.id", index=True)
    last_login_at: Optional[datetime] = Field(default=None)
