from __future__ import annotations

from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel

from devicehub.models.base import TimestampMixin


class DeviceVisibility(str, Enum):
    PUBLIC = "public"
    DEPARTMENT = "department"
    PRIVATE = "private"


class Device(TimestampMixin, SQLModel, table=True):
    __tablename__ = "devices"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(max_length=255)
    serial_number: str = Field(index=True, unique=True, max_length=100)
    organization_id: int = Field(foreign_key="organizations.id", index=True)
    department_id: Optional[int] = Field(default=None, foreign_key="departments.id", index=True)
    visibility: str = Field(default=DeviceVisibility.DEPARTMENT.value, max_length=20)
