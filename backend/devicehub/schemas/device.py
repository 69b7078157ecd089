from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from devicehub.models import DeviceVisibility


class DeviceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    serial_number: str
    organization_id: int
    department_id: Optional[int] = None
    visibility: DeviceVisibility


class VisibilityUpdate(BaseModel):
    visibility: DeviceVisibility
    department_id: Optional[int] = None


class VisibilityUpdateResponse(BaseModel):
    device: DeviceRead
    warnings: List[str] = []
