from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlmodel import Session

from devicehub.api.deps import get_db, require_permission
from devicehub.schemas import DeviceRead, VisibilityUpdate, VisibilityUpdateResponse
from devicehub.services import devices as device_service
from devicehub.services.access import AuthorizedClaims

router = APIRouter(prefix="/devices", tags=["devices"])


@router.get("/{device_id}", response_model=DeviceRead)
def get_device(
    device_id: int,
    session: Session = Depends(get_db),
    claims: AuthorizedClaims = Depends(require_permission("device.read")),
) -> DeviceRead:
    return DeviceRead.model_validate(device_service.get_device(session, claims, device_id))


@router.patch("/{device_id}/visibility", response_model=VisibilityUpdateResponse)
def update_visibility(
    device_id: int,
    payload: VisibilityUpdate,
    session: Session = Depends(get_db),
    claims: AuthorizedClaims = Depends(require_permission("device.update")),
) -> VisibilityUpdateResponse:
    device, warnings = device_service.change_visibility(
        session, claims, device_id, payload.visibility, payload.department_id
    )
    return VisibilityUpdateResponse(device=DeviceRead.model_validate(device), warnings=warnings)
