from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from sqlmodel import Session

from devicehub.core.errors import InsufficientPermission, NotFoundError
from devicehub.core.timeutil import utcnow
from devicehub.models import Device, DeviceVisibility
from devicehub.services import audit
from devicehub.services.access import AuthorizedClaims, ResourceScope, authorize, authorize_visibility, reconcile_visibility

logger = logging.getLogger(__name__)

PUBLIC_VISIBILITY_PERMISSIONS = ("device.manage", "organization.admin")


def _load(session: Session, device_id: int) -> Device:
    device = session.get(Device, device_id)
    if device is None:
        raise NotFoundError("Device not found")
    return device


def get_device(session: Session, claims: AuthorizedClaims, device_id: int) -> Device:
    device = _load(session, device_id)
    scope = ResourceScope(organization_id=device.organization_id, department_id=device.department_id)
    authorize_visibility(claims, "device.read", scope, device.visibility).raise_for_denial()
    return device


def change_visibility(
    session: Session,
    claims: AuthorizedClaims,
    device_id: int,
    visibility: DeviceVisibility,
    department_id: Optional[int] = None,
) -> Tuple[Device, List[str]]:
    """Set the visibility tier; returns the device and any consistency warnings."""
    device = _load(session, device_id)
    scope = ResourceScope(organization_id=device.organization_id, department_id=device.department_id)
    authorize(claims, "device.update", scope).raise_for_denial()
    if (
        visibility is DeviceVisibility.PUBLIC
        and not claims.is_system_admin()
        and not claims.has_any_permission(PUBLIC_VISIBILITY_PERMISSIONS)
    ):
        raise InsufficientPermission(
            "Making a device public requires device management permission",
            required=PUBLIC_VISIBILITY_PERMISSIONS[0],
        )

    target_department = department_id if department_id is not None else device.department_id
    check = reconcile_visibility(visibility.value, target_department)
    previous = device.visibility
    device.visibility = check.visibility
    device.department_id = check.department_id
    device.updated_at = utcnow()
    session.add(device)
    session.commit()
    session.refresh(device)

    for warning in check.warnings:
        logger.warning("Device %s: %s", device.id, warning)
    audit.notify(
        session,
        actor_id=claims.user_id,
        action="device.visibility_changed",
        resource_type="device",
        resource_id=device.id,
        metadata={"from": previous, "to": device.visibility, "warnings": check.warnings},
    )
    return device, check.warnings
