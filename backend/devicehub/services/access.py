"""Allow/deny decisions over verified claims and a resource's tenant scope.

Decisions are computed from the permission snapshot carried by the access
token. Nothing here touches the database.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Type

from devicehub.core.config import settings
from devicehub.core.errors import (
    AccessDenied,
    DepartmentMismatch,
    InsufficientPermission,
    OrganizationMismatch,
    VisibilityRestricted,
)
from devicehub.models import DeviceVisibility

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthorizedClaims:
    user_id: int
    username: str
    organization_id: Optional[int] = None
    department_id: Optional[int] = None
    permissions: FrozenSet[str] = field(default_factory=frozenset)
    roles: FrozenSet[str] = field(default_factory=frozenset)
    permission_version: int = 0
    session_id: Optional[str] = None
    source: str = "bearer"
    full_name: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], *, source: str) -> "AuthorizedClaims":
        return cls(
            user_id=int(payload["sub"]),
            username=payload.get("username", ""),
            full_name=payload.get("full_name"),
            organization_id=payload.get("organization_id"),
            department_id=payload.get("department_id"),
            permissions=frozenset(payload.get("permissions") or []),
            roles=frozenset(payload.get("roles") or []),
            permission_version=int(payload.get("permission_version") or 0),
            session_id=payload.get("jti"),
            source=source,
        )

    def has_permission(self, name: str) -> bool:
        return name in self.permissions

    def has_any_permission(self, names: Iterable[str]) -> bool:
        return any(name in self.permissions for name in names)

    def has_role(self, name: str) -> bool:
        return name in self.roles

    def is_system_admin(self) -> bool:
        return settings.system_admin_permission in self.permissions

    def can_cross_departments(self) -> bool:
        return self.has_any_permission(settings.cross_department_permissions)


@dataclass(frozen=True)
class ResourceScope:
    organization_id: Optional[int] = None
    department_id: Optional[int] = None


class DenyReason(str, Enum):
    INSUFFICIENT_PERMISSION = "insufficient_permission"
    ORGANIZATION_MISMATCH = "organization_mismatch"
    DEPARTMENT_MISMATCH = "department_mismatch"
    VISIBILITY_RESTRICTED = "visibility_restricted"


_DENIAL_ERRORS: Dict[DenyReason, Type[AccessDenied]] = {
    DenyReason.INSUFFICIENT_PERMISSION: InsufficientPermission,
    DenyReason.ORGANIZATION_MISMATCH: OrganizationMismatch,
    DenyReason.DEPARTMENT_MISMATCH: DepartmentMismatch,
    DenyReason.VISIBILITY_RESTRICTED: VisibilityRestricted,
}


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: Optional[DenyReason] = None
    required: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def allow(cls) -> "AccessDecision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: DenyReason, required: Optional[str], message: str) -> "AccessDecision":
        return cls(allowed=False, reason=reason, required=required, message=message)

    def raise_for_denial(self) -> None:
        if self.allowed or self.reason is None:
            return
        raise _DENIAL_ERRORS[self.reason](self.message, required=self.required)


def _check_permission_and_organization(
    claims: AuthorizedClaims, required_permission: str, scope: ResourceScope
) -> Optional[AccessDecision]:
    if not claims.has_permission(required_permission):
        return AccessDecision.deny(
            DenyReason.INSUFFICIENT_PERMISSION,
            required_permission,
            f"Missing permission '{required_permission}'",
        )
    if scope.organization_id is not None and scope.organization_id != claims.organization_id:
        return AccessDecision.deny(
            DenyReason.ORGANIZATION_MISMATCH,
            f"organization:{scope.organization_id}",
            "Resource belongs to a different organization",
        )
    return None


def authorize(
    claims: AuthorizedClaims,
    required_permission: str,
    scope: Optional[ResourceScope] = None,
) -> AccessDecision:
    """Evaluate the four ordered access rules.

    1. system admin bypass, 2. exact permission match, 3. organization match,
    4. department match unless the caller holds a cross-department permission.
    """
    scope = scope or ResourceScope()
    if claims.is_system_admin():
        return AccessDecision.allow()

    denied = _check_permission_and_organization(claims, required_permission, scope)
    if denied is not None:
        logger.info("Denied %s to user %s: %s", required_permission, claims.user_id, denied.reason.value)
        return denied

    if (
        scope.department_id is not None
        and claims.department_id is not None
        and claims.department_id != scope.department_id
        and not claims.can_cross_departments()
    ):
        logger.info("Denied %s to user %s: department mismatch", required_permission, claims.user_id)
        return AccessDecision.deny(
            DenyReason.DEPARTMENT_MISMATCH,
            f"department:{scope.department_id}",
            "Resource belongs to a different department",
        )
    return AccessDecision.allow()


def authorize_visibility(
    claims: AuthorizedClaims,
    required_permission: str,
    scope: ResourceScope,
    visibility: str,
) -> AccessDecision:
    """Access check for resources carrying a public/department/private tier."""
    if claims.is_system_admin():
        return AccessDecision.allow()

    denied = _check_permission_and_organization(claims, required_permission, scope)
    if denied is not None:
        return denied

    tier = DeviceVisibility(visibility)
    if tier is DeviceVisibility.PUBLIC:
        return AccessDecision.allow()
    if tier is DeviceVisibility.PRIVATE:
        return AccessDecision.deny(
            DenyReason.VISIBILITY_RESTRICTED,
            settings.system_admin_permission,
            "Private resources are only visible to system administrators",
        )
    if scope.department_id is None or scope.department_id == claims.department_id:
        return AccessDecision.allow()
    if claims.can_cross_departments():
        return AccessDecision.allow()
    return AccessDecision.deny(
        DenyReason.DEPARTMENT_MISMATCH,
        f"department:{scope.department_id}",
        "Resource is restricted to another department",
    )


@dataclass
class VisibilityCheck:
    visibility: str
    department_id: Optional[int]
    warnings: List[str] = field(default_factory=list)


def reconcile_visibility(visibility: str, department_id: Optional[int]) -> VisibilityCheck:
    """Write-time consistency between a visibility tier and a department link."""
    tier = DeviceVisibility(visibility)
    result = VisibilityCheck(visibility=tier.value, department_id=department_id)
    if tier is DeviceVisibility.PRIVATE and department_id is not None:
        result.department_id = None
        result.warnings.append("Department assignment removed because device visibility is private")
    if tier is DeviceVisibility.DEPARTMENT and department_id is None:
        result.warnings.append("Device has department visibility but no department assignment")
    return result
