"""Exception taxonomy shared by the auth core and the HTTP layer."""

from __future__ import annotations

from typing import Any, Dict, Optional


class DeviceHubError(Exception):
    """Base error carrying an HTTP status and a stable error code."""

    status_code: int = 400
    code: str = "ERROR"
    message: str = "Request failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        code: Optional[str] = None,
        required: Optional[str] = None,
    ) -> None:
        self.message = message or self.message
        self.code = code or self.code
        self.required = required
        super().__init__(self.message)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"detail": self.message, "code": self.code}
        if self.required is not None:
            payload["required"] = self.required
        return payload


class AuthError(DeviceHubError):
    status_code = 401
    code = "AUTH_REQUIRED"
    message = "Authentication required"


class Unauthenticated(AuthError):
    pass


class TokenExpired(AuthError):
    code = "AUTH_TOKEN_EXPIRED"
    message = "Access token expired"


class TokenInvalid(AuthError):
    code = "AUTH_TOKEN_INVALID"
    message = "Invalid token"


class SessionInvalid(AuthError):
    code = "AUTH_SESSION_INVALID"
    message = "Session expired or invalid, please refresh"


class PermissionsChanged(AuthError):
    code = "AUTH_PERMISSIONS_CHANGED"
    message = "Your permissions have changed, please log in again"


class ResolutionFailed(AuthError):
    code = "AUTH_RESOLUTION_FAILED"
    message = "Could not resolve permissions"


class AccessDenied(DeviceHubError):
    status_code = 403
    code = "AUTH_FORBIDDEN"
    message = "Insufficient permissions"


class InsufficientPermission(AccessDenied):
    pass


class InsufficientRole(AccessDenied):
    code = "AUTH_ROLE_REQUIRED"
    message = "Insufficient role"


class OrganizationMismatch(AccessDenied):
    code = "AUTH_ORGANIZATION_MISMATCH"
    message = "Resource belongs to a different organization"


class DepartmentMismatch(AccessDenied):
    code = "AUTH_DEPARTMENT_MISMATCH"
    message = "Resource belongs to a different department"


class VisibilityRestricted(AccessDenied):
    code = "AUTH_VISIBILITY_RESTRICTED"
    message = "Resource is private"


class HiddenPermissionError(AccessDenied):
    code = "PERMISSION_NOT_ASSIGNABLE"
    message = "Permission cannot be assigned"


class NotFoundError(DeviceHubError):
    status_code = 404
    code = "NOT_FOUND"
    message = "Resource not found"


class ConflictError(DeviceHubError):
    status_code = 409
    code = "CONFLICT"
    message = "Resource conflict"


class ValidationFailed(DeviceHubError):
    status_code = 400
    code = "VALIDATION_FAILED"
    message = "Invalid request"
