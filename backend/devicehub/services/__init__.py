from devicehub.services.access import (
    AccessDecision,
    AuthorizedClaims,
    DenyReason,
    ResourceScope,
    authorize,
    authorize_visibility,
    reconcile_visibility,
)
from devicehub.services.auth import AuthResult, authenticate_user, ensure_seed_data
from devicehub.services.container import AuthContainer
from devicehub.services.permission_cache import PermissionCache
from devicehub.services.permissions import PermissionSet, filter_hidden, resolve_permissions

__all__ = [
    "AccessDecision",
    "AuthContainer",
    "AuthResult",
    "AuthorizedClaims",
    "DenyReason",
    "PermissionCache",
    "PermissionSet",
    "ResourceScope",
    "authenticate_user",
    "authorize",
    "authorize_visibility",
    "ensure_seed_data",
    "filter_hidden",
    "reconcile_visibility",
    "resolve_permissions",
]
