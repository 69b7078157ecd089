from devicehub.schemas.audit import AuditEventRead
from devicehub.schemas.auth import (
    ChangePasswordRequest,
    ChangePasswordResponse,
    LoginRequest,
    LogoutAllResponse,
    MeResponse,
    RefreshRequest,
    SessionRead,
    TokenResponse,
)
from devicehub.schemas.common import Pagination
from devicehub.schemas.device import DeviceRead, VisibilityUpdate, VisibilityUpdateResponse
from devicehub.schemas.rbac import (
    EffectivePermissionsRead,
    PermissionCreate,
    PermissionRead,
    RoleCreate,
    RolePermissionsAssign,
    RolePermissionsAssigned,
    RolePermissionsReplace,
    RolePermissionsReplaced,
    RoleRead,
    RoleUpdate,
    UserRoleAssign,
    UserRoleRead,
)
