from devicehub.models.audit import AuditEvent
from devicehub.models.device import Device, DeviceVisibility
from devicehub.models.organization import Department, Organization
from devicehub.models.rbac import AssignmentState, Permission, Role, RolePermission, UserRole
from devicehub.models.session import SessionState, UserSession
from devicehub.models.user import User
