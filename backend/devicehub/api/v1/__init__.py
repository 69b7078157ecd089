from devicehub.api.v1 import audit, auth, devices, permissions, roles, users

__all__ = [
    "auth",
    "permissions",
    "roles",
    "users",
    "devices",
    "audit",
]
