from __future__ import annotations

from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    project_name: str = "DeviceHub Backend"
    database_url: str = Field(
        default="sqlite:///./devicehub.db",
        description="SQLModel compatible database URI",
    )
    log_level: str = "INFO"

    jwt_secret_key: str = Field(default="change-me", description="JWT signing secret")
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 30
    refresh_token_expire_minutes: int = 60 * 24 * 7  # 7 days

    permission_cache_ttl_seconds: int = 5 * 60
    permission_cache_sweep_interval_seconds: int = 60
    # A token issued before the user's last permission change stays usable for
    # at most this long after the change. Shorter windows force more re-logins,
    # longer windows keep revoked access alive for longer.
    permission_staleness_grace_seconds: int = 5 * 60
    auth_query_timeout_seconds: float = 5.0
    session_cleanup_interval_seconds: int = 60 * 30  # every 30 minutes

    access_cookie_name: str = "access_token"
    refresh_cookie_name: str = "refresh_token"
    cookie_secure: bool = False
    cookie_samesite: str = "lax"

    system_admin_permission: str = "system.admin"
    hidden_permissions: List[str] = Field(
        default_factory=lambda: ["system.bootstrap", "system.root"],
        description="Reserved permission names that are never listed or assignable",
    )
    cross_department_permissions: List[str] = Field(
        default_factory=lambda: ["device.manage", "organization.admin", "department.manage"],
    )
    password_min_length: int = 8

    first_superuser: str = "admin"
    first_superuser_password: str = "admin12345"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
