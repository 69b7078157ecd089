from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable, Iterable, Optional

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[3]
BACKEND_ROOT = PROJECT_ROOT / "backend"

if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from sqlalchemy import text  # noqa: E402
from sqlmodel import Session, select  # noqa: E402

from devicehub.db.session import engine, init_db  # noqa: E402
from devicehub.models import Organization, Permission, Role, RolePermission, User, UserRole  # noqa: E402
from devicehub.services.security import hash_password  # noqa: E402

TABLES = [
    "audit_events",
    "user_sessions",
    "user_roles",
    "role_permissions",
    "devices",
    "users",
    "roles",
    "permissions",
    "departments",
    "organizations",
]


def reset_database() -> None:
    init_db()
    with Session(engine) as session:
        for table in TABLES:
            session.exec(text(f"DELETE FROM {table}"))
        session.commit()


@pytest.fixture
def clean_db() -> None:
    reset_database()
    yield


@pytest.fixture
def session(clean_db) -> Session:
    with Session(engine) as db_session:
        yield db_session


@pytest.fixture
def organization(session: Session) -> Organization:
    org = Organization(name="Helsinki General")
    session.add(org)
    session.commit()
    session.refresh(org)
    return org


@pytest.fixture
def make_role(session: Session) -> Callable[..., Role]:
    def factory(
        name: str,
        permissions: Iterable[str] = (),
        *,
        organization_id: Optional[int] = None,
        is_system_role: bool = False,
    ) -> Role:
        role = Role(name=name, organization_id=organization_id, is_system_role=is_system_role)
        session.add(role)
        session.commit()
        session.refresh(role)
        for permission_name in permissions:
            permission = session.exec(select(Permission).where(Permission.name == permission_name)).first()
            if permission is None:
                resource, _, action = permission_name.partition(".")
                permission = Permission(
                    name=permission_name, category=resource, resource=resource, action=action or "use"
                )
                session.add(permission)
                session.commit()
                session.refresh(permission)
            session.add(RolePermission(role_id=role.id, permission_id=permission.id))
        session.commit()
        return role

    return factory


@pytest.fixture
def make_user(session: Session) -> Callable[..., User]:
    def factory(
        username: str,
        *,
        roles: Iterable[Role] = (),
        organization_id: Optional[int] = None,
        department_id: Optional[int] = None,
        password: str = "correct-horse",
    ) -> User:
        user = User(
            username=username,
            full_name=username.replace(".", " ").title(),
            password_hash=hash_password(password),
            organization_id=organization_id,
            department_id=department_id,
        )
        session.add(user)
        session.commit()
        session.refresh(user)
        for role in roles:
            session.add(UserRole(user_id=user.id, role_id=role.id))
        session.commit()
        return user

    return factory
