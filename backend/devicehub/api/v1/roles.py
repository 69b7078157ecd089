from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Response, status
from sqlmodel import Session

from devicehub.api.deps import get_cache, get_db, require_permission
from devicehub.schemas import (
    PermissionRead,
    RoleCreate,
    RolePermissionsAssign,
    RolePermissionsAssigned,
    RolePermissionsReplace,
    RolePermissionsReplaced,
    RoleRead,
    RoleUpdate,
)
from devicehub.services import roles as role_service
from devicehub.services.access import AuthorizedClaims
from devicehub.services.permission_cache import PermissionCache

router = APIRouter(prefix="/roles", tags=["roles"])


@router.get("/", response_model=List[RoleRead])
def list_roles(
    session: Session = Depends(get_db),
    claims: AuthorizedClaims = Depends(require_permission("role.read")),
) -> List[RoleRead]:
    return [RoleRead.model_validate(role) for role in role_service.list_roles(session, claims)]


@router.post("/", response_model=RoleRead, status_code=status.HTTP_201_CREATED)
def create_role(
    payload: RoleCreate,
    session: Session = Depends(get_db),
    claims: AuthorizedClaims = Depends(require_permission("role.manage")),
) -> RoleRead:
    role = role_service.create_role(
        session,
        claims,
        name=payload.name,
        description=payload.description,
        organization_id=payload.organization_id,
        is_system_role=payload.is_system_role,
    )
    return RoleRead.model_validate(role)


@router.patch("/{role_id}", response_model=RoleRead)
def update_role(
    role_id: int,
    payload: RoleUpdate,
    session: Session = Depends(get_db),
    cache: PermissionCache = Depends(get_cache),
    claims: AuthorizedClaims = Depends(require_permission("role.manage")),
) -> RoleRead:
    role = role_service.update_role(
        session, cache, claims, role_id, name=payload.name, description=payload.description
    )
    return RoleRead.model_validate(role)


@router.delete("/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_role(
    role_id: int,
    session: Session = Depends(get_db),
    cache: PermissionCache = Depends(get_cache),
    claims: AuthorizedClaims = Depends(require_permission("role.manage")),
) -> Response:
    role_service.delete_role(session, cache, claims, role_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{role_id}/permissions", response_model=List[PermissionRead])
def list_role_permissions(
    role_id: int,
    session: Session = Depends(get_db),
    _: AuthorizedClaims = Depends(require_permission("role.read")),
) -> List[PermissionRead]:
    return [PermissionRead.model_validate(item) for item in role_service.list_role_permissions(session, role_id)]


@router.post("/{role_id}/permissions", response_model=RolePermissionsAssigned)
def assign_role_permissions(
    role_id: int,
    payload: RolePermissionsAssign,
    session: Session = Depends(get_db),
    cache: PermissionCache = Depends(get_cache),
    claims: AuthorizedClaims = Depends(require_permission("role.manage")),
) -> RolePermissionsAssigned:
    granted = role_service.assign_permissions(session, cache, claims, role_id, payload.permission_ids)
    return RolePermissionsAssigned(
        role_id=role_id,
        granted=[PermissionRead.model_validate(item) for item in granted],
    )


@router.delete("/{role_id}/permissions/{permission_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_role_permission(
    role_id: int,
    permission_id: int,
    session: Session = Depends(get_db),
    cache: PermissionCache = Depends(get_cache),
    claims: AuthorizedClaims = Depends(require_permission("role.manage")),
) -> Response:
    role_service.remove_permission(session, cache, claims, role_id, permission_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.put("/{role_id}/permissions", response_model=RolePermissionsReplaced)
def replace_role_permissions(
    role_id: int,
    payload: RolePermissionsReplace,
    session: Session = Depends(get_db),
    cache: PermissionCache = Depends(get_cache),
    claims: AuthorizedClaims = Depends(require_permission("role.manage")),
) -> RolePermissionsReplaced:
    permissions = role_service.replace_permissions(session, cache, claims, role_id, payload.permission_ids)
    return RolePermissionsReplaced(
        role_id=role_id,
        permissions=[PermissionRead.model_validate(item) for item in permissions],
    )
