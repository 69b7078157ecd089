from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Response, status
from sqlmodel import Session

from devicehub.api.deps import get_cache, get_db, require_permission
from devicehub.schemas import PermissionCreate, PermissionRead
from devicehub.services import roles as role_service
from devicehub.services.access import AuthorizedClaims
from devicehub.services.permission_cache import PermissionCache

router = APIRouter(prefix="/permissions", tags=["permissions"])


@router.get("/", response_model=List[PermissionRead])
def list_permissions(
    session: Session = Depends(get_db),
    _: AuthorizedClaims = Depends(require_permission("permission.read")),
) -> List[PermissionRead]:
    return [PermissionRead.model_validate(item) for item in role_service.list_permissions(session)]


@router.post("/", response_model=PermissionRead, status_code=status.HTTP_201_CREATED)
def create_permission(
    payload: PermissionCreate,
    session: Session = Depends(get_db),
    claims: AuthorizedClaims = Depends(require_permission("permission.manage")),
) -> PermissionRead:
    permission = role_service.create_permission(
        session, claims, name=payload.name, category=payload.category, description=payload.description
    )
    return PermissionRead.model_validate(permission)


@router.delete("/{permission_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_permission(
    permission_id: int,
    force: bool = False,
    session: Session = Depends(get_db),
    cache: PermissionCache = Depends(get_cache),
    claims: AuthorizedClaims = Depends(require_permission("permission.manage")),
) -> Response:
    role_service.delete_permission(session, cache, claims, permission_id, force=force)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
