from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status
from sqlmodel import Session

from devicehub.api.deps import get_cache, get_db, require_permission, run_bounded
from devicehub.db.session import get_session
from devicehub.schemas import EffectivePermissionsRead, UserRoleAssign, UserRoleRead
from devicehub.services import roles as role_service
from devicehub.services.access import AuthorizedClaims
from devicehub.services.permission_cache import PermissionCache
from devicehub.services.permissions import PermissionSet

router = APIRouter(prefix="/users", tags=["users"])


def _effective_permissions(cache: PermissionCache, claims: AuthorizedClaims, user_id: int) -> PermissionSet:
    with get_session() as session:
        return role_service.effective_permissions(session, cache, claims, user_id)


@router.get("/{user_id}/permissions", response_model=EffectivePermissionsRead)
async def get_effective_permissions(
    user_id: int,
    cache: PermissionCache = Depends(get_cache),
    claims: AuthorizedClaims = Depends(require_permission("user.read")),
) -> EffectivePermissionsRead:
    permission_set = await run_bounded(_effective_permissions, cache, claims, user_id)
    return EffectivePermissionsRead(
        user_id=user_id,
        permissions=permission_set.sorted_permissions(),
        roles=permission_set.sorted_roles(),
    )


@router.post("/{user_id}/roles", response_model=UserRoleRead, status_code=status.HTTP_201_CREATED)
def assign_role(
    user_id: int,
    payload: UserRoleAssign,
    session: Session = Depends(get_db),
    cache: PermissionCache = Depends(get_cache),
    claims: AuthorizedClaims = Depends(require_permission("user.manage")),
) -> UserRoleRead:
    assignment = role_service.assign_role(
        session, cache, claims, user_id, payload.role_id, valid_until=payload.valid_until
    )
    return UserRoleRead.model_validate(assignment)


@router.delete("/{user_id}/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
def revoke_role(
    user_id: int,
    role_id: int,
    session: Session = Depends(get_db),
    cache: PermissionCache = Depends(get_cache),
    claims: AuthorizedClaims = Depends(require_permission("user.manage")),
) -> Response:
    role_service.revoke_role(session, cache, claims, user_id, role_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
