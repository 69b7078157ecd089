from __future__ import annotations

from typing import List, Optional, Tuple

from fastapi import APIRouter, Depends, Request, Response, status
from sqlmodel import Session

from devicehub.api.deps import CurrentClaims, get_cache, get_db, oauth2_scheme, run_bounded
from devicehub.core.config import settings
from devicehub.core.errors import AuthError, Unauthenticated
from devicehub.db.session import get_session
from devicehub.schemas import (
    ChangePasswordRequest,
    ChangePasswordResponse,
    LoginRequest,
    LogoutAllResponse,
    MeResponse,
    RefreshRequest,
    SessionRead,
    TokenResponse,
)
from devicehub.services import auth as auth_service
from devicehub.services import sessions, tokens
from devicehub.services.access import AuthorizedClaims
from devicehub.services.auth import AuthResult
from devicehub.services.permission_cache import PermissionCache

router = APIRouter(prefix="/auth", tags=["auth"])


def _set_auth_cookies(response: Response, result: AuthResult) -> None:
    options = {"httponly": True, "secure": settings.cookie_secure, "samesite": settings.cookie_samesite, "path": "/"}
    response.set_cookie(settings.access_cookie_name, result.access_token, max_age=result.expires_in, **options)
    response.set_cookie(
        settings.refresh_cookie_name,
        result.refresh_token,
        max_age=settings.refresh_token_expire_minutes * 60,
        **options,
    )


def _clear_auth_cookies(response: Response) -> None:
    response.delete_cookie(settings.access_cookie_name, path="/")
    response.delete_cookie(settings.refresh_cookie_name, path="/")


def _token_response(result: AuthResult) -> TokenResponse:
    return TokenResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        token_type="bearer",
        expires_in=result.expires_in,
        permissions=result.permission_set.sorted_permissions(),
        roles=result.permission_set.sorted_roles(),
    )


def _client(request: Request) -> Tuple[Optional[str], Optional[str]]:
    return (request.client.host if request.client else None, request.headers.get("user-agent"))


def _extract_refresh_token(request: Request, payload: Optional[RefreshRequest]) -> Tuple[str, bool]:
    """Body first, then ``Authorization: Bearer``, then the cookie. The flag marks the cookie flow."""
    if payload is not None and payload.refresh_token:
        return payload.refresh_token, False
    header = request.headers.get("authorization", "")
    scheme, _, credential = header.partition(" ")
    if scheme.lower() == "bearer" and credential.strip():
        return credential.strip(), False
    cookie_token = request.cookies.get(settings.refresh_cookie_name)
    if cookie_token:
        return cookie_token, True
    raise Unauthenticated("Refresh token required", code="AUTH_REFRESH_TOKEN_REQUIRED")


def _login(cache: PermissionCache, payload: LoginRequest, ip_address: Optional[str], user_agent: Optional[str]) -> AuthResult:
    with get_session() as session:
        return auth_service.login(
            session, cache, payload.username, payload.password, ip_address=ip_address, user_agent=user_agent
        )


def _refresh(cache: PermissionCache, refresh_token: str) -> AuthResult:
    with get_session() as session:
        return auth_service.refresh(session, cache, refresh_token)


def _logout(refresh_token: Optional[str], session_id: Optional[str]) -> bool:
    with get_session() as session:
        return auth_service.logout(session, refresh_token=refresh_token, session_id=session_id)


@router.post("/login", response_model=TokenResponse)
async def login(
    payload: LoginRequest,
    request: Request,
    response: Response,
    cache: PermissionCache = Depends(get_cache),
) -> TokenResponse:
    ip_address, user_agent = _client(request)
    result = await run_bounded(_login, cache, payload, ip_address, user_agent)
    _set_auth_cookies(response, result)
    return _token_response(result)


@router.post("/refresh", response_model=TokenResponse)
async def refresh(
    request: Request,
    response: Response,
    payload: Optional[RefreshRequest] = None,
    cache: PermissionCache = Depends(get_cache),
) -> TokenResponse:
    refresh_token, from_cookie = _extract_refresh_token(request, payload)
    result = await run_bounded(_refresh, cache, refresh_token)
    if from_cookie:
        _set_auth_cookies(response, result)
    return _token_response(result)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(
    request: Request,
    payload: Optional[RefreshRequest] = None,
    bearer_token: Optional[str] = Depends(oauth2_scheme),
) -> Response:
    refresh_token = payload.refresh_token if payload is not None else None
    refresh_token = refresh_token or request.cookies.get(settings.refresh_cookie_name)

    session_id = None
    access_token = bearer_token or request.cookies.get(settings.access_cookie_name)
    if access_token:
        try:
            session_id = tokens.decode_access_token(access_token).get("jti")
        except AuthError:
            session_id = None

    if refresh_token or session_id:
        await run_bounded(_logout, refresh_token, session_id)
    response = Response(status_code=status.HTTP_204_NO_CONTENT)
    _clear_auth_cookies(response)
    return response


@router.post("/logout-all", response_model=LogoutAllResponse)
def logout_all(
    response: Response,
    session: Session = Depends(get_db),
    cache: PermissionCache = Depends(get_cache),
    claims: AuthorizedClaims = CurrentClaims,
) -> LogoutAllResponse:
    revoked = auth_service.logout_all(session, cache, claims.user_id)
    _clear_auth_cookies(response)
    return LogoutAllResponse(detail="Logged out of all sessions", revoked_sessions=revoked)


@router.get("/me", response_model=MeResponse)
def me(claims: AuthorizedClaims = CurrentClaims) -> MeResponse:
    return MeResponse(
        id=claims.user_id,
        username=claims.username,
        full_name=claims.full_name,
        organization_id=claims.organization_id,
        department_id=claims.department_id,
        permissions=sorted(claims.permissions),
        roles=sorted(claims.roles),
        permission_version=claims.permission_version,
        auth_source=claims.source,
    )


@router.post("/change-password", response_model=ChangePasswordResponse)
def change_password(
    payload: ChangePasswordRequest,
    session: Session = Depends(get_db),
    claims: AuthorizedClaims = CurrentClaims,
) -> ChangePasswordResponse:
    revoked = auth_service.change_password(
        session,
        claims.user_id,
        payload.current_password,
        payload.new_password,
        keep_session_id=claims.session_id,
    )
    return ChangePasswordResponse(detail="Password changed", revoked_sessions=revoked)


@router.get("/sessions", response_model=List[SessionRead])
def list_sessions(
    session: Session = Depends(get_db),
    claims: AuthorizedClaims = CurrentClaims,
) -> List[SessionRead]:
    entries = sessions.list_active_sessions(session, claims.user_id)
    return [
        SessionRead.model_validate(entry).model_copy(update={"current": entry.id == claims.session_id})
        for entry in entries
    ]


@router.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
def terminate_session(
    session_id: str,
    session: Session = Depends(get_db),
    claims: AuthorizedClaims = CurrentClaims,
) -> Response:
    auth_service.terminate_session(session, claims, session_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
