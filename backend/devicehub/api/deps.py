from __future__ import annotations


import asyncio
import logging
from typing import Any, Callable, Optional, Tuple, TypeVar

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer

from devicehub.core.config import settings
from devicehub.core.errors import InsufficientPermission, InsufficientRole, ResolutionFailed, Unauthenticated
from devicehub.db.session import get_session
from devicehub.services import tokens
from devicehub.services.access import AuthorizedClaims, authorize
from devicehub.services.container import AuthContainer
from devicehub.services.permission_cache import PermissionCache

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login", auto_error=False)

T = TypeVar("T")


def get_db():
    with get_session() as session:
        yield session


def get_container(request: Request) -> AuthContainer:
    return request.app.state.auth


def get_cache(container: AuthContainer = Depends(get_container)) -> PermissionCache:
    return container.cache


async def run_bounded(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run blocking auth work on a worker thread with the auth query timeout."""
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(func, *args, **kwargs),
            timeout=settings.auth_query_timeout_seconds,
        )
    except asyncio.TimeoutError as exc:
        logger.error("Auth query %s timed out", getattr(func, "__name__", func))
        raise ResolutionFailed("Authentication backend timed out") from exc


def extract_access_token(request: Request, bearer_token: Optional[str]) -> Tuple[str, str]:
    if bearer_token:
        return bearer_token, tokens.SOURCE_BEARER
    cookie_token = request.cookies.get(settings.access_cookie_name)
    if cookie_token:
        return cookie_token, tokens.SOURCE_COOKIE
    raise Unauthenticated()


def _verify(raw_token: str, source: str) -> AuthorizedClaims:
    with get_session() as session:
        return tokens.verify_access_token(session, raw_token, source=source)


async def get_current_claims(
    request: Request, bearer_token: Optional[str] = Depends(oauth2_scheme)
) -> AuthorizedClaims:
    raw_token, source = extract_access_token(request, bearer_token)
    claims = await run_bounded(_verify, raw_token, source)
    request.state.claims = claims
    return claims


def require_permission(name: str) -> Callable[..., Any]:
    async def checker(claims: AuthorizedClaims = Depends(get_current_claims)) -> AuthorizedClaims:
        authorize(claims, name).raise_for_denial()
        return claims

    return checker


def require_any_permission(*names: str) -> Callable[..., Any]:
    async def checker(claims: AuthorizedClaims = Depends(get_current_claims)) -> AuthorizedClaims:
        if claims.is_system_admin() or claims.has_any_permission(names):
            return claims
        logger.info("Denied any of %s to user %s", names, claims.user_id)
        raise InsufficientPermission(
            f"Requires one of: {', '.join(names)}",
            required=",".join(names),
        )

    return checker


def require_role(name: str) -> Callable[..., Any]:
    async def checker(claims: AuthorizedClaims = Depends(get_current_claims)) -> AuthorizedClaims:
        if claims.is_system_admin() or claims.has_role(name):
            return claims
        logger.info("Denied role %s to user %s", name, claims.user_id)
        raise InsufficientRole(f"Role '{name}' required", required=name)

    return checker


CurrentClaims = Depends(get_current_claims)
