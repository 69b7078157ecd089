"""Access token issuing and verification.

The token carries a snapshot of the user's permissions and roles together with
``permission_version``, the user's ``updated_at`` in epoch milliseconds at issue
time. Every role or permission mutation bumps ``updated_at`` of the affected
users. A token issued before the latest bump is stale once that bump is older
than the grace window, or once the clock has moved past the token by more than
the grace window. Stale tokens get their session revoked.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Tuple

import jwt
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from devicehub.core.config import settings
from devicehub.core.errors import (
    PermissionsChanged,
    ResolutionFailed,
    SessionInvalid,
    TokenExpired,
    TokenInvalid,
    Unauthenticated,
)
from devicehub.core.timeutil import to_epoch_millis, utcnow
from devicehub.models import SessionState, User, UserSession
from devicehub.services import security, sessions
from devicehub.services.access import AuthorizedClaims
from devicehub.services.permissions import PermissionSet, filter_hidden

logger = logging.getLogger(__name__)

SOURCE_BEARER = "bearer"
SOURCE_COOKIE = "cookie"


def permission_version_for(user: User) -> int:
    if user.updated_at is None:
        return 0
    return to_epoch_millis(user.updated_at)


def is_stale(token_version: int, current_version: int, grace_seconds: int, now: datetime) -> bool:
    if current_version <= token_version:
        return False
    grace_ms = grace_seconds * 1000
    if current_version > token_version + grace_ms:
        return True
    return to_epoch_millis(now) - current_version > grace_ms


def issue_access_token(user: User, permission_set: PermissionSet, session_id: str) -> Tuple[str, int]:
    """Sign an access token for ``user``. Returns the token and its lifetime in seconds."""
    claims = {
        "username": user.username,
        "full_name": user.full_name,
        "organization_id": user.organization_id,
        "department_id": user.department_id,
        "permissions": sorted(filter_hidden(permission_set.permissions)),
        "roles": permission_set.sorted_roles(),
        "permission_version": permission_version_for(user),
        "jti": session_id,
    }
    token, _ = security.create_access_token(str(user.id), claims)
    return token, settings.access_token_expire_minutes * 60


def decode_access_token(raw_token: str) -> dict:
    try:
        payload = security.decode_token(raw_token)
    except jwt.ExpiredSignatureError as exc:
        raise TokenExpired() from exc
    except jwt.InvalidTokenError as exc:
        raise TokenInvalid() from exc
    if payload.get("type") != security.ACCESS_TOKEN_TYPE:
        raise TokenInvalid("Token is not an access token")
    try:
        int(payload["sub"])
    except (KeyError, TypeError, ValueError) as exc:
        raise TokenInvalid("Invalid token payload") from exc
    return payload


def _check_cookie_session(session: Session, payload: dict) -> UserSession:
    session_id = payload.get("jti")
    if not session_id:
        raise TokenInvalid("Invalid token structure - missing session ID")
    entry = session.get(UserSession, session_id)
    if entry is None or entry.user_id != int(payload["sub"]):
        raise SessionInvalid()
    if entry.state() is not SessionState.ACTIVE:
        raise SessionInvalid()
    sessions.touch(session, entry)
    return entry


def verify_access_token(
    session: Session,
    raw_token: str,
    *,
    source: str = SOURCE_BEARER,
    grace_seconds: Optional[int] = None,
    now: Optional[datetime] = None,
) -> AuthorizedClaims:
    """Verify signature, expiry, session (cookie flow) and permission staleness."""
    payload = decode_access_token(raw_token)
    grace = settings.permission_staleness_grace_seconds if grace_seconds is None else grace_seconds
    now = now or utcnow()
    user_id = int(payload["sub"])

    try:
        if source == SOURCE_COOKIE:
            _check_cookie_session(session, payload)

        user = session.get(User, user_id)
        if user is None or not user.is_active:
            raise Unauthenticated("User not found or inactive", code="AUTH_USER_INACTIVE")

        token_version = int(payload.get("permission_version") or 0)
        current_version = permission_version_for(user)
        if is_stale(token_version, current_version, grace, now):
            session_id = payload.get("jti")
            if session_id:
                sessions.revoke_session_by_id(session, session_id, sessions.REASON_PERMISSIONS_CHANGED)
            logger.info(
                "Stale permissions for user %s (token version %s, current %s)",
                user_id,
                token_version,
                current_version,
            )
            raise PermissionsChanged()
    except SQLAlchemyError as exc:
        session.rollback()
        raise ResolutionFailed() from exc

    return AuthorizedClaims.from_payload(payload, source=source)
