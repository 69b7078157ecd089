from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlmodel import Session, select

from devicehub.core.config import settings
from devicehub.core.timeutil import utcnow
from devicehub.models import SessionState, UserSession
from devicehub.services import security

logger = logging.getLogger(__name__)

REASON_LOGOUT = "logout"
REASON_TERMINATED = "terminated"
REASON_PERMISSIONS_CHANGED = "permissions_changed"
REASON_PASSWORD_CHANGED = "password_changed"


def create_session(
    session: Session,
    user_id: int,
    *,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Tuple[UserSession, str]:
    """Persist a new session and return it with its plain refresh credential."""
    refresh_token = security.generate_refresh_token()
    now = utcnow()
    entry = UserSession(
        user_id=user_id,
        refresh_token_hash=security.hash_refresh_token(refresh_token),
        expires_at=now + timedelta(minutes=settings.refresh_token_expire_minutes),
        last_activity=now,
        ip_address=ip_address,
        user_agent=(user_agent or "")[:500] or None,
        created_at=now,
    )
    session.add(entry)
    session.commit()
    session.refresh(entry)
    return entry, refresh_token


def find_by_refresh_token(session: Session, refresh_token: str) -> Optional[UserSession]:
    token_hash = security.hash_refresh_token(refresh_token)
    return session.exec(select(UserSession).where(UserSession.refresh_token_hash == token_hash)).first()


def rotate_refresh_token(session: Session, entry: UserSession) -> str:
    """Issue the next refresh credential of the lineage; the old one stops working."""
    refresh_token = security.generate_refresh_token()
    entry.refresh_token_hash = security.hash_refresh_token(refresh_token)
    entry.last_activity = utcnow()
    session.add(entry)
    session.commit()
    session.refresh(entry)
    return refresh_token


def touch(session: Session, entry: UserSession, now: Optional[datetime] = None) -> None:
    entry.last_activity = now or utcnow()
    session.add(entry)
    session.commit()


def revoke_session(session: Session, entry: UserSession, reason: str) -> bool:
    """Move an active session to REVOKED. Terminal sessions are left untouched."""
    if entry.state() is not SessionState.ACTIVE:
        return False
    now = utcnow()
    entry.is_active = False
    entry.revoked_at = now
    entry.revoke_reason = reason
    entry.last_activity = now
    session.add(entry)
    session.commit()
    logger.info("Session %s of user %s revoked (%s)", entry.id, entry.user_id, reason)
    return True


def revoke_session_by_id(session: Session, session_id: str, reason: str) -> bool:
    entry = session.get(UserSession, session_id)
    if entry is None:
        return False
    return revoke_session(session, entry, reason)


def revoke_all_user_sessions(
    session: Session, user_id: int, reason: str, *, except_session_id: Optional[str] = None
) -> int:
    revoked = 0
    for entry in list_active_sessions(session, user_id):
        if entry.id == except_session_id:
            continue
        if revoke_session(session, entry, reason):
            revoked += 1
    return revoked


def list_active_sessions(session: Session, user_id: int) -> List[UserSession]:
    now = utcnow()
    return list(
        session.exec(
            select(UserSession)
            .where(
                UserSession.user_id == user_id,
                UserSession.is_active == True,  # noqa: E712
                UserSession.revoked_at.is_(None),
                UserSession.expires_at > now,
            )
            .order_by(UserSession.last_activity.desc())
        ).all()
    )
