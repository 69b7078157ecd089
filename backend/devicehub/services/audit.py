from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, func, select

from devicehub.core.timeutil import utcnow
from devicehub.models import AuditEvent

logger = logging.getLogger(__name__)

SECRET_METADATA_KEYS = frozenset({"password", "new_password", "current_password", "token", "access_token", "refresh_token"})


def _redact(metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not metadata:
        return {}
    return {key: ("***" if key in SECRET_METADATA_KEYS else value) for key, value in metadata.items()}


def record_event(
    session: Session,
    *,
    actor_id: Optional[int],
    action: str,
    resource_type: str,
    resource_id: Optional[str],
    metadata: Optional[Dict[str, Any]] = None,
    context: Optional[Dict[str, Any]] = None,
) -> AuditEvent:
    event = AuditEvent(
        actor_id=actor_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        metadata_json=_redact(metadata),
        context=context or {},
        timestamp=utcnow(),
    )
    session.add(event)
    return event


def notify(
    session: Session,
    *,
    actor_id: Optional[int],
    action: str,
    resource_type: str,
    resource_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    context: Optional[Dict[str, Any]] = None,
) -> Optional[AuditEvent]:
    """Record and commit an audit event; failures are logged, never raised.

    Call only after the business change has been committed so a rollback here
    cannot undo it.
    """
    try:
        event = record_event(
            session,
            actor_id=actor_id,
            action=action,
            resource_type=resource_type,
            resource_id=str(resource_id) if resource_id is not None else None,
            metadata=metadata,
            context=context,
        )
        session.commit()
        return event
    except SQLAlchemyError as exc:
        session.rollback()
        logger.warning("Audit event %s could not be recorded: %s", action, exc.__class__.__name__)
        return None


def query_events(
    session: Session,
    *,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    actor_id: Optional[int] = None,
    action: Optional[str] = None,
    from_ts: Optional[datetime] = None,
    to_ts: Optional[datetime] = None,
    page: int = 1,
    page_size: int = 25,
) -> Tuple[Iterable[AuditEvent], int]:
    statement = select(AuditEvent)
    count_stmt = select(func.count()).select_from(AuditEvent)

    def apply_filters(stmt):
        if resource_type:
            stmt = stmt.where(AuditEvent.resource_type == resource_type)
        if resource_id:
            stmt = stmt.where(AuditEvent.resource_id == resource_id)
        if actor_id:
            stmt = stmt.where(AuditEvent.actor_id == actor_id)
        if action:
            stmt = stmt.where(AuditEvent.action == action)
        if from_ts:
            stmt = stmt.where(AuditEvent.timestamp >= from_ts)
        if to_ts:
            stmt = stmt.where(AuditEvent.timestamp <= to_ts)
        return stmt

    statement = apply_filters(statement).order_by(AuditEvent.timestamp.desc())
    count_stmt = apply_filters(count_stmt)

    total = session.exec(count_stmt).one()
    items = session.exec(
        statement.offset((page - 1) * page_size).limit(page_size)
    ).all()
    return items, total
