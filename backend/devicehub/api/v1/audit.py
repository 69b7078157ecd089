from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends
from sqlmodel import Session

from devicehub.api.deps import get_db, require_permission
from devicehub.schemas import AuditEventRead, Pagination
from devicehub.services import audit
from devicehub.services.access import AuthorizedClaims

router = APIRouter(prefix="/audit", tags=["audit"])


@router.get("/", response_model=Pagination[AuditEventRead])
def list_audit_events(
    page: int = 1,
    page_size: int = 25,
    resource_type: str | None = None,
    resource_id: str | None = None,
    actor_id: int | None = None,
    action: str | None = None,
    from_ts: datetime | None = None,
    to_ts: datetime | None = None,
    session: Session = Depends(get_db),
    _: AuthorizedClaims = Depends(require_permission("audit.read")),
) -> Pagination[AuditEventRead]:
    effective_page_size = min(page_size, 100)
    items, total = audit.query_events(
        session,
        resource_type=resource_type,
        resource_id=resource_id,
        actor_id=actor_id,
        action=action,
        from_ts=from_ts,
        to_ts=to_ts,
        page=max(page, 1),
        page_size=effective_page_size,
    )
    events = [AuditEventRead.model_validate(item) for item in items]
    return Pagination[AuditEventRead](items=events, page=page, page_size=effective_page_size, total=total)
