from __future__ import annotations

from typing import Any, Dict, List, Optional
from uuid import UUID

import logging
from sqlalchemy.orm import Session

from rundown.models import AccountabilityEvent

logger = logging.getLogger(__name__)


def record_event(
    db: Session,
    event_type: str,
    *,
    user_id: Optional[UUID] = None,
    contact_id: Optional[UUID] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> AccountabilityEvent:
    """
    Append an accountability event to the audit log.

    The row joins the caller's transaction: it is committed (or rolled back)
    together with the state change it describes. Payload must be bounded
    and must not contain message bodies or addresses.
    """
    ev = AccountabilityEvent(
        event_type=event_type,
        user_id=user_id,
        contact_id=contact_id,
        payload=payload or {},
    )
    db.add(ev)
    logger.debug(f"Audit event {event_type} user={user_id} contact={contact_id}")
    return ev


def list_events(
    db: Session,
    *,
    user_id: Optional[UUID] = None,
    event_type: Optional[str] = None,
    limit: int = 100,
) -> List[AccountabilityEvent]:
    q = db.query(AccountabilityEvent)
    if user_id is not None:
        q = q.filter(AccountabilityEvent.user_id == user_id)
    if event_type is not None:
        q = q.filter(AccountabilityEvent.event_type == event_type)
    return q.order_by(AccountabilityEvent.created_at.desc()).limit(limit).all()
