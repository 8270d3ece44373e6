from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from models.loan_models import AuditEvent


def log_audit(
    db: Session,
    entity_type: str,
    entity_id: int | str,
    action: str,
    details: dict[str, Any] | None = None,
    actor_id: int | None = None,
    occurred_at: datetime | None = None,
) -> AuditEvent:
    event = AuditEvent(
        EntityType=entity_type,
        EntityID=str(entity_id),
        Action=action,
        Details=details,
        ActorUserID=actor_id,
        OccurredAt=occurred_at or datetime.now(),
    )
    db.add(event)
    return event
