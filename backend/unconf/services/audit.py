from __future__ import annotations

from sqlalchemy.orm import Session

from unconf.models.activity_log import ActivityLog
from unconf.models.user import User


def log_activity(
    db: Session,
    *,
    user: User | None,
    action: str,
    entity_type: str | None = None,
    entity_id: str | int | None = None,
    schedule_version: int | None = None,
    details: dict | None = None,
) -> None:
    """Record a committed mutation. Joins the caller's transaction, so it rolls back with it."""
    record = ActivityLog(
        user_id=user.id if user is not None else None,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        schedule_version=schedule_version,
        details=details or {},
    )
    db.add(record)
