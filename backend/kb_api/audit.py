from datetime import datetime, timezone

from sqlalchemy import func
from sqlalchemy.orm import Session

from . import models


def log_action(
    db: Session,
    user_id: int,
    action: str,
    target_type: str | None = None,
    target_id: int | None = None,
    details: dict | None = None,
    commit: bool = True,
):
    """Record an audit entry.

    Mutations that must land atomically with the entry pass ``commit=False``
    and commit the surrounding transaction themselves.
    """

    log = models.AuditLog(
        user_id=user_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        details=details or {},
        created_at=datetime.now(timezone.utc),
    )
    db.add(log)
    if commit:
        db.commit()
        db.refresh(log)
    else:
        db.flush()
    return log


def generate_report(
    db: Session,
    start: datetime,
    end: datetime,
    user_id: int | None = None,
):
    query = db.query(models.AuditLog).filter(
        models.AuditLog.created_at >= start,
        models.AuditLog.created_at <= end,
    )
    if user_id:
        query = query.filter(models.AuditLog.user_id == user_id)
    rows = (
        query.with_entities(models.AuditLog.action, func.count(models.AuditLog.id))
        .group_by(models.AuditLog.action)
        .all()
    )
    return [{"action": r[0], "count": r[1]} for r in rows]
