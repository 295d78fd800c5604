from datetime import datetime
from sqlalchemy.orm import Session
from fastapi import APIRouter, Depends
from ..database import get_db
from ..auth import get_current_user
from .. import models, schemas, audit

router = APIRouter(prefix="/api/audit", tags=["audit"])


@router.get("/", response_model=list[schemas.AuditLogOut])
async def list_logs(
    target_type: str | None = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    query = db.query(models.AuditLog).filter(models.AuditLog.user_id == current_user.id)
    if target_type:
        query = query.filter(models.AuditLog.target_type == target_type)
    return query.order_by(models.AuditLog.created_at.desc(), models.AuditLog.id.desc()).all()


@router.get("/report", response_model=list[schemas.AuditReportItem])
async def audit_report(
    start: datetime,
    end: datetime,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    return audit.generate_report(db, start, end, current_user.id)
