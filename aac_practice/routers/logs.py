# aac_practice/routers/logs.py
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import schemas, models
from ..compliance_logger import ComplianceLogger
from ..database import get_db
from ..dependencies import Services, get_services
from ..security import require_admin

router = APIRouter(
    tags=["Compliance"],
    dependencies=[Depends(require_admin)],
    responses={404: {"description": "Not found"}},
)

@router.get("/logs", response_model=List[schemas.AuditLogResponse])
def read_audit_logs(
    skip: int = 0,
    limit: int = 100,
    action: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    db: Session = Depends(get_db),
):
    """
    Persisted critical PHI audit entries, newest first.
    Only accessible by administrators.
    """
    return ComplianceLogger.get_persisted(db, skip=skip, limit=limit, action=action, start=start, end=end)

@router.get("/logs/recent", response_model=List[schemas.AuditEntryResponse])
def read_buffered_audit_log(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    services: Services = Depends(get_services),
    current_user: models.User = Depends(require_admin),
):
    """
    In-memory audit buffer. Reading it is itself audited.
    """
    return services.hipaa.get_audit_log(start, end, str(current_user.id))

@router.get("/compliance/check", response_model=schemas.ComplianceReport)
def run_compliance_check(
    services: Services = Depends(get_services),
    current_user: models.User = Depends(require_admin),
):
    return services.hipaa.perform_compliance_check(str(current_user.id))
