# aac_practice/routers/claims.py
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.orm import Session

from .. import schemas, security, models
from ..database import get_db
from ..dependencies import Services, get_services
from ..models import ClaimStatus, InsuranceType
from ..services.billing_service import BillingError, BillingSessionNotFound, ClaimNotFound
from ..services.cpt_codes import CPT_CODES

import logging

logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["Billing"],
    dependencies=[Depends(security.get_current_user)],
    responses={404: {"description": "Not found"}},
)


def _raise_for(e: BillingError):
    if isinstance(e, (ClaimNotFound, BillingSessionNotFound)):
        raise HTTPException(status_code=404, detail=str(e))
    raise HTTPException(status_code=400, detail=str(e))


def _download(body: str, fmt: str, filename: str) -> Response:
    media_type = "text/csv" if fmt == "csv" else "application/json"
    return Response(
        content=body,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}.{fmt}"'},
    )


@router.get("/billing/cpt-codes")
def read_cpt_codes() -> List[Dict[str, Any]]:
    return [
        {
            "code": c.code, "description": c.description, "category": c.category,
            "medicare_rate": str(c.medicare_rate), "medicaid_rate": str(c.medicaid_rate),
            "duration": c.duration, "modifiers": list(c.modifiers),
        }
        for c in CPT_CODES.values()
    ]

@router.get("/billing/quote", response_model=schemas.ChargeQuoteResponse)
def quote_charge(
    cpt_code: str,
    insurance_type: InsuranceType,
    duration_minutes: int = Query(..., gt=0),
    services: Services = Depends(get_services),
):
    try:
        quote = services.billing.calculate_charge(cpt_code, insurance_type, duration_minutes)
    except BillingError as e:
        _raise_for(e)
    return {
        "cpt_code": quote.cpt.code, "insurance_type": quote.insurance_type,
        "units": quote.units, "rate": quote.rate, "total": quote.total,
    }

@router.post("/billing/sessions", response_model=schemas.BillingSessionResponse,
             status_code=status.HTTP_201_CREATED, dependencies=[Depends(security.require_clinical)])
def create_billing_session(
    session: schemas.BillingSessionCreate,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    try:
        return services.billing.create_billing_session(db, **session.model_dump())
    except BillingError as e:
        _raise_for(e)

@router.get("/billing/sessions", response_model=List[schemas.BillingSessionResponse])
def read_billing_sessions(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    return services.billing.list_billing_sessions(db, start_date, end_date)

@router.get("/billing/sessions/export", dependencies=[Depends(security.require_billing)])
def export_billing_sessions(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    return _download(services.billing.export_sessions_csv(db, start_date, end_date), "csv", "billing_sessions")

@router.post("/billing/sessions/{session_id}/claim", response_model=schemas.ClaimResponse,
             status_code=status.HTTP_201_CREATED, dependencies=[Depends(security.require_billing)])
def generate_claim(
    session_id: int,
    request: schemas.ClaimGenerate,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
    current_user: models.User = Depends(security.get_current_user),
):
    try:
        return services.billing.generate_claim(db, session_id, request.insurance_type, user_id=current_user.id)
    except BillingError as e:
        _raise_for(e)

@router.post("/claims", response_model=schemas.ClaimResponse, status_code=status.HTTP_201_CREATED,
             dependencies=[Depends(security.require_billing)])
def create_claim_draft(
    claim: schemas.ClaimDraftCreate,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
    current_user: models.User = Depends(security.get_current_user),
):
    try:
        return services.billing.create_claim_draft(db, user_id=current_user.id, **claim.model_dump())
    except BillingError as e:
        _raise_for(e)

@router.get("/claims", response_model=List[schemas.ClaimResponse])
def read_claims(
    status: Optional[ClaimStatus] = None,
    insurance_type: Optional[InsuranceType] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    return services.billing.list_claims(db, status, insurance_type, start_date, end_date, skip, limit)

@router.get("/claims/export", dependencies=[Depends(security.require_billing)])
def export_claims(
    fmt: str = Query("csv", pattern="^(csv|json)$"),
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
    current_user: models.User = Depends(security.get_current_user),
):
    """
    Download claims as CSV or as a JSON document with a status summary.
    """
    try:
        body = services.billing.export_claims(db, start_date, end_date, fmt, user_id=current_user.id)
    except BillingError as e:
        _raise_for(e)
    return _download(body, fmt, "claims")

@router.get("/claims/reports/summary", dependencies=[Depends(security.require_billing)])
def read_claim_summary(db: Session = Depends(get_db), services: Services = Depends(get_services)):
    return services.billing.claim_counts(db)

@router.get("/claims/reports/revenue", dependencies=[Depends(security.require_billing)])
def read_monthly_revenue(
    year: int = Query(..., ge=2000, le=2100),
    month: int = Query(..., ge=1, le=12),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    revenue = services.billing.monthly_revenue(db, year, month)
    return {"year": year, "month": month, "revenue": str(revenue)}

@router.get("/claims/reports/billing", dependencies=[Depends(security.require_billing)])
def read_billing_report(
    start_date: date,
    end_date: date,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    if end_date < start_date:
        raise HTTPException(status_code=400, detail="end_date must not be before start_date")
    return services.billing.billing_report(db, start_date, end_date)

@router.get("/claims/{claim_id}", response_model=schemas.ClaimResponse)
def read_claim(claim_id: int, db: Session = Depends(get_db), services: Services = Depends(get_services)):
    try:
        return services.billing.get_claim(db, claim_id)
    except BillingError as e:
        _raise_for(e)

@router.put("/claims/{claim_id}/status", response_model=schemas.ClaimResponse,
            dependencies=[Depends(security.require_billing)])
def update_claim_status(
    claim_id: int,
    request: schemas.ClaimStatusUpdate,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
    current_user: models.User = Depends(security.get_current_user),
):
    """
    Move a claim along its status workflow. Denials must carry a reason.
    """
    try:
        return services.billing.update_claim_status(
            db, claim_id, request.status, request.denial_reason, user_id=current_user.id)
    except BillingError as e:
        _raise_for(e)
