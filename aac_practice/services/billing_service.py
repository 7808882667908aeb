# aac_practice/services/billing_service.py
import csv
import io
import json
import math
import random
import secrets
import string
from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_CEILING, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional, Union

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import models
from ..compliance_logger import ComplianceLogger
from ..config import Settings
from ..models import BillingSessionStatus, ClaimStatus, InsuranceType
from .cpt_codes import CPTCode, get_cpt_code

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")
PAID_FLOOR = Decimal("0.8")
CLAIM_NUMBER_ALPHABET = string.ascii_uppercase + string.digits

# Allowed claim status edges. Anything not listed is rejected, including
# denied -> approved, which needs a resubmission first.
CLAIM_TRANSITIONS: Dict[ClaimStatus, frozenset] = {
    ClaimStatus.draft: frozenset({ClaimStatus.submitted}),
    ClaimStatus.submitted: frozenset({ClaimStatus.pending, ClaimStatus.approved, ClaimStatus.denied, ClaimStatus.draft}),
    ClaimStatus.pending: frozenset({ClaimStatus.approved, ClaimStatus.denied}),
    ClaimStatus.denied: frozenset({ClaimStatus.submitted}),
    ClaimStatus.approved: frozenset(),
}

SESSION_STATUS_FOR_CLAIM = {
    ClaimStatus.approved: BillingSessionStatus.paid,
    ClaimStatus.denied: BillingSessionStatus.denied,
}

CLAIM_CSV_COLUMNS = [
    "Claim Number", "Claim ID", "Date of Service", "Patient ID", "Provider ID",
    "CPT Code", "Description", "Modifiers", "Diagnosis Codes", "Units", "Rate",
    "Total Charge", "Insurance Type", "Status", "Submitted Date", "Processed Date",
    "Paid Amount", "Denial Reason",
]

SESSION_CSV_COLUMNS = [
    "Session ID", "Date", "Patient ID", "Service Type", "CPT Code", "Duration (min)",
    "Units", "Medicare Amount", "Medicaid Amount", "Status", "Notes",
]


class BillingError(Exception):
    pass


class InvalidServiceType(BillingError):
    def __init__(self, code: str):
        super().__init__(f"Invalid service type: {code}")
        self.code = code


class BillingSessionNotFound(BillingError):
    pass


class ClaimNotFound(BillingError):
    pass


class InvalidClaimTransition(BillingError):
    pass


def money(value: Union[Decimal, float, int, str]) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_units(duration_minutes: int, unit_minutes: int) -> int:
    """Billable units for a session, never fewer than one."""
    return max(1, math.ceil(duration_minutes / unit_minutes))


def _insurance(value: Union[InsuranceType, str]) -> InsuranceType:
    try:
        return InsuranceType(value)
    except ValueError:
        raise BillingError(f"Unsupported insurance type: {value}")


def generate_claim_number() -> str:
    return "CLM" + "".join(secrets.choice(CLAIM_NUMBER_ALPHABET) for _ in range(9))


@dataclass(frozen=True)
class ChargeQuote:
    cpt: CPTCode
    insurance_type: InsuranceType
    units: int
    rate: Decimal

    @property
    def total(self) -> Decimal:
        return money(self.rate * self.units)


class BillingService:
    """Prices services from the CPT table and tracks claims through their lifecycle."""

    def __init__(self, audit: ComplianceLogger, settings: Settings, rng: Optional[random.Random] = None):
        self.audit = audit
        self.private_multiplier = Decimal(str(settings.private_rate_multiplier))
        self.rng = rng or random.Random()

    # ---- pricing -------------------------------------------------------

    def get_code(self, cpt_code: str) -> CPTCode:
        code = get_cpt_code(cpt_code)
        if code is None:
            raise InvalidServiceType(cpt_code)
        return code

    def rate_for(self, cpt_code: str, insurance_type: Union[InsuranceType, str]) -> Decimal:
        code = self.get_code(cpt_code)
        insurance_type = _insurance(insurance_type)
        if insurance_type == InsuranceType.medicare:
            return code.medicare_rate
        if insurance_type == InsuranceType.medicaid:
            return code.medicaid_rate
        return money(code.medicare_rate * self.private_multiplier)

    def calculate_charge(self, cpt_code: str, insurance_type: Union[InsuranceType, str], duration_minutes: int) -> ChargeQuote:
        if duration_minutes <= 0:
            raise BillingError("Duration must be positive")
        code = self.get_code(cpt_code)
        return ChargeQuote(
            cpt=code,
            insurance_type=_insurance(insurance_type),
            units=calculate_units(duration_minutes, code.duration),
            rate=self.rate_for(cpt_code, insurance_type),
        )

    def check_modifiers(self, code: CPTCode, modifiers: Iterable[str]) -> List[str]:
        modifiers = list(modifiers or [])
        invalid = [m for m in modifiers if m not in code.modifiers]
        if invalid:
            raise BillingError(f"Modifier(s) {', '.join(invalid)} not allowed for CPT {code.code}")
        return modifiers

    # ---- billing sessions ---------------------------------------------

    def create_billing_session(
        self,
        db: Session,
        patient_id: str,
        cpt_code: str,
        duration_minutes: int,
        provider_id: Optional[int] = None,
        service_date: Optional[date] = None,
        modifiers: Optional[List[str]] = None,
        diagnosis_codes: Optional[List[str]] = None,
        notes: Optional[str] = None,
        appointment_id: Optional[int] = None,
        commit: bool = True,
    ) -> models.BillingSession:
        code = self.get_code(cpt_code)
        modifiers = self.check_modifiers(code, modifiers)
        if duration_minutes <= 0:
            raise BillingError("Duration must be positive")
        units = calculate_units(duration_minutes, code.duration)

        session = models.BillingSession(
            patient_id=patient_id,
            provider_id=provider_id,
            appointment_id=appointment_id,
            cpt_code=code.code,
            service_date=service_date or date.today(),
            duration_minutes=duration_minutes,
            units=units,
            modifiers=modifiers,
            diagnosis_codes=list(diagnosis_codes or []),
            medicare_amount=money(code.medicare_rate * units),
            medicaid_amount=money(code.medicaid_rate * units),
            notes=notes,
            status=BillingSessionStatus.pending,
        )
        db.add(session)
        self._finish(db, commit)
        logger.info("billing_session_created", session_id=session.id, cpt_code=code.code, units=units)
        return session

    def get_billing_session(self, db: Session, session_id: int) -> models.BillingSession:
        session = db.query(models.BillingSession).filter(models.BillingSession.id == session_id).first()
        if not session:
            raise BillingSessionNotFound(f"Billing session {session_id} not found")
        return session

    def list_billing_sessions(self, db: Session, start: Optional[date] = None, end: Optional[date] = None) -> List[models.BillingSession]:
        query = db.query(models.BillingSession)
        if start:
            query = query.filter(models.BillingSession.service_date >= start)
        if end:
            query = query.filter(models.BillingSession.service_date <= end)
        return query.order_by(models.BillingSession.service_date, models.BillingSession.id).all()

    # ---- claims ------------------------------------------------------

    def generate_claim(
        self,
        db: Session,
        session_id: int,
        insurance_type: Union[InsuranceType, str],
        user_id: Optional[str] = None,
        commit: bool = True,
    ) -> models.Claim:
        """Price a billing session and submit a claim for it."""
        session = (
            db.query(models.BillingSession)
            .filter(models.BillingSession.id == session_id)
            .with_for_update()
            .first()
        )
        if not session:
            raise BillingSessionNotFound(f"Billing session {session_id} not found")
        if session.status != BillingSessionStatus.pending or session.claim_id is not None:
            raise BillingError(f"Billing session {session_id} has already been claimed")

        quote = self.calculate_charge(session.cpt_code, insurance_type, session.duration_minutes)
        now = datetime.now(timezone.utc)
        claim = models.Claim(
            claim_number=generate_claim_number(),
            billing_session_id=session.id,
            appointment_id=session.appointment_id,
            patient_id=session.patient_id,
            provider_id=session.provider_id,
            date_of_service=session.service_date,
            cpt_code=quote.cpt.code,
            description=quote.cpt.description,
            modifiers=list(session.modifiers or []),
            diagnosis_codes=list(session.diagnosis_codes or []),
            units=quote.units,
            rate=quote.rate,
            total_charge=quote.total,
            insurance_type=quote.insurance_type,
            status=ClaimStatus.submitted,
            submitted_date=now,
        )
        db.add(claim)
        db.flush()

        session.status = BillingSessionStatus.claimed
        session.claim_id = claim.id
        session.total_amount = quote.total
        self._finish(db, commit)

        self.audit.log_access("claim_generated", {
            "claim_id": claim.id, "session_id": session.id,
            "cpt_code": claim.cpt_code, "insurance_type": claim.insurance_type.value,
        }, user_id)
        logger.info("claim_generated", claim_id=claim.id, total=str(claim.total_charge))
        return claim

    def create_claim_draft(
        self,
        db: Session,
        patient_id: str,
        cpt_code: str,
        duration_minutes: int,
        insurance_type: Union[InsuranceType, str],
        date_of_service: date,
        provider_id: Optional[int] = None,
        modifiers: Optional[List[str]] = None,
        diagnosis_codes: Optional[List[str]] = None,
        user_id: Optional[str] = None,
    ) -> models.Claim:
        """Manual claim entry, held as a draft until submitted."""
        quote = self.calculate_charge(cpt_code, insurance_type, duration_minutes)
        claim = models.Claim(
            patient_id=patient_id,
            provider_id=provider_id,
            date_of_service=date_of_service,
            cpt_code=quote.cpt.code,
            description=quote.cpt.description,
            modifiers=self.check_modifiers(quote.cpt, modifiers),
            diagnosis_codes=list(diagnosis_codes or []),
            units=quote.units,
            rate=quote.rate,
            total_charge=quote.total,
            insurance_type=quote.insurance_type,
            status=ClaimStatus.draft,
        )
        db.add(claim)
        self._finish(db, True)
        self.audit.log_access("claim_drafted", {"claim_id": claim.id}, user_id)
        return claim

    def get_claim(self, db: Session, claim_id: int) -> models.Claim:
        claim = db.query(models.Claim).filter(models.Claim.id == claim_id).first()
        if not claim:
            raise ClaimNotFound(f"Claim {claim_id} not found")
        return claim

    def list_claims(
        self,
        db: Session,
        status: Optional[ClaimStatus] = None,
        insurance_type: Optional[InsuranceType] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> List[models.Claim]:
        query = db.query(models.Claim)
        if status:
            query = query.filter(models.Claim.status == status)
        if insurance_type:
            query = query.filter(models.Claim.insurance_type == insurance_type)
        if start:
            query = query.filter(models.Claim.date_of_service >= start)
        if end:
            query = query.filter(models.Claim.date_of_service <= end)
        query = query.order_by(models.Claim.date_of_service, models.Claim.id).offset(skip)
        if limit is not None:
            query = query.limit(limit)
        return query.all()

    def update_claim_status(
        self,
        db: Session,
        claim_id: int,
        new_status: Union[ClaimStatus, str],
        denial_reason: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> models.Claim:
        new_status = ClaimStatus(new_status)
        claim = db.query(models.Claim).filter(models.Claim.id == claim_id).with_for_update().first()
        if not claim:
            raise ClaimNotFound(f"Claim {claim_id} not found")

        old_status = claim.status
        if new_status not in CLAIM_TRANSITIONS[old_status]:
            raise InvalidClaimTransition(
                f"Claim {claim_id} cannot move from {old_status.value} to {new_status.value}"
            )
        if new_status == ClaimStatus.denied and not (denial_reason and denial_reason.strip()):
            raise InvalidClaimTransition("A denial reason is required to deny a claim")

        now = datetime.now(timezone.utc)
        claim.status = new_status
        claim.paid_amount = None
        if new_status == ClaimStatus.submitted:
            claim.submitted_date = claim.submitted_date or now
            claim.claim_number = claim.claim_number or generate_claim_number()
            claim.denial_reason = None
            claim.processed_date = None
        elif new_status == ClaimStatus.approved:
            claim.processed_date = now
            claim.paid_amount = self._adjudicate(money(claim.total_charge))
        elif new_status == ClaimStatus.denied:
            claim.processed_date = now
            claim.denial_reason = denial_reason.strip()

        if claim.billing_session is not None:
            claim.billing_session.status = SESSION_STATUS_FOR_CLAIM.get(new_status, BillingSessionStatus.claimed)

        self._finish(db, True)
        self.audit.log_access("claim_status_changed", {
            "claim_id": claim.id, "from": old_status.value, "to": new_status.value,
        }, user_id)
        logger.info("claim_status_changed", claim_id=claim.id, old=old_status.value, new=new_status.value)
        return claim

    def _adjudicate(self, total: Decimal) -> Decimal:
        """Placeholder payer response: pays 80-100% of the charge."""
        floor = (total * PAID_FLOOR).quantize(CENT, rounding=ROUND_CEILING)
        paid = money(total * Decimal(str(self.rng.uniform(0.8, 1.0))))
        return min(total, max(floor, paid))

    # ---- reporting -----------------------------------------------------

    def monthly_revenue(self, db: Session, year: int, month: int) -> Decimal:
        start = date(year, month, 1)
        end = date(year + 1, 1, 1) if month == 12 else date(year, month + 1, 1)
        claims = (
            db.query(models.Claim)
            .filter(models.Claim.status == ClaimStatus.approved,
                    models.Claim.date_of_service >= start,
                    models.Claim.date_of_service < end)
            .all()
        )
        return money(sum((money(c.paid_amount or 0) for c in claims), Decimal("0")))

    def claim_counts(self, db: Session) -> Dict[str, Any]:
        claims = db.query(models.Claim.insurance_type, models.Claim.status).all()
        by_insurance = Counter(i.value for i, _ in claims)
        by_status = Counter(s.value for _, s in claims)
        return {
            "total": len(claims),
            "by_insurance_type": {t.value: by_insurance.get(t.value, 0) for t in InsuranceType},
            "by_status": {s.value: by_status.get(s.value, 0) for s in ClaimStatus},
        }

    def billing_report(self, db: Session, start: date, end: date) -> Dict[str, Any]:
        sessions = self.list_billing_sessions(db, start, end)
        by_service: Dict[str, Dict[str, Any]] = {}
        by_status: Counter = Counter()
        for s in sessions:
            bucket = by_service.setdefault(s.cpt_code, {
                "count": 0, "units": 0,
                "medicare_amount": Decimal("0.00"), "medicaid_amount": Decimal("0.00"),
            })
            bucket["count"] += 1
            bucket["units"] += s.units
            bucket["medicare_amount"] += money(s.medicare_amount)
            bucket["medicaid_amount"] += money(s.medicaid_amount)
            by_status[s.status.value] += 1

        return {
            "period": {"start": start, "end": end},
            "total_sessions": len(sessions),
            "total_units": sum(s.units for s in sessions),
            "total_medicare": money(sum((money(s.medicare_amount) for s in sessions), Decimal("0"))),
            "total_medicaid": money(sum((money(s.medicaid_amount) for s in sessions), Decimal("0"))),
            "by_service_type": by_service,
            "by_status": dict(by_status),
        }

    def export_claims(self, db: Session, start: Optional[date] = None, end: Optional[date] = None,
                      fmt: str = "csv", user_id: Optional[str] = None) -> str:
        claims = self.list_claims(db, start=start, end=end)
        self.audit.log_access("claims_exported", {"format": fmt, "count": len(claims)}, user_id)
        if fmt == "csv":
            return self._claims_csv(claims)
        if fmt == "json":
            return self._claims_json(claims)
        raise BillingError(f"Unsupported export format: {fmt}")

    def export_sessions_csv(self, db: Session, start: Optional[date] = None, end: Optional[date] = None) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(SESSION_CSV_COLUMNS)
        for s in self.list_billing_sessions(db, start, end):
            code = get_cpt_code(s.cpt_code)
            writer.writerow([
                s.id, s.service_date.isoformat(), s.patient_id,
                code.category if code else "", s.cpt_code, s.duration_minutes, s.units,
                money(s.medicare_amount), money(s.medicaid_amount), s.status.value,
                (s.notes or "").replace(",", ";"),
            ])
        return buffer.getvalue()

    @staticmethod
    def claim_row(claim: models.Claim) -> Dict[str, Any]:
        return {
            "id": claim.id,
            "claim_number": claim.claim_number,
            "billing_session_id": claim.billing_session_id,
            "appointment_id": claim.appointment_id,
            "patient_id": claim.patient_id,
            "provider_id": claim.provider_id,
            "date_of_service": claim.date_of_service.isoformat(),
            "cpt_code": claim.cpt_code,
            "description": claim.description,
            "modifiers": list(claim.modifiers or []),
            "diagnosis_codes": list(claim.diagnosis_codes or []),
            "units": claim.units,
            "rate": str(money(claim.rate)),
            "total_charge": str(money(claim.total_charge)),
            "insurance_type": claim.insurance_type.value,
            "status": claim.status.value,
            "submitted_date": claim.submitted_date.isoformat() if claim.submitted_date else None,
            "processed_date": claim.processed_date.isoformat() if claim.processed_date else None,
            "paid_amount": str(money(claim.paid_amount)) if claim.paid_amount is not None else None,
            "denial_reason": claim.denial_reason,
        }

    def _claims_csv(self, claims: List[models.Claim]) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(CLAIM_CSV_COLUMNS)
        for claim in claims:
            row = self.claim_row(claim)
            writer.writerow([
                row["claim_number"] or "", row["id"], row["date_of_service"], row["patient_id"],
                row["provider_id"] or "", row["cpt_code"], row["description"] or "",
                " ".join(row["modifiers"]), " ".join(row["diagnosis_codes"]), row["units"],
                row["rate"], row["total_charge"], row["insurance_type"], row["status"],
                row["submitted_date"] or "", row["processed_date"] or "",
                row["paid_amount"] or "", row["denial_reason"] or "",
            ])
        return buffer.getvalue()

    def _claims_json(self, claims: List[models.Claim]) -> str:
        rows = [self.claim_row(c) for c in claims]
        statuses = Counter(c.status for c in claims)
        payload = {
            "generated": datetime.now(timezone.utc).isoformat(),
            "total_claims": len(claims),
            "summary": {
                "pending": statuses[ClaimStatus.submitted] + statuses[ClaimStatus.pending],
                "approved": statuses[ClaimStatus.approved],
                "denied": statuses[ClaimStatus.denied],
                "total_value": str(money(sum((money(c.total_charge) for c in claims), Decimal("0")))),
                "total_paid": str(money(sum((money(c.paid_amount or 0) for c in claims), Decimal("0")))),
            },
            "claims": rows,
        }
        return json.dumps(payload, indent=2)

    @staticmethod
    def _finish(db: Session, commit: bool) -> None:
        try:
            if commit:
                db.commit()
            else:
                db.flush()
        except SQLAlchemyError:
            db.rollback()
            raise
