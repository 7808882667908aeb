# aac_practice/services/patient_service.py
import json
import secrets
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import models
from .hipaa_service import HIPAAService

logger = structlog.get_logger(__name__)

REQUIRED_FIELDS = ("first_name", "last_name", "date_of_birth", "insurance_type")
PATIENT_INSURANCE_TYPES = ("medicare", "medicaid", "private", "self-pay")
SEARCH_FIELDS = ("first_name", "last_name", "patient_id", "insurance_id")

DEFAULT_COMMUNICATION_PROFILE = {
    "primary_method": "verbal",
    "aac_device": "TinkyBink",
    "vocabulary_level": "basic",
    "preferred_symbols": "pcs",
}


class PatientRecordError(Exception):
    pass


class PatientNotFound(PatientRecordError):
    pass


class PatientValidationError(PatientRecordError):
    pass


class PatientInUse(PatientRecordError):
    pass


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def _iso(value: Any) -> Any:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


class PatientService:
    """Patient records stored as single encrypted documents.

    Plaintext exists only inside this service: every load goes through
    ``HIPAAService.decrypt`` and every save through ``HIPAAService.encrypt``.
    """

    def __init__(self, hipaa: HIPAAService):
        self.hipaa = hipaa

    # ---- storage boundary ----------------------------------------------

    def _get_row(self, db: Session, patient_id: str) -> models.PatientRecord:
        row = db.query(models.PatientRecord).filter(models.PatientRecord.patient_id == patient_id).first()
        if not row:
            raise PatientNotFound(f"Patient {patient_id} not found")
        return row

    def _load(self, db: Session, row: models.PatientRecord, user_id: str) -> Dict[str, Any]:
        return self.hipaa.decrypt(row.encrypted_data, user_id=user_id, db=db)

    def _store(self, db: Session, row: models.PatientRecord, record: Dict[str, Any], user_id: str) -> None:
        row.encrypted_data = self.hipaa.encrypt(record, user_id=user_id, db=db)
        row.is_active = bool(record.get("active", True))

    def _commit(self, db: Session) -> None:
        try:
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise

    def patient_exists(self, db: Session, patient_id: str) -> bool:
        return db.query(models.PatientRecord.patient_id).filter(
            models.PatientRecord.patient_id == patient_id
        ).first() is not None

    # ---- operations ----------------------------------------------------

    def create_patient(self, db: Session, data: Dict[str, Any], user_id: str = "system") -> Dict[str, Any]:
        missing = [f for f in REQUIRED_FIELDS if not data.get(f)]
        if missing:
            raise PatientValidationError(f"Missing required fields: {', '.join(missing)}")
        if data["insurance_type"] not in PATIENT_INSURANCE_TYPES:
            raise PatientValidationError(f"Invalid insurance type: {data['insurance_type']}")

        patient_id = f"pt_{secrets.token_hex(8)}"
        now = _now().isoformat()
        record = {key: _iso(value) for key, value in data.items()}
        record.update({
            "patient_id": patient_id,
            "communication_profile": {**DEFAULT_COMMUNICATION_PROFILE, **(data.get("communication_profile") or {})},
            "goals": list(data.get("goals") or []),
            "progress": [],
            "active": True,
            "created_at": now,
            "updated_at": now,
        })

        row = models.PatientRecord(patient_id=patient_id, created_by=str(user_id))
        self._store(db, row, record, user_id)
        db.add(row)
        self.hipaa.log_access("patient_created", {"patient_id": patient_id}, user_id, db=db)
        self._commit(db)
        logger.info("patient_created", patient_id=patient_id)
        return record

    def get_patient(self, db: Session, patient_id: str, user_id: str = "system") -> Dict[str, Any]:
        record = self._load(db, self._get_row(db, patient_id), user_id)
        self.hipaa.log_access("patient_accessed", {"patient_id": patient_id}, user_id)
        return record

    def update_patient(self, db: Session, patient_id: str, updates: Dict[str, Any], user_id: str = "system") -> Dict[str, Any]:
        row = self._get_row(db, patient_id)
        record = self._load(db, row, user_id)

        # progress notes are append-only and the identifier is fixed
        protected = {"patient_id", "progress", "created_at"}
        changed = sorted(k for k in updates if k not in protected)
        if "insurance_type" in updates and updates["insurance_type"] not in PATIENT_INSURANCE_TYPES:
            raise PatientValidationError(f"Invalid insurance type: {updates['insurance_type']}")
        for key in changed:
            if key == "communication_profile":
                record[key] = {**record.get(key, {}), **(updates[key] or {})}
            else:
                record[key] = _iso(updates[key])
        missing = [f for f in REQUIRED_FIELDS if not record.get(f)]
        if missing:
            raise PatientValidationError(f"Missing required fields: {', '.join(missing)}")
        record["updated_at"] = _now().isoformat()

        self._store(db, row, record, user_id)
        self.hipaa.log_access("patient_modified", {"patient_id": patient_id, "fields": changed}, user_id, db=db)
        self._commit(db)
        return record

    def delete_patient(self, db: Session, patient_id: str, user_id: str = "system") -> None:
        """Hard delete. Refused while appointments or billing records still reference the patient."""
        row = self._get_row(db, patient_id)
        references = {
            "appointments": db.query(models.Appointment).filter(models.Appointment.patient_id == patient_id).count(),
            "billing_sessions": db.query(models.BillingSession).filter(
                models.BillingSession.patient_id == patient_id).count(),
            "claims": db.query(models.Claim).filter(models.Claim.patient_id == patient_id).count(),
        }
        held = [f"{count} {name}" for name, count in references.items() if count]
        if held:
            raise PatientInUse(
                f"Patient {patient_id} is referenced by {', '.join(held)}; deactivate the record instead"
            )
        db.delete(row)
        self.hipaa.log_access("patient_deleted", {"patient_id": patient_id}, user_id, db=db)
        self._commit(db)
        logger.info("patient_deleted", patient_id=patient_id)

    def list_patients(self, db: Session, active_only: bool = False, user_id: str = "system") -> List[Dict[str, Any]]:
        query = db.query(models.PatientRecord)
        if active_only:
            query = query.filter(models.PatientRecord.is_active.is_(True))
        records = [self._load(db, row, user_id) for row in query.order_by(models.PatientRecord.created_at).all()]
        self.hipaa.log_access("patients_listed", {"count": len(records)}, user_id)
        return records

    def search_patients(self, db: Session, query: str, user_id: str = "system") -> List[Dict[str, Any]]:
        needle = (query or "").strip().lower()
        if not needle:
            return []
        matches = []
        for row in db.query(models.PatientRecord).all():
            record = self._load(db, row, user_id)
            if any(needle in str(record.get(f) or "").lower() for f in SEARCH_FIELDS):
                matches.append(record)
        self.hipaa.log_access("patient_search", {"results": len(matches)}, user_id)
        return matches

    def add_progress_note(self, db: Session, patient_id: str, note: Dict[str, Any], user_id: str = "system") -> Dict[str, Any]:
        if not (note.get("notes") or "").strip():
            raise PatientValidationError("Progress note text is required")
        row = self._get_row(db, patient_id)
        record = self._load(db, row, user_id)

        entry = {key: _iso(value) for key, value in note.items()}
        entry["id"] = f"note_{secrets.token_hex(6)}"
        entry["date"] = _iso(note.get("date")) or _now().isoformat()
        entry.setdefault("author", str(user_id))
        record.setdefault("progress", []).append(entry)
        record["updated_at"] = _now().isoformat()

        self._store(db, row, record, user_id)
        self.hipaa.log_access("patient_modified", {"patient_id": patient_id, "fields": ["progress"]}, user_id, db=db)
        self._commit(db)
        return entry

    def get_patient_progress(
        self,
        db: Session,
        patient_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        user_id: str = "system",
    ) -> List[Dict[str, Any]]:
        record = self._load(db, self._get_row(db, patient_id), user_id)
        start = _as_utc(start) if start else None
        end = _as_utc(end) if end else None
        notes = []
        for note in record.get("progress", []):
            when = _as_utc(datetime.fromisoformat(note["date"]))
            if (start is None or when >= start) and (end is None or when <= end):
                notes.append(note)
        self.hipaa.log_access("progress_accessed", {"patient_id": patient_id, "count": len(notes)}, user_id)
        return notes

    def update_goals(self, db: Session, patient_id: str, goals: List[Dict[str, Any]], user_id: str = "system") -> Dict[str, Any]:
        normalized = []
        for goal in goals:
            goal = {key: _iso(value) for key, value in goal.items()}
            goal.setdefault("id", f"goal_{secrets.token_hex(6)}")
            goal.setdefault("status", "active")
            normalized.append(goal)
        return self.update_patient(db, patient_id, {"goals": normalized}, user_id)

    def export_patient_data(self, db: Session, patient_id: str, user_id: str = "system") -> str:
        """Sanitized JSON export of one record."""
        record = self._load(db, self._get_row(db, patient_id), user_id)
        self.hipaa.log_access("phi_exported", {"patient_id": patient_id}, user_id, db=db)
        self._commit(db)
        return json.dumps(self.hipaa.sanitize_phi(record), indent=2, default=str)
