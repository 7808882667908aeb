# aac_practice/services/hipaa_service.py
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from cryptography.fernet import InvalidToken
from sqlalchemy.orm import Session

from ..compliance_logger import ComplianceLogger
from ..config import Settings
from ..security import EncryptionService

logger = structlog.get_logger(__name__)

NAME_FIELDS = ("first_name", "last_name", "full_name", "patient_name", "guardian_name", "firstName", "lastName")
DOB_FIELDS = ("date_of_birth", "dateOfBirth", "dob")
SSN_FIELDS = ("ssn",)
OPAQUE_FIELDS = ("address", "phone", "email")


class HIPAAError(Exception):
    pass


class PHIEncryptionError(HIPAAError):
    pass


class PHIDecryptionError(HIPAAError):
    pass


def _mask_ssn(value: Any) -> str:
    digits = "".join(ch for ch in str(value) if ch.isdigit())
    if len(digits) < 4:
        return "***-**-****"
    return f"***-**-{digits[-4:]}"


def _mask_name(value: Any) -> str:
    text = str(value).strip()
    return f"{text[0]}***" if text else "***"


def _mask_dob(value: Any) -> str:
    if isinstance(value, (date, datetime)):
        return f"**/**/{value.year:04d}"
    text = str(value)
    for fmt in ("%Y-%m-%d", "%m/%d/%Y", "%Y-%m-%dT%H:%M:%S"):
        try:
            return f"**/**/{datetime.strptime(text[:19], fmt).year:04d}"
        except ValueError:
            continue
    return "**/**/****"


def sanitize_phi(record: Any) -> Any:
    """Return a copy of ``record`` with identifying fields masked.

    SSN keeps its last four digits, names keep their initial, dates of birth
    keep only the year and contact fields are replaced outright. Nested
    mappings and lists are walked recursively.
    """
    if isinstance(record, list):
        return [sanitize_phi(item) for item in record]
    if not isinstance(record, dict):
        return record

    clean: Dict[str, Any] = {}
    for key, value in record.items():
        if value is None or value == "":
            clean[key] = value
        elif key in SSN_FIELDS:
            clean[key] = _mask_ssn(value)
        elif key in NAME_FIELDS:
            clean[key] = _mask_name(value)
        elif key in DOB_FIELDS:
            clean[key] = _mask_dob(value)
        elif key in OPAQUE_FIELDS:
            clean[key] = "***"
        else:
            clean[key] = sanitize_phi(value)
    return clean


class HIPAAService:
    """Encryption and audit boundary for PHI."""

    def __init__(self, encryption: EncryptionService, audit: ComplianceLogger, settings: Settings):
        self.encryption = encryption
        self.audit = audit
        self.settings = settings

    def encrypt(self, data: Dict[str, Any], user_id: Optional[str] = "system", db: Optional[Session] = None) -> bytes:
        try:
            token = self.encryption.encrypt_json(data)
        except (TypeError, ValueError) as e:
            # own session: the caller's transaction will not commit after this raises
            self.audit.log_access("encrypt_error", {"error": type(e).__name__}, user_id)
            raise PHIEncryptionError("PHI could not be encrypted") from e
        self.audit.log_access("encrypt", {"size": len(token)}, user_id, db=db)
        return token

    def decrypt(self, token: bytes, user_id: Optional[str] = "system", db: Optional[Session] = None) -> Dict[str, Any]:
        try:
            data = self.encryption.decrypt_json(token)
        except (InvalidToken, TypeError, ValueError) as e:
            self.audit.log_access("decrypt_error", {"error": type(e).__name__}, user_id)
            raise PHIDecryptionError("PHI could not be decrypted") from e
        self.audit.log_access("decrypt", {"size": len(token)}, user_id, db=db)
        return data

    def log_access(self, action: str, details: Optional[Dict[str, Any]] = None,
                   user_id: Optional[str] = "system", db: Optional[Session] = None):
        return self.audit.log_access(action, details, user_id, db=db)

    def get_audit_log(self, start: Optional[datetime] = None, end: Optional[datetime] = None,
                      user_id: Optional[str] = "system"):
        return self.audit.get_audit_log(start, end, user_id)

    def sanitize_phi(self, record: Any) -> Any:
        return sanitize_phi(record)

    def perform_compliance_check(self, user_id: Optional[str] = "system") -> Dict[str, Any]:
        """Static self-report over the fixed safeguard checklist."""
        checks: List[Dict[str, Any]] = [
            {
                "name": "Encryption Active",
                "passed": self.encryption.self_test(),
                "details": "PHI sealed with Fernet authenticated encryption",
            },
            {
                "name": "Audit Logging Active",
                "passed": self.audit.is_active,
                "details": f"{len(self.audit)} entries buffered",
            },
            {
                "name": "Access Controls",
                "passed": bool(self.settings.secret_key),
                "details": "Bearer-token authentication with role checks",
            },
            {
                "name": "Data Backup",
                "passed": self.settings.backups_configured,
                "details": "Backups configured" if self.settings.backups_configured else "No backup policy configured",
            },
            {
                "name": "Minimum Necessary Standard",
                "passed": True,
                "details": "Exports are sanitized before leaving the system",
            },
            {
                "name": "Business Associate Agreements",
                "passed": self.settings.baa_on_file,
                "details": "BAAs on file" if self.settings.baa_on_file else "No BAA recorded",
            },
        ]
        passed = sum(1 for c in checks if c["passed"])
        report = {
            "passed": passed,
            "total": len(checks),
            "percentage": round(passed / len(checks) * 100),
            "checks": checks,
            "timestamp": datetime.now(timezone.utc),
        }
        self.audit.log_access("compliance_check", {"passed": passed, "total": len(checks)}, user_id)
        logger.info("compliance_check", passed=passed, total=len(checks))
        return report
