# tests/test_hipaa_compliance.py
from datetime import date, datetime, timedelta, timezone

import pytest
from cryptography.fernet import Fernet

from aac_practice import models
from aac_practice.compliance_logger import ComplianceLogger
from aac_practice.database import SessionLocal
from aac_practice.security import EncryptionService, derive_fernet_key
from aac_practice.services.hipaa_service import PHIDecryptionError, PHIEncryptionError, sanitize_phi


class TestSanitize:
    def test_masks_identifiers(self):
        clean = sanitize_phi({
            "ssn": "123-45-6789",
            "first_name": "Jordan",
            "lastName": "Smith",
            "date_of_birth": date(2001, 7, 4),
            "dob": "03/09/1999",
            "address": "1 Main St",
            "email": "j@example.com",
            "diagnosis": ["F80.2"],
        })
        assert clean == {
            "ssn": "***-**-6789",
            "first_name": "J***",
            "lastName": "S***",
            "date_of_birth": "**/**/2001",
            "dob": "**/**/1999",
            "address": "***",
            "email": "***",
            "diagnosis": ["F80.2"],
        }

    def test_walks_nested_structures(self):
        clean = sanitize_phi({"guardians": [{"guardian_name": "Pat Doe", "phone": "555"}], "ssn": "12"})
        assert clean["guardians"] == [{"guardian_name": "P***", "phone": "***"}]
        assert clean["ssn"] == "***-**-****"

    def test_input_is_not_modified(self):
        record = {"first_name": "Jordan"}
        sanitize_phi(record)
        assert record == {"first_name": "Jordan"}


class TestEncryption:
    def test_round_trip_and_tamper_detection(self, db, services):
        token = services.encryption.encrypt_json({"a": 1})
        assert services.encryption.decrypt_json(token) == {"a": 1}

        tampered = token[:-4] + (b"AAAA" if token[-4:] != b"AAAA" else b"BBBB")
        with pytest.raises(PHIDecryptionError):
            services.hipaa.decrypt(tampered)

    def test_tampered_record_is_audited_even_when_caller_rolls_back(self, db, services, patient):
        row = db.query(models.PatientRecord).filter_by(patient_id=patient["patient_id"]).one()
        row.encrypted_data = row.encrypted_data[:-8] + b"AAAAAAAA"
        db.commit()

        with pytest.raises(PHIDecryptionError):
            services.patients.get_patient(db, patient["patient_id"], user_id="5")
        db.rollback()
        db.close()

        fresh = SessionLocal()
        try:
            rows = ComplianceLogger.get_persisted(fresh, action="decrypt_error")
            assert len(rows) == 1
            assert rows[0].user_id == "5"
            assert rows[0].severity == "CRITICAL"
        finally:
            fresh.close()

    def test_encrypt_failure_is_audited_even_when_caller_rolls_back(self, db, services):
        circular = {}
        circular["self"] = circular
        with pytest.raises(PHIEncryptionError):
            services.hipaa.encrypt(circular, user_id="6", db=db)
        db.rollback()

        fresh = SessionLocal()
        try:
            assert [r.user_id for r in ComplianceLogger.get_persisted(fresh, action="encrypt_error")] == ["6"]
        finally:
            fresh.close()

    def test_passphrase_is_stretched(self):
        key = derive_fernet_key("a passphrase that is not a fernet key", "salt")
        Fernet(key)
        assert key == derive_fernet_key("a passphrase that is not a fernet key", "salt")
        assert key != derive_fernet_key("a passphrase that is not a fernet key", "other-salt")

    def test_previous_keys_still_decrypt(self):
        old_key = Fernet.generate_key().decode()
        new_key = Fernet.generate_key().decode()
        token = EncryptionService(old_key).encrypt("legacy")

        rotated_service = EncryptionService(new_key, previous_keys=[old_key])
        assert rotated_service.decrypt(token) == "legacy"
        rotated = rotated_service.rotate(token)
        assert EncryptionService(new_key).decrypt(rotated) == "legacy"


class TestComplianceLogger:
    def test_ring_buffer_drops_oldest(self):
        audit = ComplianceLogger(buffer_size=3)
        for i in range(5):
            audit.log_access("viewed", {"i": i})
        assert len(audit) == 3
        assert [e.details["i"] for e in audit.entries()] == [2, 3, 4]

    def test_only_critical_actions_are_persisted(self, db):
        audit = ComplianceLogger(session_factory=SessionLocal)
        audit.log_access("patient_accessed", {"patient_id": "pt_1"}, "1")
        audit.log_access("patient_created", {"patient_id": "pt_1"}, "1")
        rows = db.query(models.AuditLog).all()
        assert [r.action for r in rows] == ["patient_created"]
        assert rows[0].category == "PHI"

    def test_persisted_rows_are_pruned(self, db):
        audit = ComplianceLogger(session_factory=SessionLocal, persist_limit=3)
        for i in range(5):
            audit.log_access("phi_exported", {"i": i})
        rows = ComplianceLogger.get_persisted(db, limit=10)
        assert [r.details["i"] for r in rows] == [4, 3, 2]

    def test_reading_the_log_is_audited(self):
        audit = ComplianceLogger()
        audit.log_access("viewed")
        entries = audit.get_audit_log(user_id="admin")
        assert len(entries) == 1
        assert audit.entries()[-1].action == "audit_accessed"
        assert audit.entries()[-1].user_id == "admin"

    def test_time_window(self):
        audit = ComplianceLogger()
        entry = audit.log_access("viewed")
        assert audit.entries(start=entry.timestamp - timedelta(seconds=1)) == [entry]
        assert audit.entries(start=datetime.now(timezone.utc) + timedelta(hours=1)) == []


def test_compliance_check_reports_six_checks(services, settings):
    report = services.hipaa.perform_compliance_check("admin")
    assert report["total"] == 6
    names = [c["name"] for c in report["checks"]]
    assert "Encryption Active" in names
    assert "Business Associate Agreements" in names
    expected = 4 + int(settings.backups_configured) + int(settings.baa_on_file)
    assert report["passed"] == expected
    assert report["percentage"] == round(expected / 6 * 100)
