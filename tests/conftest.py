# tests/conftest.py
import os

# Settings are read on first import, so the environment must be in place first
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key-that-is-at-least-32-characters"
# Already a urlsafe base64 32-byte key, so no PBKDF2 stretching in tests
os.environ["ENCRYPTION_KEY"] = "YWFh" * 10 + "YWE="
os.environ["ENVIRONMENT"] = "testing"
os.environ["LOG_JSON"] = "false"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ.pop("ADMIN_USERNAME", None)
os.environ.pop("ADMIN_PASSWORD", None)
os.environ.pop("TWILIO_ACCOUNT_SID", None)
os.environ.pop("SENDGRID_API_KEY", None)

import random
from datetime import date, time, timedelta

import pytest
from fastapi.testclient import TestClient

from aac_practice import crud, models, schemas, security
from aac_practice.config import get_settings
from aac_practice.database import Base, SessionLocal, engine
from aac_practice.dependencies import build_services
from aac_practice.services.notification_service import NotificationService


class RecordingNotifier(NotificationService):
    """Keeps every outbound message instead of delivering it."""

    def __init__(self, settings):
        super().__init__(settings)
        self.sent = []

    def send_sms(self, to, body):
        self.sent.append(("sms", to, body))
        return {"success": True, "simulated": True, "channel": "sms"}

    def place_call(self, to, script):
        self.sent.append(("call", to, script))
        return {"success": True, "simulated": True, "channel": "call"}

    def send_email(self, to, subject, body):
        self.sent.append(("email", to, body))
        return {"success": True, "simulated": True, "channel": "email"}


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def notifier(settings):
    return RecordingNotifier(settings)


@pytest.fixture
def services(settings, notifier):
    return build_services(settings, session_factory=SessionLocal, rng=random.Random(1234), notifier=notifier)


def _make_user(db, username, role):
    return crud.create_user(db, schemas.UserCreate(
        username=username,
        email=f"{username}@clinic.example",
        full_name=username.title(),
        phone_number="+15550100",
        role=role,
        password="Secret123",
    ))


@pytest.fixture
def therapist(db):
    return _make_user(db, "therapist", models.UserRole.therapist)


@pytest.fixture
def admin(db):
    return _make_user(db, "admin", models.UserRole.admin)


@pytest.fixture
def patient(db, services):
    return services.patients.create_patient(db, {
        "first_name": "Alex",
        "last_name": "Rivera",
        "date_of_birth": date(2012, 5, 17),
        "insurance_type": "medicare",
        "insurance_id": "MED-100200",
        "ssn": "123-45-6789",
        "phone": "+15550111",
        "email": "guardian@example.com",
    }, user_id="test")


@pytest.fixture
def monday():
    """First Monday of March next year: always in the future and clear of holidays."""
    day = date(date.today().year + 1, 3, 1)
    return day + timedelta(days=(7 - day.weekday()) % 7)


@pytest.fixture
def appointment_data(therapist, patient, monday):
    return {
        "professional_id": therapist.id,
        "patient_id": patient["patient_id"],
        "scheduled_date": monday,
        "scheduled_time": time(9, 0),
        "duration_minutes": 60,
        "appointment_type": models.AppointmentType.individual_therapy,
        "cpt_code": "92507",
        "insurance_type": models.InsuranceType.medicare,
    }


@pytest.fixture
def client(db, services):
    from aac_practice.main import app

    app.state.services = services
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def as_user(client):
    """Authenticate every request as the given user."""
    from aac_practice.main import app

    def _login(user):
        app.dependency_overrides[security.get_current_user] = lambda: user
        return client

    return _login
