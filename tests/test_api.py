# tests/test_api.py
import hashlib
import hmac
import json
import time as clock
from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient

from aac_practice import models

API = "/api/v1"


def _token_headers(client, username, password="Secret123"):
    response = client.post(f"{API}/auth/token", data={"username": username, "password": password})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


class TestAuth:
    def test_login_and_me(self, client, admin):
        headers = _token_headers(client, "admin")
        response = client.get(f"{API}/auth/users/me", headers=headers)
        assert response.status_code == 200
        assert response.json()["username"] == "admin"

    def test_wrong_password(self, client, admin, services):
        response = client.post(f"{API}/auth/token", data={"username": "admin", "password": "nope"})
        assert response.status_code == 401
        assert services.audit.entries(action="login_failed")

    def test_requests_without_token_are_rejected(self, client):
        assert client.get(f"{API}/patients").status_code == 401

    def test_only_admin_creates_users(self, as_user, therapist):
        client = as_user(therapist)
        response = client.post(f"{API}/auth/users", json={
            "username": "newbie", "email": "newbie@clinic.example", "password": "Secret123", "role": "staff"})
        assert response.status_code == 403


class TestPatients:
    def test_create_and_read(self, as_user, therapist):
        client = as_user(therapist)
        response = client.post(f"{API}/patients", json={
            "first_name": "Jamie", "last_name": "Cole", "date_of_birth": "2014-09-01",
            "insurance_type": "medicaid", "diagnosis": ["F80.2"],
        })
        assert response.status_code == 201, response.text
        patient_id = response.json()["patient_id"]

        record = client.get(f"{API}/patients/{patient_id}").json()
        assert record["last_name"] == "Cole"
        assert record["communication_profile"]["primary_method"] == "verbal"

    def test_delete_with_appointments_is_conflict(self, as_user, admin, services, db, appointment_data):
        services.scheduling.create_appointment(db, appointment_data)
        client = as_user(admin)
        response = client.delete(f"{API}/patients/{appointment_data['patient_id']}")
        assert response.status_code == 409
        assert client.get(f"{API}/patients/{appointment_data['patient_id']}").status_code == 200

    def test_delete_unreferenced_patient(self, as_user, admin, patient):
        client = as_user(admin)
        assert client.delete(f"{API}/patients/{patient['patient_id']}").status_code == 204
        assert client.get(f"{API}/patients/{patient['patient_id']}").status_code == 404

    def test_missing_patient(self, as_user, therapist):
        assert as_user(therapist).get(f"{API}/patients/pt_missing").status_code == 404

    def test_export_is_sanitized_attachment(self, as_user, therapist, patient):
        response = as_user(therapist).get(f"{API}/patients/{patient['patient_id']}/export")
        assert response.status_code == 200
        assert "attachment" in response.headers["content-disposition"]
        assert response.json()["ssn"] == "***-**-6789"

    def test_billing_role_cannot_read_patients(self, as_user, db):
        billing = models.User(username="biller", email="biller@clinic.example", password_hash="x",
                              role=models.UserRole.billing)
        db.add(billing)
        db.commit()
        assert as_user(billing).get(f"{API}/patients").status_code == 403


class TestAppointmentFlow:
    def _book(self, client, appointment_data):
        body = {
            **appointment_data,
            "scheduled_date": appointment_data["scheduled_date"].isoformat(),
            "scheduled_time": appointment_data["scheduled_time"].isoformat(),
            "appointment_type": appointment_data["appointment_type"].value,
            "insurance_type": appointment_data["insurance_type"].value,
        }
        response = client.post(f"{API}/appointments", json=body)
        assert response.status_code == 201, response.text
        return response.json()

    def test_book_through_completion_creates_claim(self, as_user, therapist, appointment_data):
        client = as_user(therapist)
        appointment = self._book(client, appointment_data)
        assert appointment["status"] == "scheduled"
        assert Decimal(appointment["estimated_reimbursement"]) == Decimal("342.00")

        base = f"{API}/appointments/{appointment['id']}"
        assert client.post(f"{base}/confirm").json()["status"] == "confirmed"
        assert client.post(f"{base}/start").json()["status"] == "in_progress"

        response = client.post(f"{base}/complete", json={"session_summary": "Modeled core words", "actual_duration": 45})
        assert response.status_code == 200, response.text
        result = response.json()
        assert result["appointment"]["status"] == "completed"
        assert result["claim"]["units"] == 3
        assert Decimal(result["claim"]["total_charge"]) == Decimal("256.50")
        assert result["claim"]["status"] == "submitted"

    def test_invalid_transition_is_400(self, as_user, therapist, appointment_data):
        client = as_user(therapist)
        appointment = self._book(client, appointment_data)
        response = client.post(f"{API}/appointments/{appointment['id']}/complete", json={"session_summary": "x"})
        assert response.status_code == 400

    def test_cancel_requires_reason(self, as_user, therapist, appointment_data):
        client = as_user(therapist)
        appointment = self._book(client, appointment_data)
        response = client.post(f"{API}/appointments/{appointment['id']}/cancel", json={"reason": ""})
        assert response.status_code == 422

    def test_slots(self, as_user, therapist, appointment_data):
        client = as_user(therapist)
        self._book(client, appointment_data)
        response = client.get(f"{API}/appointments/slots", params={
            "professional_id": therapist.id, "day": appointment_data["scheduled_date"].isoformat()})
        assert response.status_code == 200
        assert "09:00:00" not in response.json()
        assert "10:00:00" in response.json()


class TestClaims:
    @pytest.fixture
    def claim_id(self, db, services):
        session = services.billing.create_billing_session(
            db, patient_id="pt_api", cpt_code="92507", duration_minutes=30)
        return services.billing.generate_claim(db, session.id, models.InsuranceType.medicare).id

    def test_status_update_requires_billing_role(self, as_user, therapist, claim_id):
        response = as_user(therapist).put(f"{API}/claims/{claim_id}/status", json={"status": "approved"})
        assert response.status_code == 403

    def test_denial_without_reason(self, as_user, admin, claim_id):
        client = as_user(admin)
        response = client.put(f"{API}/claims/{claim_id}/status", json={"status": "denied"})
        assert response.status_code == 400
        response = client.put(f"{API}/claims/{claim_id}/status", json={"status": "denied", "denial_reason": "No auth"})
        assert response.status_code == 200
        assert response.json()["denial_reason"] == "No auth"

    def test_csv_export(self, as_user, admin, claim_id):
        response = as_user(admin).get(f"{API}/claims/export", params={"fmt": "csv"})
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert response.text.splitlines()[0].startswith("Claim Number")

    def test_unknown_claim(self, as_user, admin):
        assert as_user(admin).get(f"{API}/claims/999").status_code == 404

    def test_quote(self, as_user, therapist):
        response = as_user(therapist).get(f"{API}/billing/quote", params={
            "cpt_code": "92507", "insurance_type": "private", "duration_minutes": 60})
        assert Decimal(response.json()["total"]) == Decimal("410.40")


class TestCompliance:
    def test_logs_are_admin_only(self, as_user, therapist):
        assert as_user(therapist).get(f"{API}/logs").status_code == 403

    def test_admin_reads_persisted_logs(self, client, admin, patient):
        headers = _token_headers(client, "admin")
        response = client.get(f"{API}/logs", headers=headers)
        assert response.status_code == 200
        assert "patient_created" in [row["action"] for row in response.json()]

    def test_compliance_check(self, as_user, admin):
        report = as_user(admin).get(f"{API}/compliance/check").json()
        assert report["total"] == 6


class TestEmergency:
    def test_activate_and_resolve(self, as_user, therapist, notifier):
        client = as_user(therapist)
        client.post(f"{API}/emergency/users/u1/contacts", json={"name": "Dad", "phone": "+15550009", "is_primary": True})

        response = client.post(f"{API}/emergency/users/u1/activate", json={"emergency_type": "pain", "severity": 7})
        assert response.status_code == 201, response.text
        incident = response.json()
        assert incident["call_911_prompt"] is True
        assert client.get(f"{API}/emergency/users/u1/active").json()["id"] == incident["id"]

        resolved = client.post(f"{API}/emergency/incidents/{incident['id']}/resolve", json={}).json()
        assert resolved["resolution_status"] == "resolved"
        assert client.get(f"{API}/emergency/users/u1/active").json() is None

    def test_severity_is_validated(self, as_user, therapist):
        response = as_user(therapist).post(
            f"{API}/emergency/users/u1/activate", json={"emergency_type": "pain", "severity": 0})
        assert response.status_code == 422


class TestStripeWebhook:
    SECRET = "whsec_test_secret"

    def _signed(self, payload, timestamp=None):
        timestamp = int(timestamp or clock.time())
        signature = hmac.new(self.SECRET.encode(), f"{timestamp}.".encode() + payload, hashlib.sha256).hexdigest()
        return {"Stripe-Signature": f"t={timestamp},v1={signature}", "Content-Type": "application/json"}

    def _event(self, event_type, status="active"):
        return json.dumps({
            "id": "evt_1",
            "type": event_type,
            "data": {"object": {
                "id": "sub_123", "customer": "cus_9", "status": status,
                "plan": {"id": "price_pro", "nickname": "Practice Pro"},
                "current_period_end": 1767225600,
            }},
        }).encode()

    def test_subscription_is_upserted(self, client, db):
        url = f"{API}/webhooks/stripe"
        payload = self._event("customer.subscription.created")
        assert client.post(url, content=payload, headers=self._signed(payload)).json() == {"received": True}

        payload = self._event("customer.subscription.deleted")
        assert client.post(url, content=payload, headers=self._signed(payload)).status_code == 200

        rows = db.query(models.Subscription).all()
        assert len(rows) == 1
        assert rows[0].status == "canceled"
        assert rows[0].plan == "Practice Pro"

    def test_bad_signature(self, client):
        payload = self._event("customer.subscription.created")
        headers = self._signed(payload)
        timestamp = headers["Stripe-Signature"].split(",")[0]
        headers["Stripe-Signature"] = f"{timestamp},v1={'0' * 64}"
        assert client.post(f"{API}/webhooks/stripe", content=payload, headers=headers).status_code == 400

    def test_stale_timestamp(self, client):
        payload = self._event("customer.subscription.created")
        headers = self._signed(payload, timestamp=clock.time() - 3600)
        assert client.post(f"{API}/webhooks/stripe", content=payload, headers=headers).status_code == 400

    def test_signed_non_object_payload_is_rejected(self, client):
        payload = b"[]"
        response = client.post(f"{API}/webhooks/stripe", content=payload, headers=self._signed(payload))
        assert response.status_code == 400

    def test_other_events_are_acknowledged(self, client, db):
        payload = json.dumps({"id": "evt_2", "type": "invoice.paid", "data": {"object": {}}}).encode()
        response = client.post(f"{API}/webhooks/stripe", content=payload, headers=self._signed(payload))
        assert response.json() == {"received": True}
        assert db.query(models.Subscription).count() == 0


def test_health(client):
    body = client.get(f"{API}/health").json()
    assert body["status"] == "healthy"
    assert body["database"] == "ok"


async def test_health_async(db, services):
    from aac_practice.main import app

    app.state.services = services
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        response = await ac.get(f"{API}/health")
    assert response.status_code == 200
    assert response.json()["environment"] == "testing"
