# tests/test_emergency_service.py
from datetime import datetime, time

import pytest

from aac_practice.models import ResolutionStatus
from aac_practice.services.emergency_service import (
    EMERGENCY_SERVICES_NUMBER, RESOLVED_MESSAGE, EmergencyError, IncidentNotFound, is_available,
)

USER = "aac-user-1"


@pytest.fixture
def contacts(db, services):
    emergency = services.emergency
    mom = emergency.add_contact(db, USER, {
        "name": "Mom", "phone": "+15550001", "is_primary": True, "medical_authorized": True})
    neighbor = emergency.add_contact(db, USER, {
        "name": "Neighbor", "phone": "+15550002",
        "available_from": time(8, 0), "available_until": time(17, 0)})
    night_nurse = emergency.add_contact(db, USER, {
        "name": "Night nurse", "phone": "+15550003",
        "available_from": time(22, 0), "available_until": time(6, 0)})
    return mom, neighbor, night_nurse


def _recipients(incident):
    return [(c.method, c.recipient) for c in incident.communications]


def test_contacts_list_primary_first(db, services, contacts):
    names = [c.name for c in services.emergency.list_contacts(db, USER)]
    assert names[0] == "Mom"
    assert services.emergency.list_contacts(db, "someone-else") == []


def test_contact_requires_name_and_phone(db, services):
    with pytest.raises(EmergencyError):
        services.emergency.add_contact(db, USER, {"name": "No phone"})


def test_remove_contact(db, services, contacts):
    services.emergency.remove_contact(db, USER, contacts[1].id)
    assert len(services.emergency.list_contacts(db, USER)) == 2
    with pytest.raises(EmergencyError):
        services.emergency.remove_contact(db, "someone-else", contacts[0].id)


def test_overnight_window(contacts):
    _, neighbor, night_nurse = contacts
    assert is_available(night_nurse, time(23, 30))
    assert is_available(night_nurse, time(5, 0))
    assert not is_available(night_nurse, time(12, 0))
    assert is_available(neighbor, time(12, 0))
    assert not is_available(neighbor, time(20, 0))


def test_critical_severity_calls_everyone(db, services, contacts, notifier):
    incident = services.emergency.activate_emergency(
        db, USER, "medical", 10, location={"address": "12 Elm St"})

    assert _recipients(incident)[0] == ("call", EMERGENCY_SERVICES_NUMBER)
    assert incident.communications[0].status == "simulated"
    assert {r for m, r in _recipients(incident)[1:] if m == "call"} == {"+15550001", "+15550002", "+15550003"}
    assert incident.first_responder_notified
    assert incident.family_notified
    assert incident.location_shared
    assert incident.medical_info_shared
    # emergency services are never dialed through the provider
    assert EMERGENCY_SERVICES_NUMBER not in [to for _, to, _ in notifier.sent]


def test_high_severity_calls_primary_and_prompts(db, services, contacts):
    incident = services.emergency.activate_emergency(db, USER, "safety", 8)
    assert _recipients(incident) == [("call", "+15550001")]
    assert incident.call_911_prompt
    assert not incident.first_responder_notified


def test_lower_severity_texts_available_contacts(db, services, contacts):
    incident = services.emergency.activate_emergency(
        db, USER, "help", 4, now=datetime(2025, 6, 2, 23, 0))
    assert _recipients(incident) == [("text", "+15550001"), ("text", "+15550003")]
    assert incident.guidance
    assert not incident.call_911_prompt


def test_invalid_activation(db, services):
    with pytest.raises(EmergencyError):
        services.emergency.activate_emergency(db, USER, "medical", 11)
    with pytest.raises(EmergencyError):
        services.emergency.activate_emergency(db, USER, "boredom", 5)


def test_update_and_resolve_reach_notified_contacts(db, services, contacts, notifier):
    incident = services.emergency.activate_emergency(db, USER, "medical", 9)
    assert services.emergency.get_active_incident(db, USER).id == incident.id
    assert services.emergency.get_active_incident(db, "someone-else") is None

    services.emergency.send_update(db, incident.id, "Ambulance arrived")
    resolved = services.emergency.resolve_emergency(db, incident.id)

    assert resolved.resolution_status == ResolutionStatus.resolved
    assert resolved.resolved_at is not None
    resolved_texts = [to for channel, to, body in notifier.sent if body == RESOLVED_MESSAGE]
    assert sorted(resolved_texts) == ["+15550001", "+15550002", "+15550003"]
    assert services.emergency.get_active_incident(db, USER) is None

    with pytest.raises(EmergencyError):
        services.emergency.send_update(db, incident.id, "again")


def test_false_alarm(db, services, contacts):
    incident = services.emergency.activate_emergency(db, USER, "lost", 3, now=datetime(2025, 6, 2, 12, 0))
    resolved = services.emergency.resolve_emergency(db, incident.id, false_alarm=True)
    assert resolved.resolution_status == ResolutionStatus.false_alarm
    with pytest.raises(EmergencyError):
        services.emergency.resolve_emergency(db, incident.id)


def test_unknown_incident(db, services):
    with pytest.raises(IncidentNotFound):
        services.emergency.resolve_emergency(db, 404)


def test_high_severity_shares_location_with_primary(db, services, contacts):
    incident = services.emergency.activate_emergency(
        db, USER, "help", 7, location={"latitude": 40.7, "longitude": -74.0})
    assert incident.location_shared
    assert "Location: 40.7, -74.0" in incident.communications[0].content
