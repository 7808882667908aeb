# aac_practice/services/emergency_service.py
from dataclasses import dataclass
from datetime import datetime, time, timezone
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import models
from ..compliance_logger import ComplianceLogger
from ..models import EmergencyType, ResolutionStatus
from .notification_service import NotificationService

logger = structlog.get_logger(__name__)

EMERGENCY_SERVICES_NUMBER = "911"
RESOLVED_MESSAGE = "EMERGENCY RESOLVED - I am safe now. Thank you for your concern."


@dataclass(frozen=True)
class EmergencyTemplate:
    type: EmergencyType
    title: str
    quick_message: str
    voice_script: str
    auto_actions: Tuple[str, ...]
    guidance: str


EMERGENCY_TEMPLATES: Dict[EmergencyType, EmergencyTemplate] = {
    EmergencyType.medical: EmergencyTemplate(
        type=EmergencyType.medical,
        title="Medical Emergency",
        quick_message="MEDICAL EMERGENCY - I need immediate medical help. Please call 911 and come to my location.",
        voice_script="Medical emergency. Need immediate help. Call nine one one.",
        auto_actions=("call_911", "call_primary_contacts", "send_location", "send_medical_info"),
        guidance="Stay where you are. Show this screen to anyone nearby.",
    ),
    EmergencyType.safety: EmergencyTemplate(
        type=EmergencyType.safety,
        title="Safety Emergency",
        quick_message="SAFETY EMERGENCY - I am in danger and need help immediately. Please call for help.",
        voice_script="Safety emergency. In danger. Need help now.",
        auto_actions=("call_911", "call_all_contacts", "send_location"),
        guidance="Move to a safe place if you can. Keep the device with you.",
    ),
    EmergencyType.pain: EmergencyTemplate(
        type=EmergencyType.pain,
        title="Severe Pain",
        quick_message="I am experiencing severe pain and need medical attention.",
        voice_script="Severe pain. Need medical help.",
        auto_actions=("call_medical_contacts", "send_medical_info"),
        guidance="Use the pain scale board to show where it hurts and how much.",
    ),
    EmergencyType.help: EmergencyTemplate(
        type=EmergencyType.help,
        title="Need Help",
        quick_message="I need help. Please come to my location or contact me.",
        voice_script="Need help. Please come.",
        auto_actions=("call_primary_contacts", "send_location"),
        guidance="Help is on the way. Use quick phrases to say what you need.",
    ),
    EmergencyType.lost: EmergencyTemplate(
        type=EmergencyType.lost,
        title="Lost or Confused",
        quick_message="I am lost or confused about my location. Please help me get home safely.",
        voice_script="Lost and confused. Help me get home.",
        auto_actions=("call_all_contacts", "send_location", "broadcast_alert"),
        guidance="Stay where you are. Show your home address card to someone you trust.",
    ),
}


class EmergencyError(Exception):
    pass


class IncidentNotFound(EmergencyError):
    pass


def get_template(emergency_type: Any) -> EmergencyTemplate:
    try:
        return EMERGENCY_TEMPLATES[EmergencyType(emergency_type)]
    except ValueError:
        raise EmergencyError(f"Unknown emergency type: {emergency_type}")


def is_available(contact: models.EmergencyContact, at: time) -> bool:
    """Whether ``at`` falls inside the contact's availability window.

    Contacts without a window are always available. A window whose end is
    before its start runs overnight.
    """
    start, end = contact.available_from, contact.available_until
    if start is None or end is None:
        return True
    if start <= end:
        return start <= at <= end
    return at >= start or at <= end


class EmergencyService:
    """Severity-routed emergency fan-out to a user's contacts.

    Every outbound message is stored as an ``IncidentCommunication`` so an
    incident can be reviewed and its all-clear sent to the same people.
    Calls to emergency services are always simulated.
    """

    def __init__(self, notifier: NotificationService, audit: ComplianceLogger):
        self.notifier = notifier
        self.audit = audit

    # ---- contacts ------------------------------------------------------

    def add_contact(self, db: Session, user_id: str, data: Dict[str, Any]) -> models.EmergencyContact:
        if not data.get("name") or not data.get("phone"):
            raise EmergencyError("Contact name and phone are required")
        contact = models.EmergencyContact(
            user_id=str(user_id),
            name=data["name"],
            relationship_to_user=data.get("relationship_to_user"),
            phone=data["phone"],
            email=data.get("email"),
            is_primary=bool(data.get("is_primary", False)),
            medical_authorized=bool(data.get("medical_authorized", False)),
            available_from=data.get("available_from"),
            available_until=data.get("available_until"),
        )
        db.add(contact)
        self._commit(db)
        return contact

    def list_contacts(self, db: Session, user_id: str) -> List[models.EmergencyContact]:
        return db.query(models.EmergencyContact).filter(
            models.EmergencyContact.user_id == str(user_id)
        ).order_by(models.EmergencyContact.is_primary.desc(), models.EmergencyContact.id).all()

    def remove_contact(self, db: Session, user_id: str, contact_id: int) -> None:
        contact = db.query(models.EmergencyContact).filter(
            models.EmergencyContact.id == contact_id,
            models.EmergencyContact.user_id == str(user_id),
        ).first()
        if not contact:
            raise EmergencyError(f"Emergency contact {contact_id} not found")
        db.delete(contact)
        self._commit(db)

    # ---- incidents -----------------------------------------------------

    def get_incident(self, db: Session, incident_id: int, lock: bool = False) -> models.EmergencyIncident:
        query = db.query(models.EmergencyIncident).filter(models.EmergencyIncident.id == incident_id)
        if lock:
            query = query.with_for_update()
        incident = query.first()
        if not incident:
            raise IncidentNotFound(f"Incident {incident_id} not found")
        return incident

    def get_active_incident(self, db: Session, user_id: str) -> Optional[models.EmergencyIncident]:
        return db.query(models.EmergencyIncident).filter(
            models.EmergencyIncident.user_id == str(user_id),
            models.EmergencyIncident.resolution_status == ResolutionStatus.active,
        ).order_by(models.EmergencyIncident.id.desc()).first()

    def activate_emergency(
        self,
        db: Session,
        user_id: str,
        emergency_type: Any,
        severity: int,
        location: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> models.EmergencyIncident:
        template = get_template(emergency_type)
        if not 1 <= int(severity) <= 10:
            raise EmergencyError("Severity must be between 1 and 10")
        now = now or datetime.now()
        location = location or {}

        incident = models.EmergencyIncident(
            user_id=str(user_id),
            emergency_type=template.type,
            severity=int(severity),
            quick_message=template.quick_message,
            voice_script=template.voice_script,
            latitude=location.get("latitude"),
            longitude=location.get("longitude"),
            address=location.get("address"),
            resolution_status=ResolutionStatus.active,
        )
        db.add(incident)
        db.flush()

        contacts = self.list_contacts(db, user_id)
        where = self._describe_location(incident)

        if severity >= 9:
            self._call_emergency_services(incident, template, where)
            for contact in contacts:
                self._notify(incident, contact, template, "call", where)
            incident.family_notified = bool(contacts)
            incident.location_shared = where is not None
        elif severity >= 7:
            primary = [c for c in contacts if c.is_primary]
            for contact in primary:
                self._notify(incident, contact, template, "call", where)
            incident.family_notified = bool(primary)
            incident.location_shared = bool(primary) and where is not None
            incident.call_911_prompt = True
        else:
            available = [c for c in contacts if is_available(c, now.time())]
            for contact in available:
                self._notify(incident, contact, template, "text", None)
            incident.family_notified = bool(available)
            incident.guidance = template.guidance

        self._commit(db)
        self.audit.log_access("emergency_activated", {
            "incident_id": incident.id, "type": template.type.value, "severity": int(severity),
            "notified": len(incident.communications),
        }, user_id)
        logger.warning("emergency_activated", incident_id=incident.id, type=template.type.value,
                       severity=int(severity))
        return incident

    def send_update(self, db: Session, incident_id: int, message: str) -> models.EmergencyIncident:
        if not (message or "").strip():
            raise EmergencyError("Update message is required")
        incident = self.get_incident(db, incident_id, lock=True)
        if incident.resolution_status != ResolutionStatus.active:
            raise EmergencyError(f"Incident {incident_id} is already closed")
        for recipient in self._notified_recipients(incident):
            self._send_text(incident, recipient, message.strip())
        self._commit(db)
        return incident

    def resolve_emergency(self, db: Session, incident_id: int, false_alarm: bool = False) -> models.EmergencyIncident:
        incident = self.get_incident(db, incident_id, lock=True)
        if incident.resolution_status != ResolutionStatus.active:
            raise EmergencyError(f"Incident {incident_id} is already closed")
        for recipient in self._notified_recipients(incident):
            self._send_text(incident, recipient, RESOLVED_MESSAGE)
        incident.resolution_status = ResolutionStatus.false_alarm if false_alarm else ResolutionStatus.resolved
        incident.resolved_at = datetime.now(timezone.utc)
        self._commit(db)

        self.audit.log_access("emergency_resolved", {
            "incident_id": incident_id, "false_alarm": false_alarm,
        }, incident.user_id)
        logger.info("emergency_resolved", incident_id=incident_id, status=incident.resolution_status.value)
        return incident

    # ---- helpers -------------------------------------------------------

    @staticmethod
    def _describe_location(incident: models.EmergencyIncident) -> Optional[str]:
        if incident.address:
            return incident.address
        if incident.latitude is not None and incident.longitude is not None:
            return f"{incident.latitude}, {incident.longitude}"
        return None

    def _call_emergency_services(self, incident, template: EmergencyTemplate, where: Optional[str]) -> None:
        # dialing 911 is never automated
        script = template.voice_script
        if where:
            script += f" Location: {where}."
        logger.warning("simulated_911_call", incident_id=incident.id)
        self._record(incident, "call", EMERGENCY_SERVICES_NUMBER, script, "simulated")
        incident.first_responder_notified = True

    def _notify(self, incident, contact: models.EmergencyContact, template: EmergencyTemplate,
                method: str, where: Optional[str]) -> None:
        message = template.quick_message
        if contact.medical_authorized and "send_medical_info" in template.auto_actions:
            message += "\n\nMedical info is available to you in the practice portal."
            incident.medical_info_shared = True
        if where:
            message += f"\n\nLocation: {where}"

        if method == "call":
            result = self.notifier.place_call(contact.phone, f"{template.voice_script} {message}")
        else:
            result = self.notifier.send_sms(contact.phone, message)
        self._record(incident, method, contact.phone, message, self._status(result))

    def _send_text(self, incident, recipient: str, message: str) -> None:
        result = self.notifier.send_sms(recipient, message)
        self._record(incident, "text", recipient, message, self._status(result))

    @staticmethod
    def _notified_recipients(incident: models.EmergencyIncident) -> List[str]:
        seen: List[str] = []
        for communication in incident.communications:
            if communication.recipient != EMERGENCY_SERVICES_NUMBER and communication.recipient not in seen:
                seen.append(communication.recipient)
        return seen

    @staticmethod
    def _status(result: Dict[str, Any]) -> str:
        if not result.get("success"):
            return "failed"
        return "simulated" if result.get("simulated") else "sent"

    @staticmethod
    def _record(incident, method: str, recipient: str, content: str, status: str) -> None:
        incident.communications.append(models.IncidentCommunication(
            method=method, recipient=recipient, content=content, status=status,
        ))

    @staticmethod
    def _commit(db: Session) -> None:
        try:
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
