# aac_practice/models.py
from sqlalchemy import (
    Column, Integer, String, DateTime, Time, ForeignKey, Text, Date,
    Enum as SQLAlchemyEnum, Boolean, LargeBinary, JSON, Numeric, Float, Index,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from .database import Base
import enum


class UserRole(str, enum.Enum):
    admin = "admin"
    therapist = "therapist"
    billing = "billing"
    staff = "staff"


class AppointmentStatus(str, enum.Enum):
    scheduled = "scheduled"
    confirmed = "confirmed"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"
    no_show = "no_show"
    rescheduled = "rescheduled"


class AppointmentType(str, enum.Enum):
    evaluation = "evaluation"
    individual_therapy = "individual_therapy"
    group_therapy = "group_therapy"
    teletherapy = "teletherapy"
    consultation = "consultation"
    assessment = "assessment"


class LocationType(str, enum.Enum):
    in_person = "in_person"
    telehealth = "telehealth"
    home_visit = "home_visit"
    school_visit = "school_visit"


class InsuranceType(str, enum.Enum):
    medicare = "medicare"
    medicaid = "medicaid"
    private = "private"


class ClaimStatus(str, enum.Enum):
    draft = "draft"
    submitted = "submitted"
    pending = "pending"
    approved = "approved"
    denied = "denied"


class BillingSessionStatus(str, enum.Enum):
    pending = "pending"
    claimed = "claimed"
    paid = "paid"
    denied = "denied"


class EmergencyType(str, enum.Enum):
    medical = "medical"
    safety = "safety"
    pain = "pain"
    help = "help"
    lost = "lost"


class ResolutionStatus(str, enum.Enum):
    active = "active"
    resolved = "resolved"
    false_alarm = "false_alarm"


# User Management Models
class User(Base):
    """Clinic staff account used for bearer-token authentication"""
    __tablename__ = "users"
    __table_args__ = (
        Index('idx_users_role_active', 'role', 'is_active'),
    )

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), unique=True, index=True, nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(100), nullable=True)
    phone_number = Column(String(20), nullable=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(SQLAlchemyEnum(UserRole, name='user_role'), default=UserRole.staff, nullable=False)
    is_active = Column(Boolean, default=True)
    last_login = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    appointments = relationship("Appointment", back_populates="professional", foreign_keys="Appointment.professional_id")


class PatientRecord(Base):
    """Patient PHI; the whole record lives in one Fernet token"""
    __tablename__ = "patient_records"

    patient_id = Column(String(40), primary_key=True)
    encrypted_data = Column(LargeBinary, nullable=False)
    is_active = Column(Boolean, default=True, index=True)
    created_by = Column(String(64), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    appointments = relationship("Appointment", back_populates="patient")


class Appointment(Base):
    """Therapy appointment with billing, clinical and reminder details"""
    __tablename__ = "appointments"
    __table_args__ = (
        Index('idx_appointments_professional_date', 'professional_id', 'scheduled_date'),
        Index('idx_appointments_patient_date', 'patient_id', 'scheduled_date'),
        Index('idx_appointments_status_date', 'status', 'scheduled_date'),
    )

    id = Column(Integer, primary_key=True, index=True)
    professional_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    patient_id = Column(String(40), ForeignKey("patient_records.patient_id"), nullable=False)

    # Timing
    scheduled_date = Column(Date, nullable=False, index=True)
    scheduled_time = Column(Time, nullable=False)
    duration_minutes = Column(Integer, nullable=False, default=30)

    appointment_type = Column(SQLAlchemyEnum(AppointmentType, name='appointment_type'), nullable=False)
    location_type = Column(SQLAlchemyEnum(LocationType, name='location_type'), default=LocationType.in_person)
    status = Column(SQLAlchemyEnum(AppointmentStatus, name='appointment_status'), default=AppointmentStatus.scheduled, index=True)

    # Billing
    cpt_code = Column(String(10), nullable=False)
    modifiers = Column(JSON, default=list)
    diagnosis_codes = Column(JSON, default=list)
    insurance_type = Column(SQLAlchemyEnum(InsuranceType, name='insurance_type'), default=InsuranceType.medicare)
    estimated_reimbursement = Column(Numeric(10, 2), nullable=True)
    copay_amount = Column(Numeric(10, 2), nullable=True)
    insurance_verified = Column(Boolean, default=False)
    prior_auth_required = Column(Boolean, default=False)
    authorization_number = Column(String(50), nullable=True)

    # Clinical
    treatment_goals = Column(JSON, default=list)
    session_plan = Column(Text, nullable=True)
    materials_needed = Column(JSON, default=list)
    homework_assigned = Column(Text, nullable=True)

    # Reminders
    patient_reminder = Column(Boolean, default=True)
    patient_reminder_hours = Column(Integer, default=24)
    professional_reminder = Column(Boolean, default=True)
    professional_reminder_minutes = Column(Integer, default=15)
    patient_reminder_sent = Column(Boolean, default=False)
    professional_reminder_sent = Column(Boolean, default=False)

    # Session outcome
    actual_start = Column(DateTime(timezone=True), nullable=True)
    actual_end = Column(DateTime(timezone=True), nullable=True)
    actual_duration_minutes = Column(Integer, nullable=True)
    session_summary = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    # Cancellation
    cancellation_reason = Column(Text, nullable=True)
    cancelled_by = Column(String(20), nullable=True)  # patient, professional, system
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    late_cancellation = Column(Boolean, default=False)

    # Flags raised at booking time
    has_conflict = Column(Boolean, default=False)
    conflicting_appointment_ids = Column(JSON, default=list)
    limit_warnings = Column(JSON, default=list)

    series_id = Column(String(40), nullable=True, index=True)
    archived_at = Column(DateTime(timezone=True), nullable=True)

    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    professional = relationship("User", back_populates="appointments", foreign_keys=[professional_id])
    patient = relationship("PatientRecord", back_populates="appointments")
    billing_sessions = relationship("BillingSession", back_populates="appointment")


class BillingSession(Base):
    """A delivered, billable service; claims are generated from these"""
    __tablename__ = "billing_sessions"
    __table_args__ = (
        Index('idx_billing_sessions_date', 'service_date'),
        Index('idx_billing_sessions_patient', 'patient_id'),
    )

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(String(40), nullable=False)
    provider_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=True)

    cpt_code = Column(String(10), nullable=False)
    service_date = Column(Date, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    units = Column(Integer, nullable=False)
    modifiers = Column(JSON, default=list)
    diagnosis_codes = Column(JSON, default=list)
    medicare_amount = Column(Numeric(10, 2), nullable=False)
    medicaid_amount = Column(Numeric(10, 2), nullable=False)
    notes = Column(Text, nullable=True)

    status = Column(SQLAlchemyEnum(BillingSessionStatus, name='billing_session_status'), default=BillingSessionStatus.pending, index=True)
    claim_id = Column(Integer, nullable=True)
    total_amount = Column(Numeric(10, 2), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    appointment = relationship("Appointment", back_populates="billing_sessions")
    claims = relationship("Claim", back_populates="billing_session")


class Claim(Base):
    """Insurance claim; status moves only along the claim transition table"""
    __tablename__ = "claims"
    __table_args__ = (
        Index('idx_claims_status', 'status'),
        Index('idx_claims_date_of_service', 'date_of_service'),
        Index('idx_claims_insurance_status', 'insurance_type', 'status'),
    )

    id = Column(Integer, primary_key=True, index=True)
    claim_number = Column(String(20), unique=True, nullable=True)
    billing_session_id = Column(Integer, ForeignKey("billing_sessions.id"), nullable=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=True)
    patient_id = Column(String(40), nullable=False)
    provider_id = Column(Integer, ForeignKey("users.id"), nullable=True)

    date_of_service = Column(Date, nullable=False)
    cpt_code = Column(String(10), nullable=False)
    description = Column(String(255), nullable=True)
    modifiers = Column(JSON, default=list)
    diagnosis_codes = Column(JSON, default=list)
    units = Column(Integer, nullable=False)
    rate = Column(Numeric(10, 2), nullable=False)
    total_charge = Column(Numeric(10, 2), nullable=False)
    insurance_type = Column(SQLAlchemyEnum(InsuranceType, name='insurance_type'), nullable=False)

    status = Column(SQLAlchemyEnum(ClaimStatus, name='claim_status'), default=ClaimStatus.draft, nullable=False)
    submitted_date = Column(DateTime(timezone=True), nullable=True)
    processed_date = Column(DateTime(timezone=True), nullable=True)
    paid_amount = Column(Numeric(10, 2), nullable=True)
    denial_reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    billing_session = relationship("BillingSession", back_populates="claims")


class AuditLog(Base):
    """Persisted critical PHI audit entries"""
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index('idx_audit_action_date', 'action', 'timestamp'),
        Index('idx_audit_user_date', 'user_id', 'timestamp'),
    )

    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    action = Column(String(64), nullable=False)
    category = Column(String(50), nullable=False, default="PHI")
    severity = Column(String(20), default="CRITICAL")
    user_id = Column(String(64), nullable=True)
    details = Column(JSON, nullable=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)


class EmergencyContact(Base):
    __tablename__ = "emergency_contacts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    relationship_to_user = Column(String(50), nullable=True)
    phone = Column(String(20), nullable=False)
    email = Column(String(255), nullable=True)
    is_primary = Column(Boolean, default=False)
    medical_authorized = Column(Boolean, default=False)
    available_from = Column(Time, nullable=True)
    available_until = Column(Time, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class EmergencyIncident(Base):
    __tablename__ = "emergency_incidents"
    __table_args__ = (
        Index('idx_incidents_user_status', 'user_id', 'resolution_status'),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False)
    emergency_type = Column(SQLAlchemyEnum(EmergencyType, name='emergency_type'), nullable=False)
    severity = Column(Integer, nullable=False)
    quick_message = Column(Text, nullable=False)
    voice_script = Column(Text, nullable=True)

    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    address = Column(String(255), nullable=True)

    first_responder_notified = Column(Boolean, default=False)
    family_notified = Column(Boolean, default=False)
    medical_info_shared = Column(Boolean, default=False)
    location_shared = Column(Boolean, default=False)
    call_911_prompt = Column(Boolean, default=False)
    guidance = Column(Text, nullable=True)

    resolution_status = Column(SQLAlchemyEnum(ResolutionStatus, name='resolution_status'), default=ResolutionStatus.active)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    communications = relationship(
        "IncidentCommunication", back_populates="incident",
        cascade="all, delete-orphan", order_by="IncidentCommunication.id",
    )


class IncidentCommunication(Base):
    __tablename__ = "incident_communications"

    id = Column(Integer, primary_key=True, index=True)
    incident_id = Column(Integer, ForeignKey("emergency_incidents.id"), nullable=False)
    method = Column(String(10), nullable=False)  # call, text, email
    recipient = Column(String(255), nullable=False)
    content = Column(Text, nullable=False)
    status = Column(String(20), default="sent")  # sent, simulated, failed
    sent_at = Column(DateTime(timezone=True), server_default=func.now())

    incident = relationship("EmergencyIncident", back_populates="communications")


class Subscription(Base):
    """Practice subscription state kept in sync by the payment webhook"""
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(String(100), unique=True, nullable=False)
    customer_id = Column(String(100), nullable=True, index=True)
    status = Column(String(30), nullable=False)
    plan = Column(String(100), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
