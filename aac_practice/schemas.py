# aac_practice/schemas.py
from datetime import datetime, date, time
from decimal import Decimal
from typing import List, Optional, Dict, Any, Literal

from pydantic import BaseModel, Field, EmailStr, field_validator, model_validator

from .models import (
    UserRole, AppointmentStatus, AppointmentType, LocationType, InsuranceType,
    ClaimStatus, BillingSessionStatus, EmergencyType, ResolutionStatus,
)


# --- Base Schemas ---
class BaseSchema(BaseModel):
    class Config:
        from_attributes = True


# --- User Schemas ---
class UserBase(BaseSchema):
    username: str = Field(..., min_length=3, max_length=50)
    email: EmailStr
    full_name: Optional[str] = Field(None, max_length=100)
    phone_number: Optional[str] = Field(None, max_length=20)
    role: UserRole = UserRole.staff

class UserCreate(UserBase):
    password: str = Field(..., min_length=8)

    @field_validator('password')
    @classmethod
    def validate_password(cls, v):
        if not any(char.isdigit() for char in v):
            raise ValueError('Password must contain at least one digit')
        if not any(char.isupper() for char in v):
            raise ValueError('Password must contain at least one uppercase letter')
        return v

class UserResponse(UserBase):
    id: int
    is_active: bool
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None


# --- Authentication Schemas ---
class TokenResponse(BaseSchema):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse


# --- Patient Schemas ---
class CommunicationProfile(BaseSchema):
    primary_method: str = "verbal"
    aac_device: Optional[str] = "TinkyBink"
    vocabulary_level: str = "basic"
    preferred_symbols: str = "pcs"

class PatientCreate(BaseSchema):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    date_of_birth: date
    insurance_type: Literal["medicare", "medicaid", "private", "self-pay"]
    insurance_id: Optional[str] = None
    ssn: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[EmailStr] = None
    address: Optional[str] = None
    guardian_name: Optional[str] = None
    diagnosis: List[str] = Field(default_factory=list)
    communication_profile: Optional[CommunicationProfile] = None
    goals: List[Dict[str, Any]] = Field(default_factory=list)

class PatientUpdate(BaseSchema):
    first_name: Optional[str] = Field(None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, min_length=1, max_length=100)
    date_of_birth: Optional[date] = None
    insurance_type: Optional[Literal["medicare", "medicaid", "private", "self-pay"]] = None
    insurance_id: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[EmailStr] = None
    address: Optional[str] = None
    guardian_name: Optional[str] = None
    diagnosis: Optional[List[str]] = None
    communication_profile: Optional[Dict[str, Any]] = None
    active: Optional[bool] = None

class ProgressNoteCreate(BaseSchema):
    notes: str = Field(..., min_length=1)
    session_type: Optional[str] = None
    goals_addressed: List[str] = Field(default_factory=list)
    date: Optional[datetime] = None

class GoalsUpdate(BaseSchema):
    goals: List[Dict[str, Any]]


# --- Appointment Schemas ---
class AppointmentBase(BaseSchema):
    professional_id: int
    patient_id: str
    scheduled_date: date
    scheduled_time: time
    duration_minutes: int = Field(30, gt=0, le=480)
    appointment_type: AppointmentType
    location_type: LocationType = LocationType.in_person
    cpt_code: str
    modifiers: List[str] = Field(default_factory=list)
    diagnosis_codes: List[str] = Field(default_factory=list)
    insurance_type: InsuranceType = InsuranceType.medicare
    copay_amount: Optional[Decimal] = None
    prior_auth_required: bool = False
    authorization_number: Optional[str] = None
    treatment_goals: List[str] = Field(default_factory=list)
    session_plan: Optional[str] = None
    materials_needed: List[str] = Field(default_factory=list)
    homework_assigned: Optional[str] = None
    patient_reminder: bool = True
    patient_reminder_hours: int = Field(24, ge=0)
    professional_reminder: bool = True
    professional_reminder_minutes: int = Field(15, ge=0)
    notes: Optional[str] = None

class AppointmentCreate(AppointmentBase):
    pass

class AppointmentFromTemplate(BaseSchema):
    template_id: str
    professional_id: int
    patient_id: str
    scheduled_date: date
    scheduled_time: time
    overrides: Dict[str, Any] = Field(default_factory=dict)

class AppointmentResponse(AppointmentBase):
    id: int
    status: AppointmentStatus
    estimated_reimbursement: Optional[Decimal] = None
    insurance_verified: bool = False
    patient_reminder_sent: bool = False
    professional_reminder_sent: bool = False
    actual_start: Optional[datetime] = None
    actual_end: Optional[datetime] = None
    actual_duration_minutes: Optional[int] = None
    session_summary: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    late_cancellation: bool = False
    has_conflict: bool = False
    conflicting_appointment_ids: List[int] = Field(default_factory=list)
    limit_warnings: List[str] = Field(default_factory=list)
    series_id: Optional[str] = None
    archived_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

class AppointmentReschedule(BaseSchema):
    new_date: date
    new_time: time

class AppointmentCancel(BaseSchema):
    reason: str = Field(..., min_length=1)
    cancelled_by: Literal["patient", "professional", "system"] = "professional"

class AppointmentComplete(BaseSchema):
    session_summary: str = Field(..., min_length=1)
    actual_duration: Optional[int] = Field(None, gt=0)

class RecurrenceRequest(BaseSchema):
    appointment: AppointmentCreate
    pattern: Literal["daily", "weekly", "biweekly", "monthly"]
    frequency: int = Field(1, ge=1)
    days_of_week: List[int] = Field(default_factory=list)
    end_date: Optional[date] = None
    max_occurrences: Optional[int] = Field(None, ge=1)
    exceptions: List[date] = Field(default_factory=list)
    skip_holidays: bool = True
    allow_conflicts: bool = False

    @field_validator('days_of_week')
    @classmethod
    def validate_days(cls, v):
        if any(d < 0 or d > 6 for d in v):
            raise ValueError('days_of_week must be between 0 (Monday) and 6 (Sunday)')
        return v

    @model_validator(mode='after')
    def check_bounds(self):
        if self.end_date is None and self.max_occurrences is None:
            raise ValueError('Either end_date or max_occurrences must be provided.')
        return self

class SkippedOccurrence(BaseSchema):
    date: date
    reason: str

class RecurringSeriesResponse(BaseSchema):
    series_id: str
    created: List[AppointmentResponse]
    skipped: List[SkippedOccurrence]
    failed: List[SkippedOccurrence]

class DayViewResponse(BaseSchema):
    date: date
    is_holiday: bool
    appointments: List[AppointmentResponse]
    available_slots: List[time]

class CalendarViewResponse(BaseSchema):
    days: Dict[date, List[AppointmentResponse]]
    week_start: Optional[date] = None
    year: Optional[int] = None
    month: Optional[int] = None


# --- Billing Schemas ---
class BillingSessionCreate(BaseSchema):
    patient_id: str
    cpt_code: str
    duration_minutes: int = Field(..., gt=0)
    provider_id: Optional[int] = None
    service_date: Optional[date] = None
    modifiers: List[str] = Field(default_factory=list)
    diagnosis_codes: List[str] = Field(default_factory=list)
    notes: Optional[str] = None

class BillingSessionResponse(BaseSchema):
    id: int
    patient_id: str
    provider_id: Optional[int] = None
    appointment_id: Optional[int] = None
    cpt_code: str
    service_date: date
    duration_minutes: int
    units: int
    modifiers: List[str] = Field(default_factory=list)
    diagnosis_codes: List[str] = Field(default_factory=list)
    medicare_amount: Decimal
    medicaid_amount: Decimal
    status: BillingSessionStatus
    claim_id: Optional[int] = None
    total_amount: Optional[Decimal] = None
    created_at: Optional[datetime] = None

class ClaimGenerate(BaseSchema):
    insurance_type: InsuranceType

class ClaimDraftCreate(BaseSchema):
    patient_id: str
    cpt_code: str
    duration_minutes: int = Field(..., gt=0)
    insurance_type: InsuranceType
    date_of_service: date
    provider_id: Optional[int] = None
    modifiers: List[str] = Field(default_factory=list)
    diagnosis_codes: List[str] = Field(default_factory=list)

class ClaimStatusUpdate(BaseSchema):
    status: ClaimStatus
    denial_reason: Optional[str] = None

class ClaimResponse(BaseSchema):
    id: int
    claim_number: Optional[str] = None
    billing_session_id: Optional[int] = None
    appointment_id: Optional[int] = None
    patient_id: str
    provider_id: Optional[int] = None
    date_of_service: date
    cpt_code: str
    description: Optional[str] = None
    modifiers: List[str] = Field(default_factory=list)
    diagnosis_codes: List[str] = Field(default_factory=list)
    units: int
    rate: Decimal
    total_charge: Decimal
    insurance_type: InsuranceType
    status: ClaimStatus
    submitted_date: Optional[datetime] = None
    processed_date: Optional[datetime] = None
    paid_amount: Optional[Decimal] = None
    denial_reason: Optional[str] = None

class CompletionResponse(BaseSchema):
    appointment: AppointmentResponse
    claim: ClaimResponse

class ChargeQuoteResponse(BaseSchema):
    cpt_code: str
    insurance_type: InsuranceType
    units: int
    rate: Decimal
    total: Decimal


# --- Audit / Compliance Schemas ---
class AuditEntryResponse(BaseSchema):
    timestamp: datetime
    action: str
    user_id: str
    details: Dict[str, Any] = Field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

class AuditLogResponse(AuditEntryResponse):
    id: int
    category: str
    severity: str

class ComplianceCheck(BaseSchema):
    name: str
    passed: bool
    details: str

class ComplianceReport(BaseSchema):
    passed: int
    total: int
    percentage: int
    checks: List[ComplianceCheck]
    timestamp: datetime


# --- Emergency Schemas ---
class EmergencyContactCreate(BaseSchema):
    name: str = Field(..., min_length=1, max_length=100)
    relationship_to_user: Optional[str] = Field(None, max_length=50)
    phone: str = Field(..., min_length=3, max_length=20)
    email: Optional[EmailStr] = None
    is_primary: bool = False
    medical_authorized: bool = False
    available_from: Optional[time] = None
    available_until: Optional[time] = None

class EmergencyContactResponse(EmergencyContactCreate):
    id: int
    user_id: str
    email: Optional[str] = None

class Location(BaseSchema):
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    address: Optional[str] = None

class EmergencyActivate(BaseSchema):
    emergency_type: EmergencyType
    severity: int = Field(..., ge=1, le=10)
    location: Optional[Location] = None

class EmergencyUpdate(BaseSchema):
    message: str = Field(..., min_length=1)

class EmergencyResolve(BaseSchema):
    false_alarm: bool = False

class IncidentCommunicationResponse(BaseSchema):
    id: int
    method: str
    recipient: str
    content: str
    status: str
    sent_at: Optional[datetime] = None

class EmergencyIncidentResponse(BaseSchema):
    id: int
    user_id: str
    emergency_type: EmergencyType
    severity: int
    quick_message: str
    voice_script: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address: Optional[str] = None
    first_responder_notified: bool = False
    family_notified: bool = False
    medical_info_shared: bool = False
    location_shared: bool = False
    call_911_prompt: bool = False
    guidance: Optional[str] = None
    resolution_status: ResolutionStatus
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    communications: List[IncidentCommunicationResponse] = Field(default_factory=list)
