# aac_practice/services/scheduling_service.py
import calendar
import secrets
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import models
from ..compliance_logger import ComplianceLogger
from ..config import Settings
from ..models import AppointmentStatus, AppointmentType, InsuranceType, LocationType
from .billing_service import BillingError, BillingService
from .notification_service import NotificationService
from .patient_service import PatientService

logger = structlog.get_logger(__name__)

S = AppointmentStatus

APPOINTMENT_TRANSITIONS: Dict[AppointmentStatus, frozenset] = {
    S.scheduled: frozenset({S.confirmed, S.cancelled, S.no_show, S.rescheduled}),
    S.confirmed: frozenset({S.in_progress, S.cancelled, S.no_show, S.rescheduled}),
    S.in_progress: frozenset({S.completed, S.cancelled, S.no_show, S.rescheduled}),
    S.rescheduled: frozenset({S.confirmed, S.cancelled, S.no_show, S.rescheduled}),
    S.no_show: frozenset({S.rescheduled, S.cancelled}),
    S.completed: frozenset(),
    S.cancelled: frozenset(),
}

# Statuses that hold a professional's time for conflict detection
BOOKED_STATUSES = (S.scheduled, S.confirmed, S.rescheduled)
# Statuses that free the slot entirely
RELEASED_STATUSES = (S.cancelled, S.no_show)

HOLIDAYS = frozenset({(1, 1), (7, 4), (12, 25)})
MAX_DURATION_MINUTES = 480
MAX_SERIES_OCCURRENCES = 104

# appointment type -> (period, max visits per period), applied to medicare patients
MEDICARE_FREQUENCY_LIMITS = {
    AppointmentType.evaluation: ("year", 2),
    AppointmentType.individual_therapy: ("week", 3),
    AppointmentType.group_therapy: ("week", 2),
}

APPOINTMENT_TEMPLATES: Dict[str, Dict[str, Any]] = {
    "eval_initial": {
        "name": "Initial Evaluation",
        "appointment_type": AppointmentType.evaluation,
        "duration_minutes": 60,
        "cpt_code": "92523",
        "materials_needed": ["Assessment forms", "AAC device trial set"],
    },
    "therapy_individual": {
        "name": "Individual Therapy Session",
        "appointment_type": AppointmentType.individual_therapy,
        "duration_minutes": 30,
        "cpt_code": "92507",
        "materials_needed": ["AAC device", "Therapy materials"],
    },
    "therapy_group": {
        "name": "Group Therapy Session",
        "appointment_type": AppointmentType.group_therapy,
        "duration_minutes": 45,
        "cpt_code": "92508",
        "materials_needed": ["Group activity materials"],
    },
}


class SchedulingError(Exception):
    pass


class AppointmentNotFound(SchedulingError):
    pass


class InvalidTransition(SchedulingError):
    pass


@dataclass
class RecurrencePattern:
    pattern: str  # daily, weekly, biweekly, monthly
    frequency: int = 1
    days_of_week: List[int] = field(default_factory=list)  # 0 = Monday
    end_date: Optional[date] = None
    max_occurrences: Optional[int] = None
    exceptions: List[date] = field(default_factory=list)
    skip_holidays: bool = True
    allow_conflicts: bool = False


def is_holiday(day: date) -> bool:
    return (day.month, day.day) in HOLIDAYS


def _minutes(t: time) -> int:
    return t.hour * 60 + t.minute


def _from_minutes(total: int) -> time:
    return time(total // 60, total % 60)


def _overlaps(start_a: int, end_a: int, start_b: int, end_b: int) -> bool:
    return start_a < end_b and start_b < end_a


def _utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes for timezone-aware columns
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def _add_months(day: date, months: int, anchor_day: int) -> date:
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    return date(year, month, min(anchor_day, calendar.monthrange(year, month)[1]))


def next_occurrence(current: date, rule: RecurrencePattern, anchor_day: int) -> date:
    """Date of the occurrence after ``current`` for a recurrence rule."""
    frequency = max(1, rule.frequency)
    if rule.pattern == "daily":
        return current + timedelta(days=frequency)
    if rule.pattern == "weekly":
        if rule.days_of_week:
            days = sorted(set(rule.days_of_week))
            later = [d for d in days if d > current.weekday()]
            if later:
                return current + timedelta(days=later[0] - current.weekday())
            # wrap to the first listed day of the next active week
            return current + timedelta(days=7 * frequency - current.weekday() + days[0])
        return current + timedelta(weeks=frequency)
    if rule.pattern == "biweekly":
        return current + timedelta(weeks=2)
    if rule.pattern == "monthly":
        return _add_months(current, frequency, anchor_day)
    raise SchedulingError(f"Unknown recurrence pattern: {rule.pattern}")


class SchedulingService:
    """Appointment calendar for professionals.

    Owns the appointment state machine, conflict detection, calendar views,
    recurring series and reminders. Completing an appointment hands off to
    the billing engine, which prices the session and submits a claim.
    """

    def __init__(
        self,
        billing: BillingService,
        patients: PatientService,
        notifier: NotificationService,
        audit: ComplianceLogger,
        settings: Settings,
    ):
        self.billing = billing
        self.patients = patients
        self.notifier = notifier
        self.audit = audit
        self.settings = settings

    # ---- lookups -------------------------------------------------------

    def get_appointment(self, db: Session, appointment_id: int, lock: bool = False) -> models.Appointment:
        query = db.query(models.Appointment).filter(models.Appointment.id == appointment_id)
        if lock:
            query = query.with_for_update()
        appointment = query.first()
        if not appointment:
            raise AppointmentNotFound(f"Appointment {appointment_id} not found")
        return appointment

    def list_appointments(
        self,
        db: Session,
        professional_id: Optional[int] = None,
        patient_id: Optional[str] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
        status: Optional[AppointmentStatus] = None,
        include_archived: bool = True,
    ) -> List[models.Appointment]:
        query = db.query(models.Appointment)
        if professional_id is not None:
            query = query.filter(models.Appointment.professional_id == professional_id)
        if patient_id:
            query = query.filter(models.Appointment.patient_id == patient_id)
        if start:
            query = query.filter(models.Appointment.scheduled_date >= start)
        if end:
            query = query.filter(models.Appointment.scheduled_date <= end)
        if status:
            query = query.filter(models.Appointment.status == status)
        if not include_archived:
            query = query.filter(models.Appointment.archived_at.is_(None))
        return query.order_by(models.Appointment.scheduled_date, models.Appointment.scheduled_time).all()

    def find_conflicts(
        self,
        db: Session,
        professional_id: int,
        day: date,
        start_time: time,
        duration_minutes: int,
        exclude_id: Optional[int] = None,
    ) -> List[models.Appointment]:
        start = _minutes(start_time)
        end = start + duration_minutes
        query = db.query(models.Appointment).filter(
            models.Appointment.professional_id == professional_id,
            models.Appointment.scheduled_date == day,
            models.Appointment.status.in_(BOOKED_STATUSES),
        )
        if exclude_id is not None:
            query = query.filter(models.Appointment.id != exclude_id)
        return [
            a for a in query.all()
            if _overlaps(start, end, _minutes(a.scheduled_time), _minutes(a.scheduled_time) + a.duration_minutes)
        ]

    # ---- creation ------------------------------------------------------

    def create_appointment(
        self,
        db: Session,
        data: Dict[str, Any],
        created_by: Optional[int] = None,
        now: Optional[datetime] = None,
        series_id: Optional[str] = None,
        commit: bool = True,
    ) -> models.Appointment:
        """Validate and book an appointment.

        Overlaps with an existing booking do not block creation: the new
        appointment is stored with ``has_conflict`` set and the ids it
        collides with, leaving resolution to the user.
        """
        now = now or datetime.now()
        patient_id = data.get("patient_id")
        if not patient_id:
            raise SchedulingError("Patient ID is required")
        if not self.patients.patient_exists(db, patient_id):
            raise SchedulingError(f"Patient {patient_id} not found")

        professional_id = data.get("professional_id")
        if not professional_id or not db.query(models.User.id).filter(models.User.id == professional_id).first():
            raise SchedulingError(f"Professional {professional_id} not found")

        scheduled_date: date = data.get("scheduled_date")
        scheduled_time: time = data.get("scheduled_time")
        if scheduled_date is None or scheduled_time is None:
            raise SchedulingError("Scheduled date and time are required")
        if scheduled_date < now.date():
            raise SchedulingError("Appointments cannot be scheduled in the past")

        duration = data.get("duration_minutes") or 0
        if duration <= 0 or duration > MAX_DURATION_MINUTES:
            raise SchedulingError(f"Duration must be between 1 and {MAX_DURATION_MINUTES} minutes")

        try:
            appointment_type = AppointmentType(data.get("appointment_type"))
            location_type = LocationType(data.get("location_type") or LocationType.in_person)
            insurance_type = InsuranceType(data.get("insurance_type") or InsuranceType.medicare)
        except ValueError as e:
            raise SchedulingError(str(e))

        cpt_code = data.get("cpt_code")
        try:
            code = self.billing.get_code(cpt_code)
            modifiers = self.billing.check_modifiers(code, data.get("modifiers"))
            estimate = self.billing.calculate_charge(cpt_code, insurance_type, duration).total
        except BillingError as e:
            raise SchedulingError(str(e))

        conflicts = self.find_conflicts(db, professional_id, scheduled_date, scheduled_time, duration)
        warnings = self._frequency_warnings(db, patient_id, appointment_type, insurance_type, scheduled_date)

        appointment = models.Appointment(
            professional_id=professional_id,
            patient_id=patient_id,
            scheduled_date=scheduled_date,
            scheduled_time=scheduled_time,
            duration_minutes=duration,
            appointment_type=appointment_type,
            location_type=location_type,
            status=AppointmentStatus.scheduled,
            cpt_code=code.code,
            modifiers=modifiers,
            diagnosis_codes=list(data.get("diagnosis_codes") or []),
            insurance_type=insurance_type,
            estimated_reimbursement=estimate,
            copay_amount=data.get("copay_amount"),
            insurance_verified=bool(data.get("insurance_verified", False)),
            prior_auth_required=bool(data.get("prior_auth_required", False)),
            authorization_number=data.get("authorization_number"),
            treatment_goals=list(data.get("treatment_goals") or []),
            session_plan=data.get("session_plan"),
            materials_needed=list(data.get("materials_needed") or []),
            homework_assigned=data.get("homework_assigned"),
            patient_reminder=data.get("patient_reminder", True),
            patient_reminder_hours=data.get("patient_reminder_hours", 24),
            professional_reminder=data.get("professional_reminder", True),
            professional_reminder_minutes=data.get("professional_reminder_minutes", 15),
            notes=data.get("notes"),
            has_conflict=bool(conflicts),
            conflicting_appointment_ids=[a.id for a in conflicts],
            limit_warnings=warnings,
            series_id=series_id,
            created_by=created_by,
        )
        db.add(appointment)
        self._finish(db, commit)

        if conflicts:
            logger.warning("appointment_conflict", appointment_id=appointment.id,
                           conflicts=[a.id for a in conflicts])
        self.audit.log_access("appointment_created", {
            "appointment_id": appointment.id, "patient_id": patient_id, "conflict": bool(conflicts),
        }, created_by)
        return appointment

    def create_from_template(
        self,
        db: Session,
        template_id: str,
        professional_id: int,
        patient_id: str,
        scheduled_date: date,
        scheduled_time: time,
        overrides: Optional[Dict[str, Any]] = None,
        created_by: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> models.Appointment:
        template = APPOINTMENT_TEMPLATES.get(template_id)
        if template is None:
            raise SchedulingError(f"Unknown appointment template: {template_id}")
        data = {key: value for key, value in template.items() if key != "name"}
        data.update(overrides or {})
        data.update({
            "professional_id": professional_id,
            "patient_id": patient_id,
            "scheduled_date": scheduled_date,
            "scheduled_time": scheduled_time,
        })
        return self.create_appointment(db, data, created_by=created_by, now=now)

    def _frequency_warnings(
        self,
        db: Session,
        patient_id: str,
        appointment_type: AppointmentType,
        insurance_type: InsuranceType,
        day: date,
    ) -> List[str]:
        limit = MEDICARE_FREQUENCY_LIMITS.get(appointment_type)
        if insurance_type != InsuranceType.medicare or limit is None:
            return []
        period, maximum = limit
        if period == "week":
            start = day - timedelta(days=day.weekday())
            end = start + timedelta(days=6)
        else:
            start, end = date(day.year, 1, 1), date(day.year, 12, 31)
        existing = db.query(models.Appointment).filter(
            models.Appointment.patient_id == patient_id,
            models.Appointment.appointment_type == appointment_type,
            models.Appointment.scheduled_date >= start,
            models.Appointment.scheduled_date <= end,
            models.Appointment.status.notin_(RELEASED_STATUSES),
        ).count()
        if existing >= maximum:
            return [f"Medicare allows {maximum} {appointment_type.value} visit(s) per {period}; {existing} already booked"]
        return []

    # ---- state machine -------------------------------------------------

    def _transition(self, appointment: models.Appointment, target: AppointmentStatus) -> None:
        if target not in APPOINTMENT_TRANSITIONS[appointment.status]:
            raise InvalidTransition(
                f"Appointment {appointment.id} cannot move from {appointment.status.value} to {target.value}"
            )
        appointment.status = target

    def confirm_appointment(self, db: Session, appointment_id: int, user_id: Optional[int] = None) -> models.Appointment:
        appointment = self.get_appointment(db, appointment_id, lock=True)
        self._transition(appointment, S.confirmed)
        self._finish(db, True)
        self.audit.log_access("appointment_confirmed", {"appointment_id": appointment_id}, user_id)
        return appointment

    def start_appointment(self, db: Session, appointment_id: int, now: Optional[datetime] = None,
                          user_id: Optional[int] = None) -> models.Appointment:
        appointment = self.get_appointment(db, appointment_id, lock=True)
        self._transition(appointment, S.in_progress)
        appointment.actual_start = now or datetime.now(timezone.utc)
        self._finish(db, True)
        self.audit.log_access("appointment_started", {"appointment_id": appointment_id}, user_id)
        return appointment

    def complete_appointment(
        self,
        db: Session,
        appointment_id: int,
        session_summary: str,
        actual_duration: Optional[int] = None,
        now: Optional[datetime] = None,
        user_id: Optional[int] = None,
    ) -> Tuple[models.Appointment, models.Claim]:
        """Close an in-progress session and bill it in the same transaction."""
        now = now or datetime.now(timezone.utc)
        appointment = self.get_appointment(db, appointment_id, lock=True)
        if S.completed not in APPOINTMENT_TRANSITIONS[appointment.status]:
            raise InvalidTransition(
                f"Appointment {appointment_id} must be in_progress to complete (is {appointment.status.value})"
            )

        if actual_duration is None:
            started = _utc(appointment.actual_start) if appointment.actual_start else None
            actual_duration = int((_utc(now) - started).total_seconds() // 60) if started else appointment.duration_minutes
        if actual_duration < self.settings.min_billable_minutes:
            raise SchedulingError(
                f"Session lasted {actual_duration} min; at least {self.settings.min_billable_minutes} min is billable"
            )

        self._transition(appointment, S.completed)
        appointment.actual_end = now
        appointment.actual_duration_minutes = actual_duration
        appointment.session_summary = session_summary
        appointment.archived_at = now

        try:
            session = self.billing.create_billing_session(
                db,
                patient_id=appointment.patient_id,
                cpt_code=appointment.cpt_code,
                duration_minutes=actual_duration,
                provider_id=appointment.professional_id,
                service_date=appointment.scheduled_date,
                modifiers=appointment.modifiers,
                diagnosis_codes=appointment.diagnosis_codes,
                notes=session_summary,
                appointment_id=appointment.id,
                commit=False,
            )
            claim = self.billing.generate_claim(db, session.id, appointment.insurance_type,
                                                user_id=user_id, commit=False)
            db.commit()
        except (BillingError, SQLAlchemyError):
            db.rollback()
            raise

        self.audit.log_access("appointment_completed", {
            "appointment_id": appointment_id, "claim_id": claim.id, "duration": actual_duration,
        }, user_id)
        logger.info("appointment_completed", appointment_id=appointment_id, claim_id=claim.id)
        return appointment, claim

    def cancel_appointment(
        self,
        db: Session,
        appointment_id: int,
        reason: str,
        cancelled_by: str = "professional",
        now: Optional[datetime] = None,
        user_id: Optional[int] = None,
        commit: bool = True,
    ) -> models.Appointment:
        if not (reason or "").strip():
            raise SchedulingError("A cancellation reason is required")
        now = now or datetime.now()
        appointment = self.get_appointment(db, appointment_id, lock=True)
        self._transition(appointment, S.cancelled)

        starts_at = datetime.combine(appointment.scheduled_date, appointment.scheduled_time)
        hours_notice = (starts_at - now.replace(tzinfo=None)).total_seconds() / 3600
        appointment.cancellation_reason = reason.strip()
        appointment.cancelled_by = cancelled_by
        appointment.cancelled_at = now
        appointment.archived_at = now
        appointment.late_cancellation = cancelled_by == "patient" and hours_notice < self.settings.late_cancellation_hours
        self._finish(db, commit)

        self.audit.log_access("appointment_cancelled", {
            "appointment_id": appointment_id, "cancelled_by": cancelled_by,
            "late": appointment.late_cancellation,
        }, user_id)
        return appointment

    def mark_no_show(self, db: Session, appointment_id: int, user_id: Optional[int] = None) -> models.Appointment:
        appointment = self.get_appointment(db, appointment_id, lock=True)
        self._transition(appointment, S.no_show)
        self._finish(db, True)
        self.audit.log_access("appointment_no_show", {"appointment_id": appointment_id}, user_id)
        return appointment

    def reschedule_appointment(
        self,
        db: Session,
        appointment_id: int,
        new_date: date,
        new_time: time,
        now: Optional[datetime] = None,
        user_id: Optional[int] = None,
    ) -> models.Appointment:
        now = now or datetime.now()
        if new_date < now.date():
            raise SchedulingError("Appointments cannot be rescheduled into the past")
        appointment = self.get_appointment(db, appointment_id, lock=True)
        self._transition(appointment, S.rescheduled)

        conflicts = self.find_conflicts(db, appointment.professional_id, new_date, new_time,
                                        appointment.duration_minutes, exclude_id=appointment.id)
        appointment.scheduled_date = new_date
        appointment.scheduled_time = new_time
        appointment.has_conflict = bool(conflicts)
        appointment.conflicting_appointment_ids = [a.id for a in conflicts]
        appointment.patient_reminder_sent = False
        appointment.professional_reminder_sent = False
        self._finish(db, True)

        self.audit.log_access("appointment_rescheduled", {
            "appointment_id": appointment_id, "new_date": new_date.isoformat(), "conflict": bool(conflicts),
        }, user_id)
        return appointment

    # ---- calendar views ------------------------------------------------

    def get_available_slots(self, db: Session, professional_id: int, day: date, duration_minutes: int) -> List[time]:
        if is_holiday(day) or duration_minutes <= 0:
            return []
        s = self.settings
        day_start, day_end = _minutes(s.working_day_start), _minutes(s.working_day_end)
        lunch = (_minutes(s.lunch_start), _minutes(s.lunch_end))
        busy = [
            (_minutes(a.scheduled_time), _minutes(a.scheduled_time) + a.duration_minutes)
            for a in db.query(models.Appointment).filter(
                models.Appointment.professional_id == professional_id,
                models.Appointment.scheduled_date == day,
                models.Appointment.status.notin_(RELEASED_STATUSES),
            ).all()
        ]

        slots = []
        for start in range(day_start, day_end, s.slot_minutes):
            end = start + duration_minutes
            if end > day_end or _overlaps(start, end, *lunch):
                continue
            if any(_overlaps(start, end, b_start, b_end) for b_start, b_end in busy):
                continue
            slots.append(_from_minutes(start))
        return slots

    def _group_by_day(self, appointments: Iterable[models.Appointment], days: Iterable[date]) -> Dict[date, List[models.Appointment]]:
        grouped: Dict[date, List[models.Appointment]] = {d: [] for d in days}
        for appointment in appointments:
            grouped.setdefault(appointment.scheduled_date, []).append(appointment)
        return grouped

    def get_day_view(self, db: Session, professional_id: int, day: date, slot_duration: int = 30) -> Dict[str, Any]:
        return {
            "date": day,
            "is_holiday": is_holiday(day),
            "appointments": self.list_appointments(db, professional_id, start=day, end=day),
            "available_slots": self.get_available_slots(db, professional_id, day, slot_duration),
        }

    def get_week_view(self, db: Session, professional_id: int, day: date) -> Dict[str, Any]:
        week_start = day - timedelta(days=day.weekday())
        days = [week_start + timedelta(days=i) for i in range(7)]
        appointments = self.list_appointments(db, professional_id, start=days[0], end=days[-1])
        return {"week_start": week_start, "days": self._group_by_day(appointments, days)}

    def get_month_view(self, db: Session, professional_id: int, year: int, month: int) -> Dict[str, Any]:
        last = calendar.monthrange(year, month)[1]
        days = [date(year, month, d) for d in range(1, last + 1)]
        appointments = self.list_appointments(db, professional_id, start=days[0], end=days[-1])
        return {"year": year, "month": month, "days": self._group_by_day(appointments, days)}

    # ---- recurring series ----------------------------------------------

    def create_recurring_appointments(
        self,
        db: Session,
        data: Dict[str, Any],
        rule: RecurrencePattern,
        created_by: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        if rule.end_date is None and rule.max_occurrences is None:
            raise SchedulingError("A recurring series needs an end date or a maximum number of occurrences")
        first: date = data["scheduled_date"]
        limit = min(rule.max_occurrences or MAX_SERIES_OCCURRENCES, MAX_SERIES_OCCURRENCES)
        if rule.pattern == "weekly" and rule.days_of_week:
            # start on the first listed weekday on or after the requested date
            while first.weekday() not in rule.days_of_week:
                first += timedelta(days=1)

        series_id = f"series_{secrets.token_hex(6)}"
        exceptions = set(rule.exceptions)
        created: List[models.Appointment] = []
        skipped: List[Dict[str, Any]] = []
        failed: List[Dict[str, Any]] = []

        current, count = first, 0
        while count < limit and (rule.end_date is None or current <= rule.end_date):
            count += 1
            if current in exceptions:
                skipped.append({"date": current, "reason": "exception"})
            elif rule.skip_holidays and is_holiday(current):
                skipped.append({"date": current, "reason": "holiday"})
            elif not rule.allow_conflicts and self.find_conflicts(
                    db, data["professional_id"], current, data["scheduled_time"], data["duration_minutes"]):
                skipped.append({"date": current, "reason": "conflict"})
            else:
                try:
                    occurrence = {**data, "scheduled_date": current}
                    created.append(self.create_appointment(
                        db, occurrence, created_by=created_by, now=now, series_id=series_id, commit=False))
                except SchedulingError as e:
                    failed.append({"date": current, "reason": str(e)})
            current = next_occurrence(current, rule, data["scheduled_date"].day)

        self._finish(db, True)
        logger.info("recurring_series_created", series_id=series_id, created=len(created),
                    skipped=len(skipped), failed=len(failed))
        return {"series_id": series_id, "created": created, "skipped": skipped, "failed": failed}

    def cancel_series(
        self,
        db: Session,
        series_id: str,
        scope: str = "all",
        reason: str = "Series cancelled",
        cancelled_by: str = "professional",
        now: Optional[datetime] = None,
        user_id: Optional[int] = None,
    ) -> int:
        if scope not in ("all", "future"):
            raise SchedulingError(f"Unknown series scope: {scope}")
        now = now or datetime.now()
        query = db.query(models.Appointment).filter(models.Appointment.series_id == series_id)
        if scope == "future":
            query = query.filter(models.Appointment.scheduled_date >= now.date())
        cancelled = 0
        for appointment in query.all():
            if S.cancelled in APPOINTMENT_TRANSITIONS[appointment.status]:
                self.cancel_appointment(db, appointment.id, reason, cancelled_by, now=now,
                                        user_id=user_id, commit=False)
                cancelled += 1
        self._finish(db, True)
        return cancelled

    # ---- reminders -----------------------------------------------------

    def send_due_reminders(self, db: Session, now: Optional[datetime] = None) -> int:
        """Send patient and professional reminders whose lead time has arrived."""
        now = (now or datetime.now()).replace(tzinfo=None)
        horizon = now.date() + timedelta(days=7)
        upcoming = db.query(models.Appointment).filter(
            models.Appointment.status.in_(BOOKED_STATUSES),
            models.Appointment.scheduled_date >= now.date(),
            models.Appointment.scheduled_date <= horizon,
        ).all()

        sent = 0
        for appointment in upcoming:
            starts_at = datetime.combine(appointment.scheduled_date, appointment.scheduled_time)
            if starts_at <= now:
                continue
            when = f"{appointment.scheduled_date:%b %d} at {appointment.scheduled_time:%H:%M}"

            if (appointment.patient_reminder and not appointment.patient_reminder_sent
                    and now >= starts_at - timedelta(hours=appointment.patient_reminder_hours or 0)):
                patient = self.patients.get_patient(db, appointment.patient_id)
                message = f"Reminder: you have a therapy appointment on {when}."
                if patient.get("phone"):
                    self.notifier.send_sms(patient["phone"], message)
                elif patient.get("email"):
                    self.notifier.send_email(patient["email"], "Appointment reminder", message)
                appointment.patient_reminder_sent = True
                sent += 1

            if (appointment.professional_reminder and not appointment.professional_reminder_sent
                    and now >= starts_at - timedelta(minutes=appointment.professional_reminder_minutes or 0)):
                professional = appointment.professional
                message = f"Upcoming session at {appointment.scheduled_time:%H:%M} ({appointment.appointment_type.value})."
                if professional.phone_number:
                    self.notifier.send_sms(professional.phone_number, message)
                else:
                    self.notifier.send_email(professional.email, "Upcoming session", message)
                appointment.professional_reminder_sent = True
                sent += 1

        self._finish(db, True)
        return sent

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
