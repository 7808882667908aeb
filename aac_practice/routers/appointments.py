# aac_practice/routers/appointments.py
from datetime import date, time
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from .. import schemas, security, models
from ..database import get_db
from ..dependencies import Services, get_services
from ..models import AppointmentStatus
from ..services.billing_service import BillingError
from ..services.patient_service import PatientRecordError
from ..services.scheduling_service import (
    AppointmentNotFound, RecurrencePattern, SchedulingError, APPOINTMENT_TEMPLATES,
)

import logging

logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["Appointments"],
    dependencies=[Depends(security.require_clinical)],
    responses={404: {"description": "Not found"}},
)


def _raise_for(e: Exception):
    if isinstance(e, AppointmentNotFound):
        raise HTTPException(status_code=404, detail=str(e))
    raise HTTPException(status_code=400, detail=str(e))


@router.post("/appointments", response_model=schemas.AppointmentResponse, status_code=status.HTTP_201_CREATED)
def create_appointment(
    appointment: schemas.AppointmentCreate,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
    current_user: models.User = Depends(security.get_current_user),
):
    """
    Book an appointment. Overlapping bookings are accepted and flagged with has_conflict.
    """
    try:
        return services.scheduling.create_appointment(db, appointment.model_dump(), created_by=current_user.id)
    except SchedulingError as e:
        _raise_for(e)

@router.get("/appointments/templates")
def list_appointment_templates():
    return {
        template_id: {**template, "appointment_type": template["appointment_type"].value}
        for template_id, template in APPOINTMENT_TEMPLATES.items()
    }

@router.post("/appointments/from-template", response_model=schemas.AppointmentResponse,
             status_code=status.HTTP_201_CREATED)
def create_from_template(
    request: schemas.AppointmentFromTemplate,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
    current_user: models.User = Depends(security.get_current_user),
):
    try:
        return services.scheduling.create_from_template(
            db, request.template_id, request.professional_id, request.patient_id,
            request.scheduled_date, request.scheduled_time, request.overrides,
            created_by=current_user.id,
        )
    except SchedulingError as e:
        _raise_for(e)

@router.post("/appointments/recurring", response_model=schemas.RecurringSeriesResponse,
             status_code=status.HTTP_201_CREATED)
def create_recurring_appointments(
    request: schemas.RecurrenceRequest,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
    current_user: models.User = Depends(security.get_current_user),
):
    rule = RecurrencePattern(
        pattern=request.pattern,
        frequency=request.frequency,
        days_of_week=request.days_of_week,
        end_date=request.end_date,
        max_occurrences=request.max_occurrences,
        exceptions=request.exceptions,
        skip_holidays=request.skip_holidays,
        allow_conflicts=request.allow_conflicts,
    )
    try:
        return services.scheduling.create_recurring_appointments(
            db, request.appointment.model_dump(), rule, created_by=current_user.id)
    except SchedulingError as e:
        _raise_for(e)

@router.post("/appointments/series/{series_id}/cancel")
def cancel_series(
    series_id: str,
    request: schemas.AppointmentCancel,
    scope: str = Query("all", pattern="^(all|future)$"),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
    current_user: models.User = Depends(security.get_current_user),
):
    try:
        cancelled = services.scheduling.cancel_series(
            db, series_id, scope, request.reason, request.cancelled_by, user_id=current_user.id)
    except SchedulingError as e:
        _raise_for(e)
    return {"series_id": series_id, "cancelled": cancelled}

@router.get("/appointments", response_model=List[schemas.AppointmentResponse])
def read_appointments(
    professional_id: Optional[int] = None,
    patient_id: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    status: Optional[AppointmentStatus] = None,
    include_archived: bool = True,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    return services.scheduling.list_appointments(
        db, professional_id, patient_id, start_date, end_date, status, include_archived)

@router.get("/appointments/slots", response_model=List[time])
def read_available_slots(
    professional_id: int,
    day: date,
    duration: int = Query(30, gt=0, le=480),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    return services.scheduling.get_available_slots(db, professional_id, day, duration)

@router.get("/appointments/calendar/day", response_model=schemas.DayViewResponse)
def read_day_view(
    professional_id: int,
    day: date,
    slot_duration: int = Query(30, gt=0, le=480),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    return services.scheduling.get_day_view(db, professional_id, day, slot_duration)

@router.get("/appointments/calendar/week", response_model=schemas.CalendarViewResponse)
def read_week_view(
    professional_id: int,
    day: date,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    return services.scheduling.get_week_view(db, professional_id, day)

@router.get("/appointments/calendar/month", response_model=schemas.CalendarViewResponse)
def read_month_view(
    professional_id: int,
    year: int = Query(..., ge=2000, le=2100),
    month: int = Query(..., ge=1, le=12),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    return services.scheduling.get_month_view(db, professional_id, year, month)

@router.post("/appointments/reminders/send", dependencies=[Depends(security.require_admin)])
def send_due_reminders(db: Session = Depends(get_db), services: Services = Depends(get_services)):
    try:
        sent = services.scheduling.send_due_reminders(db)
    except PatientRecordError as e:
        raise HTTPException(status_code=400, detail=str(e))
    logger.info(f"Sent {sent} appointment reminders")
    return {"sent": sent}

@router.get("/appointments/{appointment_id}", response_model=schemas.AppointmentResponse)
def read_appointment(appointment_id: int, db: Session = Depends(get_db), services: Services = Depends(get_services)):
    try:
        return services.scheduling.get_appointment(db, appointment_id)
    except SchedulingError as e:
        _raise_for(e)

@router.post("/appointments/{appointment_id}/confirm", response_model=schemas.AppointmentResponse)
def confirm_appointment(
    appointment_id: int,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
    current_user: models.User = Depends(security.get_current_user),
):
    try:
        return services.scheduling.confirm_appointment(db, appointment_id, current_user.id)
    except SchedulingError as e:
        _raise_for(e)

@router.post("/appointments/{appointment_id}/start", response_model=schemas.AppointmentResponse)
def start_appointment(
    appointment_id: int,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
    current_user: models.User = Depends(security.get_current_user),
):
    try:
        return services.scheduling.start_appointment(db, appointment_id, user_id=current_user.id)
    except SchedulingError as e:
        _raise_for(e)

@router.post("/appointments/{appointment_id}/complete", response_model=schemas.CompletionResponse)
def complete_appointment(
    appointment_id: int,
    request: schemas.AppointmentComplete,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
    current_user: models.User = Depends(security.get_current_user),
):
    """
    Close the session and submit its claim in one transaction.
    """
    try:
        appointment, claim = services.scheduling.complete_appointment(
            db, appointment_id, request.session_summary, request.actual_duration, user_id=current_user.id)
    except (SchedulingError, BillingError) as e:
        _raise_for(e)
    return {"appointment": appointment, "claim": claim}

@router.post("/appointments/{appointment_id}/cancel", response_model=schemas.AppointmentResponse)
def cancel_appointment(
    appointment_id: int,
    request: schemas.AppointmentCancel,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
    current_user: models.User = Depends(security.get_current_user),
):
    try:
        return services.scheduling.cancel_appointment(
            db, appointment_id, request.reason, request.cancelled_by, user_id=current_user.id)
    except SchedulingError as e:
        _raise_for(e)

@router.post("/appointments/{appointment_id}/no-show", response_model=schemas.AppointmentResponse)
def mark_no_show(
    appointment_id: int,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
    current_user: models.User = Depends(security.get_current_user),
):
    try:
        return services.scheduling.mark_no_show(db, appointment_id, current_user.id)
    except SchedulingError as e:
        _raise_for(e)

@router.post("/appointments/{appointment_id}/reschedule", response_model=schemas.AppointmentResponse)
def reschedule_appointment(
    appointment_id: int,
    request: schemas.AppointmentReschedule,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
    current_user: models.User = Depends(security.get_current_user),
):
    try:
        return services.scheduling.reschedule_appointment(
            db, appointment_id, request.new_date, request.new_time, user_id=current_user.id)
    except SchedulingError as e:
        _raise_for(e)
