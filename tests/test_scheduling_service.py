# tests/test_scheduling_service.py
from datetime import date, datetime, time, timedelta
from decimal import Decimal

import pytest

from aac_practice.models import AppointmentStatus, AppointmentType, ClaimStatus
from aac_practice.services.scheduling_service import (
    AppointmentNotFound, InvalidTransition, RecurrencePattern, SchedulingError, next_occurrence,
)


def _book(db, services, data, **overrides):
    return services.scheduling.create_appointment(db, {**data, **overrides})


class TestBooking:
    def test_create_appointment_estimates_reimbursement(self, db, services, appointment_data):
        appointment = _book(db, services, appointment_data)
        assert appointment.status == AppointmentStatus.scheduled
        assert appointment.estimated_reimbursement == Decimal("342.00")
        assert appointment.has_conflict is False
        assert appointment.conflicting_appointment_ids == []

    def test_overlap_is_flagged_not_rejected(self, db, services, appointment_data):
        first = _book(db, services, appointment_data)
        second = _book(db, services, appointment_data, scheduled_time=time(9, 30), duration_minutes=30)
        assert second.has_conflict is True
        assert second.conflicting_appointment_ids == [first.id]

        # back-to-back is not a conflict
        third = _book(db, services, appointment_data, scheduled_time=time(10, 0), duration_minutes=30)
        assert third.has_conflict is False

    def test_cancelled_appointments_do_not_conflict(self, db, services, appointment_data):
        first = _book(db, services, appointment_data)
        services.scheduling.cancel_appointment(db, first.id, "Family emergency")
        assert _book(db, services, appointment_data).has_conflict is False

    def test_validation(self, db, services, appointment_data):
        with pytest.raises(SchedulingError, match="not found"):
            _book(db, services, appointment_data, patient_id="pt_missing")
        with pytest.raises(SchedulingError, match="Professional"):
            _book(db, services, appointment_data, professional_id=999)
        with pytest.raises(SchedulingError, match="past"):
            _book(db, services, appointment_data, scheduled_date=date.today() - timedelta(days=1))
        with pytest.raises(SchedulingError, match="Duration"):
            _book(db, services, appointment_data, duration_minutes=0)
        with pytest.raises(SchedulingError, match="Invalid service type"):
            _book(db, services, appointment_data, cpt_code="00000")
        with pytest.raises(SchedulingError, match="not allowed"):
            _book(db, services, appointment_data, modifiers=["KX"])

    def test_medicare_weekly_limit_warns(self, db, services, appointment_data):
        for hour in (8, 10, 14):
            assert _book(db, services, appointment_data, scheduled_time=time(hour, 0)).limit_warnings == []
        fourth = _book(db, services, appointment_data, scheduled_time=time(15, 0))
        assert fourth.limit_warnings
        assert "3" in fourth.limit_warnings[0]

    def test_template(self, db, services, therapist, patient, monday):
        appointment = services.scheduling.create_from_template(
            db, "eval_initial", therapist.id, patient["patient_id"], monday, time(13, 0))
        assert appointment.appointment_type == AppointmentType.evaluation
        assert appointment.cpt_code == "92523"
        assert appointment.duration_minutes == 60

        with pytest.raises(SchedulingError):
            services.scheduling.create_from_template(
                db, "nope", therapist.id, patient["patient_id"], monday, time(13, 0))


class TestLifecycle:
    def test_complete_generates_claim(self, db, services, appointment_data):
        appointment = _book(db, services, appointment_data)
        services.scheduling.confirm_appointment(db, appointment.id)
        started = services.scheduling.start_appointment(db, appointment.id)
        assert started.actual_start is not None

        completed, claim = services.scheduling.complete_appointment(
            db, appointment.id, "Worked on core vocabulary", actual_duration=60)
        assert completed.status == AppointmentStatus.completed
        assert completed.archived_at is not None
        assert completed.actual_duration_minutes == 60
        assert claim.status == ClaimStatus.submitted
        assert claim.appointment_id == appointment.id
        assert claim.total_charge == Decimal("342.00")

    def test_complete_requires_in_progress(self, db, services, appointment_data):
        appointment = _book(db, services, appointment_data)
        with pytest.raises(InvalidTransition):
            services.scheduling.complete_appointment(db, appointment.id, "summary", actual_duration=30)
        assert services.scheduling.get_appointment(db, appointment.id).status == AppointmentStatus.scheduled

    def test_complete_rejects_unbillable_duration(self, db, services, appointment_data):
        appointment = _book(db, services, appointment_data)
        services.scheduling.confirm_appointment(db, appointment.id)
        services.scheduling.start_appointment(db, appointment.id)
        with pytest.raises(SchedulingError, match="billable"):
            services.scheduling.complete_appointment(db, appointment.id, "summary", actual_duration=5)

    def test_complete_uses_elapsed_time(self, db, services, appointment_data):
        appointment = _book(db, services, appointment_data)
        services.scheduling.confirm_appointment(db, appointment.id)
        start = datetime(2030, 1, 7, 9, 0)
        services.scheduling.start_appointment(db, appointment.id, now=start)
        completed, claim = services.scheduling.complete_appointment(
            db, appointment.id, "summary", now=start + timedelta(minutes=31))
        assert completed.actual_duration_minutes == 31
        assert claim.units == 3

    def test_terminal_states(self, db, services, appointment_data):
        appointment = _book(db, services, appointment_data)
        services.scheduling.cancel_appointment(db, appointment.id, "Sick")
        with pytest.raises(InvalidTransition):
            services.scheduling.confirm_appointment(db, appointment.id)
        with pytest.raises(InvalidTransition):
            services.scheduling.cancel_appointment(db, appointment.id, "Again")

    def test_cancel_requires_reason(self, db, services, appointment_data):
        appointment = _book(db, services, appointment_data)
        with pytest.raises(SchedulingError, match="reason"):
            services.scheduling.cancel_appointment(db, appointment.id, " ")

    def test_late_cancellation_only_for_patient_inside_window(self, db, services, appointment_data, monday):
        starts = datetime.combine(monday, time(9, 0))
        late = _book(db, services, appointment_data)
        late = services.scheduling.cancel_appointment(
            db, late.id, "Overslept", cancelled_by="patient", now=starts - timedelta(hours=2))
        assert late.late_cancellation is True
        assert late.archived_at is not None

        by_professional = _book(db, services, appointment_data)
        by_professional = services.scheduling.cancel_appointment(
            db, by_professional.id, "Therapist ill", cancelled_by="professional", now=starts - timedelta(hours=2))
        assert by_professional.late_cancellation is False

        early = _book(db, services, appointment_data)
        early = services.scheduling.cancel_appointment(
            db, early.id, "Travel", cancelled_by="patient", now=starts - timedelta(days=3))
        assert early.late_cancellation is False

    def test_no_show_can_be_rescheduled(self, db, services, appointment_data, monday):
        appointment = _book(db, services, appointment_data)
        services.scheduling.mark_no_show(db, appointment.id)
        moved = services.scheduling.reschedule_appointment(db, appointment.id, monday + timedelta(days=1), time(10, 0))
        assert moved.status == AppointmentStatus.rescheduled
        assert moved.scheduled_date == monday + timedelta(days=1)
        assert moved.patient_reminder_sent is False

    def test_reschedule_ignores_itself_when_checking_conflicts(self, db, services, appointment_data, monday):
        appointment = _book(db, services, appointment_data)
        moved = services.scheduling.reschedule_appointment(db, appointment.id, monday, time(9, 30))
        assert moved.has_conflict is False

        other = _book(db, services, appointment_data, scheduled_time=time(14, 0))
        clash = services.scheduling.reschedule_appointment(db, other.id, monday, time(10, 0))
        assert clash.has_conflict is True
        assert clash.conflicting_appointment_ids == [appointment.id]

    def test_missing_appointment(self, db, services):
        with pytest.raises(AppointmentNotFound):
            services.scheduling.confirm_appointment(db, 404)


class TestCalendar:
    def test_slots_skip_lunch_and_bookings(self, db, services, appointment_data, therapist, monday):
        slots = services.scheduling.get_available_slots(db, therapist.id, monday, 30)
        assert slots[0] == time(8, 0)
        assert slots[-1] == time(16, 30)
        assert time(11, 30) in slots
        assert time(11, 45) not in slots
        assert time(12, 30) not in slots
        assert time(13, 0) in slots
        assert len(slots) == 30

        _book(db, services, appointment_data)
        booked = services.scheduling.get_available_slots(db, therapist.id, monday, 30)
        assert len(booked) == 25
        assert time(8, 30) in booked
        assert time(8, 45) not in booked
        assert time(10, 0) in booked

    def test_no_slots_on_holidays(self, db, services, therapist):
        assert services.scheduling.get_available_slots(db, therapist.id, date(2031, 12, 25), 30) == []

    def test_week_and_month_views(self, db, services, appointment_data, therapist, monday):
        _book(db, services, appointment_data)
        _book(db, services, appointment_data, scheduled_date=monday + timedelta(days=2))

        week = services.scheduling.get_week_view(db, therapist.id, monday + timedelta(days=3))
        assert week["week_start"] == monday
        assert len(week["days"]) == 7
        assert len(week["days"][monday]) == 1
        assert len(week["days"][monday + timedelta(days=2)]) == 1

        month = services.scheduling.get_month_view(db, therapist.id, monday.year, 3)
        assert len(month["days"]) == 31
        assert sum(len(v) for v in month["days"].values()) == 2

        day = services.scheduling.get_day_view(db, therapist.id, monday)
        assert len(day["appointments"]) == 1
        assert day["is_holiday"] is False


class TestRecurring:
    def test_weekly_on_selected_days(self, db, services, appointment_data, monday):
        rule = RecurrencePattern("weekly", days_of_week=[0, 2], max_occurrences=4)
        result = services.scheduling.create_recurring_appointments(db, appointment_data, rule)
        dates = [a.scheduled_date for a in result["created"]]
        assert dates == [monday, monday + timedelta(days=2), monday + timedelta(days=7), monday + timedelta(days=9)]
        assert len({a.series_id for a in result["created"]}) == 1
        assert result["series_id"].startswith("series_")

    def test_exceptions_and_holidays_are_skipped(self, db, services, appointment_data, monday):
        rule = RecurrencePattern("weekly", max_occurrences=3, exceptions=[monday + timedelta(days=7)])
        result = services.scheduling.create_recurring_appointments(db, appointment_data, rule)
        assert len(result["created"]) == 2
        assert result["skipped"] == [{"date": monday + timedelta(days=7), "reason": "exception"}]

        christmas_eve = date(monday.year, 12, 24)
        daily = RecurrencePattern("daily", max_occurrences=3)
        result = services.scheduling.create_recurring_appointments(
            db, {**appointment_data, "scheduled_date": christmas_eve}, daily)
        assert [a.scheduled_date for a in result["created"]] == [christmas_eve, christmas_eve + timedelta(days=2)]
        assert result["skipped"][0]["reason"] == "holiday"

    def test_conflicting_occurrences_are_skipped(self, db, services, appointment_data, monday):
        _book(db, services, appointment_data, scheduled_date=monday + timedelta(days=14))
        rule = RecurrencePattern("biweekly", max_occurrences=3)
        result = services.scheduling.create_recurring_appointments(db, appointment_data, rule)
        assert [a.scheduled_date for a in result["created"]] == [monday, monday + timedelta(days=28)]
        assert result["skipped"][0]["reason"] == "conflict"

    def test_series_needs_a_bound(self, db, services, appointment_data):
        with pytest.raises(SchedulingError):
            services.scheduling.create_recurring_appointments(db, appointment_data, RecurrencePattern("weekly"))

    def test_monthly_clamps_to_month_end(self):
        rule = RecurrencePattern("monthly")
        assert next_occurrence(date(2031, 1, 31), rule, 31) == date(2031, 2, 28)
        assert next_occurrence(date(2031, 2, 28), rule, 31) == date(2031, 3, 31)

    def test_cancel_series(self, db, services, appointment_data, monday):
        rule = RecurrencePattern("weekly", end_date=monday + timedelta(days=21))
        result = services.scheduling.create_recurring_appointments(db, appointment_data, rule)
        assert len(result["created"]) == 4

        cancelled = services.scheduling.cancel_series(
            db, result["series_id"], scope="future", now=datetime.combine(monday + timedelta(days=8), time(0, 0)))
        assert cancelled == 2
        assert services.scheduling.cancel_series(db, result["series_id"], scope="all") == 2


class TestReminders:
    def test_due_reminders_are_sent_once(self, db, services, notifier, appointment_data, monday):
        _book(db, services, appointment_data)
        now = datetime.combine(monday, time(7, 0))

        assert services.scheduling.send_due_reminders(db, now=now) == 1
        assert notifier.sent[-1][0] == "sms"
        assert notifier.sent[-1][1] == "+15550111"
        assert services.scheduling.send_due_reminders(db, now=now) == 0

        # professional reminder fires 15 minutes before
        assert services.scheduling.send_due_reminders(db, now=datetime.combine(monday, time(8, 50))) == 1
        assert notifier.sent[-1][1] == "+15550100"

    def test_nothing_due_far_ahead(self, db, services, appointment_data, monday):
        _book(db, services, appointment_data)
        assert services.scheduling.send_due_reminders(db, now=datetime.combine(monday - timedelta(days=5), time(9))) == 0
