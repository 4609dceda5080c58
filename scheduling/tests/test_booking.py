"""
Tests for the booking and release services.

They exercise capacity accounting on a single process: every booking
takes exactly one unit, every release of a live appointment gives one
back, and failures leave nothing behind.
"""
import logging
from datetime import timedelta

import pytest
from django.db import DatabaseError, IntegrityError, transaction
from django.db.models.query import QuerySet

from scheduling.exceptions import InvalidTransition, InvariantViolation, NoScheduleAvailable, NotFound, SlotUnavailable
from scheduling.models import Appointment, AppointmentTransition, AuditEvent, Schedule, TimeSlot
from scheduling.services import booking
from scheduling.services.audit import history
from scheduling.services.availability import is_bookable, list_available_start_times
from scheduling.services.booking import (
    book_slot,
    cancel_appointment,
    change_status,
    delete_appointment,
    release_appointment_slot,
    release_slot,
    reschedule_appointment,
)
from scheduling.services.schedule_store import find_schedule_by_doctor_and_date

pytestmark = pytest.mark.django_db

DETAILS = {'reason': 'Annual check'}


def live_count(doctor, day, start_time):
    return Appointment.objects.filter(
        doctor=doctor, appointment_date=day, appointment_time=start_time, status__in=Appointment.LIVE_STATUSES
    ).count()


def test_capacity_two_walkthrough(doctor, make_patient, make_schedule, slot_of, day):
    schedule = make_schedule(doctor, day, slots=[('10:00', '10:30', 2)])
    a, b, c = make_patient('pa'), make_patient('pb'), make_patient('pc')

    appt_a = book_slot(a, doctor.id, day, '10:00', DETAILS)
    book_slot(b, doctor.id, day, '10:00', DETAILS)
    slot = slot_of(schedule, '10:00')
    assert (slot.current_patients, slot.is_available) == (2, False)

    with pytest.raises(SlotUnavailable):
        book_slot(c, doctor.id, day, '10:00', DETAILS)
    assert Appointment.objects.filter(patient=c).count() == 0

    cancel_appointment(appt_a.id, actor=a, reason='cannot make it')
    slot.refresh_from_db()
    assert (slot.current_patients, slot.is_available) == (1, True)

    book_slot(c, doctor.id, day, '10:00', DETAILS)
    slot.refresh_from_db()
    assert (slot.current_patients, slot.is_available) == (2, False)
    assert live_count(doctor, day, '10:00') == 2


def test_booking_creates_scheduled_appointment_with_doctor_fee(doctor, patient, make_schedule, day):
    make_schedule(doctor, day, consultation_fee='80.00')
    appt = book_slot(patient, doctor.id, day, '09:00', {'reason': 'Back pain', 'symptoms': ['ache']})
    assert appt.status == Appointment.STATUS_SCHEDULED
    assert appt.consultation_fee == doctor.consultation_fee
    assert appt.symptoms == ['ache']
    assert appt.transitions.get().to_status == Appointment.STATUS_SCHEDULED
    assert AuditEvent.objects.filter(action='appointment_book', object_id=appt.id).exists()


def test_fee_falls_back_to_schedule(other_doctor, patient, make_schedule, day):
    make_schedule(other_doctor, day, consultation_fee='80.00')
    appt = book_slot(patient, other_doctor.id, day, '09:00', DETAILS)
    assert str(appt.consultation_fee) == '80.00'


def test_unpadded_time_matches_padded_slot(doctor, patient, make_schedule, slot_of, day):
    schedule = make_schedule(doctor, day)
    appt = book_slot(patient, doctor.id, day, '9:00', DETAILS)
    assert appt.appointment_time == '09:00'
    assert slot_of(schedule).current_patients == 1


@pytest.mark.parametrize('make_doctor', ['missing', 'inactive', 'not_a_doctor'])
def test_unknown_or_unbookable_doctor(make_doctor, doctor, patient, make_schedule, day):
    make_schedule(doctor, day)
    if make_doctor == 'missing':
        doctor_id = doctor.id + 1000
    elif make_doctor == 'inactive':
        doctor.is_active = False
        doctor.save(update_fields=['is_active'])
        doctor_id = doctor.id
    else:
        doctor_id = patient.id
    with pytest.raises(NotFound):
        book_slot(patient, doctor_id, day, '09:00', DETAILS)
    assert not Appointment.objects.exists()


def test_no_active_schedule(doctor, patient, make_schedule, day):
    with pytest.raises(NoScheduleAvailable):
        book_slot(patient, doctor.id, day, '09:00', DETAILS)
    make_schedule(doctor, day, status=Schedule.STATUS_INACTIVE)
    with pytest.raises(NoScheduleAvailable):
        book_slot(patient, doctor.id, day, '09:00', DETAILS)


def test_unknown_time_and_closed_slot_are_unavailable(doctor, patient, make_schedule, slot_of, day):
    schedule = make_schedule(doctor, day, slots=[('09:00', '09:30', 3), ('09:30', '10:00', 3)])
    with pytest.raises(SlotUnavailable):
        book_slot(patient, doctor.id, day, '09:15', DETAILS)
    TimeSlot.objects.filter(pk=slot_of(schedule, '09:30').pk).update(is_available=False)
    with pytest.raises(SlotUnavailable):
        book_slot(patient, doctor.id, day, '09:30', DETAILS)
    assert not Appointment.objects.exists()
    assert [s.current_patients for s in schedule.time_slots.all()] == [0, 0]


def test_first_slot_with_matching_start_time_wins(doctor, make_patient, make_schedule, day):
    schedule = make_schedule(doctor, day, slots=[('09:00', '09:30', 1), ('09:00', '09:30', 1)])
    book_slot(make_patient('p1'), doctor.id, day, '09:00', DETAILS)
    first, second = schedule.time_slots.all()
    assert (first.current_patients, second.current_patients) == (1, 0)
    assert not is_bookable(schedule, '09:00')
    with pytest.raises(SlotUnavailable):
        book_slot(make_patient('p2'), doctor.id, day, '09:00', DETAILS)


def test_counter_matches_live_appointments(doctor, make_patient, make_schedule, slot_of, day):
    schedule = make_schedule(doctor, day, slots=[('09:00', '09:30', 4)])
    appts = [book_slot(make_patient(f'p{i}'), doctor.id, day, '09:00', DETAILS) for i in range(4)]
    cancel_appointment(appts[0].id, actor=appts[0].patient)
    delete_appointment(appts[1].id, actor=appts[1].patient)
    change_status(appts[2].id, Appointment.STATUS_CONFIRMED, actor=doctor)
    assert slot_of(schedule).current_patients == live_count(doctor, day, '09:00') == 2


def test_book_then_cancel_restores_slot(doctor, patient, make_schedule, slot_of, day):
    schedule = make_schedule(doctor, day, slots=[('09:00', '09:30', 1)])
    before = slot_of(schedule)
    appt = book_slot(patient, doctor.id, day, '09:00', DETAILS)
    cancel_appointment(appt.id, actor=patient)
    after = slot_of(schedule)
    assert (after.current_patients, after.is_available) == (before.current_patients, before.is_available)


def test_cancel_records_canceller_and_transition(doctor, patient, make_schedule, day):
    make_schedule(doctor, day)
    appt = book_slot(patient, doctor.id, day, '09:00', DETAILS)
    cancel_appointment(appt.id, actor=patient, reason='travel')
    appt.refresh_from_db()
    assert appt.status == Appointment.STATUS_CANCELLED
    assert appt.cancelled_by == patient
    assert appt.cancellation_reason == 'travel'
    assert appt.cancelled_at is not None
    assert list(appt.transitions.order_by('id').values_list('to_status', flat=True)) == ['scheduled', 'cancelled']


def test_release_without_schedule_is_logged_noop(doctor, day, caplog):
    with caplog.at_level(logging.INFO, logger='scheduling'):
        assert release_slot(doctor.id, day, '09:00') is False
    assert 'nothing to release' in caplog.text


def test_release_without_slot_is_noop(doctor, make_schedule, slot_of, day):
    schedule = make_schedule(doctor, day)
    assert release_slot(doctor.id, day, '11:00') is False
    assert slot_of(schedule).current_patients == 0


def test_release_floors_at_zero_and_reopens(doctor, make_schedule, slot_of, day):
    schedule = make_schedule(doctor, day)
    TimeSlot.objects.filter(schedule=schedule).update(is_available=False)
    assert release_slot(doctor.id, day, '09:00') is True
    slot = slot_of(schedule)
    assert (slot.current_patients, slot.is_available) == (0, True)


def test_release_uses_inactive_schedule(doctor, patient, make_schedule, slot_of, day):
    schedule = make_schedule(doctor, day)
    appt = book_slot(patient, doctor.id, day, '09:00', DETAILS)
    Schedule.objects.filter(pk=schedule.pk).update(status=Schedule.STATUS_INACTIVE)
    cancel_appointment(appt.id, actor=patient)
    assert slot_of(schedule).current_patients == 0


def test_release_returns_unit_to_replacement_schedule(doctor, patient, make_schedule, slot_of, day):
    old = make_schedule(doctor, day, status=Schedule.STATUS_INACTIVE)
    new = make_schedule(doctor, day)
    assert find_schedule_by_doctor_and_date(doctor.id, day) == old

    appt = book_slot(patient, doctor.id, day, '09:00', DETAILS)
    assert (slot_of(new).current_patients, slot_of(old).current_patients) == (1, 0)

    cancel_appointment(appt.id, actor=patient)
    slot = slot_of(new)
    assert (slot.current_patients, slot.is_available) == (0, True)
    assert slot_of(old).current_patients == 0
    assert is_bookable(new, '09:00')


def test_release_prefers_occupied_slot_of_deactivated_schedule(doctor, patient, make_schedule, slot_of, day):
    old = make_schedule(doctor, day)
    appt = book_slot(patient, doctor.id, day, '09:00', DETAILS)
    Schedule.objects.filter(pk=old.pk).update(status=Schedule.STATUS_INACTIVE)
    new = make_schedule(doctor, day)

    cancel_appointment(appt.id, actor=patient)
    assert (slot_of(old).current_patients, slot_of(new).current_patients) == (0, 0)


def test_release_appointment_slot_by_id(doctor, patient, make_schedule, slot_of, day):
    schedule = make_schedule(doctor, day)
    appt = book_slot(patient, doctor.id, day, '09:00', DETAILS)
    assert release_appointment_slot(appt.id) is True
    assert slot_of(schedule).current_patients == 0
    with pytest.raises(NotFound):
        release_appointment_slot(appt.id + 999)


def test_completed_and_no_show_keep_capacity(doctor, make_patient, make_schedule, slot_of, day):
    schedule = make_schedule(doctor, day, slots=[('09:00', '09:30', 2)])
    a = book_slot(make_patient('p1'), doctor.id, day, '09:00', DETAILS)
    b = book_slot(make_patient('p2'), doctor.id, day, '09:00', DETAILS)
    change_status(a.id, Appointment.STATUS_IN_PROGRESS, actor=doctor)
    change_status(a.id, Appointment.STATUS_COMPLETED, actor=doctor)
    change_status(b.id, Appointment.STATUS_NO_SHOW, actor=doctor)
    assert slot_of(schedule).current_patients == 2

    with pytest.raises(InvalidTransition):
        cancel_appointment(a.id, actor=doctor)
    delete_appointment(a.id, actor=doctor)
    assert slot_of(schedule).current_patients == 2


def test_status_change_to_cancelled_releases(doctor, patient, make_schedule, slot_of, day):
    schedule = make_schedule(doctor, day)
    appt = book_slot(patient, doctor.id, day, '09:00', DETAILS)
    change_status(appt.id, Appointment.STATUS_CONFIRMED, actor=doctor)
    change_status(appt.id, Appointment.STATUS_CANCELLED, actor=doctor, notes='doctor unwell')
    assert slot_of(schedule).current_patients == 0
    assert AppointmentTransition.objects.filter(appointment=appt, to_status='cancelled').exists()


def test_invalid_transition(doctor, patient, make_schedule, day):
    make_schedule(doctor, day)
    appt = book_slot(patient, doctor.id, day, '09:00', DETAILS)
    with pytest.raises(InvalidTransition):
        change_status(appt.id, Appointment.STATUS_COMPLETED, actor=doctor)


def test_delete_live_appointment_releases(doctor, patient, make_schedule, slot_of, day):
    schedule = make_schedule(doctor, day)
    appt = book_slot(patient, doctor.id, day, '09:00', DETAILS)
    delete_appointment(appt.id, actor=patient)
    assert not Appointment.objects.exists()
    assert slot_of(schedule).current_patients == 0
    with pytest.raises(NotFound):
        delete_appointment(appt.id, actor=patient)


def test_constraint_failure_raises_invariant_violation(doctor, patient, make_schedule, slot_of, day, monkeypatch, caplog):
    schedule = make_schedule(doctor, day)

    def broken_update(self, **kwargs):
        raise IntegrityError('CHECK constraint failed: timeslot_capacity_not_exceeded')

    monkeypatch.setattr(QuerySet, 'update', broken_update)
    with caplog.at_level(logging.CRITICAL, logger='scheduling'):
        with pytest.raises(InvariantViolation):
            book_slot(patient, doctor.id, day, '09:00', DETAILS)
    monkeypatch.undo()
    assert any(r.levelno == logging.CRITICAL for r in caplog.records)
    assert not Appointment.objects.exists()
    assert slot_of(schedule).current_patients == 0


def test_capacity_constraint_rejects_overfull_slot(doctor, make_schedule, day):
    schedule = make_schedule(doctor, day)
    with pytest.raises(IntegrityError), transaction.atomic():
        TimeSlot.objects.filter(schedule=schedule).update(current_patients=5)


def test_release_failure_does_not_block_cancellation(doctor, patient, make_schedule, day, monkeypatch, caplog):
    make_schedule(doctor, day)
    appt = book_slot(patient, doctor.id, day, '09:00', DETAILS)

    def failing_release(*args):
        raise DatabaseError('disk I/O error')

    monkeypatch.setattr(booking, '_release_locked', failing_release)
    with caplog.at_level(logging.ERROR, logger='scheduling'):
        cancel_appointment(appt.id, actor=patient)
    appt.refresh_from_db()
    assert appt.status == Appointment.STATUS_CANCELLED
    assert 'Failed to release slot' in caplog.text


def test_reschedule_moves_capacity(doctor, patient, make_schedule, slot_of, day):
    first = make_schedule(doctor, day, slots=[('09:00', '09:30', 1), ('09:30', '10:00', 1)])
    next_day = day + timedelta(days=1)
    second = make_schedule(doctor, next_day, slots=[('14:00', '14:30', 1)])
    appt = book_slot(patient, doctor.id, day, '09:00', DETAILS)

    reschedule_appointment(appt.id, actor=patient, day=day, start_time='09:30')
    assert [s.current_patients for s in first.time_slots.all()] == [0, 1]

    reschedule_appointment(appt.id, actor=patient, day=next_day, start_time='14:00')
    appt.refresh_from_db()
    assert (appt.appointment_date, appt.appointment_time) == (next_day, '14:00')
    assert [s.current_patients for s in first.time_slots.all()] == [0, 0]
    assert slot_of(second, '14:00').current_patients == 1


def test_reschedule_to_full_slot_changes_nothing(doctor, patient, make_patient, make_schedule, day):
    schedule = make_schedule(doctor, day, slots=[('09:00', '09:30', 1), ('09:30', '10:00', 1)])
    appt = book_slot(patient, doctor.id, day, '09:00', DETAILS)
    book_slot(make_patient('other'), doctor.id, day, '09:30', DETAILS)
    with pytest.raises(SlotUnavailable):
        reschedule_appointment(appt.id, actor=patient, day=day, start_time='09:30')
    appt.refresh_from_db()
    assert appt.appointment_time == '09:00'
    assert [s.current_patients for s in schedule.time_slots.all()] == [1, 1]


def test_audit_history_follows_appointment(doctor, patient, make_schedule, day):
    make_schedule(doctor, day, slots=[('09:00', '09:30', 1), ('09:30', '10:00', 1)])
    appt = book_slot(patient, doctor.id, day, '09:00', DETAILS)
    reschedule_appointment(appt.id, actor=patient, day=day, start_time='09:30')
    cancel_appointment(appt.id, actor=patient)

    entries = history('appointment', appt.id)
    assert [e.action for e in entries] == ['appointment_book', 'appointment_reschedule', 'appointment_cancel']
    assert all(e.user == patient for e in entries)


def test_list_available_start_times(doctor, patient, make_schedule, day):
    make_schedule(doctor, day, slots=[('09:00', '09:30', 1), ('09:30', '10:00', 2), ('10:00', '10:30', 1)])
    book_slot(patient, doctor.id, day, '09:00', DETAILS)
    assert list_available_start_times(doctor.id, day) == ['09:30', '10:00']
    assert list_available_start_times(doctor.id, day + timedelta(days=1)) == []
    assert list_available_start_times(patient.id, day) == []
    assert list_available_start_times(10_000, day) == []


def test_broadcast_runs_after_commit(doctor, patient, make_schedule, day, monkeypatch, django_capture_on_commit_callbacks):
    make_schedule(doctor, day)
    calls = []
    monkeypatch.setattr(booking, 'broadcast_slots_changed', lambda doctor_id, d: calls.append((doctor_id, d)))
    with django_capture_on_commit_callbacks(execute=True):
        book_slot(patient, doctor.id, day, '09:00', DETAILS)
    assert calls == [(doctor.id, day)]


def test_failed_booking_does_not_broadcast(doctor, patient, make_schedule, day, monkeypatch, django_capture_on_commit_callbacks):
    make_schedule(doctor, day, status=Schedule.STATUS_INACTIVE)
    calls = []
    monkeypatch.setattr(booking, 'broadcast_slots_changed', lambda *a: calls.append(a))
    with django_capture_on_commit_callbacks(execute=True) as callbacks:
        with pytest.raises(NoScheduleAvailable):
            book_slot(patient, doctor.id, day, '09:00', DETAILS)
    assert callbacks == [] and calls == []
