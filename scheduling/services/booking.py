"""
Booking and release of time slot capacity.

Every change to a slot's occupancy runs in this order:

1. hold the in-process lock for the (doctor, day) key,
2. open a database transaction and lock the schedule row,
3. change the slot counter with a single conditional ``UPDATE``,
4. create, update or delete the appointment in the same transaction.

Either the slot change and the appointment change both commit or
neither does.  Subscribers are notified only after the commit.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date
from typing import Any, Iterator, Optional

from django.contrib.auth import get_user_model
from django.db import DatabaseError, IntegrityError, transaction
from django.db.models import Case, F, Value, When
from django.utils import timezone

from scheduling.exceptions import InvalidTransition, InvariantViolation, NoScheduleAvailable, NotFound, SlotUnavailable
from scheduling.models import Appointment, AppointmentTransition, Schedule, TimeSlot
from scheduling.services.audit import log_action
from scheduling.services.availability import get_bookable_doctor, slot_is_bookable
from scheduling.services.locks import slot_lock
from scheduling.services.realtime import broadcast_slots_changed
from scheduling.services.schedule_store import find_active_schedule, find_release_slot, find_slot
from scheduling.timeutils import coerce_day, normalize_hhmm

logger = logging.getLogger(__name__)

User = get_user_model()

DETAIL_FIELDS = ('reason', 'appointment_type', 'duration', 'symptoms', 'notes', 'payment_method')


def _notify_after_commit(doctor_id: int, day: date) -> None:
    transaction.on_commit(lambda: broadcast_slots_changed(doctor_id, day))


def _resolve_patient(patient) -> User:
    if isinstance(patient, User):
        if not patient.pk or not patient.is_active:
            raise NotFound('Patient not found.')
        return patient
    found = User.objects.filter(pk=patient, is_active=True).first()
    if found is None:
        raise NotFound('Patient not found.')
    return found


def _occupy(slot: TimeSlot) -> None:
    """Take one unit of ``slot``; raise :class:`SlotUnavailable` when none is left."""
    try:
        updated = (
            TimeSlot.objects
            .filter(pk=slot.pk, is_available=True, current_patients__lt=F('max_patients'))
            .update(current_patients=F('current_patients') + 1)
        )
    except IntegrityError as exc:
        logger.critical("Capacity constraint rejected booking of slot %s (%s)", slot.pk, exc)
        raise InvariantViolation() from exc
    if not updated:
        raise SlotUnavailable()
    TimeSlot.objects.filter(pk=slot.pk, current_patients__gte=F('max_patients')).update(is_available=False)


def _release_locked(doctor_id: int, day: date, start_time: str) -> bool:
    slot = find_release_slot(doctor_id, day, start_time)
    if slot is None:
        logger.info("No slot at %s for doctor %s on %s; nothing to release", start_time, doctor_id, day)
        return False
    TimeSlot.objects.filter(pk=slot.pk).update(
        current_patients=Case(
            When(current_patients__gt=0, then=F('current_patients') - 1),
            default=Value(0),
        ),
        is_available=True,
    )
    _notify_after_commit(doctor_id, day)
    logger.info("Released slot %s %s for doctor %s", day, start_time, doctor_id)
    return True


def _release_quietly(appointment: Appointment) -> bool:
    """Release the appointment's slot without letting a failure undo the caller's change."""
    try:
        with transaction.atomic():
            return _release_locked(appointment.doctor_id, appointment.appointment_date, appointment.appointment_time)
    except DatabaseError:
        logger.exception(
            "Failed to release slot for appointment %s (doctor %s, %s %s)",
            appointment.pk, appointment.doctor_id, appointment.appointment_date, appointment.appointment_time,
        )
        return False


def _record_transition(appointment: Appointment, from_status: Optional[str], actor, reason: str = '') -> None:
    AppointmentTransition.objects.create(
        appointment=appointment,
        from_status=from_status,
        to_status=appointment.status,
        operator=actor if getattr(actor, 'pk', None) else None,
        reason=reason,
    )


@contextmanager
def _locked_appointment(appointment_id) -> Iterator[Appointment]:
    """Lock the appointment's (doctor, day) key and row, yielding the fresh row.

    If the appointment moved to another day between the unlocked read and
    the locked one, the locks are dropped and taken again for the new key.
    """
    while True:
        key = Appointment.objects.filter(pk=appointment_id).values_list('doctor_id', 'appointment_date').first()
        if key is None:
            raise NotFound('Appointment not found.')
        with slot_lock(key):
            with transaction.atomic():
                appointment = Appointment.objects.select_for_update().filter(pk=appointment_id).first()
                if appointment is None:
                    raise NotFound('Appointment not found.')
                if (appointment.doctor_id, appointment.appointment_date) == key:
                    yield appointment
                    return


def book_slot(patient, doctor_id, day, start_time: str, details: Optional[dict[str, Any]] = None) -> Appointment:
    """Book one unit of the doctor's slot starting at ``start_time`` on ``day``.

    Raises :class:`NotFound` for an unknown patient or doctor,
    :class:`NoScheduleAvailable` when the doctor has no active schedule
    that day and :class:`SlotUnavailable` when no slot starts at that
    time or it has no capacity left.  Nothing is written in those cases.
    """
    day = coerce_day(day)
    start_time = normalize_hhmm(start_time)
    details = {k: v for k, v in (details or {}).items() if k in DETAIL_FIELDS and v is not None}
    patient = _resolve_patient(patient)

    with slot_lock((doctor_id, day)):
        with transaction.atomic():
            doctor = get_bookable_doctor(doctor_id)
            schedule = find_active_schedule(doctor.id, day, for_update=True)
            if schedule is None:
                raise NoScheduleAvailable()
            slot = find_slot(schedule, start_time)
            if not slot_is_bookable(slot):
                raise SlotUnavailable()
            _occupy(slot)

            fee = doctor.consultation_fee if doctor.consultation_fee is not None else schedule.consultation_fee
            details.setdefault('duration', schedule.appointment_duration)
            details.setdefault('appointment_type', slot.appointment_type)
            appointment = Appointment.objects.create(
                patient=patient,
                doctor=doctor,
                appointment_date=day,
                appointment_time=start_time,
                status=Appointment.STATUS_SCHEDULED,
                consultation_fee=fee,
                **details,
            )
            _record_transition(appointment, None, patient, 'booked')
            log_action(user=patient, action='appointment_book', object_type='appointment', object_id=appointment.id,
                       detail={'doctorId': doctor.id, 'date': day.isoformat(), 'time': start_time})
            _notify_after_commit(doctor.id, day)

    logger.info("Booked appointment %s: patient %s with doctor %s on %s %s",
                appointment.id, patient.id, doctor.id, day, start_time)
    return appointment


def release_slot(doctor_id, day, start_time: str) -> bool:
    """Give back one unit of the slot; returns ``False`` when there was nothing to release.

    The counter never drops below zero and the slot is reopened even if
    it was closed by hand.  A missing schedule or slot is not an error.
    """
    day = coerce_day(day)
    start_time = normalize_hhmm(start_time)
    with slot_lock((doctor_id, day)):
        with transaction.atomic():
            return _release_locked(doctor_id, day, start_time)


def release_appointment_slot(appointment_id) -> bool:
    appointment = Appointment.objects.filter(pk=appointment_id).first()
    if appointment is None:
        raise NotFound('Appointment not found.')
    return release_slot(appointment.doctor_id, appointment.appointment_date, appointment.appointment_time)


def cancel_appointment(appointment_id, *, actor, reason: str = '') -> Appointment:
    """Cancel a live appointment and give its slot capacity back."""
    with _locked_appointment(appointment_id) as appointment:
        if not appointment.can_transition(Appointment.STATUS_CANCELLED):
            raise InvalidTransition(f"Cannot cancel an appointment that is {appointment.status}.")
        prior = appointment.status
        appointment.status = Appointment.STATUS_CANCELLED
        appointment.cancelled_by = actor if getattr(actor, 'pk', None) else None
        appointment.cancellation_reason = reason or ''
        appointment.cancelled_at = timezone.now()
        appointment.save(update_fields=['status', 'cancelled_by', 'cancellation_reason', 'cancelled_at', 'updated_at'])
        _record_transition(appointment, prior, actor, reason)
        if prior in Appointment.LIVE_STATUSES:
            _release_quietly(appointment)
        log_action(user=actor, action='appointment_cancel', object_type='appointment', object_id=appointment.id,
                   detail={'from': prior, 'reason': reason})
    logger.info("Cancelled appointment %s (was %s)", appointment.id, prior)
    return appointment


def delete_appointment(appointment_id, *, actor) -> None:
    """Hard-delete an appointment, releasing its slot first if it still held one."""
    with _locked_appointment(appointment_id) as appointment:
        prior = appointment.status
        pk = appointment.pk
        if prior in Appointment.LIVE_STATUSES:
            _release_quietly(appointment)
        appointment.delete()
        log_action(user=actor, action='appointment_delete', object_type='appointment', object_id=pk,
                   detail={'status': prior})
    logger.info("Deleted appointment %s (was %s)", pk, prior)


def change_status(appointment_id, new_status: str, *, actor, notes: Optional[str] = None) -> Appointment:
    """Move the appointment along its status graph.

    ``cancelled`` goes through :func:`cancel_appointment` so the slot is
    released.  ``completed`` and ``no-show`` keep the slot consumed.
    """
    if new_status == Appointment.STATUS_CANCELLED:
        return cancel_appointment(appointment_id, actor=actor, reason=notes or '')
    with _locked_appointment(appointment_id) as appointment:
        if not appointment.can_transition(new_status):
            raise InvalidTransition(f"Cannot change status from {appointment.status} to {new_status}.")
        prior = appointment.status
        appointment.status = new_status
        fields = ['status', 'updated_at']
        if notes is not None:
            appointment.notes = notes
            fields.append('notes')
        appointment.save(update_fields=fields)
        _record_transition(appointment, prior, actor, notes or '')
        log_action(user=actor, action='appointment_status', object_type='appointment', object_id=appointment.id,
                   detail={'from': prior, 'to': new_status})
    return appointment


def reschedule_appointment(appointment_id, *, actor, day, start_time: str) -> Appointment:
    """Move a live appointment to another slot of the same doctor.

    The new slot is taken before the old one is given back, both inside
    one transaction: if the new slot is unavailable nothing changes.
    """
    day = coerce_day(day)
    start_time = normalize_hhmm(start_time)
    while True:
        key = Appointment.objects.filter(pk=appointment_id).values_list('doctor_id', 'appointment_date').first()
        if key is None:
            raise NotFound('Appointment not found.')
        doctor_id, old_day = key
        with slot_lock(key, (doctor_id, day)):
            with transaction.atomic():
                appointment = Appointment.objects.select_for_update().filter(pk=appointment_id).first()
                if appointment is None:
                    raise NotFound('Appointment not found.')
                if (appointment.doctor_id, appointment.appointment_date) != key:
                    continue
                return _reschedule_locked(appointment, actor, day, start_time)


def _reschedule_locked(appointment: Appointment, actor, day: date, start_time: str) -> Appointment:
    if not appointment.is_live:
        raise InvalidTransition(f"Cannot reschedule an appointment that is {appointment.status}.")
    old_day, old_time = appointment.appointment_date, appointment.appointment_time
    if (old_day, old_time) == (day, start_time):
        return appointment
    # lock both days' schedules in date order before touching either
    list(
        Schedule.objects.select_for_update()
        .filter(doctor_id=appointment.doctor_id, date__in={old_day, day})
        .order_by('date', 'id')
    )
    schedule = find_active_schedule(appointment.doctor_id, day)
    if schedule is None:
        raise NoScheduleAvailable()
    slot = find_slot(schedule, start_time)
    if not slot_is_bookable(slot):
        raise SlotUnavailable()
    _occupy(slot)
    _release_locked(appointment.doctor_id, old_day, old_time)

    appointment.appointment_date = day
    appointment.appointment_time = start_time
    appointment.save(update_fields=['appointment_date', 'appointment_time', 'updated_at'])
    log_action(user=actor, action='appointment_reschedule', object_type='appointment', object_id=appointment.id,
               detail={'from': f"{old_day.isoformat()} {old_time}", 'to': f"{day.isoformat()} {start_time}"})
    _notify_after_commit(appointment.doctor_id, day)
    logger.info("Rescheduled appointment %s from %s %s to %s %s", appointment.id, old_day, old_time, day, start_time)
    return appointment
