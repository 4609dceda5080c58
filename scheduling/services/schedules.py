"""
Schedule maintenance: creation, edits, status changes and slot generation.

Edits that replace a schedule's slot list take the same per-(doctor, day)
lock and schedule row lock as bookings, so a booking can never slip in
between reading the old occupancy and writing the new slots.
"""
from __future__ import annotations

import logging
from datetime import date
from typing import Any

from django.db import transaction
from rest_framework.exceptions import ValidationError

from scheduling.exceptions import NotFound
from scheduling.models import Schedule, TimeSlot
from scheduling.services.audit import log_action
from scheduling.services.availability import format_slot
from scheduling.services.locks import slot_lock
from scheduling.services.realtime import broadcast_slots_changed
from scheduling.services.schedule_store import save_schedule
from scheduling.timeutils import from_minutes, to_minutes

logger = logging.getLogger(__name__)

SCHEDULE_FIELDS = (
    'date', 'work_start', 'work_end', 'break_times', 'is_working_day', 'appointment_duration',
    'consultation_fee', 'notes', 'is_recurring', 'recurring_pattern', 'recurring_days', 'recurring_end_date',
)


def generate_time_slots(work_start: str, work_end: str, duration: int, break_times=(), *,
                        appointment_type: str = 'consultation', max_patients: int = 1) -> list[dict]:
    """Cut the working hours into ``duration``-minute slots, skipping breaks.

    A slot that would overlap a break or run past the end of the working
    day is left out.
    """
    start, end = to_minutes(work_start), to_minutes(work_end)
    breaks = [(to_minutes(b['startTime']), to_minutes(b['endTime'])) for b in break_times or ()]
    slots: list[dict] = []
    t = start
    while t + duration <= end:
        overlapping = [b_end for b_start, b_end in breaks if t < b_end and b_start < t + duration]
        if overlapping:
            t = max(max(overlapping), t + 1)
            continue
        slots.append({
            'start_time': from_minutes(t),
            'end_time': from_minutes(t + duration),
            'is_available': True,
            'appointment_type': appointment_type,
            'max_patients': max_patients,
            'current_patients': 0,
        })
        t += duration
    return slots


def merge_slot_occupancy(existing: list[TimeSlot], incoming: list[dict]) -> list[dict]:
    """Carry occupancy over from ``existing`` slots into the replacement list.

    Slots are matched by start time, first stored match wins.  An explicit
    ``current_patients`` in the incoming slot is kept.  Full slots are
    closed.  A replacement that would leave a slot over capacity is
    rejected.
    """
    occupied: dict[str, int] = {}
    for slot in existing:
        occupied.setdefault(slot.start_time, slot.current_patients)
    merged = []
    errors = []
    for i, s in enumerate(incoming):
        s = dict(s)
        if s.get('current_patients') is None:
            s['current_patients'] = occupied.get(s['start_time'], 0)
        if s['current_patients'] > s['max_patients']:
            errors.append(f"timeSlots[{i}] {s['start_time']}: {s['current_patients']} booked exceeds maxPatients {s['max_patients']}")
        if s['current_patients'] >= s['max_patients']:
            s['is_available'] = False
        merged.append(s)
    if errors:
        raise ValidationError({'timeSlots': errors})
    return merged


def _apply_fields(schedule: Schedule, data: dict[str, Any]) -> None:
    for field in SCHEDULE_FIELDS:
        if field in data:
            setattr(schedule, field, data[field])


def _slots_for(schedule: Schedule, data: dict[str, Any]) -> list[dict]:
    if data.get('time_slots') is not None:
        return data['time_slots']
    return generate_time_slots(schedule.work_start, schedule.work_end, schedule.appointment_duration, schedule.break_times)


def create_schedule(*, doctor, actor, data: dict[str, Any]) -> Schedule:
    """Create a schedule for ``doctor``; slots are generated when none are given."""
    day: date = data['date']
    schedule = Schedule(doctor=doctor, created_by=actor, last_modified_by=actor)
    _apply_fields(schedule, data)
    if 'consultation_fee' not in data and doctor.consultation_fee is not None:
        schedule.consultation_fee = doctor.consultation_fee
    with slot_lock((doctor.id, day)):
        with transaction.atomic():
            slots = merge_slot_occupancy([], _slots_for(schedule, data))
            save_schedule(schedule, slots)
            log_action(user=actor, action='schedule_create', object_type='schedule', object_id=schedule.id,
                       detail={'doctorId': doctor.id, 'date': day.isoformat(), 'slots': len(slots)})
            transaction.on_commit(lambda: broadcast_slots_changed(doctor.id, day))
    logger.info("Created schedule %s for doctor %s on %s with %d slots", schedule.id, doctor.id, day, len(slots))
    return schedule


def _has_bookings(schedule: Schedule) -> bool:
    return schedule.time_slots.filter(current_patients__gt=0).exists()


def update_schedule(schedule_id, *, actor, data: dict[str, Any]) -> Schedule:
    """Apply ``data`` to the schedule, replacing its slots when ``time_slots`` is given.

    Occupancy of a replaced slot is carried over by start time.  Moving a
    schedule that still holds bookings to another date is refused.
    """
    current = Schedule.objects.filter(pk=schedule_id).values_list('doctor_id', 'date').first()
    if current is None:
        raise NotFound('Schedule not found.')
    doctor_id, old_day = current
    new_day = data.get('date', old_day)
    with slot_lock((doctor_id, old_day), (doctor_id, new_day)):
        with transaction.atomic():
            schedule = Schedule.objects.select_for_update().filter(pk=schedule_id).first()
            if schedule is None:
                raise NotFound('Schedule not found.')
            if schedule.date != old_day:
                raise ValidationError({'date': ['Schedule was moved concurrently; retry the update.']})
            if new_day != old_day and _has_bookings(schedule):
                raise ValidationError({'date': ['Cannot move a schedule that has booked slots.']})
            _apply_fields(schedule, data)
            schedule.last_modified_by = actor
            slots = None
            if data.get('time_slots') is not None:
                slots = merge_slot_occupancy(list(schedule.time_slots.all()), data['time_slots'])
            save_schedule(schedule, slots)
            log_action(user=actor, action='schedule_update', object_type='schedule', object_id=schedule.id,
                       detail={'fields': sorted(k for k in data if k in SCHEDULE_FIELDS or k == 'time_slots')})
            for day in {old_day, new_day}:
                transaction.on_commit(lambda day=day: broadcast_slots_changed(doctor_id, day))
    return schedule


def set_schedule_status(schedule_id, status: str, *, actor) -> Schedule:
    schedule = Schedule.objects.filter(pk=schedule_id).first()
    if schedule is None:
        raise NotFound('Schedule not found.')
    with slot_lock((schedule.doctor_id, schedule.date)):
        with transaction.atomic():
            schedule = Schedule.objects.select_for_update().filter(pk=schedule_id).first()
            if schedule is None:
                raise NotFound('Schedule not found.')
            prior = schedule.status
            schedule.status = status
            schedule.last_modified_by = actor
            schedule.save(update_fields=['status', 'last_modified_by', 'updated_at'])
            log_action(user=actor, action='schedule_status', object_type='schedule', object_id=schedule.id,
                       detail={'from': prior, 'to': status})
            transaction.on_commit(lambda: broadcast_slots_changed(schedule.doctor_id, schedule.date))
    return schedule


def delete_schedule(schedule_id, *, actor) -> None:
    """Delete a schedule and its slots.  Schedules with booked slots are kept."""
    schedule = Schedule.objects.filter(pk=schedule_id).first()
    if schedule is None:
        raise NotFound('Schedule not found.')
    doctor_id, day = schedule.doctor_id, schedule.date
    with slot_lock((doctor_id, day)):
        with transaction.atomic():
            schedule = Schedule.objects.select_for_update().filter(pk=schedule_id).first()
            if schedule is None:
                raise NotFound('Schedule not found.')
            if _has_bookings(schedule):
                raise ValidationError({'detail': 'Schedule has booked slots; cancel those appointments or deactivate the schedule.'})
            schedule.delete()
            log_action(user=actor, action='schedule_delete', object_type='schedule', object_id=schedule_id,
                       detail={'doctorId': doctor_id, 'date': day.isoformat()})
            transaction.on_commit(lambda: broadcast_slots_changed(doctor_id, day))


def format_schedule(schedule: Schedule, *, include_slots: bool = True) -> dict:
    doctor = schedule.doctor
    slots = list(schedule.time_slots.all())
    data: dict[str, Any] = {
        'id': schedule.id,
        'doctor': {
            'id': doctor.id,
            'name': doctor.display_name,
            'specialization': doctor.specialization,
            'consultationFee': str(doctor.consultation_fee) if doctor.consultation_fee is not None else None,
        },
        'date': schedule.date.isoformat(),
        'workingHours': {'start': schedule.work_start, 'end': schedule.work_end},
        'breakTime': schedule.break_times,
        'isWorkingDay': schedule.is_working_day,
        'appointmentDuration': schedule.appointment_duration,
        'consultationFee': str(schedule.consultation_fee),
        'notes': schedule.notes,
        'isRecurring': schedule.is_recurring,
        'recurringPattern': schedule.recurring_pattern or None,
        'recurringDays': schedule.recurring_days,
        'recurringEndDate': schedule.recurring_end_date.isoformat() if schedule.recurring_end_date else None,
        'status': schedule.status,
        'isPast': schedule.is_past,
        'availableSlots': len(schedule.available_slots),
        'totalAvailableAppointments': schedule.total_available_appointments,
        'createdAt': schedule.created_at.isoformat() if schedule.created_at else None,
        'updatedAt': schedule.updated_at.isoformat() if schedule.updated_at else None,
    }
    if include_slots:
        data['timeSlots'] = [format_slot(s) for s in slots]
    return data
