"""
Lookup and persistence of schedules and their time slots.

A schedule and its slots form one aggregate: slots are only created or
replaced through their schedule, and a ``for_update`` lookup locks the
schedule row, which stands for the whole aggregate.  Lookups that lock
must run inside ``transaction.atomic()``.
"""
from __future__ import annotations

from datetime import date
from typing import Iterable, Optional

from django.core.exceptions import ValidationError as ModelValidationError
from django.db import transaction
from rest_framework.exceptions import ValidationError

from scheduling.models import Schedule, TimeSlot


def _day_query(doctor_id: int, day: date, *, for_update: bool):
    qs = Schedule.objects.filter(doctor_id=doctor_id, date=day).order_by('id')
    if for_update:
        qs = qs.select_for_update()
    return qs


def find_active_schedule(doctor_id: int, day: date, *, for_update: bool = False) -> Optional[Schedule]:
    """First active schedule of the doctor on ``day``, or ``None``."""
    return _day_query(doctor_id, day, for_update=for_update).filter(status=Schedule.STATUS_ACTIVE).first()


def find_schedule_by_doctor_and_date(doctor_id: int, day: date, *, for_update: bool = False) -> Optional[Schedule]:
    """First schedule of the doctor on ``day`` whatever its status."""
    return _day_query(doctor_id, day, for_update=for_update).first()


def find_release_slot(doctor_id: int, day: date, start_time: str) -> Optional[TimeSlot]:
    """Slot that gives back a unit booked at ``start_time`` on ``day``.

    Locks every schedule of the doctor on that day.  When several carry a
    slot at that time, occupied slots win over empty ones and active
    schedules over inactive ones, so the unit returns to the slot that
    booking took it from.  With no occupied candidate the first schedule's
    slot is returned and the floored release leaves it unchanged.
    """
    schedules = list(_day_query(doctor_id, day, for_update=True))
    candidates = [s for s in (find_slot(schedule, start_time) for schedule in schedules) if s is not None]
    if not candidates:
        return None
    status_of = {schedule.pk: schedule.status for schedule in schedules}
    for slot in candidates:
        if slot.current_patients > 0 and status_of[slot.schedule_id] == Schedule.STATUS_ACTIVE:
            return slot
    for slot in candidates:
        if slot.current_patients > 0:
            return slot
    return candidates[0]


def find_slot(schedule: Schedule, start_time: str) -> Optional[TimeSlot]:
    """First slot, in stored order, whose start time equals ``start_time`` exactly."""
    return schedule.time_slots.filter(start_time=start_time).order_by('position', 'id').first()


def slot_rows(slots: Iterable) -> list[TimeSlot]:
    rows = []
    for position, s in enumerate(slots):
        if isinstance(s, TimeSlot):
            s.position = position
            rows.append(s)
            continue
        rows.append(TimeSlot(
            position=position,
            start_time=s['start_time'],
            end_time=s['end_time'],
            is_available=s.get('is_available', True),
            appointment_type=s.get('appointment_type', 'consultation'),
            max_patients=s.get('max_patients', 1),
            current_patients=s.get('current_patients', 0),
        ))
    return rows


@transaction.atomic
def save_schedule(schedule: Schedule, slots: Optional[Iterable] = None) -> Schedule:
    """Persist ``schedule``; when ``slots`` is given, replace its slot list.

    The schedule row and the slot rows are written in one transaction,
    so a failure leaves the previously stored state untouched.
    """
    try:
        schedule.full_clean(exclude=['doctor', 'created_by', 'last_modified_by'])
    except ModelValidationError as exc:
        raise ValidationError(exc.message_dict) from exc
    schedule.save()
    if slots is not None:
        rows = slot_rows(slots)
        for row in rows:
            row.pk = None
            row.schedule = schedule
        schedule.time_slots.all().delete()
        TimeSlot.objects.bulk_create(rows)
    return schedule
