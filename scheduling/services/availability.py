"""
Slot availability: which start times of a doctor's day can still be booked.
"""
from __future__ import annotations

from datetime import date

from django.contrib.auth import get_user_model

from scheduling.exceptions import NotFound
from scheduling.models import Schedule, TimeSlot
from scheduling.services.schedule_store import find_active_schedule, find_slot

User = get_user_model()


def slot_is_bookable(slot: TimeSlot | None) -> bool:
    return bool(slot and slot.is_available and slot.current_patients < slot.max_patients)


def is_bookable(schedule: Schedule, start_time: str) -> bool:
    """True when a slot starts exactly at ``start_time`` and has room left."""
    return slot_is_bookable(find_slot(schedule, start_time))


def bookable_slots(schedule: Schedule) -> list[TimeSlot]:
    return [s for s in schedule.time_slots.all() if slot_is_bookable(s)]


def get_bookable_doctor(doctor_id) -> User:
    """Return the active doctor with ``doctor_id`` or raise :class:`NotFound`."""
    doctor = User.objects.filter(pk=doctor_id, role=User.ROLE_DOCTOR, is_active=True).first()
    if doctor is None:
        raise NotFound('Doctor not found or inactive.')
    return doctor


def list_available_start_times(doctor_id, day: date) -> list[str]:
    """Start times still bookable on ``day``, in stored slot order.

    An unknown or inactive doctor and a day without an active schedule
    both yield an empty list.
    """
    if not User.objects.filter(pk=doctor_id, role=User.ROLE_DOCTOR, is_active=True).exists():
        return []
    schedule = find_active_schedule(doctor_id, day)
    if schedule is None:
        return []
    return [s.start_time for s in bookable_slots(schedule)]


def format_slot(slot: TimeSlot) -> dict:
    return {
        'id': slot.id,
        'startTime': slot.start_time,
        'endTime': slot.end_time,
        'isAvailable': slot.is_available,
        'appointmentType': slot.appointment_type,
        'maxPatients': slot.max_patients,
        'currentPatients': slot.current_patients,
    }
