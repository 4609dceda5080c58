"""
Push slot availability changes to WebSocket subscribers.

Subscribers of ``ws/schedules/<doctor_id>/`` join the channel group
``schedule.doctor.<doctor_id>``.  Broadcasting is best effort: a failing
channel layer is logged and never affects the booking that triggered it.
"""
from __future__ import annotations

import logging
from datetime import date

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from django.conf import settings

from scheduling.services.availability import format_slot
from scheduling.services.schedule_store import find_active_schedule

logger = logging.getLogger(__name__)


def group_name(doctor_id: int) -> str:
    return f"schedule.doctor.{int(doctor_id)}"


def slots_changed_event(doctor_id: int, day: date) -> dict:
    schedule = find_active_schedule(doctor_id, day)
    slots = [format_slot(s) for s in schedule.time_slots.all()] if schedule else []
    return {
        "type": "slots.changed",
        "doctorId": int(doctor_id),
        "date": day.isoformat(),
        "slots": slots,
    }


def broadcast_slots_changed(doctor_id: int, day: date) -> None:
    if not getattr(settings, "SCHEDULE_BROADCAST_ENABLED", True):
        return
    channel_layer = get_channel_layer()
    if channel_layer is None:
        return
    try:
        async_to_sync(channel_layer.group_send)(group_name(doctor_id), slots_changed_event(doctor_id, day))
    except Exception:
        logger.warning("Failed to broadcast slot changes for doctor %s on %s", doctor_id, day, exc_info=True)
