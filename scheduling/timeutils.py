"""
Helpers for the clinic's calendar days and ``HH:MM`` clock times.

Appointment dates carry no time of day: a booking for "2025-01-15" is
matched against the schedule whose date is that calendar day in the
clinic time zone (``settings.TIME_ZONE``).  Clock times are compared as
zero-padded ``HH:MM`` strings, so they are normalised before any lookup.
"""
from __future__ import annotations

import re
from datetime import date, datetime

from django.utils import timezone

_HHMM = re.compile(r'^([0-1]?[0-9]|2[0-3]):([0-5][0-9])$')


def normalize_hhmm(value: str) -> str:
    """Return ``value`` as zero-padded ``HH:MM`` (``9:05`` -> ``09:05``).

    Raises ``ValueError`` when the value is not a clock time.
    """
    m = _HHMM.match((value or '').strip())
    if not m:
        raise ValueError(f"invalid time {value!r}, expected HH:MM")
    return f"{int(m.group(1)):02d}:{m.group(2)}"


def to_minutes(value: str) -> int:
    hh, mm = normalize_hhmm(value).split(':')
    return int(hh) * 60 + int(mm)


def from_minutes(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def coerce_day(value) -> date:
    """Reduce a date, an aware/naive datetime or an ISO string to a calendar day.

    Aware datetimes are first converted to the clinic time zone so that
    the day boundary is the clinic's, not UTC's.
    """
    if isinstance(value, datetime):
        if timezone.is_aware(value):
            value = timezone.localtime(value)
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        if len(text) > 10:
            return coerce_day(datetime.fromisoformat(text))
        return date.fromisoformat(text)
    except ValueError:
        raise ValueError(f"invalid date {value!r}, expected YYYY-MM-DD") from None


def slot_start(day: date, hhmm: str) -> datetime:
    """The aware datetime at which a slot starting at ``hhmm`` on ``day`` begins."""
    hh, mm = normalize_hhmm(hhmm).split(':')
    naive = datetime(day.year, day.month, day.day, int(hh), int(mm))
    return timezone.make_aware(naive, timezone.get_current_timezone())
