"""
In-process serialisation of booking and release per (doctor, day).

Each key hashes onto one of ``settings.BOOKING_LOCK_STRIPES`` re-entrant
locks.  Two keys may share a stripe; that only serialises them, it never
breaks correctness.  These locks cover a single process.  Across worker
processes the row lock on the schedule and the conditional counter
update in :mod:`scheduling.services.booking` keep the counters exact.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import date
from typing import Iterator

from django.conf import settings

_stripes: list[threading.RLock] = []
_stripes_guard = threading.Lock()


def _all_stripes() -> list[threading.RLock]:
    global _stripes
    n = max(1, int(getattr(settings, 'BOOKING_LOCK_STRIPES', 64)))
    if len(_stripes) != n:
        with _stripes_guard:
            if len(_stripes) != n:
                _stripes = [threading.RLock() for _ in range(n)]
    return _stripes


def stripe_index(doctor_id: int, day: date) -> int:
    return hash((int(doctor_id), day.toordinal())) % len(_all_stripes())


@contextmanager
def slot_lock(*keys: tuple[int, date]) -> Iterator[None]:
    """Hold the stripes for every ``(doctor_id, day)`` key.

    Stripes are taken in ascending index order, so callers that need two
    keys (rescheduling) cannot deadlock each other.
    """
    stripes = _all_stripes()
    indexes = sorted({stripe_index(doctor_id, day) for doctor_id, day in keys})
    held: list[threading.RLock] = []
    try:
        for i in indexes:
            stripes[i].acquire()
            held.append(stripes[i])
        yield
    finally:
        for lock in reversed(held):
            lock.release()
