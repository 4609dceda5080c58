from datetime import timedelta
from decimal import Decimal

import pytest
from django.core.cache import cache
from django.utils import timezone
from rest_framework.test import APIClient

from scheduling.models import Schedule, TimeSlot, User
from scheduling.services.schedule_store import save_schedule


@pytest.fixture(autouse=True)
def _clear_throttle_cache():
    cache.clear()
    yield
    cache.clear()


@pytest.fixture
def day():
    return timezone.localdate() + timedelta(days=7)


@pytest.fixture
def doctor(db):
    return User.objects.create_user(
        username='dr_grey', password='P@ssw0rd1', role=User.ROLE_DOCTOR,
        first_name='Meredith', last_name='Grey', specialization='General Surgery',
        consultation_fee=Decimal('120.00'),
    )


@pytest.fixture
def other_doctor(db):
    return User.objects.create_user(username='dr_yang', password='P@ssw0rd1', role=User.ROLE_DOCTOR)


@pytest.fixture
def patient(db):
    return User.objects.create_user(username='patient_a', password='P@ssw0rd1', role=User.ROLE_PATIENT)


@pytest.fixture
def make_patient(db):
    def _make(username):
        return User.objects.create_user(username=username, password='P@ssw0rd1', role=User.ROLE_PATIENT)
    return _make


@pytest.fixture
def admin_user(db):
    return User.objects.create_user(username='admin1', password='P@ssw0rd1', role=User.ROLE_ADMIN)


@pytest.fixture
def make_schedule(db):
    """Create a schedule with slots given as ``(start, end, max_patients)`` tuples."""
    def _make(doctor, day, slots=(('09:00', '09:30', 1),), **fields):
        schedule = Schedule(doctor=doctor, date=day, **fields)
        return save_schedule(schedule, [
            {'start_time': start, 'end_time': end, 'max_patients': cap} for start, end, cap in slots
        ])
    return _make


@pytest.fixture
def slot_of():
    def _slot(schedule, start_time='09:00'):
        return TimeSlot.objects.filter(schedule=schedule, start_time=start_time).order_by('position', 'id').first()
    return _slot


@pytest.fixture
def api():
    return APIClient()
