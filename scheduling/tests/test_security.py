import pytest
from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from channels.routing import URLRouter
from channels.testing import WebsocketCommunicator
from django.contrib.auth.models import AnonymousUser
from django.urls import reverse
from rest_framework.test import APIClient

from scheduling.models import User
from scheduling.realtime.routing import websocket_urlpatterns
from scheduling.services.booking import book_slot
from scheduling.services.realtime import group_name, slots_changed_event
from scheduling.throttling import WriteScopedRateThrottle

pytestmark = pytest.mark.django_db

ws_application = URLRouter(websocket_urlpatterns)


def login(client, username, password):
    r = client.post(reverse('login_view'), {'username': username, 'password': password}, format='json')
    assert r.status_code in (200, 400, 429)
    return r


def test_no_role_bypass_in_login():
    client = APIClient()
    u = User.objects.create_user(username='u1', password='P@ssw0rd1', role='patient')
    r = client.post(reverse('login_view'), {'username': 'u1', 'password': 'P@ssw0rd1', 'role': 'admin'}, format='json')
    assert r.status_code == 200
    assert r.data['role'] == 'patient'
    u.refresh_from_db()
    assert u.role == 'patient'


def test_jwt_refresh_and_bearer_auth():
    client = APIClient()
    User.objects.create_user(username='u_jwt', password='P@ssw0rd1', role='patient')
    r = login(client, 'u_jwt', 'P@ssw0rd1')
    assert r.data['jwt_access'] and r.data['jwt_refresh']

    refreshed = client.post(reverse('jwt_refresh_view'), {'refresh': r.data['jwt_refresh']}, format='json')
    assert refreshed.status_code == 200
    assert 'jwt_access' in refreshed.data and 'access' not in refreshed.data

    client.credentials(HTTP_AUTHORIZATION=f"Bearer {refreshed.data['jwt_access']}")
    assert client.get('/api/appointments/my-appointments').status_code == 200


def test_inactive_user_token_is_rejected():
    client = APIClient()
    u = User.objects.create_user(username='gone', password='P@ssw0rd1', role='patient')
    token = login(client, 'gone', 'P@ssw0rd1').data['token']
    u.is_active = False
    u.save(update_fields=['is_active'])
    client.credentials(HTTP_AUTHORIZATION=f'Token {token}')
    assert client.get('/api/appointments/my-appointments').status_code == 401


def test_login_is_throttled():
    client = APIClient()
    User.objects.create_user(username='victim', password='P@ssw0rd1', role='patient')
    for _ in range(10):
        assert login(client, 'victim', 'wrong').status_code == 400
    r = login(client, 'victim', 'wrong')
    assert r.status_code == 429
    assert r.data['error']['code'] == 'throttled'
    assert 'Retry-After' in r


def test_booking_text_is_sanitised(api, doctor, patient, make_schedule, day):
    make_schedule(doctor, day)
    api.force_authenticate(user=patient)
    r = api.post('/api/appointments', {
        'doctor': doctor.id,
        'appointmentDate': day.isoformat(),
        'appointmentTime': '09:00',
        'reason': '<script>alert(1)</script>Chest pain',
        'symptoms': ['<b>cough</b>', '<i></i>'],
    }, format='json')
    assert r.status_code == 201
    assert '<script>' not in r.data['data']['reason']
    assert 'Chest pain' in r.data['data']['reason']
    assert r.data['data']['symptoms'] == ['cough']


def test_anonymous_websocket_is_rejected():
    async def scenario():
        communicator = WebsocketCommunicator(ws_application, "/ws/schedules/1/")
        communicator.scope["user"] = AnonymousUser()
        connected, _ = await communicator.connect()
        await communicator.disconnect()
        return connected

    assert async_to_sync(scenario)() is False


def test_websocket_receives_slot_changes(doctor, patient, make_schedule, day):
    make_schedule(doctor, day, slots=[('09:00', '09:30', 2)])
    book_slot(patient, doctor.id, day, '09:00', {'reason': 'x'})
    event = slots_changed_event(doctor.id, day)

    async def scenario():
        communicator = WebsocketCommunicator(ws_application, f"/ws/schedules/{doctor.id}/")
        communicator.scope["user"] = patient
        connected, _ = await communicator.connect()
        assert connected
        welcome = await communicator.receive_json_from()
        await get_channel_layer().group_send(group_name(doctor.id), event)
        message = await communicator.receive_json_from()
        await communicator.disconnect()
        return welcome, message

    welcome, message = async_to_sync(scenario)()
    assert welcome == {"type": "welcome", "group": f"schedule.doctor.{doctor.id}"}
    assert message["type"] == "slots.changed"
    assert message["date"] == day.isoformat()
    assert [(s["startTime"], s["currentPatients"]) for s in message["slots"]] == [("09:00", 1)]


def test_admin_shows_slot_counters_read_only(client, settings, doctor, patient, make_schedule, day):
    settings.STORAGES = {
        **settings.STORAGES,
        "staticfiles": {"BACKEND": "django.contrib.staticfiles.storage.StaticFilesStorage"},
    }
    schedule = make_schedule(doctor, day)
    appt = book_slot(patient, doctor.id, day, '09:00', {'reason': 'x'})
    staff = User.objects.create_superuser(username='root', email='root@example.com', password='P@ssw0rd1')
    client.force_login(staff)
    admin_client = client

    r = admin_client.get(f'/admin/scheduling/schedule/{schedule.id}/change/')
    assert r.status_code == 200
    assert 'name="time_slots-0-current_patients"' not in r.content.decode()
    assert 'name="time_slots-0-max_patients"' in r.content.decode()
    assert admin_client.get(f'/admin/scheduling/appointment/{appt.id}/change/').status_code == 200
    assert admin_client.get('/admin/scheduling/auditevent/').status_code == 200


def test_booking_throttle_counts_only_posts(api, monkeypatch, admin_user, doctor, patient, make_schedule, day):
    monkeypatch.setattr(WriteScopedRateThrottle, 'THROTTLE_RATES', {'booking': '2/min'})
    make_schedule(doctor, day, slots=[('09:00', '09:30', 5)])

    api.force_authenticate(user=admin_user)
    for _ in range(4):
        assert api.get('/api/appointments').status_code == 200

    api.force_authenticate(user=patient)
    body = {'doctor': doctor.id, 'appointmentDate': day.isoformat(), 'appointmentTime': '09:00', 'reason': 'x'}
    assert api.post('/api/appointments', body, format='json').status_code == 201
    assert api.post('/api/appointments', body, format='json').status_code == 201
    r = api.post('/api/appointments', body, format='json')
    assert r.status_code == 429
    assert r.data['error']['code'] == 'throttled'
