"""WebSocket routes of the scheduling app."""
from django.urls import path

from scheduling.realtime.consumers import ScheduleUpdatesConsumer

websocket_urlpatterns = [
    path("ws/schedules/<int:doctor_id>/", ScheduleUpdatesConsumer.as_asgi()),
]
