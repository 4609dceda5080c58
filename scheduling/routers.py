"""
URL mappings for the clinic booking API.

Paths carry no trailing slash to match the front end.  Literal paths
such as ``available-slots`` are listed before ``<int:pk>`` routes.
"""
from django.urls import path, include

from .auth_views import login_view, jwt_refresh_view
from .views import appointments, health, schedules

urlpatterns = [
    path('', include('django_prometheus.urls')),
    path('healthz', health.healthz, name='healthz'),

    path('api/auth/login', login_view, name='login_view'),
    path('api/auth/refresh', jwt_refresh_view, name='jwt_refresh_view'),

    path('api/appointments', appointments.appointments, name='appointments'),
    path('api/appointments/available-slots', appointments.available_slots, name='appointment_available_slots'),
    path('api/appointments/my-appointments', appointments.my_appointments, name='my_appointments'),
    path('api/appointments/doctor-appointments', appointments.doctor_appointments, name='doctor_appointments'),
    path('api/appointments/<int:pk>', appointments.appointment_detail, name='appointment_detail'),
    path('api/appointments/<int:pk>/status', appointments.appointment_update_status, name='appointment_status'),
    path('api/appointments/<int:pk>/cancel', appointments.appointment_cancel, name='appointment_cancel'),

    path('api/schedules', schedules.schedules, name='schedules'),
    path('api/schedules/available', schedules.available_schedules, name='available_schedules'),
    path('api/schedules/my-schedules', schedules.my_schedules, name='my_schedules'),
    path('api/schedules/<int:pk>', schedules.schedule_detail, name='schedule_detail'),
    path('api/schedules/<int:pk>/status', schedules.schedule_update_status, name='schedule_status'),
]
