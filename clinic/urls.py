"""
Root URL configuration of the clinic project.

The API itself lives in :mod:`scheduling.routers`; this module adds the
Django admin and the drf-yasg OpenAPI pages (``/swagger/``, ``/redoc/``).
"""
from django.contrib import admin
from django.urls import include, path
from drf_yasg import openapi
from drf_yasg.views import get_schema_view
from rest_framework import permissions

api_info = openapi.Info(
    title="Clinic Booking API",
    default_version='v1',
    description="Doctor schedules, appointment booking and slot availability.",
)

schema_view = get_schema_view(api_info, public=True, permission_classes=(permissions.AllowAny,))

urlpatterns = [
    path('', include('scheduling.routers')),
    path('admin/', admin.site.urls),
    path('swagger/', schema_view.with_ui('swagger', cache_timeout=0), name='schema-swagger-ui'),
    path('redoc/', schema_view.with_ui('redoc', cache_timeout=0), name='schema-redoc'),
]
