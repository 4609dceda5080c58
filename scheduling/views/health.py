"""Liveness probe: database round trip and booking configuration."""
import logging

from django.conf import settings
from django.db import DatabaseError, connections
from django.http import JsonResponse

logger = logging.getLogger(__name__)


def healthz(request):
    try:
        with connections['default'].cursor() as cursor:
            cursor.execute('SELECT 1')
            row = cursor.fetchone()
    except DatabaseError as exc:
        logger.error("Health check failed: %s", exc)
        return JsonResponse({'ok': False, 'db': False, 'error': str(exc)}, status=503)
    return JsonResponse({
        'ok': True,
        'db': bool(row and row[0] == 1),
        'timeZone': settings.TIME_ZONE,
        'lockStripes': settings.BOOKING_LOCK_STRIPES,
    })
