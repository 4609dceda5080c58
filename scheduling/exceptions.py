"""
Error types raised by the booking services and the DRF exception handler.

The booking errors subclass :class:`rest_framework.exceptions.APIException`
so that they travel unchanged from the service layer to the HTTP layer.
Every error response has the shape
``{'ok': False, 'error': {'code': ..., 'message': ...}}``.
"""
from __future__ import annotations

import logging

from rest_framework import status
from rest_framework.exceptions import APIException
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler

logger = logging.getLogger(__name__)


class NotFound(APIException):
    """Referenced doctor, patient, schedule or appointment does not exist."""
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = 'Resource not found.'
    default_code = 'not_found'


class NoScheduleAvailable(APIException):
    """The doctor has no active schedule on the requested day."""
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'Doctor has no schedule available for this date.'
    default_code = 'no_schedule_available'


class SlotUnavailable(APIException):
    """No slot starts at the requested time, or the slot is closed or full."""
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'The selected time slot is not available.'
    default_code = 'slot_unavailable'


class InvalidTransition(APIException):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'Appointment status cannot be changed this way.'
    default_code = 'invalid_transition'


class InvariantViolation(APIException):
    """A slot counter left the ``0 <= current <= max`` range.

    Never expected at runtime; raised when the database constraint
    rejects an update so the fault surfaces instead of being absorbed.
    """
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail = 'Slot capacity invariant violated.'
    default_code = 'invariant_violation'


_STATUS_CODES = {
    status.HTTP_401_UNAUTHORIZED: 'not_authenticated',
    status.HTTP_403_FORBIDDEN: 'permission_denied',
    status.HTTP_404_NOT_FOUND: 'not_found',
}


def _error_code(exc, status_code: int) -> str:
    get_codes = getattr(exc, 'get_codes', None)
    if get_codes is not None:
        codes = get_codes()
        if isinstance(codes, str):
            return codes
        # field errors from serializers
        return 'invalid'
    return _STATUS_CODES.get(status_code, 'api_error')


def api_exception_handler(exc, context):
    resp = drf_exception_handler(exc, context)
    if resp is None:
        logger.exception("Unhandled API error", exc_info=exc)
        return Response({'ok': False, 'error': {'code': 'server_error', 'message': str(exc)}}, status=500)
    # normalize response, keeping headers such as Retry-After
    if isinstance(resp.data, dict):
        detail = resp.data.get('detail') or resp.data
    else:
        detail = resp.data
    resp.data = {'ok': False, 'error': {'code': _error_code(exc, resp.status_code), 'message': detail}}
    return resp
