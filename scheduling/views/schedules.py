"""
Schedule endpoints.

Doctors publish and maintain their own working days; administrators
can manage every doctor's schedules.  Any authenticated user may browse
the active, bookable schedules.
"""
from __future__ import annotations

from django.utils import timezone
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.exceptions import PermissionDenied, ValidationError
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from ..exceptions import NotFound
from ..models import Schedule, User
from ..pagination import paginate
from ..permissions import IsDoctorOrAdmin, IsDoctorRole, can_manage_schedule, is_admin
from ..serializers.schedules import ScheduleListQuerySerializer, ScheduleStatusSerializer, ScheduleWriteSerializer
from ..services.schedules import (
    create_schedule,
    delete_schedule,
    format_schedule,
    set_schedule_status,
    update_schedule,
)


def _base_queryset():
    return Schedule.objects.select_related('doctor').prefetch_related('time_slots')


def _filtered(qs, params: dict):
    doctor = params.get('doctor') or params.get('doctorId')
    if doctor:
        qs = qs.filter(doctor_id=doctor)
    if params.get('status'):
        qs = qs.filter(status=params['status'])
    if params.get('dateFrom'):
        qs = qs.filter(date__gte=params['dateFrom'])
    if params.get('dateTo'):
        qs = qs.filter(date__lte=params['dateTo'])
    return qs


def _list_response(qs, params: dict, *, include_slots: bool = True) -> Response:
    items, pagination = paginate(qs.order_by('date', 'id'), params.get('page'), params.get('pageSize'))
    return Response({
        'ok': True,
        'data': [format_schedule(s, include_slots=include_slots) for s in items],
        'pagination': pagination,
    })


def _get_manageable(request, pk: int) -> Schedule:
    schedule = Schedule.objects.filter(pk=pk).first()
    if schedule is None:
        raise NotFound('Schedule not found.')
    if not can_manage_schedule(request.user, schedule):
        raise PermissionDenied('You can only manage your own schedules.')
    return schedule


def _detail_response(pk: int, status_code: int = status.HTTP_200_OK) -> Response:
    return Response({'ok': True, 'data': format_schedule(_base_queryset().get(pk=pk))}, status=status_code)


@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated, IsDoctorOrAdmin])
def schedules(request):
    """List all schedules (admin) or publish a new one."""
    user: User = request.user  # type: ignore[assignment]
    if request.method == 'GET':
        if not is_admin(user):
            raise PermissionDenied('Only administrators can list all schedules.')
        q = ScheduleListQuerySerializer(data=request.query_params)
        q.is_valid(raise_exception=True)
        return _list_response(_filtered(_base_queryset(), q.validated_data), q.validated_data, include_slots=False)

    s = ScheduleWriteSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    data = dict(s.validated_data)
    doctor_id = data.pop('doctorId', None)
    if is_admin(user):
        if not doctor_id:
            raise ValidationError({'doctorId': ['This field is required.']})
        doctor = User.objects.filter(pk=doctor_id, role=User.ROLE_DOCTOR).first()
        if doctor is None:
            raise NotFound('Doctor not found.')
    else:
        doctor = user
    schedule = create_schedule(doctor=doctor, actor=user, data=data)
    return _detail_response(schedule.pk, status.HTTP_201_CREATED)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def available_schedules(request):
    """Active working-day schedules, from today onwards unless a range is given."""
    q = ScheduleListQuerySerializer(data=request.query_params)
    q.is_valid(raise_exception=True)
    params = dict(q.validated_data)
    params.pop('status', None)
    qs = _base_queryset().filter(status=Schedule.STATUS_ACTIVE, is_working_day=True)
    if not params.get('dateFrom') and not params.get('dateTo'):
        qs = qs.filter(date__gte=timezone.localdate())
    return _list_response(_filtered(qs, params), params)


@api_view(['GET'])
@permission_classes([IsAuthenticated, IsDoctorRole])
def my_schedules(request):
    q = ScheduleListQuerySerializer(data=request.query_params)
    q.is_valid(raise_exception=True)
    params = dict(q.validated_data)
    params['doctor'] = request.user.id
    return _list_response(_filtered(_base_queryset(), params), params)


@api_view(['GET', 'PUT', 'DELETE'])
@permission_classes([IsAuthenticated])
def schedule_detail(request, pk: int):
    if request.method == 'GET':
        if not Schedule.objects.filter(pk=pk).exists():
            raise NotFound('Schedule not found.')
        return _detail_response(pk)

    schedule = _get_manageable(request, pk)
    if request.method == 'DELETE':
        delete_schedule(schedule.pk, actor=request.user)
        return Response({'ok': True})

    s = ScheduleWriteSerializer(data=request.data, partial=True)
    s.is_valid(raise_exception=True)
    data = dict(s.validated_data)
    data.pop('doctorId', None)
    update_schedule(schedule.pk, actor=request.user, data=data)
    return _detail_response(schedule.pk)


@api_view(['PUT'])
@permission_classes([IsAuthenticated])
def schedule_update_status(request, pk: int):
    schedule = _get_manageable(request, pk)
    s = ScheduleStatusSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    set_schedule_status(schedule.pk, s.validated_data['status'], actor=request.user)
    return _detail_response(schedule.pk)
