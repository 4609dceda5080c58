"""
Appointment endpoints.

Patients book, view, reschedule and cancel their own appointments.
Doctors see and progress the appointments booked with them.
Administrators may act on every appointment.  Every change to slot
occupancy goes through :mod:`scheduling.services.booking`; the views
only validate input, check access and shape responses.
"""
from __future__ import annotations

from django.db import transaction
from django.db.models import Q
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes, throttle_classes
from rest_framework.exceptions import PermissionDenied
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.throttling import AnonRateThrottle, UserRateThrottle

from ..exceptions import NotFound
from ..models import Appointment, User
from ..pagination import paginate
from ..permissions import IsDoctorOrAdmin, can_access_appointment, is_admin
from ..serializers.appointments import (
    AppointmentCancelSerializer,
    AppointmentCreateSerializer,
    AppointmentListQuerySerializer,
    AppointmentStatusSerializer,
    AppointmentUpdateSerializer,
    AvailableSlotsQuerySerializer,
    check_booking_window,
)
from ..services.audit import log_action
from ..services.availability import list_available_start_times
from ..services.booking import (
    book_slot,
    cancel_appointment,
    change_status,
    delete_appointment,
    reschedule_appointment,
)
from ..throttling import WriteScopedRateThrottle

DESCRIPTIVE_FIELDS = {
    'reason': 'reason',
    'type': 'appointment_type',
    'symptoms': 'symptoms',
    'notes': 'notes',
    'diagnosis': 'diagnosis',
    'prescription': 'prescription',
    'followUpDate': 'follow_up_date',
    'followUpNotes': 'follow_up_notes',
    'paymentStatus': 'payment_status',
    'paymentMethod': 'payment_method',
}


def _person(user: User, *, doctor: bool = False) -> dict:
    data = {
        'id': user.id,
        'name': user.display_name,
        'email': user.email,
        'phone': user.phone,
    }
    if doctor:
        data['specialization'] = user.specialization
    return data


def _serialize(a: Appointment) -> dict:
    return {
        'id': a.id,
        'patient': _person(a.patient),
        'doctor': _person(a.doctor, doctor=True),
        'appointmentDate': a.appointment_date.isoformat(),
        'appointmentTime': a.appointment_time,
        'duration': a.duration,
        'status': a.status,
        'type': a.appointment_type,
        'reason': a.reason,
        'notes': a.notes,
        'symptoms': a.symptoms,
        'diagnosis': a.diagnosis,
        'prescription': a.prescription,
        'followUpDate': a.follow_up_date.isoformat() if a.follow_up_date else None,
        'followUpNotes': a.follow_up_notes,
        'consultationFee': str(a.consultation_fee),
        'paymentStatus': a.payment_status,
        'paymentMethod': a.payment_method,
        'cancelledBy': a.cancelled_by_id,
        'cancellationReason': a.cancellation_reason,
        'cancelledAt': a.cancelled_at.isoformat() if a.cancelled_at else None,
        'createdAt': a.created_at.isoformat() if a.created_at else None,
        'updatedAt': a.updated_at.isoformat() if a.updated_at else None,
    }


def _base_queryset():
    return Appointment.objects.select_related('patient', 'doctor')


def _get_accessible(request, pk: int) -> Appointment:
    appointment = _base_queryset().filter(pk=pk).first()
    if appointment is None:
        raise NotFound('Appointment not found.')
    if not can_access_appointment(request.user, appointment):
        raise PermissionDenied('You do not have access to this appointment.')
    return appointment


def _filtered(qs, params: dict):
    if params.get('status'):
        qs = qs.filter(status=params['status'])
    if params.get('type'):
        qs = qs.filter(appointment_type=params['type'])
    if params.get('doctor'):
        qs = qs.filter(doctor_id=params['doctor'])
    if params.get('patient'):
        qs = qs.filter(patient_id=params['patient'])
    if params.get('dateFrom'):
        qs = qs.filter(appointment_date__gte=params['dateFrom'])
    if params.get('dateTo'):
        qs = qs.filter(appointment_date__lte=params['dateTo'])
    return qs


def _list_response(qs, params: dict) -> Response:
    items, pagination = paginate(qs, params.get('page'), params.get('pageSize'))
    return Response({'ok': True, 'data': [_serialize(a) for a in items], 'pagination': pagination})


@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated])
@throttle_classes([AnonRateThrottle, UserRateThrottle, WriteScopedRateThrottle])
def appointments(request):
    """List every appointment (admin) or book a new one."""
    user: User = request.user  # type: ignore[assignment]
    if request.method == 'GET':
        if not is_admin(user):
            raise PermissionDenied('Only administrators can list all appointments.')
        q = AppointmentListQuerySerializer(data=request.query_params)
        q.is_valid(raise_exception=True)
        qs = _filtered(_base_queryset(), q.validated_data).order_by('-appointment_date', '-appointment_time')
        return _list_response(qs, q.validated_data)

    s = AppointmentCreateSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    vd = s.validated_data
    if user.role == User.ROLE_PATIENT:
        patient = user
    elif is_admin(user) and vd.get('patientId'):
        patient = User.objects.filter(pk=vd['patientId'], role=User.ROLE_PATIENT).first()
        if patient is None:
            raise NotFound('Patient not found.')
    else:
        raise PermissionDenied('Only patients can book appointments.')
    appointment = book_slot(patient, vd['doctor'], vd['appointmentDate'], vd['appointmentTime'], s.booking_details())
    appointment = _base_queryset().get(pk=appointment.pk)
    return Response({'ok': True, 'data': _serialize(appointment)}, status=status.HTTP_201_CREATED)

# the booking scope counts POSTs only; the admin listing is not throttled by it
appointments.cls.throttle_scope = 'booking'


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def available_slots(request):
    """Start times still open for a doctor on a day; empty when none."""
    q = AvailableSlotsQuerySerializer(data=request.query_params)
    q.is_valid(raise_exception=True)
    doctor_id, day = q.validated_data['doctorId'], q.validated_data['date']
    times = list_available_start_times(doctor_id, day)
    return Response({'ok': True, 'data': {'doctorId': doctor_id, 'date': day.isoformat(), 'availableSlots': times}})


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def my_appointments(request):
    user: User = request.user  # type: ignore[assignment]
    q = AppointmentListQuerySerializer(data=request.query_params)
    q.is_valid(raise_exception=True)
    params = {k: v for k, v in q.validated_data.items() if k not in ('doctor', 'patient')}
    qs = _base_queryset().filter(Q(patient=user) | Q(doctor=user))
    qs = _filtered(qs, params).order_by('-appointment_date', '-appointment_time')
    return _list_response(qs, params)


@api_view(['GET'])
@permission_classes([IsAuthenticated, IsDoctorOrAdmin])
def doctor_appointments(request):
    """A doctor's own appointments; administrators may pick the doctor."""
    user: User = request.user  # type: ignore[assignment]
    q = AppointmentListQuerySerializer(data=request.query_params)
    q.is_valid(raise_exception=True)
    params = dict(q.validated_data)
    if not is_admin(user):
        params['doctor'] = user.id
    qs = _filtered(_base_queryset(), params).order_by('appointment_date', 'appointment_time')
    return _list_response(qs, params)


@api_view(['GET', 'PUT', 'DELETE'])
@permission_classes([IsAuthenticated])
def appointment_detail(request, pk: int):
    user: User = request.user  # type: ignore[assignment]
    appointment = _get_accessible(request, pk)
    if request.method == 'GET':
        return Response({'ok': True, 'data': _serialize(appointment)})

    if request.method == 'DELETE':
        delete_appointment(appointment.pk, actor=user)
        return Response({'ok': True})

    s = AppointmentUpdateSerializer(data=request.data, partial=True)
    s.is_valid(raise_exception=True)
    vd = s.validated_data
    if any(f in vd for f in s.CLINICAL_FIELDS) and user.role not in (User.ROLE_DOCTOR, User.ROLE_ADMIN):
        raise PermissionDenied('Only doctors can record clinical details.')
    if any(f in vd for f in s.BILLING_FIELDS) and user.role not in (User.ROLE_DOCTOR, User.ROLE_ADMIN):
        raise PermissionDenied('Only doctors and administrators can change the payment status.')

    new_day = vd.get('appointmentDate', appointment.appointment_date)
    new_time = vd.get('appointmentTime', appointment.appointment_time)
    if (new_day, new_time) != (appointment.appointment_date, appointment.appointment_time):
        check_booking_window(new_day, new_time)
        reschedule_appointment(appointment.pk, actor=user, day=new_day, start_time=new_time)

    changes = {model_field: vd[field] for field, model_field in DESCRIPTIVE_FIELDS.items() if field in vd}
    if changes:
        with transaction.atomic():
            locked = Appointment.objects.select_for_update().filter(pk=appointment.pk).first()
            if locked is None:
                raise NotFound('Appointment not found.')
            for field, value in changes.items():
                setattr(locked, field, value)
            locked.save(update_fields=[*changes, 'updated_at'])
            log_action(user=user, action='appointment_update', object_type='appointment', object_id=locked.id,
                       detail={'fields': sorted(changes)})

    appointment = _base_queryset().get(pk=appointment.pk)
    return Response({'ok': True, 'data': _serialize(appointment)})


@api_view(['PUT'])
@permission_classes([IsAuthenticated, IsDoctorOrAdmin])
def appointment_update_status(request, pk: int):
    """Move an appointment along its status graph (doctor or admin)."""
    appointment = _get_accessible(request, pk)
    s = AppointmentStatusSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    change_status(appointment.pk, s.validated_data['status'], actor=request.user, notes=s.validated_data.get('notes'))
    appointment = _base_queryset().get(pk=appointment.pk)
    return Response({'ok': True, 'data': _serialize(appointment)})


@api_view(['PUT'])
@permission_classes([IsAuthenticated])
def appointment_cancel(request, pk: int):
    appointment = _get_accessible(request, pk)
    s = AppointmentCancelSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    cancel_appointment(appointment.pk, actor=request.user, reason=s.validated_data.get('cancellationReason', ''))
    appointment = _base_queryset().get(pk=appointment.pk)
    return Response({'ok': True, 'data': _serialize(appointment)})
