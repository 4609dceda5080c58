"""
Input serializers for appointment endpoints.
"""
from datetime import timedelta

import bleach
from django.conf import settings
from django.utils import timezone
from rest_framework import serializers

from scheduling.models import APPOINTMENT_TYPE_CHOICES, Appointment
from scheduling.serializers.schedules import ClockTimeField
from scheduling.timeutils import slot_start

STATUS_INPUT_CHOICES = [c for c, _ in Appointment.STATUS_CHOICES] + ['pending']


def _clean(v):
    return bleach.clean((v or '').strip(), tags=[], strip=True)


def check_booking_window(day, hhmm) -> None:
    """Reject appointment times in the past or too far ahead."""
    if slot_start(day, hhmm) <= timezone.now():
        raise serializers.ValidationError({'appointmentDate': ['Appointment date cannot be in the past']})
    horizon = timezone.localdate() + timedelta(days=settings.BOOKING_MAX_ADVANCE_DAYS)
    if day > horizon:
        raise serializers.ValidationError(
            {'appointmentDate': [f'Appointments can be booked at most {settings.BOOKING_MAX_ADVANCE_DAYS} days ahead']}
        )


class AppointmentCreateSerializer(serializers.Serializer):
    doctor = serializers.IntegerField()
    patientId = serializers.IntegerField(required=False)
    appointmentDate = serializers.DateField()
    appointmentTime = ClockTimeField()
    reason = serializers.CharField(max_length=500)
    type = serializers.ChoiceField(choices=APPOINTMENT_TYPE_CHOICES, required=False)
    duration = serializers.IntegerField(min_value=15, max_value=120, required=False)
    symptoms = serializers.ListField(child=serializers.CharField(max_length=200), required=False)
    notes = serializers.CharField(max_length=1000, required=False, allow_blank=True)
    paymentMethod = serializers.ChoiceField(choices=Appointment.PAYMENT_METHOD_CHOICES, required=False)

    def validate_reason(self, v):
        v = _clean(v)
        if not v:
            raise serializers.ValidationError('Reason for appointment is required')
        return v

    def validate_notes(self, v):
        return _clean(v)

    def validate_symptoms(self, v):
        return [s for s in (_clean(x) for x in v) if s]

    def validate(self, attrs):
        check_booking_window(attrs['appointmentDate'], attrs['appointmentTime'])
        return attrs

    def booking_details(self) -> dict:
        vd = self.validated_data
        return {
            'reason': vd['reason'],
            'appointment_type': vd.get('type'),
            'duration': vd.get('duration'),
            'symptoms': vd.get('symptoms'),
            'notes': vd.get('notes'),
            'payment_method': vd.get('paymentMethod'),
        }


class AppointmentUpdateSerializer(serializers.Serializer):
    """Partial update of an appointment.

    Date and time move the booking to another slot; the remaining fields
    are descriptive.  Clinical and billing fields are checked against
    the caller's role by the view.
    """
    CLINICAL_FIELDS = ('diagnosis', 'prescription', 'followUpDate', 'followUpNotes')
    BILLING_FIELDS = ('paymentStatus',)

    appointmentDate = serializers.DateField(required=False)
    appointmentTime = ClockTimeField(required=False)
    reason = serializers.CharField(max_length=500, required=False)
    type = serializers.ChoiceField(choices=APPOINTMENT_TYPE_CHOICES, required=False)
    symptoms = serializers.ListField(child=serializers.CharField(max_length=200), required=False)
    notes = serializers.CharField(max_length=1000, required=False, allow_blank=True)
    diagnosis = serializers.CharField(max_length=500, required=False, allow_blank=True)
    prescription = serializers.CharField(max_length=1000, required=False, allow_blank=True)
    followUpDate = serializers.DateField(required=False, allow_null=True)
    followUpNotes = serializers.CharField(required=False, allow_blank=True)
    paymentStatus = serializers.ChoiceField(choices=Appointment.PAYMENT_STATUS_CHOICES, required=False)
    paymentMethod = serializers.ChoiceField(choices=Appointment.PAYMENT_METHOD_CHOICES, required=False)

    def validate_reason(self, v):
        v = _clean(v)
        if not v:
            raise serializers.ValidationError('Reason for appointment is required')
        return v

    def validate_notes(self, v):
        return _clean(v)

    def validate_diagnosis(self, v):
        return _clean(v)

    def validate_prescription(self, v):
        return _clean(v)

    def validate_followUpNotes(self, v):
        return _clean(v)

    def validate_symptoms(self, v):
        return [s for s in (_clean(x) for x in v) if s]


class AppointmentStatusSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=STATUS_INPUT_CHOICES)
    notes = serializers.CharField(max_length=500, required=False, allow_blank=True)

    def validate_status(self, v):
        # older clients send "pending" for a fresh booking
        return Appointment.STATUS_SCHEDULED if v == 'pending' else v

    def validate_notes(self, v):
        return _clean(v)


class AppointmentCancelSerializer(serializers.Serializer):
    cancellationReason = serializers.CharField(max_length=500, required=False, allow_blank=True)

    def validate_cancellationReason(self, v):
        return _clean(v)


class AvailableSlotsQuerySerializer(serializers.Serializer):
    doctorId = serializers.IntegerField()
    date = serializers.DateField()


class AppointmentListQuerySerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=STATUS_INPUT_CHOICES, required=False)
    type = serializers.ChoiceField(choices=APPOINTMENT_TYPE_CHOICES, required=False)
    doctor = serializers.IntegerField(required=False)
    patient = serializers.IntegerField(required=False)
    dateFrom = serializers.DateField(required=False)
    dateTo = serializers.DateField(required=False)
    page = serializers.IntegerField(required=False, min_value=1)
    pageSize = serializers.IntegerField(required=False, min_value=1, max_value=100)

    def validate_status(self, v):
        return Appointment.STATUS_SCHEDULED if v == 'pending' else v
