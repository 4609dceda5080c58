"""
Input serializers for schedule endpoints.

Payloads use the camelCase names of the front end; ``source`` maps them
onto model field names so ``validated_data`` can be handed to the
services as is.
"""
import bleach
from rest_framework import serializers

from scheduling.models import APPOINTMENT_TYPE_CHOICES, Schedule
from scheduling.timeutils import normalize_hhmm, to_minutes


class ClockTimeField(serializers.CharField):
    """``HH:MM`` clock time, normalised to zero-padded form."""

    def to_internal_value(self, data):
        value = super().to_internal_value(data)
        try:
            return normalize_hhmm(value)
        except ValueError:
            raise serializers.ValidationError('Please enter a valid time format (HH:MM)')


def _check_order(start: str, end: str, message: str) -> None:
    if to_minutes(end) <= to_minutes(start):
        raise serializers.ValidationError(message)


class TimeSlotSerializer(serializers.Serializer):
    startTime = ClockTimeField(source='start_time')
    endTime = ClockTimeField(source='end_time')
    isAvailable = serializers.BooleanField(source='is_available', required=False)
    appointmentType = serializers.ChoiceField(source='appointment_type', choices=APPOINTMENT_TYPE_CHOICES, required=False)
    maxPatients = serializers.IntegerField(source='max_patients', min_value=1, required=False)
    currentPatients = serializers.IntegerField(source='current_patients', min_value=0, required=False, allow_null=True)

    def validate(self, attrs):
        # partial schedule updates do not enforce required fields of nested slots
        missing = [name for name, key in (('startTime', 'start_time'), ('endTime', 'end_time')) if key not in attrs]
        if missing:
            raise serializers.ValidationError({name: ['This field is required.'] for name in missing})
        _check_order(attrs['start_time'], attrs['end_time'], 'End time must be after start time for each time slot')
        attrs.setdefault('is_available', True)
        attrs.setdefault('appointment_type', 'consultation')
        attrs.setdefault('max_patients', 1)
        attrs.setdefault('current_patients', None)
        return attrs


class BreakTimeSerializer(serializers.Serializer):
    startTime = ClockTimeField()
    endTime = ClockTimeField()
    reason = serializers.CharField(required=False, allow_blank=True, max_length=100)

    def validate_reason(self, v):
        return bleach.clean((v or '').strip(), tags=[], strip=True)

    def validate(self, attrs):
        _check_order(attrs['startTime'], attrs['endTime'], 'Break end time must be after start time')
        attrs.setdefault('reason', 'Lunch break')
        return attrs


class WorkingHoursSerializer(serializers.Serializer):
    start = ClockTimeField()
    end = ClockTimeField()

    def validate(self, attrs):
        _check_order(attrs['start'], attrs['end'], 'Working hours end time must be after start time')
        return attrs


class ScheduleWriteSerializer(serializers.Serializer):
    """Create (full) and update (``partial=True``) payload of a schedule."""
    doctorId = serializers.IntegerField(required=False)
    date = serializers.DateField()
    workingHours = WorkingHoursSerializer(required=False)
    breakTime = BreakTimeSerializer(source='break_times', many=True, required=False)
    isWorkingDay = serializers.BooleanField(source='is_working_day', required=False)
    appointmentDuration = serializers.IntegerField(source='appointment_duration', min_value=15, max_value=120, required=False)
    consultationFee = serializers.DecimalField(source='consultation_fee', max_digits=10, decimal_places=2, min_value=0, required=False)
    notes = serializers.CharField(required=False, allow_blank=True, max_length=500)
    isRecurring = serializers.BooleanField(source='is_recurring', required=False)
    recurringPattern = serializers.ChoiceField(source='recurring_pattern', choices=Schedule.PATTERN_CHOICES, required=False, allow_blank=True)
    recurringDays = serializers.ListField(source='recurring_days', child=serializers.IntegerField(min_value=0, max_value=6), required=False)
    recurringEndDate = serializers.DateField(source='recurring_end_date', required=False, allow_null=True)
    timeSlots = TimeSlotSerializer(source='time_slots', many=True, required=False)

    def validate_notes(self, v):
        return bleach.clean((v or '').strip(), tags=[], strip=True)

    def validate(self, attrs):
        hours = attrs.pop('workingHours', None)
        if hours:
            attrs['work_start'] = hours['start']
            attrs['work_end'] = hours['end']
        return attrs


class ScheduleStatusSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=[c for c, _ in Schedule.STATUS_CHOICES])


class ScheduleListQuerySerializer(serializers.Serializer):
    doctor = serializers.IntegerField(required=False)
    doctorId = serializers.IntegerField(required=False)
    status = serializers.ChoiceField(choices=[c for c, _ in Schedule.STATUS_CHOICES], required=False)
    dateFrom = serializers.DateField(required=False)
    dateTo = serializers.DateField(required=False)
    page = serializers.IntegerField(required=False, min_value=1)
    pageSize = serializers.IntegerField(required=False, min_value=1, max_value=100)
