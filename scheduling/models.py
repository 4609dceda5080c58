"""
Database models for the clinic booking backend.

A doctor publishes one :class:`Schedule` per working day.  The schedule
owns an ordered list of :class:`TimeSlot` rows, each with a capacity and
a current occupancy.  An :class:`Appointment` does not store a reference
to its slot: the slot is found again through (doctor, date, start time).
"""
from __future__ import annotations

from django.contrib.auth.models import AbstractUser
from django.core.validators import MaxValueValidator, MinValueValidator, RegexValidator
from django.db import models
from django.utils import timezone

hhmm_validator = RegexValidator(
    regex=r'^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$',
    message='Please enter a valid time format (HH:MM)',
)

APPOINTMENT_TYPE_CHOICES = [
    ('consultation', 'Consultation'),
    ('follow-up', 'Follow-up'),
    ('emergency', 'Emergency'),
    ('routine-checkup', 'Routine check-up'),
    ('specialist', 'Specialist'),
]


class User(AbstractUser):
    """Custom user model carrying the clinic role.

    Doctors additionally carry a specialization and a consultation fee
    which is copied onto every appointment booked with them.
    """
    ROLE_PATIENT = 'patient'
    ROLE_DOCTOR = 'doctor'
    ROLE_ADMIN = 'admin'
    ROLE_MONITOR = 'monitor'
    ROLE_CHOICES = [
        (ROLE_PATIENT, 'Patient'),
        (ROLE_DOCTOR, 'Doctor'),
        (ROLE_ADMIN, 'Administrator'),
        (ROLE_MONITOR, 'Monitor'),
    ]
    role = models.CharField(max_length=10, choices=ROLE_CHOICES, default=ROLE_PATIENT, db_index=True)
    phone = models.CharField(max_length=20, blank=True)
    specialization = models.CharField(max_length=100, blank=True)
    consultation_fee = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)

    def __str__(self) -> str:
        return f"{self.username} ({self.role})"

    @property
    def display_name(self) -> str:
        return self.get_full_name() or self.username


class Schedule(models.Model):
    """A doctor's working day: working hours, breaks and bookable slots.

    Recurrence fields are informational only; every working day is stored
    as its own row.
    """
    STATUS_ACTIVE = 'active'
    STATUS_INACTIVE = 'inactive'
    STATUS_CANCELLED = 'cancelled'
    STATUS_CHOICES = [
        (STATUS_ACTIVE, 'Active'),
        (STATUS_INACTIVE, 'Inactive'),
        (STATUS_CANCELLED, 'Cancelled'),
    ]
    PATTERN_CHOICES = [
        ('daily', 'Daily'),
        ('weekly', 'Weekly'),
        ('monthly', 'Monthly'),
    ]

    doctor = models.ForeignKey(User, on_delete=models.CASCADE, related_name='schedules')
    date = models.DateField()
    work_start = models.CharField(max_length=5, default='09:00', validators=[hhmm_validator])
    work_end = models.CharField(max_length=5, default='17:00', validators=[hhmm_validator])
    break_times = models.JSONField(default=list, blank=True)
    is_working_day = models.BooleanField(default=True)
    appointment_duration = models.PositiveIntegerField(
        default=30, validators=[MinValueValidator(15), MaxValueValidator(120)], help_text="minutes"
    )
    consultation_fee = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    notes = models.TextField(blank=True, max_length=500)
    is_recurring = models.BooleanField(default=False)
    recurring_pattern = models.CharField(max_length=10, choices=PATTERN_CHOICES, blank=True)
    recurring_days = models.JSONField(default=list, blank=True)
    recurring_end_date = models.DateField(null=True, blank=True)
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default=STATUS_ACTIVE, db_index=True)
    created_by = models.ForeignKey(
        User, null=True, blank=True, on_delete=models.SET_NULL, related_name='schedules_created'
    )
    last_modified_by = models.ForeignKey(
        User, null=True, blank=True, on_delete=models.SET_NULL, related_name='schedules_modified'
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=['doctor', 'date'], name='schedule_doctor_date_idx'),
            models.Index(fields=['date'], name='schedule_date_idx'),
        ]

    def __str__(self) -> str:
        return f"Schedule(d={self.doctor_id}, {self.date:%F}, {self.status})"

    @property
    def is_past(self) -> bool:
        return self.date < timezone.localdate()

    @property
    def available_slots(self) -> list['TimeSlot']:
        return [s for s in self.time_slots.all() if s.is_bookable]

    @property
    def total_available_appointments(self) -> int:
        return sum(s.max_patients - s.current_patients for s in self.time_slots.all() if s.is_available)


class TimeSlot(models.Model):
    """A bookable interval inside a schedule.

    ``current_patients`` is only changed by the booking and release
    transactions in :mod:`scheduling.services.booking`.
    """
    schedule = models.ForeignKey(Schedule, on_delete=models.CASCADE, related_name='time_slots')
    position = models.PositiveIntegerField(default=0)
    start_time = models.CharField(max_length=5, validators=[hhmm_validator])
    end_time = models.CharField(max_length=5, validators=[hhmm_validator])
    is_available = models.BooleanField(default=True)
    appointment_type = models.CharField(max_length=20, choices=APPOINTMENT_TYPE_CHOICES, default='consultation')
    max_patients = models.PositiveIntegerField(default=1, validators=[MinValueValidator(1)])
    current_patients = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ['position', 'id']
        constraints = [
            models.CheckConstraint(
                condition=models.Q(current_patients__lte=models.F('max_patients')),
                name='timeslot_capacity_not_exceeded',
            ),
            models.CheckConstraint(
                condition=models.Q(max_patients__gte=1),
                name='timeslot_capacity_positive',
            ),
        ]

    def __str__(self) -> str:
        return f"{self.start_time}-{self.end_time} ({self.current_patients}/{self.max_patients})"

    @property
    def is_bookable(self) -> bool:
        return self.is_available and self.current_patients < self.max_patients


class Appointment(models.Model):
    """A patient's booking of one unit of a doctor's time slot."""
    STATUS_SCHEDULED = 'scheduled'
    STATUS_CONFIRMED = 'confirmed'
    STATUS_IN_PROGRESS = 'in-progress'
    STATUS_COMPLETED = 'completed'
    STATUS_CANCELLED = 'cancelled'
    STATUS_NO_SHOW = 'no-show'
    STATUS_CHOICES = [
        (STATUS_SCHEDULED, 'Scheduled'),
        (STATUS_CONFIRMED, 'Confirmed'),
        (STATUS_IN_PROGRESS, 'In progress'),
        (STATUS_COMPLETED, 'Completed'),
        (STATUS_CANCELLED, 'Cancelled'),
        (STATUS_NO_SHOW, 'No show'),
    ]
    # Statuses that still hold a unit of slot capacity which a
    # cancellation or deletion gives back.
    LIVE_STATUSES = (STATUS_SCHEDULED, STATUS_CONFIRMED, STATUS_IN_PROGRESS)
    TRANSITIONS = {
        STATUS_SCHEDULED: (STATUS_CONFIRMED, STATUS_IN_PROGRESS, STATUS_CANCELLED, STATUS_NO_SHOW),
        STATUS_CONFIRMED: (STATUS_IN_PROGRESS, STATUS_CANCELLED, STATUS_NO_SHOW),
        STATUS_IN_PROGRESS: (STATUS_COMPLETED, STATUS_CANCELLED),
        STATUS_COMPLETED: (),
        STATUS_CANCELLED: (),
        STATUS_NO_SHOW: (),
    }

    PAYMENT_STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('paid', 'Paid'),
        ('refunded', 'Refunded'),
    ]
    PAYMENT_METHOD_CHOICES = [
        ('cash', 'Cash'),
        ('card', 'Card'),
        ('insurance', 'Insurance'),
        ('online', 'Online'),
    ]

    patient = models.ForeignKey(User, on_delete=models.CASCADE, related_name='patient_appointments')
    doctor = models.ForeignKey(User, on_delete=models.CASCADE, related_name='doctor_appointments')
    appointment_date = models.DateField()
    appointment_time = models.CharField(max_length=5, validators=[hhmm_validator])
    duration = models.PositiveIntegerField(default=30, validators=[MinValueValidator(15), MaxValueValidator(120)])
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_SCHEDULED, db_index=True)
    appointment_type = models.CharField(max_length=20, choices=APPOINTMENT_TYPE_CHOICES, default='consultation')
    reason = models.TextField(max_length=500)
    notes = models.TextField(blank=True, max_length=1000)
    symptoms = models.JSONField(default=list, blank=True)
    diagnosis = models.TextField(blank=True)
    prescription = models.TextField(blank=True)
    follow_up_date = models.DateField(null=True, blank=True)
    follow_up_notes = models.TextField(blank=True)
    consultation_fee = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    payment_status = models.CharField(max_length=10, choices=PAYMENT_STATUS_CHOICES, default='pending')
    payment_method = models.CharField(max_length=10, choices=PAYMENT_METHOD_CHOICES, default='online')
    cancelled_by = models.ForeignKey(
        User, null=True, blank=True, on_delete=models.SET_NULL, related_name='cancelled_appointments'
    )
    cancellation_reason = models.CharField(max_length=500, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=['patient', 'appointment_date'], name='appt_patient_date_idx'),
            models.Index(fields=['doctor', 'appointment_date'], name='appt_doctor_date_idx'),
            models.Index(fields=['appointment_date', 'appointment_time'], name='appt_date_time_idx'),
        ]

    def __str__(self) -> str:
        return f"Appointment(p={self.patient_id}, d={self.doctor_id}, {self.appointment_date:%F} {self.appointment_time})"

    @property
    def is_live(self) -> bool:
        return self.status in self.LIVE_STATUSES

    def can_transition(self, new_status: str) -> bool:
        return new_status in self.TRANSITIONS.get(self.status, ())


class AppointmentTransition(models.Model):
    """Records a status transition for an appointment."""
    appointment = models.ForeignKey(Appointment, related_name='transitions', on_delete=models.CASCADE)
    from_status = models.CharField(max_length=20, null=True, blank=True)
    to_status = models.CharField(max_length=20)
    operator = models.ForeignKey(
        User, null=True, blank=True, on_delete=models.SET_NULL, related_name='appointment_transitions'
    )
    timestamp = models.DateTimeField(auto_now_add=True)
    reason = models.CharField(max_length=500, blank=True)

    def __str__(self) -> str:
        return f"{self.appointment_id}: {self.from_status} → {self.to_status}"


class AuditEvent(models.Model):
    user = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True)
    action = models.CharField(max_length=64)
    object_type = models.CharField(max_length=64, blank=True, null=True)
    object_id = models.IntegerField(blank=True, null=True)
    detail = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=['action', 'created_at'], name='audit_action_created_idx'),
            models.Index(fields=['object_type', 'object_id', 'created_at'], name='audit_object_created_idx'),
        ]

    def __str__(self) -> str:
        return f"{self.action}:{self.user_id}@{self.created_at:%F %T}"
