"""
Django admin registrations for the scheduling models.

Slot counters are shown read-only: occupancy only changes through
bookings and releases, never by hand in the admin.
"""

from django.contrib import admin

from .models import (
    User,
    Schedule,
    TimeSlot,
    Appointment,
    AppointmentTransition,
    AuditEvent,
)


@admin.register(User)
class UserAdmin(admin.ModelAdmin):
    list_display = ('username', 'role', 'specialization', 'is_active', 'is_staff')
    list_filter = ('role', 'is_active')
    search_fields = ('username', 'first_name', 'last_name', 'email')


class TimeSlotInline(admin.TabularInline):
    model = TimeSlot
    extra = 0
    fields = ('position', 'start_time', 'end_time', 'appointment_type', 'max_patients', 'current_patients', 'is_available')
    readonly_fields = ('current_patients',)


@admin.register(Schedule)
class ScheduleAdmin(admin.ModelAdmin):
    list_display = ('id', 'doctor', 'date', 'status', 'is_working_day', 'appointment_duration')
    list_filter = ('status', 'is_working_day')
    search_fields = ('doctor__username', 'doctor__last_name')
    date_hierarchy = 'date'
    inlines = [TimeSlotInline]


class AppointmentTransitionInline(admin.TabularInline):
    model = AppointmentTransition
    extra = 0
    readonly_fields = ('from_status', 'to_status', 'operator', 'timestamp', 'reason')
    can_delete = False


@admin.register(Appointment)
class AppointmentAdmin(admin.ModelAdmin):
    list_display = ('id', 'patient', 'doctor', 'appointment_date', 'appointment_time', 'status')
    list_filter = ('status', 'appointment_type')
    search_fields = ('id', 'patient__username', 'doctor__username')
    readonly_fields = ('appointment_date', 'appointment_time', 'status')
    inlines = [AppointmentTransitionInline]


@admin.register(AuditEvent)
class AuditEventAdmin(admin.ModelAdmin):
    list_display = ('action', 'user', 'object_type', 'object_id', 'created_at')
    list_filter = ('action', 'object_type')
    search_fields = ('user__username',)
