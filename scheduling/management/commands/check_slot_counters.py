"""
Management command to audit slot occupancy counters against appointments.

A slot's expected occupancy is the number of appointments with the same
doctor, day and start time that still hold a unit of capacity: every
status except ``cancelled``.  Drift can only come from a release that
failed after its cancellation committed, or from edits outside the
booking services.
"""
import logging

from django.core.management.base import BaseCommand
from django.db import transaction
from django.db.models import Count

from scheduling.models import Appointment, Schedule, TimeSlot
from scheduling.services.locks import slot_lock
from scheduling.timeutils import coerce_day

logger = logging.getLogger(__name__)


def expected_counts(doctor_id, day) -> dict[str, int]:
    rows = (
        Appointment.objects
        .filter(doctor_id=doctor_id, appointment_date=day)
        .exclude(status=Appointment.STATUS_CANCELLED)
        .values('appointment_time')
        .annotate(n=Count('id'))
    )
    return {r['appointment_time']: r['n'] for r in rows}


def booking_target(doctor_id, day):
    """The schedule that bookings and releases for (doctor, day) act on."""
    qs = Schedule.objects.filter(doctor_id=doctor_id, date=day).order_by('id')
    return qs.filter(status=Schedule.STATUS_ACTIVE).first() or qs.first()


class Command(BaseCommand):
    help = "Compare slot counters with live appointments; --fix repairs drift that fits capacity."

    def add_arguments(self, parser):
        parser.add_argument('--fix', action='store_true')
        parser.add_argument('--doctor', type=int)
        parser.add_argument('--date-from')
        parser.add_argument('--date-to')

    def handle(self, *args, **options):
        keys = Schedule.objects.order_by('doctor_id', 'date').values_list('doctor_id', 'date').distinct()
        if options['doctor']:
            keys = keys.filter(doctor_id=options['doctor'])
        if options['date_from']:
            keys = keys.filter(date__gte=coerce_day(options['date_from']))
        if options['date_to']:
            keys = keys.filter(date__lte=coerce_day(options['date_to']))

        drift = violations = fixed = 0
        for doctor_id, day in list(keys):
            with slot_lock((doctor_id, day)):
                with transaction.atomic():
                    schedule = booking_target(doctor_id, day)
                    list(Schedule.objects.select_for_update().filter(pk=schedule.pk))
                    d, v, f = self._check(schedule, expected_counts(doctor_id, day), options['fix'])
            drift, violations, fixed = drift + d, violations + v, fixed + f

        summary = f"{drift} drifted slots, {violations} over capacity, {fixed} fixed"
        if violations:
            self.stdout.write(self.style.ERROR(summary))
        elif drift and not options['fix']:
            self.stdout.write(self.style.WARNING(summary))
        else:
            self.stdout.write(self.style.SUCCESS(summary))

    def _check(self, schedule: Schedule, expected: dict[str, int], fix: bool):
        drift = violations = fixed = 0
        seen: set[str] = set()
        for slot in schedule.time_slots.all():
            # only the first slot with a start time receives bookings
            want = expected.get(slot.start_time, 0) if slot.start_time not in seen else 0
            seen.add(slot.start_time)
            if want == slot.current_patients:
                continue
            drift += 1
            where = f"doctor {schedule.doctor_id} {schedule.date} {slot.start_time}"
            if want > slot.max_patients:
                violations += 1
                logger.critical("Slot %s holds %d appointments for capacity %d", where, want, slot.max_patients)
                self.stdout.write(self.style.ERROR(
                    f"{where}: {want} appointments exceed capacity {slot.max_patients} (counter {slot.current_patients})"
                ))
                continue
            self.stdout.write(f"{where}: counter {slot.current_patients}, expected {want}")
            if fix:
                is_available = slot.is_available
                if want >= slot.max_patients:
                    is_available = False
                elif slot.current_patients >= slot.max_patients:
                    is_available = True
                TimeSlot.objects.filter(pk=slot.pk).update(current_patients=want, is_available=is_available)
                fixed += 1
        return drift, violations, fixed
