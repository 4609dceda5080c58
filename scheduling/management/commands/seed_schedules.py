"""
Management command to publish working-day schedules for every active doctor.
"""
from datetime import timedelta
from decimal import Decimal

from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone

from scheduling.models import Schedule, User
from scheduling.services.schedules import create_schedule
from scheduling.timeutils import coerce_day

LUNCH_BREAK = {'startTime': '12:00', 'endTime': '13:00', 'reason': 'Lunch break'}
DEFAULT_FEE = Decimal('100.00')


class Command(BaseCommand):
    help = ("Create schedules (09:00-17:00, lunch 12:00-13:00) for the next N days. "
            "Weekends are skipped unless the doctor's specialization mentions emergency. "
            "Days that already have a schedule are left alone.")

    def add_arguments(self, parser):
        parser.add_argument('--days', type=int, default=30)
        parser.add_argument('--start', help='first day (YYYY-MM-DD), default today')
        parser.add_argument('--duration', type=int, default=30, help='slot length in minutes')
        parser.add_argument('--doctor', type=int, help='only this doctor id')

    def handle(self, *args, **options):
        try:
            start = coerce_day(options['start']) if options['start'] else timezone.localdate()
        except ValueError as exc:
            raise CommandError(str(exc))
        if not 15 <= options['duration'] <= 120:
            raise CommandError('--duration must be between 15 and 120 minutes')

        doctors = User.objects.filter(role=User.ROLE_DOCTOR, is_active=True).order_by('id')
        if options['doctor']:
            doctors = doctors.filter(pk=options['doctor'])
        if not doctors.exists():
            self.stdout.write(self.style.WARNING('No doctors found. Please create doctors first.'))
            return

        created = skipped = 0
        for offset in range(options['days']):
            day = start + timedelta(days=offset)
            weekend = day.weekday() >= 5
            for doctor in doctors:
                if weekend and 'emergency' not in (doctor.specialization or '').lower():
                    continue
                if Schedule.objects.filter(doctor=doctor, date=day).exists():
                    skipped += 1
                    continue
                create_schedule(doctor=doctor, actor=None, data={
                    'date': day,
                    'work_start': '09:00',
                    'work_end': '17:00',
                    'break_times': [dict(LUNCH_BREAK)],
                    'is_working_day': True,
                    'appointment_duration': options['duration'],
                    'consultation_fee': doctor.consultation_fee if doctor.consultation_fee is not None else DEFAULT_FEE,
                })
                created += 1
        self.stdout.write(self.style.SUCCESS(f"Created {created} schedules ({skipped} already present)"))
