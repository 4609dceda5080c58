# scheduling/management/commands/ensure_test_users.py
from decimal import Decimal

from django.core.management.base import BaseCommand
from django.contrib.auth.hashers import make_password
from scheduling.models import User

TEST_SET = [
    ("admin1", User.ROLE_ADMIN, {}),
    ("doctor1", User.ROLE_DOCTOR, {"specialization": "General Practice", "consultation_fee": Decimal("100.00")}),
    ("doctor2", User.ROLE_DOCTOR, {"specialization": "Emergency Medicine", "consultation_fee": Decimal("150.00")}),
    ("patient1", User.ROLE_PATIENT, {}),
    ("monitor1", User.ROLE_MONITOR, {}),
]

class Command(BaseCommand):
    help = "Ensure demo users exist with a known password (idempotent)."

    def add_arguments(self, parser):
        parser.add_argument("--password", default="123456", help="password set on every demo user")

    def handle(self, *args, **opts):
        password = make_password(opts["password"])
        for username, role, extra in TEST_SET:
            u, created = User.objects.get_or_create(
                username=username,
                defaults={"role": role, "password": password, "is_active": True, **extra},
            )
            if not created:
                # reset password, activation and role
                u.password = password
                u.role = role
                u.is_active = True
                for field, value in extra.items():
                    setattr(u, field, value)
                u.save(update_fields=["password", "role", "is_active", *extra])
            self.stdout.write(self.style.SUCCESS(f"ok: {username} ({role})"))
        self.stdout.write(self.style.SUCCESS("All test users ensured."))
