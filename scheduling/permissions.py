"""
Custom permission classes for role based access control.
"""
from rest_framework.permissions import BasePermission

ADMIN_ROLES = {"admin"}
DOCTOR_ROLES = {"doctor"}


def _role(request):
    user = getattr(request, "user", None)
    if not (user and user.is_authenticated):
        return None
    return getattr(user, "role", None)


class IsDoctorRole(BasePermission):
    """Allow access only to doctors."""
    def has_permission(self, request, view) -> bool:  # type: ignore[override]
        return _role(request) in DOCTOR_ROLES


class IsDoctorOrAdmin(BasePermission):
    """Doctors or administrators."""
    def has_permission(self, request, view) -> bool:  # type: ignore[override]
        return _role(request) in DOCTOR_ROLES | ADMIN_ROLES


def is_admin(user) -> bool:
    return getattr(user, "role", None) in ADMIN_ROLES


def can_access_appointment(user, appointment) -> bool:
    """Admins see every appointment; patients and doctors only their own."""
    if is_admin(user):
        return True
    role = getattr(user, "role", None)
    if role == "patient":
        return appointment.patient_id == user.id
    if role == "doctor":
        return appointment.doctor_id == user.id
    return False


def can_manage_schedule(user, schedule) -> bool:
    if is_admin(user):
        return True
    return getattr(user, "role", None) == "doctor" and schedule.doctor_id == user.id
