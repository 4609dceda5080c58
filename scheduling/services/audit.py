"""
Audit trail of logins, bookings and schedule edits.

Audit rows are written inside the caller's transaction, so a booking
that rolls back leaves no audit entry behind.
"""
from typing import Any, Dict, List, Optional

from django.contrib.auth import get_user_model

from scheduling.models import AuditEvent

User = get_user_model()


def log_action(*, user: Optional[User], action: str, object_type: Optional[str] = None,
               object_id: Optional[int] = None, detail: Optional[Dict[str, Any]] = None) -> AuditEvent:
    # anonymous users and unsaved actors are recorded without a user
    actor = user if isinstance(user, User) and user.pk else None
    return AuditEvent.objects.create(
        user=actor,
        action=action,
        object_type=object_type,
        object_id=object_id,
        detail=detail or {},
    )


def history(object_type: str, object_id: int) -> List[AuditEvent]:
    """Audit entries of one appointment or schedule, oldest first."""
    return list(
        AuditEvent.objects
        .filter(object_type=object_type, object_id=object_id)
        .select_related('user')
        .order_by('created_at', 'id')
    )
