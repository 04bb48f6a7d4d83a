"""
Keep a case's linked appointment in step with the case status.
"""
from __future__ import annotations

from typing import Optional

from django.utils import timezone

from ..models import Appointment, PNCase
from .errors import NotFound

_STATUS_FOR_CASE = {
    PNCase.STATUS_PENDING: Appointment.STATUS_SCHEDULED,
    PNCase.STATUS_ACCEPTED: Appointment.STATUS_COMPLETED,
    PNCase.STATUS_COMPLETED: Appointment.STATUS_COMPLETED,
    PNCase.STATUS_CANCELLED: Appointment.STATUS_CANCELLED,
}


def status_for_case(case_status: str) -> Optional[str]:
    """Appointment status implied by ``case_status`` (None for IN_PROGRESS)."""
    return _STATUS_FOR_CASE.get(case_status)


def linked_appointment(case: PNCase, lock: bool = False) -> Optional[Appointment]:
    qs = Appointment.objects.filter(case=case)
    if lock:
        qs = qs.select_for_update()
    return qs.order_by('-appointment_date', '-created_at', '-id').first()


def sync_to_case(appointment_id: int, target_status: str, reason: Optional[str] = None) -> Appointment:
    try:
        appointment = Appointment.objects.get(pk=appointment_id)
    except Appointment.DoesNotExist:
        raise NotFound('appointment not found', entity='appointment', id=appointment_id)

    appointment.status = target_status
    fields = ['status', 'updated_at']
    if target_status == Appointment.STATUS_CANCELLED:
        appointment.cancelled_at = timezone.now()
        appointment.cancellation_reason = reason or ''
        fields += ['cancelled_at', 'cancellation_reason']
    appointment.save(update_fields=fields)
    return appointment
