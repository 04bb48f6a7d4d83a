"""
Read-side helpers for a case: timeline, SOAP notes and certificates.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..models import Certificate, PNCase, SoapNote
from .errors import InvalidTransition, PreconditionFailed
from .reversal import forward_audit


def case_timeline(case: PNCase) -> List[Dict[str, Any]]:
    """Creation, status changes, appointments and visits, oldest first."""
    events: List[Dict[str, Any]] = [{
        'type': 'created',
        'at': case.created_at,
        'status': PNCase.STATUS_PENDING,
        'by': case.created_by_id,
    }]
    for h in case.status_history.all():
        if not h.old_status:
            continue
        events.append({
            'type': 'reversal' if h.is_reversal else 'status',
            'at': h.created_at,
            'from': h.old_status,
            'to': h.new_status,
            'reason': h.reason,
            'by': h.changed_by_id,
        })
    for a in case.appointments.all():
        events.append({
            'type': 'appointment',
            'at': a.created_at,
            'appointmentId': a.id,
            'date': a.appointment_date.isoformat(),
            'status': a.status,
        })
    for v in case.visits.all():
        events.append({
            'type': 'visit',
            'at': v.created_at,
            'visitNo': v.visit_no,
            'date': v.visit_date.isoformat() if v.visit_date else None,
            'status': v.status,
        })
    events.sort(key=lambda e: e['at'])
    for e in events:
        e['at'] = e['at'].isoformat()
    return events


def list_soap_notes(case: PNCase):
    return SoapNote.objects.filter(case=case).order_by('-created_at', '-id')


def create_certificate(case: PNCase, actor, certificate_type: str, data: Optional[Dict[str, Any]] = None) -> Certificate:
    if certificate_type not in (Certificate.TYPE_THAI, Certificate.TYPE_ENGLISH):
        raise PreconditionFailed('certificate_type must be thai or english', field='certificate_type')
    if case.status != PNCase.STATUS_COMPLETED:
        raise InvalidTransition(
            'certificates can only be issued for completed cases',
            reason='NotCompleted', currentStatus=case.status,
        )
    cert = Certificate.objects.create(
        case=case,
        certificate_type=certificate_type,
        certificate_data=data or {},
        created_by=actor if getattr(actor, 'pk', None) else None,
    )
    forward_audit(actor, 'certificate_create', 'pn_case', case.pk, None, {'certificate_type': certificate_type})
    return cert
