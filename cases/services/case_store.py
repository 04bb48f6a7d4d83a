"""
Loading and persisting PN cases for the transition engine.
"""
from __future__ import annotations

from typing import Dict, Any, Optional

from ..models import PNCase, StatusHistory
from .errors import NotFound, StorageConflict


def get_case(case_id: int, lock: bool = False) -> PNCase:
    qs = PNCase.objects.select_related('source_clinic', 'target_clinic', 'patient')
    if lock:
        qs = qs.select_for_update()
    try:
        return qs.get(pk=case_id)
    except PNCase.DoesNotExist:
        raise NotFound('case not found', entity='case', id=case_id)


def effective_course_id(case: PNCase, appointment=None) -> Optional[int]:
    """The linked appointment's course wins over the case's own course."""
    if appointment is not None and appointment.course_id:
        return appointment.course_id
    return case.course_id


def save_transition(case: PNCase, expected_status: str, changes: Dict[str, Any]) -> None:
    """Write ``changes`` only if the stored status is still ``expected_status``.

    Raises :class:`StorageConflict` when another writer got there first.
    """
    updated = PNCase.objects.filter(pk=case.pk, status=expected_status).update(**changes)
    if updated != 1:
        raise StorageConflict(
            'case was modified concurrently',
            case_id=case.pk, expected_status=expected_status,
        )
    for name, value in changes.items():
        setattr(case, name, value)


def append_history(case: PNCase, old_status: str, new_status: str, actor=None,
                   reason: Optional[str] = None, is_reversal: bool = False) -> StatusHistory:
    return StatusHistory.objects.create(
        case=case,
        old_status=old_status or '',
        new_status=new_status,
        changed_by=actor if getattr(actor, 'pk', None) else None,
        reason=reason or '',
        is_reversal=is_reversal,
    )
