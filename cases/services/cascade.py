from __future__ import annotations

from typing import Dict

from ..models import (
    Appointment,
    CaseAttachment,
    CaseVisit,
    Certificate,
    PNCase,
    SoapNote,
    StatusHistory,
)


def delete_case_dependents(case: PNCase) -> Dict[str, int]:
    """Remove every row hanging off ``case`` and return per-table counts.

    Course usage events are left alone: the ledger outlives the case.
    """
    removed: Dict[str, int] = {}
    for label, model in (
        ('appointments', Appointment),
        ('visits', CaseVisit),
        ('attachments', CaseAttachment),
        ('certificates', Certificate),
        ('soap_notes', SoapNote),
        ('status_history', StatusHistory),
    ):
        count, _ = model.objects.filter(case=case).delete()
        removed[label] = count
    return removed
