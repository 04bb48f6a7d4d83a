"""
Role checks used by the transition engine and the views.

The policy deciding who may move a case is pluggable through the
``CASES_AUTHZ_CHECK`` setting; :func:`default_can_change_status` is the
stock policy.
"""
from __future__ import annotations

from django.conf import settings
from django.utils.module_loading import import_string

from ..models import PNCase, User


def is_admin(actor) -> bool:
    if not (actor and getattr(actor, 'is_authenticated', False)):
        return False
    return bool(getattr(actor, 'is_superuser', False) or getattr(actor, 'role', None) == User.ROLE_ADMIN)


def can_access_case(actor, case: PNCase) -> bool:
    """ADMIN and PT see every case; CLINIC users only cases touching their clinic."""
    if not (actor and getattr(actor, 'is_authenticated', False)):
        return False
    if is_admin(actor) or getattr(actor, 'role', None) == User.ROLE_PT:
        return True
    clinic_id = getattr(actor, 'clinic_id', None)
    return bool(clinic_id) and clinic_id in (case.source_clinic_id, case.target_clinic_id)


def default_can_change_status(actor, case: PNCase, target_status: str) -> bool:
    return can_access_case(actor, case)


def can_change_status(actor, case: PNCase, target_status: str) -> bool:
    check = import_string(settings.CASES_AUTHZ_CHECK)
    return bool(check(actor, case, target_status))
