"""
Undoing a completion, plus the history and audit writes shared with the
transition engine.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from django.conf import settings
from django.utils.module_loading import import_string

from ..models import PNCase, StatusHistory
from . import case_store
from .authz import is_admin
from .errors import PreconditionFailed, Rejected, Unauthorized

logger = logging.getLogger(__name__)


def reverse_completion(case_id: int, actor, reason: Optional[str]):
    """Move a COMPLETED case back to ACCEPTED so the SOAP note can be redone.

    Only administrators may do this and a reason is mandatory.  A case in
    any other status is rejected with ``reason="NotCompleted"``.
    """
    # imported here: the engine imports this module for record_history
    from .transitions import request_transition

    if not is_admin(actor):
        return Rejected.from_error(Unauthorized('only administrators can reverse a completed case', case_id=case_id))
    reason = (reason or '').strip()
    if not reason:
        return Rejected.from_error(PreconditionFailed('a reversal reason is required', field='reason'))
    return request_transition(
        case_id, PNCase.STATUS_ACCEPTED, {'reason': reason}, actor,
        require_from=PNCase.STATUS_COMPLETED,
    )


def record_history(case: PNCase, old_status: str, new_status: str, actor=None,
                   reason: Optional[str] = None, is_reversal: bool = False) -> StatusHistory:
    return case_store.append_history(case, old_status, new_status, actor, reason, is_reversal)


def forward_audit(actor, action: str, entity_type: str, entity_id: int, old: Any = None, new: Any = None) -> None:
    """Hand an audit record to the configured sink; failures are only logged."""
    try:
        sink = import_string(settings.CASES_AUDIT_SINK)
        sink(user=actor, action=action, object_type=entity_type, object_id=entity_id, old=old, new=new)
    except Exception:
        logger.warning(
            'audit sink failed for %s %s#%s', action, entity_type, entity_id,
            exc_info=True, extra={'case_id': entity_id, 'action': action},
        )
