"""
The PN case state machine.

:func:`request_transition` is the single entry point for every status
change.  Inside one ``transaction.atomic()`` block it locks the case
and its effective course, validates the move, debits or credits the
course, mirrors the status onto the linked appointment, performs a
conditional write of the case row and appends a history entry.  Any
failure rolls the whole block back and comes out as a
:class:`~cases.services.errors.Rejected` value.  Audit forwarding and
the realtime broadcast are queued with ``transaction.on_commit``.

Allowed moves::

    PENDING     -> ACCEPTED, CANCELLED
    ACCEPTED    -> PENDING, COMPLETED, CANCELLED
    IN_PROGRESS -> CANCELLED
    COMPLETED   -> ACCEPTED (admin reversal), CANCELLED
    CANCELLED   -> (terminal)

A PENDING case may also be hard-deleted through :func:`delete_case`.
"""
from __future__ import annotations

import logging
from functools import partial
from typing import Any, Dict, Optional

from django.conf import settings
from django.db import OperationalError, transaction
from django.utils import timezone
from django.utils.module_loading import import_string

from ..metrics import CASE_TRANSITIONS
from ..models import PNCase, SoapNote
from ..realtime.events import broadcast_case_status
from . import appointment_sync, case_store, ledger
from .authz import can_access_case, can_change_status, is_admin
from .errors import (
    Applied,
    Deleted,
    InvalidTransition,
    PreconditionFailed,
    Rejected,
    StorageConflict,
    TransitionError,
    Unauthorized,
)
from .reversal import forward_audit, record_history

logger = logging.getLogger(__name__)

PENDING = PNCase.STATUS_PENDING
ACCEPTED = PNCase.STATUS_ACCEPTED
IN_PROGRESS = PNCase.STATUS_IN_PROGRESS
COMPLETED = PNCase.STATUS_COMPLETED
CANCELLED = PNCase.STATUS_CANCELLED

ALLOWED: Dict[str, frozenset] = {
    PENDING: frozenset({ACCEPTED, CANCELLED}),
    ACCEPTED: frozenset({PENDING, COMPLETED, CANCELLED}),
    IN_PROGRESS: frozenset({CANCELLED}),
    COMPLETED: frozenset({ACCEPTED, CANCELLED}),
    CANCELLED: frozenset(),
}

PT_ASSESSMENT_FIELDS = ('pt_diagnosis', 'pt_chief_complaint', 'pt_present_history', 'pt_pain_score')
SOAP_FIELDS = ('subjective', 'objective', 'assessment', 'plan')


def can_transition(current: str, new: str) -> bool:
    return new in ALLOWED.get(current, frozenset())


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class _Plan:
    """Everything a transition will write, filled in by the handlers."""

    def __init__(self, case: PNCase, old_status: str, target: str, appointment, course_id: Optional[int]):
        self.case = case
        self.old_status = old_status
        self.target = target
        self.appointment = appointment
        self.course_id = course_id
        self.changes: Dict[str, Any] = {'status': target}
        self.ledger_delta: Optional[int] = None
        self.ledger_note = ''
        self.ledger_result: Optional[str] = None
        self.appointment_reason: Optional[str] = None
        self.history_reason: Optional[str] = None
        self.is_reversal = False
        self.soap: Optional[Dict[str, str]] = None


def _is_home_clinic_case(case: PNCase) -> bool:
    home = settings.CASES_HOME_CLINIC_CODE
    return home in (case.source_clinic.code, case.target_clinic.code)


def _parse_pain_score(value: Any) -> int:
    if isinstance(value, bool):
        raise PreconditionFailed('pt_pain_score must be a number', field='pt_pain_score')
    try:
        score = int(value)
    except (TypeError, ValueError):
        raise PreconditionFailed('pt_pain_score must be a number', field='pt_pain_score')
    if isinstance(value, float) and value != score:
        raise PreconditionFailed('pt_pain_score must be a whole number', field='pt_pain_score')
    if not 0 <= score <= 10:
        raise PreconditionFailed('pt_pain_score must be between 0 and 10', field='pt_pain_score')
    return score


def _plan_accept(plan: _Plan, payload: Dict[str, Any], actor) -> None:
    case = plan.case
    if not _is_home_clinic_case(case):
        missing = [f for f in PT_ASSESSMENT_FIELDS if _blank(payload.get(f))]
        if missing:
            raise PreconditionFailed(
                'PT assessment is required for cases outside the home clinic',
                fields=missing, required_fields=list(PT_ASSESSMENT_FIELDS),
            )
    for name in PT_ASSESSMENT_FIELDS:
        value = payload.get(name)
        if _blank(value):
            continue
        plan.changes[name] = _parse_pain_score(value) if name == 'pt_pain_score' else str(value).strip()
    if payload.get('body_annotation_id') not in (None, ''):
        try:
            plan.changes['body_annotation_id'] = int(payload['body_annotation_id'])
        except (TypeError, ValueError):
            raise PreconditionFailed('body_annotation_id must be an integer', field='body_annotation_id')
    plan.changes['accepted_at'] = timezone.now()
    if plan.course_id:
        if ledger.has_unreversed_use(plan.course_id, case.pk):
            plan.ledger_result = 'skipped'
            logger.info(
                'debit skipped for case %s: session already charged to course %s',
                case.pn_code, plan.course_id,
                extra={'case_id': case.pk, 'course_id': plan.course_id},
            )
        else:
            plan.ledger_delta = ledger.DEBIT
            plan.ledger_note = f'{case.pn_code} accepted'


def _plan_revert_to_pending(plan: _Plan, payload: Dict[str, Any], actor) -> None:
    plan.changes['accepted_at'] = None
    if plan.course_id and plan.appointment is not None:
        plan.ledger_delta = ledger.CREDIT
        plan.ledger_note = f'{plan.case.pn_code} returned to pending'


def _plan_complete(plan: _Plan, payload: Dict[str, Any], actor) -> None:
    soap = payload.get('soap_notes') or {}
    if not isinstance(soap, dict):
        raise PreconditionFailed('soap_notes must be an object', field='soap_notes')
    missing = [f'soap_notes.{f}' for f in SOAP_FIELDS if _blank(soap.get(f))]
    if missing:
        raise PreconditionFailed('SOAP notes are incomplete', fields=missing)
    plan.soap = {f: str(soap[f]).strip() for f in SOAP_FIELDS}
    plan.soap['notes'] = str(soap.get('notes') or '').strip()
    plan.changes['completed_at'] = timezone.now()


def _plan_reverse_completion(plan: _Plan, payload: Dict[str, Any], actor) -> None:
    if not is_admin(actor):
        raise Unauthorized('only administrators can reverse a completed case', case_id=plan.case.pk)
    reason = str(payload.get('reason') or '').strip()
    if not reason:
        raise PreconditionFailed('a reversal reason is required', field='reason')
    now = timezone.now()
    plan.changes.update({
        'completed_at': None,
        'is_reversed': True,
        'last_reversal_reason': reason,
        'last_reversed_at': now,
    })
    plan.history_reason = reason
    plan.is_reversal = True


def _plan_cancel(plan: _Plan, payload: Dict[str, Any], actor) -> None:
    reason = (
        str(payload.get('cancellation_reason') or '').strip()
        or str(payload.get('reason') or '').strip()
        or settings.CASES_DEFAULT_CANCEL_REASON
    )
    plan.changes['cancelled_at'] = timezone.now()
    plan.changes['cancellation_reason'] = reason
    plan.appointment_reason = reason
    plan.history_reason = reason
    if plan.old_status == ACCEPTED and plan.course_id and plan.appointment is not None:
        plan.ledger_delta = ledger.CREDIT
        plan.ledger_note = f'{plan.case.pn_code} cancelled'


_HANDLERS = {
    (PENDING, ACCEPTED): _plan_accept,
    (ACCEPTED, PENDING): _plan_revert_to_pending,
    (ACCEPTED, COMPLETED): _plan_complete,
    (COMPLETED, ACCEPTED): _plan_reverse_completion,
}


def _handler_for(old_status: str, target: str):
    if target == CANCELLED:
        return _plan_cancel
    return _HANDLERS[(old_status, target)]


def _apply(case_id: int, target: str, payload: Dict[str, Any], actor,
           require_from: Optional[str], seen: Dict[str, str]) -> Applied:
    case = case_store.get_case(case_id, lock=True)
    old_status = case.status
    seen['from'] = old_status

    if not can_change_status(actor, case, target):
        raise Unauthorized('not allowed to change the status of this case', case_id=case.pk)
    if require_from and old_status != require_from:
        raise InvalidTransition(
            f'case is {old_status}, not {require_from}',
            reason='NotCompleted' if require_from == COMPLETED else 'UnexpectedStatus',
            currentStatus=old_status, requestedStatus=target,
        )
    if not can_transition(old_status, target):
        raise InvalidTransition(
            f'cannot move case from {old_status} to {target}',
            currentStatus=old_status, requestedStatus=target,
        )

    appointment = appointment_sync.linked_appointment(case, lock=True)
    course_id = case_store.effective_course_id(case, appointment)
    if course_id:
        # lock before the idempotency check so concurrent accepts serialize here
        ledger.get_course(course_id, lock=True)

    plan = _Plan(case, old_status, target, appointment, course_id)
    _handler_for(old_status, target)(plan, payload, actor)

    if plan.ledger_delta is not None:
        ledger.apply_delta(course_id, plan.ledger_delta, case_id=case.pk, actor=actor, note=plan.ledger_note)
        plan.ledger_result = 'debit' if plan.ledger_delta == ledger.DEBIT else 'credit'

    if appointment is not None:
        appointment_status = appointment_sync.status_for_case(target)
        if appointment_status:
            appointment_sync.sync_to_case(appointment.pk, appointment_status, plan.appointment_reason)

    if plan.soap is not None:
        SoapNote.objects.create(case=case, created_by=actor if getattr(actor, 'pk', None) else None, **plan.soap)

    plan.changes['updated_at'] = timezone.now()
    case_store.save_transition(case, old_status, plan.changes)
    record_history(case, old_status, target, actor, plan.history_reason, plan.is_reversal)

    action = 'case_reverse_completion' if plan.is_reversal else 'case_status_change'
    transaction.on_commit(partial(
        forward_audit, actor, action, 'pn_case', case.pk,
        {'status': old_status}, {'status': target, 'ledger': plan.ledger_result},
    ))
    if settings.CASES_BROADCAST_ENABLED:
        transaction.on_commit(partial(broadcast_case_status, case.pk, case.pn_code, old_status, target))

    return Applied(
        case_id=case.pk,
        old_status=old_status,
        new_status=target,
        ledger=plan.ledger_result,
        soap_reentry_required=plan.is_reversal,
    )


def request_transition(case_id: int, target_status: str, payload: Optional[Dict[str, Any]], actor,
                       *, require_from: Optional[str] = None):
    """Move case ``case_id`` to ``target_status``.

    Returns :class:`Applied` on success or :class:`Rejected` carrying the
    error kind and structured details.  Nothing is written on rejection.
    """
    payload = payload or {}
    target = str(target_status or '').strip().upper()
    seen: Dict[str, str] = {}
    try:
        if target not in ALLOWED:
            raise InvalidTransition(f'unknown status {target_status!r}', requestedStatus=target_status)
        with transaction.atomic():
            result = _apply(case_id, target, payload, actor, require_from, seen)
    except TransitionError as exc:
        rejected = Rejected.from_error(exc)
    except OperationalError as exc:
        logger.warning('storage conflict on case %s: %s', case_id, exc)
        rejected = Rejected.from_error(StorageConflict('case is locked by another writer', case_id=case_id))
    else:
        CASE_TRANSITIONS.labels(result.old_status, result.new_status, 'applied').inc()
        logger.info(
            'case %s %s -> %s (ledger=%s)', case_id, result.old_status, result.new_status, result.ledger,
            extra={'case_id': case_id, 'actor_id': getattr(actor, 'pk', None), 'ledger': result.ledger},
        )
        return result

    CASE_TRANSITIONS.labels(seen.get('from', 'unknown'), target if target in ALLOWED else 'unknown', rejected.kind).inc()
    log = logger.warning if rejected.kind in ('LedgerInconsistent', 'StorageConflict') else logger.info
    log(
        'case %s transition to %s rejected: %s %s', case_id, target, rejected.kind, rejected.details,
        extra={'case_id': case_id, 'kind': rejected.kind},
    )
    return rejected


def _delete(case_id: int, actor) -> Deleted:
    case = case_store.get_case(case_id, lock=True)
    if not can_access_case(actor, case):
        raise Unauthorized('not allowed to delete this case', case_id=case.pk)
    if case.status != PENDING:
        raise InvalidTransition(
            'only pending cases can be deleted',
            reason='NotPending', currentStatus=case.status,
        )
    cascade = import_string(settings.CASES_CASCADE_DELETE)
    removed = dict(cascade(case) or {})
    pn_code, pk = case.pn_code, case.pk
    deleted = PNCase.objects.filter(pk=pk, status=PENDING).delete()[0]
    if not deleted:
        raise StorageConflict('case was modified concurrently', case_id=pk, expected_status=PENDING)
    transaction.on_commit(partial(forward_audit, actor, 'case_delete', 'pn_case', pk, {'pn_code': pn_code}, None))
    return Deleted(case_id=pk, pn_code=pn_code, removed=removed)


def delete_case(case_id: int, actor):
    """Hard-delete a PENDING case and its dependents; the ledger is kept."""
    try:
        with transaction.atomic():
            result = _delete(case_id, actor)
    except TransitionError as exc:
        logger.info('delete of case %s rejected: %s', case_id, exc.kind, extra={'case_id': case_id})
        return Rejected.from_error(exc)
    except OperationalError as exc:
        logger.warning('storage conflict deleting case %s: %s', case_id, exc)
        return Rejected.from_error(StorageConflict('case is locked by another writer', case_id=case_id))
    logger.info('case %s (%s) deleted: %s', result.pn_code, case_id, result.removed, extra={'case_id': case_id})
    return result
