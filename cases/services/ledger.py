"""
Course balances and the append-only session usage ledger.

Every balance change writes exactly one :class:`~cases.models.CourseUsage`
row in the same atomic block as the balance update, so that for any
(course, case) pair the number of USE events minus RETURN events is the
number of sessions currently charged to that case (0 or 1).
"""
from __future__ import annotations

import logging
from typing import Optional

from django.db import transaction
from django.db.models import Count, Q
from django.utils import timezone

from ..metrics import LEDGER_EVENTS
from ..models import Course, CourseUsage
from .errors import LedgerInconsistent, NotFound, PreconditionFailed

logger = logging.getLogger(__name__)

DEBIT = -1
CREDIT = 1


def get_course(course_id: int, lock: bool = False) -> Course:
    qs = Course.objects.all()
    if lock:
        qs = qs.select_for_update()
    try:
        return qs.get(pk=course_id)
    except Course.DoesNotExist:
        raise NotFound('course not found', entity='course', id=course_id)


def _is_expired(course: Course) -> bool:
    return bool(course.expiry_date and course.expiry_date < timezone.localdate())


def usage_balance(course_id: int, case_id: int) -> int:
    """Return count(USE) - count(RETURN) for the pair."""
    counts = CourseUsage.objects.filter(course_id=course_id, case_id=case_id).aggregate(
        uses=Count('id', filter=Q(action_type=CourseUsage.ACTION_USE)),
        returns=Count('id', filter=Q(action_type=CourseUsage.ACTION_RETURN)),
    )
    return counts['uses'] - counts['returns']


def has_unreversed_use(course_id: int, case_id: int) -> bool:
    return usage_balance(course_id, case_id) > 0


def append_usage(
    course_id: int,
    case_id: int,
    action: str,
    *,
    actor=None,
    note: str = '',
    bill_id: Optional[int] = None,
) -> CourseUsage:
    if action not in (CourseUsage.ACTION_USE, CourseUsage.ACTION_RETURN):
        raise ValueError(f'unknown usage action {action!r}')
    event = CourseUsage.objects.create(
        course_id=course_id,
        case_id=case_id,
        action_type=action,
        sessions_used=1,
        notes=note or '',
        bill_id=bill_id,
        created_by=actor if getattr(actor, 'pk', None) else None,
    )
    LEDGER_EVENTS.labels(action).inc()
    return event


def apply_delta(
    course_id: int,
    delta: int,
    *,
    case_id: int,
    actor=None,
    note: str = '',
    bill_id: Optional[int] = None,
) -> CourseUsage:
    """Debit (``delta=-1``) or credit (``delta=+1``) one session.

    The course row is locked and the balance checked against the ledger
    before anything is written.  A debit needs an active, unexpired course
    with a positive balance and no session already charged to the case; a
    credit needs a session charged to the case to give back.  A credit
    only reopens a COMPLETED course that has not expired.
    """
    if delta not in (DEBIT, CREDIT):
        raise ValueError('delta must be -1 or +1')

    with transaction.atomic():
        course = get_course(course_id, lock=True)
        charged = usage_balance(course.pk, case_id)

        expired = _is_expired(course)

        if delta == DEBIT:
            if course.status != Course.STATUS_ACTIVE or expired:
                raise PreconditionFailed(
                    'course is not active',
                    field='course', course_id=course.pk, courseStatus=course.status, expired=expired,
                )
            if course.remaining_sessions <= 0:
                raise PreconditionFailed(
                    'course has no remaining sessions',
                    field='course', course_id=course.pk, remaining=course.remaining_sessions,
                )
            if charged > 0:
                raise LedgerInconsistent(
                    'a session is already charged to this case',
                    course_id=course.pk, case_id=case_id, unreversed=charged,
                )
            course.used_sessions += 1
            course.remaining_sessions -= 1
            if course.remaining_sessions <= 0:
                course.status = Course.STATUS_COMPLETED
            action = CourseUsage.ACTION_USE
        else:
            if charged <= 0 or course.used_sessions <= 0:
                raise LedgerInconsistent(
                    'no charged session to return for this case',
                    course_id=course.pk, case_id=case_id,
                    unreversed=charged, used=course.used_sessions,
                )
            course.used_sessions = max(0, course.used_sessions - 1)
            course.remaining_sessions += 1
            if course.status == Course.STATUS_COMPLETED and course.remaining_sessions > 0 and not expired:
                course.status = Course.STATUS_ACTIVE
            action = CourseUsage.ACTION_RETURN

        course.save(update_fields=['used_sessions', 'remaining_sessions', 'status', 'updated_at'])
        event = append_usage(course.pk, case_id, action, actor=actor, note=note, bill_id=bill_id)

    logger.info(
        'course %s %s for case %s: used=%s remaining=%s',
        course.course_code, action, case_id, course.used_sessions, course.remaining_sessions,
        extra={'course_id': course.pk, 'case_id': case_id, 'action': action},
    )
    return event
