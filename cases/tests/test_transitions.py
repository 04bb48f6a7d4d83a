"""
Behaviour of the PN case state machine and its side effects on the
course ledger, the linked appointment and the status history.
"""
import datetime
import logging

import pytest
from django.db import OperationalError, transaction
from django.db.models.query import QuerySet
from django.utils import timezone
from prometheus_client import REGISTRY

from cases.models import (
    Appointment,
    AuditEvent,
    CaseVisit,
    Course,
    CourseUsage,
    PNCase,
    SoapNote,
    StatusHistory,
    User,
)
from cases.services import appointment_sync, case_store, ledger
from cases.services.errors import Applied, Deleted, Rejected, StorageConflict
from cases.services.reversal import forward_audit, reverse_completion
from cases.services.transitions import can_transition, delete_case, request_transition

pytestmark = pytest.mark.django_db


def exploding_sink(**kwargs):
    raise RuntimeError('audit store down')


def deny_all(actor, case, target_status):
    return False


def _uses(course, case, action):
    return CourseUsage.objects.filter(course=course, case_id=case.pk, action_type=action).count()


def _balanced(course):
    course.refresh_from_db()
    return course.remaining_sessions == course.total_sessions - course.used_sessions


def _accept(case, actor, pt_payload):
    return request_transition(case.pk, PNCase.STATUS_ACCEPTED, dict(pt_payload), actor)


class TestAcceptAndCancel:
    def test_accept_then_cancel_restores_course(self, make_course, make_case, pt_user, pt_payload):
        course = make_course(total=5)
        case = make_case(course=course)

        result = _accept(case, pt_user, pt_payload)
        assert isinstance(result, Applied)
        assert result.ledger == 'debit'
        course.refresh_from_db()
        assert (course.used_sessions, course.remaining_sessions) == (1, 4)
        assert _uses(course, case, 'USE') == 1

        case.refresh_from_db()
        assert case.status == PNCase.STATUS_ACCEPTED
        assert case.accepted_at is not None
        assert case.pt_pain_score == 6
        assert case.appointments.get().status == Appointment.STATUS_COMPLETED

        result = request_transition(case.pk, PNCase.STATUS_CANCELLED, {}, pt_user)
        assert isinstance(result, Applied)
        assert result.ledger == 'credit'
        course.refresh_from_db()
        assert (course.used_sessions, course.remaining_sessions) == (0, 5)
        assert course.status == Course.STATUS_ACTIVE
        assert _uses(course, case, 'RETURN') == 1
        assert _balanced(course)

        case.refresh_from_db()
        appt = case.appointments.get()
        assert case.cancellation_reason == 'Cancelled from Dashboard'
        assert appt.status == Appointment.STATUS_CANCELLED
        assert appt.cancellation_reason == 'Cancelled from Dashboard'
        assert appt.cancelled_at is not None

    def test_single_session_course(self, make_course, make_case, pt_user, pt_payload):
        course = make_course(total=1)
        case = make_case(course=course)

        _accept(case, pt_user, pt_payload)
        course.refresh_from_db()
        assert course.remaining_sessions == 0
        assert course.status == Course.STATUS_COMPLETED

        result = request_transition(case.pk, PNCase.STATUS_PENDING, {}, pt_user)
        assert isinstance(result, Applied)
        course.refresh_from_db()
        assert course.remaining_sessions == 1
        assert course.status == Course.STATUS_ACTIVE
        case.refresh_from_db()
        assert case.accepted_at is None
        assert case.appointments.get().status == Appointment.STATUS_SCHEDULED

    def test_double_accept_debits_once(self, make_course, make_case, pt_user, pt_payload):
        course = make_course(total=5)
        case = make_case(course=course)
        _accept(case, pt_user, pt_payload)

        again = _accept(case, pt_user, pt_payload)
        assert isinstance(again, Rejected)
        assert again.kind == 'InvalidTransition'
        assert again.details['currentStatus'] == 'ACCEPTED'
        course.refresh_from_db()
        assert course.used_sessions == 1
        assert _uses(course, case, 'USE') == 1

    def test_accept_with_existing_use_skips_debit(self, make_course, make_case, pt_user, pt_payload):
        course = make_course(total=5)
        case = make_case(course=course)
        # an earlier attempt charged the session but the case stayed PENDING
        ledger.apply_delta(course.pk, ledger.DEBIT, case_id=case.pk)

        result = _accept(case, pt_user, pt_payload)
        assert isinstance(result, Applied)
        assert result.ledger == 'skipped'
        course.refresh_from_db()
        assert course.used_sessions == 1
        assert _uses(course, case, 'USE') == 1

    def test_cancel_pending_case_gives_no_credit(self, make_course, make_case, pt_user):
        course = make_course(total=5)
        case = make_case(course=course)
        result = request_transition(case.pk, PNCase.STATUS_CANCELLED, {'cancellation_reason': 'Patient moved'}, pt_user)
        assert isinstance(result, Applied)
        assert result.ledger is None
        assert CourseUsage.objects.count() == 0
        course.refresh_from_db()
        assert course.used_sessions == 0
        case.refresh_from_db()
        assert case.cancellation_reason == 'Patient moved'

    def test_reason_key_is_accepted_for_cancel(self, make_case, pt_user):
        case = make_case()
        request_transition(case.pk, PNCase.STATUS_CANCELLED, {'reason': 'No show'}, pt_user)
        case.refresh_from_db()
        assert case.cancellation_reason == 'No show'

    def test_accept_pending_accept_nets_one_debit(self, make_course, make_case, pt_user, pt_payload):
        course = make_course(total=5)
        case = make_case(course=course)
        _accept(case, pt_user, pt_payload)
        request_transition(case.pk, PNCase.STATUS_PENDING, {}, pt_user)
        result = _accept(case, pt_user, pt_payload)

        assert result.ledger == 'debit'
        assert ledger.usage_balance(course.pk, case.pk) == 1
        assert _uses(course, case, 'USE') == 2
        assert _uses(course, case, 'RETURN') == 1
        course.refresh_from_db()
        assert (course.used_sessions, course.remaining_sessions) == (1, 4)

    def test_exhausted_course_blocks_accept(self, make_course, make_case, pt_user, pt_payload):
        course = make_course(total=3, used=3)
        case = make_case(course=course)
        result = _accept(case, pt_user, pt_payload)
        assert result.kind == 'PreconditionFailed'
        assert result.details['field'] == 'course'
        case.refresh_from_db()
        assert case.status == PNCase.STATUS_PENDING
        assert case.appointments.get().status == Appointment.STATUS_SCHEDULED

    def test_expired_course_blocks_accept_and_stays_expired(self, make_course, make_case, pt_user, pt_payload):
        expired_on = timezone.localdate() - datetime.timedelta(days=30)
        course = make_course(total=3, used=2, status=Course.STATUS_EXPIRED, expiry_date=expired_on)
        case = make_case(course=course)

        result = _accept(case, pt_user, pt_payload)
        assert isinstance(result, Rejected)
        assert result.kind == 'PreconditionFailed'
        assert result.details['field'] == 'course'
        case.refresh_from_db()
        assert case.status == PNCase.STATUS_PENDING
        assert case.appointments.get().status == Appointment.STATUS_SCHEDULED

        result = request_transition(case.pk, PNCase.STATUS_CANCELLED, {}, pt_user)
        assert isinstance(result, Applied)
        assert result.ledger is None
        course.refresh_from_db()
        assert course.status == Course.STATUS_EXPIRED
        assert (course.used_sessions, course.remaining_sessions) == (2, 1)
        assert CourseUsage.objects.count() == 0

    def test_course_past_expiry_blocks_accept(self, make_course, make_case, pt_user, pt_payload):
        course = make_course(total=5, expiry_date=timezone.localdate() - datetime.timedelta(days=1))
        case = make_case(course=course)
        result = _accept(case, pt_user, pt_payload)
        assert result.kind == 'PreconditionFailed'
        assert result.details['field'] == 'course'
        course.refresh_from_db()
        assert course.used_sessions == 0


class TestEffectiveCourse:
    def test_appointment_course_wins(self, make_course, make_case, pt_user, pt_payload):
        case_course, appt_course = make_course(total=5), make_course(total=5)
        case = make_case(course=case_course, appointment_course=appt_course)
        _accept(case, pt_user, pt_payload)
        case_course.refresh_from_db()
        appt_course.refresh_from_db()
        assert case_course.used_sessions == 0
        assert appt_course.used_sessions == 1

    def test_no_appointment_debits_but_never_credits(self, make_course, make_case, pt_user, pt_payload):
        course = make_course(total=5)
        case = make_case(course=course, appointment=False)

        assert _accept(case, pt_user, pt_payload).ledger == 'debit'
        result = request_transition(case.pk, PNCase.STATUS_PENDING, {}, pt_user)
        assert result.ledger is None
        course.refresh_from_db()
        assert course.used_sessions == 1
        # the session is still charged, so accepting again does not debit twice
        assert _accept(case, pt_user, pt_payload).ledger == 'skipped'
        course.refresh_from_db()
        assert course.used_sessions == 1

    def test_no_course_no_ledger(self, make_case, pt_user, pt_payload):
        case = make_case(course=None)
        result = _accept(case, pt_user, pt_payload)
        assert result.ledger is None
        assert CourseUsage.objects.count() == 0

    def test_credit_without_charged_session_is_inconsistent(self, make_course, make_case, pt_user):
        course = make_course(total=5, used=1)
        case = make_case(status=PNCase.STATUS_ACCEPTED, course=course)
        result = request_transition(case.pk, PNCase.STATUS_CANCELLED, {}, pt_user)
        assert isinstance(result, Rejected)
        assert result.kind == 'LedgerInconsistent'
        case.refresh_from_db()
        assert case.status == PNCase.STATUS_ACCEPTED
        assert case.appointments.get().status == Appointment.STATUS_SCHEDULED
        assert StatusHistory.objects.filter(case=case).count() == 0
        course.refresh_from_db()
        assert course.used_sessions == 1


class TestPreconditions:
    def test_pt_assessment_required_outside_home_clinic(self, make_course, make_case, pt_user, pt_payload):
        course = make_course(total=5)
        case = make_case(course=course)
        payload = dict(pt_payload, pt_chief_complaint='  ')
        del payload['pt_pain_score']

        result = request_transition(case.pk, PNCase.STATUS_ACCEPTED, payload, pt_user)
        assert result.kind == 'PreconditionFailed'
        assert result.details['fields'] == ['pt_chief_complaint', 'pt_pain_score']
        case.refresh_from_db()
        assert case.status == PNCase.STATUS_PENDING
        assert case.pt_diagnosis == ''
        course.refresh_from_db()
        assert course.used_sessions == 0

    def test_zero_pain_score_is_valid(self, make_case, pt_user, pt_payload):
        case = make_case()
        result = _accept(case, pt_user, dict(pt_payload, pt_pain_score=0))
        assert isinstance(result, Applied)
        case.refresh_from_db()
        assert case.pt_pain_score == 0

    def test_pain_score_out_of_range(self, make_case, pt_user, pt_payload):
        case = make_case()
        result = _accept(case, pt_user, dict(pt_payload, pt_pain_score=11))
        assert result.kind == 'PreconditionFailed'
        assert result.details['field'] == 'pt_pain_score'

    @pytest.mark.parametrize('score', [True, False])
    def test_boolean_pain_score_is_rejected(self, score, make_case, pt_user, pt_payload):
        case = make_case()
        result = _accept(case, pt_user, dict(pt_payload, pt_pain_score=score))
        assert result.kind == 'PreconditionFailed'
        assert result.details['field'] == 'pt_pain_score'
        case.refresh_from_db()
        assert case.status == PNCase.STATUS_PENDING
        assert case.pt_pain_score is None

    @pytest.mark.parametrize('side', ['source', 'target'])
    def test_home_clinic_skips_assessment(self, side, home, make_case, pt_user):
        case = make_case(**{side: home})
        result = request_transition(case.pk, PNCase.STATUS_ACCEPTED, {'body_annotation_id': 42}, pt_user)
        assert isinstance(result, Applied)
        case.refresh_from_db()
        assert case.body_annotation_id == 42
        assert case.pt_pain_score is None

    def test_home_clinic_code_is_configurable(self, settings, make_case, pt_user):
        settings.CASES_HOME_CLINIC_CODE = 'CL003'
        case = make_case()
        assert isinstance(request_transition(case.pk, PNCase.STATUS_ACCEPTED, {}, pt_user), Applied)

    def test_complete_requires_all_soap_parts(self, make_course, make_case, pt_user, pt_payload, soap_payload):
        course = make_course(total=5)
        case = make_case(course=course)
        assert _accept(case, pt_user, pt_payload).ledger == 'debit'
        course.refresh_from_db()
        before = (course.used_sessions, course.remaining_sessions)
        events_before = CourseUsage.objects.count()

        soap = dict(soap_payload['soap_notes'], plan='', objective=None)
        result = request_transition(case.pk, PNCase.STATUS_COMPLETED, {'soap_notes': soap}, pt_user)
        assert result.kind == 'PreconditionFailed'
        assert result.details['fields'] == ['soap_notes.objective', 'soap_notes.plan']

        case.refresh_from_db()
        assert case.status == PNCase.STATUS_ACCEPTED
        assert case.completed_at is None
        assert SoapNote.objects.count() == 0
        course.refresh_from_db()
        assert (course.used_sessions, course.remaining_sessions) == before == (1, 4)
        assert CourseUsage.objects.count() == events_before == 1
        assert case.appointments.get().status == Appointment.STATUS_COMPLETED
        assert StatusHistory.objects.filter(case=case).count() == 1

    def test_complete_writes_soap_note(self, make_case, pt_user, soap_payload):
        case = make_case(status=PNCase.STATUS_ACCEPTED)
        result = request_transition(case.pk, PNCase.STATUS_COMPLETED, soap_payload, pt_user)
        assert isinstance(result, Applied)
        note = SoapNote.objects.get(case=case)
        assert note.plan == 'Continue exercises'
        assert note.created_by == pt_user
        case.refresh_from_db()
        assert case.completed_at is not None
        assert case.appointments.get().status == Appointment.STATUS_COMPLETED


class TestTransitionTable:
    def test_can_transition(self):
        assert can_transition('PENDING', 'ACCEPTED')
        assert can_transition('IN_PROGRESS', 'CANCELLED')
        assert not can_transition('IN_PROGRESS', 'COMPLETED')
        assert not can_transition('PENDING', 'COMPLETED')
        assert not can_transition('CANCELLED', 'CANCELLED')
        assert not can_transition('PENDING', 'PENDING')

    def test_cancelled_is_terminal(self, make_case, pt_user, pt_payload):
        case = make_case(status=PNCase.STATUS_CANCELLED)
        for target in ('PENDING', 'ACCEPTED', 'COMPLETED', 'CANCELLED'):
            result = request_transition(case.pk, target, dict(pt_payload), pt_user)
            assert result.kind == 'InvalidTransition'

    def test_in_progress_only_cancels(self, make_case, pt_user, soap_payload):
        case = make_case(status=PNCase.STATUS_IN_PROGRESS)
        assert request_transition(case.pk, 'COMPLETED', soap_payload, pt_user).kind == 'InvalidTransition'
        assert isinstance(request_transition(case.pk, 'CANCELLED', {}, pt_user), Applied)

    def test_in_progress_is_not_a_public_target(self, make_case, pt_user):
        case = make_case()
        assert request_transition(case.pk, 'IN_PROGRESS', {}, pt_user).kind == 'InvalidTransition'

    def test_unknown_status(self, make_case, pt_user):
        case = make_case()
        assert request_transition(case.pk, 'ARCHIVED', {}, pt_user).kind == 'InvalidTransition'

    def test_missing_case(self, pt_user):
        assert request_transition(424242, 'ACCEPTED', {}, pt_user).kind == 'NotFound'

    def test_every_applied_transition_writes_history(self, make_case, pt_user, pt_payload, soap_payload):
        case = make_case()
        _accept(case, pt_user, pt_payload)
        request_transition(case.pk, 'COMPLETED', soap_payload, pt_user)
        rows = list(StatusHistory.objects.filter(case=case).order_by('id').values_list('old_status', 'new_status'))
        assert rows == [('PENDING', 'ACCEPTED'), ('ACCEPTED', 'COMPLETED')]

    def test_metrics_count_outcomes(self, make_case, pt_user, pt_payload):
        labels = {'from': 'PENDING', 'to': 'ACCEPTED', 'result': 'applied'}
        before = REGISTRY.get_sample_value('pn_case_transitions_total', labels) or 0
        _accept(make_case(), pt_user, pt_payload)
        assert REGISTRY.get_sample_value('pn_case_transitions_total', labels) == before + 1


class TestAuthorization:
    def test_clinic_user_of_unrelated_clinic(self, home, make_case, pt_payload):
        outsider = User.objects.create_user(username='home_staff', password='x', role=User.ROLE_CLINIC, clinic=home)
        case = make_case()
        result = _accept(case, outsider, pt_payload)
        assert result.kind == 'Unauthorized'

    def test_authorization_is_checked_before_validity(self, home, make_case):
        outsider = User.objects.create_user(username='home_staff', password='x', role=User.ROLE_CLINIC, clinic=home)
        case = make_case(status=PNCase.STATUS_CANCELLED)
        assert request_transition(case.pk, 'ACCEPTED', {}, outsider).kind == 'Unauthorized'

    def test_clinic_user_of_target_clinic(self, clinic_user, make_case, pt_payload):
        assert isinstance(_accept(make_case(), clinic_user, pt_payload), Applied)

    def test_policy_is_pluggable(self, settings, make_case, admin_user, pt_payload):
        settings.CASES_AUTHZ_CHECK = 'cases.tests.test_transitions.deny_all'
        assert _accept(make_case(), admin_user, pt_payload).kind == 'Unauthorized'


class TestReversal:
    def _completed(self, make_case, pt_user, pt_payload, soap_payload, course=None):
        case = make_case(course=course)
        _accept(case, pt_user, pt_payload)
        request_transition(case.pk, 'COMPLETED', soap_payload, pt_user)
        return case

    def test_admin_reverses_completion(self, make_case, make_course, admin_user, pt_user, pt_payload, soap_payload):
        course = make_course(total=5)
        case = self._completed(make_case, pt_user, pt_payload, soap_payload, course)

        result = reverse_completion(case.pk, admin_user, 'Wrong SOAP entered')
        assert isinstance(result, Applied)
        assert result.new_status == 'ACCEPTED'
        assert result.soap_reentry_required is True
        case.refresh_from_db()
        assert case.status == PNCase.STATUS_ACCEPTED
        assert case.completed_at is None
        assert case.is_reversed is True
        assert case.last_reversal_reason == 'Wrong SOAP entered'
        assert case.last_reversed_at is not None
        history = StatusHistory.objects.filter(case=case).latest('id')
        assert history.is_reversal and history.reason == 'Wrong SOAP entered'
        # the session stays charged
        course.refresh_from_db()
        assert course.used_sessions == 1

    def test_reversal_via_status_request(self, make_case, admin_user, pt_user, pt_payload, soap_payload):
        case = self._completed(make_case, pt_user, pt_payload, soap_payload)
        result = request_transition(case.pk, 'ACCEPTED', {'reason': 'Redo'}, admin_user)
        assert result.soap_reentry_required is True

    def test_non_admin_cannot_reverse(self, make_case, pt_user, pt_payload, soap_payload):
        case = self._completed(make_case, pt_user, pt_payload, soap_payload)
        assert reverse_completion(case.pk, pt_user, 'Redo').kind == 'Unauthorized'
        assert request_transition(case.pk, 'ACCEPTED', {'reason': 'Redo'}, pt_user).kind == 'Unauthorized'
        case.refresh_from_db()
        assert case.status == PNCase.STATUS_COMPLETED

    def test_reason_required(self, make_case, admin_user, pt_user, pt_payload, soap_payload):
        case = self._completed(make_case, pt_user, pt_payload, soap_payload)
        result = reverse_completion(case.pk, admin_user, '   ')
        assert result.kind == 'PreconditionFailed'
        assert result.details['field'] == 'reason'

    def test_only_completed_cases(self, make_case, admin_user):
        case = make_case(status=PNCase.STATUS_ACCEPTED)
        result = reverse_completion(case.pk, admin_user, 'Redo')
        assert result.kind == 'InvalidTransition'
        assert result.details['reason'] == 'NotCompleted'


class TestDelete:
    def test_delete_accepted_case_is_rejected(self, make_case, make_course, pt_user, pt_payload):
        course = make_course(total=5)
        case = make_case(course=course)
        _accept(case, pt_user, pt_payload)

        result = delete_case(case.pk, pt_user)
        assert isinstance(result, Rejected)
        assert result.kind == 'InvalidTransition'
        assert result.details['reason'] == 'NotPending'
        assert PNCase.objects.filter(pk=case.pk).exists()

    def test_delete_after_revert_removes_dependents(self, make_case, make_course, pt_user, pt_payload):
        course = make_course(total=5)
        case = make_case(course=course)
        CaseVisit.objects.create(case=case, visit_no=1)
        _accept(case, pt_user, pt_payload)
        request_transition(case.pk, 'PENDING', {}, pt_user)

        result = delete_case(case.pk, pt_user)
        assert isinstance(result, Deleted)
        assert result.removed['appointments'] == 1
        assert result.removed['visits'] == 1
        assert result.removed['status_history'] == 2
        assert not PNCase.objects.filter(pk=case.pk).exists()
        assert not Appointment.objects.filter(case_id=case.pk).exists()
        # the ledger outlives the case
        assert CourseUsage.objects.filter(case_id=case.pk).count() == 2
        course.refresh_from_db()
        assert course.used_sessions == 0

    def test_delete_by_unrelated_clinic_user(self, home, make_case):
        outsider = User.objects.create_user(username='home_staff', password='x', role=User.ROLE_CLINIC, clinic=home)
        case = make_case()
        assert delete_case(case.pk, outsider).kind == 'Unauthorized'

    def test_delete_missing(self, pt_user):
        assert delete_case(99999, pt_user).kind == 'NotFound'


class TestStorage:
    def test_conditional_write_detects_concurrent_change(self, make_case):
        case = make_case()
        PNCase.objects.filter(pk=case.pk).update(status=PNCase.STATUS_CANCELLED)
        with pytest.raises(StorageConflict):
            case_store.save_transition(case, PNCase.STATUS_PENDING, {'status': PNCase.STATUS_ACCEPTED})

    def test_concurrent_writer_rolls_back_everything(self, monkeypatch, make_course, make_case, pt_user, pt_payload):
        course = make_course(total=5)
        case = make_case(course=course)
        real = appointment_sync.linked_appointment

        def racing(c, lock=False):
            PNCase.objects.filter(pk=c.pk).update(status=PNCase.STATUS_CANCELLED)
            return real(c, lock=lock)

        monkeypatch.setattr(appointment_sync, 'linked_appointment', racing)
        result = _accept(case, pt_user, pt_payload)
        assert result.kind == 'StorageConflict'
        case.refresh_from_db()
        assert case.status == PNCase.STATUS_PENDING
        course.refresh_from_db()
        assert course.used_sessions == 0
        assert CourseUsage.objects.count() == 0

    def test_lock_failure_is_a_storage_conflict(self, monkeypatch, make_case, pt_user, pt_payload):
        case = make_case()

        def locked(case_id, lock=False):
            raise OperationalError('lock wait timeout exceeded')

        monkeypatch.setattr(case_store, 'get_case', locked)
        assert _accept(case, pt_user, pt_payload).kind == 'StorageConflict'

    def test_case_lock_uses_plain_row_lock(self, monkeypatch, make_case):
        case = make_case()
        calls = []
        real = QuerySet.select_for_update

        def recording(qs, *args, **kwargs):
            calls.append((args, kwargs))
            return real(qs, *args, **kwargs)

        monkeypatch.setattr(QuerySet, 'select_for_update', recording)
        with transaction.atomic():
            locked = case_store.get_case(case.pk, lock=True)
        assert locked.pk == case.pk
        assert locked.target_clinic.code == 'CL003'
        # backends without SELECT ... FOR UPDATE OF (MySQL, MariaDB) reject an of= clause
        assert calls == [((), {})]


class TestAfterCommit:
    def test_audit_is_forwarded(self, django_capture_on_commit_callbacks, make_case, pt_user, pt_payload):
        case = make_case()
        with django_capture_on_commit_callbacks(execute=True):
            _accept(case, pt_user, pt_payload)
        event = AuditEvent.objects.get(action='case_status_change', object_id=case.pk)
        assert event.detail['old'] == {'status': 'PENDING'}
        assert event.detail['new']['status'] == 'ACCEPTED'
        assert event.user == pt_user

    def test_audit_failure_does_not_undo_transition(self, settings, caplog, monkeypatch, django_capture_on_commit_callbacks,
                                                    make_case, pt_user, pt_payload):
        # the 'cases' logger does not propagate to the root handler caplog listens on
        monkeypatch.setattr(logging.getLogger('cases'), 'propagate', True)
        settings.CASES_AUDIT_SINK = 'cases.tests.test_transitions.exploding_sink'
        case = make_case()
        with caplog.at_level(logging.WARNING, logger='cases'):
            with django_capture_on_commit_callbacks(execute=True):
                result = _accept(case, pt_user, pt_payload)
        assert isinstance(result, Applied)
        case.refresh_from_db()
        assert case.status == PNCase.STATUS_ACCEPTED
        assert any('audit sink failed' in r.getMessage() for r in caplog.records)

    def test_forward_audit_swallows_sink_errors(self, settings):
        settings.CASES_AUDIT_SINK = 'cases.tests.test_transitions.exploding_sink'
        forward_audit(None, 'case_status_change', 'pn_case', 1, {'status': 'PENDING'}, {'status': 'ACCEPTED'})

    def test_status_change_is_broadcast(self, monkeypatch, django_capture_on_commit_callbacks,
                                        make_case, pt_user, pt_payload):
        calls = []
        monkeypatch.setattr('cases.services.transitions.broadcast_case_status', lambda *a: calls.append(a))
        case = make_case()
        with django_capture_on_commit_callbacks(execute=True):
            _accept(case, pt_user, pt_payload)
        assert calls == [(case.pk, case.pn_code, 'PENDING', 'ACCEPTED')]

    def test_rejected_transition_queues_nothing(self, django_capture_on_commit_callbacks, make_case, pt_user):
        case = make_case()
        with django_capture_on_commit_callbacks() as callbacks:
            request_transition(case.pk, 'COMPLETED', {}, pt_user)
        assert callbacks == []
