"""
Case intake: PN code allocation and creation of PENDING cases.
"""
from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, Optional

from django.db import IntegrityError, transaction
from django.utils import timezone

from ..models import Appointment, Clinic, Course, Patient, PNCase, User
from .errors import NotFound, PreconditionFailed, StorageConflict, Unauthorized
from .reversal import forward_audit, record_history

logger = logging.getLogger(__name__)

PN_SEQUENCE_MAX = 9999


def generate_pn_code(today: Optional[date] = None) -> str:
    """Next ``PNYYMMXXXX`` code; the sequence runs across the whole year."""
    today = today or timezone.localdate()
    year_prefix = f"PN{today:%y}"
    codes = PNCase.objects.filter(pn_code__startswith=year_prefix).values_list('pn_code', flat=True)
    sequences = [int(code[-4:]) for code in codes if len(code) == 10 and code[-4:].isdigit()]
    sequence = max(sequences, default=0) + 1
    if sequence > PN_SEQUENCE_MAX:
        raise PreconditionFailed('PN code sequence limit reached for this year', field='pn_code', max=PN_SEQUENCE_MAX)
    return f"{year_prefix}{today:%m}{sequence:04d}"


def _validate_course(course_id: int, patient: Patient) -> Course:
    try:
        course = Course.objects.get(pk=course_id)
    except Course.DoesNotExist:
        raise NotFound('course not found', entity='course', id=course_id)
    if course.patient_id != patient.pk:
        raise PreconditionFailed('course does not belong to this patient', field='course_id')
    if course.status != Course.STATUS_ACTIVE:
        raise PreconditionFailed('course is not active', field='course_id', courseStatus=course.status)
    if course.remaining_sessions <= 0:
        raise PreconditionFailed('course has no remaining sessions', field='course_id')
    if course.expiry_date and course.expiry_date < timezone.localdate():
        raise PreconditionFailed('course has expired', field='course_id', expiry_date=course.expiry_date.isoformat())
    return course


def _resolve_clinics(actor, patient: Patient, target_clinic_id: Optional[int]):
    source = patient.clinic
    if source is None:
        raise PreconditionFailed('patient has no home clinic', field='patient_id')
    if getattr(actor, 'role', None) == User.ROLE_CLINIC and not getattr(actor, 'is_superuser', False):
        if not actor.clinic_id:
            raise Unauthorized('clinic user must be assigned to a clinic')
        if target_clinic_id and int(target_clinic_id) != actor.clinic_id:
            raise Unauthorized('clinic users can only create cases for their own clinic')
        return source, actor.clinic
    if not target_clinic_id:
        raise PreconditionFailed('target clinic is required', field='target_clinic_id')
    try:
        return source, Clinic.objects.get(pk=target_clinic_id)
    except Clinic.DoesNotExist:
        raise NotFound('clinic not found', entity='clinic', id=target_clinic_id)


def create_case(actor, data: Dict[str, Any]) -> PNCase:
    """Create a PENDING case, optionally with its first appointment.

    ``data`` keys: patient_id, diagnosis, purpose, notes, target_clinic_id,
    course_id, appointment_date, start_time, end_time.
    """
    try:
        patient = Patient.objects.select_related('clinic').get(pk=data.get('patient_id'))
    except (Patient.DoesNotExist, ValueError, TypeError):
        raise NotFound('patient not found', entity='patient', id=data.get('patient_id'))

    missing = [f for f in ('diagnosis', 'purpose') if not str(data.get(f) or '').strip()]
    if missing:
        raise PreconditionFailed('required fields are missing', fields=missing)

    source, target = _resolve_clinics(actor, patient, data.get('target_clinic_id'))
    course = _validate_course(data['course_id'], patient) if data.get('course_id') else None

    for attempt in range(3):
        try:
            with transaction.atomic():
                case = PNCase.objects.create(
                    pn_code=generate_pn_code(),
                    patient=patient,
                    source_clinic=source,
                    target_clinic=target,
                    course=course,
                    diagnosis=str(data['diagnosis']).strip(),
                    purpose=str(data['purpose']).strip(),
                    notes=str(data.get('notes') or '').strip(),
                    created_by=actor if getattr(actor, 'pk', None) else None,
                )
                if data.get('appointment_date'):
                    Appointment.objects.create(
                        patient=patient,
                        clinic=target,
                        course=course,
                        case=case,
                        appointment_date=data['appointment_date'],
                        start_time=data.get('start_time'),
                        end_time=data.get('end_time'),
                    )
                record_history(case, '', PNCase.STATUS_PENDING, actor, 'created')
                transaction.on_commit(lambda c=case: forward_audit(
                    actor, 'case_create', 'pn_case', c.pk, None, {'pn_code': c.pn_code, 'status': c.status},
                ))
        except IntegrityError:
            # two intakes picked the same sequence number
            logger.info('PN code collision, retrying (attempt %s)', attempt + 1)
            continue
        logger.info('case %s created for patient %s', case.pn_code, patient.hn, extra={'case_id': case.pk})
        return case
    raise StorageConflict('could not allocate a PN code', field='pn_code')
