"""
Shared fixtures for the case tests.

Clinics: ``home`` is the configured home clinic (CL001); ``clinic_a``
refers patients to ``clinic_b``, so cases between them need the full PT
assessment on acceptance.
"""
import datetime

import pytest
from django.utils import timezone

from cases.models import Appointment, Clinic, Course, Patient, PNCase, User


@pytest.fixture
def home():
    return Clinic.objects.create(code='CL001', name='Main clinic')


@pytest.fixture
def clinic_a():
    return Clinic.objects.create(code='CL002', name='Clinic A')


@pytest.fixture
def clinic_b():
    return Clinic.objects.create(code='CL003', name='Clinic B')


@pytest.fixture
def admin_user():
    return User.objects.create_user(username='admin1', password='adminpass', role=User.ROLE_ADMIN)


@pytest.fixture
def pt_user():
    return User.objects.create_user(username='pt1', password='ptpass', role=User.ROLE_PT)


@pytest.fixture
def clinic_user(clinic_b):
    return User.objects.create_user(username='clinic_b', password='clinicpass', role=User.ROLE_CLINIC, clinic=clinic_b)


@pytest.fixture
def patient(clinic_a):
    return Patient.objects.create(hn='HN0001', first_name='Somchai', last_name='Jaidee', clinic=clinic_a)


@pytest.fixture
def make_course(patient):
    counter = {'n': 0}

    def _make(total=5, used=0, status=Course.STATUS_ACTIVE, owner=None, expiry_date=None):
        counter['n'] += 1
        return Course.objects.create(
            course_code=f'CRS{counter["n"]:04d}',
            patient=owner or patient,
            total_sessions=total,
            used_sessions=used,
            status=status,
            expiry_date=expiry_date,
        )
    return _make


@pytest.fixture
def make_case(patient, clinic_a, clinic_b, pt_user):
    counter = {'n': 0}

    def _make(status=PNCase.STATUS_PENDING, course=None, appointment=True, appointment_course='same',
              source=None, target=None):
        counter['n'] += 1
        case = PNCase.objects.create(
            pn_code=f'PN2601{counter["n"]:04d}',
            patient=patient,
            source_clinic=source or clinic_a,
            target_clinic=target or clinic_b,
            status=status,
            course=course,
            diagnosis='Low back pain',
            purpose='Physiotherapy',
            created_by=pt_user,
        )
        if appointment:
            Appointment.objects.create(
                patient=patient,
                clinic=case.target_clinic,
                course=course if appointment_course == 'same' else appointment_course,
                case=case,
                appointment_date=timezone.localdate() + datetime.timedelta(days=1),
            )
        return case
    return _make


@pytest.fixture
def pt_payload():
    return {
        'pt_diagnosis': 'Lumbar strain',
        'pt_chief_complaint': 'Pain when bending',
        'pt_present_history': 'Two weeks after lifting',
        'pt_pain_score': 6,
    }


@pytest.fixture
def soap_payload():
    return {
        'soap_notes': {
            'subjective': 'Pain reduced',
            'objective': 'ROM improved',
            'assessment': 'Responding well',
            'plan': 'Continue exercises',
        },
    }
