"""
Database models for the PN case backend.

The interesting rows are :class:`PNCase` and :class:`Course`: both are
written only by the transition engine in :mod:`cases.services`.  The
remaining models are either append-only trails (:class:`CourseUsage`,
:class:`StatusHistory`, :class:`SoapNote`, :class:`AuditEvent`) or thin
records owned by the wider clinic system that the engine keeps in sync
(:class:`Appointment`) or removes on case deletion (visits, attachments,
certificates).
"""
from __future__ import annotations

from django.contrib.auth.models import AbstractUser
from django.db import models
from django.db.models import F, Q
from django.utils import timezone


class Clinic(models.Model):
    code = models.CharField(max_length=20, unique=True)
    name = models.CharField(max_length=255)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self) -> str:
        return f"{self.name} ({self.code})"


class User(AbstractUser):
    """Staff account with a role and an optional clinic binding.

    ``ADMIN`` may do everything including reversals, ``PT`` may move cases
    through the normal lifecycle, ``CLINIC`` users create cases for their
    own clinic and may only touch cases referencing it.
    """
    ROLE_ADMIN = 'ADMIN'
    ROLE_PT = 'PT'
    ROLE_CLINIC = 'CLINIC'
    ROLE_CHOICES = [
        (ROLE_ADMIN, 'Administrator'),
        (ROLE_PT, 'Physiotherapist'),
        (ROLE_CLINIC, 'Clinic staff'),
    ]
    role = models.CharField(max_length=10, choices=ROLE_CHOICES, default=ROLE_CLINIC)
    clinic = models.ForeignKey(
        Clinic, null=True, blank=True, on_delete=models.SET_NULL, related_name='users', db_index=True
    )

    def __str__(self) -> str:
        return f"{self.username} ({self.role})"


class Patient(models.Model):
    hn = models.CharField(max_length=20, unique=True, help_text="Hospital number")
    first_name = models.CharField(max_length=100)
    last_name = models.CharField(max_length=100, blank=True)
    clinic = models.ForeignKey(Clinic, null=True, blank=True, on_delete=models.SET_NULL, related_name='patients')
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self) -> str:
        return f"{self.hn} {self.first_name} {self.last_name}".strip()


class Course(models.Model):
    """A pre-paid pool of treatment sessions.

    ``remaining_sessions`` always equals ``total_sessions - used_sessions``;
    the check constraint makes the database refuse anything else.  When
    ``remaining_sessions`` is omitted on creation it is derived.
    """
    STATUS_ACTIVE = 'ACTIVE'
    STATUS_COMPLETED = 'COMPLETED'
    STATUS_EXPIRED = 'EXPIRED'
    STATUS_CANCELLED = 'CANCELLED'
    STATUS_CHOICES = [
        (STATUS_ACTIVE, 'Active'),
        (STATUS_COMPLETED, 'Completed'),
        (STATUS_EXPIRED, 'Expired'),
        (STATUS_CANCELLED, 'Cancelled'),
    ]

    course_code = models.CharField(max_length=30, unique=True)
    patient = models.ForeignKey(Patient, on_delete=models.CASCADE, related_name='courses')
    total_sessions = models.PositiveIntegerField()
    used_sessions = models.PositiveIntegerField(default=0)
    remaining_sessions = models.PositiveIntegerField()
    status = models.CharField(max_length=16, choices=STATUS_CHOICES, default=STATUS_ACTIVE, db_index=True)
    expiry_date = models.DateField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.CheckConstraint(
                condition=Q(remaining_sessions=F('total_sessions') - F('used_sessions')),
                name='course_remaining_matches_used',
            ),
        ]

    def save(self, *args, **kwargs):
        if self.remaining_sessions is None:
            self.remaining_sessions = self.total_sessions - (self.used_sessions or 0)
        super().save(*args, **kwargs)

    def __str__(self) -> str:
        return f"{self.course_code} {self.remaining_sessions}/{self.total_sessions}"


class CourseUsage(models.Model):
    """Append-only ledger row justifying one change to a course balance.

    ``case`` has no database constraint so that deleting a
    PENDING case leaves the ledger untouched.
    """
    ACTION_USE = 'USE'
    ACTION_RETURN = 'RETURN'
    ACTION_CHOICES = [(ACTION_USE, 'Use'), (ACTION_RETURN, 'Return')]

    course = models.ForeignKey(Course, on_delete=models.PROTECT, related_name='usage_events')
    case = models.ForeignKey(
        'PNCase', null=True, blank=True, on_delete=models.DO_NOTHING,
        db_constraint=False, related_name='usage_events',
    )
    bill_id = models.PositiveIntegerField(null=True, blank=True)
    sessions_used = models.PositiveSmallIntegerField(default=1)
    action_type = models.CharField(max_length=8, choices=ACTION_CHOICES)
    notes = models.TextField(blank=True)
    created_by = models.ForeignKey(User, null=True, blank=True, on_delete=models.SET_NULL, related_name='course_usage')
    usage_date = models.DateField(default=timezone.localdate)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=['course', 'case', 'action_type'], name='usage_course_case_action_idx'),
        ]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError('course usage events are append-only')
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError('course usage events are append-only')

    def __str__(self) -> str:
        return f"{self.action_type} course={self.course_id} case={self.case_id}"


class PNCase(models.Model):
    STATUS_PENDING = 'PENDING'
    STATUS_ACCEPTED = 'ACCEPTED'
    STATUS_IN_PROGRESS = 'IN_PROGRESS'
    STATUS_COMPLETED = 'COMPLETED'
    STATUS_CANCELLED = 'CANCELLED'
    STATUS_CHOICES = [
        (STATUS_PENDING, 'Pending'),
        (STATUS_ACCEPTED, 'Accepted'),
        (STATUS_IN_PROGRESS, 'In progress'),
        (STATUS_COMPLETED, 'Completed'),
        (STATUS_CANCELLED, 'Cancelled'),
    ]

    pn_code = models.CharField(max_length=20, unique=True)
    patient = models.ForeignKey(Patient, on_delete=models.PROTECT, related_name='pn_cases')
    source_clinic = models.ForeignKey(Clinic, on_delete=models.PROTECT, related_name='source_cases')
    target_clinic = models.ForeignKey(Clinic, on_delete=models.PROTECT, related_name='target_cases')
    # status is the only source of truth; the *_at stamps below are audit copies
    status = models.CharField(max_length=16, choices=STATUS_CHOICES, default=STATUS_PENDING, db_index=True)
    course = models.ForeignKey(Course, null=True, blank=True, on_delete=models.SET_NULL, related_name='pn_cases')

    diagnosis = models.TextField()
    purpose = models.TextField()
    notes = models.TextField(blank=True)

    pt_diagnosis = models.TextField(blank=True)
    pt_chief_complaint = models.TextField(blank=True)
    pt_present_history = models.TextField(blank=True)
    pt_pain_score = models.PositiveSmallIntegerField(null=True, blank=True)
    body_annotation_id = models.PositiveIntegerField(null=True, blank=True)

    is_reversed = models.BooleanField(default=False)
    last_reversal_reason = models.TextField(blank=True)
    last_reversed_at = models.DateTimeField(null=True, blank=True)

    accepted_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancellation_reason = models.TextField(blank=True)

    created_by = models.ForeignKey(User, null=True, blank=True, on_delete=models.SET_NULL, related_name='pn_cases_created')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=['target_clinic', 'status'], name='pncase_target_status_idx'),
            models.Index(fields=['source_clinic', 'status'], name='pncase_source_status_idx'),
        ]

    def __str__(self) -> str:
        return f"{self.pn_code} ({self.status})"


class Appointment(models.Model):
    """Scheduling record; mirrors its case's status, never drives it."""
    STATUS_SCHEDULED = 'SCHEDULED'
    STATUS_COMPLETED = 'COMPLETED'
    STATUS_CANCELLED = 'CANCELLED'
    STATUS_CHOICES = [
        (STATUS_SCHEDULED, 'Scheduled'),
        (STATUS_COMPLETED, 'Completed'),
        (STATUS_CANCELLED, 'Cancelled'),
    ]

    patient = models.ForeignKey(Patient, null=True, blank=True, on_delete=models.CASCADE, related_name='appointments')
    clinic = models.ForeignKey(Clinic, on_delete=models.PROTECT, related_name='appointments')
    course = models.ForeignKey(Course, null=True, blank=True, on_delete=models.SET_NULL, related_name='appointments')
    case = models.ForeignKey(PNCase, null=True, blank=True, on_delete=models.CASCADE, related_name='appointments')
    appointment_date = models.DateField()
    start_time = models.TimeField(null=True, blank=True)
    end_time = models.TimeField(null=True, blank=True)
    status = models.CharField(max_length=16, choices=STATUS_CHOICES, default=STATUS_SCHEDULED, db_index=True)
    cancellation_reason = models.TextField(blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=['case', 'appointment_date', 'created_at'], name='appt_case_date_idx'),
        ]

    def __str__(self) -> str:
        return f"Appointment {self.id} {self.appointment_date} ({self.status})"


class StatusHistory(models.Model):
    """One row per accepted case transition, reversals included."""
    case = models.ForeignKey(PNCase, on_delete=models.CASCADE, related_name='status_history')
    old_status = models.CharField(max_length=16, blank=True)
    new_status = models.CharField(max_length=16)
    changed_by = models.ForeignKey(User, null=True, blank=True, on_delete=models.SET_NULL, related_name='case_transitions')
    reason = models.TextField(blank=True)
    is_reversal = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [models.Index(fields=['case', 'created_at'], name='history_case_created_idx')]

    def __str__(self) -> str:
        return f"{self.case_id}: {self.old_status} → {self.new_status}"


class SoapNote(models.Model):
    case = models.ForeignKey(PNCase, on_delete=models.CASCADE, related_name='soap_notes')
    subjective = models.TextField()
    objective = models.TextField()
    assessment = models.TextField()
    plan = models.TextField()
    notes = models.TextField(blank=True)
    created_by = models.ForeignKey(User, null=True, blank=True, on_delete=models.SET_NULL, related_name='soap_notes')
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self) -> str:
        return f"SOAP {self.id} case={self.case_id}"


class CaseVisit(models.Model):
    case = models.ForeignKey(PNCase, on_delete=models.CASCADE, related_name='visits')
    visit_no = models.PositiveIntegerField()
    visit_date = models.DateField(null=True, blank=True)
    visit_time = models.TimeField(null=True, blank=True)
    status = models.CharField(max_length=16, default='SCHEDULED')
    therapist = models.ForeignKey(User, null=True, blank=True, on_delete=models.SET_NULL, related_name='case_visits')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        unique_together = [('case', 'visit_no')]

    def __str__(self) -> str:
        return f"Visit #{self.visit_no} case={self.case_id}"


class CaseAttachment(models.Model):
    """Attachment metadata; file storage is handled elsewhere."""
    case = models.ForeignKey(PNCase, on_delete=models.CASCADE, related_name='attachments')
    file_name = models.CharField(max_length=255)
    content_type = models.CharField(max_length=128, blank=True)
    size = models.PositiveIntegerField(default=0)
    uploaded_by = models.ForeignKey(User, null=True, blank=True, on_delete=models.SET_NULL, related_name='case_attachments')
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self) -> str:
        return f"att {self.id} case={self.case_id}"


class Certificate(models.Model):
    TYPE_THAI = 'thai'
    TYPE_ENGLISH = 'english'
    TYPE_CHOICES = [(TYPE_THAI, 'Thai'), (TYPE_ENGLISH, 'English')]

    case = models.ForeignKey(PNCase, on_delete=models.CASCADE, related_name='certificates')
    certificate_type = models.CharField(max_length=10, choices=TYPE_CHOICES)
    certificate_data = models.JSONField(default=dict, blank=True)
    created_by = models.ForeignKey(User, null=True, blank=True, on_delete=models.SET_NULL, related_name='certificates')
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self) -> str:
        return f"cert {self.id} ({self.certificate_type}) case={self.case_id}"


class AuditEvent(models.Model):
    user = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True)
    action = models.CharField(max_length=64)
    object_type = models.CharField(max_length=64, blank=True, null=True)
    object_id = models.BigIntegerField(blank=True, null=True)
    detail = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=['action', 'created_at'], name='audit_action_created_idx'),
            models.Index(fields=['object_type', 'object_id', 'created_at'], name='audit_object_created_idx'),
        ]

    def __str__(self) -> str:
        return f"{self.action}:{self.object_type}#{self.object_id}"
