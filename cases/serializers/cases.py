import bleach
from rest_framework import serializers


def _clean(v):
    return bleach.clean((v or '').strip(), strip=True)


class SoapNotesSerializer(serializers.Serializer):
    # completeness is checked by the transition engine so it can name every missing part
    subjective = serializers.CharField(required=False, allow_blank=True, trim_whitespace=False)
    objective = serializers.CharField(required=False, allow_blank=True, trim_whitespace=False)
    assessment = serializers.CharField(required=False, allow_blank=True, trim_whitespace=False)
    plan = serializers.CharField(required=False, allow_blank=True, trim_whitespace=False)
    notes = serializers.CharField(required=False, allow_blank=True, trim_whitespace=False)

    def validate(self, attrs):
        return {k: _clean(v) for k, v in attrs.items()}


class StatusUpdateSerializer(serializers.Serializer):
    status = serializers.CharField(max_length=16)
    pt_diagnosis = serializers.CharField(required=False, allow_blank=True)
    pt_chief_complaint = serializers.CharField(required=False, allow_blank=True)
    pt_present_history = serializers.CharField(required=False, allow_blank=True)
    pt_pain_score = serializers.IntegerField(required=False, allow_null=True, min_value=0, max_value=10)
    body_annotation_id = serializers.IntegerField(required=False, allow_null=True, min_value=1)
    soap_notes = SoapNotesSerializer(required=False)
    cancellation_reason = serializers.CharField(required=False, allow_blank=True)
    reason = serializers.CharField(required=False, allow_blank=True)

    def validate(self, attrs):
        for name in ('pt_diagnosis', 'pt_chief_complaint', 'pt_present_history', 'cancellation_reason', 'reason'):
            if name in attrs:
                attrs[name] = _clean(attrs[name])
        attrs['status'] = attrs['status'].strip().upper()
        return attrs


class ReverseStatusSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True)

    def validate_reason(self, v):
        return _clean(v)


class CaseCreateSerializer(serializers.Serializer):
    patient_id = serializers.IntegerField()
    diagnosis = serializers.CharField()
    purpose = serializers.CharField()
    notes = serializers.CharField(required=False, allow_blank=True)
    target_clinic_id = serializers.IntegerField(required=False, allow_null=True)
    course_id = serializers.IntegerField(required=False, allow_null=True)
    appointment_date = serializers.DateField(required=False, allow_null=True)
    start_time = serializers.TimeField(required=False, allow_null=True)
    end_time = serializers.TimeField(required=False, allow_null=True)

    def validate_diagnosis(self, v):
        v = _clean(v)
        if not v:
            raise serializers.ValidationError('diagnosis is required')
        return v

    def validate_purpose(self, v):
        v = _clean(v)
        if not v:
            raise serializers.ValidationError('purpose is required')
        return v

    def validate_notes(self, v):
        return _clean(v)


class CertificateCreateSerializer(serializers.Serializer):
    certificate_type = serializers.ChoiceField(choices=['thai', 'english'])
    certificate_data = serializers.DictField(required=False)


def case_to_dict(case):
    return {
        'id': case.id,
        'pnCode': case.pn_code,
        'status': case.status,
        'patientId': case.patient_id,
        'sourceClinicId': case.source_clinic_id,
        'targetClinicId': case.target_clinic_id,
        'courseId': case.course_id,
        'diagnosis': case.diagnosis,
        'purpose': case.purpose,
        'notes': case.notes,
        'ptDiagnosis': case.pt_diagnosis,
        'ptChiefComplaint': case.pt_chief_complaint,
        'ptPresentHistory': case.pt_present_history,
        'ptPainScore': case.pt_pain_score,
        'bodyAnnotationId': case.body_annotation_id,
        'isReversed': case.is_reversed,
        'lastReversalReason': case.last_reversal_reason,
        'lastReversedAt': case.last_reversed_at.isoformat() if case.last_reversed_at else None,
        'acceptedAt': case.accepted_at.isoformat() if case.accepted_at else None,
        'completedAt': case.completed_at.isoformat() if case.completed_at else None,
        'cancelledAt': case.cancelled_at.isoformat() if case.cancelled_at else None,
        'cancellationReason': case.cancellation_reason,
        'createdAt': case.created_at.isoformat(),
    }


def soap_note_to_dict(note):
    return {
        'id': note.id,
        'subjective': note.subjective,
        'objective': note.objective,
        'assessment': note.assessment,
        'plan': note.plan,
        'notes': note.notes,
        'createdBy': note.created_by_id,
        'createdAt': note.created_at.isoformat(),
    }


def usage_to_dict(event):
    return {
        'id': event.id,
        'caseId': event.case_id,
        'action': event.action_type,
        'sessions': event.sessions_used,
        'billId': event.bill_id,
        'notes': event.notes,
        'usageDate': event.usage_date.isoformat(),
        'createdAt': event.created_at.isoformat(),
    }
