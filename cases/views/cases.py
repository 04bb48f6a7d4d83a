"""
PN case endpoints.

Status changes, reversals and deletion all go through the transition
engine in :mod:`cases.services.transitions`; these views only parse the
request, hand it over and translate the result.  Rejections share the
``{"ok": false, "error": {...}}`` envelope used by the exception handler.
"""
from __future__ import annotations

from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework import status

from ..exceptions import rejection_response
from ..models import PNCase, User
from ..permissions import IsStaffRole
from ..serializers.cases import (
    CaseCreateSerializer,
    CertificateCreateSerializer,
    ReverseStatusSerializer,
    StatusUpdateSerializer,
    case_to_dict,
    soap_note_to_dict,
)
from ..services import case_store, intake, records
from ..services.authz import can_access_case
from ..services.errors import Rejected, Unauthorized
from ..services.reversal import reverse_completion
from ..services.transitions import delete_case, request_transition


def _load_case(request, case_id: int) -> PNCase:
    case = case_store.get_case(case_id)
    if not can_access_case(request.user, case):
        raise Unauthorized('not allowed to access this case', case_id=case_id)
    return case


def _applied_response(result) -> Response:
    if isinstance(result, Rejected):
        return rejection_response(result)
    return Response({
        'ok': True,
        'caseId': result.case_id,
        'oldStatus': result.old_status,
        'newStatus': result.new_status,
        'ledger': result.ledger,
        'soapReentryRequired': result.soap_reentry_required,
    })


@api_view(['POST'])
@permission_classes([IsAuthenticated, IsStaffRole])
def pn_case_create(request):
    """Create a PENDING case (and optionally its first appointment)."""
    ser = CaseCreateSerializer(data=request.data)
    ser.is_valid(raise_exception=True)
    case = intake.create_case(request.user, ser.validated_data)
    return Response({'ok': True, 'case': case_to_dict(case)}, status=status.HTTP_201_CREATED)


@api_view(['GET', 'DELETE'])
@permission_classes([IsAuthenticated, IsStaffRole])
def pn_case_detail(request, case_id: int):
    """GET returns the case; DELETE hard-deletes it while it is still PENDING."""
    if request.method == 'DELETE':
        result = delete_case(case_id, request.user)
        if isinstance(result, Rejected):
            return rejection_response(result)
        return Response({'ok': True, 'caseId': result.case_id, 'pnCode': result.pn_code, 'removed': result.removed})
    case = _load_case(request, case_id)
    return Response({'ok': True, 'case': case_to_dict(case)})


@api_view(['PATCH'])
@permission_classes([IsAuthenticated, IsStaffRole])
def pn_case_status(request, case_id: int):
    ser = StatusUpdateSerializer(data=request.data)
    ser.is_valid(raise_exception=True)
    payload = dict(ser.validated_data)
    target = payload.pop('status')
    return _applied_response(request_transition(case_id, target, payload, request.user))


@api_view(['POST'])
@permission_classes([IsAuthenticated, IsStaffRole])
def pn_case_reverse_status(request, case_id: int):
    """Admin only: move a COMPLETED case back to ACCEPTED."""
    ser = ReverseStatusSerializer(data=request.data)
    ser.is_valid(raise_exception=True)
    return _applied_response(reverse_completion(case_id, request.user, ser.validated_data.get('reason')))


@api_view(['GET'])
@permission_classes([IsAuthenticated, IsStaffRole])
def pn_case_timeline(request, case_id: int):
    case = _load_case(request, case_id)
    return Response({'ok': True, 'pnCode': case.pn_code, 'timeline': records.case_timeline(case)})


@api_view(['GET'])
@permission_classes([IsAuthenticated, IsStaffRole])
def pn_case_soap_notes(request, case_id: int):
    case = _load_case(request, case_id)
    return Response({'ok': True, 'soapNotes': [soap_note_to_dict(n) for n in records.list_soap_notes(case)]})


@api_view(['POST'])
@permission_classes([IsAuthenticated, IsStaffRole])
def pn_case_certificate(request, case_id: int):
    """Issue a Thai or English certificate for a COMPLETED case (ADMIN/PT)."""
    if request.user.role == User.ROLE_CLINIC and not request.user.is_superuser:
        raise Unauthorized('clinic users cannot issue certificates')
    case = _load_case(request, case_id)
    ser = CertificateCreateSerializer(data=request.data)
    ser.is_valid(raise_exception=True)
    cert = records.create_certificate(
        case, request.user, ser.validated_data['certificate_type'], ser.validated_data.get('certificate_data'),
    )
    return Response({'ok': True, 'certificateId': cert.id}, status=status.HTTP_201_CREATED)
