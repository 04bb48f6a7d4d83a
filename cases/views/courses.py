from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from ..models import User
from ..permissions import IsStaffRole
from ..serializers.cases import usage_to_dict
from ..services.errors import Unauthorized
from ..services.ledger import get_course


@api_view(['GET'])
@permission_classes([IsAuthenticated, IsStaffRole])
def course_detail(request, course_id: int):
    """Course balance with its usage ledger, newest first."""
    course = get_course(course_id)
    user = request.user
    if user.role == User.ROLE_CLINIC and not user.is_superuser:
        if not user.clinic_id or course.patient.clinic_id != user.clinic_id:
            raise Unauthorized('not allowed to view this course', course_id=course_id)
    events = course.usage_events.order_by('-created_at', '-id')
    return Response({
        'ok': True,
        'course': {
            'id': course.id,
            'courseCode': course.course_code,
            'patientId': course.patient_id,
            'status': course.status,
            'totalSessions': course.total_sessions,
            'usedSessions': course.used_sessions,
            'remainingSessions': course.remaining_sessions,
            'expiryDate': course.expiry_date.isoformat() if course.expiry_date else None,
        },
        'usage': [usage_to_dict(e) for e in events],
    })
