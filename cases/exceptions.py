from rest_framework.views import exception_handler as drf_exception_handler
from rest_framework.response import Response
from rest_framework import status

from .services.errors import Rejected, TransitionError

REJECTION_STATUS = {
    'NotFound': status.HTTP_404_NOT_FOUND,
    'InvalidTransition': status.HTTP_409_CONFLICT,
    'PreconditionFailed': status.HTTP_400_BAD_REQUEST,
    'Unauthorized': status.HTTP_403_FORBIDDEN,
    'LedgerInconsistent': status.HTTP_409_CONFLICT,
    'StorageConflict': status.HTTP_409_CONFLICT,
}


def rejection_response(rejected: Rejected) -> Response:
    return Response(
        {'ok': False, 'error': {'code': rejected.kind, 'message': rejected.message, 'details': rejected.details}},
        status=REJECTION_STATUS.get(rejected.kind, status.HTTP_400_BAD_REQUEST),
    )


def api_exception_handler(exc, context):
    if isinstance(exc, TransitionError):
        return rejection_response(Rejected.from_error(exc))
    resp = drf_exception_handler(exc, context)
    if resp is None:
        return Response({'ok': False, 'error': {'code': 'server_error', 'message': str(exc)}}, status=500)
    # normalize response
    detail = None
    if isinstance(resp.data, dict):
        detail = resp.data.get('detail') or resp.data
    else:
        detail = str(resp.data)
    return Response({'ok': False, 'error': {'code': 'api_error', 'message': detail}}, status=resp.status_code)
