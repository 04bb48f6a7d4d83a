from typing import Optional, Any, Dict
from django.contrib.auth import get_user_model
from cases.models import AuditEvent

User = get_user_model()

def log_action(*, user: Optional[User], action: str, object_type: Optional[str]=None, object_id: Optional[int]=None,
               old: Any=None, new: Any=None, detail: Optional[Dict[str, Any]]=None) -> AuditEvent:
    payload = dict(detail or {})
    if old is not None:
        payload['old'] = old
    if new is not None:
        payload['new'] = new
    return AuditEvent.objects.create(
        user=user if getattr(user, 'pk', None) else None,
        action=action,
        object_type=object_type, object_id=object_id,
        detail=payload,
    )
