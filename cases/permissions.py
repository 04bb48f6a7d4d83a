"""
Role based permission classes for the case API.
"""
from rest_framework.permissions import BasePermission

from .models import User

STAFF_ROLES = {User.ROLE_ADMIN, User.ROLE_PT, User.ROLE_CLINIC}


class IsStaffRole(BasePermission):
    """Allow access to users holding one of the clinic staff roles."""
    def has_permission(self, request, view) -> bool:  # type: ignore[override]
        user = getattr(request, "user", None)
        return bool(user and user.is_authenticated and (user.is_superuser or getattr(user, "role", None) in STAFF_ROLES))
