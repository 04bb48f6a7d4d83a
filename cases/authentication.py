"""
Token authentication for the case API.

Kept in its own module so that ``REST_FRAMEWORK`` settings can point at
it without importing any views.
"""
from __future__ import annotations

from rest_framework import authentication


class TokenAuthentication(authentication.TokenAuthentication):
    """Accepts both ``Token <key>`` and ``Bearer <key>`` headers."""

    keyword = 'Token'

    def authenticate(self, request):
        auth = authentication.get_authorization_header(request).split()
        if len(auth) == 2 and auth[0].lower() == b'bearer':
            try:
                key = auth[1].decode()
            except UnicodeError:
                return None
            return self.authenticate_credentials(key)
        return super().authenticate(request)
