"""
Custom authentication backend for token-based auth.

Kept apart from the views so that Django REST framework can import the
authentication classes listed in settings without pulling in view
modules (and their model imports) during initialisation.
"""
from __future__ import annotations

from rest_framework import authentication


class TokenAuthentication(authentication.TokenAuthentication):
    """Token authentication using the ``Token`` keyword.

    Inactive users are rejected by the base class.  This subclass gives
    the settings a stable import path.
    """

    keyword = 'Token'
