"""
Caller identity from JWT access tokens.

Tokens are issued by the identity service and carry ``user_id`` and ``role``
claims. There is no local user table: an authenticated request or socket
carries a ``Caller`` instead of a Django user.
"""

from rest_framework_simplejwt.authentication import JWTAuthentication
from rest_framework_simplejwt.exceptions import InvalidToken
from rest_framework_simplejwt.settings import api_settings
from rest_framework_simplejwt.tokens import AccessToken

from services.order_lifecycle.types import Caller, Role

ALLOWED_ROLES = (Role.PASSENGER, Role.DRIVER)


class CallerUser:
    """Stand-in for ``request.user`` wrapping a Caller."""
    is_authenticated = True
    is_anonymous = False

    def __init__(self, caller: Caller):
        self.caller = caller

    @property
    def id(self):
        return self.caller.user_id

    @property
    def role(self):
        return self.caller.role

    def __str__(self):
        return f"{self.caller.role}:{self.caller.user_id}"


def caller_from_token(token) -> Caller:
    """Build a Caller from validated token claims; raises InvalidToken if they are unusable."""
    user_id = token.get(api_settings.USER_ID_CLAIM)
    role = token.get("role")
    if user_id in (None, "") or role not in ALLOWED_ROLES:
        raise InvalidToken("Token has no usable user_id/role claims")
    return Caller(user_id=str(user_id), role=role)


def caller_from_raw_token(raw_token: str) -> Caller:
    return caller_from_token(AccessToken(raw_token))


class CallerJWTAuthentication(JWTAuthentication):
    """DRF authentication that trusts the token claims instead of loading a user row."""

    def get_user(self, validated_token):
        return CallerUser(caller_from_token(validated_token))
