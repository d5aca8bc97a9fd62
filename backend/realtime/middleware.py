"""WebSocket authentication middleware for JWT access tokens."""

import logging
from urllib.parse import parse_qs

from channels.middleware import BaseMiddleware
from rest_framework_simplejwt.exceptions import InvalidToken, TokenError

from .auth import caller_from_raw_token

logger = logging.getLogger(__name__)


class JWTCallerMiddleware(BaseMiddleware):
    """
    Authenticate WebSocket connections using a JWT:
    1. in the querystring (?token=...) - mobile clients
    2. in an ``Authorization: Bearer ...`` header

    Sets ``scope["caller"]`` to a Caller, or None when the token is missing or invalid.
    """

    async def __call__(self, scope, receive, send):
        scope = dict(scope)
        scope["caller"] = None

        token = self._token_from_scope(scope)
        if token:
            try:
                scope["caller"] = caller_from_raw_token(token)
            except (TokenError, InvalidToken) as e:
                logger.debug("JWT auth failed: %s", e)

        return await super().__call__(scope, receive, send)

    @staticmethod
    def _token_from_scope(scope):
        query_string = scope.get("query_string", b"").decode()
        params = parse_qs(query_string)
        token_list = params.get("token")
        if token_list:
            return token_list[0]

        for name, value in scope.get("headers", []):
            if name == b"authorization":
                parts = value.decode().split()
                if len(parts) == 2 and parts[0].lower() == "bearer":
                    return parts[1]
        return None
