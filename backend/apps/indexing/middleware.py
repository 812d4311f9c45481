"""
WebSocket JWT authentication middleware for Django Channels.

Browsers cannot set headers on WebSocket upgrades, so the token travels in
the query string as ?token=<jwt>.
"""
import logging
from urllib.parse import parse_qs
from typing import Optional

from channels.db import database_sync_to_async
from channels.middleware import BaseMiddleware
from django.conf import settings

from apps.authn.tokens import validate_token, JWTValidationError

logger = logging.getLogger(__name__)


class JWTAuthMiddleware(BaseMiddleware):
    """
    Sets scope["user"] to {id, username, roles} for admins with a valid
    token, None otherwise. The consumer rejects None.
    """

    async def __call__(self, scope, receive, send):
        if scope["type"] != "websocket":
            return await super().__call__(scope, receive, send)

        query_params = parse_qs(scope.get("query_string", b"").decode())
        token_list = query_params.get("token", [])

        if not token_list:
            logger.warning("WebSocket connection rejected: no token provided")
            scope["user"] = None
            return await super().__call__(scope, receive, send)

        user = await self._validate_token(token_list[0])

        if user:
            logger.info(f"WebSocket authenticated for user {user['id']}")
        else:
            logger.warning("WebSocket connection rejected: invalid token or not an admin")
        scope["user"] = user

        return await super().__call__(scope, receive, send)

    @database_sync_to_async
    def _validate_token(self, token: str) -> Optional[dict]:
        try:
            claims = validate_token(token)
        except JWTValidationError as e:
            logger.warning(f"JWT validation failed: {e}")
            return None

        if settings.ADMIN_ROLE not in claims.roles:
            return None

        return {
            'id': claims.sub,
            'username': claims.preferred_username,
            'roles': claims.roles,
        }
