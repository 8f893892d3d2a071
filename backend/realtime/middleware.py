"""WebSocket authentication middleware (JWT query string or session cookie)."""

import logging
from urllib.parse import parse_qs

from channels.auth import AuthMiddleware
from channels.db import database_sync_to_async
from channels.sessions import CookieMiddleware, SessionMiddleware
from django.contrib.auth import get_user_model
from django.contrib.auth.models import AnonymousUser
from rest_framework_simplejwt.exceptions import TokenError
from rest_framework_simplejwt.tokens import AccessToken

logger = logging.getLogger(__name__)


@database_sync_to_async
def get_user_for_token(raw_token: str):
    """Resolve an access token to an active user, or AnonymousUser."""
    User = get_user_model()
    try:
        access = AccessToken(raw_token)
        return User.objects.get(id=access["user_id"], is_active=True)
    except (TokenError, KeyError, User.DoesNotExist) as e:
        logger.debug("WebSocket JWT rejected: %s", e)
        return AnonymousUser()


class JWTAuthMiddleware(AuthMiddleware):
    """
    Authenticate WebSocket connections.

    Mobile clients (drivers) pass ``?token=<access>``; browsers (store
    owners) fall back to the Django session populated by the cookie and
    session middlewares wrapped around this one.
    """

    async def resolve_scope(self, scope):
        params = parse_qs(scope.get("query_string", b"").decode())
        token_list = params.get("token")
        if token_list:
            scope["user"]._wrapped = await get_user_for_token(token_list[0])
            return
        await super().resolve_scope(scope)


def JWTOrCookieAuthMiddleware(inner):
    return CookieMiddleware(SessionMiddleware(JWTAuthMiddleware(inner)))
