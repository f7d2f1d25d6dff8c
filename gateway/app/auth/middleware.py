"""
Shared Secret Header Authentication
===================================

ASGI middleware that gates every HTTP request and WebSocket handshake on a
single configured header carrying a shared secret.

Security Model:
---------------
1. The header is looked up case-insensitively; the first value wins
2. The value is compared byte-exact in constant time
3. Matching requests reach the wrapped application unmodified
4. Anything else is answered with 401 and never reaches the origin
"""

import hmac
from typing import Optional

from starlette import status
from starlette.responses import PlainTextResponse
from starlette.types import ASGIApp, Receive, Scope, Send
from starlette.websockets import WebSocket

from ..proxy.websocket import deny_websocket

UNAUTHORIZED_BODY = "unauthorized request"


def first_header_value(scope: Scope, name: bytes) -> Optional[bytes]:
    """
    Return the first raw value of a header in an ASGI scope.

    Args:
        scope: ASGI connection scope
        name: Lower-case header name

    Returns:
        Header value bytes, or None if the header is absent
    """
    for key, value in scope.get("headers", []):
        if key.lower() == name:
            return value
    return None


class HeaderAuthMiddleware:
    """
    Wrap an ASGI application with shared secret header authentication.

    Attributes:
        app: Downstream ASGI application
        header_name: Lower-case name of the credential header
        header_value: Expected credential bytes

    Example:
        >>> app.add_middleware(
        ...     HeaderAuthMiddleware,
        ...     header_name=settings.RP_HEADER_KEY,
        ...     header_value=settings.auth_header_value,
        ... )
    """

    def __init__(self, app: ASGIApp, header_name: str, header_value: bytes) -> None:
        if not header_name or not header_value:
            raise ValueError("header_name and header_value must be non-empty")

        self.app = app
        self.header_name = header_name.lower().encode("latin-1")
        self.header_value = header_value

    def is_authorized(self, scope: Scope) -> bool:
        supplied = first_header_value(scope, self.header_name)
        if not supplied:
            return False
        return hmac.compare_digest(supplied, self.header_value)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] not in ("http", "websocket") or self.is_authorized(scope):
            await self.app(scope, receive, send)
            return

        response = PlainTextResponse(UNAUTHORIZED_BODY, status_code=status.HTTP_401_UNAUTHORIZED)

        if scope["type"] == "websocket":
            await deny_websocket(
                WebSocket(scope, receive, send),
                response,
                status.WS_1008_POLICY_VIOLATION,
            )
            return

        await response(scope, receive, send)
