"""
WebSocket Relay
===============

Handles upgraded connections. The ASGI server completes the client-side
handshake itself and hands over a ``websocket`` scope, so the relay opens
the matching WebSocket on the origin first and only accepts the client once
the origin has answered 101.

Features:
    - Same URL and X-Forwarded-* rules as plain HTTP (ws/wss scheme)
    - Subprotocol and 101 headers chosen by the origin are passed to the client
    - Origin handshake rejections are relayed as denial responses
    - Messages copied in both directions until either side closes
"""

import asyncio
import logging
import ssl
from typing import List, Optional, Tuple, Union

from starlette import status
from starlette.responses import PlainTextResponse, Response
from starlette.types import Receive, Scope, Send
from starlette.websockets import WebSocket, WebSocketState
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidStatus

from .rewrite import (
    WEBSOCKET_HANDSHAKE_HEADERS,
    UpstreamTarget,
    build_response_headers,
    build_upstream_headers,
    build_upstream_url,
)

logger = logging.getLogger("gateway.proxy.websocket")

# Close codes that are reserved and must not be sent in a close frame
_RESERVED_CLOSE_CODES = {1005, 1006, 1015}


async def deny_websocket(websocket: WebSocket, response: Response, close_code: int) -> None:
    """
    Refuse a WebSocket handshake.

    Sends ``response`` as an HTTP denial when the server supports the
    websocket.http.response extension, otherwise closes the handshake with
    ``close_code`` (servers answer such a close with 403).
    """
    if "websocket.http.response" in websocket.scope.get("extensions", {}):
        await websocket.send_denial_response(response)
    else:
        await websocket.close(code=close_code)


async def _close_client(websocket: WebSocket, code: Optional[int]) -> None:
    """Close the client side unless either end has already closed it."""
    if (
        websocket.application_state != WebSocketState.CONNECTED
        or websocket.client_state != WebSocketState.CONNECTED
    ):
        return
    if code is None or code in _RESERVED_CLOSE_CODES:
        code = status.WS_1000_NORMAL_CLOSURE
    await websocket.close(code=code)


class WebSocketRelay:
    """
    ASGI endpoint relaying a WebSocket session to the origin.

    Args:
        target: Upstream origin
        open_timeout: Seconds allowed for the upstream handshake
        verify_tls: Verify the origin certificate for wss
        strip_headers: Lower-case header names removed before forwarding
    """

    def __init__(
        self,
        target: UpstreamTarget,
        open_timeout: float,
        verify_tls: bool = True,
        strip_headers: Tuple[str, ...] = (),
    ) -> None:
        self.target = target
        self.open_timeout = open_timeout
        self.verify_tls = verify_tls
        self.strip_headers = strip_headers

    def _ssl_context(self) -> Union[ssl.SSLContext, None]:
        if self.target.websocket_scheme != "wss":
            return None

        context = ssl.create_default_context()
        if not self.verify_tls:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    def _upstream_request(self, websocket: WebSocket) -> Tuple[str, list]:
        raw_path = websocket.scope.get("raw_path") or websocket.scope["path"].encode("utf-8")
        url = build_upstream_url(
            self.target,
            raw_path.split(b"?", 1)[0].decode("latin-1"),
            websocket.scope.get("query_string", b"").decode("latin-1"),
            scheme=self.target.websocket_scheme,
        )

        inbound_headers = [
            (key.decode("latin-1"), value.decode("latin-1"))
            for key, value in websocket.headers.raw
        ]
        headers = build_upstream_headers(
            inbound_headers,
            target=self.target,
            client_host=websocket.client.host if websocket.client else None,
            scheme="https" if websocket.url.scheme == "wss" else "http",
            strip=self.strip_headers + tuple(WEBSOCKET_HANDSHAKE_HEADERS),
        )
        # The client library writes its own Host from the URL
        headers = [(key, value) for key, value in headers if key.lower() != "host"]
        return url, headers

    @staticmethod
    def _accept_headers(upstream: ClientConnection) -> List[Tuple[bytes, bytes]]:
        """Origin 101 headers for the client, minus those each hop generates itself."""
        return [
            (key.lower().encode("latin-1"), value.encode("latin-1"))
            for key, value in build_response_headers(list(upstream.response.headers.raw_items()))
            if key.lower() not in WEBSOCKET_HANDSHAKE_HEADERS
        ]

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        websocket = WebSocket(scope, receive, send)
        url, headers = self._upstream_request(websocket)
        subprotocols = websocket.scope.get("subprotocols") or None

        try:
            upstream = await connect(
                url,
                additional_headers=headers,
                subprotocols=subprotocols,
                open_timeout=self.open_timeout,
                ssl=self._ssl_context(),
                user_agent_header=None,
                max_size=None,
            )
        except InvalidStatus as e:
            logger.warning(
                f"Origin rejected WebSocket handshake with {e.response.status_code}",
                extra={"url": url},
            )
            await deny_websocket(
                websocket,
                Response(
                    content=bytes(e.response.body or b""),
                    status_code=e.response.status_code,
                    media_type=e.response.headers.get("Content-Type"),
                ),
                status.WS_1011_INTERNAL_ERROR,
            )
            return
        except (OSError, asyncio.TimeoutError, InvalidHandshake) as e:
            logger.error(
                f"WebSocket upstream unavailable: {type(e).__name__}: {e}",
                extra={"url": url},
            )
            await deny_websocket(
                websocket,
                PlainTextResponse("bad gateway", status_code=502),
                status.WS_1011_INTERNAL_ERROR,
            )
            return

        try:
            await websocket.accept(
                subprotocol=upstream.subprotocol,
                headers=self._accept_headers(upstream),
            )
            logger.info("WebSocket relay opened", extra={"url": url})
            await self._relay(websocket, upstream)
        finally:
            await upstream.close()
            logger.info(
                "WebSocket relay closed",
                extra={"url": url, "close_code": upstream.close_code},
            )

    async def _relay(self, websocket: WebSocket, upstream: ClientConnection) -> None:
        tasks = {
            asyncio.ensure_future(self._client_to_upstream(websocket, upstream)),
            asyncio.ensure_future(self._upstream_to_client(websocket, upstream)),
        }
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        for task in done:
            if not task.cancelled() and task.exception() is not None:
                exc = task.exception()
                logger.error(
                    f"WebSocket relay error: {type(exc).__name__}: {exc}",
                    exc_info=exc,
                )
                await _close_client(websocket, status.WS_1011_INTERNAL_ERROR)

        await _close_client(websocket, upstream.close_code)

    @staticmethod
    async def _client_to_upstream(websocket: WebSocket, upstream: ClientConnection) -> None:
        while True:
            message = await websocket.receive()

            if message["type"] == "websocket.disconnect":
                code = message.get("code") or 1000
                await upstream.close(code=1000 if code in _RESERVED_CLOSE_CODES else code)
                return

            try:
                if message.get("text") is not None:
                    await upstream.send(message["text"])
                elif message.get("bytes") is not None:
                    await upstream.send(message["bytes"])
            except ConnectionClosed:
                # Origin went away; the other direction closes the client
                return

    @staticmethod
    async def _upstream_to_client(websocket: WebSocket, upstream: ClientConnection) -> None:
        try:
            async for data in upstream:
                if isinstance(data, str):
                    await websocket.send_text(data)
                else:
                    await websocket.send_bytes(data)
        except ConnectionClosed:
            pass

        await _close_client(websocket, upstream.close_code)
