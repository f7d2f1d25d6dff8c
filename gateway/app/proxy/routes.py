"""
Proxy Routes - Upstream Request Forwarding
===========================================

This module implements the catch-all handler that forwards authenticated
requests to the fixed upstream origin and streams the response back.

Forwarding Model:
-----------------
1. Target URL = origin scheme/host + joined path + merged raw query
2. Hop-by-hop headers are removed, Host and X-Forwarded-* are rewritten
3. The inbound body is streamed upstream without buffering
4. The origin's status, scrubbed headers and raw body bytes are relayed
5. A client disconnect cancels the relay and releases the upstream connection

The handler is a plain ASGI application so that a single route matches
every HTTP method, including extension methods.
"""

import asyncio
import logging
import time
from typing import AsyncIterator, List, Optional, Tuple
from urllib.parse import quote

import httpx
from starlette.requests import ClientDisconnect, Request
from starlette.responses import PlainTextResponse, Response
from starlette.types import Message, Receive, Scope, Send

from .rewrite import (
    UpstreamTarget,
    build_response_headers,
    build_upstream_headers,
    build_upstream_url,
    get_header,
)
from .upstream import UpstreamError, send_upstream

logger = logging.getLogger("gateway.proxy")


# ============================================================================
# Response Relay
# ============================================================================

class UpstreamResponse(Response):
    """
    ASGI response that relays an open httpx response to the client.

    Body chunks are sent as soon as they are read from the origin. A watcher
    runs next to the relay and cancels it when the client disconnects. The
    upstream response is closed in every outcome.
    """

    def __init__(
        self,
        upstream: httpx.Response,
        raw_headers: List[Tuple[bytes, bytes]],
    ) -> None:
        self.upstream = upstream
        self.status_code = upstream.status_code
        self.raw_headers = raw_headers
        self.background = None
        self.bytes_sent = 0

    async def _relay_body(self, send: Send) -> None:
        await send({
            "type": "http.response.start",
            "status": self.status_code,
            "headers": self.raw_headers,
        })

        try:
            async for chunk in self.upstream.aiter_raw():
                if chunk:
                    self.bytes_sent += len(chunk)
                    await send({"type": "http.response.body", "body": chunk, "more_body": True})
        except httpx.HTTPError as e:
            # Headers are already out; the only option left is to abort.
            logger.error(
                f"Upstream body error mid-stream: {type(e).__name__}: {e}",
                extra={"status_code": self.status_code, "bytes_sent": self.bytes_sent},
            )
            raise

        await send({"type": "http.response.body", "body": b"", "more_body": False})

    @staticmethod
    async def _wait_for_disconnect(receive: Receive) -> None:
        while True:
            message: Message = await receive()
            if message["type"] == "http.disconnect":
                return

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        relay = asyncio.ensure_future(self._relay_body(send))
        watcher = asyncio.ensure_future(self._wait_for_disconnect(receive))

        try:
            await asyncio.wait({relay, watcher}, return_when=asyncio.FIRST_COMPLETED)

            if not relay.done():
                logger.info(
                    "Client disconnected, cancelling upstream relay",
                    extra={"status_code": self.status_code, "bytes_sent": self.bytes_sent},
                )
        finally:
            for task in (relay, watcher):
                if not task.done():
                    task.cancel()
            await asyncio.gather(relay, watcher, return_exceptions=True)
            await self.upstream.aclose()

        # Re-raise a mid-stream failure so the server drops the connection
        if not relay.cancelled() and relay.exception() is not None:
            raise relay.exception()


# ============================================================================
# Proxy Handler
# ============================================================================

class ProxyHandler:
    """
    Forward every request it receives to the upstream origin.

    Args:
        target: Upstream origin
        client: Shared pooled httpx client
        strip_headers: Lower-case header names removed before forwarding
    """

    def __init__(
        self,
        target: UpstreamTarget,
        client: httpx.AsyncClient,
        strip_headers: Tuple[str, ...] = (),
    ) -> None:
        self.target = target
        self.client = client
        self.strip_headers = strip_headers

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        started = time.perf_counter()
        status_code = 500

        try:
            response = await self.forward(request)
            status_code = response.status_code
            await response(scope, receive, send)
        except UpstreamError as e:
            status_code = e.status_code
            raise
        finally:
            logger.info(
                f"{request.method} {request.url.path} {status_code}",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": status_code,
                    "elapsed_ms": round((time.perf_counter() - started) * 1000, 1),
                },
            )

    async def forward(self, request: Request) -> Response:
        """
        Send the request upstream and wrap the origin's reply.

        Returns:
            UpstreamResponse on success, or a plain-text 502 when the client's
            body could not be read.

        Raises:
            UpstreamError: If the origin could not be reached in time
        """
        raw_path = request.scope.get("raw_path") or quote(request.scope["path"]).encode("ascii")
        url = build_upstream_url(
            self.target,
            raw_path.split(b"?", 1)[0].decode("latin-1"),
            request.scope.get("query_string", b"").decode("latin-1"),
        )

        inbound_headers = [
            (key.decode("latin-1"), value.decode("latin-1"))
            for key, value in request.headers.raw
        ]
        headers = build_upstream_headers(
            inbound_headers,
            target=self.target,
            client_host=request.client.host if request.client else None,
            scheme=request.url.scheme,
            strip=self.strip_headers,
        )

        logger.debug(f"Proxying {request.method} {request.url.path} -> {url}")

        try:
            upstream = await send_upstream(
                self.client,
                request.method,
                url,
                headers,
                content=self._request_body(request, inbound_headers),
            )
        except ClientDisconnect:
            logger.warning(
                "Client body read failed before response headers",
                extra={"method": request.method, "path": request.url.path},
            )
            return PlainTextResponse("bad gateway", status_code=502)

        response_headers = [
            (key.encode("latin-1"), value.encode("latin-1"))
            for key, value in build_response_headers([
                (key.decode("latin-1"), value.decode("latin-1"))
                for key, value in upstream.headers.raw
            ])
        ]
        return UpstreamResponse(upstream, response_headers)

    @staticmethod
    def _request_body(
        request: Request,
        headers: List[Tuple[str, str]],
    ) -> Optional[AsyncIterator[bytes]]:
        """Inbound body stream, or None when the request carries no body."""
        content_length = get_header(headers, "content-length")
        transfer_encoding = get_header(headers, "transfer-encoding")

        if transfer_encoding is None and (content_length is None or content_length.strip() == "0"):
            return None
        return request.stream()


async def upstream_error_handler(request: Request, exc: UpstreamError) -> Response:
    """Translate an UpstreamError into the plain-text gateway error response."""
    return PlainTextResponse(exc.body, status_code=exc.status_code)
