"""
Upstream Client
===============

Outbound HTTP to the fixed origin. One pooled httpx.AsyncClient is created
per process and shared by every in-flight request; httpx synchronises its
connection pool internally.

Transport failures are translated into the UpstreamError hierarchy so the
proxy handler and the application's exception handlers never need to know
about httpx exception types.
"""

import logging
from http.cookiejar import CookieJar, DefaultCookiePolicy
from typing import AsyncIterator, Optional, Sequence, Tuple

import httpx

from ..config import Settings

logger = logging.getLogger("gateway.proxy.upstream")


# =============================================================================
# Exceptions
# =============================================================================

class UpstreamError(Exception):
    """Base exception for failures before the origin's response headers arrive"""

    status_code = 502
    body = "bad gateway"


class UpstreamUnavailable(UpstreamError):
    """Origin unreachable, DNS failure, TLS failure or reset before headers"""
    pass


class UpstreamTimeout(UpstreamError):
    """Connect, pool or response header timeout"""

    status_code = 504
    body = "gateway timeout"


# =============================================================================
# Client Factory
# =============================================================================

def build_upstream_client(settings: Settings) -> httpx.AsyncClient:
    """
    Create the shared, pooled client for the upstream origin.

    - Redirects are never followed; they are relayed to the caller.
    - The read timeout bounds the wait for response headers and each idle
      gap while streaming the body; there is no total body timeout.
    - Writes are unbounded so slow uploads are not cut off.
    - The cookie jar only blocks storage of origin Set-Cookie headers; requests
      are built without the jar, so client cookies travel as plain headers.

    Args:
        settings: Application settings

    Returns:
        Configured httpx.AsyncClient
    """
    timeout = httpx.Timeout(
        connect=settings.RP_CONNECT_TIMEOUT,
        read=settings.RP_READ_TIMEOUT,
        write=None,
        pool=settings.RP_CONNECT_TIMEOUT,
    )

    limits = httpx.Limits(
        max_connections=None,
        max_keepalive_connections=settings.RP_MAX_IDLE_CONNS,
        keepalive_expiry=settings.RP_IDLE_CONN_TIMEOUT,
    )

    return httpx.AsyncClient(
        timeout=timeout,
        limits=limits,
        verify=settings.RP_TLS_VERIFY,
        follow_redirects=False,
        cookies=CookieJar(policy=DefaultCookiePolicy(allowed_domains=[])),
    )


# =============================================================================
# Request Execution
# =============================================================================

async def send_upstream(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    headers: Sequence[Tuple[str, str]],
    content: Optional[AsyncIterator[bytes]] = None,
) -> httpx.Response:
    """
    Send one request to the origin and return once its headers arrive.

    The request is built directly rather than through client.build_request so
    the client's default headers (User-Agent, Accept, ...) are not mixed into
    the forwarded set. The body, if any, is streamed from ``content``.

    The caller owns the returned response and must ``aclose()`` it.

    Raises:
        UpstreamTimeout: If connecting or waiting for headers timed out
        UpstreamUnavailable: For any other transport failure
    """
    request = httpx.Request(
        method,
        url,
        headers=[(key.encode("latin-1"), value.encode("latin-1")) for key, value in headers],
        content=content,
        extensions={"timeout": client.timeout.as_dict()},
    )

    try:
        return await client.send(request, stream=True)

    except httpx.TimeoutException as e:
        logger.error(
            f"Upstream timeout: {type(e).__name__}",
            extra={"method": method, "url": url},
        )
        raise UpstreamTimeout(str(e)) from e

    except httpx.TransportError as e:
        logger.error(
            f"Upstream unavailable: {type(e).__name__}: {e}",
            extra={"method": method, "url": url},
        )
        raise UpstreamUnavailable(str(e)) from e
