"""
Forwarding Rules - URL and Header Rewriting
============================================

Pure functions that turn an inbound request into the URL and header list
sent to the upstream origin, and scrub the origin's response headers on the
way back.

Headers are handled as ordered lists of (name, value) tuples so repeated
fields (Set-Cookie, X-Forwarded-For lines, ...) keep their multiplicity.
Names are compared case-insensitively; values are latin-1 strings, which is
how ASGI servers and httpx both round-trip raw header bytes.

RFC 7230 §6.1 - hop-by-hop headers MUST NOT be forwarded by intermediaries.
"""

import posixpath
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urlsplit

Headers = List[Tuple[str, str]]

# Hop-by-hop headers removed in both directions
HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "proxy-connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
})

# Owned by each WebSocket hop; the client library generates its own
WEBSOCKET_HANDSHAKE_HEADERS = frozenset({
    "sec-websocket-key",
    "sec-websocket-version",
    "sec-websocket-extensions",
    "sec-websocket-accept",
    "sec-websocket-protocol",
})


@dataclass(frozen=True)
class UpstreamTarget:
    """
    The fixed upstream origin, split into the parts the rewrite rules need.

    Attributes:
        scheme: "http" or "https"
        netloc: host[:port] exactly as configured (used for Host)
        path: base path, possibly empty
        query: base raw query, possibly empty
    """

    scheme: str
    netloc: str
    path: str
    query: str

    @classmethod
    def from_url(cls, url: str) -> "UpstreamTarget":
        parts = urlsplit(url)
        # Credentials are never part of the Host header
        netloc = parts.netloc.rpartition("@")[2]
        return cls(
            scheme=parts.scheme,
            netloc=netloc,
            path=parts.path,
            query=parts.query,
        )

    @property
    def websocket_scheme(self) -> str:
        return "wss" if self.scheme == "https" else "ws"


# ============================================================================
# URL Construction
# ============================================================================

def join_path(base: str, suffix: str) -> str:
    """
    Concatenate two URL paths with exactly one slash at the join.

    Only the boundary is touched; slashes inside either part are preserved.

    Example:
        >>> join_path("/base/", "/api/v1")
        '/base/api/v1'
        >>> join_path("", "")
        '/'
    """
    base_slash = base.endswith("/")
    suffix_slash = suffix.startswith("/")

    if base_slash and suffix_slash:
        return base + suffix[1:]
    if not base_slash and not suffix_slash:
        return base + "/" + suffix
    return base + suffix


def clean_path(path: str) -> str:
    """
    Resolve '.' and '..' segments so the path cannot climb above '/'.

    Paths without dot segments are returned unchanged. Otherwise the path is
    cleaned the way an HTTP mux cleans it: duplicate slashes collapse, the
    result is rooted, and a trailing slash survives.

    Example:
        >>> clean_path("/a/../b")
        '/b'
        >>> clean_path("/../secret/")
        '/secret/'
    """
    if not any(segment in (".", "..") for segment in path.split("/")):
        return path

    cleaned = posixpath.normpath("/" + path.lstrip("/"))
    # normpath keeps a leading '//' (POSIX rule)
    cleaned = "/" + cleaned.lstrip("/")
    if path.endswith("/") and cleaned != "/":
        cleaned += "/"
    return cleaned


def merge_query(base: str, query: str) -> str:
    """Join two raw query strings with '&', verbatim, when both are present."""
    if base and query:
        return f"{base}&{query}"
    return base or query


def build_upstream_url(
    target: UpstreamTarget,
    raw_path: str,
    raw_query: str,
    scheme: Optional[str] = None,
) -> str:
    """
    Build the absolute URL of the outbound request.

    Args:
        target: Upstream origin
        raw_path: Inbound path, still percent-encoded
        raw_query: Inbound query string without the leading '?'
        scheme: Override for the URL scheme (ws/wss for WebSocket relays)

    Returns:
        URL string; the fragment is never included. Dot segments in
        ``raw_path`` are resolved first so the result stays under the base path.
    """
    path = join_path(target.path, clean_path(raw_path))
    url = f"{scheme or target.scheme}://{target.netloc}{path}"
    query = merge_query(target.query, raw_query)
    if query:
        url = f"{url}?{query}"
    return url


# ============================================================================
# Header Rewriting
# ============================================================================

def get_header(headers: Iterable[Tuple[str, str]], name: str) -> Optional[str]:
    """Return the first value of a header (case-insensitive), or None."""
    name = name.lower()
    for key, value in headers:
        if key.lower() == name:
            return value
    return None


def get_header_values(headers: Iterable[Tuple[str, str]], name: str) -> List[str]:
    name = name.lower()
    return [value for key, value in headers if key.lower() == name]


def connection_tokens(headers: Iterable[Tuple[str, str]]) -> frozenset:
    """Header names listed in any Connection header, lower-cased."""
    tokens = set()
    for value in get_header_values(headers, "connection"):
        for token in value.split(","):
            token = token.strip().lower()
            if token:
                tokens.add(token)
    return frozenset(tokens)


def scrub_hop_by_hop(
    headers: Sequence[Tuple[str, str]],
    keep: Iterable[str] = (),
) -> Headers:
    """
    Remove hop-by-hop headers, including those named by Connection.

    Applying this twice yields the same list as applying it once: the first
    pass drops every Connection header, so the second pass only sees names
    that survived the first.

    Args:
        headers: Header list to filter
        keep: Lower-case names that must survive even if hop-by-hop

    Returns:
        A new header list in the original order.
    """
    drop = (HOP_BY_HOP_HEADERS | connection_tokens(headers)) - frozenset(keep)
    return [(key, value) for key, value in headers if key.lower() not in drop]


def build_upstream_headers(
    headers: Sequence[Tuple[str, str]],
    *,
    target: UpstreamTarget,
    client_host: Optional[str],
    scheme: str,
    strip: Iterable[str] = (),
) -> Headers:
    """
    Build the header list for the outbound request.

    Rules applied (in order):
      1. Strip hop-by-hop headers and any header named in Connection.
      2. Replace Host with the upstream host[:port].
      3. Append the peer address to X-Forwarded-For.
      4. Set X-Forwarded-Proto to the inbound scheme if unset.
      5. Set X-Forwarded-Host to the inbound Host if unset.
      6. Drop any extra names in ``strip`` (e.g. the shared secret header).

    Args:
        headers: Inbound header list
        target: Upstream origin
        client_host: Address of the connected peer, if known
        scheme: Inbound scheme ("http" or "https")
        strip: Additional lower-case header names to remove

    Returns:
        Outbound header list.
    """
    inbound_host = get_header(headers, "host")
    forwarded_for = get_header_values(headers, "x-forwarded-for")

    drop = {"host", "x-forwarded-for"} | {name.lower() for name in strip}
    result = [
        (key, value)
        for key, value in scrub_hop_by_hop(headers)
        if key.lower() not in drop
    ]

    result.insert(0, ("host", target.netloc))

    if client_host:
        forwarded_for.append(client_host)
    if forwarded_for:
        result.append(("x-forwarded-for", ", ".join(forwarded_for)))

    if get_header(result, "x-forwarded-proto") is None:
        result.append(("x-forwarded-proto", scheme))

    if get_header(result, "x-forwarded-host") is None and inbound_host:
        result.append(("x-forwarded-host", inbound_host))

    return result


def build_response_headers(headers: Sequence[Tuple[str, str]]) -> Headers:
    """Scrub the origin's response headers before relaying them."""
    return scrub_hop_by_hop(headers)
