"""
Proxy Package
=============

This package forwards authenticated requests to the fixed upstream origin
and relays the responses back to the client.

Main Components:
----------------
- rewrite.py: URL construction and hop-by-hop / X-Forwarded-* header rules
- upstream.py: pooled httpx client and transport error mapping
- routes.py: catch-all HTTP handler with streaming response relay
- websocket.py: bidirectional WebSocket relay for upgraded connections

Usage:
------
    from gateway.app.proxy import ProxyHandler, WebSocketRelay
    app.router.add_route("/{path:path}", ProxyHandler(target, client))
"""

from .routes import ProxyHandler
from .websocket import WebSocketRelay

__all__ = ["ProxyHandler", "WebSocketRelay"]
