"""
Authenticating Reverse Proxy
============================

Forwards requests carrying a shared secret header to one fixed upstream
origin and relays the origin's responses back.

Packages:
- auth: shared secret header middleware
- proxy: forwarding rules, upstream client, HTTP and WebSocket relays

Modules:
- config: environment-driven settings
- main: application factory and process entry point
"""
