"""
FastAPI Reverse Proxy Application Factory
=========================================

This is the main entry point for the authenticating reverse proxy that sits
between clients holding the shared secret and a single upstream origin.

Architecture:
    Client → HeaderAuthMiddleware → ProxyHandler / WebSocketRelay → Origin

Routes:
    - /{path}  (HTTP, any method) : forwarded to the origin
    - /{path}  (WebSocket)        : relayed to the origin's WebSocket endpoint

Environment Variables Required:
    - RP_TARGET_URL: Upstream origin URL (e.g., "http://origin:9000/base")
    - RP_PORT: Listen address (e.g., ":8080" or "8080")
    - RP_HEADER_KEY: Header carrying the shared secret (e.g., "X-ContentKey")
    - RP_HEADER_KEY_VAL: Expected shared secret value

Running the Service:
    python -m gateway.app.main
    rp-gateway
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError

from .auth.middleware import HeaderAuthMiddleware
from .config import Settings, get_settings, validate_configuration
from .proxy.rewrite import UpstreamTarget
from .proxy.routes import ProxyHandler, upstream_error_handler
from .proxy.upstream import UpstreamError, build_upstream_client
from .proxy.websocket import WebSocketRelay

logger = logging.getLogger("gateway.main")


# Configure structured JSON logging
def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the process.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


def format_validation_error(exc: ValidationError) -> str:
    """Collapse a settings ValidationError into a single diagnostic line."""
    return "; ".join(
        f"{'.'.join(str(part) for part in error['loc']) or 'settings'}: {error['msg']}"
        for error in exc.errors()
    )


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup is announced once by run(). Shutdown runs after the server has
    drained in-flight requests and closes the pooled upstream connections.
    """
    yield

    logger.info("Shutting down reverse proxy")
    await app.state.upstream_client.aclose()
    logger.info("Closed upstream connection pool")


# Create FastAPI application
def create_app(
    settings: Settings,
    upstream_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """
    Application factory function.

    Creates and configures the FastAPI application instance with:
        - Shared secret header authentication around every route
        - Catch-all HTTP forwarding and WebSocket relay
        - Plain-text gateway error handlers

    Args:
        settings: Validated, immutable configuration
        upstream_client: Optional pre-built client (tests inject a mock transport)

    Returns:
        FastAPI: Configured application instance
    """
    # Docs routes would shadow origin paths
    app = FastAPI(
        title="Reverse Proxy",
        description="Authenticating single-origin reverse proxy",
        version="1.0.0",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    target = UpstreamTarget.from_url(settings.RP_TARGET_URL)
    client = upstream_client or build_upstream_client(settings)
    strip_headers = (settings.auth_header_name,) if settings.RP_STRIP_AUTH_HEADER else ()

    app.state.settings = settings
    app.state.upstream_client = client

    # Proxy handler: every method, every path
    app.router.add_route(
        "/{path:path}",
        ProxyHandler(target, client, strip_headers=strip_headers),
        include_in_schema=False,
    )

    # WebSocket relay: upgraded connections on every path
    app.router.add_websocket_route(
        "/{path:path}",
        WebSocketRelay(
            target,
            open_timeout=settings.RP_CONNECT_TIMEOUT,
            verify_tls=settings.RP_TLS_VERIFY,
            strip_headers=strip_headers,
        ),
    )

    app.add_middleware(
        HeaderAuthMiddleware,
        header_name=settings.auth_header_name,
        header_value=settings.auth_header_value,
    )

    app.add_exception_handler(UpstreamError, upstream_error_handler)

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> PlainTextResponse:
        """
        Log unhandled errors and answer with a plain-text 500.

        Only reached while the response has not started; failures after that
        point abort the connection instead.
        """
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__
            },
            exc_info=True
        )
        return PlainTextResponse("internal server error", status_code=500)

    return app


def run() -> None:
    """
    Process entry point.

    Loads configuration, configures logging and serves the application until
    a shutdown signal arrives. Exits with status 1 on configuration errors or
    when the server fails to start (e.g. the port cannot be bound).
    """
    try:
        settings = get_settings()
    except ValidationError as e:
        print(f"ERROR: invalid configuration: {format_validation_error(e)}", file=sys.stderr)
        sys.exit(1)

    setup_logging(settings.RP_LOG_LEVEL)

    for warning in validate_configuration(settings)["warnings"]:
        logger.warning(warning)

    logger.info(f"listening on port: {settings.RP_PORT} and targeting: {settings.RP_TARGET_URL}")

    host, port = settings.listen_address
    config = uvicorn.Config(
        create_app(settings),
        host=host,
        port=port,
        log_config=None,
        log_level=settings.RP_LOG_LEVEL.lower(),
        access_log=False,
        # Client address must be the observed peer for X-Forwarded-For
        proxy_headers=False,
        # Origin supplies its own Date/Server headers
        server_header=False,
        date_header=False,
        timeout_graceful_shutdown=settings.RP_SHUTDOWN_GRACE,
        ssl_certfile=settings.RP_TLS_CERT_FILE,
        ssl_keyfile=settings.RP_TLS_KEY_FILE,
    )
    server = uvicorn.Server(config)
    server.run()

    if not server.started:
        sys.exit(1)


if __name__ == "__main__":
    run()
