"""
Configuration module for the authenticating reverse proxy.

This module uses Pydantic Settings to load and validate the environment
variables that describe the upstream origin, the listen address, the shared
secret header and the upstream connection pool.

Environment variables are loaded from .env file or system environment.
The resulting Settings object is frozen: it is built once at startup and
handed to the application factory, never re-read per request.
"""

from functools import lru_cache
from typing import List, Optional, Tuple
from urllib.parse import urlsplit

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# RFC 7230 token characters allowed in a header field name
_TOKEN_CHARS = frozenset(
    "!#$%&'*+-.^_`|~0123456789"
    "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"
)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    The four RP_* variables without a default are required; the process
    refuses to start when any of them is missing or invalid.
    """

    # =========================================================================
    # Upstream Origin
    # =========================================================================

    RP_TARGET_URL: str = Field(
        ...,
        description="Absolute URL of the upstream origin (e.g., http://origin:9000/base)",
        min_length=1,
    )

    # =========================================================================
    # Listener
    # =========================================================================

    RP_PORT: str = Field(
        ...,
        description="Listen address, either ':8080', '8080' or 'host:8080'",
        min_length=1,
    )

    # =========================================================================
    # Shared Secret Header
    # =========================================================================

    RP_HEADER_KEY: str = Field(
        ...,
        description="Name of the request header carrying the shared secret",
        min_length=1,
    )

    RP_HEADER_KEY_VAL: str = Field(
        ...,
        description="Expected value of the shared secret header (compared byte-exact)",
        min_length=1,
    )

    RP_STRIP_AUTH_HEADER: bool = Field(
        default=False,
        description="Remove the shared secret header before forwarding to the origin",
    )

    # =========================================================================
    # Upstream Client
    # =========================================================================

    RP_CONNECT_TIMEOUT: float = Field(
        default=30.0,
        description="Seconds allowed to establish (or acquire) an upstream connection",
        gt=0,
    )

    RP_READ_TIMEOUT: float = Field(
        default=300.0,
        description="Seconds to wait for response headers and between body reads",
        gt=0,
    )

    RP_MAX_IDLE_CONNS: int = Field(
        default=100,
        description="Maximum number of idle keep-alive connections to the origin",
        ge=0,
    )

    RP_IDLE_CONN_TIMEOUT: float = Field(
        default=90.0,
        description="Seconds an idle upstream connection stays in the pool",
        gt=0,
    )

    RP_TLS_VERIFY: bool = Field(
        default=True,
        description="Verify the origin certificate when the target scheme is https",
    )

    # =========================================================================
    # Listener TLS (optional)
    # =========================================================================

    RP_TLS_CERT_FILE: Optional[str] = Field(
        None,
        description="PEM certificate for serving HTTPS on the listener",
    )

    RP_TLS_KEY_FILE: Optional[str] = Field(
        None,
        description="PEM private key matching RP_TLS_CERT_FILE",
    )

    # =========================================================================
    # Process
    # =========================================================================

    RP_SHUTDOWN_GRACE: int = Field(
        default=30,
        description="Seconds in-flight requests may drain after a shutdown signal",
        ge=0,
    )

    RP_LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    # =========================================================================
    # Pydantic Settings Configuration
    # =========================================================================

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",  # Ignore extra env vars not defined here
        frozen=True,
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def listen_address(self) -> Tuple[str, int]:
        """
        Split RP_PORT into a bindable (host, port) pair.

        An empty host (':8080') binds every interface.

        Returns:
            Tuple of host string and integer port.
        """
        host, _, port = self.RP_PORT.rpartition(":")
        host = host.strip("[]") or "0.0.0.0"
        return host, int(port)

    @property
    def auth_header_name(self) -> str:
        """Lower-cased auth header name, as ASGI servers deliver header names."""
        return self.RP_HEADER_KEY.lower()

    @property
    def auth_header_value(self) -> bytes:
        """Expected auth header value as raw bytes."""
        return self.RP_HEADER_KEY_VAL.encode("utf-8")

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("RP_TARGET_URL")
    @classmethod
    def validate_target_url(cls, v: str) -> str:
        """
        Validate that the target is an absolute http(s) URL with a host.

        Raises:
            ValueError: If the URL does not parse or lacks scheme/host
        """
        v = v.strip()
        try:
            parts = urlsplit(v)
            # Accessing .port validates the port component
            parts.port
        except ValueError as e:
            raise ValueError(f"Invalid target URL '{v}': {e}")

        if parts.scheme not in ("http", "https"):
            raise ValueError(
                f"Target URL scheme must be http or https, got: '{parts.scheme}'"
            )

        if not parts.hostname:
            raise ValueError(f"Target URL '{v}' has no host")

        return v

    @field_validator("RP_PORT")
    @classmethod
    def validate_port(cls, v: str) -> str:
        """
        Normalise the listen address so that a bare port becomes ':<port>'.

        Raises:
            ValueError: If the port part is not an integer in 1..65535
        """
        v = v.strip()
        if ":" not in v:
            v = f":{v}"

        port = v.rpartition(":")[2]
        if not port.isdigit() or not 1 <= int(port) <= 65535:
            raise ValueError(
                f"Invalid listen port in '{v}'. Expected format: ':8080' or '8080'"
            )

        return v

    @field_validator("RP_HEADER_KEY")
    @classmethod
    def validate_header_key(cls, v: str) -> str:
        """Validate that the header name is a legal HTTP field name."""
        if not set(v) <= _TOKEN_CHARS:
            raise ValueError(f"Invalid header name: '{v}'")
        return v

    @field_validator("RP_LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

        v = v.upper()
        if v not in allowed_levels:
            raise ValueError(
                f"Log level must be one of {allowed_levels}, got: {v}"
            )

        return v

    @model_validator(mode="after")
    def validate_listener_tls(self) -> "Settings":
        """Certificate and key must be configured together."""
        if bool(self.RP_TLS_CERT_FILE) != bool(self.RP_TLS_KEY_FILE):
            raise ValueError("RP_TLS_CERT_FILE and RP_TLS_KEY_FILE must be set together")
        return self


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    This function is cached so that the settings are loaded only once
    during the process lifecycle.

    Returns:
        Settings instance with all configuration loaded and validated.

    Raises:
        ValidationError: If required environment variables are missing
                        or invalid.
    """
    return Settings()


# =============================================================================
# Configuration Helpers
# =============================================================================

def validate_configuration(settings: Settings) -> dict:
    """
    Inspect a loaded configuration and return non-fatal warnings.

    Fatal problems are rejected by the Settings validators; this report is
    logged at startup so operators notice risky but legal choices.

    Returns:
        Dictionary with the listen address, upstream origin and warnings.
    """
    warnings: List[str] = []
    parts = urlsplit(settings.RP_TARGET_URL)

    if parts.scheme == "https" and not settings.RP_TLS_VERIFY:
        warnings.append("RP_TLS_VERIFY is disabled; origin certificates are not checked")

    if parts.hostname in ("localhost", "127.0.0.1", "::1"):
        warnings.append("Target URL points to localhost (may cause issues in containers)")

    if not settings.RP_STRIP_AUTH_HEADER:
        warnings.append(
            f"{settings.RP_HEADER_KEY} is forwarded to the origin "
            "(set RP_STRIP_AUTH_HEADER=true to remove it)"
        )

    return {
        "listen_address": settings.RP_PORT,
        "target_url": settings.RP_TARGET_URL,
        "warnings": warnings,
    }


if __name__ == "__main__":
    """
    Validate the current environment without starting the server:
        python -m gateway.app.config
    """
    print("=" * 80)
    print("REVERSE PROXY CONFIGURATION")
    print("=" * 80)

    try:
        config = get_settings()
    except Exception as e:
        print(f"\n✗ Configuration error: {e}")
        print("""
Required variables:
  - RP_TARGET_URL
  - RP_PORT
  - RP_HEADER_KEY
  - RP_HEADER_KEY_VAL
        """)
        raise SystemExit(1)

    host, port = config.listen_address
    print(f"\n  Listen:          {host}:{port}")
    print(f"  Target:          {config.RP_TARGET_URL}")
    print(f"  Auth header:     {config.RP_HEADER_KEY} = {'*' * len(config.RP_HEADER_KEY_VAL)}")
    print(f"  Connect timeout: {config.RP_CONNECT_TIMEOUT}s")
    print(f"  Read timeout:    {config.RP_READ_TIMEOUT}s")
    print(f"  TLS verify:      {config.RP_TLS_VERIFY}")

    status = validate_configuration(config)
    if status["warnings"]:
        print("\n⚠ Warnings:")
        for warning in status["warnings"]:
            print(f"  - {warning}")
