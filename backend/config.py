"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the sandbox
gateway. All settings can be overridden via environment variables or a .env
file.
"""

import json
import logging
from typing import Any, Literal

import structlog
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DNS_SERVERS = ["94.140.14.14", "1.1.1.1"]


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        session_ttl_seconds: Fixed lifetime of a session and its backend.
        sweep_interval_seconds: Interval between expiry sweeps.
        provision_timeout_seconds: Upper bound for creating one backend, also
            used as the wait limit for a session that is still provisioning.
        terminate_timeout_seconds: Upper bound for a single termination call.
        max_concurrent_sessions: Maximum number of live backends.
        reap_orphans_on_startup: Remove labelled containers left behind by a
            previous process when the application starts.
        sandbox_image: Docker image for backend containers.
        sandbox_endpoints: Endpoint name to container port mapping.
        default_endpoint: Endpoint used when a request does not name one.
        sandbox_environment: Environment variables passed to the container.
        sandbox_shm_size: Shared memory size for the container.
        sandbox_mem_limit: Optional memory limit for the container.
        sandbox_dns: DNS resolvers handed to the container.
        sandbox_init_dir: Optional host directory mounted read-only at
            /custom-cont-init.d inside the container.
        sandbox_bind_host: Host interface the published ports bind to.
        sandbox_endpoint_host: Host the proxy uses to reach published ports.
        port_range_start: First port of the allocation range (None = OS picks).
        port_range_end: Last port of the allocation range (inclusive).
        proxy_connect_timeout_seconds: Connect timeout towards backends.
        proxy_read_timeout_seconds: Read timeout towards backends.
        websocket_open_timeout_seconds: Handshake timeout for upstream sockets.
        cookie_fallback_routing: Route unmatched paths by session cookie.
        cookie_name: Name of the session cookie.
        cookie_samesite: SameSite policy of the session cookie.
        cookie_secure: Whether the cookie carries the Secure attribute.
        public_url: Prefix for links generated in the landing page.
        gitpod_workspace_url: Fallback for public_url in Gitpod workspaces.
        status_poll_interval_seconds: Landing page status poll interval.
        debug_endpoint_enabled: Whether GET /debug is served.
        debug_expose_backend_addresses: Include host:port pairs in /debug.
        server_host: Interface uvicorn listens on.
        server_port: Port uvicorn listens on.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # Session Lifecycle
    session_ttl_seconds: int = 3600
    sweep_interval_seconds: float = 60.0
    provision_timeout_seconds: float = 120.0
    terminate_timeout_seconds: float = 30.0
    max_concurrent_sessions: int = 20
    reap_orphans_on_startup: bool = True

    # Sandbox Configuration
    sandbox_image: str = "lscr.io/linuxserver/firefox:latest"
    sandbox_endpoints: dict[str, int] = {"primary": 3000, "secondary": 3001}
    default_endpoint: str = "primary"
    sandbox_environment: dict[str, str] = {
        "PUID": "1000",
        "PGID": "1000",
        "TZ": "Etc/UTC",
    }
    sandbox_shm_size: str = "1g"
    sandbox_mem_limit: str | None = None
    sandbox_dns: str | list[str] = DEFAULT_DNS_SERVERS
    sandbox_init_dir: str | None = None
    sandbox_bind_host: str = "127.0.0.1"
    sandbox_endpoint_host: str = "127.0.0.1"
    port_range_start: int | None = None
    port_range_end: int | None = None

    # Proxy Configuration
    proxy_connect_timeout_seconds: float = 10.0
    proxy_read_timeout_seconds: float = 300.0
    websocket_open_timeout_seconds: float = 10.0
    cookie_fallback_routing: bool = True

    # Session Cookie
    cookie_name: str = "sandbox_session"
    cookie_samesite: Literal["lax", "strict", "none"] = "lax"
    cookie_secure: bool = False

    # Presentation
    public_url: str = ""
    gitpod_workspace_url: str | None = None
    status_poll_interval_seconds: int = 30

    # Server Configuration
    debug_endpoint_enabled: bool = True
    debug_expose_backend_addresses: bool = False
    server_host: str = "0.0.0.0"
    server_port: int = 8000
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("sandbox_dns", mode="before")
    @classmethod
    def parse_sandbox_dns(cls, v: Any) -> list[str]:
        """Parse DNS resolvers from string or list.

        Accepts:
        - JSON array: '["1.1.1.1", "8.8.8.8"]'
        - Comma-separated: '1.1.1.1,8.8.8.8'
        - Empty string: no custom resolvers
        - Already a list: ["1.1.1.1"]
        """
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("["):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    pass
            return [server.strip() for server in v.split(",") if server.strip()]
        return list(DEFAULT_DNS_SERVERS)

    @model_validator(mode="after")
    def check_default_endpoint(self) -> "Settings":
        """Ensure the default endpoint is one of the configured endpoints."""
        if self.default_endpoint not in self.sandbox_endpoints:
            raise ValueError(
                f"default_endpoint '{self.default_endpoint}' is not one of "
                f"{sorted(self.sandbox_endpoints)}"
            )
        return self

    model_config = SettingsConfigDict(
        # Support running `uvicorn` from either the repo root or `backend/`
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    def model_post_init(self, __context: Any) -> None:
        """Derive the public URL from the Gitpod workspace when not set."""
        if not self.public_url and self.gitpod_workspace_url:
            self.public_url = self.gitpod_workspace_url
        self.public_url = self.public_url.rstrip("/")


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the application.

    Sets up structlog with appropriate processors for either JSON or console output.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Global settings instance
settings = Settings()

# Configure logging on module import
configure_logging(settings.log_level, settings.log_format)

# Create a logger for this module
logger = structlog.get_logger(__name__)
