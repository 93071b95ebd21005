"""FastAPI application entry point for the sandbox gateway.

This module initializes the FastAPI application with all routers and the
lifespan that owns the session manager, the sweep loop and the shared HTTP
client.

Usage:
    uv run uvicorn main:app --reload
"""

import contextlib
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from api.proxy import fallback_router, proxy_router, set_forwarder
from api.routes import router, set_session_manager
from api.websocket import websocket_fallback_router, websocket_router
from config import configure_logging, settings
from metrics import MetricsCollector
from proxy.forwarder import HttpForwarder, build_timeout
from sandbox import DockerProvisioner, PortAllocator
from session_manager import SessionManager

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events.

    Handles creation and cleanup of the provisioner, the session manager and
    the shared HTTP client used by the proxy.

    Args:
        app: The FastAPI application instance.

    Yields:
        None during application runtime.
    """
    # Startup
    logger.info(
        "application_starting",
        server_port=settings.server_port,
        log_level=settings.log_level,
        sandbox_image=settings.sandbox_image,
        session_ttl_seconds=settings.session_ttl_seconds,
        public_url=settings.public_url or None,
    )

    provisioner = DockerProvisioner(
        port_allocator=PortAllocator(
            bind_host=settings.sandbox_bind_host,
            range_start=settings.port_range_start,
            range_end=settings.port_range_end,
        ),
        endpoint_host=settings.sandbox_endpoint_host,
        max_backends=settings.max_concurrent_sessions,
        provision_timeout=settings.provision_timeout_seconds,
        terminate_timeout=settings.terminate_timeout_seconds,
    )
    session_manager = SessionManager(provisioner, metrics_collector=MetricsCollector())
    forwarder = HttpForwarder(
        timeout=build_timeout(
            settings.proxy_connect_timeout_seconds,
            settings.proxy_read_timeout_seconds,
        )
    )

    # Register dependencies with the route modules
    set_session_manager(session_manager)
    set_forwarder(forwarder)

    # Store on app.state for access
    app.state.session_manager = session_manager
    app.state.forwarder = forwarder

    if settings.reap_orphans_on_startup:
        await session_manager.reap_orphans()

    # Start the periodic expiry sweep
    sweep_task = await session_manager.start_sweep_loop(
        interval_seconds=settings.sweep_interval_seconds
    )
    app.state.sweep_task = sweep_task

    logger.info("application_started")

    yield

    # Shutdown
    logger.info("application_shutting_down")

    sweep_task = app.state.sweep_task
    if sweep_task and not sweep_task.done():
        sweep_task.cancel()
        with contextlib.suppress(Exception):
            await sweep_task

    await session_manager.cleanup_all()
    await forwarder.aclose()

    logger.info("application_shutdown_complete")


def create_app() -> FastAPI:
    """Build the FastAPI application with every router attached."""
    application = FastAPI(
        title="Sandbox Gateway",
        description="Per-visitor ephemeral sandbox sessions behind a reverse proxy.",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    application.include_router(router, tags=["sessions"])
    application.include_router(proxy_router, tags=["proxy"])
    application.include_router(websocket_router, tags=["websocket"])

    # Catch-all routes, must stay last
    application.include_router(fallback_router)
    application.include_router(websocket_fallback_router)
    return application


app = create_app()


def run() -> None:
    """Console entry point."""
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.server_host,
        port=settings.server_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
