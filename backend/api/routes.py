"""HTTP API routes for the sandbox gateway.

This module defines the landing, force-new, status, debug and health
endpoints. Proxied traffic is handled in proxy.py (HTTP) and websocket.py
(WebSocket upgrades).
"""

from __future__ import annotations

import time
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Annotated

import structlog
from fastapi import APIRouter, HTTPException, Path, Request, status
from fastapi.responses import HTMLResponse, JSONResponse

from api.binder import SessionBinder
from api.shell import render_shell
from config import settings
from errors import GatewayError
from models.schemas import (
    DebugResponse,
    DebugSession,
    ErrorDetail,
    HealthResponse,
    SessionStatus,
    StatusResponse,
)

if TYPE_CHECKING:
    from registry import SessionRecord
    from session_manager import SessionManager

logger = structlog.get_logger(__name__)

router = APIRouter()

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def http_error(error: GatewayError) -> HTTPException:
    """Translate a gateway error into an HTTPException with a JSON detail."""
    return HTTPException(status_code=error.status_code, detail=error.to_detail())


def get_session_binder() -> SessionBinder:
    """Build the cookie binder from current settings."""
    return SessionBinder(
        cookie_name=settings.cookie_name,
        samesite=settings.cookie_samesite,
        secure=settings.cookie_secure,
    )


def _proxy_paths(record: SessionRecord) -> dict[str, str]:
    """Public proxy path for each endpoint of ``record``."""
    return {
        name: f"{settings.public_url}/proxy/{record.session_id}/{name}/"
        for name in record.endpoints
    }


def _redact(session_id: str) -> str:
    """First 8 characters of the random part of a session id."""
    return session_id.removeprefix("sess_")[:8]


# Session manager dependency (set during application startup)
_session_manager: SessionManager | None = None


def set_session_manager(manager: SessionManager) -> None:
    """Set the session manager instance for the routes.

    This should be called during application startup to inject the session
    manager dependency.

    Args:
        manager: The SessionManager instance to use for all routes.
    """
    global _session_manager
    _session_manager = manager
    logger.info("session_manager_configured")


def get_session_manager() -> SessionManager:
    """Get the session manager instance.

    Returns:
        The configured SessionManager instance.

    Raises:
        RuntimeError: If the session manager has not been configured.
    """
    if _session_manager is None:
        logger.error("session_manager_not_configured")
        raise RuntimeError(
            "SessionManager not configured. Call set_session_manager() during startup."
        )
    return _session_manager


def _session_page(
    record: SessionRecord,
    session_manager: SessionManager,
    binder: SessionBinder,
) -> HTMLResponse:
    """Render the shell for ``record`` and bind the client to it."""
    remaining = session_manager.remaining_seconds(record)
    page = render_shell(
        record.session_id,
        public_url=settings.public_url,
        default_endpoint=settings.default_endpoint,
        remaining_seconds=remaining,
        poll_interval_seconds=settings.status_poll_interval_seconds,
    )
    response = HTMLResponse(page, headers={"Cache-Control": "no-store"})
    binder.attach(response, record.session_id, max_age=remaining)
    return response


# -----------------------------------------------------------------------------
# Landing
# -----------------------------------------------------------------------------


@router.get(
    "/",
    response_class=HTMLResponse,
    summary="Landing page",
    description="Serve the sandbox shell, reusing the session from the cookie when it is live.",
    responses={500: {"model": ErrorDetail}, 503: {"model": ErrorDetail}},
)
async def landing(request: Request) -> HTMLResponse:
    """Serve the shell for the caller's session, creating one if needed.

    Returns:
        HTML shell with the session cookie set.

    Raises:
        HTTPException: If a new backend could not be provisioned.
    """
    session_manager = get_session_manager()
    binder = get_session_binder()
    existing_id = binder.read(request)

    try:
        record = await session_manager.ensure_session(existing_id)
    except GatewayError as e:
        logger.error("landing_session_failed", error=str(e), code=e.code)
        raise http_error(e) from e

    logger.info(
        "landing_served",
        session_id=record.session_id,
        new_session=record.session_id != existing_id,
    )
    return _session_page(record, session_manager, binder)


@router.get(
    "/new",
    response_class=HTMLResponse,
    summary="Force a new session",
    description="Always provision a new backend. The previous session expires on its own.",
    responses={500: {"model": ErrorDetail}},
)
async def new_session(request: Request) -> HTMLResponse:
    """Provision a new session regardless of the cookie.

    Returns:
        HTML shell with the new session cookie set.

    Raises:
        HTTPException: If a new backend could not be provisioned.
    """
    session_manager = get_session_manager()
    binder = get_session_binder()
    previous_id = binder.read(request)

    try:
        record = await session_manager.ensure_session(None)
    except GatewayError as e:
        logger.error("new_session_failed", error=str(e), code=e.code)
        raise http_error(e) from e

    logger.info(
        "new_session_served",
        session_id=record.session_id,
        superseded=previous_id is not None,
    )
    return _session_page(record, session_manager, binder)


# -----------------------------------------------------------------------------
# Status
# -----------------------------------------------------------------------------


@router.get(
    "/status/{session_id}",
    response_model=StatusResponse,
    summary="Session status",
    description="Report whether a session is running and how long it has left.",
    responses={404: {"model": StatusResponse}},
)
async def session_status(
    session_id: Annotated[str, Path(description="The session ID")],
) -> StatusResponse | JSONResponse:
    """Get the status of a session.

    Returns:
        StatusResponse for a running session, or a 404 with status
        ``not_found`` for an unknown or expired one.
    """
    session_manager = get_session_manager()
    record = session_manager.lookup(session_id)

    if record is None:
        body = StatusResponse(status=SessionStatus.NOT_FOUND)
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content=body.model_dump(mode="json", by_alias=True),
        )

    return StatusResponse(
        status=SessionStatus.RUNNING,
        remaining_time_seconds=session_manager.remaining_seconds(record),
        endpoints=_proxy_paths(record),
    )


# -----------------------------------------------------------------------------
# Debug / Health
# -----------------------------------------------------------------------------


@router.get(
    "/debug",
    response_model=DebugResponse,
    summary="Debug information",
    description="Ops-only view of live sessions with redacted identifiers.",
)
async def debug_info() -> DebugResponse:
    """List live sessions, counters and deployment facts.

    Raises:
        HTTPException: 404 when the debug route is disabled.
    """
    if not settings.debug_endpoint_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")

    session_manager = get_session_manager()
    records = session_manager.get_all_sessions()

    sessions: list[DebugSession] = []
    for record in records:
        endpoints: list[str] | dict[str, str]
        if settings.debug_expose_backend_addresses:
            endpoints = {name: ep.address for name, ep in record.endpoints.items()}
        else:
            endpoints = list(record.endpoints)
        sessions.append(
            DebugSession(
                id=_redact(record.session_id),
                state=record.state.value,
                created_at=datetime.fromtimestamp(record.created_at, tz=UTC).isoformat(),
                remaining_time_seconds=session_manager.remaining_seconds(record),
                endpoints=endpoints,
            )
        )

    return DebugResponse(
        environment={
            "gitpod": bool(settings.gitpod_workspace_url),
            "public_url": settings.public_url or None,
            "sandbox_image": settings.sandbox_image,
            "session_ttl_seconds": settings.session_ttl_seconds,
            "sweep_interval_seconds": settings.sweep_interval_seconds,
        },
        active_sessions=len(records),
        sessions=sessions,
        metrics=session_manager.metrics_collector.snapshot(),
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Health check endpoint with Docker and session status.",
)
async def health_check() -> HealthResponse:
    """Health check endpoint with infrastructure status.

    Returns Docker daemon connectivity and the live session count in addition
    to the basic health status and timestamp.

    Returns:
        HealthResponse with status, Docker availability, and session count.
    """
    docker_available = False
    active_sessions = 0

    try:
        session_manager = get_session_manager()
        docker_available = session_manager.provisioner.is_available()
        active_sessions = len(session_manager.get_all_sessions())
    except RuntimeError:
        # SessionManager not configured yet (e.g., during startup)
        pass
    except Exception as e:
        logger.warning("health_check_partial_failure", error=str(e))

    overall_status: str = "healthy" if docker_available else "unhealthy"

    return HealthResponse(
        status=overall_status,
        timestamp=time.time(),
        docker_available=docker_available,
        active_sessions=active_sessions,
    )
