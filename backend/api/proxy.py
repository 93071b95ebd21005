"""HTTP reverse-proxy routes.

Requests under ``/proxy/{session_id}/{endpoint}/...`` are streamed to the
session's backend. Requests that match no other route are routed by the
session cookie to the default endpoint (registered last, see main.py).
"""

from __future__ import annotations

from functools import partial

import structlog
from fastapi import APIRouter, HTTPException, Request, Response, status
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from api.routes import get_session_binder, get_session_manager, http_error
from config import settings
from errors import BackendUnreachableError, SessionNotFoundError
from proxy.forwarder import HttpForwarder
from proxy.resolver import (
    build_forward_headers,
    endpoint_aliases,
    filter_response_headers,
    resolve_target,
)

logger = structlog.get_logger(__name__)

proxy_router = APIRouter()
fallback_router = APIRouter()

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

_forwarder: HttpForwarder | None = None


def set_forwarder(forwarder: HttpForwarder) -> None:
    """Set the HTTP forwarder used by the proxy routes."""
    global _forwarder
    _forwarder = forwarder
    logger.info("http_forwarder_configured")


def get_forwarder() -> HttpForwarder:
    """Return the configured HTTP forwarder.

    Raises:
        RuntimeError: If the forwarder has not been configured.
    """
    if _forwarder is None:
        raise RuntimeError(
            "HttpForwarder not configured. Call set_forwarder() during startup."
        )
    return _forwarder


def _has_body(request: Request) -> bool:
    return "content-length" in request.headers or "transfer-encoding" in request.headers


async def forward_http(
    request: Request,
    session_id: str,
    endpoint_name: str | None,
    rest: str,
    *,
    stripped_prefix: str | None = None,
) -> Response:
    """Stream ``request`` to the session backend and stream the answer back.

    Args:
        request: The incoming request.
        session_id: Session the request is routed to.
        endpoint_name: Endpoint segment, None for the default endpoint.
        rest: Path below the routing prefix.
        stripped_prefix: Public prefix removed from the path, when it is
            not the ``/proxy/...`` routing prefix.

    Raises:
        HTTPException: 404 for an unknown session or endpoint, 502 when the
            backend cannot be reached.
    """
    session_manager = get_session_manager()
    forwarder = get_forwarder()

    try:
        target = resolve_target(
            session_manager,
            session_id,
            endpoint_name,
            rest,
            request.url.query,
            default_endpoint=settings.default_endpoint,
            aliases=endpoint_aliases(settings.sandbox_endpoints),
            stripped_prefix=stripped_prefix,
        )
    except SessionNotFoundError as e:
        logger.info("proxy_target_not_found", code=e.code, endpoint=endpoint_name)
        raise http_error(e) from e

    headers = build_forward_headers(
        request.headers.items(),
        target,
        client_host=request.client.host if request.client else None,
        original_host=request.headers.get("host"),
        scheme=request.url.scheme,
    )
    body = request.stream() if _has_body(request) else None

    try:
        upstream = await forwarder.open(request.method, target, headers, body)
    except BackendUnreachableError as e:
        session_manager.metrics_collector.record_backend_unreachable()
        raise http_error(e) from e

    response = StreamingResponse(
        forwarder.stream_body(
            upstream,
            target,
            until=partial(session_manager.wait_closed, target.session_id),
            on_cut=session_manager.metrics_collector.record_backend_unreachable,
        ),
        status_code=upstream.status_code,
        background=BackgroundTask(upstream.aclose),
    )
    # Set raw headers directly so repeated ones (Set-Cookie) survive.
    response.raw_headers = [
        (key.lower().encode("latin-1"), value.encode("latin-1"))
        for key, value in filter_response_headers(upstream.headers.multi_items())
    ]
    return response


# -----------------------------------------------------------------------------
# /proxy routes
# -----------------------------------------------------------------------------


@proxy_router.api_route(
    "/proxy/{session_id}", methods=PROXY_METHODS, include_in_schema=False
)
@proxy_router.api_route(
    "/proxy/{session_id}/", methods=PROXY_METHODS, include_in_schema=False
)
async def proxy_default_endpoint(request: Request, session_id: str) -> Response:
    return await forward_http(request, session_id, None, "")


@proxy_router.api_route(
    "/proxy/{session_id}/{endpoint_name}",
    methods=PROXY_METHODS,
    include_in_schema=False,
)
async def proxy_endpoint_root(
    request: Request, session_id: str, endpoint_name: str
) -> Response:
    return await forward_http(request, session_id, endpoint_name, "")


@proxy_router.api_route(
    "/proxy/{session_id}/{endpoint_name}/{rest:path}",
    methods=PROXY_METHODS,
    include_in_schema=False,
)
async def proxy_endpoint_path(
    request: Request, session_id: str, endpoint_name: str, rest: str
) -> Response:
    """Forward ``rest`` to the named endpoint of the session's backend."""
    return await forward_http(request, session_id, endpoint_name, rest)


# -----------------------------------------------------------------------------
# Cookie fallback
# -----------------------------------------------------------------------------


@fallback_router.api_route(
    "/{path:path}", methods=PROXY_METHODS, include_in_schema=False
)
async def cookie_fallback(request: Request, path: str) -> Response:
    """Route an otherwise unmatched request by the session cookie.

    Absolute asset paths requested by a proxied application (``/static/app.js``)
    land here; they go to the default endpoint of the caller's session.
    """
    if not settings.cookie_fallback_routing:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")

    session_id = get_session_binder().read(request)
    if session_id is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")

    return await forward_http(request, session_id, None, path, stripped_prefix="")
