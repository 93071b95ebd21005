"""WebSocket reverse proxy.

This module bridges a client WebSocket to the matching WebSocket on the
session backend. Frames are relayed in both directions until either side
closes or the session is torn down.

Close codes sent to the client:
    4404: session or endpoint not found
    4502: backend unreachable
    1001: session torn down while the connection was open
"""

import asyncio
import contextlib

import structlog
import websockets
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState
from websockets.exceptions import ConnectionClosed, InvalidHandshake
from websockets.typing import Subprotocol

from api.routes import get_session_binder, get_session_manager
from config import settings
from errors import SessionNotFoundError
from proxy.resolver import (
    WEBSOCKET_HANDSHAKE_HEADERS,
    build_forward_headers,
    endpoint_aliases,
    resolve_target,
)

logger = structlog.get_logger(__name__)

websocket_router = APIRouter()
websocket_fallback_router = APIRouter()

CLOSE_NOT_FOUND = 4404
CLOSE_BACKEND_UNREACHABLE = 4502
CLOSE_GOING_AWAY = 1001

# Codes that may not appear in a close frame.
_RESERVED_CLOSE_CODES = frozenset({1005, 1006, 1015})


def _relay_close_code(code: int | None) -> int:
    """Close code to pass on to the client when the backend closes."""
    if code is None or code in _RESERVED_CLOSE_CODES or not 1000 <= code < 5000:
        return 1000
    return code


async def _close_client(websocket: WebSocket, code: int) -> None:
    if websocket.client_state == WebSocketState.DISCONNECTED:
        return
    with contextlib.suppress(RuntimeError):
        await websocket.close(code=code)


async def bridge_websocket(
    websocket: WebSocket,
    session_id: str,
    endpoint_name: str | None,
    rest: str,
    *,
    stripped_prefix: str | None = None,
) -> None:
    """Relay ``websocket`` to the session backend.

    Args:
        websocket: The client connection (not yet accepted).
        session_id: Session the connection is routed to.
        endpoint_name: Endpoint segment, None for the default endpoint.
        rest: Path below the routing prefix.
        stripped_prefix: Public prefix removed from the path, when it is
            not the ``/proxy/...`` routing prefix.
    """
    session_manager = get_session_manager()

    try:
        target = resolve_target(
            session_manager,
            session_id,
            endpoint_name,
            rest,
            websocket.url.query,
            default_endpoint=settings.default_endpoint,
            aliases=endpoint_aliases(settings.sandbox_endpoints),
            stripped_prefix=stripped_prefix,
        )
    except SessionNotFoundError as e:
        logger.info("websocket_target_not_found", code=e.code, endpoint=endpoint_name)
        # Accept first so the client sees the close code instead of a 403.
        await websocket.accept()
        await websocket.close(code=CLOSE_NOT_FOUND)
        return

    headers = build_forward_headers(
        websocket.headers.items(),
        target,
        client_host=websocket.client.host if websocket.client else None,
        original_host=websocket.headers.get("host"),
        scheme=websocket.url.scheme,
        exclude=WEBSOCKET_HANDSHAKE_HEADERS,
    )
    subprotocols = [Subprotocol(p) for p in websocket.scope.get("subprotocols", [])]

    try:
        upstream = await websockets.connect(
            target.ws_url,
            additional_headers=headers,
            subprotocols=subprotocols or None,
            open_timeout=settings.websocket_open_timeout_seconds,
            max_size=None,
        )
    except (OSError, TimeoutError, InvalidHandshake) as e:
        session_manager.metrics_collector.record_backend_unreachable()
        logger.warning(
            "websocket_backend_unreachable",
            session_id=session_id,
            endpoint=target.endpoint_name,
            error_type=type(e).__name__,
            error=str(e),
        )
        await websocket.accept()
        await websocket.close(code=CLOSE_BACKEND_UNREACHABLE)
        return

    await websocket.accept(subprotocol=upstream.subprotocol)
    logger.info(
        "websocket_bridged",
        session_id=session_id,
        endpoint=target.endpoint_name,
        path=target.path,
    )

    async def client_to_upstream() -> None:
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    return
                if message.get("text") is not None:
                    await upstream.send(message["text"])
                elif message.get("bytes") is not None:
                    await upstream.send(message["bytes"])
        except (WebSocketDisconnect, ConnectionClosed):
            return

    async def upstream_to_client() -> None:
        try:
            async for message in upstream:
                if isinstance(message, str):
                    await websocket.send_text(message)
                else:
                    await websocket.send_bytes(message)
        except (WebSocketDisconnect, ConnectionClosed):
            return

    client_task = asyncio.create_task(client_to_upstream())
    upstream_task = asyncio.create_task(upstream_to_client())
    closed_task = asyncio.create_task(session_manager.wait_closed(session_id))

    try:
        done, pending = await asyncio.wait(
            [client_task, upstream_task, closed_task],
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        if closed_task in done:
            logger.info("websocket_session_closed", session_id=session_id)
            await _close_client(websocket, CLOSE_GOING_AWAY)
        elif upstream_task in done:
            await _close_client(websocket, _relay_close_code(upstream.close_code))
    except Exception as e:
        logger.error("websocket_bridge_error", session_id=session_id, error=str(e))
        await _close_client(websocket, 1011)
    finally:
        with contextlib.suppress(Exception):
            await upstream.close()
        logger.info("websocket_bridge_closed", session_id=session_id)


@websocket_router.websocket("/proxy/{session_id}")
@websocket_router.websocket("/proxy/{session_id}/")
async def websocket_default_endpoint(websocket: WebSocket, session_id: str) -> None:
    await bridge_websocket(websocket, session_id, None, "")


@websocket_router.websocket("/proxy/{session_id}/{endpoint_name}")
async def websocket_endpoint_root(
    websocket: WebSocket, session_id: str, endpoint_name: str
) -> None:
    await bridge_websocket(websocket, session_id, endpoint_name, "")


@websocket_router.websocket("/proxy/{session_id}/{endpoint_name}/{rest:path}")
async def websocket_endpoint_path(
    websocket: WebSocket, session_id: str, endpoint_name: str, rest: str
) -> None:
    """Bridge a WebSocket to the named endpoint of the session's backend."""
    await bridge_websocket(websocket, session_id, endpoint_name, rest)


@websocket_fallback_router.websocket("/{path:path}")
async def websocket_cookie_fallback(websocket: WebSocket, path: str) -> None:
    """Route an otherwise unmatched WebSocket by the session cookie."""
    session_id = None
    if settings.cookie_fallback_routing:
        session_id = get_session_binder().read(websocket)
    if session_id is None:
        await websocket.accept()
        await websocket.close(code=CLOSE_NOT_FOUND)
        return
    await bridge_websocket(websocket, session_id, None, path, stripped_prefix="")
