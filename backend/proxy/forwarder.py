"""Streaming HTTP forwarding to session backends.

This module provides the HttpForwarder class, a thin wrapper around a shared
``httpx.AsyncClient`` that streams a request to a backend and hands back the
open upstream response so the route can stream the body to the client.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable

import httpx
import structlog

from errors import BackendUnreachableError
from proxy.resolver import ProxyTarget

logger = structlog.get_logger(__name__)


def build_timeout(connect: float, read: float) -> httpx.Timeout:
    """Proxy timeouts, independent of the session TTL."""
    return httpx.Timeout(connect=connect, read=read, write=read, pool=connect)


class HttpForwarder:
    """Forwards proxied HTTP requests to backends over a pooled client.

    Attributes:
        client: The shared httpx client.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        timeout: httpx.Timeout | None = None,
    ) -> None:
        """Initialize the forwarder.

        Args:
            client: Optional preconfigured client (tests pass one built on
                ``httpx.MockTransport``).
            timeout: Timeouts for the default client.
        """
        self.client = client or httpx.AsyncClient(
            timeout=timeout or build_timeout(10.0, 300.0),
            follow_redirects=False,
            trust_env=False,
        )

    async def open(
        self,
        method: str,
        target: ProxyTarget,
        headers: list[tuple[str, str]],
        body: AsyncIterator[bytes] | None,
    ) -> httpx.Response:
        """Send the request and return the upstream response with its body unread.

        The caller owns the response and must close it.

        Raises:
            BackendUnreachableError: If the backend cannot be reached or
                fails before sending response headers.
        """
        request = self.client.build_request(
            method,
            target.http_url,
            headers=headers,
            content=body,
        )
        try:
            response = await self.client.send(request, stream=True)
        except httpx.TransportError as e:
            logger.warning(
                "proxy_backend_unreachable",
                session_id=target.session_id,
                endpoint=target.endpoint_name,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise BackendUnreachableError(
                f"Backend for endpoint '{target.endpoint_name}' is unreachable"
            ) from e

        logger.debug(
            "proxy_response",
            session_id=target.session_id,
            method=method,
            path=target.path,
            status_code=response.status_code,
        )
        return response

    async def stream_body(
        self,
        response: httpx.Response,
        target: ProxyTarget,
        *,
        until: Callable[[], Awaitable[None]] | None = None,
        on_cut: Callable[[], None] | None = None,
    ) -> AsyncIterator[bytes]:
        """Yield the raw upstream body, ending quietly if the backend drops.

        Args:
            response: Upstream response returned by ``open``.
            target: Where the response came from, for logging.
            until: Awaited alongside every read; once it completes the stream
                ends, even if the backend is still sending.
            on_cut: Called when ``until`` ended the stream.
        """
        chunks = response.aiter_raw()
        stop = asyncio.ensure_future(until()) if until is not None else None
        read: asyncio.Future[bytes | None] | None = None
        try:
            while True:
                read = asyncio.ensure_future(_next_chunk(chunks))
                waiting = {read} if stop is None else {read, stop}
                await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
                if stop is not None and stop.done():
                    logger.info(
                        "proxy_stream_cut",
                        session_id=target.session_id,
                        endpoint=target.endpoint_name,
                    )
                    if on_cut is not None:
                        on_cut()
                    return
                chunk = read.result()
                if chunk is None:
                    return
                yield chunk
        except httpx.TransportError as e:
            # Headers are already sent, so the client just sees a truncated body.
            logger.warning(
                "proxy_stream_interrupted",
                session_id=target.session_id,
                endpoint=target.endpoint_name,
                error=str(e),
            )
        finally:
            for pending in (read, stop):
                if pending is not None:
                    pending.cancel()

    async def aclose(self) -> None:
        await self.client.aclose()


async def _next_chunk(chunks: AsyncIterator[bytes]) -> bytes | None:
    return await anext(chunks, None)
