"""API module for HTTP routes, the reverse proxy and WebSocket bridging.

This module exposes the FastAPI routers for the sandbox gateway. The two
fallback routers match every path and must be included last.
"""

from api.proxy import fallback_router, proxy_router
from api.routes import router
from api.websocket import websocket_fallback_router, websocket_router

__all__ = [
    "fallback_router",
    "proxy_router",
    "router",
    "websocket_fallback_router",
    "websocket_router",
]
