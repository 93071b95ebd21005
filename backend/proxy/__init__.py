"""Reverse-proxy routing onto per-session backends.

This module exposes request resolution (session id and endpoint name to
backend address) and the streaming HTTP forwarder.
"""

from proxy.forwarder import HttpForwarder, build_timeout
from proxy.resolver import (
    PROXY_PREFIX,
    ProxyTarget,
    build_forward_headers,
    endpoint_aliases,
    filter_response_headers,
    resolve_target,
)

__all__ = [
    "PROXY_PREFIX",
    "HttpForwarder",
    "ProxyTarget",
    "build_forward_headers",
    "build_timeout",
    "endpoint_aliases",
    "filter_response_headers",
    "resolve_target",
]
