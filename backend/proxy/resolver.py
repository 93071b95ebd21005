"""Request resolution for the reverse proxy.

Maps ``/proxy/{session_id}/{endpoint}/{rest}`` onto a backend URL and
rewrites headers for the forwarded request. Nothing here performs I/O, so
the routing rules can be tested without a running backend.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING

from errors import EndpointNotFoundError, SessionNotFoundError

if TYPE_CHECKING:
    from registry import SessionRecord
    from sandbox.provisioner import Endpoint
    from session_manager import SessionManager

PROXY_PREFIX = "/proxy"

# Headers that describe a single transport hop and must not be forwarded.
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "proxy-connection",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)

# Headers the WebSocket client library generates itself.
WEBSOCKET_HANDSHAKE_HEADERS = frozenset(
    {
        "host",
        "sec-websocket-key",
        "sec-websocket-version",
        "sec-websocket-extensions",
        "sec-websocket-protocol",
        "sec-websocket-accept",
        "content-length",
    }
)


@dataclass(frozen=True)
class ProxyTarget:
    """Where a proxied request goes.

    Attributes:
        session_id: The session that owns the backend.
        endpoint_name: The resolved endpoint name.
        endpoint: The backend address.
        path: Forwarded path, always starting with "/".
        query: Raw query string without the leading "?".
        prefix: The public path prefix that was stripped.
    """

    session_id: str
    endpoint_name: str
    endpoint: Endpoint
    path: str
    query: str
    prefix: str

    @property
    def path_with_query(self) -> str:
        return f"{self.path}?{self.query}" if self.query else self.path

    @property
    def http_url(self) -> str:
        return f"{self.endpoint.http_url}{self.path_with_query}"

    @property
    def ws_url(self) -> str:
        return f"{self.endpoint.ws_url}{self.path_with_query}"


def endpoint_aliases(ports: Mapping[str, int]) -> dict[str, str]:
    """Map container port numbers to endpoint names ("3000" -> "primary")."""
    return {str(port): name for name, port in ports.items()}


def select_endpoint(
    record: SessionRecord,
    endpoint_name: str | None,
    default_endpoint: str,
    aliases: Mapping[str, str] | None = None,
) -> tuple[str, Endpoint]:
    """Pick the endpoint a request addresses.

    Raises:
        EndpointNotFoundError: If the name matches no endpoint or alias.
    """
    name = endpoint_name or default_endpoint
    if name not in record.endpoints and aliases is not None:
        name = aliases.get(name, name)
    endpoint = record.endpoints.get(name)
    if endpoint is None:
        raise EndpointNotFoundError(
            f"Session has no endpoint '{endpoint_name}'"
        )
    return name, endpoint


def resolve_target(
    session_manager: SessionManager,
    session_id: str,
    endpoint_name: str | None,
    rest: str,
    query: str = "",
    *,
    default_endpoint: str,
    aliases: Mapping[str, str] | None = None,
    stripped_prefix: str | None = None,
) -> ProxyTarget:
    """Resolve a routed request to its backend.

    Args:
        session_manager: Read-only session lookup.
        session_id: Session id from the path or cookie.
        endpoint_name: Endpoint segment, None when omitted.
        rest: Remaining path after the endpoint segment.
        query: Raw query string.
        default_endpoint: Endpoint used when none is named.
        aliases: Container port number to endpoint name mapping.
        stripped_prefix: Public prefix removed from the path, when it differs
            from the routing prefix (cookie-routed requests strip nothing).

    Raises:
        SessionNotFoundError: If the session is unknown, expired or not Active.
        EndpointNotFoundError: If the session has no such endpoint.
    """
    record = session_manager.lookup(session_id)
    if record is None:
        raise SessionNotFoundError(f"Session '{session_id}' not found")

    name, endpoint = select_endpoint(record, endpoint_name, default_endpoint, aliases)
    if stripped_prefix is not None:
        prefix = stripped_prefix
    else:
        prefix = f"{PROXY_PREFIX}/{session_id}"
        if endpoint_name:
            prefix = f"{prefix}/{endpoint_name}"

    return ProxyTarget(
        session_id=session_id,
        endpoint_name=name,
        endpoint=endpoint,
        path="/" + rest.lstrip("/"),
        query=query,
        prefix=prefix,
    )


def _connection_tokens(headers: Iterable[tuple[str, str]]) -> set[str]:
    tokens: set[str] = set()
    for key, value in headers:
        if key.lower() == "connection":
            tokens.update(t.strip().lower() for t in value.split(",") if t.strip())
    return tokens


def filter_response_headers(headers: Iterable[tuple[str, str]]) -> list[tuple[str, str]]:
    """Drop hop-by-hop headers from a backend response."""
    items = list(headers)
    dropped = HOP_BY_HOP_HEADERS | _connection_tokens(items)
    return [(k, v) for k, v in items if k.lower() not in dropped]


def build_forward_headers(
    headers: Iterable[tuple[str, str]],
    target: ProxyTarget,
    *,
    client_host: str | None,
    original_host: str | None,
    scheme: str,
    exclude: frozenset[str] = frozenset(),
) -> list[tuple[str, str]]:
    """Rewrite client headers for the backend.

    Hop-by-hop headers are dropped, ``Host`` points at the backend and the
    ``X-Forwarded-*`` family describes the original request.

    Args:
        headers: Incoming request headers.
        target: The resolved target.
        client_host: Address of the connecting client.
        original_host: Host header the client sent.
        scheme: "http"/"https" (or "ws"/"wss") of the incoming request.
        exclude: Extra lowercase header names to drop.
    """
    items = list(headers)
    dropped = (
        HOP_BY_HOP_HEADERS
        | _connection_tokens(items)
        | exclude
        | {"host", "x-forwarded-host", "x-forwarded-proto", "x-forwarded-prefix"}
    )

    forwarded_for: str | None = None
    result: list[tuple[str, str]] = []
    for key, value in items:
        lower = key.lower()
        if lower == "x-forwarded-for":
            forwarded_for = value
            continue
        if lower in dropped:
            continue
        result.append((key, value))

    if "host" not in exclude:
        result.append(("host", target.endpoint.address))
    if client_host:
        forwarded_for = f"{forwarded_for}, {client_host}" if forwarded_for else client_host
    if forwarded_for:
        result.append(("x-forwarded-for", forwarded_for))
    if original_host:
        result.append(("x-forwarded-host", original_host))
    result.append(("x-forwarded-proto", {"ws": "http", "wss": "https"}.get(scheme, scheme)))
    if target.prefix:
        result.append(("x-forwarded-prefix", target.prefix))
    return result
