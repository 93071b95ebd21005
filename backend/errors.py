"""Error taxonomy for the sandbox gateway.

Every failure the gateway reports to a client maps to one of these
exceptions. Each carries the HTTP status it surfaces as and a stable
machine-readable code, so routes can translate them uniformly and clients
can tell an expired session apart from a crashed backend.
"""


class GatewayError(Exception):
    """Base class for all gateway errors."""

    status_code: int = 500
    code: str = "gateway_error"

    def to_detail(self) -> dict[str, str]:
        """Return the JSON body used in HTTP error responses."""
        return {"error": self.code, "message": str(self)}


class ProvisionFailedError(GatewayError):
    """Raised when a backend could not be created. Not retried."""

    status_code = 500
    code = "provision_failed"


class SessionNotFoundError(GatewayError):
    """Raised when a session id is unknown, expired or not yet active."""

    status_code = 404
    code = "session_not_found"


class EndpointNotFoundError(SessionNotFoundError):
    """Raised when a live session has no endpoint with the requested name."""

    code = "endpoint_not_found"


class BackendUnreachableError(GatewayError):
    """Raised when a live session's backend does not answer.

    The session is left in place; a single failure never tears it down.
    """

    status_code = 502
    code = "backend_unreachable"


class SessionNotReadyError(GatewayError):
    """Raised when a session is still provisioning after the wait limit."""

    status_code = 503
    code = "session_not_ready"


class SessionConflictError(GatewayError):
    """Raised by the registry when an id is already live or was retired."""

    status_code = 500
    code = "session_conflict"
