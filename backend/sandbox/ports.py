"""Local TCP port allocation for backend containers.

Ports are reserved in-process under a lock before they are handed to the
provisioner, and each candidate is probed with a bind so a port held by an
unrelated process is skipped. A port stays reserved until ``release`` is
called, which guarantees no two live backends are ever given the same port.
"""

import socket
import threading

import structlog

logger = structlog.get_logger(__name__)

# Attempts to get a fresh port from the OS before giving up.
_MAX_EPHEMERAL_ATTEMPTS = 64


class PortExhaustedError(RuntimeError):
    """Raised when no free port is left in the configured range."""


class PortAllocator:
    """Reserves free local ports, either from a fixed range or from the OS.

    Attributes:
        bind_host: Interface the ports will be published on.
        range_start: First port of the range, or None for OS-assigned ports.
        range_end: Last port of the range (inclusive).
    """

    def __init__(
        self,
        bind_host: str = "127.0.0.1",
        range_start: int | None = None,
        range_end: int | None = None,
    ) -> None:
        if (range_start is None) != (range_end is None):
            raise ValueError("port_range_start and port_range_end must be set together")
        if range_start is not None and range_end is not None and range_end < range_start:
            raise ValueError("port_range_end must not be lower than port_range_start")
        self.bind_host = bind_host
        self.range_start = range_start
        self.range_end = range_end
        self._reserved: set[int] = set()
        self._cursor = 0
        self._lock = threading.Lock()

    def _is_bindable(self, port: int) -> bool:
        """Check whether ``port`` is currently free on ``bind_host``."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind((self.bind_host, port))
            except OSError:
                return False
        return True

    def _ephemeral_port(self) -> int:
        """Ask the OS for a free port."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind((self.bind_host, 0))
            return sock.getsockname()[1]

    def _next_from_range(self) -> int:
        assert self.range_start is not None and self.range_end is not None
        size = self.range_end - self.range_start + 1
        for step in range(size):
            port = self.range_start + (self._cursor + step) % size
            if port in self._reserved:
                continue
            if self._is_bindable(port):
                self._cursor = (self._cursor + step + 1) % size
                return port
        raise PortExhaustedError(
            f"No free port in range {self.range_start}-{self.range_end}"
        )

    def _next_ephemeral(self) -> int:
        for _ in range(_MAX_EPHEMERAL_ATTEMPTS):
            port = self._ephemeral_port()
            if port not in self._reserved:
                return port
        raise PortExhaustedError("Operating system kept returning reserved ports")

    def reserve(self, count: int) -> list[int]:
        """Reserve ``count`` distinct ports atomically.

        Either all ports are reserved or none are.

        Raises:
            PortExhaustedError: If not enough ports are available.
        """
        with self._lock:
            ports: list[int] = []
            try:
                for _ in range(count):
                    if self.range_start is None:
                        port = self._next_ephemeral()
                    else:
                        port = self._next_from_range()
                    self._reserved.add(port)
                    ports.append(port)
            except PortExhaustedError:
                self._reserved.difference_update(ports)
                raise
        logger.debug("ports_reserved", ports=ports)
        return ports

    def release(self, ports: list[int]) -> None:
        """Return previously reserved ports to the pool."""
        with self._lock:
            self._reserved.difference_update(ports)
        logger.debug("ports_released", ports=ports)

    @property
    def reserved_count(self) -> int:
        with self._lock:
            return len(self._reserved)
