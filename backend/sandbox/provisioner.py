"""Provisioner contract shared by the lifecycle manager and its backends.

The lifecycle manager never talks to Docker directly. It hands a
``BackendSpec`` to anything implementing ``Provisioner`` and gets back an
opaque handle plus the named endpoints the new backend listens on.
"""

from dataclasses import dataclass, field
from typing import Protocol

from config import Settings


@dataclass(frozen=True)
class Endpoint:
    """A reachable host:port pair for one named backend port."""

    host: str
    port: int

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def http_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def ws_url(self) -> str:
        return f"ws://{self.host}:{self.port}"


@dataclass(frozen=True)
class BackendSpec:
    """Resource specification for a single backend.

    Attributes:
        session_id: Session the backend is created for (used for naming and
            labelling only).
        image: Container image to run.
        ports: Endpoint name to container port mapping, in display order.
        environment: Environment variables for the backend process.
        dns: DNS resolvers for the backend.
        shm_size: Shared memory size.
        mem_limit: Optional memory limit.
        init_dir: Optional host directory mounted at /custom-cont-init.d.
    """

    session_id: str
    image: str
    ports: dict[str, int]
    environment: dict[str, str] = field(default_factory=dict)
    dns: list[str] = field(default_factory=list)
    shm_size: str | None = None
    mem_limit: str | None = None
    init_dir: str | None = None

    @classmethod
    def from_settings(cls, session_id: str, settings: Settings) -> "BackendSpec":
        """Build the spec for ``session_id`` from application settings."""
        return cls(
            session_id=session_id,
            image=settings.sandbox_image,
            ports=dict(settings.sandbox_endpoints),
            environment=dict(settings.sandbox_environment),
            dns=list(settings.sandbox_dns),
            shm_size=settings.sandbox_shm_size,
            mem_limit=settings.sandbox_mem_limit,
            init_dir=settings.sandbox_init_dir,
        )


@dataclass(frozen=True)
class BackendAllocation:
    """Result of a successful allocation."""

    handle: str
    endpoints: dict[str, Endpoint]


class Provisioner(Protocol):
    """Capability that creates and destroys backends.

    ``allocate`` raises ``ProvisionFailedError`` when no backend could be
    started. ``terminate`` may raise any exception; callers log it and move on.
    """

    async def allocate(self, spec: BackendSpec) -> BackendAllocation: ...

    async def terminate(self, handle: str) -> None: ...

    async def reap_orphans(self, live_handles: set[str]) -> int: ...

    def is_available(self) -> bool: ...
