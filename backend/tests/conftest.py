"""Shared test fixtures for backend tests.

Provides a fake provisioner and a session manager wired to it, so tests
never touch real Docker containers or the network.
"""

import asyncio
import sys
from collections.abc import AsyncGenerator, Callable

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from sandbox.provisioner import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from errors import ProvisionFailedError  # noqa: E402
from metrics import MetricsCollector  # noqa: E402
from registry import SessionRecord, SessionRegistry, SessionState  # noqa: E402
from sandbox.provisioner import BackendAllocation, BackendSpec, Endpoint  # noqa: E402
from session_manager import SessionManager  # noqa: E402

# ---------------------------------------------------------------------------
# Fake Provisioner
# ---------------------------------------------------------------------------


class FakeProvisioner:
    """In-memory Provisioner that records every call.

    Each allocation gets a fresh handle and fresh ports starting at 41000.

    Args:
        delay: Seconds ``allocate`` sleeps before returning.
        fail: If set, ``allocate`` raises this exception.
        terminate_error: If set, ``terminate`` raises this exception.
    """

    def __init__(
        self,
        delay: float = 0.0,
        fail: Exception | None = None,
        terminate_error: Exception | None = None,
    ) -> None:
        self.delay = delay
        self.fail = fail
        self.terminate_error = terminate_error
        self.allocated: list[BackendSpec] = []
        self.terminated: list[str] = []
        self.reaped_with: list[set[str]] = []
        self.orphans_removed = 0
        self.available = True
        self._next_port = 41000

    async def allocate(self, spec: BackendSpec) -> BackendAllocation:
        self.allocated.append(spec)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail is not None:
            raise self.fail
        endpoints = {}
        for name in spec.ports:
            endpoints[name] = Endpoint(host="127.0.0.1", port=self._next_port)
            self._next_port += 1
        return BackendAllocation(
            handle=f"container_{len(self.allocated)}", endpoints=endpoints
        )

    async def terminate(self, handle: str) -> None:
        self.terminated.append(handle)
        if self.terminate_error is not None:
            raise self.terminate_error

    async def reap_orphans(self, live_handles: set[str]) -> int:
        self.reaped_with.append(set(live_handles))
        return self.orphans_removed

    def is_available(self) -> bool:
        return self.available


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_spec(session_id: str) -> BackendSpec:
    """BackendSpec with two named ports, independent of settings."""
    return BackendSpec(
        session_id=session_id,
        image="test/image:latest",
        ports={"primary": 3000, "secondary": 3001},
    )


def make_active_record(
    session_id: str = "sess_" + "a" * 32,
    created_at: float = 1_700_000_000.0,
    ttl: float = 3600.0,
    port: int = 41000,
) -> SessionRecord:
    """Build an Active record with primary/secondary endpoints."""
    return SessionRecord(
        session_id=session_id,
        created_at=created_at,
        expires_at=created_at + ttl,
        state=SessionState.ACTIVE,
        backend_handle=f"container_{session_id[-6:]}",
        endpoints={
            "primary": Endpoint("127.0.0.1", port),
            "secondary": Endpoint("127.0.0.1", port + 1),
        },
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def provisioner() -> FakeProvisioner:
    """Provide a fresh FakeProvisioner for each test."""
    return FakeProvisioner()


@pytest.fixture()
def clock() -> FakeClock:
    """Provide a fake clock starting at a fixed timestamp."""
    return FakeClock()


@pytest.fixture()
async def make_manager(
    provisioner: FakeProvisioner, clock: FakeClock
) -> AsyncGenerator[Callable[..., SessionManager], None]:
    """Factory for SessionManagers bound to the fake provisioner and clock.

    Every manager built by the factory is cleaned up after the test.
    """
    managers: list[SessionManager] = []

    def _make(**kwargs: object) -> SessionManager:
        kwargs.setdefault("ttl_seconds", 3600)
        kwargs.setdefault("provision_timeout", 5.0)
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("spec_factory", make_spec)
        kwargs.setdefault("registry", SessionRegistry())
        kwargs.setdefault("metrics_collector", MetricsCollector())
        manager = SessionManager(kwargs.pop("provisioner", provisioner), **kwargs)  # type: ignore[arg-type]
        managers.append(manager)
        return manager

    yield _make

    for manager in managers:
        await manager.cleanup_all()


@pytest.fixture()
def failing_provisioner() -> FakeProvisioner:
    """Provisioner whose allocate always fails."""
    return FakeProvisioner(fail=ProvisionFailedError("no capacity"))
