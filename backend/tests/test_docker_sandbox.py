"""Tests for sandbox/docker_sandbox.py -- the Docker provisioner.

The Docker client is replaced by a MagicMock, so no daemon is needed.
"""

import asyncio
import time
from unittest.mock import MagicMock

import pytest
from docker.errors import APIError, ImageNotFound, NotFound

from conftest import make_spec
from errors import ProvisionFailedError
from sandbox.docker_sandbox import (
    INIT_DIR_MOUNT,
    MANAGED_LABEL,
    SESSION_LABEL,
    DockerProvisioner,
)
from sandbox.ports import PortAllocator
from sandbox.provisioner import BackendSpec

SID = "sess_" + "b" * 32


class StubPortAllocator(PortAllocator):
    """Hands out sequential ports without probing the host."""

    def __init__(self, first_port: int = 41000) -> None:
        super().__init__()
        self._next = first_port

    def _next_ephemeral(self) -> int:
        port = self._next
        self._next += 1
        return port


def _running_container(container_id: str = "c0ffee1234567890") -> MagicMock:
    container = MagicMock()
    container.id = container_id
    container.status = "running"
    return container


@pytest.fixture()
def docker_client() -> MagicMock:
    client = MagicMock()
    client.containers.run.return_value = _running_container()
    return client


@pytest.fixture()
def docker_provisioner(docker_client: MagicMock) -> DockerProvisioner:
    provisioner = DockerProvisioner(
        port_allocator=StubPortAllocator(),
        endpoint_host="127.0.0.1",
        max_backends=2,
        provision_timeout=5.0,
        terminate_timeout=5.0,
    )
    provisioner._client = docker_client
    return provisioner


# =========================================================================
# Allocation
# =========================================================================


class TestAllocate:
    async def test_publishes_each_named_port(
        self, docker_provisioner: DockerProvisioner, docker_client: MagicMock
    ) -> None:
        allocation = await docker_provisioner.allocate(make_spec(SID))

        assert allocation.handle == "c0ffee1234567890"
        assert allocation.endpoints["primary"].address == "127.0.0.1:41000"
        assert allocation.endpoints["secondary"].address == "127.0.0.1:41001"

        image = docker_client.containers.run.call_args.args[0]
        kwargs = docker_client.containers.run.call_args.kwargs
        assert image == "test/image:latest"
        assert kwargs["name"] == f"sandbox-{SID}"
        assert kwargs["ports"] == {
            "3000/tcp": ("127.0.0.1", 41000),
            "3001/tcp": ("127.0.0.1", 41001),
        }
        assert kwargs["labels"] == {MANAGED_LABEL: "true", SESSION_LABEL: SID}
        assert kwargs["detach"] is True
        assert docker_provisioner.get_active_backend_count() == 1

    async def test_optional_container_settings(
        self, docker_provisioner: DockerProvisioner, docker_client: MagicMock
    ) -> None:
        spec = BackendSpec(
            session_id=SID,
            image="lscr.io/linuxserver/firefox:latest",
            ports={"primary": 3000},
            environment={"TZ": "Etc/UTC"},
            dns=["1.1.1.1"],
            shm_size="1g",
            mem_limit="2g",
            init_dir="/srv/init",
        )

        await docker_provisioner.allocate(spec)

        kwargs = docker_client.containers.run.call_args.kwargs
        assert kwargs["environment"] == {"TZ": "Etc/UTC"}
        assert kwargs["dns"] == ["1.1.1.1"]
        assert kwargs["shm_size"] == "1g"
        assert kwargs["mem_limit"] == "2g"
        assert kwargs["volumes"] == {"/srv/init": {"bind": INIT_DIR_MOUNT, "mode": "ro"}}

    async def test_capacity_limit(
        self, docker_provisioner: DockerProvisioner, docker_client: MagicMock
    ) -> None:
        docker_client.containers.run.side_effect = [
            _running_container("c0ffee000001"),
            _running_container("c0ffee000002"),
        ]

        await docker_provisioner.allocate(make_spec("sess_" + "1" * 32))
        await docker_provisioner.allocate(make_spec("sess_" + "2" * 32))

        with pytest.raises(ProvisionFailedError, match="Maximum backends"):
            await docker_provisioner.allocate(make_spec("sess_" + "3" * 32))

    async def test_missing_image_releases_ports(
        self, docker_provisioner: DockerProvisioner, docker_client: MagicMock
    ) -> None:
        docker_client.containers.run.side_effect = ImageNotFound("no such image")

        with pytest.raises(ProvisionFailedError):
            await docker_provisioner.allocate(make_spec(SID))

        assert docker_provisioner.port_allocator.reserved_count == 0
        assert docker_provisioner.get_active_backend_count() == 0

    async def test_container_exiting_at_startup_fails(
        self, docker_provisioner: DockerProvisioner, docker_client: MagicMock
    ) -> None:
        container = _running_container()
        container.status = "exited"
        docker_client.containers.run.return_value = container

        with pytest.raises(ProvisionFailedError, match="exited"):
            await docker_provisioner.allocate(make_spec(SID))

        container.remove.assert_called_once_with(force=True)
        assert docker_provisioner.port_allocator.reserved_count == 0

    async def test_slow_start_is_removed_after_timeout(
        self, docker_provisioner: DockerProvisioner, docker_client: MagicMock
    ) -> None:
        late = _running_container("1a7e000000000000")

        def slow_run(*args, **kwargs) -> MagicMock:
            time.sleep(0.3)
            return late

        docker_client.containers.run.side_effect = slow_run
        docker_provisioner.provision_timeout = 0.05

        with pytest.raises(ProvisionFailedError, match="did not start"):
            await docker_provisioner.allocate(make_spec(SID))

        # Ports stay reserved while the container may still come up.
        assert docker_provisioner.port_allocator.reserved_count == 2
        assert docker_client.containers.get.call_count == 0

        await asyncio.wait_for(
            asyncio.gather(*docker_provisioner._cleanup_tasks), timeout=5.0
        )

        docker_client.containers.get.assert_called_once_with("1a7e000000000000")
        docker_client.containers.get.return_value.remove.assert_called_once_with(force=True)
        assert docker_provisioner.port_allocator.reserved_count == 0
        assert docker_provisioner._pending == 0
        assert docker_provisioner.get_active_backend_count() == 0


# =========================================================================
# Termination and reaping
# =========================================================================


class TestTerminate:
    async def test_removes_container_and_releases_ports(
        self, docker_provisioner: DockerProvisioner, docker_client: MagicMock
    ) -> None:
        allocation = await docker_provisioner.allocate(make_spec(SID))
        container = MagicMock()
        docker_client.containers.get.return_value = container

        await docker_provisioner.terminate(allocation.handle)

        docker_client.containers.get.assert_called_once_with(allocation.handle)
        container.remove.assert_called_once_with(force=True)
        assert docker_provisioner.port_allocator.reserved_count == 0
        assert docker_provisioner.get_active_backend_count() == 0

    async def test_already_removed_container_is_ok(
        self, docker_provisioner: DockerProvisioner, docker_client: MagicMock
    ) -> None:
        docker_client.containers.get.side_effect = NotFound("gone")

        await docker_provisioner.terminate("deadbeef")

    async def test_docker_error_propagates_but_releases_ports(
        self, docker_provisioner: DockerProvisioner, docker_client: MagicMock
    ) -> None:
        allocation = await docker_provisioner.allocate(make_spec(SID))
        docker_client.containers.get.return_value.remove.side_effect = APIError("busy")

        with pytest.raises(APIError):
            await docker_provisioner.terminate(allocation.handle)

        assert docker_provisioner.port_allocator.reserved_count == 0


class TestReapOrphans:
    async def test_removes_only_unowned_containers(
        self, docker_provisioner: DockerProvisioner, docker_client: MagicMock
    ) -> None:
        owned = _running_container("owned")
        orphan = _running_container("orphan")
        orphan.labels = {SESSION_LABEL: "sess_old"}
        docker_client.containers.list.return_value = [owned, orphan]

        removed = await docker_provisioner.reap_orphans({"owned"})

        assert removed == 1
        orphan.remove.assert_called_once_with(force=True)
        owned.remove.assert_not_called()
        docker_client.containers.list.assert_called_once_with(
            all=True, filters={"label": f"{MANAGED_LABEL}=true"}
        )


class TestAvailability:
    def test_ping_success(self, docker_provisioner: DockerProvisioner) -> None:
        assert docker_provisioner.is_available() is True

    def test_ping_failure(
        self, docker_provisioner: DockerProvisioner, docker_client: MagicMock
    ) -> None:
        docker_client.ping.side_effect = Exception("connection refused")
        assert docker_provisioner.is_available() is False
