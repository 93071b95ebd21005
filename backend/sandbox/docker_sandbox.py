"""Docker-based provisioner for per-session backends.

This module provides the DockerProvisioner class that starts one container
per session, publishes its named ports on freshly reserved host ports, and
removes the container again when the session ends.
"""

import asyncio

import docker
import structlog
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from errors import ProvisionFailedError
from sandbox.ports import PortAllocator, PortExhaustedError
from sandbox.provisioner import BackendAllocation, BackendSpec, Endpoint

logger = structlog.get_logger()

# Labels attached to every container so leftovers can be found and reaped.
MANAGED_LABEL = "sandbox-gateway.managed"
SESSION_LABEL = "sandbox-gateway.session"

# Mount point for the linuxserver.io custom init hook.
INIT_DIR_MOUNT = "/custom-cont-init.d"

# Container settings shared by every backend
CONTAINER_CONFIG: dict[str, object] = {
    "network_mode": "bridge",
    "detach": True,
    "remove": False,
}


class DockerProvisioner:
    """Creates and destroys backend containers through the Docker Engine API.

    All Docker SDK calls are blocking and run in the default executor so the
    event loop keeps serving other sessions while a container starts.

    Attributes:
        port_allocator: Source of host ports for published container ports.
        endpoint_host: Host the proxy uses to reach published ports.
        max_backends: Maximum number of concurrent backends.
        provision_timeout: Seconds allowed for creating one container.
        terminate_timeout: Seconds allowed for removing one container.
    """

    def __init__(
        self,
        port_allocator: PortAllocator | None = None,
        endpoint_host: str = "127.0.0.1",
        max_backends: int = 20,
        provision_timeout: float = 120.0,
        terminate_timeout: float = 30.0,
    ) -> None:
        """Initialize the DockerProvisioner.

        Args:
            port_allocator: Port allocator (default: OS-assigned ports on
                127.0.0.1).
            endpoint_host: Host used in returned endpoints.
            max_backends: Maximum concurrent backends (default: 20).
            provision_timeout: Container creation timeout in seconds.
            terminate_timeout: Container removal timeout in seconds.
        """
        self.port_allocator = port_allocator or PortAllocator()
        self.endpoint_host = endpoint_host
        self.max_backends = max_backends
        self.provision_timeout = provision_timeout
        self.terminate_timeout = terminate_timeout
        self._client: docker.DockerClient | None = None
        self._backends: dict[str, list[int]] = {}
        self._pending = 0
        self._lock = asyncio.Lock()
        self._cleanup_tasks: set[asyncio.Task[None]] = set()

    @property
    def client(self) -> docker.DockerClient:
        """Lazy initialization of Docker client."""
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    async def allocate(self, spec: BackendSpec) -> BackendAllocation:
        """Create and start a container for ``spec``.

        Args:
            spec: Resource specification for the backend.

        Returns:
            BackendAllocation with the container id and named endpoints.

        Raises:
            ProvisionFailedError: If capacity is exhausted, no ports are free,
                or Docker fails to start the container in time.
        """
        async with self._lock:
            if len(self._backends) + self._pending >= self.max_backends:
                raise ProvisionFailedError(
                    f"Maximum backends ({self.max_backends}) reached"
                )
            try:
                host_ports = self.port_allocator.reserve(len(spec.ports))
            except PortExhaustedError as e:
                raise ProvisionFailedError(str(e)) from e
            self._pending += 1

        port_map = dict(zip(spec.ports.keys(), host_ports, strict=True))
        logger.info(
            "backend_allocating",
            session_id=spec.session_id,
            image=spec.image,
            ports=port_map,
        )

        loop = asyncio.get_running_loop()
        creation = loop.run_in_executor(None, self._create_container, spec, port_map)
        handed_off = False
        try:
            container_id = await asyncio.wait_for(
                asyncio.shield(creation), timeout=self.provision_timeout
            )
        except (TimeoutError, asyncio.CancelledError) as e:
            # The executor thread keeps running; clean up once it returns.
            handed_off = True
            self._discard_when_done(spec.session_id, creation, host_ports)
            if isinstance(e, asyncio.CancelledError):
                raise
            logger.error("backend_allocation_timeout", session_id=spec.session_id)
            raise ProvisionFailedError(
                f"Backend did not start within {self.provision_timeout}s"
            ) from e
        except (APIError, ImageNotFound, DockerException, RuntimeError) as e:
            self.port_allocator.release(host_ports)
            logger.error(
                "backend_allocation_failed",
                session_id=spec.session_id,
                error=str(e),
            )
            raise ProvisionFailedError(f"Failed to create backend: {e}") from e
        finally:
            if not handed_off:
                async with self._lock:
                    self._pending -= 1

        async with self._lock:
            self._backends[container_id] = host_ports

        endpoints = {
            name: Endpoint(host=self.endpoint_host, port=port)
            for name, port in port_map.items()
        }
        logger.info(
            "backend_allocated",
            session_id=spec.session_id,
            container_id=container_id[:12],
        )
        return BackendAllocation(handle=container_id, endpoints=endpoints)

    def _create_container(self, spec: BackendSpec, port_map: dict[str, int]) -> str:
        """Create and start the container (blocking operation).

        Returns:
            The container id.

        Raises:
            RuntimeError: If the container is not running after start.
        """
        kwargs: dict[str, object] = {
            "name": _container_name(spec.session_id),
            "ports": {
                f"{spec.ports[name]}/tcp": (self.port_allocator.bind_host, host_port)
                for name, host_port in port_map.items()
            },
            "environment": spec.environment,
            "labels": {MANAGED_LABEL: "true", SESSION_LABEL: spec.session_id},
            **CONTAINER_CONFIG,
        }
        if spec.shm_size:
            kwargs["shm_size"] = spec.shm_size
        if spec.mem_limit:
            kwargs["mem_limit"] = spec.mem_limit
        if spec.dns:
            kwargs["dns"] = spec.dns
        if spec.init_dir:
            kwargs["volumes"] = {
                spec.init_dir: {"bind": INIT_DIR_MOUNT, "mode": "ro"},
            }

        container = self.client.containers.run(spec.image, **kwargs)
        container.reload()
        if container.status != "running":
            status = container.status
            container.remove(force=True)
            raise RuntimeError(f"Container exited during startup (status={status})")
        return container.id

    async def terminate(self, handle: str) -> None:
        """Stop and remove a backend container.

        The ports are returned to the pool whether or not removal succeeds.

        Args:
            handle: Container id returned by ``allocate``.

        Raises:
            APIError: If Docker refuses to remove the container.
            TimeoutError: If removal takes longer than the terminate timeout.
        """
        async with self._lock:
            host_ports = self._backends.pop(handle, [])

        try:
            await asyncio.wait_for(
                asyncio.get_running_loop().run_in_executor(
                    None,
                    self._destroy_container,
                    handle,
                ),
                timeout=self.terminate_timeout,
            )
            logger.info("backend_terminated", container_id=handle[:12])
        except NotFound:
            logger.warning("backend_already_removed", container_id=handle[:12])
        finally:
            self.port_allocator.release(host_ports)

    def _destroy_container(self, container_id: str) -> None:
        """Remove a container (blocking operation)."""
        try:
            container = self.client.containers.get(container_id)
            container.remove(force=True)
        except NotFound:
            pass  # Already removed

    def _discard_when_done(
        self, session_id: str, creation: asyncio.Future[str], host_ports: list[int]
    ) -> None:
        """Remove the container ``creation`` produces after allocation gave up.

        The host ports and the pending slot stay held until the container is
        gone, so neither is handed to another session while it still runs.
        """
        task = asyncio.create_task(
            self._discard_late_container(session_id, creation, host_ports)
        )
        self._cleanup_tasks.add(task)
        task.add_done_callback(self._cleanup_tasks.discard)

    async def _discard_late_container(
        self, session_id: str, creation: asyncio.Future[str], host_ports: list[int]
    ) -> None:
        try:
            container_id = await creation
            await asyncio.get_running_loop().run_in_executor(
                None, self._destroy_container, container_id
            )
            logger.info(
                "late_backend_removed",
                session_id=session_id,
                container_id=container_id[:12],
            )
        except (APIError, DockerException, RuntimeError) as e:
            # Creation itself failed, or removal did; reaping catches leftovers.
            logger.warning("late_backend_discard_failed", session_id=session_id, error=str(e))
        finally:
            self.port_allocator.release(host_ports)
            async with self._lock:
                self._pending -= 1

    async def reap_orphans(self, live_handles: set[str]) -> int:
        """Remove labelled containers that no live session owns.

        Args:
            live_handles: Container ids that belong to live sessions.

        Returns:
            Number of containers removed.
        """
        return await asyncio.get_running_loop().run_in_executor(
            None,
            self._reap_orphans_blocking,
            set(live_handles),
        )

    def _reap_orphans_blocking(self, live_handles: set[str]) -> int:
        containers = self.client.containers.list(
            all=True, filters={"label": f"{MANAGED_LABEL}=true"}
        )
        removed = 0
        for container in containers:
            if container.id in live_handles:
                continue
            try:
                container.remove(force=True)
                removed += 1
                logger.info(
                    "orphan_backend_removed",
                    container_id=container.id[:12],
                    session_id=container.labels.get(SESSION_LABEL),
                )
            except NotFound:
                pass
            except APIError as e:
                logger.error(
                    "orphan_backend_remove_failed",
                    container_id=container.id[:12],
                    error=str(e),
                )
        return removed

    def is_available(self) -> bool:
        """Check if the Docker daemon is reachable.

        Returns:
            True if the Docker daemon responds to a ping.
        """
        try:
            self.client.ping()
            return True
        except Exception:
            return False

    def get_active_backend_count(self) -> int:
        """Return the number of backends this provisioner is tracking."""
        return len(self._backends)


def _container_name(session_id: str) -> str:
    return f"sandbox-{session_id}"
