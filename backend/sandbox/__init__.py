"""Backend provisioning for per-session sandboxes.

This module exposes the provisioner contract and its Docker implementation,
which starts one isolated container per session on freshly reserved ports.
"""

from sandbox.docker_sandbox import DockerProvisioner
from sandbox.ports import PortAllocator, PortExhaustedError
from sandbox.provisioner import BackendAllocation, BackendSpec, Endpoint, Provisioner

__all__ = [
    "BackendAllocation",
    "BackendSpec",
    "DockerProvisioner",
    "Endpoint",
    "PortAllocator",
    "PortExhaustedError",
    "Provisioner",
]
