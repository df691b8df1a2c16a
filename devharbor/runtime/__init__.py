"""Container runtime access"""

from devharbor.runtime.client import (
    RUNTIME_TIMEOUTS,
    ContainerSpec,
    EventStream,
    LayerProgress,
    RuntimeClient,
    SystemStats,
)
from devharbor.runtime.docker_client import DockerRuntimeClient

__all__ = [
    "RUNTIME_TIMEOUTS",
    "ContainerSpec",
    "EventStream",
    "LayerProgress",
    "RuntimeClient",
    "SystemStats",
    "DockerRuntimeClient",
]
