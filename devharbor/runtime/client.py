"""
Runtime client contract

The lifecycle engine and the event monitor only talk to the container
runtime through this interface. DockerRuntimeClient is the production
implementation; tests provide an in-memory one.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

from devharbor.core.models import HealthCheckSpec, PortMapping, RuntimeState

# Seconds. Short bounds keep callers responsive when the daemon is gone;
# a timeout is treated the same as "daemon not running".
RUNTIME_TIMEOUTS = {
    "ping": 3.0,
    "info": 3.0,
    "list": 3.0,
    "inspect": 3.0,
    "stats": 2.0,
    "create": 30.0,
    "lifecycle": 30.0,
    "open_stream": 5.0,
}


@dataclass
class ContainerSpec:
    """Everything needed to create a resource container"""
    name: str
    image: str
    labels: Dict[str, str]
    network: str
    ports: List[PortMapping] = field(default_factory=list)
    environment: Dict[str, str] = field(default_factory=dict)
    volume_bindings: List[str] = field(default_factory=list)
    healthcheck: Optional[HealthCheckSpec] = None
    restart_policy: str = "unless-stopped"


@dataclass
class LayerProgress:
    """One progress report from an image pull"""
    layer_id: str
    status: str
    current: int = 0
    total: int = 0


@dataclass
class SystemStats:
    cpus: int = 0
    cpu_percent: float = 0.0
    mem_total: int = 0
    mem_used: int = 0


class EventStream(ABC):
    """
    Async iterator over raw runtime events.

    Iteration ends when the stream is closed locally and raises
    RuntimeUnavailable when the runtime drops the connection.
    """

    def __aiter__(self) -> "EventStream":
        return self

    @abstractmethod
    async def __anext__(self) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


class RuntimeClient(ABC):
    """Capability surface over the container runtime"""

    @abstractmethod
    async def ping(self) -> bool:
        """True when the runtime answers within the ping timeout"""
        pass

    @abstractmethod
    async def image_exists(self, image: str) -> bool:
        pass

    @abstractmethod
    def pull_image(self, image: str) -> AsyncIterator[LayerProgress]:
        """Pull an image, yielding per-layer progress"""
        pass

    @abstractmethod
    async def ensure_network(self, name: str, labels: Dict[str, str]) -> None:
        pass

    @abstractmethod
    async def ensure_volume(self, name: str, labels: Dict[str, str]) -> None:
        pass

    @abstractmethod
    async def volume_exists(self, name: str) -> bool:
        pass

    @abstractmethod
    async def remove_volume(self, name: str) -> None:
        pass

    @abstractmethod
    async def create_container(self, spec: ContainerSpec) -> str:
        """Create a container and return its id"""
        pass

    @abstractmethod
    async def start_container(self, container_id: str) -> None:
        pass

    @abstractmethod
    async def stop_container(self, container_id: str) -> None:
        pass

    @abstractmethod
    async def restart_container(self, container_id: str) -> None:
        pass

    @abstractmethod
    async def remove_container(self, container_id: str, remove_volumes: bool = False) -> None:
        pass

    @abstractmethod
    async def inspect(self, container_id: str) -> RuntimeState:
        """Current state of a container; a missing container is exists=False"""
        pass

    @abstractmethod
    async def find_by_label(
        self,
        key: str,
        value: str,
        resource_type: Optional[str] = None,
    ) -> Optional[RuntimeState]:
        pass

    @abstractmethod
    async def container_labels(self, container_id: str) -> Dict[str, str]:
        pass

    @abstractmethod
    async def list_managed(self) -> List[Dict[str, Any]]:
        """Raw summaries of every labelled container"""
        pass

    @abstractmethod
    async def subscribe_events(self, filters: Dict[str, List[str]]) -> EventStream:
        pass

    async def system_stats(self) -> SystemStats:
        return SystemStats()

    async def close(self) -> None:
        pass
