"""
Global pytest configuration and fixtures for devharbor tests
"""

import asyncio
import itertools
import logging
from typing import Any, Dict, List, Optional, Tuple

import pytest

from devharbor.config import HarborConfig
from devharbor.core.errors import NotFound, RuntimeOperationFailed, RuntimeUnavailable
from devharbor.core.labels import LabelKeys
from devharbor.core.models import HealthStatus, RuntimeState
from devharbor.hooks.registry import HookRegistry
from devharbor.lifecycle.definitions import DefinitionRegistry
from devharbor.lifecycle.engine import LifecycleEngine
from devharbor.runtime.client import (
    ContainerSpec,
    EventStream,
    LayerProgress,
    RuntimeClient,
    SystemStats,
)
from devharbor.storage.records import ProjectStore, ResourceStore

# Configure logging for tests
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)

# Suppress noisy logs during testing
logging.getLogger('docker').setLevel(logging.WARNING)
logging.getLogger('urllib3').setLevel(logging.WARNING)


_END = object()


class FakeEventStream(EventStream):
    """Event stream driven by the test: push events, fail or end it"""

    def __init__(self):
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def push(self, raw: Dict[str, Any]) -> None:
        self.queue.put_nowait(raw)

    def fail(self, message: str = "connection reset by peer") -> None:
        self.queue.put_nowait(RuntimeUnavailable(message))

    def end(self) -> None:
        self.queue.put_nowait(_END)

    async def __anext__(self) -> Dict[str, Any]:
        item = await self.queue.get()
        if item is _END:
            if self.closed:
                raise StopAsyncIteration
            raise RuntimeUnavailable("Runtime stream closed by the daemon")
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.queue.put_nowait(_END)


class FakeRuntimeClient(RuntimeClient):
    """In-memory container runtime"""

    def __init__(self):
        self.available = True
        self.images = set()
        self.pull_layers: List[LayerProgress] = [
            LayerProgress("layer-a", "Downloading", 50, 100),
            LayerProgress("layer-a", "Download complete"),
            LayerProgress("layer-b", "Downloading", 10, 20),
            LayerProgress("layer-b", "Pull complete"),
        ]
        # Set to hold a pull until the test releases it
        self.pull_gate: Optional[asyncio.Event] = None
        self.containers: Dict[str, Dict[str, Any]] = {}
        self.volumes: Dict[str, Dict[str, str]] = {}
        self.networks: Dict[str, Dict[str, str]] = {}
        # Health reported by successive inspects of a running container;
        # the last entry repeats
        self.health_script: List[HealthStatus] = [HealthStatus.HEALTHY]
        self.inspect_delay = 0.0
        # operation name -> exception raised when it is called
        self.failures: Dict[str, Exception] = {}
        self.calls: List[Tuple[str, tuple]] = []
        self.streams: List[FakeEventStream] = []
        # Raw events every new stream starts with
        self.initial_events: List[Dict[str, Any]] = []
        self._ids = itertools.count(1)

    # -- test helpers ---------------------------------------------------------

    def _record(self, name: str, *args) -> None:
        self.calls.append((name, args))
        if not self.available:
            raise RuntimeUnavailable("Docker is not available")
        if name in self.failures:
            raise self.failures[name]

    def called(self, name: str) -> int:
        return sum(1 for call, _ in self.calls if call == name)

    def add_container(
        self,
        labels: Dict[str, str],
        running: bool = False,
        name: Optional[str] = None,
        image: str = "test:latest",
        healthcheck: bool = False,
    ) -> str:
        container_id = f"{next(self._ids):064x}"
        self.containers[container_id] = {
            "id": container_id,
            "name": name or f"container-{container_id[-4:]}",
            "image": image,
            "labels": dict(labels),
            "ports": [],
            "environment": {},
            "volume_bindings": [],
            "network": None,
            "healthcheck": healthcheck,
            "running": running,
            "health": HealthStatus.NONE,
        }
        return container_id

    def container_named(self, name: str) -> Optional[Dict[str, Any]]:
        for container in self.containers.values():
            if container["name"] == name:
                return container
        return None

    @staticmethod
    def _state(container: Dict[str, Any]) -> RuntimeState:
        return RuntimeState(
            exists=True,
            running=container["running"],
            health=container["health"],
            ports=list(container["ports"]),
            container_id=container["id"],
            container_name=container["name"],
            status="running" if container["running"] else "exited",
        )

    def _container(self, container_id: str) -> Dict[str, Any]:
        container = self.containers.get(container_id)
        if container is None:
            raise NotFound(f"No such container: {container_id}")
        return container

    # -- RuntimeClient --------------------------------------------------------

    async def ping(self) -> bool:
        self.calls.append(("ping", ()))
        return self.available

    async def image_exists(self, image: str) -> bool:
        self._record("image_exists", image)
        return image in self.images

    async def pull_image(self, image: str):
        self._record("pull_image", image)
        if self.pull_gate is not None:
            await self.pull_gate.wait()
        for layer in self.pull_layers:
            yield layer
        self.images.add(image)

    async def ensure_network(self, name: str, labels: Dict[str, str]) -> None:
        self._record("ensure_network", name)
        self.networks.setdefault(name, dict(labels))

    async def ensure_volume(self, name: str, labels: Dict[str, str]) -> None:
        self._record("ensure_volume", name)
        self.volumes.setdefault(name, dict(labels))

    async def volume_exists(self, name: str) -> bool:
        self._record("volume_exists", name)
        return name in self.volumes

    async def remove_volume(self, name: str) -> None:
        self._record("remove_volume", name)
        if self.volumes.pop(name, None) is None:
            raise NotFound(f"No such volume: {name}")

    async def create_container(self, spec: ContainerSpec) -> str:
        self._record("create_container", spec.name)
        if self.container_named(spec.name) is not None:
            raise RuntimeOperationFailed(f"Conflict. The container name {spec.name} is already in use")
        container_id = self.add_container(
            spec.labels, name=spec.name, image=spec.image, healthcheck=spec.healthcheck is not None
        )
        container = self.containers[container_id]
        container["ports"] = list(spec.ports)
        container["environment"] = dict(spec.environment)
        container["volume_bindings"] = list(spec.volume_bindings)
        container["network"] = spec.network
        return container_id

    async def start_container(self, container_id: str) -> None:
        self._record("start_container", container_id)
        container = self._container(container_id)
        container["running"] = True
        container["health"] = HealthStatus.STARTING if container["healthcheck"] else HealthStatus.NONE

    async def stop_container(self, container_id: str) -> None:
        self._record("stop_container", container_id)
        container = self._container(container_id)
        container["running"] = False
        container["health"] = HealthStatus.NONE

    async def restart_container(self, container_id: str) -> None:
        self._record("restart_container", container_id)
        self._container(container_id)["running"] = True

    async def remove_container(self, container_id: str, remove_volumes: bool = False) -> None:
        self._record("remove_container", container_id)
        self._container(container_id)
        del self.containers[container_id]

    async def inspect(self, container_id: str) -> RuntimeState:
        self._record("inspect", container_id)
        if self.inspect_delay:
            await asyncio.sleep(self.inspect_delay)
        container = self.containers.get(container_id)
        if container is None:
            return RuntimeState.missing()
        if container["healthcheck"] and container["running"]:
            if len(self.health_script) > 1:
                container["health"] = self.health_script.pop(0)
            else:
                container["health"] = self.health_script[0]
        return self._state(container)

    async def find_by_label(
        self,
        key: str,
        value: str,
        resource_type: Optional[str] = None,
    ) -> Optional[RuntimeState]:
        self._record("find_by_label", key, value)
        for container in self.containers.values():
            labels = container["labels"]
            if labels.get(key) != value:
                continue
            if resource_type and labels.get(LabelKeys.TYPE) != resource_type:
                continue
            return self._state(container)
        return None

    async def container_labels(self, container_id: str) -> Dict[str, str]:
        self._record("container_labels", container_id)
        return dict(self._container(container_id)["labels"])

    async def list_managed(self) -> List[Dict[str, Any]]:
        self._record("list_managed")
        return [
            {
                "Id": container["id"],
                "Name": f"/{container['name']}",
                "Config": {"Labels": dict(container["labels"])},
            }
            for container in self.containers.values()
            if container["labels"].get(LabelKeys.MANAGED) == "true"
        ]

    async def subscribe_events(self, filters: Dict[str, List[str]]) -> EventStream:
        self._record("subscribe_events")
        stream = FakeEventStream()
        for raw in self.initial_events:
            stream.push(raw)
        self.streams.append(stream)
        return stream

    async def system_stats(self) -> SystemStats:
        self._record("system_stats")
        return SystemStats(cpus=4, cpu_percent=12.5, mem_total=8 * 1024 ** 3, mem_used=1024 ** 3)


async def no_sleep(seconds: float) -> None:
    return None


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
    """Poll predicate until it holds or fail the test"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)


@pytest.fixture
def runtime():
    """In-memory runtime client"""
    return FakeRuntimeClient()


@pytest.fixture
def data_dir(tmp_path):
    """Provide a temporary state directory"""
    return tmp_path / "data"


@pytest.fixture
def resource_store(data_dir):
    return ResourceStore(data_dir)


@pytest.fixture
def project_store(data_dir):
    return ProjectStore(data_dir)


@pytest.fixture
def registry(project_store):
    """Bundled service catalogue plus projects from the project store"""
    return DefinitionRegistry.from_yaml(projects=project_store)


@pytest.fixture
def hooks():
    return HookRegistry()


@pytest.fixture
def engine(runtime, registry, resource_store, project_store, hooks):
    """Lifecycle engine over the fake runtime; call initialize() in the test"""
    return LifecycleEngine(
        runtime=runtime,
        definitions=registry,
        resources=resource_store,
        projects=project_store,
        hooks=hooks,
        sleep=no_sleep,
    )


@pytest.fixture
def harbor_config(tmp_path):
    return HarborConfig(
        data_dir=str(tmp_path / "data"),
        reconnect_delay=0.01,
        ping_interval=60.0,
        proxy_sync_delay=0.01,
    )


@pytest.fixture
def until():
    """The wait_until polling helper"""
    return wait_until


# Custom markers for test categorization
def pytest_configure(config):
    """Configure custom pytest markers"""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Tests that take more than 5 seconds")
