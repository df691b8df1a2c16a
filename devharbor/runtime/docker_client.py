"""
Docker implementation of the runtime client

The docker SDK is blocking. Every call runs in a worker thread and is bounded
by asyncio.wait_for, so an unreachable daemon surfaces as RuntimeUnavailable
within a few seconds instead of hanging the caller.
"""

import asyncio
import inspect
import logging
import threading
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional

import docker
from docker.errors import APIError, DockerException
from docker.errors import NotFound as DockerNotFound

from devharbor.core.errors import NotFound, RuntimeOperationFailed, RuntimeUnavailable
from devharbor.core.labels import LabelKeys
from devharbor.core.models import HealthStatus, PortMapping, RuntimeState
from devharbor.runtime.client import (
    RUNTIME_TIMEOUTS,
    ContainerSpec,
    EventStream,
    LayerProgress,
    RuntimeClient,
    SystemStats,
)
from devharbor.runtime.ports import resolve_port_mappings

logger = logging.getLogger(__name__)

STOP_GRACE_PERIOD = 10


def parse_port_bindings(port_settings: Optional[Dict[str, Any]]) -> List[PortMapping]:
    """Convert NetworkSettings.Ports into port mappings"""
    mappings: List[PortMapping] = []
    seen = set()
    for container_port, bindings in (port_settings or {}).items():
        if not bindings:
            continue
        port, _, protocol = container_port.partition("/")
        for binding in bindings:
            host_port = binding.get("HostPort")
            if not host_port:
                continue
            key = (int(host_port), int(port), protocol or "tcp")
            if key in seen:
                continue
            seen.add(key)
            mappings.append(PortMapping(host=key[0], container=key[1], protocol=key[2]))
    return mappings


def state_from_attrs(attrs: Dict[str, Any]) -> RuntimeState:
    """Build a RuntimeState from a container's inspect document"""
    state = attrs.get("State") or {}
    health = (state.get("Health") or {}).get("Status")
    name = (attrs.get("Name") or "").lstrip("/") or None
    return RuntimeState(
        exists=True,
        running=bool(state.get("Running")),
        health=HealthStatus.parse(health),
        ports=parse_port_bindings((attrs.get("NetworkSettings") or {}).get("Ports")),
        container_id=attrs.get("Id"),
        container_name=name,
        status=state.get("Status"),
    )


class _StreamClosed:
    def __init__(self, error: Optional[BaseException] = None):
        self.error = error


class ThreadedStream(EventStream):
    """
    Bridges a blocking docker generator into an async iterator.

    A daemon thread drains the generator and hands items to the event loop
    with call_soon_threadsafe.
    """

    def __init__(
        self,
        source: Iterable[Any],
        loop: asyncio.AbstractEventLoop,
        name: str = "stream",
        end_is_error: bool = True,
    ):
        self._source = source
        self._end_is_error = end_is_error
        self._loop = loop
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._thread = threading.Thread(target=self._pump, name=f"devharbor-{name}", daemon=True)

    def start(self) -> "ThreadedStream":
        self._thread.start()
        return self

    def _deliver(self, item: Any) -> None:
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, item)
        except RuntimeError:
            # Event loop already closed; nobody is listening anymore
            logger.debug("Dropping stream item after event loop shutdown")

    def _pump(self) -> None:
        error = None
        try:
            for item in self._source:
                if self._closed:
                    break
                self._deliver(item)
        except Exception as e:
            error = e
        self._deliver(_StreamClosed(error))

    async def __anext__(self) -> Any:
        item = await self._queue.get()
        if isinstance(item, _StreamClosed):
            if self._closed:
                raise StopAsyncIteration
            if item.error is not None:
                raise RuntimeUnavailable(f"Runtime stream failed: {item.error}", cause=item.error)
            if not self._end_is_error:
                raise StopAsyncIteration
            raise RuntimeUnavailable("Runtime stream closed by the daemon")
        return item

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # A generator still running in the pump thread cannot be closed from
        # here; the pump stops at its next item instead
        close = None if inspect.isgenerator(self._source) else getattr(self._source, "close", None)
        if close is not None:
            try:
                await asyncio.wait_for(asyncio.to_thread(close), RUNTIME_TIMEOUTS["ping"])
            except (asyncio.TimeoutError, DockerException, OSError) as e:
                logger.debug(f"Error closing runtime stream: {e}")
        self._queue.put_nowait(_StreamClosed())


class DockerRuntimeClient(RuntimeClient):
    """RuntimeClient backed by the local Docker daemon"""

    def __init__(
        self,
        client: Optional[docker.DockerClient] = None,
        base_url: Optional[str] = None,
        timeouts: Optional[Dict[str, float]] = None,
    ):
        self._client = client
        self.base_url = base_url
        self.timeouts = {**RUNTIME_TIMEOUTS, **(timeouts or {})}

    def _connect(self) -> docker.DockerClient:
        if self._client is None:
            if self.base_url:
                self._client = docker.DockerClient(base_url=self.base_url)
            else:
                self._client = docker.from_env()
            logger.info("Docker client initialized successfully")
        return self._client

    async def _call(self, func: Callable[..., Any], *args, bound: str = "list", **kwargs) -> Any:
        """Run a blocking SDK call in a thread, mapping failures to harbor errors"""
        seconds = self.timeouts[bound]
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), seconds)
        except asyncio.TimeoutError as e:
            raise RuntimeUnavailable(
                f"Docker did not respond within {seconds}s",
                data={"operation": bound},
                cause=e,
            )
        except DockerNotFound as e:
            raise NotFound(str(e.explanation or e), cause=e)
        except APIError as e:
            raise RuntimeOperationFailed(
                str(e.explanation or e),
                data={"status_code": e.status_code},
                cause=e,
            )
        except (DockerException, OSError) as e:
            raise RuntimeUnavailable(f"Docker is not available: {e}", cause=e)

    async def _docker(self) -> docker.DockerClient:
        return await self._call(self._connect, bound="ping")

    async def ping(self) -> bool:
        try:
            client = await self._docker()
            return bool(await self._call(client.ping, bound="ping"))
        except RuntimeUnavailable as e:
            logger.debug(f"Docker ping failed: {e}")
            return False
        except RuntimeOperationFailed as e:
            logger.debug(f"Docker ping rejected: {e}")
            return False

    async def image_exists(self, image: str) -> bool:
        client = await self._docker()
        try:
            await self._call(client.images.get, image, bound="inspect")
        except NotFound:
            return False
        return True

    async def pull_image(self, image: str) -> AsyncIterator[LayerProgress]:
        client = await self._docker()
        repository, tag = _split_image(image)
        source = await self._call(
            client.api.pull, repository, tag=tag, stream=True, decode=True, bound="open_stream"
        )
        stream = ThreadedStream(
            source, asyncio.get_running_loop(), name="pull", end_is_error=False
        ).start()
        try:
            async for message in stream:
                if message.get("error"):
                    raise RuntimeOperationFailed(
                        f"Failed to pull {image}: {message['error']}", data={"image": image}
                    )
                detail = message.get("progressDetail") or {}
                yield LayerProgress(
                    layer_id=message.get("id", ""),
                    status=message.get("status", ""),
                    current=int(detail.get("current") or 0),
                    total=int(detail.get("total") or 0),
                )
        finally:
            await stream.close()

    async def ensure_network(self, name: str, labels: Dict[str, str]) -> None:
        client = await self._docker()
        networks = await self._call(client.networks.list, names=[name])
        if any(network.name == name for network in networks):
            logger.debug(f"Network {name} already exists")
            return
        await self._call(
            client.networks.create, name, driver="bridge", labels=labels, bound="create"
        )
        logger.info(f"Created network {name}")

    async def volume_exists(self, name: str) -> bool:
        client = await self._docker()
        try:
            await self._call(client.volumes.get, name, bound="inspect")
        except NotFound:
            return False
        return True

    async def ensure_volume(self, name: str, labels: Dict[str, str]) -> None:
        if await self.volume_exists(name):
            logger.debug(f"Volume {name} already exists")
            return
        client = await self._docker()
        await self._call(client.volumes.create, name=name, labels=labels, bound="create")
        logger.info(f"Created volume {name}")

    async def remove_volume(self, name: str) -> None:
        client = await self._docker()
        volume = await self._call(client.volumes.get, name, bound="inspect")
        await self._call(volume.remove, bound="lifecycle")
        logger.info(f"Removed volume {name}")

    async def create_container(self, spec: ContainerSpec) -> str:
        client = await self._docker()
        ports = await asyncio.to_thread(resolve_port_mappings, spec.ports)
        container = await self._call(
            client.containers.create,
            image=spec.image,
            name=spec.name,
            environment=spec.environment,
            labels=spec.labels,
            ports={f"{p.container}/{p.protocol}": p.host for p in ports},
            volumes=list(spec.volume_bindings),
            healthcheck=spec.healthcheck.to_runtime() if spec.healthcheck else None,
            restart_policy={"Name": spec.restart_policy},
            network=spec.network,
            detach=True,
            bound="create",
        )
        logger.info(f"Created container {spec.name} ({container.id[:12]})")
        return container.id

    async def _get_container(self, container_id: str):
        client = await self._docker()
        return await self._call(client.containers.get, container_id, bound="inspect")

    async def start_container(self, container_id: str) -> None:
        container = await self._get_container(container_id)
        await self._call(container.start, bound="lifecycle")

    async def stop_container(self, container_id: str) -> None:
        container = await self._get_container(container_id)
        await self._call(container.stop, timeout=STOP_GRACE_PERIOD, bound="lifecycle")

    async def restart_container(self, container_id: str) -> None:
        container = await self._get_container(container_id)
        await self._call(container.restart, timeout=STOP_GRACE_PERIOD, bound="lifecycle")

    async def remove_container(self, container_id: str, remove_volumes: bool = False) -> None:
        container = await self._get_container(container_id)
        await self._call(container.remove, v=remove_volumes, force=True, bound="lifecycle")

    async def inspect(self, container_id: str) -> RuntimeState:
        try:
            container = await self._get_container(container_id)
        except NotFound:
            return RuntimeState.missing()
        return state_from_attrs(container.attrs)

    async def find_by_label(
        self,
        key: str,
        value: str,
        resource_type: Optional[str] = None,
    ) -> Optional[RuntimeState]:
        label_filters = [f"{key}={value}"]
        if resource_type:
            label_filters.append(f"{LabelKeys.TYPE}={resource_type}")
        client = await self._docker()
        containers = await self._call(
            client.containers.list, all=True, filters={"label": label_filters}
        )
        if not containers:
            return None
        return state_from_attrs(containers[0].attrs)

    async def container_labels(self, container_id: str) -> Dict[str, str]:
        container = await self._get_container(container_id)
        return dict((container.attrs.get("Config") or {}).get("Labels") or {})

    async def list_managed(self) -> List[Dict[str, Any]]:
        client = await self._docker()
        containers = await self._call(
            client.containers.list,
            all=True,
            filters={"label": [f"{LabelKeys.MANAGED}=true"]},
        )
        return [container.attrs for container in containers]

    async def subscribe_events(self, filters: Dict[str, List[str]]) -> EventStream:
        client = await self._docker()
        source = await self._call(
            client.events, decode=True, filters=filters, bound="open_stream"
        )
        return ThreadedStream(source, asyncio.get_running_loop(), name="events").start()

    async def system_stats(self) -> SystemStats:
        """Aggregate CPU and memory usage of running managed containers"""
        client = await self._docker()
        info = await self._call(client.info, bound="info")
        stats = SystemStats(cpus=int(info.get("NCPU") or 0), mem_total=int(info.get("MemTotal") or 0))
        containers = await self._call(
            client.containers.list, filters={"label": [f"{LabelKeys.MANAGED}=true"]}
        )
        for container in containers:
            try:
                sample = await self._call(container.stats, stream=False, bound="stats")
            except (RuntimeUnavailable, RuntimeOperationFailed, NotFound) as e:
                logger.debug(f"Skipping stats for {container.id[:12]}: {e}")
                continue
            stats.cpu_percent += _cpu_percent(sample)
            stats.mem_used += int((sample.get("memory_stats") or {}).get("usage") or 0)
        return stats

    async def close(self) -> None:
        if self._client is not None:
            await asyncio.to_thread(self._client.close)
            self._client = None


def _split_image(image: str):
    """Split an image reference into repository and tag; digests stay intact"""
    if "@" in image:
        return image, None
    repository, sep, tag = image.rpartition(":")
    if not sep or "/" in tag:
        return image, "latest"
    return repository, tag


def _cpu_percent(sample: Dict[str, Any]) -> float:
    cpu = sample.get("cpu_stats") or {}
    precpu = sample.get("precpu_stats") or {}
    cpu_delta = (cpu.get("cpu_usage") or {}).get("total_usage", 0) - (
        precpu.get("cpu_usage") or {}
    ).get("total_usage", 0)
    system_delta = cpu.get("system_cpu_usage", 0) - precpu.get("system_cpu_usage", 0)
    if system_delta <= 0 or cpu_delta < 0:
        return 0.0
    online = cpu.get("online_cpus") or len((cpu.get("cpu_usage") or {}).get("percpu_usage") or []) or 1
    return (cpu_delta / system_delta) * online * 100.0
