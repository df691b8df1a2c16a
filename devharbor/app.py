"""
Composition root

Builds every component once per process and wires them together. Nothing in
devharbor keeps module-level state; whoever owns a HarborApp owns the stores,
the monitor and the engine.
"""

import functools
import logging
from typing import Dict, Optional

from devharbor.config import HarborConfig
from devharbor.control import ControlChannel
from devharbor.core.models import ResourceKind
from devharbor.hooks.proxy_hook import (
    PROXY_SERVICE_ID,
    CertificateInstaller,
    ProjectProxySync,
    ProxyConfigurator,
    make_proxy_hook,
)
from devharbor.hooks.registry import HookRegistry
from devharbor.hosts import HostsHelper
from devharbor.lifecycle.definitions import DefinitionRegistry
from devharbor.lifecycle.engine import LifecycleEngine
from devharbor.monitor.event_monitor import EventMonitor, ProxySyncTrigger
from devharbor.monitor.state_cache import ResourceStateCache
from devharbor.runtime.client import RuntimeClient
from devharbor.runtime.docker_client import DockerRuntimeClient
from devharbor.storage.records import ProjectStore, ResourceStore

logger = logging.getLogger(__name__)


class HarborApp:
    """Owns and wires the orchestration components"""

    def __init__(
        self,
        config: HarborConfig,
        runtime: Optional[RuntimeClient] = None,
        certificate_installer: Optional[CertificateInstaller] = None,
        proxy_configurator: Optional[ProxyConfigurator] = None,
    ):
        self.config = config
        self.runtime = runtime or DockerRuntimeClient(base_url=config.docker_base_url)

        self.resources = ResourceStore(config.data_path)
        self.projects = ProjectStore(config.data_path)
        self.definitions = DefinitionRegistry.from_yaml(config.definitions_path, self.projects)

        self.proxy_sync = ProjectProxySync(self.runtime, self.projects, proxy_configurator)
        self.hooks = HookRegistry()
        if self.definitions.is_service(PROXY_SERVICE_ID):
            self.hooks.register(
                PROXY_SERVICE_ID, make_proxy_hook(self.proxy_sync, certificate_installer)
            )

        self.engine = LifecycleEngine(
            runtime=self.runtime,
            definitions=self.definitions,
            resources=self.resources,
            projects=self.projects,
            hooks=self.hooks,
            network_name=config.network_name,
            proxy_resource_id=PROXY_SERVICE_ID,
            on_proxy_start=functools.partial(self.proxy_sync.sync, force=True),
        )

        self.monitor = EventMonitor(
            self.runtime,
            reconnect_delay=config.reconnect_delay,
            ping_interval=config.ping_interval,
            label_cache_ttl=config.label_cache_ttl,
        )
        self.state_cache = ResourceStateCache(self.runtime, self._installed_resources)
        self.proxy_trigger = ProxySyncTrigger(self.proxy_sync.sync, delay=config.proxy_sync_delay)

        self.control = ControlChannel(self.engine, self.monitor)
        self.hosts = HostsHelper(config.hosts_helper, elevate=config.hosts_elevate)
        self._watching = False

    def _installed_resources(self) -> Dict[str, ResourceKind]:
        kinds = {}
        for record in self.resources.get_all():
            if not record.installed:
                continue
            definition = self.definitions.get(record.id)
            kinds[record.id] = definition.kind if definition else ResourceKind.SERVICE
        return kinds

    async def start(self, watch: bool = False) -> None:
        """Initialize state; with watch=True also follow runtime events"""
        await self.engine.initialize()
        if watch and not self._watching:
            self.state_cache.attach(self.monitor)
            self.proxy_trigger.attach(self.monitor)
            await self.monitor.start()
            # The monitor only signals reconciliation after a reconnect
            await self.state_cache.reconcile()
            self._watching = True
        logger.info("devharbor ready")

    async def close(self) -> None:
        await self.proxy_trigger.close()
        self.state_cache.detach()
        await self.monitor.stop()
        await self.runtime.close()
        self._watching = False

    async def __aenter__(self) -> "HarborApp":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
