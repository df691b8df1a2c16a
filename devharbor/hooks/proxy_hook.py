"""
Reverse proxy post-install hook

Installing the proxy service sets up local TLS and pushes the current
project list into the proxy. Certificate installation and config
generation are collaborators behind small protocols; the defaults only log.
"""

import hashlib
import logging
from typing import Dict, List, Optional, Protocol

from devharbor.core.errors import HarborError
from devharbor.core.labels import LabelKeys, ResourceTypes
from devharbor.core.models import ProjectRecord
from devharbor.hooks.registry import HookContext, HookResult, PostInstallHook
from devharbor.runtime.client import RuntimeClient
from devharbor.storage.records import ProjectStore

logger = logging.getLogger(__name__)

PROXY_SERVICE_ID = "caddy"


class CertificateInstaller(Protocol):
    async def install(self) -> bool:
        """Trust the proxy's local CA; True when a certificate is installed"""
        ...


class ProxyConfigurator(Protocol):
    async def sync(self, projects: List[ProjectRecord]) -> bool:
        """Write proxy routes for the given projects and reload the proxy"""
        ...


class LoggingCertificateInstaller:
    async def install(self) -> bool:
        logger.info("No certificate installer configured, skipping TLS setup")
        return False


class LoggingProxyConfigurator:
    async def sync(self, projects: List[ProjectRecord]) -> bool:
        logger.info(f"No proxy configurator configured, {len(projects)} project route(s) not written")
        return True


def hash_project_containers(mapping: Dict[str, str]) -> str:
    """Stable digest of sorted project:container pairs"""
    state = "|".join(f"{key}:{value}" for key, value in sorted(mapping.items()))
    return hashlib.sha256(state.encode("utf-8")).hexdigest()


class ProjectProxySync:
    """
    Pushes project routes to the proxy when the set of project containers
    changed since the last successful sync.
    """

    def __init__(
        self,
        runtime: RuntimeClient,
        projects: ProjectStore,
        configurator: Optional[ProxyConfigurator] = None,
    ):
        self.runtime = runtime
        self.projects = projects
        self.configurator = configurator or LoggingProxyConfigurator()
        self._last_hash: Optional[str] = None

    async def _project_containers(self) -> Dict[str, str]:
        mapping = {}
        for project in self.projects.get_all_projects():
            state = await self.runtime.find_by_label(
                LabelKeys.PROJECT_ID, project.id, ResourceTypes.PROJECT_CONTAINER
            )
            if state is not None and state.container_id:
                mapping[project.id] = state.container_id
        return mapping

    async def sync(self, force: bool = False) -> bool:
        try:
            current = hash_project_containers(await self._project_containers())
        except HarborError as e:
            logger.warning(f"Could not read project containers for proxy sync: {e}")
            current = None

        if not force and current is not None and current == self._last_hash:
            logger.debug("Project containers unchanged since last proxy sync")
            return True

        synced = await self.configurator.sync(self.projects.get_all_projects())
        if synced:
            self._last_hash = current
        return synced

    def reset(self) -> None:
        self._last_hash = None


def make_proxy_hook(
    proxy_sync: ProjectProxySync,
    installer: Optional[CertificateInstaller] = None,
) -> PostInstallHook:
    installer = installer or LoggingCertificateInstaller()

    async def proxy_post_install_hook(context: HookContext) -> HookResult:
        cert_installed = await installer.install()

        synced = await proxy_sync.sync(force=True)
        if synced:
            logger.info("Projects synchronized to reverse proxy")
        else:
            logger.warning("Failed to sync projects to reverse proxy")

        if cert_installed:
            message = "Proxy certificate installed"
        else:
            message = "Proxy installed without a trusted certificate"
        return HookResult(
            success=synced,
            message=message if synced else f"{message}; project sync failed",
            data={"cert_installed": cert_installed},
        )

    return proxy_post_install_hook
