"""
Lifecycle engine

Drives resources through

    NOT_INSTALLED -> INSTALLING -> INSTALLED (STOPPED <-> RUNNING) -> UNINSTALLING -> NOT_INSTALLED

against the runtime client, persisting installed state in the resource
store. Each resource has at most one operation in flight; a second request
for a busy resource fails immediately with OperationInProgress.
"""

import asyncio
import inspect
import logging
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from devharbor.core.errors import (
    AlreadyInstalled,
    HarborError,
    HealthCheckTimeout,
    NotFound,
    NotInitialized,
    NotInstalled,
    OperationInProgress,
    RuntimeUnavailable,
    ValidationError,
)
from devharbor.core.labels import (
    container_type_for,
    identity_key_for,
    network_labels,
    project_container_labels,
    project_volume_labels,
    service_container_labels,
    service_volume_labels,
)
from devharbor.core.models import (
    CustomConfig,
    InstallOptions,
    OperationResult,
    ProjectRecord,
    PullProgress,
    ResourceDefinition,
    ResourceKind,
    ResourceRecord,
    RuntimeState,
    merge_config,
    utcnow,
)
from devharbor.hooks.registry import HookContext, HookRegistry
from devharbor.lifecycle.definitions import DefinitionRegistry
from devharbor.lifecycle.health import wait_for_healthy
from devharbor.runtime.client import ContainerSpec, RuntimeClient
from devharbor.storage.records import ProjectStore, ResourceStore

logger = logging.getLogger(__name__)

DEFAULT_NETWORK = "devharbor-network"
CONTAINER_PREFIX = "devharbor"

ProgressCallback = Callable[[PullProgress], Union[None, Awaitable[None]]]

# Pull statuses that mean a layer's bytes are all present
_LAYER_DONE = {"Download complete", "Pull complete", "Already exists"}


def container_name_for(definition: ResourceDefinition) -> str:
    if definition.kind == ResourceKind.PROJECT:
        return f"{CONTAINER_PREFIX}-project-{definition.id}"
    return f"{CONTAINER_PREFIX}-{definition.id}"


class LifecycleEngine:
    """Install/start/stop/restart/uninstall/reconfigure for declared resources"""

    def __init__(
        self,
        runtime: RuntimeClient,
        definitions: DefinitionRegistry,
        resources: ResourceStore,
        projects: ProjectStore,
        hooks: Optional[HookRegistry] = None,
        network_name: str = DEFAULT_NETWORK,
        proxy_resource_id: Optional[str] = None,
        on_proxy_start: Optional[Callable[[], Awaitable[Any]]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.runtime = runtime
        self.definitions = definitions
        self.resources = resources
        self.projects = projects
        self.hooks = hooks if hooks is not None else HookRegistry()
        self.network_name = network_name
        self.proxy_resource_id = proxy_resource_id
        self.on_proxy_start = on_proxy_start
        self._sleep = sleep

        self._in_flight: Dict[str, str] = {}
        self._initialized = False

    async def initialize(self) -> None:
        """Load both stores and seed a record for every known service"""
        if self._initialized:
            return
        await self.resources.initialize()
        await self.projects.initialize()

        seeded = 0
        for definition in self.definitions.services():
            if not self.resources.has(definition.id):
                await self.resources.put_record(ResourceRecord(id=definition.id))
                seeded += 1

        self._initialized = True
        logger.info(f"Lifecycle engine initialized ({seeded} new service records)")

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise NotInitialized("Lifecycle engine not initialized. Call initialize() first.")

    @contextmanager
    def _exclusive(self, resource_id: str, operation: str):
        """Claim a resource for one operation; entering never suspends"""
        current = self._in_flight.get(resource_id)
        if current is not None:
            raise OperationInProgress(
                f"Resource {resource_id} is busy ({current} in progress)",
                data={"resource_id": resource_id, "operation": current},
            )
        self._in_flight[resource_id] = operation
        try:
            yield
        finally:
            self._in_flight.pop(resource_id, None)

    def in_flight(self) -> Dict[str, str]:
        return dict(self._in_flight)

    def _prepare(self, resource_id: str) -> ResourceDefinition:
        self._ensure_initialized()
        return self.definitions.require(resource_id)

    def _require_installed(self, resource_id: str) -> ResourceRecord:
        record = self.resources.get_record(resource_id)
        if record is None or not record.installed:
            raise NotInstalled(
                f"Resource {resource_id} is not installed",
                data={"resource_id": resource_id},
            )
        return record

    async def _find_container(self, definition: ResourceDefinition) -> Optional[RuntimeState]:
        return await self.runtime.find_by_label(
            identity_key_for(definition.kind),
            definition.id,
            container_type_for(definition.kind),
        )

    async def _require_container(self, definition: ResourceDefinition) -> RuntimeState:
        state = await self._find_container(definition)
        if state is None or not state.exists or not state.container_id:
            raise NotInstalled(
                f"Container for {definition.id} does not exist",
                data={"resource_id": definition.id},
            )
        return state

    def _container_labels(self, definition: ResourceDefinition) -> Dict[str, str]:
        if definition.kind == ResourceKind.PROJECT:
            return project_container_labels(definition.id, definition.name)
        return service_container_labels(definition.id, definition.category.value)

    def _volume_labels(self, definition: ResourceDefinition, volume: str) -> Dict[str, str]:
        if definition.kind == ResourceKind.PROJECT:
            return project_volume_labels(definition.id, volume)
        return service_volume_labels(definition.id, volume)

    # -- install --------------------------------------------------------------

    async def install(
        self,
        resource_id: str,
        options: Optional[InstallOptions] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> OperationResult:
        definition = self._prepare(resource_id)
        options = options or InstallOptions()
        with self._exclusive(resource_id, "install"):
            return await self._install(definition, options, on_progress, cancel)

    async def _install(
        self,
        definition: ResourceDefinition,
        options: InstallOptions,
        on_progress: Optional[ProgressCallback],
        cancel: Optional[asyncio.Event],
    ) -> OperationResult:
        resource_id = definition.id
        if self.resources.is_installed(resource_id):
            raise AlreadyInstalled(
                f"Resource {resource_id} is already installed",
                data={"resource_id": resource_id},
            )

        if not await self.runtime.ping():
            raise RuntimeUnavailable("Container runtime is not running. Start Docker and try again.")

        existing = await self._find_container(definition)
        if existing is not None and existing.exists:
            raise AlreadyInstalled(
                f"A container for {resource_id} already exists",
                data={"resource_id": resource_id, "container_id": existing.container_id},
            )

        config = merge_config(definition.default_config, options.custom_config)
        logger.info(f"Installing {resource_id} from {config.image}")

        await self.runtime.ensure_network(self.network_name, network_labels())
        for volume in config.declared_volumes():
            await self.runtime.ensure_volume(volume, self._volume_labels(definition, volume))

        await self._pull(resource_id, config.image, on_progress)

        container_id: Optional[str] = None
        health_error: Optional[HealthCheckTimeout] = None
        try:
            container_id = await self.runtime.create_container(
                ContainerSpec(
                    name=container_name_for(definition),
                    image=config.image,
                    labels=self._container_labels(definition),
                    network=self.network_name,
                    ports=list(config.ports),
                    environment=dict(config.environment),
                    volume_bindings=list(config.volume_bindings),
                    healthcheck=config.healthcheck,
                )
            )
            logger.info(f"Created container {container_id[:12]} for {resource_id}")

            if options.start_immediately:
                await self.runtime.start_container(container_id)
                logger.info(f"Started {resource_id}")
                if config.healthcheck is not None and options.wait_for_healthy:
                    try:
                        await wait_for_healthy(
                            self.runtime,
                            container_id,
                            config.healthcheck,
                            cancel=cancel,
                            sleep=self._sleep,
                        )
                    except HealthCheckTimeout as e:
                        health_error = e

            state = await self.runtime.inspect(container_id)
            custom = options.custom_config or CustomConfig()
            custom = custom.model_copy(update={"ports": state.ports or list(config.ports)})
            now = utcnow()
            await self.resources.put_record(
                ResourceRecord(
                    id=resource_id,
                    installed=True,
                    custom_config=custom,
                    container_id=container_id,
                    installed_at=now,
                )
            )
        except (Exception, asyncio.CancelledError):
            if container_id is not None:
                await self._rollback(resource_id, container_id)
            raise

        if health_error is not None:
            logger.warning(f"{resource_id} installed but not healthy: {health_error.message}")
            raise health_error

        warnings = await self._run_hook(definition, container_id, custom)
        if definition.post_install_message:
            logger.info(f"Resource {resource_id} installed. {definition.post_install_message}")
        else:
            logger.info(f"Resource {resource_id} installed")

        return OperationResult.ok(
            {
                "message": definition.post_install_message,
                "container_id": container_id,
                "ports": [str(p) for p in state.ports],
            },
            warnings=warnings,
        )

    async def _rollback(self, resource_id: str, container_id: str) -> None:
        logger.warning(f"Install of {resource_id} failed, removing container {container_id[:12]}")
        try:
            await self.runtime.remove_container(container_id)
        except HarborError as e:
            logger.error(f"Rollback of {resource_id} failed: {e}")

    async def _emit(self, on_progress: Optional[ProgressCallback], progress: PullProgress) -> None:
        if on_progress is None:
            return
        try:
            result = on_progress(progress)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")

    async def _pull(self, resource_id: str, image: str, on_progress: Optional[ProgressCallback]) -> None:
        if await self.runtime.image_exists(image):
            logger.info(f"Image {image} already present, skipping pull")
            await self._emit(
                on_progress,
                PullProgress(resource_id=resource_id, status="Image already present", done=True),
            )
            return

        logger.info(f"Pulling image {image}")
        layers: Dict[str, Tuple[int, int]] = {}
        async for progress in self.runtime.pull_image(image):
            if progress.layer_id:
                done, total = layers.get(progress.layer_id, (0, 0))
                if progress.status == "Downloading" and progress.total > 0:
                    total = progress.total
                    done = min(progress.current, total)
                elif progress.status in _LAYER_DONE:
                    done = total
                layers[progress.layer_id] = (done, total)
            await self._emit(
                on_progress,
                PullProgress(
                    resource_id=resource_id,
                    layer_id=progress.layer_id,
                    status=progress.status,
                    bytes_done=sum(d for d, _ in layers.values()),
                    bytes_total=sum(t for _, t in layers.values()),
                ),
            )

        total = sum(t for _, t in layers.values())
        await self._emit(
            on_progress,
            PullProgress(
                resource_id=resource_id,
                status="Pull complete",
                bytes_done=total,
                bytes_total=total,
                done=True,
            ),
        )
        logger.info(f"Pulled image {image}")

    async def _run_hook(
        self,
        definition: ResourceDefinition,
        container_id: str,
        custom: CustomConfig,
    ) -> List[str]:
        """Run the post-install hook; problems become warnings"""
        if self.hooks.get(definition.id) is None:
            return []

        try:
            state = await self.runtime.inspect(container_id)
            if state.exists and not state.running:
                logger.info(f"Starting {definition.id} for its post-install hook")
                await self.runtime.start_container(container_id)
        except HarborError as e:
            message = f"Post-install hook skipped: {e.message}"
            logger.warning(message)
            return [message]

        logger.info(f"Running post-install hook for {definition.id}")
        result = await self.hooks.run(
            HookContext(
                resource_id=definition.id,
                container_id=container_id,
                custom_config=custom,
                runtime=self.runtime,
                projects=self.projects,
            )
        )
        if result is None:
            return []

        warnings = []
        if result.data:
            metadata = {**custom.metadata, **result.data}
            try:
                await self.resources.update_record(
                    definition.id,
                    {"custom_config": custom.model_copy(update={"metadata": metadata}).model_dump()},
                )
            except HarborError as e:
                warnings.append(f"Could not store post-install hook data: {e.message}")
        if result.success:
            logger.info(f"Post-install hook completed: {result.message or ''}")
        else:
            warnings.append(f"Post-install hook failed: {result.message or 'unknown error'}")
        return warnings

    # -- start / stop / restart ----------------------------------------------

    async def start(self, resource_id: str) -> OperationResult:
        definition = self._prepare(resource_id)
        with self._exclusive(resource_id, "start"):
            self._require_installed(resource_id)
            state = await self._require_container(definition)
            if state.running:
                return OperationResult.ok({"message": f"Resource {resource_id} is already running"})

            await self.runtime.start_container(state.container_id)
            logger.info(f"Started {resource_id}")

            warnings = []
            if resource_id == self.proxy_resource_id and self.on_proxy_start is not None:
                try:
                    await self.on_proxy_start()
                except HarborError as e:
                    logger.warning(f"Proxy resync after start failed: {e}")
                    warnings.append(f"Proxy resync failed: {e.message}")
            return OperationResult.ok(
                {"message": f"Resource {resource_id} started"}, warnings=warnings
            )

    async def stop(self, resource_id: str) -> OperationResult:
        definition = self._prepare(resource_id)
        with self._exclusive(resource_id, "stop"):
            self._require_installed(resource_id)
            state = await self._require_container(definition)
            if not state.running:
                return OperationResult.ok({"message": f"Resource {resource_id} is already stopped"})

            await self.runtime.stop_container(state.container_id)
            logger.info(f"Stopped {resource_id}")
            return OperationResult.ok({"message": f"Resource {resource_id} stopped"})

    async def restart(self, resource_id: str) -> OperationResult:
        definition = self._prepare(resource_id)
        with self._exclusive(resource_id, "restart"):
            self._require_installed(resource_id)
            state = await self._require_container(definition)
            await self.runtime.restart_container(state.container_id)
            logger.info(f"Restarted {resource_id}")
            return OperationResult.ok({"message": f"Resource {resource_id} restarted"})

    # -- uninstall ------------------------------------------------------------

    async def uninstall(self, resource_id: str, remove_volumes: bool = False) -> OperationResult:
        definition = self._prepare(resource_id)
        with self._exclusive(resource_id, "uninstall"):
            record = self.resources.get_record(resource_id)
            state = await self._find_container(definition)
            container_exists = state is not None and state.exists and state.container_id
            if not (record and record.installed) and not container_exists:
                raise NotInstalled(
                    f"Resource {resource_id} is not installed",
                    data={"resource_id": resource_id},
                )

            if container_exists:
                if state.running:
                    await self.runtime.stop_container(state.container_id)
                await self.runtime.remove_container(state.container_id)
                logger.info(f"Removed container {state.container_id[:12]} for {resource_id}")

            warnings = []
            if remove_volumes:
                config = merge_config(
                    definition.default_config, record.custom_config if record else None
                )
                for volume in config.declared_volumes():
                    try:
                        await self.runtime.remove_volume(volume)
                    except NotFound:
                        logger.debug(f"Volume {volume} already gone")
                    except HarborError as e:
                        logger.warning(f"Failed to remove volume {volume}: {e}")
                        warnings.append(f"Volume {volume} was not removed: {e.message}")

            await self.resources.put_record(ResourceRecord(id=resource_id))
            logger.info(f"Resource {resource_id} uninstalled")
            return OperationResult.ok(
                {"message": f"Resource {resource_id} uninstalled"}, warnings=warnings
            )

    # -- reconfigure ----------------------------------------------------------

    async def update_config(
        self,
        resource_id: str,
        custom_config: Union[CustomConfig, Dict[str, Any]],
    ) -> OperationResult:
        definition = self._prepare(resource_id)
        if not isinstance(custom_config, CustomConfig):
            try:
                custom_config = CustomConfig.model_validate(custom_config)
            except ValueError as e:
                raise ValidationError(f"Invalid configuration for {resource_id}: {e}", cause=e)

        with self._exclusive(resource_id, "update_config"):
            record = self._require_installed(resource_id)
            if not custom_config.metadata and record.custom_config is not None:
                custom_config = custom_config.model_copy(
                    update={"metadata": record.custom_config.metadata}
                )
            await self.resources.update_record(
                resource_id, {"custom_config": custom_config.model_dump()}
            )
            logger.info(f"Saved configuration for {resource_id}")

            warnings = []
            try:
                state = await self._find_container(definition)
            except HarborError as e:
                logger.debug(f"Could not check whether {resource_id} is running: {e}")
                state = None
            if state is not None and state.running:
                message = (
                    f"{resource_id} is running; the new configuration applies after it is reinstalled"
                )
                logger.warning(message)
                warnings.append(message)
            return OperationResult.ok(
                {"message": f"Configuration for {resource_id} updated"}, warnings=warnings
            )

    # -- queries --------------------------------------------------------------

    def _describe(self, definition: ResourceDefinition) -> Dict[str, Any]:
        record = self.resources.get_record(definition.id)
        info = definition.model_dump(mode="json")
        info["installed"] = bool(record and record.installed)
        info["custom_config"] = (
            record.custom_config.model_dump(mode="json")
            if record and record.custom_config
            else None
        )
        info["container_id"] = record.container_id if record else None
        return info

    def list_resources(self) -> List[Dict[str, Any]]:
        self._ensure_initialized()
        return [self._describe(d) for d in self.definitions.all()]

    def get_resource(self, resource_id: str) -> Dict[str, Any]:
        return self._describe(self._prepare(resource_id))

    async def get_runtime_state(self, resource_id: str) -> RuntimeState:
        definition = self._prepare(resource_id)
        state = await self._find_container(definition)
        return state or RuntimeState.missing()

    # -- projects -------------------------------------------------------------

    async def add_project(self, project: ProjectRecord) -> ProjectRecord:
        self._ensure_initialized()
        if self.definitions.is_service(project.id):
            raise ValidationError(
                f"Project id {project.id!r} collides with a service id",
                data={"id": project.id},
            )
        if self.projects.has(project.id):
            raise ValidationError(f"Project {project.id} already exists", data={"id": project.id})
        stored = await self.projects.set_project(
            project.model_copy(update={"order": self.projects.next_order()})
        )
        logger.info(f"Added project {project.id} ({project.path})")
        return stored

    async def remove_project(self, project_id: str) -> None:
        self._ensure_initialized()
        with self._exclusive(project_id, "remove_project"):
            if not self.projects.has(project_id):
                raise NotFound(f"Project {project_id} not found", data={"id": project_id})
            if self.resources.is_installed(project_id):
                raise ValidationError(
                    f"Project {project_id} is installed; uninstall it first",
                    data={"id": project_id},
                )
            await self.projects.delete_project(project_id)
            await self.resources.delete(project_id)
            logger.info(f"Removed project {project_id}")
