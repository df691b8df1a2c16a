"""
Control channel between callers and the engine

Every request returns an OperationResult; no exception crosses this
boundary. Install progress and container events are pushed through
callbacks.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from devharbor.core.errors import ErrorCode, HarborError, ValidationError
from devharbor.core.models import CustomConfig, InstallOptions, OperationResult, ProjectRecord
from devharbor.lifecycle.engine import LifecycleEngine, ProgressCallback
from devharbor.monitor.event_monitor import (
    EventCallback,
    EventMonitor,
    ReconcileCallback,
    StatusCallback,
    Subscription,
)

logger = logging.getLogger(__name__)


class ControlChannel:
    """Request/response facade plus push subscriptions"""

    def __init__(self, engine: LifecycleEngine, monitor: Optional[EventMonitor] = None):
        self.engine = engine
        self.monitor = monitor

    async def _call(self, operation: str, func: Callable[[], Awaitable[Any]]) -> OperationResult:
        try:
            result = await func()
        except asyncio.CancelledError:
            raise
        except HarborError as e:
            logger.warning(f"{operation} failed: {e}")
            return OperationResult(
                success=False,
                error=e.message,
                error_code=e.code.value,
                data=e.data or None,
            )
        except Exception as e:
            logger.error(f"{operation} failed unexpectedly: {e}", exc_info=True)
            return OperationResult.fail(str(e), ErrorCode.INTERNAL_ERROR.value)

        if isinstance(result, OperationResult):
            return result
        return OperationResult.ok(result)

    # -- queries --------------------------------------------------------------

    async def list_resources(self) -> OperationResult:
        async def run():
            return self.engine.list_resources()

        return await self._call("list_resources", run)

    async def get_resource(self, resource_id: str) -> OperationResult:
        async def run():
            return self.engine.get_resource(resource_id)

        return await self._call("get_resource", run)

    async def get_runtime_state(self, resource_id: str) -> OperationResult:
        async def run():
            state = await self.engine.get_runtime_state(resource_id)
            return state.to_dict()

        return await self._call("get_runtime_state", run)

    async def get_system_stats(self) -> OperationResult:
        async def run():
            stats = await self.engine.runtime.system_stats()
            return {
                "cpus": stats.cpus,
                "cpu_percent": round(stats.cpu_percent, 2),
                "mem_total": stats.mem_total,
                "mem_used": stats.mem_used,
            }

        return await self._call("get_system_stats", run)

    # -- lifecycle ------------------------------------------------------------

    async def install(
        self,
        resource_id: str,
        options: Optional[Union[InstallOptions, Dict[str, Any]]] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> OperationResult:
        async def run():
            parsed = options
            if isinstance(parsed, dict):
                try:
                    parsed = InstallOptions.model_validate(parsed)
                except ValueError as e:
                    raise ValidationError(f"Invalid install options: {e}", cause=e)
            return await self.engine.install(resource_id, parsed, on_progress=on_progress, cancel=cancel)

        return await self._call("install", run)

    async def uninstall(self, resource_id: str, remove_volumes: bool = False) -> OperationResult:
        return await self._call(
            "uninstall", lambda: self.engine.uninstall(resource_id, remove_volumes=remove_volumes)
        )

    async def start(self, resource_id: str) -> OperationResult:
        return await self._call("start", lambda: self.engine.start(resource_id))

    async def stop(self, resource_id: str) -> OperationResult:
        return await self._call("stop", lambda: self.engine.stop(resource_id))

    async def restart(self, resource_id: str) -> OperationResult:
        return await self._call("restart", lambda: self.engine.restart(resource_id))

    async def update_config(
        self,
        resource_id: str,
        config: Union[CustomConfig, Dict[str, Any]],
    ) -> OperationResult:
        return await self._call("update_config", lambda: self.engine.update_config(resource_id, config))

    # -- projects -------------------------------------------------------------

    async def list_projects(self) -> OperationResult:
        async def run():
            return [p.model_dump(mode="json") for p in self.engine.projects.get_all_projects()]

        return await self._call("list_projects", run)

    async def add_project(self, project: Union[ProjectRecord, Dict[str, Any]]) -> OperationResult:
        async def run():
            record = project
            if isinstance(record, dict):
                try:
                    record = ProjectRecord.model_validate(record)
                except ValueError as e:
                    raise ValidationError(f"Invalid project: {e}", cause=e)
            stored = await self.engine.add_project(record)
            return stored.model_dump(mode="json")

        return await self._call("add_project", run)

    async def remove_project(self, project_id: str) -> OperationResult:
        return await self._call("remove_project", lambda: self.engine.remove_project(project_id))

    # -- state backup ---------------------------------------------------------

    async def export_state(self) -> OperationResult:
        async def run():
            return {
                "resources": self.engine.resources.export_data(),
                "projects": self.engine.projects.export_data(),
            }

        return await self._call("export_state", run)

    async def import_state(self, data: Dict[str, Any]) -> OperationResult:
        async def run():
            if not isinstance(data, dict) or not {"resources", "projects"} & set(data):
                raise ValidationError("Backup must contain 'resources' and/or 'projects'")
            sections = {"resources": self.engine.resources, "projects": self.engine.projects}
            stores = [(name, store) for name, store in sections.items() if data.get(name) is not None]
            # Reject the whole backup before either store is replaced
            for name, store in stores:
                try:
                    store.validate_snapshot(data[name])
                except ValidationError as e:
                    raise ValidationError(f"Invalid {name} snapshot: {e.message}", data={"section": name})
            for name, store in stores:
                await store.import_data(data[name])
            return {"imported": [name for name, _ in stores]}

        return await self._call("import_state", run)

    # -- push channel ---------------------------------------------------------

    async def subscribe_events(
        self,
        on_event: Optional[EventCallback] = None,
        on_status: Optional[StatusCallback] = None,
        on_reconcile: Optional[ReconcileCallback] = None,
    ) -> Subscription:
        """Subscribe to container events; starts the monitor on first use"""
        if self.monitor is None:
            raise RuntimeError("No event monitor configured")
        subscription = self.monitor.subscribe(
            on_event=on_event, on_status=on_status, on_reconcile=on_reconcile
        )
        await self.monitor.start()
        return subscription

    def connection_status(self) -> Optional[Dict[str, Any]]:
        if self.monitor is None or self.monitor.last_status is None:
            return None
        return self.monitor.last_status.model_dump(mode="json")
