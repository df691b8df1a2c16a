"""
Cached runtime view of managed resources

Subscribes to the event monitor: single events refresh the affected
resource, a reconciliation signal refreshes everything so the cache matches
runtime truth again after a missed-event window.
"""

import asyncio
import logging
from typing import Callable, Dict, Iterable, List, Optional

from devharbor.core.errors import HarborError
from devharbor.core.labels import LabelKeys, ResourceTypes, resource_identity
from devharbor.core.models import ContainerEvent, ResourceKind, RuntimeState
from devharbor.monitor.event_monitor import EventMonitor, Subscription
from devharbor.runtime.client import RuntimeClient

logger = logging.getLogger(__name__)


class ResourceStateCache:
    """resource id -> last observed RuntimeState"""

    def __init__(
        self,
        runtime: RuntimeClient,
        resource_kinds: Optional[Callable[[], Dict[str, ResourceKind]]] = None,
    ):
        self.runtime = runtime
        # Supplies the resources to refresh on reconciliation
        self._resource_kinds = resource_kinds or (lambda: {})
        self._states: Dict[str, RuntimeState] = {}
        self._kinds: Dict[str, ResourceKind] = {}
        self._subscription: Optional[Subscription] = None
        self._lock = asyncio.Lock()
        self.reconciliations = 0

    def attach(self, monitor: EventMonitor) -> Subscription:
        self._subscription = monitor.subscribe(
            on_event=self.handle_event,
            on_reconcile=self.reconcile,
        )
        return self._subscription

    def detach(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None

    def get(self, resource_id: str) -> Optional[RuntimeState]:
        return self._states.get(resource_id)

    def snapshot(self) -> Dict[str, RuntimeState]:
        return dict(self._states)

    def invalidate(self, resource_id: Optional[str] = None) -> None:
        if resource_id is None:
            self._states.clear()
        else:
            self._states.pop(resource_id, None)

    async def handle_event(self, event: ContainerEvent) -> None:
        if event.resource_id is None:
            return
        kind = event.kind or ResourceKind.SERVICE
        self._kinds[event.resource_id] = kind
        await self.refresh(event.resource_id, kind)

    async def refresh(self, resource_id: str, kind: ResourceKind = ResourceKind.SERVICE) -> RuntimeState:
        if kind == ResourceKind.PROJECT:
            key, resource_type = LabelKeys.PROJECT_ID, ResourceTypes.PROJECT_CONTAINER
        else:
            key, resource_type = LabelKeys.SERVICE_ID, ResourceTypes.SERVICE_CONTAINER
        state = await self.runtime.find_by_label(key, resource_id, resource_type)
        state = state or RuntimeState.missing()
        self._states[resource_id] = state
        return state

    async def reconcile(self) -> None:
        """Re-read every known resource from the runtime"""
        async with self._lock:
            self.reconciliations += 1
            kinds: Dict[str, ResourceKind] = {**self._kinds, **self._resource_kinds()}
            try:
                for summary in await self.runtime.list_managed():
                    labels = (summary.get("Config") or {}).get("Labels") or summary.get("Labels")
                    identity = resource_identity(labels)
                    if identity:
                        kinds.setdefault(identity["resource_id"], ResourceKind(identity["kind"]))
            except HarborError as e:
                logger.warning(f"Could not list managed containers during reconciliation: {e}")

            refreshed = 0
            for resource_id, kind in kinds.items():
                try:
                    await self.refresh(resource_id, kind)
                    refreshed += 1
                except HarborError as e:
                    logger.warning(f"Could not refresh {resource_id} during reconciliation: {e}")
                    self._states.pop(resource_id, None)
            self._kinds.update(kinds)
            logger.info(f"Reconciled {refreshed} resources with the runtime")

    def track(self, resource_ids: Iterable[str], kind: ResourceKind = ResourceKind.SERVICE) -> None:
        for resource_id in resource_ids:
            self._kinds[resource_id] = kind

    def tracked(self) -> List[str]:
        return sorted(self._kinds)
