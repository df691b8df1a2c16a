"""
Post-install hook registry

Maps a resource id to an async hook run after that resource installs
successfully. A failing hook only produces a warning; the install stands.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from devharbor.core.models import CustomConfig, validate_identifier
from devharbor.runtime.client import RuntimeClient
from devharbor.storage.records import ProjectStore

logger = logging.getLogger(__name__)


@dataclass
class HookContext:
    """What a hook may look at and act on"""
    resource_id: str
    container_id: Optional[str]
    custom_config: Optional[CustomConfig]
    runtime: RuntimeClient
    projects: Optional[ProjectStore] = None


@dataclass
class HookResult:
    success: bool
    message: Optional[str] = None
    # Stored into the resource's custom_config.metadata
    data: Dict[str, Any] = field(default_factory=dict)


PostInstallHook = Callable[[HookContext], Awaitable[HookResult]]


class HookRegistry:
    """Explicit resource id -> hook registry owned by the composition root"""

    def __init__(self):
        self._hooks: Dict[str, PostInstallHook] = {}

    def register(self, resource_id: str, hook: PostInstallHook) -> None:
        validate_identifier(resource_id, "resource id")
        if resource_id in self._hooks:
            logger.warning(f"Replacing post-install hook for {resource_id}")
        self._hooks[resource_id] = hook
        logger.debug(f"Registered post-install hook for {resource_id}")

    def unregister(self, resource_id: str) -> bool:
        return self._hooks.pop(resource_id, None) is not None

    def get(self, resource_id: str) -> Optional[PostInstallHook]:
        return self._hooks.get(resource_id)

    def resource_ids(self) -> List[str]:
        return sorted(self._hooks)

    def __contains__(self, resource_id: str) -> bool:
        return resource_id in self._hooks

    def __len__(self) -> int:
        return len(self._hooks)

    async def run(self, context: HookContext) -> Optional[HookResult]:
        """Run the hook for context.resource_id; exceptions become failed results"""
        hook = self.get(context.resource_id)
        if hook is None:
            return None
        try:
            result = await hook(context)
        except Exception as e:
            logger.error(f"Post-install hook for {context.resource_id} raised: {e}", exc_info=True)
            return HookResult(success=False, message=str(e))
        if result is None:
            return HookResult(success=True)
        if not result.success:
            logger.warning(f"Post-install hook for {context.resource_id} failed: {result.message}")
        return result
