"""Resource lifecycle management"""

from devharbor.lifecycle.definitions import (
    DEFAULT_DEFINITIONS_PATH,
    DefinitionRegistry,
    load_service_definitions,
)
from devharbor.lifecycle.engine import DEFAULT_NETWORK, LifecycleEngine, container_name_for
from devharbor.lifecycle.health import wait_for_healthy

__all__ = [
    "DEFAULT_DEFINITIONS_PATH",
    "DefinitionRegistry",
    "load_service_definitions",
    "DEFAULT_NETWORK",
    "LifecycleEngine",
    "container_name_for",
    "wait_for_healthy",
]
