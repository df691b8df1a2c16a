"""Core models, labels and errors shared across devharbor"""

from devharbor.core.errors import (
    ErrorCode,
    HarborError,
    RuntimeUnavailable,
    RuntimeOperationFailed,
    NotFound,
    AlreadyInstalled,
    NotInstalled,
    OperationInProgress,
    OperationCancelled,
    HealthCheckTimeout,
    ValidationError,
    PermissionDenied,
    StorageCorrupt,
    NotInitialized,
)
from devharbor.core.models import (
    ResourceDefinition,
    RuntimeConfig,
    HealthCheckSpec,
    CustomConfig,
    ResourceRecord,
    ProjectRecord,
    RuntimeState,
    ContainerEvent,
    ConnectionStatus,
    OperationResult,
)

__all__ = [
    "ErrorCode",
    "HarborError",
    "RuntimeUnavailable",
    "RuntimeOperationFailed",
    "NotFound",
    "AlreadyInstalled",
    "NotInstalled",
    "OperationInProgress",
    "OperationCancelled",
    "HealthCheckTimeout",
    "ValidationError",
    "PermissionDenied",
    "StorageCorrupt",
    "NotInitialized",
    "ResourceDefinition",
    "RuntimeConfig",
    "HealthCheckSpec",
    "CustomConfig",
    "ResourceRecord",
    "ProjectRecord",
    "RuntimeState",
    "ContainerEvent",
    "ConnectionStatus",
    "OperationResult",
]
