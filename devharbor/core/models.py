"""
Core data models for devharbor

Definitions, persisted records and runtime observations shared by the store,
the runtime client, the event monitor and the lifecycle engine.
"""

import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from devharbor.core.errors import ValidationError

IDENTIFIER_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_-]{0,62}$")

_DURATION_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ns|us|ms|s|m|h)?\s*$")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def validate_identifier(value: str, what: str = "identifier") -> str:
    """Check a resource or project identifier, raising ValidationError"""
    if not isinstance(value, str) or not IDENTIFIER_PATTERN.match(value):
        raise ValidationError(
            f"Invalid {what} {value!r}: use lowercase letters, digits, '-' or '_'",
            data={"value": value},
        )
    return value


def parse_duration(value: Union[int, float, str, Dict[str, Any], None]) -> float:
    """
    Normalize a duration to seconds.

    Plain numbers are seconds. Strings may carry a unit suffix
    (ns, us, ms, s, m, h). Runtime-native nanosecond values are given as
    {"ns": 5000000000}.
    """
    if value is None:
        return 0.0
    if isinstance(value, bool):
        raise ValueError("duration must be a number or a string")
    if isinstance(value, dict):
        if set(value) != {"ns"}:
            raise ValueError(f"unsupported duration mapping: {value}")
        return float(value["ns"]) * 1e-9
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError("duration must not be negative")
        return float(value)
    match = _DURATION_PATTERN.match(str(value))
    if not match:
        raise ValueError(f"invalid duration: {value!r}")
    amount, unit = match.groups()
    return float(amount) * _DURATION_UNITS[unit or "s"]


class ResourceCategory(str, Enum):
    WEB = "web"
    DATABASE = "database"
    CACHE = "cache"
    SEARCH = "search"
    STORAGE = "storage"
    QUEUE = "queue"
    EMAIL = "email"
    PROJECT = "project"


class ResourceKind(str, Enum):
    SERVICE = "service"
    PROJECT = "project"


class HealthStatus(str, Enum):
    NONE = "none"
    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"

    @classmethod
    def parse(cls, value: Optional[str]) -> "HealthStatus":
        try:
            return cls(value) if value else cls.NONE
        except ValueError:
            return cls.NONE


class ContainerAction(str, Enum):
    START = "start"
    STOP = "stop"
    DIE = "die"
    KILL = "kill"
    PAUSE = "pause"
    UNPAUSE = "unpause"
    RESTART = "restart"
    HEALTH_STATUS = "health_status"


class HealthCheckSpec(BaseModel):
    """Health probe declaration; all durations are seconds"""

    model_config = ConfigDict(frozen=True)

    test: List[str]
    retries: int = Field(default=3, ge=1)
    timeout: float = 5.0
    interval: float = 5.0
    start_period: float = 0.0

    @field_validator("timeout", "interval", "start_period", mode="before")
    @classmethod
    def _normalize_duration(cls, value):
        return parse_duration(value)

    @field_validator("test")
    @classmethod
    def _validate_test(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("health check command must not be empty")
        return value

    def to_runtime(self) -> Dict[str, Any]:
        """Render in the runtime's nanosecond form"""
        return {
            "test": list(self.test),
            "retries": self.retries,
            "timeout": int(self.timeout * 1e9),
            "interval": int(self.interval * 1e9),
            "start_period": int(self.start_period * 1e9),
        }


class PortMapping(BaseModel):
    model_config = ConfigDict(frozen=True)

    host: int = Field(ge=1, le=65535)
    container: int = Field(ge=1, le=65535)
    protocol: str = "tcp"

    @model_validator(mode="before")
    @classmethod
    def _parse_shorthand(cls, value):
        # "8080:80", "8080:80/udp" or [8080, 80]
        if isinstance(value, str):
            mapping, _, protocol = value.partition("/")
            host, sep, container = mapping.partition(":")
            if not sep:
                host = container = mapping
            return {"host": host, "container": container, "protocol": protocol or "tcp"}
        if isinstance(value, (list, tuple)):
            if len(value) != 2:
                raise ValueError("port mapping must be [host, container]")
            return {"host": value[0], "container": value[1]}
        return value

    def __str__(self) -> str:
        return f"{self.host}:{self.container}/{self.protocol}"


def _parse_environment(value):
    if value is None:
        return value
    if isinstance(value, (list, tuple)):
        env = {}
        for item in value:
            key, sep, val = str(item).partition("=")
            if not sep or not key:
                raise ValueError(f"invalid environment entry: {item!r}")
            env[key] = val
        return env
    return value


def _is_named_volume(binding: str) -> bool:
    source = binding.split(":", 1)[0]
    if not source or ":" not in binding:
        return False
    if source.startswith(("/", ".", "~")):
        return False
    # Windows drive letters such as C:\path
    if len(source) == 1 and binding[2:3] in ("\\", "/"):
        return False
    return True


class RuntimeConfig(BaseModel):
    """Runtime configuration a resource container is created from"""

    model_config = ConfigDict(frozen=True)

    image: str = Field(min_length=1)
    ports: List[PortMapping] = Field(default_factory=list)
    volume_bindings: List[str] = Field(default_factory=list)
    environment: Dict[str, str] = Field(default_factory=dict)
    healthcheck: Optional[HealthCheckSpec] = None
    data_volume: Optional[str] = None

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value):
        return _parse_environment(value) or {}

    def declared_volumes(self) -> List[str]:
        """Named volumes from the bindings; host paths are skipped"""
        return [b.split(":", 1)[0] for b in self.volume_bindings if _is_named_volume(b)]

    def environment_list(self) -> List[str]:
        return [f"{key}={value}" for key, value in self.environment.items()]


class ResourceDefinition(BaseModel):
    """Static declaration of an installable resource"""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    display_name: str
    description: str = ""
    category: ResourceCategory
    kind: ResourceKind = ResourceKind.SERVICE
    required: bool = False
    default_config: RuntimeConfig
    post_install_message: Optional[str] = None

    @field_validator("id")
    @classmethod
    def _validate_id(cls, value: str) -> str:
        if not IDENTIFIER_PATTERN.match(value):
            raise ValueError(f"invalid resource id: {value!r}")
        return value


class CustomConfig(BaseModel):
    """User overrides of a resource's default runtime configuration"""

    image: Optional[str] = None
    ports: Optional[List[PortMapping]] = None
    environment: Optional[Dict[str, str]] = None
    volume_bindings: Optional[List[str]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value):
        return _parse_environment(value)


def merge_config(default: RuntimeConfig, custom: Optional[CustomConfig]) -> RuntimeConfig:
    """Overlay custom configuration on the defaults; environment is merged"""
    if custom is None:
        return default
    updates: Dict[str, Any] = {}
    if custom.image:
        updates["image"] = custom.image
    if custom.ports is not None:
        updates["ports"] = list(custom.ports)
    if custom.volume_bindings is not None:
        updates["volume_bindings"] = list(custom.volume_bindings)
    if custom.environment:
        updates["environment"] = {**default.environment, **custom.environment}
    return default.model_copy(update=updates)


class ResourceRecord(BaseModel):
    """Persisted orchestration state of one resource"""

    id: str
    installed: bool = False
    custom_config: Optional[CustomConfig] = None
    container_id: Optional[str] = None
    installed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)


class ProjectRecord(BaseModel):
    """A per-project development container"""

    id: str
    name: str
    path: str
    domain: str
    image: str = Field(min_length=1)
    ports: List[PortMapping] = Field(default_factory=list)
    environment: Dict[str, str] = Field(default_factory=dict)
    volume_bindings: List[str] = Field(default_factory=list)
    order: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("id")
    @classmethod
    def _validate_id(cls, value: str) -> str:
        if not IDENTIFIER_PATTERN.match(value):
            raise ValueError(f"invalid project id: {value!r}")
        return value

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value):
        return _parse_environment(value) or {}

    def to_definition(self) -> ResourceDefinition:
        return ResourceDefinition(
            id=self.id,
            name=self.name,
            display_name=self.name,
            description=f"Project container for {self.path}",
            category=ResourceCategory.PROJECT,
            kind=ResourceKind.PROJECT,
            default_config=RuntimeConfig(
                image=self.image,
                ports=self.ports,
                environment=self.environment,
                volume_bindings=self.volume_bindings,
            ),
        )


@dataclass
class RuntimeState:
    """Point-in-time observation of a resource's container"""
    exists: bool = False
    running: bool = False
    health: HealthStatus = HealthStatus.NONE
    ports: List[PortMapping] = field(default_factory=list)
    container_id: Optional[str] = None
    container_name: Optional[str] = None
    status: Optional[str] = None

    @classmethod
    def missing(cls) -> "RuntimeState":
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "exists": self.exists,
            "running": self.running,
            "health": self.health.value,
            "ports": [str(p) for p in self.ports],
            "container_id": self.container_id,
            "container_name": self.container_name,
            "status": self.status,
        }


class ContainerEvent(BaseModel):
    """A single runtime notification, enriched with resource identity"""

    model_config = ConfigDict(frozen=True)

    container_id: str
    action: ContainerAction
    timestamp: float = Field(default_factory=time.time)
    resource_id: Optional[str] = None
    kind: Optional[ResourceKind] = None
    category: Optional[str] = None
    health: Optional[HealthStatus] = None


class ConnectionStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    connected: bool
    reconnect_attempts: int = 0
    last_error: Optional[str] = None
    timestamp: float = Field(default_factory=time.time)


class PullProgress(BaseModel):
    resource_id: str
    layer_id: str = ""
    status: str = ""
    bytes_done: int = 0
    bytes_total: int = 0
    done: bool = False

    @property
    def percent(self) -> float:
        if self.done:
            return 100.0
        if self.bytes_total <= 0:
            return 0.0
        return min(100.0, self.bytes_done * 100.0 / self.bytes_total)


class InstallOptions(BaseModel):
    start_immediately: bool = True
    wait_for_healthy: bool = True
    custom_config: Optional[CustomConfig] = None


class OperationResult(BaseModel):
    """Typed result returned across the control channel"""

    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)

    @classmethod
    def ok(cls, data: Any = None, warnings: Optional[List[str]] = None) -> "OperationResult":
        return cls(success=True, data=data, warnings=warnings or [])

    @classmethod
    def fail(cls, error: str, error_code: Optional[str] = None) -> "OperationResult":
        return cls(success=False, error=error, error_code=error_code)
