"""
Configuration management for devharbor

Defaults, overridden by ~/.devharbor/config.yaml (or the file named by
DEVHARBOR_CONFIG), overridden by DEVHARBOR_* environment variables.
"""

import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

DEFAULT_HOME = Path.home() / ".devharbor"
DEFAULT_CONFIG_PATH = DEFAULT_HOME / "config.yaml"


@dataclass
class HarborConfig:
    """Configuration for the orchestration engine"""

    # State files
    data_dir: str = str(DEFAULT_HOME / "data")

    # Service catalogue; None uses the bundled definitions
    definitions_path: Optional[str] = None

    # Runtime
    docker_base_url: Optional[str] = None
    network_name: str = "devharbor-network"

    # Event monitor
    reconnect_delay: float = 5.0
    ping_interval: float = 30.0
    label_cache_ttl: float = 30.0
    proxy_sync_delay: float = 0.5

    # Hosts helper
    hosts_helper: str = "hostie"
    hosts_elevate: List[str] = field(default_factory=lambda: ["pkexec"])

    # Logging
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    def __post_init__(self):
        """Load configuration from environment variables"""
        self.data_dir = os.getenv("DEVHARBOR_DATA_DIR", self.data_dir)
        self.definitions_path = os.getenv("DEVHARBOR_DEFINITIONS", self.definitions_path)
        self.docker_base_url = os.getenv("DEVHARBOR_DOCKER_URL", self.docker_base_url)
        self.network_name = os.getenv("DEVHARBOR_NETWORK", self.network_name)

        self.reconnect_delay = float(os.getenv("DEVHARBOR_RECONNECT_DELAY", str(self.reconnect_delay)))
        self.ping_interval = float(os.getenv("DEVHARBOR_PING_INTERVAL", str(self.ping_interval)))
        self.label_cache_ttl = float(os.getenv("DEVHARBOR_LABEL_CACHE_TTL", str(self.label_cache_ttl)))

        self.hosts_helper = os.getenv("DEVHARBOR_HOSTS_HELPER", self.hosts_helper)
        elevate = os.getenv("DEVHARBOR_HOSTS_ELEVATE")
        if elevate is not None:
            self.hosts_elevate = elevate.split()

        self.log_level = os.getenv("DEVHARBOR_LOG_LEVEL", self.log_level)

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser()

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary"""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HarborConfig":
        """Create configuration from dictionary, ignoring unknown keys"""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logging.getLogger(__name__).warning(f"Ignoring unknown config keys: {', '.join(unknown)}")
        return cls(**{key: value for key, value in data.items() if key in known})

    def validate(self) -> bool:
        """Validate configuration"""
        if not self.data_dir:
            raise ValueError("data_dir is required")

        if not self.network_name:
            raise ValueError("network_name is required")

        if self.reconnect_delay <= 0:
            raise ValueError("reconnect_delay must be positive")

        if self.ping_interval <= 0:
            raise ValueError("ping_interval must be positive")

        if self.label_cache_ttl < 0:
            raise ValueError("label_cache_ttl must be non-negative")

        if self.proxy_sync_delay < 0:
            raise ValueError("proxy_sync_delay must be non-negative")

        if not self.hosts_helper:
            raise ValueError("hosts_helper is required")

        if not isinstance(getattr(logging, self.log_level.upper(), None), int):
            raise ValueError(f"Unknown log_level: {self.log_level}")

        return True


def load_config(path: Optional[Union[str, Path]] = None) -> HarborConfig:
    """Build the configuration from an optional YAML file plus the environment"""
    config_path = Path(path or os.getenv("DEVHARBOR_CONFIG") or DEFAULT_CONFIG_PATH).expanduser()

    data: Dict[str, Any] = {}
    if config_path.exists():
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {config_path} must contain a mapping")
    elif path is not None:
        raise FileNotFoundError(f"Config file not found: {config_path}")

    config = HarborConfig.from_dict(data)
    config.validate()
    return config


def setup_logging(config: HarborConfig, verbose: bool = False) -> None:
    """Setup logging based on configuration"""
    level_name = "DEBUG" if verbose else config.log_level.upper()

    # Configure root logger
    logging.basicConfig(
        level=getattr(logging, level_name),
        format=config.log_format,
    )

    # Set specific loggers to appropriate levels
    logging.getLogger("docker").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    if level_name == "DEBUG":
        logging.getLogger("devharbor").setLevel(logging.DEBUG)
