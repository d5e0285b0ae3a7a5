"""Controller configuration management.

Configuration is loaded from multiple sources with the following precedence:
1. Explicitly passed parameters (CLI options)
2. Environment variables (``CHAINCTL_*``, optionally from a ``.env`` file)
3. Configuration file
4. Default values
"""
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .modules.errors import ConfigurationError

logger = logging.getLogger("chainctl.config")

# Load environment variables from .env file if it exists
load_dotenv()

DEFAULT_CONFIG_PATHS = [
    Path("/etc/chainctl/config.yaml"),
    Path("~/.config/chainctl/config.yaml").expanduser(),
    Path("chainctl.yaml").absolute(),
]

# Environment variable -> dotted path into the configuration tree
ENV_OVERRIDES = {
    "CHAINCTL_ASSETS_ROOT": "assets_root",
    "CHAINCTL_NETWORK": "network",
    "CHAINCTL_NODE_LAUNCHER": "process.launcher",
    "CHAINCTL_STAGES_ROOT": "upgrade.stages_root",
    "CHAINCTL_RPC_HOST": "rpc.host",
    "CHAINCTL_RPC_TIMEOUT": "rpc.timeout",
    "CHAINCTL_POLL_INTERVAL": "waits.poll_interval",
    "CHAINCTL_AWAIT_TIMEOUT": "waits.timeout",
    "CHAINCTL_LOG_LEVEL": "logging.level",
    "CHAINCTL_LOG_FILE": "logging.file",
}


class RpcConfig(BaseModel):
    """How to reach node RPC endpoints."""
    host: str = Field(default="127.0.0.1", description="Host the nodes listen on")
    timeout: float = Field(default=5.0, description="Per-request timeout in seconds")
    attempts: int = Field(default=3, ge=1, description="Attempts per snapshot before giving up")
    backoff: float = Field(default=0.5, ge=0, description="Delay between attempts in seconds")


class WaitConfig(BaseModel):
    """Defaults for await commands."""
    poll_interval: float = Field(default=1.0, gt=0, description="Seconds between polls")
    timeout: float = Field(default=300.0, ge=0, description="Default wait timeout in seconds")


class ProcessConfig(BaseModel):
    """Node process supervision."""
    launcher: Optional[str] = Field(
        default=None,
        description="External launcher prepended to the node command line"
    )
    stop_grace_period: float = Field(default=10.0, ge=0, description="Seconds between SIGTERM and SIGKILL")
    startup_timeout: float = Field(default=60.0, ge=0, description="Seconds to wait for a restarted node")
    max_workers: int = Field(default=10, ge=1, description="Parallel process operations")


class UpgradeConfig(BaseModel):
    """Protocol upgrade orchestration."""
    stages_root: Optional[str] = Field(
        default=None,
        description="Directory holding staged releases as <version>/ subdirectories"
    )
    lead_time: int = Field(default=0, ge=0, description="Swap this many blocks/eras before activation")
    activation_timeout: float = Field(default=3600.0, ge=0, description="Max wait for the activation point")
    verification_timeout: float = Field(default=300.0, ge=0, description="Max wait for post-swap convergence")


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)")
    file: Optional[str] = Field(default=None, description="Path to log file (if None, logs to stderr)")
    max_size_mb: int = Field(default=20, description="Maximum log file size in MB before rotation")
    backup_count: int = Field(default=3, description="Number of backup log files to keep")


class ControllerConfig(BaseModel):
    """chainctl controller configuration."""
    model_config = ConfigDict(extra="ignore")

    assets_root: str = Field(default="~/.chainctl/assets", description="Root directory for generated networks")
    network: str = Field(default="net-1", description="Name of the network to operate on")
    rpc: RpcConfig = Field(default_factory=RpcConfig)
    waits: WaitConfig = Field(default_factory=WaitConfig)
    process: ProcessConfig = Field(default_factory=ProcessConfig)
    upgrade: UpgradeConfig = Field(default_factory=UpgradeConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator('assets_root')
    @classmethod
    def expand_assets_root(cls, v: str) -> str:
        """Expand the user home directory in the assets root."""
        return os.path.expanduser(v)

    @property
    def network_dir(self) -> Path:
        return Path(self.assets_root) / self.network

    @property
    def stages_root(self) -> Path:
        if self.upgrade.stages_root:
            return Path(os.path.expanduser(self.upgrade.stages_root))
        return Path(self.assets_root) / 'stages'

    @classmethod
    def load(
        cls,
        config_path: Optional[Union[str, Path]] = None,
        environ: Optional[Dict[str, str]] = None,
    ) -> 'ControllerConfig':
        """Load configuration from file and environment variables."""
        config_data: Dict[str, Any] = {}

        if config_path:
            config_path = Path(config_path).expanduser().absolute()
            if not config_path.exists():
                raise ConfigurationError(f"Config file not found: {config_path}")
            config_data = cls._load_config_file(config_path)
        else:
            for path in DEFAULT_CONFIG_PATHS:
                path = path.expanduser().absolute()
                if path.exists():
                    config_data = cls._load_config_file(path)
                    break

        _apply_env_overrides(config_data, os.environ if environ is None else environ)

        try:
            return cls(**config_data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

    @classmethod
    def _load_config_file(cls, path: Path) -> Dict[str, Any]:
        """Load configuration from a YAML file."""
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load config from {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {path} must contain a mapping")
        logger.debug(f"Loaded configuration from {path}")
        return data

    def save(self, path: Union[str, Path]) -> None:
        """Save configuration to a file."""
        path = Path(path).expanduser().absolute()
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, 'w') as f:
            yaml.safe_dump(self.model_dump(exclude_none=True), f, default_flow_style=False, sort_keys=False)


def _apply_env_overrides(config_data: Dict[str, Any], environ) -> List[str]:
    applied = []
    for var, dotted in ENV_OVERRIDES.items():
        value = environ.get(var)
        if value in (None, ""):
            continue
        target = config_data
        *parents, leaf = dotted.split('.')
        for part in parents:
            target = target.setdefault(part, {})
        target[leaf] = value
        applied.append(var)
    return applied
