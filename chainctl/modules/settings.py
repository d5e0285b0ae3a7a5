"""Declarative settings for generating a local network."""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import ConfigurationError

logger = logging.getLogger("chainctl.settings")

MAX_PORT = 65535


class ChainSettings(BaseModel):
    """Chainspec parameters written into the genesis chainspec."""
    era_duration: str = Field(default="41seconds", description="Minimum era duration")
    minimum_era_height: int = Field(default=10, ge=1, description="Minimum blocks per era")
    block_time: str = Field(default="4096ms", description="Target block time")
    validator_slots: int = Field(default=100, ge=1, description="Auction validator slots")
    auction_delay: int = Field(default=1, ge=0, description="Eras before a bid takes effect")
    unbonding_delay: int = Field(default=7, ge=0, description="Eras before unbonded stake is released")
    extra: Dict[str, Any] = Field(default_factory=dict, description="Merged verbatim into the chainspec")


class BondingSettings(BaseModel):
    """External commands used to submit bond and unbond requests.

    Each command is an argument list; ``{node_id}``, ``{public_key}``,
    ``{secret_key_path}``, ``{rpc_url}`` and ``{amount}`` are substituted.
    """
    bond_command: Optional[List[str]] = None
    unbond_command: Optional[List[str]] = None
    join_stake: int = Field(default=1_000_000_000, ge=0)
    timeout: float = Field(default=60.0, gt=0)


class NetworkSettings(BaseModel):
    """Everything AssetManager needs to lay out an N-node network."""
    model_config = ConfigDict(extra="forbid")

    name: str = Field(default="net-1", min_length=1, description="Network name")
    node_count: int = Field(default=5, description="Genesis validator count")
    min_nodes: int = Field(default=1, description="Minimum membership a leave may not breach")
    max_nodes: int = Field(default=10, description="Port slots reserved for genesis plus joined nodes")
    host: str = Field(default="127.0.0.1", description="Interface nodes bind to")
    base_network_port: int = Field(default=34000)
    base_rpc_port: int = Field(default=11100)
    base_rest_port: int = Field(default=14100)
    version: str = Field(default="1.0.0", description="Initial protocol/binary version")
    binary_path: Optional[str] = Field(
        default=None,
        description="Node executable; resolved from the staged releases when omitted"
    )
    genesis_stake: int = Field(default=1_000_000_000_000, ge=1, description="Stake of the first validator")
    chain: ChainSettings = Field(default_factory=ChainSettings)
    bonding: BondingSettings = Field(default_factory=BondingSettings)

    @model_validator(mode='after')
    def check_consistency(self) -> 'NetworkSettings':
        if self.node_count < 1:
            raise ValueError("node_count must be at least 1")
        if self.min_nodes < 1:
            raise ValueError("min_nodes must be at least 1")
        if self.min_nodes > self.node_count:
            raise ValueError(f"min_nodes ({self.min_nodes}) exceeds node_count ({self.node_count})")
        if self.max_nodes < self.node_count:
            raise ValueError(f"max_nodes ({self.max_nodes}) is below node_count ({self.node_count})")

        ranges = self.port_ranges()
        for name, (start, end) in ranges.items():
            if start < 1 or end - 1 > MAX_PORT:
                raise ValueError(f"{name} port range {start}-{end - 1} is outside 1-{MAX_PORT}")
        names = list(ranges)
        for i, first in enumerate(names):
            for second in names[i + 1:]:
                a, b = ranges[first], ranges[second]
                if a[0] < b[1] and b[0] < a[1]:
                    raise ValueError(
                        f"{first} ports {a[0]}-{a[1] - 1} overlap {second} ports {b[0]}-{b[1] - 1}"
                    )
        return self

    def port_ranges(self) -> Dict[str, tuple]:
        """Half-open port ranges reserved for each port kind."""
        return {
            'network': (self.base_network_port, self.base_network_port + self.max_nodes),
            'rpc': (self.base_rpc_port, self.base_rpc_port + self.max_nodes),
            'rest': (self.base_rest_port, self.base_rest_port + self.max_nodes),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'NetworkSettings':
        """Build settings, reporting any problem as a ConfigurationError."""
        try:
            return cls(**(data or {}))
        except ValidationError as e:
            raise ConfigurationError(f"Invalid network settings: {e}") from e

    @classmethod
    def load(cls, path: Union[str, Path]) -> 'NetworkSettings':
        """Load settings from a YAML file."""
        path = Path(path).expanduser()
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load network settings from {path}: {e}") from e
        logger.debug(f"Loaded network settings from {path}")
        return cls.from_dict(data)
