"""Wiring of one network's components.

A Network is the explicit value every CLI handler receives: the loaded asset
plus the AssetManager, fleet controller, monitor, await engine, upgrade
orchestrator and rotator built around it from a ControllerConfig.
"""

import logging
from typing import Optional

from .assets import AssetManager
from .awaiting import AwaitEngine
from .bonding import CommandBondingClient
from .errors import ConfigurationError, ProcessError
from .locking import PhaseLock
from .models import NetworkAsset
from .monitor import ChainStateMonitor
from .process import ProcessFleetController, ProcessSupervisor
from .provenance import BinaryProvenance, DirectoryProvenance
from .rotator import NodeSetRotator
from .rpc import JsonRpcClient, NodeRpcClient
from .settings import NetworkSettings
from .upgrade import UpgradeOrchestrator

logger = logging.getLogger("chainctl.network")

LOCK_FILE = "upgrade.lock"


class Network:
    """All components operating on a single network."""

    def __init__(
        self,
        config,
        asset: NetworkAsset,
        assets: AssetManager,
        client: Optional[NodeRpcClient] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        provenance: Optional[BinaryProvenance] = None,
    ):
        """Build the component graph for ``asset``.

        Args:
            config: ControllerConfig with rpc, waits, process and upgrade sections
            asset: The loaded network
            assets: AssetManager that owns ``asset``
            client: RPC client; JSON-RPC over HTTP by default
            supervisor: Process primitives; subprocess-based by default
            provenance: Release source; the configured stages directory by default
        """
        self.config = config
        self.asset = asset
        self.assets = assets
        self.client = client or JsonRpcClient(host=config.rpc.host, timeout=config.rpc.timeout)
        self.provenance = provenance or DirectoryProvenance(config.stages_root)
        self.fleet = ProcessFleetController(
            asset,
            binary_resolver=lambda version: assets.binary_path(asset, version),
            supervisor=supervisor,
            launcher=config.process.launcher,
            stop_grace_period=config.process.stop_grace_period,
            max_workers=config.process.max_workers,
        )
        self.monitor = ChainStateMonitor(
            asset, self.client, attempts=config.rpc.attempts, backoff=config.rpc.backoff
        )
        self.engine = AwaitEngine(
            self.monitor, asset,
            default_interval=config.waits.poll_interval,
            default_timeout=config.waits.timeout,
        )
        self.lock = PhaseLock(asset.base_dir / LOCK_FILE)
        self.orchestrator = UpgradeOrchestrator(
            asset, assets, self.fleet, self.monitor, self.engine, self.provenance, self.lock,
            lead_time=config.upgrade.lead_time,
            activation_timeout=config.upgrade.activation_timeout,
            verification_timeout=config.upgrade.verification_timeout,
            restart_timeout=config.process.startup_timeout,
            poll_interval=config.waits.poll_interval,
        )
        bonding = NetworkSettings.from_dict(asset.settings).bonding
        self.rotator = NodeSetRotator(
            asset, assets, self.fleet, self.lock,
            bonding=CommandBondingClient(
                bonding.bond_command, bonding.unbond_command,
                rpc_host=config.rpc.host, timeout=bonding.timeout,
            ),
        )

    @property
    def name(self) -> str:
        return self.asset.name

    @classmethod
    def setup(cls, config, settings: NetworkSettings, **components) -> 'Network':
        """Generate a new network from ``settings`` and wrap it.

        The initial binary comes from ``settings.binary_path`` or, when that
        is unset, from the staged release matching ``settings.version``.
        """
        assets = AssetManager(config.assets_root)
        release = None
        if not settings.binary_path:
            provenance = components.get('provenance') or DirectoryProvenance(config.stages_root)
            release = provenance.resolve(settings.version)
        asset = assets.generate(settings, release)
        return cls(config, asset, assets, **components)

    @classmethod
    def open(cls, config, name: Optional[str] = None, **components) -> 'Network':
        """Load an existing network (``config.network`` by default)."""
        assets = AssetManager(config.assets_root)
        asset = assets.load(name or config.network)
        return cls(config, asset, assets, **components)

    def node_ids(self, selector: str):
        """Expand ``all`` or a single node id into a list of node ids."""
        if selector == "all":
            return list(self.asset.roster.admitted)
        if self.asset.get_node(selector) is None:
            raise ProcessError(selector, ProcessError.UNKNOWN_NODE, f"not part of network {self.name}")
        return [selector]

    def teardown(self) -> None:
        """Stop every node and remove the network's directory."""
        if self.lock.held():
            raise ConfigurationError(f"Network {self.name} is locked by {self.lock.holder()}")
        errors = self.fleet.stop_many(self.asset.node_ids())
        for error in errors.values():
            if getattr(error, 'subkind', None) != ProcessError.UNGRACEFUL_STOP:
                raise error
            logger.warning(f"⚠️  {error}")
        self.assets.teardown(self.asset)

