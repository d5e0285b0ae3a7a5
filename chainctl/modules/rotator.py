"""Adding nodes to and removing nodes from a running fleet."""

import logging
from typing import Optional

from .assets import AssetManager, NodeTemplate
from .bonding import BondingClient
from .errors import ProcessError, RosterError
from .locking import PhaseLock
from .models import NetworkAsset
from .process import ProcessFleetController

logger = logging.getLogger("chainctl.rotator")


class NodeSetRotator:
    """Joins new validators and retires existing ones.

    Bonding is only requested here; whether the auction accepted it is for
    the caller to observe through the monitor or an await.
    """

    def __init__(
        self,
        asset: NetworkAsset,
        assets: AssetManager,
        fleet: ProcessFleetController,
        lock: PhaseLock,
        bonding: Optional[BondingClient] = None,
    ):
        self.asset = asset
        self.assets = assets
        self.fleet = fleet
        self.lock = lock
        self.bonding = bonding

    @staticmethod
    def _busy(holder: str) -> RosterError:
        return RosterError(f"Fleet membership cannot change now: network is locked by {holder}")

    def join(self, node_template: Optional[NodeTemplate] = None) -> str:
        """Add, admit and start a new node.

        Returns:
            The new node id

        Raises:
            ConfigurationError: If no port slot or binary is available
            ProcessError: If the node does not start; it is evicted again
            RosterError: If the bond request fails (the node stays joined)
        """
        with self.lock.hold("join", on_busy=self._busy):
            self.assets.add_node(self.asset, node_template)
            node = self.asset.nodes[-1]
            self.assets.admit(self.asset, node.node_id)
            self.fleet.track(node.node_id)
            try:
                self.fleet.start(node.node_id)
            except ProcessError:
                logger.error(f"❌ {node.node_id} failed to start, evicting it from the roster")
                self.assets.evict(self.asset, node.node_id)
                raise
            logger.info(f"✅ {node.node_id} joined network {self.asset.name} "
                        f"(roster size {len(self.asset.roster)})")

            if self.bonding is not None:
                self.bonding.bond(node, node.stake)
            return node.node_id

    def leave(self, node_id: str) -> None:
        """Unbond, stop and evict a node.

        Raises:
            RosterError: If the node is not a member, or removing it would
                take membership below the configured minimum
        """
        with self.lock.hold(f"leave {node_id}", on_busy=self._busy):
            roster = self.asset.roster
            if node_id not in roster:
                raise RosterError(f"{node_id} is not a member of network {self.asset.name}")
            if len(roster) - 1 < self.asset.min_nodes:
                raise RosterError(
                    f"Removing {node_id} would leave {len(roster) - 1} node(s), "
                    f"below the minimum of {self.asset.min_nodes}"
                )

            node = self.asset.get_node(node_id)
            if self.bonding is not None:
                self.bonding.unbond(node)
            try:
                self.fleet.stop(node_id)
            except ProcessError as e:
                if e.subkind != ProcessError.UNGRACEFUL_STOP:
                    raise
                logger.warning(f"⚠️  {e}")
            self.assets.evict(self.asset, node_id)
            logger.info(f"👋 {node_id} left network {self.asset.name} (roster size {len(roster)})")
