"""Chain state observation over node RPC."""

import logging
import time
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from .errors import RpcUnavailableError
from .models import ChainSnapshot, NetworkAsset
from .rpc import NodeRpcClient, parse_metrics
from .utils import retry

logger = logging.getLogger("chainctl.monitor")


def normalize_version(version: Optional[str]) -> Optional[str]:
    """``1_5_0`` and ``1.5.0-abc123`` both become ``1.5.0``."""
    if not version:
        return None
    return str(version).strip().split('-')[0].replace('_', '.')


def snapshot_from_status(node_id: str, status: Dict[str, Any],
                         clock: Callable[[], float] = time.time) -> ChainSnapshot:
    """Turn an ``info_get_status`` result into a ChainSnapshot.

    Raises:
        RpcUnavailableError: If the node has no block yet
    """
    block = status.get('last_added_block_info')
    if not block:
        raise RpcUnavailableError(node_id, "node has not added a block yet")
    return ChainSnapshot(
        node_id=node_id,
        height=int(block['height']),
        era=int(block['era_id']),
        state_root_hash=block.get('state_root_hash'),
        peer_count=len(status.get('peers') or []),
        version=normalize_version(status.get('api_version') or status.get('build_version')),
        block_hash=block.get('hash'),
        captured_at=clock(),
    )


class ChainStateMonitor:
    """Takes chain snapshots from individual nodes.

    Each snapshot is one status round-trip, retried a fixed number of times
    with a short backoff so a node that is mid-restart does not immediately
    count as unreachable.
    """

    def __init__(
        self,
        asset: NetworkAsset,
        client: NodeRpcClient,
        attempts: int = 3,
        backoff: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.asset = asset
        self.client = client
        self.attempts = attempts
        self.backoff = backoff
        self._sleep = sleep
        self._clock = clock

    def _node(self, node_id: str):
        node = self.asset.get_node(node_id)
        if node is None:
            raise RpcUnavailableError(node_id, f"not part of network {self.asset.name}")
        return node

    def snapshot(self, node_id: str) -> ChainSnapshot:
        """Observe one node.

        Raises:
            RpcUnavailableError: If the node stayed unreachable for every attempt
        """
        node = self._node(node_id)

        @retry(attempts=self.attempts, delay=self.backoff,
               exceptions=(RpcUnavailableError,), sleep=self._sleep)
        def fetch() -> ChainSnapshot:
            return snapshot_from_status(node_id, self.client.get_status(node), self._clock)

        try:
            return fetch()
        except RpcUnavailableError as e:
            logger.debug(f"{node_id} unreachable after {self.attempts} attempt(s): {e}")
            raise

    def snapshot_all(
        self, node_ids: Iterable[str]
    ) -> Tuple[Dict[str, ChainSnapshot], Dict[str, RpcUnavailableError]]:
        """Observe several nodes; unreachable ones are returned as errors."""
        snapshots: Dict[str, ChainSnapshot] = {}
        errors: Dict[str, RpcUnavailableError] = {}
        for node_id in node_ids:
            try:
                snapshots[node_id] = self.snapshot(node_id)
            except RpcUnavailableError as e:
                errors[node_id] = e
        return snapshots, errors

    def metrics(self, node_id: str) -> Dict[str, float]:
        """Scrape a node's metrics endpoint."""
        return parse_metrics(self.client.get_metrics(self._node(node_id)))
