"""Blocking waits on chain progress.

A wait polls snapshots from the condition's source node(s) at a fixed
interval and returns the first snapshot that satisfies the condition. If the
deadline passes first, WaitTimeoutError carries the last snapshot seen. A
wait never changes anything on the network.
"""

import logging
import threading
import time
from typing import Callable, Dict, List, Optional

from .errors import RpcUnavailableError, WaitCancelledError, WaitTimeoutError
from .models import AwaitCondition, ChainSnapshot, ConditionKind, NetworkAsset, SourcePolicy
from .monitor import ChainStateMonitor
from .timing import Deadline, Ticker

logger = logging.getLogger("chainctl.await")


class AwaitEngine:
    """Evaluates AwaitConditions against live snapshots.

    Concurrent ``wait`` calls are independent: each owns its baseline,
    deadline and rollback bookkeeping.
    """

    def __init__(
        self,
        monitor: ChainStateMonitor,
        asset: NetworkAsset,
        default_interval: float = 1.0,
        default_timeout: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.monitor = monitor
        self.asset = asset
        self.default_interval = default_interval
        self.default_timeout = default_timeout
        self.clock = clock
        self.sleep = sleep

    def sources(self, condition: AwaitCondition) -> List[str]:
        """Node ids to try, in order, for one polling round."""
        if condition.policy == SourcePolicy.PINNED:
            return [condition.node_id]
        active = self.asset.roster.active()
        if condition.node_id in active:
            start = active.index(condition.node_id)
            return active[start:] + active[:start]
        return active

    def _observe(self, condition: AwaitCondition) -> Optional[ChainSnapshot]:
        for node_id in self.sources(condition):
            try:
                return self.monitor.snapshot(node_id)
            except RpcUnavailableError as e:
                logger.debug(f"Poll skipped {node_id}: {e}")
        return None

    @staticmethod
    def _check_rollback(snapshot: ChainSnapshot, highest: Dict[str, int]) -> None:
        previous = highest.get(snapshot.node_id)
        if previous is not None and snapshot.height < previous:
            logger.warning(
                f"⚠️  Height rollback on {snapshot.node_id}: {previous} -> {snapshot.height}"
            )
        highest[snapshot.node_id] = max(snapshot.height, previous or snapshot.height)

    def wait(
        self,
        condition: AwaitCondition,
        cancel: Optional[threading.Event] = None,
        deadline: Optional[Deadline] = None,
    ) -> ChainSnapshot:
        """Block until ``condition`` holds.

        Args:
            condition: What to wait for and how to poll
            cancel: Optional event that abandons the wait when set
            deadline: Shared deadline overriding ``condition.timeout``

        Returns:
            The first snapshot satisfying the condition

        Raises:
            WaitTimeoutError: If the deadline passed first
            WaitCancelledError: If ``cancel`` was set
        """
        deadline = deadline or Deadline(condition.timeout, self.clock)
        ticker = Ticker(condition.interval, deadline, cancel, self.sleep)
        description = condition.describe()
        highest: Dict[str, int] = {}
        baseline: Optional[ChainSnapshot] = None
        last: Optional[ChainSnapshot] = None

        if condition.needs_baseline:
            baseline = self._observe(condition)
            if baseline is not None:
                highest[baseline.node_id] = baseline.height
                last = baseline
                logger.debug(f"Baseline for '{description}': height={baseline.height} era={baseline.era}")

        logger.info(f"⏳ Waiting for {description} (timeout: {deadline.timeout:g}s)")
        for _ in ticker:
            snapshot = self._observe(condition)
            if deadline.expired():
                # Retries and fallbacks can outlast the deadline; only earlier observations count.
                if snapshot is not None:
                    logger.debug(f"Discarding {snapshot.node_id} height={snapshot.height} observed after the deadline")
                break
            if snapshot is None:
                continue
            self._check_rollback(snapshot, highest)
            last = snapshot
            if condition.needs_baseline and baseline is None:
                baseline = snapshot
                logger.debug(f"Late baseline for '{description}': height={snapshot.height} era={snapshot.era}")
                continue
            if condition.satisfied_by(snapshot, baseline):
                logger.info(f"✅ Reached {description}: height={snapshot.height} era={snapshot.era} "
                            f"on {snapshot.node_id}")
                return snapshot

        if ticker.cancelled:
            raise WaitCancelledError(f"Wait for {description} was cancelled")
        error = WaitTimeoutError(description, deadline.timeout, last)
        logger.error(f"❌ {error}")
        raise error

    # -- convenience ------------------------------------------------------

    def _condition(self, kind: ConditionKind, target: int, timeout: Optional[float],
                   interval: Optional[float], node_id: Optional[str]) -> AwaitCondition:
        return AwaitCondition(
            kind=kind,
            target=target,
            interval=interval or self.default_interval,
            timeout=self.default_timeout if timeout is None else timeout,
            policy=SourcePolicy.PINNED if node_id else SourcePolicy.ANY,
            node_id=node_id,
        )

    def await_blocks(self, count: int, timeout: Optional[float] = None,
                     interval: Optional[float] = None, node_id: Optional[str] = None) -> ChainSnapshot:
        """Wait for ``count`` more blocks."""
        return self.wait(self._condition(ConditionKind.HEIGHT_ADVANCED, count, timeout, interval, node_id))

    def await_until_block(self, height: int, timeout: Optional[float] = None,
                          interval: Optional[float] = None, node_id: Optional[str] = None) -> ChainSnapshot:
        """Wait until the chain reaches ``height``."""
        return self.wait(self._condition(ConditionKind.HEIGHT_AT_LEAST, height, timeout, interval, node_id))

    def await_eras(self, count: int, timeout: Optional[float] = None,
                   interval: Optional[float] = None, node_id: Optional[str] = None) -> ChainSnapshot:
        """Wait for ``count`` more eras."""
        return self.wait(self._condition(ConditionKind.ERA_ADVANCED, count, timeout, interval, node_id))

    def await_until_era(self, era: int, timeout: Optional[float] = None,
                        interval: Optional[float] = None, node_id: Optional[str] = None) -> ChainSnapshot:
        """Wait until the chain reaches ``era``."""
        return self.wait(self._condition(ConditionKind.ERA_AT_LEAST, era, timeout, interval, node_id))
