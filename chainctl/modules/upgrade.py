"""Protocol upgrade orchestration.

An upgrade moves through ``Planned -> Staged -> Activating -> Verifying ->
Complete``; ``Failed`` is terminal and reachable from Staged, Activating and
Verifying. A failed rollout is never rolled back automatically: the fleet is
left in its mixed-version state and the record names the nodes that failed.
"""

import logging
import threading
from typing import Any, Dict, Optional

from .assets import AssetManager, upgraded_chainspec
from .awaiting import AwaitEngine
from .errors import (
    ConfigurationError,
    ProcessError,
    RpcUnavailableError,
    UpgradeError,
    WaitCancelledError,
    WaitTimeoutError,
)
from .locking import PhaseLock
from .models import (
    ActivationPoint,
    AwaitCondition,
    ChainSnapshot,
    ConditionKind,
    NetworkAsset,
    RolloutStrategy,
    SourcePolicy,
    UpgradePhase,
    UpgradePlan,
    UpgradeRecord,
)
from .monitor import ChainStateMonitor, normalize_version
from .process import ProcessFleetController
from .provenance import BinaryProvenance
from .timing import Deadline, Ticker

logger = logging.getLogger("chainctl.upgrade")


def _version_key(version: str):
    try:
        return tuple(int(part) for part in normalize_version(version).split('.'))
    except (AttributeError, ValueError):
        return None


class UpgradeOrchestrator:
    """Drives one network through protocol upgrades."""

    def __init__(
        self,
        asset: NetworkAsset,
        assets: AssetManager,
        fleet: ProcessFleetController,
        monitor: ChainStateMonitor,
        engine: AwaitEngine,
        provenance: BinaryProvenance,
        lock: PhaseLock,
        lead_time: int = 0,
        activation_timeout: float = 3600.0,
        verification_timeout: float = 300.0,
        restart_timeout: float = 60.0,
        poll_interval: float = 1.0,
    ):
        self.asset = asset
        self.assets = assets
        self.fleet = fleet
        self.monitor = monitor
        self.engine = engine
        self.provenance = provenance
        self.lock = lock
        self.lead_time = lead_time
        self.activation_timeout = activation_timeout
        self.verification_timeout = verification_timeout
        self.restart_timeout = restart_timeout
        self.poll_interval = poll_interval

    # -- helpers ----------------------------------------------------------

    def observe(self) -> Optional[ChainSnapshot]:
        """Most advanced snapshot among reachable active nodes."""
        snapshots, _ = self.monitor.snapshot_all(self.asset.roster.active())
        if not snapshots:
            return None
        return max(snapshots.values(), key=lambda s: (s.height, s.era))

    def _persist(self, record: UpgradeRecord) -> None:
        self.assets.write_record(self.asset, record.plan.version, record.to_dict())

    def _check_version(self, version: str) -> None:
        current = self.asset.protocol_version
        new_key, current_key = _version_key(version), _version_key(current)
        if new_key is not None and current_key is not None:
            if new_key <= current_key:
                raise UpgradeError(
                    UpgradeError.STAGE_VALIDATION,
                    f"version {version} is not newer than running protocol {current}",
                )
        elif normalize_version(version) == normalize_version(current):
            raise UpgradeError(UpgradeError.STAGE_VALIDATION, f"network already runs {current}")

    @staticmethod
    def _check_activation(point: ActivationPoint, observed: ChainSnapshot) -> None:
        if point.value <= point.observed(observed):
            raise UpgradeError(
                UpgradeError.STAGE_VALIDATION,
                f"activation point {point} is not ahead of observed {point.kind.value} "
                f"{point.observed(observed)}",
            )

    def _resolve(self, record: UpgradeRecord) -> None:
        version = record.plan.version
        try:
            release = self.provenance.resolve(version)
            upgraded_chainspec(self.asset.chainspec, release, record.plan)
        except ConfigurationError as e:
            record.error = str(e)
            raise UpgradeError(UpgradeError.STAGE_VALIDATION, str(e)) from e
        record.staged = release

    # -- state machine ----------------------------------------------------

    def plan(
        self,
        version: str,
        activation_point: ActivationPoint,
        strategy: RolloutStrategy = RolloutStrategy.BIG_BANG,
        chainspec_delta: Optional[Dict[str, Any]] = None,
    ) -> UpgradeRecord:
        """Create an upgrade plan.

        Raises:
            UpgradeError: ``stage-validation`` if the activation point is not
                strictly ahead of the fleet or the version is not newer
        """
        self._check_version(version)
        observed = self.observe()
        if observed is None:
            raise UpgradeError(UpgradeError.STAGE_VALIDATION, "no node is reachable to observe the chain")
        self._check_activation(activation_point, observed)
        plan = UpgradePlan(
            version=version,
            activation_point=activation_point,
            strategy=strategy,
            chainspec_delta=chainspec_delta or {},
            observed_height=observed.height,
            observed_era=observed.era,
        )
        logger.info(f"📋 Planned upgrade to {version} at {activation_point} ({strategy.value}); "
                    f"fleet at height {observed.height}, era {observed.era}")
        return UpgradeRecord(plan=plan)

    def stage(self, record: UpgradeRecord) -> UpgradeRecord:
        """Planned -> Staged: fetch and validate the release."""
        if record.phase != UpgradePhase.PLANNED:
            raise UpgradeError(UpgradeError.INVALID_TRANSITION, f"cannot stage from {record.phase.value}")
        self._resolve(record)
        observed = self.observe()
        if observed is not None:
            self._check_activation(record.plan.activation_point, observed)
        record.transition(UpgradePhase.STAGED)
        self._persist(record)
        logger.info(f"📦 Staged {record.plan.version} from {record.staged.source or record.staged.binary_path}")
        return record

    def activate(self, record: UpgradeRecord, cancel: Optional[threading.Event] = None) -> UpgradeRecord:
        """Wait for the activation point, then swap the fleet.

        Holds the network's phase lock for the whole activation so no join,
        leave or second upgrade can change the network meanwhile.
        """
        plan = record.plan
        expected = UpgradePhase.PLANNED if plan.emergency else UpgradePhase.STAGED
        if record.phase != expected:
            raise UpgradeError(UpgradeError.INVALID_TRANSITION, f"cannot activate from {record.phase.value}")

        def busy(holder: str) -> UpgradeError:
            return UpgradeError(UpgradeError.UPGRADE_IN_PROGRESS, f"network is locked by {holder}")

        with self.lock.hold(f"upgrade to {plan.version}", on_busy=busy):
            if not plan.emergency:
                self._await_activation(record, cancel)
            record.transition(UpgradePhase.ACTIVATING)
            self._persist(record)
            try:
                if plan.strategy == RolloutStrategy.ROLLING:
                    self._rolling_swap(record)
                else:
                    self._big_bang_swap(record)
            except UpgradeError as e:
                record.fail(e)
                self._persist(record)
                logger.error(f"❌ Rollout of {plan.version} halted: {e}")
                raise
            self.assets.regenerate_chainspec(
                self.asset, upgraded_chainspec(self.asset.chainspec, record.staged, plan), replace=True
            )
        return record

    def _await_activation(self, record: UpgradeRecord, cancel: Optional[threading.Event]) -> None:
        point = record.plan.activation_point
        target = max(point.value - self.lead_time, 0)
        condition = AwaitCondition(
            kind=point.condition_kind(),
            target=target,
            interval=self.poll_interval,
            timeout=self.activation_timeout,
            policy=SourcePolicy.ANY,
            label=f"activation point {point}" + (f" minus lead {self.lead_time}" if self.lead_time else ""),
        )
        try:
            self.engine.wait(condition, cancel=cancel)
        except (WaitTimeoutError, WaitCancelledError) as e:
            record.fail(e)
            self._persist(record)
            raise

    def _confirm_running(self, node_id: str) -> bool:
        """Wait until a restarted node runs and answers RPC, or crashes."""
        ticker = Ticker(self.poll_interval, Deadline(self.restart_timeout, self.engine.clock), sleep=self.engine.sleep)
        for _ in ticker:
            if self.fleet.crash_check(node_id):
                logger.error(f"💥 {node_id} crashed after restart")
                return False
            try:
                self.monitor.snapshot(node_id)
                return True
            except RpcUnavailableError:
                continue
        logger.error(f"❌ {node_id} did not answer RPC within {self.restart_timeout:g}s of restart")
        return False

    def _stop_for_swap(self, node_id: str) -> None:
        try:
            self.fleet.stop(node_id)
        except ProcessError as e:
            if e.subkind != ProcessError.UNGRACEFUL_STOP:
                raise
            logger.warning(f"⚠️  {e}")

    def _big_bang_swap(self, record: UpgradeRecord) -> None:
        node_ids = list(self.asset.roster.admitted)
        logger.info(f"🔁 Big-bang swap of {len(node_ids)} node(s) to {record.plan.version}")

        errors = self.fleet.stop_many(node_ids)
        failed = [n for n, e in errors.items() if getattr(e, 'subkind', None) != ProcessError.UNGRACEFUL_STOP]
        if failed:
            record.failed_nodes = sorted(failed)
            raise UpgradeError(UpgradeError.PARTIAL_ROLLOUT_FAILURE, "nodes failed to stop", record.failed_nodes)

        for node_id in node_ids:
            try:
                self.assets.apply_upgrade(self.asset, node_id, record.staged, record.plan)
            except ConfigurationError as e:
                record.failed_nodes = [node_id]
                raise UpgradeError(UpgradeError.PARTIAL_ROLLOUT_FAILURE, str(e), [node_id]) from e
            record.upgraded_nodes.append(node_id)

        errors = self.fleet.start_many(node_ids)
        failed = set(errors)
        for node_id in node_ids:
            if node_id not in failed and not self._confirm_running(node_id):
                failed.add(node_id)
        if failed:
            record.failed_nodes = [n for n in node_ids if n in failed]
            raise UpgradeError(UpgradeError.PARTIAL_ROLLOUT_FAILURE, "nodes failed to restart", record.failed_nodes)

    def _rolling_swap(self, record: UpgradeRecord) -> None:
        node_ids = list(self.asset.roster.admitted)
        logger.info(f"🔁 Rolling swap of {len(node_ids)} node(s) to {record.plan.version}")
        for node_id in node_ids:
            self.assets.suspend(self.asset, node_id)
            try:
                self._stop_for_swap(node_id)
                self.assets.apply_upgrade(self.asset, node_id, record.staged, record.plan)
                self.fleet.start(node_id)
                confirmed = self._confirm_running(node_id)
            except (ProcessError, ConfigurationError) as e:
                logger.error(f"❌ {node_id}: {e}")
                confirmed = False
            finally:
                self.assets.resume(self.asset, node_id)
            if not confirmed:
                record.failed_nodes = [node_id]
                raise UpgradeError(UpgradeError.PARTIAL_ROLLOUT_FAILURE, "node failed to restart", [node_id])
            record.upgraded_nodes.append(node_id)
            logger.info(f"✅ {node_id} upgraded ({len(record.upgraded_nodes)}/{len(node_ids)})")

    def verify(self, record: UpgradeRecord) -> UpgradeRecord:
        """Activating -> Verifying -> Complete, or Failed on timeout."""
        plan = record.plan
        record.transition(UpgradePhase.VERIFYING)
        self._persist(record)
        deadline = Deadline(self.verification_timeout, self.engine.clock)
        target_version = normalize_version(plan.version)
        try:
            if plan.activation_point is not None:
                crossing = AwaitCondition(
                    kind=plan.activation_point.condition_kind(),
                    target=plan.activation_point.value,
                    interval=self.poll_interval,
                    timeout=self.verification_timeout,
                    label=f"fleet to cross {plan.activation_point}",
                )
            else:
                crossing = AwaitCondition(
                    kind=ConditionKind.HEIGHT_ADVANCED,
                    target=1,
                    interval=self.poll_interval,
                    timeout=self.verification_timeout,
                    label="chain to advance after emergency upgrade",
                )
            self.engine.wait(crossing, deadline=deadline)
            for node_id in list(self.asset.roster.admitted):
                self.engine.wait(AwaitCondition(
                    kind=ConditionKind.CUSTOM,
                    interval=self.poll_interval,
                    timeout=self.verification_timeout,
                    policy=SourcePolicy.PINNED,
                    node_id=node_id,
                    predicate=lambda s: s.version == target_version,
                    label=f"{node_id} to report version {target_version}",
                ), deadline=deadline)
        except WaitTimeoutError as e:
            error = UpgradeError(UpgradeError.VERIFICATION_TIMEOUT, str(e))
            record.fail(error)
            self._persist(record)
            raise error from e
        record.transition(UpgradePhase.COMPLETE)
        self._persist(record)
        logger.info(f"🎉 Upgrade to {plan.version} complete")
        return record

    def run(
        self,
        version: str,
        activation_point: ActivationPoint,
        strategy: RolloutStrategy = RolloutStrategy.BIG_BANG,
        chainspec_delta: Optional[Dict[str, Any]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> UpgradeRecord:
        """Plan, stage, activate and verify an upgrade."""
        record = self.plan(version, activation_point, strategy, chainspec_delta)
        self.stage(record)
        self.activate(record, cancel=cancel)
        return self.verify(record)

    def emergency(self, version: str, chainspec_delta: Optional[Dict[str, Any]] = None) -> UpgradeRecord:
        """Swap the whole fleet to ``version`` immediately, whatever its height."""
        self._check_version(version)
        observed = self.observe()
        plan = UpgradePlan(
            version=version,
            activation_point=None,
            strategy=RolloutStrategy.BIG_BANG,
            chainspec_delta=chainspec_delta or {},
            observed_height=observed.height if observed else None,
            observed_era=observed.era if observed else None,
            emergency=True,
        )
        record = UpgradeRecord(plan=plan)
        logger.warning(f"🚨 Emergency upgrade to {version}"
                       + (f" at height {observed.height}" if observed else " (no node reachable)"))
        self._resolve(record)
        self.activate(record)
        return self.verify(record)
