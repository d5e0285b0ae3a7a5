"""Data models for local test networks."""

import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from .errors import ConfigurationError, UpgradeError


@dataclass
class NodeDescriptor:
    """Represents one node of a network as laid out on disk."""
    node_id: str
    index: int
    public_key: str
    secret_key_path: str
    network_port: int
    rpc_port: int
    rest_port: int
    data_dir: str
    binary_version: str
    stake: int = 0
    genesis_validator: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'node_id': self.node_id,
            'index': self.index,
            'public_key': self.public_key,
            'secret_key_path': self.secret_key_path,
            'network_port': self.network_port,
            'rpc_port': self.rpc_port,
            'rest_port': self.rest_port,
            'data_dir': self.data_dir,
            'binary_version': self.binary_version,
            'stake': self.stake,
            'genesis_validator': self.genesis_validator,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'NodeDescriptor':
        return cls(**data)


@dataclass
class FleetRoster:
    """Authoritative membership of a fleet.

    ``admitted`` keeps roster order, which is also the order used for
    rolling rollouts and for "any node" polling fallback. ``suspended`` holds
    members that are temporarily taken out of rotation (mid-swap) without
    changing membership.
    """
    admitted: List[str] = field(default_factory=list)
    suspended: Set[str] = field(default_factory=set)

    def __len__(self) -> int:
        return len(self.admitted)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self.admitted

    def active(self) -> List[str]:
        return [n for n in self.admitted if n not in self.suspended]

    def admit(self, node_id: str) -> None:
        if node_id not in self.admitted:
            self.admitted.append(node_id)
        self.suspended.discard(node_id)

    def evict(self, node_id: str) -> None:
        if node_id in self.admitted:
            self.admitted.remove(node_id)
        self.suspended.discard(node_id)

    def suspend(self, node_id: str) -> None:
        if node_id in self.admitted:
            self.suspended.add(node_id)

    def resume(self, node_id: str) -> None:
        self.suspended.discard(node_id)

    def to_dict(self) -> Dict[str, Any]:
        return {'admitted': list(self.admitted), 'suspended': sorted(self.suspended)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FleetRoster':
        return cls(
            admitted=list(data.get('admitted', [])),
            suspended=set(data.get('suspended', [])),
        )


@dataclass
class NetworkAsset:
    """Everything needed to boot one network: nodes, chainspec and roster."""
    name: str
    base_dir: Path
    nodes: List[NodeDescriptor]
    chainspec: Dict[str, Any]
    roster: FleetRoster
    min_nodes: int
    settings: Dict[str, Any] = field(default_factory=dict)

    def get_node(self, node_id: str) -> Optional[NodeDescriptor]:
        return next((n for n in self.nodes if n.node_id == node_id), None)

    def node_ids(self) -> List[str]:
        return [n.node_id for n in self.nodes]

    def node_dir(self, node_id: str) -> Path:
        return self.base_dir / 'nodes' / node_id

    @property
    def protocol_version(self) -> str:
        return str(self.chainspec.get('protocol', {}).get('version', ''))


class NodeState(str, Enum):
    """Lifecycle states of a node process."""
    STOPPED = 'stopped'
    STARTING = 'starting'
    RUNNING = 'running'
    STOPPING = 'stopping'
    CRASHED = 'crashed'


@dataclass
class NodeProcess:
    """Runtime view of one node process, owned by the fleet controller."""
    node_id: str
    state: NodeState = NodeState.STOPPED
    pid: Optional[int] = None
    handle: Any = None
    last_seen: Optional[float] = None
    exit_code: Optional[int] = None


@dataclass(frozen=True)
class ChainSnapshot:
    """A single observation of a node's chain state."""
    node_id: str
    height: int
    era: int
    state_root_hash: Optional[str]
    peer_count: int
    version: Optional[str] = None
    block_hash: Optional[str] = None
    captured_at: float = field(default_factory=time.time)


class ConditionKind(str, Enum):
    """Predicates an await condition can express."""
    HEIGHT_AT_LEAST = 'height-at-least'
    HEIGHT_ADVANCED = 'height-advanced'
    ERA_AT_LEAST = 'era-at-least'
    ERA_ADVANCED = 'era-advanced'
    CUSTOM = 'custom'


class SourcePolicy(str, Enum):
    """Which node(s) an await condition reads from."""
    PINNED = 'pinned'
    ANY = 'any'


@dataclass
class AwaitCondition:
    """A predicate over chain snapshots plus the polling parameters."""
    kind: ConditionKind
    target: int = 0
    interval: float = 1.0
    timeout: float = 60.0
    policy: SourcePolicy = SourcePolicy.ANY
    node_id: Optional[str] = None
    predicate: Optional[Callable[[ChainSnapshot], bool]] = None
    label: Optional[str] = None

    def __post_init__(self):
        if self.interval <= 0:
            raise ConfigurationError("Polling interval must be positive")
        if self.timeout < 0:
            raise ConfigurationError("Timeout must not be negative")
        if self.policy == SourcePolicy.PINNED and not self.node_id:
            raise ConfigurationError("A pinned await condition needs a node id")
        if self.kind == ConditionKind.CUSTOM and self.predicate is None:
            raise ConfigurationError("A custom await condition needs a predicate")

    @property
    def needs_baseline(self) -> bool:
        return self.kind in (ConditionKind.HEIGHT_ADVANCED, ConditionKind.ERA_ADVANCED)

    def describe(self) -> str:
        if self.label:
            return self.label
        return {
            ConditionKind.HEIGHT_AT_LEAST: f"height >= {self.target}",
            ConditionKind.HEIGHT_ADVANCED: f"height to advance by {self.target}",
            ConditionKind.ERA_AT_LEAST: f"era >= {self.target}",
            ConditionKind.ERA_ADVANCED: f"era to advance by {self.target}",
            ConditionKind.CUSTOM: "custom condition",
        }[self.kind]

    def satisfied_by(self, snapshot: ChainSnapshot, baseline: Optional[ChainSnapshot] = None) -> bool:
        if self.kind == ConditionKind.HEIGHT_AT_LEAST:
            return snapshot.height >= self.target
        if self.kind == ConditionKind.ERA_AT_LEAST:
            return snapshot.era >= self.target
        if self.kind == ConditionKind.HEIGHT_ADVANCED:
            return baseline is not None and snapshot.height >= baseline.height + self.target
        if self.kind == ConditionKind.ERA_ADVANCED:
            return baseline is not None and snapshot.era >= baseline.era + self.target
        return bool(self.predicate(snapshot))


class ActivationKind(str, Enum):
    HEIGHT = 'height'
    ERA = 'era'


@dataclass(frozen=True)
class ActivationPoint:
    """The height or era at which a staged upgrade takes effect."""
    kind: ActivationKind
    value: int

    @classmethod
    def parse(cls, text: str) -> 'ActivationPoint':
        """Parse ``height:<n>`` or ``era:<n>``; a bare number means an era."""
        kind, sep, value = text.partition(':')
        if not sep:
            kind, value = ActivationKind.ERA.value, text
        try:
            return cls(ActivationKind(kind.strip().lower()), int(value))
        except ValueError:
            raise ConfigurationError(
                f"Invalid activation point '{text}', expected height:<n> or era:<n>"
            ) from None

    def observed(self, snapshot: ChainSnapshot) -> int:
        return snapshot.height if self.kind == ActivationKind.HEIGHT else snapshot.era

    def reached_by(self, snapshot: ChainSnapshot) -> bool:
        return self.observed(snapshot) >= self.value

    def condition_kind(self) -> ConditionKind:
        if self.kind == ActivationKind.HEIGHT:
            return ConditionKind.HEIGHT_AT_LEAST
        return ConditionKind.ERA_AT_LEAST

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.value}"


class RolloutStrategy(str, Enum):
    BIG_BANG = 'big-bang'
    ROLLING = 'rolling'


class UpgradePhase(str, Enum):
    """States of the upgrade state machine."""
    PLANNED = 'planned'
    STAGED = 'staged'
    ACTIVATING = 'activating'
    VERIFYING = 'verifying'
    COMPLETE = 'complete'
    FAILED = 'failed'


ALLOWED_TRANSITIONS: Dict[UpgradePhase, Tuple[UpgradePhase, ...]] = {
    UpgradePhase.PLANNED: (UpgradePhase.STAGED, UpgradePhase.ACTIVATING),
    UpgradePhase.STAGED: (UpgradePhase.ACTIVATING, UpgradePhase.FAILED),
    UpgradePhase.ACTIVATING: (UpgradePhase.VERIFYING, UpgradePhase.FAILED),
    UpgradePhase.VERIFYING: (UpgradePhase.COMPLETE, UpgradePhase.FAILED),
    UpgradePhase.COMPLETE: (),
    UpgradePhase.FAILED: (),
}


@dataclass
class UpgradePlan:
    """What to upgrade to, when, and how to roll it out."""
    version: str
    activation_point: Optional[ActivationPoint]
    strategy: RolloutStrategy = RolloutStrategy.BIG_BANG
    chainspec_delta: Dict[str, Any] = field(default_factory=dict)
    observed_height: Optional[int] = None
    observed_era: Optional[int] = None
    emergency: bool = False
    created_at: float = field(default_factory=time.time)


@dataclass
class UpgradeRecord:
    """Progress of one upgrade through the state machine."""
    plan: UpgradePlan
    phase: UpgradePhase = UpgradePhase.PLANNED
    history: List[Tuple[str, float]] = field(default_factory=list)
    failed_nodes: List[str] = field(default_factory=list)
    upgraded_nodes: List[str] = field(default_factory=list)
    error: Optional[str] = None
    staged: Any = None

    def __post_init__(self):
        if not self.history:
            self.history.append((self.phase.value, time.time()))

    def transition(self, phase: UpgradePhase) -> None:
        """Move to ``phase``, rejecting moves the state machine does not allow.

        The emergency path may go straight from Planned to Activating.
        """
        allowed = ALLOWED_TRANSITIONS[self.phase]
        if phase not in allowed or (
            self.phase == UpgradePhase.PLANNED
            and phase == UpgradePhase.ACTIVATING
            and not self.plan.emergency
        ):
            raise UpgradeError(
                UpgradeError.INVALID_TRANSITION,
                f"cannot move from {self.phase.value} to {phase.value}",
            )
        self.phase = phase
        self.history.append((phase.value, time.time()))

    def fail(self, error: Exception) -> None:
        self.error = str(error)
        if UpgradePhase.FAILED in ALLOWED_TRANSITIONS[self.phase]:
            self.transition(UpgradePhase.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        plan = self.plan
        return {
            'version': plan.version,
            'activation_point': str(plan.activation_point) if plan.activation_point else None,
            'strategy': plan.strategy.value,
            'emergency': plan.emergency,
            'observed_height': plan.observed_height,
            'observed_era': plan.observed_era,
            'chainspec_delta': plan.chainspec_delta,
            'phase': self.phase.value,
            'history': [{'phase': p, 'at': ts} for p, ts in self.history],
            'upgraded_nodes': list(self.upgraded_nodes),
            'failed_nodes': list(self.failed_nodes),
            'error': self.error,
        }
