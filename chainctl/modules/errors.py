"""Error types raised by chainctl operations.

Every failure that crosses a component boundary is one of these. The CLI
turns any of them into a non-zero exit code and a one-line message.
"""
from typing import Iterable, List, Optional


class ChainctlError(Exception):
    """Base class for all chainctl errors."""
    exit_code = 1


class ConfigurationError(ChainctlError):
    """Settings are invalid or internally inconsistent.

    Raised before any side effect takes place.
    """


class ProcessError(ChainctlError):
    """A node process could not be started, stopped or restarted."""

    START_FAILED = 'start-failed'
    STOP_FAILED = 'stop-failed'
    UNGRACEFUL_STOP = 'ungraceful-stop'
    UNKNOWN_NODE = 'unknown-node'

    def __init__(self, node_id: str, subkind: str, message: str = ''):
        self.node_id = node_id
        self.subkind = subkind
        super().__init__(f"{node_id}: {subkind}{': ' + message if message else ''}")


class RpcUnavailableError(ChainctlError):
    """A single node's RPC endpoint could not be reached."""

    def __init__(self, node_id: str, message: str = ''):
        self.node_id = node_id
        super().__init__(f"RPC unavailable on {node_id}{': ' + message if message else ''}")


class WaitTimeoutError(ChainctlError, TimeoutError):
    """An await condition was not met before its deadline.

    Attributes:
        last_snapshot: The last snapshot observed during the wait, or None if
            no node was ever reachable.
    """

    def __init__(self, description: str, timeout: float, last_snapshot=None):
        self.description = description
        self.timeout = timeout
        self.last_snapshot = last_snapshot
        observed = (
            f"last observed height={last_snapshot.height} era={last_snapshot.era} "
            f"on {last_snapshot.node_id}"
            if last_snapshot is not None else "no node was reachable"
        )
        super().__init__(f"Timed out after {timeout:g}s waiting for {description} ({observed})")


class WaitCancelledError(ChainctlError):
    """A wait was cancelled by its caller before it completed."""


class UpgradeError(ChainctlError):
    """A protocol upgrade could not proceed or did not converge."""

    STAGE_VALIDATION = 'stage-validation'
    PARTIAL_ROLLOUT_FAILURE = 'partial-rollout-failure'
    VERIFICATION_TIMEOUT = 'verification-timeout'
    UPGRADE_IN_PROGRESS = 'upgrade-in-progress'
    INVALID_TRANSITION = 'invalid-transition'

    def __init__(self, reason: str, message: str = '', node_ids: Optional[Iterable[str]] = None):
        self.reason = reason
        self.node_ids: List[str] = list(node_ids or [])
        detail = message
        if self.node_ids:
            detail = f"{detail} (nodes: {', '.join(self.node_ids)})".strip()
        super().__init__(f"{reason}: {detail}" if detail else reason)


class RosterError(ChainctlError):
    """A roster change would violate fleet membership rules."""
