"""
Network control modules.
"""
from .assets import AssetManager, NodeTemplate
from .awaiting import AwaitEngine
from .errors import (
    ChainctlError,
    ConfigurationError,
    ProcessError,
    RosterError,
    RpcUnavailableError,
    UpgradeError,
    WaitCancelledError,
    WaitTimeoutError,
)
from .monitor import ChainStateMonitor
from .network import Network
from .process import ProcessFleetController
from .rotator import NodeSetRotator
from .settings import NetworkSettings
from .upgrade import UpgradeOrchestrator

__all__ = [
    'AssetManager',
    'NodeTemplate',
    'AwaitEngine',
    'ChainctlError',
    'ConfigurationError',
    'ProcessError',
    'RosterError',
    'RpcUnavailableError',
    'UpgradeError',
    'WaitCancelledError',
    'WaitTimeoutError',
    'ChainStateMonitor',
    'Network',
    'ProcessFleetController',
    'NodeSetRotator',
    'NetworkSettings',
    'UpgradeOrchestrator',
]
