import random
import threading
from types import SimpleNamespace

import pytest

from chainctl.modules.assets import AssetManager
from chainctl.modules.awaiting import AwaitEngine
from chainctl.modules.bonding import BondingClient
from chainctl.modules.errors import RpcUnavailableError
from chainctl.modules.locking import PhaseLock
from chainctl.modules.monitor import ChainStateMonitor
from chainctl.modules.process import ProcessFleetController, ProcessSupervisor
from chainctl.modules.provenance import DirectoryProvenance
from chainctl.modules.rotator import NodeSetRotator
from chainctl.modules.rpc import NodeRpcClient
from chainctl.modules.settings import NetworkSettings
from chainctl.modules.upgrade import UpgradeOrchestrator

NODE_SCRIPT = "#!/bin/sh\nexec sleep 30\n"


class FakeClock:
    """Monotonic clock that only moves when something sleeps."""

    def __init__(self, start=0.0):
        self.now = start
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class FakeHandle:
    def __init__(self, node_id, pid, alive=True, exit_code=None, ignores_term=False):
        self.node_id = node_id
        self.pid = pid
        self.alive = alive
        self.exit_code = exit_code
        self.ignores_term = ignores_term


class FakeSupervisor(ProcessSupervisor):
    """In-memory processes; records every spawn and signal."""

    def __init__(self, clock=None):
        self.clock = clock or FakeClock()
        self.events = []
        self.handles = {}
        self.crash_on_spawn = set()
        self.fail_spawn = set()
        self.ignore_term = set()
        self._pids = iter(range(1000, 100000))
        self._lock = threading.Lock()

    def _record(self, event, node_id, **extra):
        with self._lock:
            self.events.append(dict(event=event, node_id=node_id, at=self.clock(), **extra))

    def spawn(self, command, log_path, cwd):
        node_id = cwd.name
        if node_id in self.fail_spawn:
            raise OSError(f"cannot execute {command[0]}")
        with self._lock:
            pid = next(self._pids)
        crashed = node_id in self.crash_on_spawn
        handle = FakeHandle(node_id, pid, alive=not crashed, exit_code=1 if crashed else None,
                            ignores_term=node_id in self.ignore_term)
        self.handles[node_id] = handle
        self._record('spawn', node_id, command=command)
        return handle

    def adopt(self, pid):
        for handle in self.handles.values():
            if handle.pid == pid and handle.alive:
                return handle
        return None

    def pid(self, handle):
        return handle.pid

    def poll(self, handle):
        return None if handle.alive else handle.exit_code

    def terminate(self, handle):
        self._record('terminate', handle.node_id, live=len(self.live()))
        if not handle.ignores_term:
            handle.alive, handle.exit_code = False, -15

    def kill(self, handle):
        self._record('kill', handle.node_id)
        handle.alive, handle.exit_code = False, -9

    def wait(self, handle, timeout):
        return self.poll(handle)

    def live(self):
        return sorted(n for n, h in self.handles.items() if h.alive)

    def crash(self, node_id):
        handle = self.handles[node_id]
        handle.alive, handle.exit_code = False, 137

    def events_of(self, kind):
        return [e for e in self.events if e['event'] == kind]


class FakeChain(NodeRpcClient):
    """Chain whose height grows with the fake clock.

    A node answers only while its fake process is alive (when a supervisor is
    attached) and it is not listed in ``down``. Its version is whatever binary
    the asset says it runs, unless overridden.
    """

    def __init__(self, clock, asset=None, supervisor=None, start_height=100, block_time=1.0, era_length=10):
        self.clock = clock
        self.asset = asset
        self.supervisor = supervisor
        self.start_height = start_height
        self.block_time = block_time
        self.era_length = era_length
        self.down = set()
        self.scripts = {}
        self.version_override = {}
        self.calls = []

    def height(self):
        return self.start_height + int(self.clock() / self.block_time)

    def _reachable(self, node_id):
        if node_id in self.down:
            return False
        if self.supervisor is None:
            return True
        handle = self.supervisor.handles.get(node_id)
        return handle is not None and handle.alive

    def _members(self):
        return self.asset.roster.admitted if self.asset is not None else []

    def get_status(self, node):
        self.calls.append(node.node_id)
        if not self._reachable(node.node_id):
            raise RpcUnavailableError(node.node_id, "connection refused")
        script = self.scripts.get(node.node_id)
        height = script.pop(0) if script else self.height()
        return {
            'api_version': self.version_override.get(node.node_id, node.binary_version),
            'peers': [{'node_id': n} for n in self._members() if n != node.node_id],
            'last_added_block_info': {
                'height': height,
                'era_id': height // self.era_length,
                'state_root_hash': f"root-{height}",
                'hash': f"block-{height}",
            },
        }

    def get_metrics(self, node):
        return "# TYPE chain_height gauge\nchain_height %d\n" % self.height()


class RecordingBonding(BondingClient):
    def __init__(self):
        self.requests = []

    def bond(self, node, amount):
        self.requests.append(('bond', node.node_id, amount))

    def unbond(self, node):
        self.requests.append(('unbond', node.node_id))


def write_stage(stages, version, script=NODE_SCRIPT):
    binary = stages / version.replace('.', '_') / 'bin' / 'node'
    binary.parent.mkdir(parents=True, exist_ok=True)
    binary.write_text(script)
    binary.chmod(0o755)
    return binary


@pytest.fixture
def stages(tmp_path):
    root = tmp_path / 'stages'
    write_stage(root, '1.0.0')
    write_stage(root, '2.0.0')
    return root


@pytest.fixture
def make_network(tmp_path, stages):
    """Build a generated network wired to fakes.

    Nodes are started unless ``start=False``.
    """
    def factory(node_count=5, min_nodes=3, start=True, **settings):
        clock = FakeClock()
        supervisor = FakeSupervisor(clock)
        provenance = DirectoryProvenance(stages)
        assets = AssetManager(tmp_path / 'assets', rng=random.Random(7))
        network_settings = NetworkSettings(
            name='testnet', node_count=node_count, min_nodes=min_nodes, **settings
        )
        asset = assets.generate(network_settings, provenance.resolve('1.0.0'))
        chain = FakeChain(clock, asset, supervisor)
        fleet = ProcessFleetController(
            asset, binary_resolver=lambda v: assets.binary_path(asset, v), supervisor=supervisor
        )
        monitor = ChainStateMonitor(asset, chain, attempts=1, backoff=0, sleep=clock.sleep, clock=clock)
        engine = AwaitEngine(monitor, asset, default_interval=1.0, default_timeout=300.0,
                             clock=clock, sleep=clock.sleep)
        lock = PhaseLock(asset.base_dir / 'upgrade.lock')
        orchestrator = UpgradeOrchestrator(
            asset, assets, fleet, monitor, engine, provenance, lock,
            activation_timeout=1000.0, verification_timeout=100.0, restart_timeout=10.0,
        )
        bonding = RecordingBonding()
        rotator = NodeSetRotator(asset, assets, fleet, lock, bonding=bonding)
        if start:
            assert fleet.start_many(asset.roster.admitted) == {}
        return SimpleNamespace(
            clock=clock, supervisor=supervisor, provenance=provenance, assets=assets,
            asset=asset, chain=chain, fleet=fleet, monitor=monitor, engine=engine,
            lock=lock, orchestrator=orchestrator, bonding=bonding, rotator=rotator,
        )
    return factory
