import random
import time

import pytest

from chainctl.modules.assets import AssetManager
from chainctl.modules.errors import ProcessError
from chainctl.modules.models import NodeState
from chainctl.modules.process import ProcessFleetController, SubprocessSupervisor
from chainctl.modules.provenance import DirectoryProvenance
from chainctl.modules.settings import NetworkSettings

from conftest import write_stage

STUBBORN_SCRIPT = "#!/bin/sh\ntrap '' TERM\nwhile true; do sleep 0.1; done\n"


def test_start_is_idempotent(make_network):
    net = make_network(start=False)
    first = net.fleet.start('node-1')
    pid = first.pid
    second = net.fleet.start('node-1')
    assert second.pid == pid
    assert net.fleet.status('node-1') == NodeState.RUNNING
    assert len(net.supervisor.events_of('spawn')) == 1


def test_start_writes_pid_file_and_command(make_network):
    net = make_network(start=False)
    proc = net.fleet.start('node-2')
    node_dir = net.asset.node_dir('node-2')
    assert (node_dir / 'node.pid').read_text().strip() == str(proc.pid)
    command = net.supervisor.events_of('spawn')[0]['command']
    assert command == [str(net.assets.binary_path(net.asset, '1.0.0')), 'validator',
                       str(node_dir / 'config' / 'config.toml')]


def test_launcher_is_prepended(make_network):
    net = make_network(start=False)
    fleet = ProcessFleetController(
        net.asset, binary_resolver=lambda v: net.assets.binary_path(net.asset, v),
        supervisor=net.supervisor, launcher="nice -n 5",
    )
    fleet.start('node-1')
    assert net.supervisor.events_of('spawn')[0]['command'][:3] == ['nice', '-n', '5']


def test_stop_and_restart(make_network):
    net = make_network()
    net.fleet.stop('node-1')
    assert net.fleet.status('node-1') == NodeState.STOPPED
    assert not (net.asset.node_dir('node-1') / 'node.pid').exists()

    # Stopping a stopped node is a no-op.
    net.fleet.stop('node-1')
    assert len(net.supervisor.events_of('terminate')) == 1

    old_pid = net.fleet.process('node-2').pid
    proc = net.fleet.restart('node-2')
    assert proc.state == NodeState.RUNNING
    assert proc.pid != old_pid


def test_ungraceful_stop_still_stops(make_network):
    net = make_network()
    net.supervisor.handles['node-3'].ignores_term = True
    with pytest.raises(ProcessError) as exc:
        net.fleet.stop('node-3', grace_period=0)
    assert exc.value.subkind == ProcessError.UNGRACEFUL_STOP
    assert net.fleet.status('node-3') == NodeState.STOPPED
    assert [e['event'] for e in net.supervisor.events if e['node_id'] == 'node-3'] == \
        ['spawn', 'terminate', 'kill']


def test_crash_is_reported_not_restarted(make_network):
    net = make_network()
    assert not net.fleet.crash_check('node-4')
    net.supervisor.crash('node-4')
    assert net.fleet.crash_check('node-4')
    assert net.fleet.process('node-4').exit_code == 137
    assert len(net.supervisor.events_of('spawn')) == 5


def test_unknown_node(make_network):
    net = make_network(start=False)
    with pytest.raises(ProcessError) as exc:
        net.fleet.start('node-42')
    assert exc.value.subkind == ProcessError.UNKNOWN_NODE


def test_start_failure(make_network):
    net = make_network(start=False)
    net.supervisor.fail_spawn.add('node-1')
    with pytest.raises(ProcessError) as exc:
        net.fleet.start('node-1')
    assert exc.value.subkind == ProcessError.START_FAILED
    assert net.fleet.status('node-1') == NodeState.STOPPED


def test_fan_out_collects_per_node_errors(make_network):
    net = make_network(start=False)
    net.supervisor.fail_spawn.add('node-2')
    errors = net.fleet.start_many(net.asset.node_ids())
    assert list(errors) == ['node-2']
    assert net.supervisor.live() == ['node-1', 'node-3', 'node-4', 'node-5']

    errors = net.fleet.stop_many(net.asset.node_ids())
    assert errors == {}
    assert net.supervisor.live() == []


def test_new_controller_adopts_running_nodes(make_network):
    net = make_network()
    net.supervisor.crash('node-5')
    fleet = ProcessFleetController(
        net.asset, binary_resolver=lambda v: net.assets.binary_path(net.asset, v), supervisor=net.supervisor
    )
    assert fleet.status('node-1') == NodeState.RUNNING
    assert fleet.process('node-1').pid == net.fleet.process('node-1').pid
    assert fleet.status('node-5') == NodeState.CRASHED


def test_missing_binary_fails_start(make_network):
    net = make_network(start=False)
    net.assets.binary_path(net.asset, '1.0.0').unlink()
    with pytest.raises(ProcessError) as exc:
        net.fleet.start('node-1')
    assert exc.value.subkind == ProcessError.START_FAILED


@pytest.fixture
def real_fleet(tmp_path):
    """A one-node network backed by real OS processes."""
    def factory(script):
        stages = tmp_path / 'real-stages'
        write_stage(stages, '1.0.0', script)
        manager = AssetManager(tmp_path / 'real-assets', rng=random.Random(3))
        asset = manager.generate(NetworkSettings(name='real', node_count=1),
                                 DirectoryProvenance(stages).resolve('1.0.0'))
        return ProcessFleetController(
            asset, binary_resolver=lambda v: manager.binary_path(asset, v),
            supervisor=SubprocessSupervisor(), stop_grace_period=5.0,
        )
    return factory


def test_real_process_graceful_stop(real_fleet):
    fleet = real_fleet("#!/bin/sh\nexec sleep 30\n")
    proc = fleet.start('node-1')
    handle = proc.handle
    try:
        assert proc.pid > 0
        assert fleet.status('node-1') == NodeState.RUNNING
        fleet.stop('node-1')
        assert fleet.status('node-1') == NodeState.STOPPED
        assert fleet.process('node-1').exit_code == -15
    finally:
        fleet.supervisor.kill(handle)


def test_real_process_ignoring_sigterm_is_killed(real_fleet):
    fleet = real_fleet(STUBBORN_SCRIPT)
    proc = fleet.start('node-1')
    handle = proc.handle
    try:
        time.sleep(0.3)
        started = time.monotonic()
        with pytest.raises(ProcessError) as exc:
            fleet.stop('node-1', grace_period=0.5)
        assert exc.value.subkind == ProcessError.UNGRACEFUL_STOP
        assert time.monotonic() - started >= 0.5
        assert fleet.status('node-1') == NodeState.STOPPED
        assert fleet.process('node-1').exit_code == -9
    finally:
        fleet.supervisor.kill(handle)


def test_real_process_crash_detected(real_fleet):
    fleet = real_fleet("#!/bin/sh\nexit 3\n")
    fleet.start('node-1')
    deadline = time.monotonic() + 5
    while not fleet.crash_check('node-1') and time.monotonic() < deadline:
        time.sleep(0.05)
    assert fleet.status('node-1') == NodeState.CRASHED
    assert fleet.process('node-1').exit_code == 3


def test_pid_file_failure_is_a_start_failure(make_network):
    net = make_network(start=False)
    (net.asset.node_dir('node-2') / 'node.pid').mkdir()
    errors = net.fleet.start_many(net.asset.node_ids())

    assert list(errors) == ['node-2']
    assert errors['node-2'].subkind == ProcessError.START_FAILED
    assert 'pid file' in str(errors['node-2'])
    assert net.fleet.status('node-2') == NodeState.STOPPED
    assert 'node-2' not in net.supervisor.live()
    assert [e['node_id'] for e in net.supervisor.events_of('kill')] == ['node-2']
