import pytest

from chainctl.modules.bonding import CommandBondingClient
from chainctl.modules.errors import RosterError


@pytest.fixture
def node(make_network):
    return make_network(start=False).asset.get_node('node-2')


def test_bond_command_is_rendered(node, tmp_path):
    out = tmp_path / 'bond.txt'
    client = CommandBondingClient(
        bond_command=['sh', '-c', f'echo "$0 $1 $2" > {out}', '{node_id}', '{amount}', '{rpc_url}'],
        unbond_command=None,
    )
    client.bond(node, 500)
    assert out.read_text().strip() == 'node-2 500 http://127.0.0.1:11101/rpc'


def test_missing_commands_are_skipped(node):
    client = CommandBondingClient(bond_command=None, unbond_command=None)
    client.bond(node, 1)
    client.unbond(node)


def test_failed_command_raises_roster_error(node):
    client = CommandBondingClient(bond_command=None, unbond_command=['sh', '-c', 'echo no >&2; exit 4'])
    with pytest.raises(RosterError) as exc:
        client.unbond(node)
    assert 'status 4' in str(exc.value)


def test_unrunnable_command_raises_roster_error(node):
    client = CommandBondingClient(bond_command=['/nonexistent/bond-tool'], unbond_command=None)
    with pytest.raises(RosterError):
        client.bond(node, 1)
