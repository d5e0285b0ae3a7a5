"""Network lifecycle commands: setup, teardown, status."""

import logging
from typing import Optional

import typer

from ..modules.errors import RpcUnavailableError
from ..modules.models import NodeState
from ..modules.network import Network
from ..modules.settings import NetworkSettings
from .context import get_state, open_network

logger = logging.getLogger("chainctl.commands.network")


def setup(
    ctx: typer.Context,
    settings: Optional[str] = typer.Option(
        None, "--settings", "-s", help="Network settings YAML file"
    ),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Override the network name"),
    start: bool = typer.Option(False, "--start", help="Start every node after generating assets"),
):
    """Generate keys, configs and chainspec for a new network."""
    state = get_state(ctx)
    data = NetworkSettings.load(settings).model_dump(exclude_unset=True) if settings else {}
    data['name'] = name or data.get('name') or state.config.network
    network_settings = NetworkSettings.from_dict(data)

    network = Network.setup(state.config, network_settings, **state.components)
    typer.echo(f"✅ Network {network.name} generated in {network.asset.base_dir} "
               f"with {len(network.asset.nodes)} node(s)")
    if start:
        _start_all(network)


def _start_all(network: Network) -> None:
    errors = network.fleet.start_many(network.asset.roster.admitted)
    for error in errors.values():
        typer.echo(f"❌ {error}", err=True)
    if errors:
        raise typer.Exit(code=1)
    typer.echo(f"🚀 Started {len(network.asset.roster)} node(s)")


def teardown(ctx: typer.Context):
    """Stop every node and delete the network's assets."""
    network = open_network(ctx)
    network.teardown()
    typer.echo(f"🧹 Network {network.name} removed")


def status(ctx: typer.Context):
    """Show process state and chain position of every node."""
    network = open_network(ctx)
    asset = network.asset
    typer.echo(f"📡 Network {asset.name} (protocol {asset.protocol_version}, "
               f"{len(asset.roster)} member(s), minimum {asset.min_nodes})")
    typer.echo(f"{'NODE':<10} {'MEMBER':<10} {'PROCESS':<9} {'PID':>8} {'HEIGHT':>8} {'ERA':>5}  VERSION")

    for node in asset.nodes:
        proc = network.fleet.process(node.node_id)
        if node.node_id in asset.roster.suspended:
            member = "suspended"
        elif node.node_id in asset.roster:
            member = "yes"
        else:
            member = "no"
        height = era = "-"
        version = node.binary_version
        if proc.state == NodeState.RUNNING:
            try:
                snapshot = network.monitor.snapshot(node.node_id)
                height, era = str(snapshot.height), str(snapshot.era)
                version = snapshot.version or version
            except RpcUnavailableError as e:
                logger.debug(f"Status of {node.node_id} unavailable: {e}")
        typer.echo(f"{node.node_id:<10} {member:<10} {proc.state.value:<9} {proc.pid or '-':>8} "
                   f"{height:>8} {era:>5}  {version}")
