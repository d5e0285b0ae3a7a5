"""Node process and membership commands."""

import logging
from typing import Dict, Optional

import typer

from ..modules.assets import NodeTemplate
from ..modules.errors import ProcessError
from .context import open_network

logger = logging.getLogger("chainctl.commands.nodes")

NODE_ARGUMENT = typer.Argument(..., help="Node id, or 'all' for every roster member")


def _report(action: str, node_ids, errors: Dict[str, Exception]) -> None:
    """Echo per-node results; exit 1 if any node really failed.

    An ungraceful stop still leaves the node stopped, so it is only a warning.
    """
    failed = False
    for node_id in node_ids:
        error = errors.get(node_id)
        if error is None:
            typer.echo(f"✅ {node_id} {action}")
        elif getattr(error, 'subkind', None) == ProcessError.UNGRACEFUL_STOP:
            typer.echo(f"⚠️  {error}", err=True)
        else:
            typer.echo(f"❌ {error}", err=True)
            failed = True
    if failed:
        raise typer.Exit(code=1)


def start(ctx: typer.Context, node: str = NODE_ARGUMENT):
    """Start one node or the whole fleet."""
    network = open_network(ctx)
    node_ids = network.node_ids(node)
    _report("running", node_ids, network.fleet.start_many(node_ids))


def stop(
    ctx: typer.Context,
    node: str = NODE_ARGUMENT,
    grace_period: Optional[float] = typer.Option(
        None, "--grace-period", "-g", help="Seconds between SIGTERM and SIGKILL"
    ),
):
    """Stop one node or the whole fleet."""
    network = open_network(ctx)
    node_ids = network.node_ids(node)
    _report("stopped", node_ids, network.fleet.stop_many(node_ids, grace_period))


def restart(ctx: typer.Context, node: str = NODE_ARGUMENT):
    """Restart one node or the whole fleet, keeping on-disk state."""
    network = open_network(ctx)
    node_ids = network.node_ids(node)
    _report("restarted", node_ids, network.fleet.restart_many(node_ids))


def join(
    ctx: typer.Context,
    stake: Optional[int] = typer.Option(None, "--stake", help="Bond amount for the new validator"),
    version: Optional[str] = typer.Option(None, "--version", help="Binary version to run"),
):
    """Add a new validator node to the running network."""
    network = open_network(ctx)
    node_id = network.rotator.join(NodeTemplate(stake=stake, version=version))
    typer.echo(f"✅ {node_id} joined {network.name}")


def leave(ctx: typer.Context, node: str = typer.Argument(..., help="Node id to remove")):
    """Unbond, stop and remove a node from the network."""
    network = open_network(ctx)
    network.rotator.leave(node)
    typer.echo(f"👋 {node} left {network.name}")
