"""Commands that block until the chain reaches a point."""

from typing import Optional

import typer

from ..modules.models import ChainSnapshot
from .context import open_network

TIMEOUT_OPTION = typer.Option(None, "--timeout", "-t", help="Seconds before giving up")
INTERVAL_OPTION = typer.Option(None, "--interval", "-i", help="Seconds between polls")
NODE_OPTION = typer.Option(None, "--node", help="Only observe this node")


def _engine(ctx: typer.Context, node: Optional[str]):
    network = open_network(ctx)
    if node:
        network.node_ids(node)
    return network.engine


def _reached(snapshot: ChainSnapshot) -> None:
    typer.echo(f"✅ height={snapshot.height} era={snapshot.era} node={snapshot.node_id}")


def await_blocks(
    ctx: typer.Context,
    count: int = typer.Argument(..., help="Number of additional blocks"),
    timeout: Optional[float] = TIMEOUT_OPTION,
    interval: Optional[float] = INTERVAL_OPTION,
    node: Optional[str] = NODE_OPTION,
):
    """Wait for COUNT more blocks to be produced."""
    _reached(_engine(ctx, node).await_blocks(count, timeout, interval, node))


def await_until_block(
    ctx: typer.Context,
    height: int = typer.Argument(..., help="Target block height"),
    timeout: Optional[float] = TIMEOUT_OPTION,
    interval: Optional[float] = INTERVAL_OPTION,
    node: Optional[str] = NODE_OPTION,
):
    """Wait until the chain reaches HEIGHT."""
    _reached(_engine(ctx, node).await_until_block(height, timeout, interval, node))


def await_eras(
    ctx: typer.Context,
    count: int = typer.Argument(..., help="Number of additional eras"),
    timeout: Optional[float] = TIMEOUT_OPTION,
    interval: Optional[float] = INTERVAL_OPTION,
    node: Optional[str] = NODE_OPTION,
):
    """Wait for COUNT more eras to pass."""
    _reached(_engine(ctx, node).await_eras(count, timeout, interval, node))


def await_until_era(
    ctx: typer.Context,
    era: int = typer.Argument(..., help="Target era"),
    timeout: Optional[float] = TIMEOUT_OPTION,
    interval: Optional[float] = INTERVAL_OPTION,
    node: Optional[str] = NODE_OPTION,
):
    """Wait until the chain reaches ERA."""
    _reached(_engine(ctx, node).await_until_era(era, timeout, interval, node))
