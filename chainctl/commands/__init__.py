"""Command handlers, dispatched by name from the CLI."""
from . import network, nodes, upgrade, waits

# Command name -> handler. Every handler takes the typer context first.
COMMANDS = {
    "setup": network.setup,
    "teardown": network.teardown,
    "status": network.status,
    "start": nodes.start,
    "stop": nodes.stop,
    "restart": nodes.restart,
    "join": nodes.join,
    "leave": nodes.leave,
    "await-blocks": waits.await_blocks,
    "await-until-block": waits.await_until_block,
    "await-eras": waits.await_eras,
    "await-until-era": waits.await_until_era,
    "upgrade": upgrade.upgrade,
    "emergency-upgrade": upgrade.emergency_upgrade,
}

__all__ = ['COMMANDS']
