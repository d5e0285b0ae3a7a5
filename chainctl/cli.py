import functools
import logging
import sys
from typing import Optional

import typer

from chainctl.commands import COMMANDS
from chainctl.commands.context import get_state
from chainctl.config import ControllerConfig
from chainctl.logging import setup_logging
from chainctl.modules.errors import ChainctlError

app = typer.Typer(help="Control a local proof-of-stake test network.", no_args_is_help=True)

logger = logging.getLogger("chainctl.cli")


def _fail(error: ChainctlError, debug: bool) -> typer.Exit:
    if debug:
        logger.exception(f"Command failed: {error}")
    typer.echo(f"Error: {error}", err=True)
    return typer.Exit(code=error.exit_code)


def _command(handler):
    """Turn chainctl errors from ``handler`` into a message and exit code 1."""
    @functools.wraps(handler)
    def run(ctx: typer.Context, *args, **kwargs):
        try:
            return handler(ctx, *args, **kwargs)
        except ChainctlError as e:
            raise _fail(e, get_state(ctx).debug)
    return run


for name, handler in COMMANDS.items():
    app.command(name)(_command(handler))


# Global options callback
@app.callback()
def main_callback(
    ctx: typer.Context,
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
    config: Optional[str] = typer.Option(
        None, "--config", "-c", envvar="CHAINCTL_CONFIG", help="Path to a chainctl config file"
    ),
    network: Optional[str] = typer.Option(None, "--network", "-n", help="Network to operate on"),
):
    """chainctl - local proof-of-stake test network controller."""
    state = get_state(ctx)
    state.debug = debug
    try:
        if state.config is None:
            state.config = ControllerConfig.load(config)
    except ChainctlError as e:
        raise _fail(e, debug)
    if network:
        state.config.network = network

    log = state.config.logging
    setup_logging(log.level, debug, log.file, log.max_size_mb, log.backup_count)
    if debug:
        logger.debug("Debug mode enabled")


def main():
    """Console script entry point."""
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Interrupted", err=True)
        sys.exit(130)


if __name__ == "__main__":
    main()
