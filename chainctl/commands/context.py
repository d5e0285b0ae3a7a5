"""State shared by every command handler."""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import typer

from ..config import ControllerConfig
from ..modules.network import Network


@dataclass
class CliState:
    """Per-invocation state stored on the typer context.

    ``components`` is passed through to Network so an embedding program can
    swap in its own RPC client, process supervisor or release provenance.
    """
    config: Optional[ControllerConfig] = None
    debug: bool = False
    components: Dict[str, Any] = field(default_factory=dict)


def get_state(ctx: typer.Context) -> CliState:
    return ctx.ensure_object(CliState)


def open_network(ctx: typer.Context) -> Network:
    """Load the configured network with the invocation's components."""
    state = get_state(ctx)
    return Network.open(state.config, **state.components)
