"""Protocol upgrade commands."""

import logging
from typing import Any, Dict, Optional

import typer
import yaml

from ..modules.errors import ConfigurationError, UpgradeError
from ..modules.models import ActivationKind, ActivationPoint, RolloutStrategy, UpgradeRecord
from ..modules.utils import read_yaml_file
from .context import open_network

logger = logging.getLogger("chainctl.commands.upgrade")

# Eras ahead of the fleet used when no activation point is given
DEFAULT_ACTIVATION_ERAS = 2


def _load_delta(path: Optional[str]) -> Dict[str, Any]:
    if not path:
        return {}
    try:
        return read_yaml_file(path)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot read chainspec delta {path}: {e}") from e


def _summary(record: UpgradeRecord) -> None:
    typer.echo(f"🎉 Upgrade to {record.plan.version} {record.phase.value}: "
               f"{len(record.upgraded_nodes)} node(s) upgraded")


def upgrade(
    ctx: typer.Context,
    version: str = typer.Argument(..., help="Protocol version to upgrade to"),
    activate_at: Optional[str] = typer.Option(
        None, "--activate-at", "-a",
        help="Activation point as height:N or era:N (bare number means era)"
    ),
    rolling: bool = typer.Option(False, "--rolling", help="Swap one node at a time"),
    delta: Optional[str] = typer.Option(None, "--delta", help="YAML chainspec changes to apply"),
):
    """Plan, stage, activate and verify a scheduled protocol upgrade."""
    network = open_network(ctx)
    orchestrator = network.orchestrator
    if activate_at:
        point = ActivationPoint.parse(activate_at)
    else:
        observed = orchestrator.observe()
        if observed is None:
            raise UpgradeError(UpgradeError.STAGE_VALIDATION, "no node is reachable to observe the chain")
        point = ActivationPoint(ActivationKind.ERA, observed.era + DEFAULT_ACTIVATION_ERAS)
        logger.info(f"No activation point given, using {point}")

    strategy = RolloutStrategy.ROLLING if rolling else RolloutStrategy.BIG_BANG
    record = orchestrator.run(version, point, strategy, _load_delta(delta))
    _summary(record)


def emergency_upgrade(
    ctx: typer.Context,
    version: str = typer.Argument(..., help="Protocol version to switch to immediately"),
    delta: Optional[str] = typer.Option(None, "--delta", help="YAML chainspec changes to apply"),
):
    """Swap every node to VERSION now, without waiting for an activation point."""
    network = open_network(ctx)
    record = network.orchestrator.emergency(version, _load_delta(delta))
    _summary(record)
