"""Bond and unbond requests for joining and leaving validators.

Submitting auction bids is contract interaction, which chainctl does not do
itself. The operator configures the external commands (typically a client
``put-deploy`` invocation) in the network settings and chainctl runs them.
"""

import logging
import subprocess
from typing import List, Optional

from .errors import RosterError
from .models import NodeDescriptor

logger = logging.getLogger("chainctl.bonding")


class BondingClient:
    """Interface for submitting validator bond changes."""

    def bond(self, node: NodeDescriptor, amount: int) -> None:
        raise NotImplementedError

    def unbond(self, node: NodeDescriptor) -> None:
        raise NotImplementedError


class CommandBondingClient(BondingClient):
    """Runs operator-supplied command templates for bond and unbond."""

    def __init__(self, bond_command: Optional[List[str]], unbond_command: Optional[List[str]],
                 rpc_host: str = "127.0.0.1", timeout: float = 60.0):
        self.bond_command = bond_command
        self.unbond_command = unbond_command
        self.rpc_host = rpc_host
        self.timeout = timeout

    def _render(self, template: List[str], node: NodeDescriptor, amount: int = 0) -> List[str]:
        values = {
            'node_id': node.node_id,
            'public_key': node.public_key,
            'secret_key_path': node.secret_key_path,
            'rpc_url': f"http://{self.rpc_host}:{node.rpc_port}/rpc",
            'amount': amount,
        }
        return [part.format(**values) for part in template]

    def _run(self, action: str, command: List[str], node: NodeDescriptor) -> None:
        logger.info(f"📨 Submitting {action} request for {node.node_id}")
        logger.debug(f"Running: {' '.join(command)}")
        try:
            result = subprocess.run(command, capture_output=True, text=True, timeout=self.timeout)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise RosterError(f"{action} request for {node.node_id} could not run: {e}") from e
        if result.returncode != 0:
            raise RosterError(
                f"{action} request for {node.node_id} failed with status {result.returncode}: "
                f"{result.stderr.strip()}"
            )

    def bond(self, node: NodeDescriptor, amount: int) -> None:
        if not self.bond_command:
            logger.debug(f"No bond command configured, skipping bond for {node.node_id}")
            return
        self._run('bond', self._render(self.bond_command, node, amount), node)

    def unbond(self, node: NodeDescriptor) -> None:
        if not self.unbond_command:
            logger.debug(f"No unbond command configured, skipping unbond for {node.node_id}")
            return
        self._run('unbond', self._render(self.unbond_command, node, node.stake), node)
