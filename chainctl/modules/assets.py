"""Network asset generation and the on-disk network layout.

AssetManager is the only writer of a network's directory. Layout::

    <assets_root>/<network>/
        network.yaml               manifest: nodes, roster, settings
        chainspec.yaml             current network chainspec
        bin/<version>/node         installed node binaries
        upgrades/<version>.yaml    upgrade records
        nodes/<node-id>/
            keys/secret_key.pem
            keys/public_key.hex
            config/config.toml
            config/chainspec.yaml
            storage/
            logs/
"""

import copy
import logging
import os
import random
import shutil
import stat
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import toml
from jsonschema import ValidationError, validate

from .errors import ConfigurationError, RosterError
from .models import ActivationKind, ActivationPoint, FleetRoster, NetworkAsset, NodeDescriptor, UpgradePlan
from .provenance import FixedProvenance, StagedRelease
from .settings import NetworkSettings
from .utils import generate_key_material, merge_dicts, read_yaml_file, write_yaml_file

logger = logging.getLogger("chainctl.assets")

MANIFEST_FILE = "network.yaml"
NODE_CONFIG_FILE = "config.toml"
CHAINSPEC_FILE = "chainspec.yaml"
BINARY_NAME = "node"
KNOWN_ADDRESS_LIMIT = 3

CHAINSPEC_SCHEMA = {
    "type": "object",
    "properties": {
        "protocol": {
            "type": "object",
            "properties": {
                "version": {"type": "string", "minLength": 1},
                "activation_point": {"type": "string", "pattern": "^(height|era):[0-9]+$"},
            },
            "required": ["version", "activation_point"],
        },
        "network": {
            "type": "object",
            "properties": {"name": {"type": "string", "minLength": 1}},
            "required": ["name"],
        },
        "core": {"type": "object"},
        "accounts": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "public_key": {"type": "string"},
                    "balance": {"type": "integer"},
                    "bonded_amount": {"type": "integer"},
                },
                "required": ["public_key"],
            },
        },
    },
    "required": ["protocol", "network", "core", "accounts"],
}


@dataclass
class NodeTemplate:
    """Parameters for a node added after genesis."""
    stake: Optional[int] = None
    version: Optional[str] = None


def validate_chainspec(chainspec: Dict[str, Any]) -> None:
    """Validate a chainspec document against the chainspec schema."""
    try:
        validate(instance=chainspec, schema=CHAINSPEC_SCHEMA)
    except ValidationError as ve:
        raise ConfigurationError(f"Invalid chainspec: {ve.message}") from ve


def upgraded_chainspec(
    chainspec: Dict[str, Any], release: StagedRelease, plan: UpgradePlan
) -> Dict[str, Any]:
    """Chainspec a node runs after an upgrade.

    Layers the release's own chainspec fragment and the plan's delta over the
    current chainspec, then stamps the new protocol version and activation
    point.
    """
    result = merge_dicts(chainspec, release.chainspec or {})
    result = merge_dicts(result, plan.chainspec_delta or {})
    activation = plan.activation_point
    if activation is None and plan.observed_era is not None:
        activation = ActivationPoint(ActivationKind.ERA, plan.observed_era + 1)
    elif activation is None:
        activation = ActivationPoint.parse(result.get('protocol', {}).get('activation_point', 'era:0'))
    result = merge_dicts(result, {
        'protocol': {'version': plan.version, 'activation_point': str(activation)},
    })
    validate_chainspec(result)
    return result


class AssetManager:
    """Creates and mutates network assets under an assets root."""

    def __init__(self, assets_root: Union[str, Path], rng: Optional[random.Random] = None):
        self.assets_root = Path(assets_root).expanduser()
        self._rng = rng
        self._lock = threading.RLock()

    def network_dir(self, name: str) -> Path:
        return self.assets_root / name

    def binary_path(self, asset: NetworkAsset, version: str) -> Path:
        return asset.base_dir / 'bin' / version / BINARY_NAME

    # -- generation -------------------------------------------------------

    def generate(
        self, settings: NetworkSettings, release: Optional[StagedRelease] = None
    ) -> NetworkAsset:
        """Generate and materialize a new network from ``settings``.

        Args:
            settings: Validated network settings
            release: Node release to install; falls back to
                ``settings.binary_path``

        Returns:
            The new NetworkAsset, with every genesis node admitted

        Raises:
            ConfigurationError: If the settings cannot produce a network
        """
        base_dir = self.network_dir(settings.name)
        if base_dir.exists():
            raise ConfigurationError(f"Network directory already exists: {base_dir}")
        if release is None:
            if not settings.binary_path:
                raise ConfigurationError("No node binary: set binary_path or stage a release")
            release = FixedProvenance(settings.version, settings.binary_path).resolve(settings.version)
        if release.version != settings.version:
            raise ConfigurationError(
                f"Release version {release.version} does not match settings version {settings.version}"
            )

        rng = self._rng or random.SystemRandom()
        nodes = []
        secrets = {}
        for index in range(1, settings.node_count + 1):
            descriptor, secret = self._new_descriptor(
                base_dir, settings, index, settings.genesis_stake * index, settings.version, rng
            )
            descriptor.genesis_validator = True
            nodes.append(descriptor)
            secrets[descriptor.node_id] = secret

        chainspec = self._genesis_chainspec(settings, nodes)
        asset = NetworkAsset(
            name=settings.name,
            base_dir=base_dir,
            nodes=nodes,
            chainspec=chainspec,
            roster=FleetRoster(admitted=[n.node_id for n in nodes]),
            min_nodes=settings.min_nodes,
            settings=settings.model_dump(),
        )

        with self._lock:
            logger.info(f"🧱 Generating network {settings.name} with {settings.node_count} node(s) in {base_dir}")
            base_dir.mkdir(parents=True)
            (base_dir / 'upgrades').mkdir()
            self.install_release(asset, release)
            write_yaml_file(str(base_dir / CHAINSPEC_FILE), chainspec)
            for node in nodes:
                self._write_node(asset, node, secrets[node.node_id], chainspec)
            self.save(asset)
        return asset

    def _new_descriptor(self, base_dir: Path, settings: NetworkSettings, index: int,
                        stake: int, version: str, rng) -> tuple:
        secret, public = generate_key_material(rng)
        node_id = f"node-{index}"
        node_dir = base_dir / 'nodes' / node_id
        descriptor = NodeDescriptor(
            node_id=node_id,
            index=index,
            public_key=public,
            secret_key_path=str(node_dir / 'keys' / 'secret_key.pem'),
            network_port=settings.base_network_port + index - 1,
            rpc_port=settings.base_rpc_port + index - 1,
            rest_port=settings.base_rest_port + index - 1,
            data_dir=str(node_dir),
            binary_version=version,
            stake=stake,
            genesis_validator=False,
        )
        return descriptor, secret

    def _genesis_chainspec(self, settings: NetworkSettings, nodes: List[NodeDescriptor]) -> Dict[str, Any]:
        chain = settings.chain
        chainspec = {
            'protocol': {
                'version': settings.version,
                'activation_point': 'era:0',
            },
            'network': {'name': settings.name},
            'core': {
                'era_duration': chain.era_duration,
                'minimum_era_height': chain.minimum_era_height,
                'validator_slots': chain.validator_slots,
                'auction_delay': chain.auction_delay,
                'unbonding_delay': chain.unbonding_delay,
            },
            'highway': {'block_time': chain.block_time},
            'accounts': [
                {
                    'public_key': node.public_key,
                    'balance': node.stake * 10,
                    'bonded_amount': node.stake,
                }
                for node in nodes
            ],
        }
        chainspec = merge_dicts(chainspec, chain.extra)
        validate_chainspec(chainspec)
        return chainspec

    def _write_node(self, asset: NetworkAsset, node: NodeDescriptor, secret: str,
                    chainspec: Dict[str, Any]) -> None:
        node_dir = asset.node_dir(node.node_id)
        for sub in ('keys', 'config', 'storage', 'logs'):
            (node_dir / sub).mkdir(parents=True, exist_ok=True)

        secret_path = Path(node.secret_key_path)
        secret_path.write_text(secret)
        os.chmod(secret_path, 0o600)
        (node_dir / 'keys' / 'public_key.hex').write_text(node.public_key + "\n")

        write_yaml_file(str(node_dir / 'config' / CHAINSPEC_FILE), chainspec)
        with open(node_dir / 'config' / NODE_CONFIG_FILE, 'w') as f:
            toml.dump(self._node_config(asset, node), f)

    def _node_config(self, asset: NetworkAsset, node: NodeDescriptor) -> Dict[str, Any]:
        host = asset.settings.get('host', '127.0.0.1')
        peers = [
            n for n in asset.nodes
            if n.node_id != node.node_id and n.node_id in asset.roster
        ][:KNOWN_ADDRESS_LIMIT]
        node_dir = asset.node_dir(node.node_id)
        return {
            'node': {'chainspec_config_path': str(node_dir / 'config' / CHAINSPEC_FILE)},
            'consensus': {'secret_key_path': node.secret_key_path},
            'network': {
                'bind_address': f"{host}:{node.network_port}",
                'public_address': f"{host}:{node.network_port}",
                'known_addresses': [f"{host}:{p.network_port}" for p in peers],
            },
            'rpc_server': {'address': f"{host}:{node.rpc_port}"},
            'rest_server': {'address': f"{host}:{node.rest_port}"},
            'storage': {'path': str(node_dir / 'storage')},
            'logging': {'format': 'json'},
        }

    # -- mutation ---------------------------------------------------------

    def install_release(self, asset: NetworkAsset, release: StagedRelease) -> Path:
        """Copy a release's binary into ``bin/<version>/`` (idempotent)."""
        with self._lock:
            target = self.binary_path(asset, release.version)
            if not target.exists():
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(release.binary_path, target)
                target.chmod(target.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
                logger.debug(f"Installed {release.binary_path} as {target}")
            return target

    def add_node(self, asset: NetworkAsset, node_template: Optional[NodeTemplate] = None) -> NetworkAsset:
        """Lay out one more node; it is not admitted to the roster yet."""
        node_template = node_template or NodeTemplate()
        settings = NetworkSettings.from_dict(asset.settings)
        with self._lock:
            index = max((n.index for n in asset.nodes), default=0) + 1
            if index > settings.max_nodes:
                raise ConfigurationError(
                    f"Network {asset.name} has no free port slot (max_nodes={settings.max_nodes})"
                )
            version = node_template.version or asset.protocol_version
            if not self.binary_path(asset, version).exists():
                raise ConfigurationError(f"Version {version} is not installed in network {asset.name}")
            stake = node_template.stake if node_template.stake is not None else settings.bonding.join_stake
            descriptor, secret = self._new_descriptor(
                asset.base_dir, settings, index, stake, version, self._rng or random.SystemRandom()
            )
            asset.nodes.append(descriptor)
            chainspec = read_yaml_file(str(asset.base_dir / CHAINSPEC_FILE))
            self._write_node(asset, descriptor, secret, chainspec)
            self.save(asset)
            logger.info(f"➕ Added {descriptor.node_id} to network {asset.name} (ports {descriptor.network_port}/"
                        f"{descriptor.rpc_port}/{descriptor.rest_port})")
        return asset

    def regenerate_chainspec(self, asset: NetworkAsset, delta: Dict[str, Any],
                             replace: bool = False) -> NetworkAsset:
        """Merge ``delta`` into the network chainspec and rewrite every node's copy.

        With ``replace`` set, ``delta`` is taken as the complete new chainspec.
        """
        with self._lock:
            chainspec = copy.deepcopy(delta) if replace else merge_dicts(asset.chainspec, delta or {})
            validate_chainspec(chainspec)
            asset.chainspec = chainspec
            write_yaml_file(str(asset.base_dir / CHAINSPEC_FILE), chainspec)
            for node in asset.nodes:
                write_yaml_file(str(asset.node_dir(node.node_id) / 'config' / CHAINSPEC_FILE), chainspec)
            self.save(asset)
            logger.info(f"📝 Regenerated chainspec for {asset.name} (protocol {asset.protocol_version})")
        return asset

    def apply_upgrade(self, asset: NetworkAsset, node_id: str, release: StagedRelease,
                      plan: UpgradePlan) -> NodeDescriptor:
        """Switch one node's binary and chainspec to the release in ``plan``."""
        with self._lock:
            node = asset.get_node(node_id)
            if node is None:
                raise ConfigurationError(f"Unknown node {node_id} in network {asset.name}")
            self.install_release(asset, release)
            chainspec = upgraded_chainspec(asset.chainspec, release, plan)
            write_yaml_file(str(asset.node_dir(node_id) / 'config' / CHAINSPEC_FILE), chainspec)
            node.binary_version = release.version
            self.save(asset)
            logger.info(f"🔁 {node_id} switched to version {release.version}")
            return node

    def admit(self, asset: NetworkAsset, node_id: str) -> None:
        with self._lock:
            if asset.get_node(node_id) is None:
                raise RosterError(f"Cannot admit unknown node {node_id}")
            asset.roster.admit(node_id)
            self.save(asset)

    def evict(self, asset: NetworkAsset, node_id: str) -> None:
        with self._lock:
            asset.roster.evict(node_id)
            self.save(asset)

    def suspend(self, asset: NetworkAsset, node_id: str) -> None:
        with self._lock:
            asset.roster.suspend(node_id)
            self.save(asset)

    def resume(self, asset: NetworkAsset, node_id: str) -> None:
        with self._lock:
            asset.roster.resume(node_id)
            self.save(asset)

    def write_record(self, asset: NetworkAsset, version: str, record: Dict[str, Any]) -> Path:
        path = asset.base_dir / 'upgrades' / f"{version}.yaml"
        with self._lock:
            write_yaml_file(str(path), record)
        return path

    # -- persistence ------------------------------------------------------

    def save(self, asset: NetworkAsset) -> None:
        with self._lock:
            write_yaml_file(str(asset.base_dir / MANIFEST_FILE), {
                'name': asset.name,
                'min_nodes': asset.min_nodes,
                'settings': asset.settings,
                'roster': asset.roster.to_dict(),
                'nodes': [n.to_dict() for n in asset.nodes],
            })

    def load(self, name: str) -> NetworkAsset:
        """Load a previously generated network by name."""
        base_dir = self.network_dir(name)
        manifest_path = base_dir / MANIFEST_FILE
        if not manifest_path.exists():
            raise ConfigurationError(f"Network {name} not found (no {manifest_path}); run setup first")
        manifest = read_yaml_file(str(manifest_path))
        return NetworkAsset(
            name=manifest['name'],
            base_dir=base_dir,
            nodes=[NodeDescriptor.from_dict(n) for n in manifest.get('nodes', [])],
            chainspec=read_yaml_file(str(base_dir / CHAINSPEC_FILE)),
            roster=FleetRoster.from_dict(manifest.get('roster', {})),
            min_nodes=int(manifest.get('min_nodes', 1)),
            settings=manifest.get('settings', {}),
        )

    def teardown(self, asset: NetworkAsset) -> None:
        """Remove a network's directory tree."""
        with self._lock:
            if asset.base_dir.exists():
                shutil.rmtree(asset.base_dir)
                logger.info(f"🧹 Removed network directory {asset.base_dir}")
