"""Where node binaries and release chainspecs come from.

Compiling or downloading releases is someone else's job. chainctl only asks a
provenance source for a release by version and expects an executable plus an
optional chainspec fragment back.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .errors import ConfigurationError
from .utils import read_yaml_file

logger = logging.getLogger("chainctl.provenance")

DEFAULT_BINARY_NAME = "node"


@dataclass
class StagedRelease:
    """A node release ready to be copied into a network."""
    version: str
    binary_path: Path
    chainspec: Dict[str, Any] = field(default_factory=dict)
    source: Optional[Path] = None


class BinaryProvenance:
    """Interface for release sources."""

    def available(self) -> List[str]:
        raise NotImplementedError

    def resolve(self, version: str) -> StagedRelease:
        """Return the release for ``version``.

        Raises:
            ConfigurationError: If the version is not available
        """
        raise NotImplementedError


class DirectoryProvenance(BinaryProvenance):
    """Releases staged on disk as ``<root>/<version>/``.

    A stage directory holds the executable (``bin/<binary_name>`` or
    ``<binary_name>``) and optionally a ``chainspec.yaml`` fragment. Version
    directories may use dots or underscores (``1.5.0`` or ``1_5_0``).
    """

    def __init__(self, root: Union[str, Path], binary_name: str = DEFAULT_BINARY_NAME):
        self.root = Path(root).expanduser()
        self.binary_name = binary_name

    def available(self) -> List[str]:
        if not self.root.is_dir():
            return []
        return sorted(
            p.name.replace('_', '.') for p in self.root.iterdir()
            if p.is_dir() and self._find_binary(p) is not None
        )

    def resolve(self, version: str) -> StagedRelease:
        for candidate in (version, version.replace('.', '_')):
            stage_dir = self.root / candidate
            if not stage_dir.is_dir():
                continue
            binary = self._find_binary(stage_dir)
            if binary is None:
                raise ConfigurationError(f"Stage {stage_dir} has no executable '{self.binary_name}'")
            chainspec_path = stage_dir / 'chainspec.yaml'
            chainspec = read_yaml_file(str(chainspec_path)) if chainspec_path.exists() else {}
            logger.debug(f"Resolved release {version} to {binary}")
            return StagedRelease(version=version, binary_path=binary, chainspec=chainspec, source=stage_dir)
        staged = ', '.join(self.available()) or 'none'
        raise ConfigurationError(f"Version {version} is not staged under {self.root} (staged: {staged})")

    def _find_binary(self, stage_dir: Path) -> Optional[Path]:
        for path in (stage_dir / 'bin' / self.binary_name, stage_dir / self.binary_name):
            if path.is_file() and os.access(path, os.X_OK):
                return path
        return None


class FixedProvenance(BinaryProvenance):
    """A single explicitly given binary, used when settings name one directly."""

    def __init__(self, version: str, binary_path: Union[str, Path]):
        self.version = version
        self.binary_path = Path(binary_path).expanduser()

    def available(self) -> List[str]:
        return [self.version]

    def resolve(self, version: str) -> StagedRelease:
        if version != self.version:
            raise ConfigurationError(f"Only version {self.version} is available, not {version}")
        if not self.binary_path.is_file():
            raise ConfigurationError(f"Node binary not found: {self.binary_path}")
        return StagedRelease(version=version, binary_path=self.binary_path)
