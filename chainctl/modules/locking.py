"""Exclusive phase lock for operations that reshape a fleet.

An upgrade's activation and a join/leave must not overlap on the same
network. The lock is an in-process mutex plus a lock file created with
``O_EXCL``, so separate chainctl invocations respect it too. A lock file
whose owning pid is gone is treated as stale and replaced.
"""

import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional

from .errors import ChainctlError

logger = logging.getLogger("chainctl.locking")


class PhaseLock:
    """Single-holder lock scoped to one network directory."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._mutex = threading.Lock()

    def holder(self) -> Optional[str]:
        """Description of the current holder, or None if free."""
        try:
            content = self.path.read_text().strip()
        except FileNotFoundError:
            return None
        owner, _, pid = content.rpartition(' pid=')
        if pid.isdigit() and not _pid_alive(int(pid)):
            return None
        return content

    def held(self) -> bool:
        return self._mutex.locked() or self.holder() is not None

    def _create(self, owner: str) -> bool:
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, 'w') as f:
            f.write(f"{owner} pid={os.getpid()}\n")
        return True

    @contextmanager
    def hold(self, owner: str, on_busy: Callable[[str], ChainctlError]) -> Iterator[None]:
        """Hold the lock for the duration of the block.

        Args:
            owner: What is taking the lock, recorded in the lock file
            on_busy: Builds the error raised when someone else holds it
        """
        if not self._mutex.acquire(blocking=False):
            raise on_busy("another operation in this process")
        try:
            if not self._create(owner):
                holder = self.holder()
                if holder is not None:
                    raise on_busy(holder)
                logger.warning(f"Removing stale lock file {self.path}")
                self.path.unlink(missing_ok=True)
                if not self._create(owner):
                    raise on_busy(self.holder() or "unknown holder")
            try:
                yield
            finally:
                self.path.unlink(missing_ok=True)
        finally:
            self._mutex.release()


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
