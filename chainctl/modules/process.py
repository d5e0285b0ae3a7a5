"""Node process supervision.

ProcessFleetController owns the runtime state of every node process in one
network. The actual OS work sits behind ProcessSupervisor so the controller
can be driven by a different job-control mechanism (or a fake in tests).
"""

import logging
import os
import shlex
import signal
import subprocess
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from .assets import NODE_CONFIG_FILE
from .errors import ProcessError
from .models import NetworkAsset, NodeProcess, NodeState

logger = logging.getLogger("chainctl.process")

PID_FILE = "node.pid"
LOG_FILE = "logs/stdout.log"
KILL_WAIT = 5.0


class ProcessSupervisor:
    """Interface to the OS process primitives the controller needs."""

    def spawn(self, command: List[str], log_path: Path, cwd: Path) -> Any:
        raise NotImplementedError

    def adopt(self, pid: int) -> Optional[Any]:
        """Return a handle for an already-running pid, or None if it is gone."""
        raise NotImplementedError

    def pid(self, handle: Any) -> int:
        raise NotImplementedError

    def poll(self, handle: Any) -> Optional[int]:
        """Exit code if the process has exited, None while it runs."""
        raise NotImplementedError

    def terminate(self, handle: Any) -> None:
        raise NotImplementedError

    def kill(self, handle: Any) -> None:
        raise NotImplementedError

    def wait(self, handle: Any, timeout: float) -> Optional[int]:
        """Wait up to ``timeout`` seconds; exit code, or None if still running."""
        raise NotImplementedError


@dataclass
class ChildHandle:
    pid: int
    popen: Optional[subprocess.Popen] = None


class SubprocessSupervisor(ProcessSupervisor):
    """Runs nodes as detached process groups via ``subprocess``."""

    def spawn(self, command: List[str], log_path: Path, cwd: Path) -> ChildHandle:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, 'ab') as logfile:
            popen = subprocess.Popen(
                command,
                cwd=str(cwd),
                stdin=subprocess.DEVNULL,
                stdout=logfile,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        return ChildHandle(pid=popen.pid, popen=popen)

    def adopt(self, pid: int) -> Optional[ChildHandle]:
        handle = ChildHandle(pid=pid)
        return handle if self.poll(handle) is None else None

    def pid(self, handle: ChildHandle) -> int:
        return handle.pid

    def poll(self, handle: ChildHandle) -> Optional[int]:
        if handle.popen is not None:
            return handle.popen.poll()
        try:
            os.kill(handle.pid, 0)
        except ProcessLookupError:
            return -1
        except PermissionError:
            return None
        return None

    def _signal(self, handle: ChildHandle, sig: int) -> None:
        try:
            os.killpg(handle.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            os.kill(handle.pid, sig)

    def terminate(self, handle: ChildHandle) -> None:
        self._signal(handle, signal.SIGTERM)

    def kill(self, handle: ChildHandle) -> None:
        self._signal(handle, signal.SIGKILL)

    def wait(self, handle: ChildHandle, timeout: float) -> Optional[int]:
        if handle.popen is not None:
            try:
                return handle.popen.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                return None
        deadline = time.monotonic() + timeout
        while True:
            code = self.poll(handle)
            if code is not None or time.monotonic() >= deadline:
                return code
            time.sleep(0.1)


class ProcessFleetController:
    """Starts, stops and watches the node processes of one network.

    Operations on different node ids may run concurrently; operations on the
    same node id are serialized by a per-node lock. Crashed nodes are only
    reported, never restarted here.
    """

    def __init__(
        self,
        asset: NetworkAsset,
        binary_resolver: Callable[[str], Path],
        supervisor: Optional[ProcessSupervisor] = None,
        launcher: Optional[str] = None,
        stop_grace_period: float = 10.0,
        max_workers: int = 10,
    ):
        """Initialize the controller and adopt nodes left running earlier.

        Args:
            asset: Network whose nodes are managed
            binary_resolver: Maps a binary version to the executable path
            supervisor: Process primitives; subprocess-based by default
            launcher: Optional command prepended to every node command line
            stop_grace_period: Default seconds between SIGTERM and SIGKILL
            max_workers: Thread pool size for fleet-wide operations
        """
        self.asset = asset
        self.binary_resolver = binary_resolver
        self.supervisor = supervisor or SubprocessSupervisor()
        self.launcher = shlex.split(launcher) if launcher else []
        self.stop_grace_period = stop_grace_period
        self.max_workers = max_workers
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}
        self._procs: Dict[str, NodeProcess] = {}
        for node in asset.nodes:
            self._adopt(node.node_id)

    # -- bookkeeping ------------------------------------------------------

    def _pid_file(self, node_id: str) -> Path:
        return self.asset.node_dir(node_id) / PID_FILE

    def _lock(self, node_id: str) -> threading.RLock:
        with self._guard:
            return self._locks.setdefault(node_id, threading.RLock())

    def _proc(self, node_id: str) -> NodeProcess:
        if self.asset.get_node(node_id) is None:
            raise ProcessError(node_id, ProcessError.UNKNOWN_NODE, f"not part of network {self.asset.name}")
        with self._guard:
            return self._procs.setdefault(node_id, NodeProcess(node_id=node_id))

    def _adopt(self, node_id: str) -> None:
        proc = self._proc(node_id)
        pid_file = self._pid_file(node_id)
        if not pid_file.exists():
            return
        try:
            pid = int(pid_file.read_text().strip())
        except ValueError:
            logger.warning(f"Ignoring unreadable pid file {pid_file}")
            return
        handle = self.supervisor.adopt(pid)
        if handle is None:
            # It went away without anyone asking it to stop.
            proc.state = NodeState.CRASHED
            proc.pid = pid
            logger.warning(f"⚠️  {node_id} (pid {pid}) is no longer running")
        else:
            proc.state = NodeState.RUNNING
            proc.pid = pid
            proc.handle = handle
            proc.last_seen = time.time()
            logger.debug(f"Adopted running {node_id} (pid {pid})")

    def _refresh(self, proc: NodeProcess) -> NodeProcess:
        if proc.state in (NodeState.RUNNING, NodeState.STARTING) and proc.handle is not None:
            code = self.supervisor.poll(proc.handle)
            if code is None:
                proc.last_seen = time.time()
            else:
                proc.state = NodeState.CRASHED
                proc.exit_code = code
                logger.warning(f"💥 {proc.node_id} (pid {proc.pid}) exited unexpectedly with code {code}")
        return proc

    def _command(self, node_id: str) -> List[str]:
        node = self.asset.get_node(node_id)
        binary = self.binary_resolver(node.binary_version)
        if not Path(binary).exists():
            raise ProcessError(node_id, ProcessError.START_FAILED, f"binary not found: {binary}")
        config = self.asset.node_dir(node_id) / 'config' / NODE_CONFIG_FILE
        return self.launcher + [str(binary), 'validator', str(config)]

    # -- operations -------------------------------------------------------

    def start(self, node_id: str) -> NodeProcess:
        """Start a node; starting a Running node is a no-op."""
        with self._lock(node_id):
            proc = self._refresh(self._proc(node_id))
            if proc.state == NodeState.RUNNING:
                logger.debug(f"{node_id} is already running (pid {proc.pid})")
                return proc

            command = self._command(node_id)
            node_dir = self.asset.node_dir(node_id)
            proc.state = NodeState.STARTING
            logger.info(f"🚀 Starting {node_id}: {' '.join(command)}")
            try:
                handle = self.supervisor.spawn(command, node_dir / LOG_FILE, node_dir)
            except OSError as e:
                proc.state = NodeState.STOPPED
                raise ProcessError(node_id, ProcessError.START_FAILED, str(e)) from e

            proc.handle = handle
            proc.pid = self.supervisor.pid(handle)
            proc.exit_code = None
            proc.last_seen = time.time()
            try:
                self._pid_file(node_id).write_text(f"{proc.pid}\n")
            except OSError as e:
                # A node without a pid file is invisible to later invocations.
                self.supervisor.kill(handle)
                self.supervisor.wait(handle, self.stop_grace_period)
                proc.state = NodeState.STOPPED
                proc.handle = None
                raise ProcessError(node_id, ProcessError.START_FAILED, f"cannot write pid file: {e}") from e
            proc.state = NodeState.RUNNING
            return proc

    def stop(self, node_id: str, grace_period: Optional[float] = None) -> NodeProcess:
        """Stop a node: SIGTERM, wait ``grace_period``, then SIGKILL.

        Raises:
            ProcessError: ``ungraceful-stop`` if SIGKILL was needed (the node
                is Stopped regardless), ``stop-failed`` if it survived SIGKILL
        """
        grace = self.stop_grace_period if grace_period is None else grace_period
        with self._lock(node_id):
            proc = self._refresh(self._proc(node_id))
            if proc.state not in (NodeState.RUNNING, NodeState.STARTING) or proc.handle is None:
                self._mark_stopped(proc)
                return proc

            proc.state = NodeState.STOPPING
            logger.info(f"🛑 Stopping {node_id} (pid {proc.pid})")
            self.supervisor.terminate(proc.handle)
            code = self.supervisor.wait(proc.handle, grace)
            if code is not None:
                proc.exit_code = code
                self._mark_stopped(proc)
                return proc

            logger.warning(f"⚠️  {node_id} ignored SIGTERM for {grace:g}s, sending SIGKILL")
            self.supervisor.kill(proc.handle)
            code = self.supervisor.wait(proc.handle, KILL_WAIT)
            if code is None:
                proc.state = NodeState.RUNNING
                raise ProcessError(node_id, ProcessError.STOP_FAILED, f"pid {proc.pid} survived SIGKILL")
            proc.exit_code = code
            self._mark_stopped(proc)
            raise ProcessError(node_id, ProcessError.UNGRACEFUL_STOP, f"killed after {grace:g}s grace period")

    def _mark_stopped(self, proc: NodeProcess) -> None:
        proc.state = NodeState.STOPPED
        proc.handle = None
        self._pid_file(proc.node_id).unlink(missing_ok=True)

    def restart(self, node_id: str, grace_period: Optional[float] = None) -> NodeProcess:
        """Stop then start a node, keeping its on-disk state."""
        with self._lock(node_id):
            try:
                self.stop(node_id, grace_period)
            except ProcessError as e:
                if e.subkind != ProcessError.UNGRACEFUL_STOP:
                    raise
                logger.warning(f"Restarting {node_id} after ungraceful stop")
            return self.start(node_id)

    def crash_check(self, node_id: str) -> bool:
        """True if the node exited without being asked to."""
        with self._lock(node_id):
            return self._refresh(self._proc(node_id)).state == NodeState.CRASHED

    def status(self, node_id: str) -> NodeState:
        with self._lock(node_id):
            return self._refresh(self._proc(node_id)).state

    def process(self, node_id: str) -> NodeProcess:
        with self._lock(node_id):
            return self._refresh(self._proc(node_id))

    def processes(self) -> Dict[str, NodeProcess]:
        return {node.node_id: self.process(node.node_id) for node in self.asset.nodes}

    def track(self, node_id: str) -> NodeProcess:
        """Begin tracking a node added after the controller was created."""
        return self._proc(node_id)

    # -- fleet-wide -------------------------------------------------------

    def _fan_out(self, func, node_ids: Iterable[str]) -> Dict[str, Exception]:
        node_ids = list(node_ids)
        errors: Dict[str, Exception] = {}
        if not node_ids:
            return errors
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(node_ids))) as executor:
            future_to_node = {executor.submit(func, node_id): node_id for node_id in node_ids}
            for future in as_completed(future_to_node):
                node_id = future_to_node[future]
                try:
                    future.result()
                except ProcessError as e:
                    errors[node_id] = e
        return errors

    def start_many(self, node_ids: Iterable[str]) -> Dict[str, Exception]:
        """Start several nodes in parallel; returns per-node errors."""
        return self._fan_out(self.start, node_ids)

    def stop_many(self, node_ids: Iterable[str], grace_period: Optional[float] = None) -> Dict[str, Exception]:
        """Stop several nodes in parallel; returns per-node errors."""
        return self._fan_out(lambda node_id: self.stop(node_id, grace_period), node_ids)

    def restart_many(self, node_ids: Iterable[str]) -> Dict[str, Exception]:
        return self._fan_out(self.restart, node_ids)
