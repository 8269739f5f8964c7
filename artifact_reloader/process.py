"""Managed process model: lifecycle states, exit intents, launchers and registry.

A managed process is an independent OS process that the orchestrator starts,
observes and signals. How it is launched and signalled depends on the
launcher:

* :class:`CommandLauncher` runs a plain command and uses SIGTERM/SIGKILL
  (TerminateProcess on Windows).
* :class:`ContainerLauncher` runs the server image under podman or docker with
  the artifact directory bind-mounted read-only, and stops it through the
  container runtime so the runtime's own grace period applies.

Exit statuses are mapped to an explicit :class:`ExitIntent` instead of being
compared as bare integers.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

RESTART_EXIT_CODE = 42
DEFAULT_READY_AFTER = 0.5
RUNTIME_COMMAND_TIMEOUT = 30.0
SUPPORTED_RUNTIMES = ("podman", "docker")

__all__ = [
    "RESTART_EXIT_CODE",
    "ExitIntent",
    "ProcessState",
    "ProcessLauncher",
    "CommandLauncher",
    "ContainerLauncher",
    "ManagedProcess",
    "ProcessRegistry",
    "detect_runtime",
]


class ExitIntent(Enum):
    """What a managed process meant by exiting.

    ``RESTART`` is the reserved status 42, chosen outside the ranges shells and
    container runtimes reserve for themselves (1, 2, 125-128 and 128+N for
    signals).
    """

    NORMAL = 0
    RESTART = RESTART_EXIT_CODE
    FATAL = 1

    @property
    def code(self) -> int:
        return int(self.value)

    @classmethod
    def classify(cls, returncode: Optional[int]) -> "ExitIntent":
        """Map an exit status (negative for "killed by signal") to an intent."""
        if returncode == 0:
            return cls.NORMAL
        if returncode == RESTART_EXIT_CODE:
            return cls.RESTART
        return cls.FATAL


class ProcessState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    CRASHED = "crashed"


_TRANSITIONS: Dict[ProcessState, frozenset] = {
    ProcessState.STOPPED: frozenset({ProcessState.STARTING}),
    ProcessState.STARTING: frozenset({ProcessState.RUNNING, ProcessState.CRASHED, ProcessState.STOPPING}),
    ProcessState.RUNNING: frozenset({ProcessState.STOPPING, ProcessState.CRASHED, ProcessState.STOPPED}),
    ProcessState.STOPPING: frozenset({ProcessState.STOPPED}),
    ProcessState.CRASHED: frozenset({ProcessState.STARTING, ProcessState.STOPPING, ProcessState.STOPPED}),
}


def detect_runtime(preferred: Optional[str] = None) -> Optional[str]:
    """Return the container runtime executable to use, or None if none is installed.

    Podman is preferred over Docker when both are present.
    """
    if preferred:
        return preferred if shutil.which(preferred) else None
    for runtime in SUPPORTED_RUNTIMES:
        if shutil.which(runtime):
            return runtime
    return None


class ProcessLauncher(ABC):
    """Starts, signals and probes one kind of managed process."""

    @abstractmethod
    def launch(self, identity: str, directory: Path, filename: str) -> "subprocess.Popen[bytes]":
        """Start a new instance and return its local handle."""

    def terminate(self, handle: "subprocess.Popen[bytes]", identity: str, grace_period: float) -> None:
        """Request graceful termination. Must not block past ``grace_period``."""
        handle.terminate()

    def kill(self, handle: "subprocess.Popen[bytes]", identity: str) -> None:
        """Force termination."""
        handle.kill()

    def is_live(self, handle: "subprocess.Popen[bytes]", identity: str, uptime: float) -> bool:
        """Liveness signal used to promote ``Starting`` to ``Running``."""
        return handle.poll() is None

    def cleanup(self, identity: str) -> None:
        """Remove leftovers of an exited instance before the next start."""

    def describe(self) -> str:
        return type(self).__name__


class CommandLauncher(ProcessLauncher):
    """Run a command template as a local child process.

    The template may use ``{artifact_path}``, ``{directory}`` and
    ``{filename}``. The artifact path is also exported as ``ARTIFACT_PATH``.
    Standard input and output are inherited so the process can talk to the
    orchestrator's own client over them.

    Attributes:
        command (List[str]): Command template.
        ready_after (float): Seconds the process must stay alive before it counts as live.
        liveness_probe (Optional[Callable]): Overrides the default liveness check.
    """

    def __init__(
        self,
        command: Sequence[str],
        env: Optional[Mapping[str, str]] = None,
        ready_after: float = DEFAULT_READY_AFTER,
        liveness_probe: Optional[Callable[["subprocess.Popen[bytes]"], bool]] = None,
        cwd: Optional[str] = None,
    ) -> None:
        if not command:
            raise ValueError("command must not be empty")
        self.command = list(command)
        self.env = dict(env or {})
        self.ready_after = ready_after
        self.liveness_probe = liveness_probe
        self.cwd = cwd

    def render(self, directory: Path, filename: str) -> List[str]:
        values = {
            "artifact_path": str(directory / filename),
            "directory": str(directory),
            "filename": filename,
        }
        return [part.format(**values) for part in self.command]

    def launch(self, identity: str, directory: Path, filename: str) -> "subprocess.Popen[bytes]":
        argv = self.render(directory, filename)
        env = os.environ.copy()
        env.update(self.env)
        env["ARTIFACT_PATH"] = str(directory / filename)
        logger.info(f"Starting {identity}: {' '.join(argv)}")
        return subprocess.Popen(argv, env=env, cwd=self.cwd)

    def is_live(self, handle: "subprocess.Popen[bytes]", identity: str, uptime: float) -> bool:
        if handle.poll() is not None:
            return False
        if self.liveness_probe is not None:
            return bool(self.liveness_probe(handle))
        return uptime >= self.ready_after

    def describe(self) -> str:
        return f"command {self.command[0]}"


class ContainerLauncher(ProcessLauncher):
    """Run the server image under a container runtime.

    Attributes:
        runtime (str): ``podman`` or ``docker`` (or a path to either).
        image (str): Image reference.
        mount_point (str): Read-only bind target of the artifact directory.
        verbose (bool): Forward verbose logging into the container.
    """

    def __init__(
        self,
        runtime: str,
        image: str,
        mount_point: str = "/app/artifacts",
        verbose: bool = False,
        extra_args: Optional[Sequence[str]] = None,
    ) -> None:
        self.runtime = runtime
        self.image = image
        self.mount_point = mount_point.rstrip("/") or "/"
        self.verbose = verbose
        self.extra_args = list(extra_args or [])

    def build_command(self, identity: str, directory: Path, filename: str) -> List[str]:
        argv = [
            self.runtime, "run",
            "--name", identity,
            "--rm",
            "-i",
            "-v", f"{directory}:{self.mount_point}:ro",
            "-e", f"ARTIFACT_PATH={self.mount_point}/{filename}",
        ]
        if self.verbose:
            argv += ["-e", "RELOADER_VERBOSE=true"]
        argv += self.extra_args
        argv.append(self.image)
        return argv

    def launch(self, identity: str, directory: Path, filename: str) -> "subprocess.Popen[bytes]":
        # A container left over from a hard-killed orchestrator would block --name
        self.cleanup(identity)
        argv = self.build_command(identity, directory, filename)
        logger.info(f"Starting container {identity} from {self.image} ({self.runtime})")
        logger.debug(f"Container command: {' '.join(argv)}")
        return subprocess.Popen(argv)

    def terminate(self, handle: "subprocess.Popen[bytes]", identity: str, grace_period: float) -> None:
        self._runtime_call(["stop", "-t", str(max(0, int(grace_period))), identity], timeout=grace_period + 5.0)

    def kill(self, handle: "subprocess.Popen[bytes]", identity: str) -> None:
        self._runtime_call(["kill", identity], timeout=10.0)
        if handle.poll() is None:
            handle.kill()

    def is_live(self, handle: "subprocess.Popen[bytes]", identity: str, uptime: float) -> bool:
        if handle.poll() is not None:
            return False
        result = self._runtime_call(["inspect", "-f", "{{.State.Running}}", identity], timeout=10.0)
        return result is not None and result.returncode == 0 and result.stdout.strip() == "true"

    def cleanup(self, identity: str) -> None:
        self._runtime_call(["rm", "-f", identity], timeout=RUNTIME_COMMAND_TIMEOUT)

    def _runtime_call(self, args: List[str], timeout: float) -> "Optional[subprocess.CompletedProcess[str]]":
        try:
            return subprocess.run(
                [self.runtime, *args],
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug(f"{self.runtime} {args[0]} failed: {e}")
            return None

    def describe(self) -> str:
        return f"{self.runtime} image {self.image}"


class ManagedProcess:
    """One externally managed process and its lifecycle bookkeeping.

    ``handle`` is non-None exactly while the desired state is Running and the
    instance has not exited. All lifecycle operations take ``lock``, which
    makes ``restart`` mutually exclusive per identity.
    """

    def __init__(self, identity: str, launcher: ProcessLauncher, directory: Path, filename: str) -> None:
        self.identity = identity
        self.launcher = launcher
        self.directory = Path(directory)
        self.filename = filename
        self.state = ProcessState.STOPPED
        self.desired_state = ProcessState.STOPPED
        self.handle: Optional["subprocess.Popen[bytes]"] = None
        self.last_start_time: Optional[float] = None
        self.last_exit_code: Optional[int] = None
        self.last_exit_intent: Optional[ExitIntent] = None
        self.consecutive_failures = 0
        self.starts = 0
        self.restarts = 0
        self.crashes = 0
        self.lock = threading.RLock()

    @property
    def pid(self) -> Optional[int]:
        return self.handle.pid if self.handle is not None else None

    @property
    def uptime(self) -> float:
        if self.last_start_time is None or self.handle is None:
            return 0.0
        return time.monotonic() - self.last_start_time

    def transition(self, new_state: ProcessState) -> None:
        """Move to ``new_state``, logging the transition.

        Raises:
            RuntimeError: On a transition the lifecycle does not allow.
        """
        if new_state == self.state:
            return
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"{self.identity}: invalid transition {self.state.value} -> {new_state.value}")
        logger.debug(f"{self.identity}: {self.state.value} -> {new_state.value}")
        self.state = new_state

    def __repr__(self) -> str:
        return f"<ManagedProcess {self.identity} state={self.state.value} pid={self.pid}>"


class ProcessRegistry:
    """Managed processes keyed by identity, owned by one orchestrator."""

    def __init__(self) -> None:
        self._processes: Dict[str, ManagedProcess] = {}
        self._lock = threading.Lock()

    def register(self, process: ManagedProcess) -> ManagedProcess:
        with self._lock:
            if process.identity in self._processes:
                raise ValueError(f"Managed process already registered: {process.identity}")
            self._processes[process.identity] = process
        return process

    def get(self, identity: str) -> ManagedProcess:
        with self._lock:
            try:
                return self._processes[identity]
            except KeyError:
                raise KeyError(f"Unknown managed process: {identity}") from None

    def remove(self, identity: str) -> Optional[ManagedProcess]:
        with self._lock:
            return self._processes.pop(identity, None)

    def __contains__(self, identity: object) -> bool:
        with self._lock:
            return identity in self._processes

    def __iter__(self) -> Iterator[ManagedProcess]:
        with self._lock:
            return iter(list(self._processes.values()))

    def __len__(self) -> int:
        with self._lock:
            return len(self._processes)
