"""
Lifecycle orchestration for externally managed processes.

Responsibility:
    Own a :class:`~artifact_reloader.process.ProcessRegistry` and drive each
    managed process through ``Stopped -> Starting -> Running -> Stopping ->
    Stopped``, with ``Crashed`` on failed starts and unexpected exits.

Design:
    - **Idempotent operations**: ``start`` on a running process and ``stop`` on a
      stopped one are no-ops. ``restart`` is ``stop`` then ``start`` under the
      process's own lock, so two restarts of one identity never interleave.
    - **Graceful then forced**: ``stop`` asks politely, waits the grace period,
      escalates to a kill, and only returns once the exit is confirmed.
    - **Bounded retries**: failed starts and crashes are retried with
      exponential backoff until ``max_start_attempts`` consecutive failures,
      after which the orchestrator is marked fatal.
    - **Exit intents**: the reserved restart status is a normal transition, not
      a failure; a clean exit stops supervision of that process.

Key Invariants:
    - Every wait is bounded (startup timeout, grace period, kill timeout, backoff).
    - A new instance is never launched while the previous one is still alive.
    - ``shutdown`` stops every owned process; it runs from an ``atexit`` hook
      as well as from the normal shutdown path.
"""

from __future__ import annotations

import atexit
import logging
import subprocess
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional

from artifact_reloader.coordinator import Reloader
from artifact_reloader.exceptions import ProcessStartError, RestartBudgetExhausted
from artifact_reloader.process import ExitIntent, ManagedProcess, ProcessRegistry, ProcessState

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

DEFAULT_GRACE_PERIOD = 5.0
DEFAULT_STARTUP_TIMEOUT = 10.0
DEFAULT_MAX_START_ATTEMPTS = 3
DEFAULT_RESTART_BACKOFF = 1.0
MAX_BACKOFF = 30.0
KILL_TIMEOUT = 10.0
LIVENESS_INTERVAL = 0.1
STABLE_UPTIME = 60.0

__all__ = ["ExternalProcessOrchestrator", "ProcessRestartReloader"]


class ExternalProcessOrchestrator:
    """Start, stop, restart and supervise managed processes.

    Attributes:
        registry (ProcessRegistry): Processes owned by this orchestrator.
        grace_period (float): Seconds between graceful and forced termination.
        startup_timeout (float): Seconds a start may take to show liveness.
        max_start_attempts (int): Consecutive failures tolerated before giving up.
        restart_backoff (float): Base delay between retries, doubled per failure.
        fatal_error (Optional[RestartBudgetExhausted]): Set once a budget is exhausted.

    Example:
        >>> orchestrator = ExternalProcessOrchestrator()
        >>> orchestrator.register(ManagedProcess("server", CommandLauncher(["server"]), Path("."), "a.bin"))
        >>> orchestrator.start("server")
        >>> orchestrator.restart("server")
        >>> orchestrator.shutdown()
    """

    def __init__(
        self,
        registry: Optional[ProcessRegistry] = None,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        startup_timeout: float = DEFAULT_STARTUP_TIMEOUT,
        max_start_attempts: int = DEFAULT_MAX_START_ATTEMPTS,
        restart_backoff: float = DEFAULT_RESTART_BACKOFF,
        stable_uptime: float = STABLE_UPTIME,
    ) -> None:
        self.registry = registry if registry is not None else ProcessRegistry()
        self.grace_period = grace_period
        self.startup_timeout = startup_timeout
        self.max_start_attempts = max(1, max_start_attempts)
        self.restart_backoff = restart_backoff
        self.stable_uptime = stable_uptime
        self.fatal_error: Optional[RestartBudgetExhausted] = None
        self._shutdown_event = threading.Event()
        self._cleanup_registered = False

    def register(self, process: ManagedProcess) -> ManagedProcess:
        return self.registry.register(process)

    @property
    def shutting_down(self) -> bool:
        return self._shutdown_event.is_set()

    def request_shutdown(self) -> None:
        """Interrupt pending starts, backoffs and settle waits without stopping anything.

        Safe to call from a signal handler. A retry loop cut short this way is
        not a fatal error; :meth:`shutdown` still has to stop the processes.
        """
        self._shutdown_event.set()

    def start(self, identity: str) -> None:
        """Start the process unless it is already running.

        Raises:
            RestartBudgetExhausted: If every allowed attempt failed.
        """
        process = self.registry.get(identity)
        with process.lock:
            if process.state == ProcessState.RUNNING:
                # Account for an exit that supervision has not observed yet
                self._check_locked(process)
                if process.state == ProcessState.RUNNING:
                    logger.debug(f"{identity} already running (PID {process.pid})")
                    return
            if process.state == ProcessState.STOPPED:
                process.consecutive_failures = 0
            process.desired_state = ProcessState.RUNNING
            self._ensure_running(process)

    def stop(self, identity: str) -> None:
        """Stop the process and wait for its exit to be confirmed."""
        process = self.registry.get(identity)
        with process.lock:
            process.desired_state = ProcessState.STOPPED
            self._stop_locked(process)

    def restart(self, identity: str, settle_delay: float = 0.0) -> None:
        """Stop, optionally wait ``settle_delay``, then start; exclusive per identity."""
        process = self.registry.get(identity)
        with process.lock:
            logger.info(f"Restarting {identity}...")
            # desired_state stays Running so supervision does not wind down mid-restart
            process.desired_state = ProcessState.RUNNING
            self._stop_locked(process)
            if settle_delay > 0 and self._shutdown_event.wait(settle_delay):
                return
            process.consecutive_failures = 0
            self._ensure_running(process)
            if process.state == ProcessState.RUNNING:
                process.restarts += 1
                logger.info(f"{identity} restarted (PID {process.pid})")

    def check_processes(self) -> None:
        """Observe every process that should be running and react to exits.

        Processes whose lock is busy (a start, stop or restart is in flight)
        are skipped until the next call.
        """
        for process in self.registry:
            if not process.lock.acquire(blocking=False):
                continue
            try:
                self._check_locked(process)
            except RestartBudgetExhausted:
                # Already recorded in fatal_error
                pass
            finally:
                process.lock.release()

    def run(self, stop_event: threading.Event, poll_interval: float = 1.0) -> int:
        """Start every registered process and supervise until told to stop.

        Args:
            stop_event (threading.Event): Set by the host to request shutdown.
            poll_interval (float): Seconds between exit checks.

        Returns:
            int: 0 on clean shutdown, 1 if a restart budget was exhausted.
        """
        try:
            for process in self.registry:
                self.start(process.identity)
        except RestartBudgetExhausted:
            return self._fatal_exit_code()

        while not stop_event.wait(poll_interval):
            if self.shutting_down:
                break
            self.check_processes()
            if self.fatal_error is not None:
                return self._fatal_exit_code()
            if not any(p.desired_state == ProcessState.RUNNING for p in self.registry):
                logger.info("No managed process left to supervise.")
                break
        return 1 if self.fatal_error is not None else 0

    def shutdown(self) -> None:
        """Stop every owned process. Safe to call more than once."""
        self._shutdown_event.set()
        for process in self.registry:
            try:
                with process.lock:
                    process.desired_state = ProcessState.STOPPED
                    self._stop_locked(process)
            except Exception as e:
                logger.error(f"Error stopping {process.identity} during shutdown: {e}")

    def install_cleanup_hook(self) -> None:
        """Register :meth:`shutdown` to run at interpreter exit.

        A hard kill (SIGKILL) of the orchestrator bypasses this hook; the
        managed processes then outlive it.
        """
        if not self._cleanup_registered:
            atexit.register(self.shutdown)
            self._cleanup_registered = True

    def remove_cleanup_hook(self) -> None:
        if self._cleanup_registered:
            atexit.unregister(self.shutdown)
            self._cleanup_registered = False

    def get_statistics(self) -> Dict[str, Any]:
        return {
            process.identity: {
                "state": process.state.value,
                "pid": process.pid,
                "starts": process.starts,
                "restarts": process.restarts,
                "crashes": process.crashes,
                "consecutive_failures": process.consecutive_failures,
                "uptime": process.uptime,
            }
            for process in self.registry
        }

    def _fatal_exit_code(self) -> int:
        logger.critical(f"Giving up: {self.fatal_error}")
        return 1

    def _ensure_running(self, process: ManagedProcess) -> None:
        """Start attempts with backoff until one succeeds or the budget is spent. Lock held."""
        while True:
            if self._shutdown_event.is_set():
                logger.info(f"Shutdown in progress; not starting {process.identity}")
                return
            if process.consecutive_failures >= self.max_start_attempts:
                error = RestartBudgetExhausted(process.identity, process.consecutive_failures)
                process.desired_state = ProcessState.STOPPED
                process.transition(ProcessState.STOPPED)
                self.fatal_error = error
                logger.critical(str(error))
                raise error
            try:
                self._start_once(process)
                return
            except ProcessStartError as e:
                process.consecutive_failures += 1
                process.crashes += 1
                process.transition(ProcessState.CRASHED)
                logger.error(
                    f"Failed to start {process.identity} "
                    f"(attempt {process.consecutive_failures}/{self.max_start_attempts}): {e}"
                )
                if process.consecutive_failures < self.max_start_attempts:
                    self._backoff(process)

    def _backoff(self, process: ManagedProcess) -> None:
        delay = min(MAX_BACKOFF, self.restart_backoff * 2 ** max(0, process.consecutive_failures - 1))
        if delay > 0:
            logger.info(f"Retrying {process.identity} in {delay:.1f}s")
            self._shutdown_event.wait(delay)

    def _start_once(self, process: ManagedProcess) -> None:
        process.transition(ProcessState.STARTING)
        try:
            handle = process.launcher.launch(process.identity, process.directory, process.filename)
        except OSError as e:
            raise ProcessStartError(process.identity, f"could not launch: {e}") from e

        started = time.monotonic()
        process.handle = handle
        process.last_start_time = started
        process.starts += 1
        deadline = started + self.startup_timeout

        while True:
            returncode = handle.poll()
            if returncode is not None:
                process.handle = None
                process.last_exit_code = returncode
                process.last_exit_intent = ExitIntent.classify(returncode)
                raise ProcessStartError(process.identity, f"exited during startup with status {returncode}", returncode)
            if process.launcher.is_live(handle, process.identity, time.monotonic() - started):
                process.transition(ProcessState.RUNNING)
                logger.info(f"{process.identity} running (PID {handle.pid})")
                return
            if time.monotonic() >= deadline:
                logger.debug(f"{process.identity}: no liveness signal; terminating")
                self._terminate_handle(process, handle)
                process.handle = None
                raise ProcessStartError(process.identity, f"no liveness signal within {self.startup_timeout:.1f}s")
            if self._shutdown_event.wait(LIVENESS_INTERVAL):
                logger.info(f"Shutdown requested while starting {process.identity}")
                process.transition(ProcessState.STOPPING)
                process.last_exit_code = self._terminate_handle(process, handle)
                process.handle = None
                process.transition(ProcessState.STOPPED)
                return

    def _stop_locked(self, process: ManagedProcess) -> None:
        handle = process.handle
        if handle is None:
            if process.state in (ProcessState.RUNNING, ProcessState.CRASHED):
                process.transition(ProcessState.STOPPED)
            return
        process.transition(ProcessState.STOPPING)
        logger.info(f"Stopping {process.identity} (PID {handle.pid})...")
        returncode = self._terminate_handle(process, handle)
        process.handle = None
        process.last_exit_code = returncode
        process.transition(ProcessState.STOPPED)
        logger.info(f"{process.identity} stopped (status {returncode})")

    def _terminate_handle(self, process: ManagedProcess, handle: "subprocess.Popen[bytes]") -> Optional[int]:
        """Graceful stop, escalating to a kill after the grace period. Returns the exit status."""
        if handle.poll() is not None:
            process.launcher.cleanup(process.identity)
            return handle.returncode
        try:
            process.launcher.terminate(handle, process.identity, self.grace_period)
        except OSError as e:
            logger.debug(f"Terminate request for {process.identity} failed: {e}")
        try:
            return handle.wait(timeout=self.grace_period)
        except subprocess.TimeoutExpired:
            logger.warning(f"Graceful shutdown of {process.identity} timed out; killing process.")

        try:
            process.launcher.kill(handle, process.identity)
        except OSError as e:
            logger.debug(f"Kill request for {process.identity} failed: {e}")
        try:
            return handle.wait(timeout=KILL_TIMEOUT)
        except subprocess.TimeoutExpired:
            logger.critical(f"{process.identity} (PID {handle.pid}) did not exit after kill")
            return None

    def _check_locked(self, process: ManagedProcess) -> None:
        if process.desired_state != ProcessState.RUNNING or process.state != ProcessState.RUNNING:
            return
        handle = process.handle
        if handle is None:
            return
        returncode = handle.poll()
        if returncode is None:
            return

        uptime = time.monotonic() - (process.last_start_time or time.monotonic())
        process.handle = None
        process.last_exit_code = returncode
        intent = ExitIntent.classify(returncode)
        process.last_exit_intent = intent

        if intent is ExitIntent.RESTART:
            logger.info(f"{process.identity} requested a restart (status {returncode})")
            process.transition(ProcessState.STOPPING)
            process.launcher.cleanup(process.identity)
            process.transition(ProcessState.STOPPED)
            process.consecutive_failures = 0
            self._ensure_running(process)
            if process.state == ProcessState.RUNNING:
                process.restarts += 1
                logger.info(f"{process.identity} restarted with a fresh instance (PID {process.pid})")
        elif intent is ExitIntent.NORMAL:
            logger.info(f"{process.identity} exited normally")
            process.desired_state = ProcessState.STOPPED
            process.transition(ProcessState.STOPPED)
        else:
            process.crashes += 1
            if uptime >= self.stable_uptime:
                process.consecutive_failures = 0
            process.consecutive_failures += 1
            process.transition(ProcessState.CRASHED)
            logger.error(
                f"{process.identity} exited unexpectedly with status {returncode} "
                f"after {uptime:.1f}s (failure {process.consecutive_failures}/{self.max_start_attempts})"
            )
            if process.consecutive_failures < self.max_start_attempts:
                self._backoff(process)
            self._ensure_running(process)

    def __repr__(self) -> str:
        return f"<ExternalProcessOrchestrator processes={len(self.registry)}>"


class ProcessRestartReloader(Reloader):
    """Reload strategy that restarts a managed process on each confirmed change."""

    def __init__(self, orchestrator: ExternalProcessOrchestrator, identity: str, settle_delay: float = 1.0) -> None:
        self.orchestrator = orchestrator
        self.identity = identity
        self.settle_delay = settle_delay

    def reload(self, path: Path) -> Optional[str]:
        self.orchestrator.restart(self.identity, settle_delay=self.settle_delay)
        if self.orchestrator.registry.get(self.identity).state == ProcessState.RUNNING:
            logger.info("Container restarted with fresh artifact")
        return None

    def describe(self) -> str:
        return f"restart of {self.identity}"
