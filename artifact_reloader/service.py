"""In-process watch-and-reload service.

Wires a :class:`~artifact_reloader.watcher.ChangeDetector`, a
:class:`~artifact_reloader.coordinator.ReloadCoordinator` and one reload
strategy together from a :class:`~artifact_reloader.config.Config`. A
stateful server embeds a :class:`ReloadService` when ``watch_enabled`` is set;
without it the service stays idle and the server is expected to be restarted
by an external orchestrator instead.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from watchdog.observers.api import BaseObserver

from artifact_reloader.config import Config, running_in_container
from artifact_reloader.coordinator import ReloadCoordinator, ReloadLease, Reloader
from artifact_reloader.fingerprint import ContentFingerprinter
from artifact_reloader.reloader import ArtifactSnapshot, InProcessReloader, SelfRestartReloader
from artifact_reloader.state import SharedState
from artifact_reloader.watcher import ChangeDetector

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

MODE_IN_PROCESS = "in-process"
MODE_SELF_RESTART = "self-restart"

__all__ = ["ReloadService", "resolve_reload_mode"]


def resolve_reload_mode(config: Config) -> str:
    """Return the concrete reload mode for ``config.reload_mode``.

    ``auto`` means self-restart inside a container, where the image is the
    unit of deployment, and in-process refresh everywhere else.
    """
    if config.reload_mode != "auto":
        return config.reload_mode
    return MODE_SELF_RESTART if running_in_container() else MODE_IN_PROCESS


class ReloadService:
    """Watch the configured artifact and keep the host's state in step with it.

    Attributes:
        config (Config): Resolved configuration.
        mode (str): ``in-process`` or ``self-restart``.
        state (SharedState): State refreshed by the in-process strategy.
        exit_requested (threading.Event): Set when the self-restart strategy
            asks the host to exit; the status is in ``exit_code``.

    Example:
        >>> service = ReloadService(config, loader=MyIndex.build)
        >>> service.start()
        >>> with service.state.read() as index:
        ...     index.query("...")
        >>> service.stop()
    """

    def __init__(
        self,
        config: Config,
        loader: Callable[[Path], Any] = ArtifactSnapshot.load,
        state: Optional[SharedState] = None,
        request_exit: Optional[Callable[[int], Any]] = None,
        observer_factory: Optional[Callable[[], BaseObserver]] = None,
    ) -> None:
        self.config = config
        self.mode = resolve_reload_mode(config)
        self.state: SharedState = state if state is not None else SharedState()
        self.exit_requested = threading.Event()
        self.exit_code: Optional[int] = None
        self._request_exit = request_exit

        self.fingerprinter = ContentFingerprinter()
        self.lease = ReloadLease(config.target_filename)
        self.reloader = self._build_reloader(loader)
        self.coordinator = ReloadCoordinator(
            self.reloader,
            lease=self.lease,
            lease_timeout=config.lease_timeout_s,
            # After a self-restart request there is nothing left to re-check
            fingerprint_source=self.fingerprinter.compute if self.mode == MODE_IN_PROCESS else None,
        )
        self.detector = ChangeDetector(
            config.target_directory,
            config.target_filename,
            on_change=self.coordinator.handle_change,
            debounce_seconds=config.debounce_seconds,
            poll_interval=config.poll_interval_s,
            fingerprinter=self.fingerprinter,
            observer_factory=observer_factory,
        )
        self._started = False

    @property
    def running(self) -> bool:
        return self._started

    def start(self) -> bool:
        """Load the initial state (in-process mode) and start watching.

        Returns:
            bool: False if watching is disabled in the configuration.

        Raises:
            WatchError: If the target directory cannot be observed.
        """
        if self._started:
            return True
        if not self.config.watch_enabled:
            if self.config.supervised:
                logger.info("Running under an external supervisor; in-process watching disabled")
            else:
                logger.info("File watching disabled (watch_enabled=false)")
            return False

        logger.info(f"Starting reload service for {self.config.target_path} in {self.mode} mode")
        if isinstance(self.reloader, InProcessReloader):
            self.reloader.resume()
        if isinstance(self.reloader, InProcessReloader) and not self.state.is_loaded:
            try:
                self.coordinator.applied_fingerprint = self.reloader.load_initial(self.config.target_path)
            except Exception as e:
                logger.error(f"Failed to load initial state from {self.config.target_path}: {e}", exc_info=True)

        self.detector.start()
        if self.coordinator.applied_fingerprint is None:
            self.coordinator.applied_fingerprint = self.detector.target.fingerprint
        self._started = True
        return True

    def stop(self) -> None:
        """Stop watching and abort a reload still waiting out its settle delay."""
        if not self._started:
            return
        if isinstance(self.reloader, InProcessReloader):
            self.reloader.cancel()
        self.detector.stop()
        self._started = False
        logger.info("Reload service stopped.")

    def retarget(self, directory: Union[str, Path], filename: Optional[str] = None) -> None:
        """Watch a new artifact location.

        The detector re-subscribes and re-baselines there without emitting; the
        next confirmed change at the new location is reloaded.

        Raises:
            WatchError: If the new directory does not exist.
        """
        self.detector.retarget(directory, filename)
        self.config.target_directory = str(self.detector.target.directory)
        self.config.target_filename = self.detector.target.filename
        logger.info(f"Reload service now watching {self.config.target_path}")

    def get_statistics(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {"mode": self.mode, "state_generation": self.state.generation}
        stats.update(self.detector.get_statistics())
        stats.update(self.coordinator.get_statistics())
        return stats

    def _build_reloader(self, loader: Callable[[Path], Any]) -> Reloader:
        if self.mode == MODE_SELF_RESTART:
            return SelfRestartReloader(self._on_exit_requested, settle_delay=self.config.settle_delay_s)
        return InProcessReloader(
            self.state,
            loader,
            settle_delay=self.config.settle_delay_s,
            lease=self.lease,
            fingerprinter=self.fingerprinter,
        )

    def _on_exit_requested(self, code: int) -> None:
        self.exit_code = code
        self.exit_requested.set()
        if self._request_exit is not None:
            self._request_exit(code)

    def __enter__(self) -> "ReloadService":
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()
