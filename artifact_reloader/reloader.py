"""Reload strategies for a watcher that lives inside the stateful service.

Two strategies share the :class:`~artifact_reloader.coordinator.Reloader`
interface:

* :class:`InProcessReloader` rebuilds the shared state from the artifact and
  publishes it atomically.
* :class:`SelfRestartReloader` is for a service that cannot rebuild in place
  (typically one running in a container). It asks to be restarted by exiting
  with the reserved restart status and leaves the restart itself to an
  external supervisor.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Generic, Optional, TypeVar

from artifact_reloader.coordinator import ReloadLease, Reloader
from artifact_reloader.fingerprint import ContentFingerprinter, short_fingerprint
from artifact_reloader.process import ExitIntent
from artifact_reloader.state import SharedState

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

T = TypeVar("T")

DEFAULT_SETTLE_DELAY = 1.0

__all__ = ["ArtifactSnapshot", "InProcessReloader", "SelfRestartReloader"]


@dataclass
class ArtifactSnapshot:
    """Immutable copy of the artifact bytes, the default in-process state.

    Real services pass their own loader that builds analysis state from the
    path; this snapshot is enough for services that only need the bytes.
    """

    path: Path
    data: bytes
    fingerprint: str
    loaded_at: float = field(default_factory=time.time)
    closed: bool = False

    @classmethod
    def load(cls, path: Path) -> "ArtifactSnapshot":
        data = Path(path).read_bytes()
        return cls(path=Path(path), data=data, fingerprint=hashlib.sha256(data).hexdigest())

    @property
    def size(self) -> int:
        return len(self.data)

    def close(self) -> None:
        self.data = b""
        self.closed = True


class InProcessReloader(Reloader, Generic[T]):
    """Rebuild shared state from the artifact behind the reload lease.

    Order of operations: wait the settle delay for in-flight file operations,
    fingerprint the artifact, build the new state off to the side, publish it,
    then dispose the old state. If building fails the old state stays
    published.

    Attributes:
        state (SharedState[T]): The shared state being refreshed.
        loader (Callable[[Path], T]): Builds a fresh state object from a path.
        settle_delay (float): Seconds to wait before reading the artifact.
        lease (Optional[ReloadLease]): When given, ``reload`` refuses to run
            unless the calling thread holds it.
    """

    def __init__(
        self,
        state: SharedState[T],
        loader: Callable[[Path], T],
        settle_delay: float = DEFAULT_SETTLE_DELAY,
        lease: Optional[ReloadLease] = None,
        fingerprinter: Optional[ContentFingerprinter] = None,
    ) -> None:
        self.state = state
        self.loader = loader
        self.settle_delay = settle_delay
        self.lease = lease
        self.fingerprinter = fingerprinter or ContentFingerprinter()
        self._cancelled = threading.Event()

    def load_initial(self, path: Path) -> Optional[str]:
        """Load state at startup without a settle delay."""
        return self._build_and_publish(Path(path))

    def reload(self, path: Path) -> Optional[str]:
        if self.lease is not None and not self.lease.held_by_current_thread():
            raise RuntimeError("InProcessReloader.reload called without holding the reload lease")

        logger.info(f"Reloading state for: {path}")
        if self.settle_delay > 0 and self._cancelled.wait(self.settle_delay):
            logger.info("Reload cancelled during settle delay")
            return None
        return self._build_and_publish(Path(path))

    def cancel(self) -> None:
        """Abort a reload that is still waiting out its settle delay."""
        self._cancelled.set()

    def resume(self) -> None:
        """Allow reloads again after :meth:`cancel`."""
        self._cancelled.clear()

    def _build_and_publish(self, path: Path) -> Optional[str]:
        fingerprint = self.fingerprinter.compute(path)
        new_state = self.loader(path)
        # Prefer the fingerprint of exactly the bytes the loader consumed
        fingerprint = getattr(new_state, "fingerprint", None) or fingerprint
        self.state.publish(new_state)
        logger.info(
            f"State reloaded successfully from {path} "
            f"(hash {short_fingerprint(fingerprint)}, generation {self.state.generation})"
        )
        return fingerprint


class SelfRestartReloader(Reloader):
    """Request a fresh instance by exiting with the reserved restart status.

    ``request_exit`` is called with the exit status; the host decides how to
    unwind (usually by setting its stop event and returning that status from
    ``main``).
    """

    def __init__(self, request_exit: Callable[[int], Any], settle_delay: float = DEFAULT_SETTLE_DELAY) -> None:
        self.request_exit = request_exit
        self.settle_delay = settle_delay
        self.requested = False

    def reload(self, path: Path) -> Optional[str]:
        logger.info(f"Restart required for {path} - signaling shutdown with status {ExitIntent.RESTART.code}")
        if self.settle_delay > 0:
            time.sleep(self.settle_delay)
        self.requested = True
        self.request_exit(ExitIntent.RESTART.code)
        return None
