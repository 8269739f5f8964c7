"""Serialize reactions to change events and dispatch them to a reload strategy.

The coordinator holds a :class:`ReloadLease` per watch target. An event that
cannot obtain the lease within a short bounded wait is dropped rather than
queued: the reload already in flight reads the artifact at its own action time,
so it covers the dropped event. After each reload the coordinator re-checks the
artifact once and runs a follow-up reload if the content moved on while the
first one was running.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional

from artifact_reloader.fingerprint import is_synthetic, short_fingerprint
from artifact_reloader.models import ChangeEvent

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

DEFAULT_LEASE_TIMEOUT = 1.0
MAX_FOLLOW_UPS = 3

__all__ = ["ReloadLease", "Reloader", "ReloadCoordinator"]


class ReloadLease:
    """Mutual-exclusion token meaning "a reload is in progress".

    A thin wrapper over a non-reentrant lock that remembers who holds it, so a
    reloader can assert it runs under the lease.
    """

    __slots__ = ("name", "_lock", "_holder", "_acquired_at")

    def __init__(self, name: str = "reload") -> None:
        self.name = name
        self._lock = threading.Lock()
        self._holder: Optional[int] = None
        self._acquired_at = 0.0

    def acquire(self, timeout: float = DEFAULT_LEASE_TIMEOUT) -> bool:
        """Try to take the lease, waiting at most ``timeout`` seconds."""
        acquired = self._lock.acquire(timeout=max(0.0, timeout))
        if acquired:
            self._holder = threading.get_ident()
            self._acquired_at = time.monotonic()
        return acquired

    def release(self) -> None:
        self._holder = None
        self._lock.release()

    @property
    def held(self) -> bool:
        return self._lock.locked()

    def held_by_current_thread(self) -> bool:
        return self._holder == threading.get_ident()

    @contextmanager
    def hold(self, timeout: float = DEFAULT_LEASE_TIMEOUT) -> Iterator[bool]:
        """Context manager yielding whether the lease was obtained."""
        acquired = self.acquire(timeout)
        try:
            yield acquired
        finally:
            if acquired:
                self.release()

    def __repr__(self) -> str:
        return f"<ReloadLease {self.name} held={self.held}>"


class Reloader(ABC):
    """A reload strategy.

    ``reload`` runs while the caller holds the target's :class:`ReloadLease`.
    It may return the fingerprint of the content it actually acted on; the
    coordinator uses that to decide whether a follow-up reload is needed.
    """

    @abstractmethod
    def reload(self, path: Path) -> Optional[str]:
        """Rebuild or restart from the artifact at ``path``."""

    def describe(self) -> str:
        return type(self).__name__


class ReloadCoordinator:
    """Dispatch change events to a :class:`Reloader`, one at a time.

    Attributes:
        reloader (Reloader): The configured strategy.
        lease (ReloadLease): At most one reload in flight per target.
        lease_timeout (float): Bounded wait for the lease before dropping an event.
        fingerprint_source (Optional[Callable[[Path], Optional[str]]]): Used for
            the post-reload re-check. None disables the re-check.
    """

    def __init__(
        self,
        reloader: Reloader,
        lease: Optional[ReloadLease] = None,
        lease_timeout: float = DEFAULT_LEASE_TIMEOUT,
        fingerprint_source: Optional[Callable[[Path], Optional[str]]] = None,
        max_follow_ups: int = MAX_FOLLOW_UPS,
    ) -> None:
        self.reloader = reloader
        self.lease = lease or ReloadLease()
        self.lease_timeout = lease_timeout
        self.fingerprint_source = fingerprint_source
        self.max_follow_ups = max_follow_ups

        self._stats_lock = threading.Lock()
        self.reloads_started = 0
        self.reloads_succeeded = 0
        self.reloads_failed = 0
        self.events_dropped = 0
        self.follow_ups = 0
        self.last_reload_duration = 0.0
        self.applied_fingerprint: Optional[str] = None

    def handle_change(self, event: ChangeEvent) -> bool:
        """React to a confirmed change.

        Never raises: reloader failures are logged and the previous state stays
        authoritative.

        Args:
            event (ChangeEvent): The change to react to.

        Returns:
            bool: True if the event was handled under the lease (including the
            case where its content was already applied), False if it was
            dropped because another reload holds the lease.
        """
        if not self.lease.acquire(self.lease_timeout):
            with self._stats_lock:
                self.events_dropped += 1
            logger.info(
                f"Reload already in progress; dropping change event for {event.path} "
                f"({short_fingerprint(event.fingerprint)})"
            )
            return False

        try:
            if event.fingerprint == self.applied_fingerprint:
                logger.debug(f"Change {short_fingerprint(event.fingerprint)} already applied; skipping")
                return True
            expected = self._run_reload(event.path, event.fingerprint)
            follow_ups = 0
            while self.fingerprint_source is not None and follow_ups < self.max_follow_ups:
                current = self.fingerprint_source(event.path)
                if current is None or expected is None or current == expected:
                    break
                if is_synthetic(current) != is_synthetic(expected):
                    # Content and metadata fingerprints are not comparable
                    break
                follow_ups += 1
                with self._stats_lock:
                    self.follow_ups += 1
                logger.info(
                    f"Artifact changed during reload ({short_fingerprint(expected)} -> "
                    f"{short_fingerprint(current)}); reloading again"
                )
                expected = self._run_reload(event.path, current)
        finally:
            self.lease.release()
        return True

    def _run_reload(self, path: Path, fingerprint: Optional[str]) -> Optional[str]:
        """Run one reload. Return the fingerprint now in effect, or None on failure."""
        with self._stats_lock:
            self.reloads_started += 1
        logger.info(f"Reloading artifact: {path} via {self.reloader.describe()}")
        started = time.monotonic()
        try:
            loaded = self.reloader.reload(path)
        except Exception as e:
            with self._stats_lock:
                self.reloads_failed += 1
            logger.error(
                f"Failed to reload artifact: {path} (hash {short_fingerprint(fingerprint)}): {e}",
                exc_info=True,
            )
            return None
        finally:
            self.last_reload_duration = time.monotonic() - started

        applied = loaded if loaded is not None else fingerprint
        with self._stats_lock:
            self.reloads_succeeded += 1
            self.applied_fingerprint = applied
        logger.info(f"Reload finished in {self.last_reload_duration:.2f}s: {path}")
        return applied

    def get_statistics(self) -> Dict[str, Any]:
        with self._stats_lock:
            return {
                "reloads_started": self.reloads_started,
                "reloads_succeeded": self.reloads_succeeded,
                "reloads_failed": self.reloads_failed,
                "events_dropped": self.events_dropped,
                "follow_ups": self.follow_ups,
                "last_reload_duration": self.last_reload_duration,
                "reload_in_progress": self.lease.held,
            }
