"""
Change detection for a single artifact using watchdog plus a polling fallback.

Responsibility:
    Turn noisy filesystem notifications into validated, debounced
    :class:`~artifact_reloader.models.ChangeEvent` objects for exactly one
    :class:`~artifact_reloader.models.WatchTarget`. Reacting to the events is
    somebody else's job (see :mod:`artifact_reloader.coordinator`).

Design:
    - **Notifications are hints**: watchdog events only (re)arm a
      :class:`DebounceTimer`. Event types, timestamps and counts are never used
      to decide whether something changed.
    - **Debouncing**: every relevant notification pushes the deadline out by the
      debounce window, so a burst of writes collapses into a single check.
    - **Polling fallback**: a background loop re-fingerprints the artifact on a
      fixed interval, independent of notification delivery. It also restarts a
      dead observer.
    - **Single decision point**: both paths call :meth:`ChangeDetector.check_now`,
      which is serialized by a lock and is the only place the stored
      fingerprint is written.

Key Invariants:
    - A ChangeEvent is emitted only when the new fingerprint differs from the
      stored one.
    - The baseline fingerprint taken at start (or retarget) never emits.
    - The watcher never modifies the watched file.
"""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from watchdog.events import FileMovedEvent, FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver
from watchdog.observers.polling import PollingObserver

from artifact_reloader.exceptions import WatchError
from artifact_reloader.fingerprint import ContentFingerprinter, is_synthetic, short_fingerprint
from artifact_reloader.models import ChangeEvent, WatchTarget

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

DEFAULT_DEBOUNCE_SECONDS = 0.5
DEFAULT_POLL_INTERVAL = 2.0
OBSERVER_RESTART_INTERVAL = 10.0

ObserverFactory = Callable[[], BaseObserver]


class DebounceTimer:
    """Run a callback once a quiet period has elapsed since the last ``schedule()``.

    A single worker thread is started on demand and exits after firing, so an
    idle timer holds no thread.

    Attributes:
        interval (float): The quiet period in seconds.
        callback (Callable[[], None]): Invoked from the worker thread.
        resets (int): Number of times a pending deadline was pushed out.
    """

    __slots__ = ("interval", "callback", "resets", "_condition", "_deadline", "_pending", "_stopped", "_thread")

    def __init__(self, interval: float, callback: Callable[[], None]) -> None:
        self.interval = interval
        self.callback = callback
        self.resets = 0
        self._condition = threading.Condition()
        self._deadline = 0.0
        self._pending = False
        self._stopped = False
        self._thread: Optional[threading.Thread] = None

    @property
    def pending(self) -> bool:
        """True while a deadline is armed and the callback has not started."""
        with self._condition:
            return self._pending

    def schedule(self) -> None:
        """Arm the timer, or push an armed deadline out by ``interval``."""
        with self._condition:
            if self._stopped:
                return
            self._deadline = time.monotonic() + self.interval
            if self._pending:
                self.resets += 1
                self._condition.notify()
                return
            self._pending = True
            if self._thread is None or not self._thread.is_alive():
                self._thread = threading.Thread(target=self._run, name="DebounceTimer", daemon=True)
                try:
                    self._thread.start()
                except RuntimeError:
                    self._pending = False
                    self._thread = None
                    logger.error("Failed to start DebounceTimer thread", exc_info=True)

    def cancel(self) -> None:
        """Disarm a pending deadline without stopping the timer."""
        with self._condition:
            self._pending = False
            self._condition.notify_all()

    def stop(self) -> None:
        """Disarm and refuse further scheduling."""
        with self._condition:
            self._stopped = True
            self._pending = False
            self._condition.notify_all()

    def _run(self) -> None:
        with self._condition:
            while self._pending and not self._stopped:
                remaining = self._deadline - time.monotonic()
                if remaining > 0:
                    self._condition.wait(remaining)
                    continue

                self._pending = False
                self._condition.release()
                try:
                    self.callback()
                except Exception:
                    logger.error("Error in debounce callback", exc_info=True)
                finally:
                    self._condition.acquire()
            self._thread = None

    def __repr__(self) -> str:
        return f"<DebounceTimer interval={self.interval} pending={self._pending}>"


class ArtifactEventHandler(FileSystemEventHandler):
    """Filter raw watchdog events down to hints about one artifact.

    Directory events and files with a different extension are discarded
    cheaply; same-extension siblings are discarded after an exact path check.
    Surviving events call ``on_hint``.
    """

    def __init__(self, target: WatchTarget, on_hint: Callable[[FileSystemEvent], None]) -> None:
        super().__init__()
        self.target = target
        self.on_hint = on_hint
        self.seen = 0
        self.discarded = 0

    def _relevant(self, path: Union[str, bytes]) -> bool:
        if isinstance(path, bytes):
            path = path.decode(errors="replace")
        if not path:
            return False
        if self.target.extension and not path.endswith(self.target.extension):
            return False
        return self.target.matches(path)

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type in ("opened", "closed_no_write"):
            return
        self.seen += 1

        candidates = [event.src_path]
        if isinstance(event, FileMovedEvent):
            # Atomic replace shows up as a move onto the target
            candidates.append(event.dest_path)

        if not any(self._relevant(p) for p in candidates):
            self.discarded += 1
            return

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"File change detected: {event.event_type} {event.src_path}")
        self.on_hint(event)


class ChangeDetector:
    """Own one :class:`WatchTarget` and emit confirmed, debounced changes.

    Attributes:
        target (WatchTarget): The monitored artifact.
        on_change (Callable[[ChangeEvent], None]): Receives each confirmed change.
        debounce_seconds (float): Quiet period after the last notification.
        poll_interval (Optional[float]): Polling period in seconds, or None to disable.
        deliver_async (bool): Deliver events on a separate thread so a slow
            consumer never stalls detection.

    Example:
        >>> detector = ChangeDetector("/srv/artifacts", "model.bin", on_change=print)
        >>> detector.start()
        >>> # ...
        >>> detector.stop()
    """

    def __init__(
        self,
        directory: Union[str, Path],
        filename: str,
        on_change: Callable[[ChangeEvent], None],
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        poll_interval: Optional[float] = DEFAULT_POLL_INTERVAL,
        fingerprinter: Optional[ContentFingerprinter] = None,
        use_notifications: bool = True,
        observer_factory: Optional[ObserverFactory] = None,
        deliver_async: bool = True,
        extension: str = "",
    ) -> None:
        self.target = WatchTarget(Path(directory), filename, extension=extension)
        self.on_change = on_change
        self.debounce_seconds = debounce_seconds
        self.poll_interval = poll_interval
        self.fingerprinter = fingerprinter or ContentFingerprinter()
        self.use_notifications = use_notifications
        self.observer_factory: ObserverFactory = observer_factory or Observer
        self.deliver_async = deliver_async

        self._evaluate_lock = threading.Lock()
        self._lifecycle_lock = threading.RLock()
        self._stop_event = threading.Event()
        self._observer: Optional[BaseObserver] = None
        self._handler: Optional[ArtifactEventHandler] = None
        self._debounce_timer = DebounceTimer(debounce_seconds, self._on_debounce_fired)
        self._poll_thread: Optional[threading.Thread] = None
        self._started = False
        self._notifications_available = True
        self._last_observer_restart_attempt = 0.0
        self._artifact_missing = False

        self.start_time = time.monotonic()
        self.notifications = 0
        self.evaluations = 0
        self.unchanged = 0
        self.deferred = 0
        self.events_emitted = 0

    @property
    def notifications_available(self) -> bool:
        """False once the notification backend failed and only polling remains."""
        return self._notifications_available

    def start(self) -> None:
        """Take the baseline fingerprint, subscribe to notifications and start polling.

        Raises:
            WatchError: If the watch directory does not exist.
        """
        with self._lifecycle_lock:
            if self._started:
                return
            if not self.target.directory.is_dir():
                raise WatchError(f"Watch directory not found: {self.target.directory}")

            logger.info(f"Starting change detector on {self.target.path}")
            self._stop_event.clear()
            self._debounce_timer = DebounceTimer(self.debounce_seconds, self._on_debounce_fired)
            self._take_baseline()
            if self.use_notifications:
                self._start_observer()
            else:
                self._notifications_available = False
            self._started = True

            interval = self._effective_poll_interval()
            if interval is not None:
                self._poll_thread = threading.Thread(
                    target=self._poll_loop, args=(interval,), name="ChangeDetectorPoll", daemon=True
                )
                self._poll_thread.start()

    def stop(self) -> None:
        """Stop polling, disarm the debounce timer and tear down the observer."""
        with self._lifecycle_lock:
            self._stop_event.set()
            self._debounce_timer.stop()
            self._stop_observer()
            poll_thread, self._poll_thread = self._poll_thread, None
            self._started = False
        if poll_thread and poll_thread is not threading.current_thread():
            poll_thread.join(timeout=5.0)
        logger.info("Change detector stopped.")

    def retarget(self, directory: Union[str, Path], filename: Optional[str] = None) -> None:
        """Point the detector at a new location and re-baseline without emitting.

        Args:
            directory (Union[str, Path]): The new watch directory.
            filename (Optional[str]): The new artifact name (default: unchanged).

        Raises:
            WatchError: If the new directory does not exist.
        """
        if filename is None or filename == self.target.filename:
            new_target = WatchTarget(Path(directory), self.target.filename, extension=self.target.extension)
        else:
            new_target = WatchTarget(Path(directory), filename)
        if new_target.path == self.target.path:
            return
        if not new_target.directory.is_dir():
            raise WatchError(f"Watch directory not found: {new_target.directory}")

        with self._lifecycle_lock:
            logger.info(f"Retargeting change detector: {self.target.path} -> {new_target.path}")
            self._debounce_timer.stop()
            self._stop_observer()
            with self._evaluate_lock:
                self.target = new_target
            self._debounce_timer = DebounceTimer(self.debounce_seconds, self._on_debounce_fired)
            self._take_baseline()
            if self._started and self.use_notifications:
                self._notifications_available = True
                self._start_observer()

    def check_now(self) -> Optional[ChangeEvent]:
        """Fingerprint the artifact and emit a ChangeEvent if its content changed.

        This is the only place the stored fingerprint is written after the
        baseline. Calls are serialized.

        Returns:
            Optional[ChangeEvent]: The emitted event, or None if nothing changed.
        """
        with self._evaluate_lock:
            target = self.target
            self.evaluations += 1
            current = self.fingerprinter.compute(target.path)

            if current is None:
                if not self._artifact_missing:
                    logger.warning(f"Artifact file no longer exists: {target.path}")
                    self._artifact_missing = True
                return None
            if self._artifact_missing:
                logger.info(f"Artifact file is available again: {target.path}")
                self._artifact_missing = False

            if is_synthetic(current) and not is_synthetic(target.fingerprint):
                # Content unreadable right now; a later tick decides
                self.deferred += 1
                logger.debug(f"Artifact content unreadable, deferring: {target.path} ({current})")
                return None
            if is_synthetic(target.fingerprint) and not is_synthetic(current):
                logger.info(f"Artifact content readable; baseline is now {short_fingerprint(current)}")
                target.fingerprint = current
                return None

            if current == target.fingerprint:
                self.unchanged += 1
                if logger.isEnabledFor(logging.DEBUG):
                    logger.debug(f"File hash unchanged, ignoring: {target.path} ({short_fingerprint(current)})")
                return None

            event = ChangeEvent(path=target.path, fingerprint=current, previous_fingerprint=target.fingerprint)
            target.fingerprint = current
            target.last_change_time = event.timestamp
            self.events_emitted += 1

        logger.info(
            f"Artifact changed: {event.path} "
            f"({short_fingerprint(event.previous_fingerprint)} -> {short_fingerprint(event.fingerprint)})"
        )
        self._deliver(event)
        return event

    def get_statistics(self) -> Dict[str, Any]:
        """Return detector counters for the periodic statistics log."""
        handler = self._handler
        return {
            "notifications": self.notifications,
            "notifications_discarded": handler.discarded if handler else 0,
            "evaluations": self.evaluations,
            "unchanged": self.unchanged,
            "deferred": self.deferred,
            "events_emitted": self.events_emitted,
            "debounce_resets": self._debounce_timer.resets,
            "notifications_available": self._notifications_available,
            "fingerprint_failures": self.fingerprinter.failures,
            "uptime": time.monotonic() - self.start_time,
        }

    def _take_baseline(self) -> None:
        fingerprint = self.fingerprinter.compute(self.target.path)
        with self._evaluate_lock:
            self.target.fingerprint = fingerprint
            self._artifact_missing = fingerprint is None
        if fingerprint is None:
            logger.warning(f"Target file not found at startup: {self.target.path}. Waiting for creation...")
        else:
            logger.info(f"Initial hash: {short_fingerprint(fingerprint)} (watching for changes)")

    def _deliver(self, event: ChangeEvent) -> None:
        if not self.deliver_async:
            self._invoke_callback(event)
            return
        threading.Thread(
            target=self._invoke_callback, args=(event,), name="ChangeEventDelivery", daemon=True
        ).start()

    def _invoke_callback(self, event: ChangeEvent) -> None:
        try:
            self.on_change(event)
        except Exception:
            logger.error(f"Change handler failed for {event.path}", exc_info=True)

    def _on_hint(self, event: FileSystemEvent) -> None:
        if self._stop_event.is_set():
            return
        self.notifications += 1
        self._debounce_timer.schedule()

    def _on_debounce_fired(self) -> None:
        if self._stop_event.is_set():
            return
        self.check_now()

    def _effective_poll_interval(self) -> Optional[float]:
        if self.poll_interval is not None and self.poll_interval > 0:
            return self.poll_interval
        if not self._notifications_available:
            # Notifications are gone; polling is all that is left
            return DEFAULT_POLL_INTERVAL
        return None

    def _poll_loop(self, interval: float) -> None:
        while not self._stop_event.wait(interval):
            try:
                self._check_observer_health()
                if self._debounce_timer.pending:
                    # A burst is in progress; let the debounce path decide
                    continue
                self.check_now()
            except Exception:
                logger.error("Error in polling loop", exc_info=True)

    def _start_observer(self) -> None:
        self._handler = ArtifactEventHandler(self.target, self._on_hint)
        observer = self.observer_factory()
        try:
            # recursive=False: only the artifact's own directory is of interest
            observer.schedule(self._handler, str(self.target.directory), recursive=False)
            observer.start()
        except Exception as e:
            if self._notifications_available:
                logger.warning(
                    f"File notifications unavailable for {self.target.directory} ({e}); "
                    f"falling back to polling"
                )
            self._notifications_available = False
            self._observer = None
            return
        self._observer = observer
        self._last_observer_restart_attempt = time.monotonic()
        logger.info(f"File watcher setup for directory: {self.target.directory} ({type(observer).__name__})")

    def _stop_observer(self) -> None:
        observer, self._observer = self._observer, None
        if observer is None:
            return
        try:
            if observer.is_alive():
                observer.stop()
                observer.join(timeout=5.0)
                if observer.is_alive():
                    logger.warning("Observer thread did not terminate within timeout.")
        except Exception as e:
            logger.error(f"Error stopping observer: {e}")

    def _check_observer_health(self) -> None:
        if not self.use_notifications or not self._notifications_available:
            return
        with self._lifecycle_lock:
            if self._stop_event.is_set():
                return
            observer = self._observer
            if observer is not None and observer.is_alive():
                return
            now = time.monotonic()
            if now - self._last_observer_restart_attempt < OBSERVER_RESTART_INTERVAL:
                return
            self._last_observer_restart_attempt = now
            logger.critical("Watchdog observer found dead. Attempting to restart observer...")
            self._stop_observer()
            self._start_observer()

    def __repr__(self) -> str:
        return f"<ChangeDetector target={self.target.path}>"


def polling_observer_factory(timeout: float = 1.0) -> ObserverFactory:
    """Return a factory for watchdog's stat-based observer.

    Useful on network filesystems and bind mounts where native notifications
    are not delivered.
    """
    return lambda: PollingObserver(timeout=timeout)
