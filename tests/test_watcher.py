from __future__ import annotations

import hashlib
import logging
import os
import threading
import time
from pathlib import Path
from typing import Callable, List
from unittest.mock import MagicMock, patch

import pytest
from watchdog.events import DirModifiedEvent, FileModifiedEvent, FileMovedEvent

from artifact_reloader.exceptions import WatchError
from artifact_reloader.models import ChangeEvent, WatchTarget
from artifact_reloader.watcher import ArtifactEventHandler, ChangeDetector, DebounceTimer, polling_observer_factory


def _sha(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _detector(artifact_file: Path, events: List[ChangeEvent], **kwargs) -> ChangeDetector:
    kwargs.setdefault("poll_interval", None)
    kwargs.setdefault("deliver_async", False)
    return ChangeDetector(artifact_file.parent, artifact_file.name, on_change=events.append, **kwargs)


def test_baseline_does_not_emit(artifact_file: Path, events: List[ChangeEvent], mock_observer: MagicMock) -> None:
    detector = _detector(artifact_file, events)
    detector.start()
    try:
        assert detector.target.fingerprint == _sha(b"v1")
        assert detector.check_now() is None
        assert events == []
    finally:
        detector.stop()


def test_identical_rewrite_then_real_change(
    artifact_file: Path, events: List[ChangeEvent], mock_observer: MagicMock
) -> None:
    detector = _detector(artifact_file, events)
    detector.start()
    try:
        artifact_file.write_bytes(b"v1")
        assert detector.check_now() is None
        assert events == []

        artifact_file.write_bytes(b"v2")
        event = detector.check_now()

        assert event is not None
        assert events == [event]
        assert event.fingerprint == _sha(b"v2")
        assert event.previous_fingerprint == _sha(b"v1")
        assert event.path == artifact_file
        assert detector.target.fingerprint == _sha(b"v2")

        # Same content again is not a change
        assert detector.check_now() is None
        assert len(events) == 1
        assert detector.get_statistics()["unchanged"] == 2
    finally:
        detector.stop()


def test_burst_collapses_into_one_event(
    artifact_file: Path, mock_observer: MagicMock, wait_for: Callable[..., bool]
) -> None:
    fired: List[float] = []
    received: List[ChangeEvent] = []

    def on_change(event: ChangeEvent) -> None:
        fired.append(time.monotonic())
        received.append(event)

    detector = ChangeDetector(
        artifact_file.parent,
        artifact_file.name,
        on_change=on_change,
        debounce_seconds=0.5,
        poll_interval=None,
        deliver_async=False,
    )
    detector.start()
    try:
        handler = detector._handler
        assert handler is not None

        t0 = time.monotonic()
        artifact_file.write_bytes(b"first")
        handler.on_any_event(FileModifiedEvent(str(artifact_file)))
        time.sleep(0.2)
        artifact_file.write_bytes(b"second")
        handler.on_any_event(FileModifiedEvent(str(artifact_file)))

        assert wait_for(lambda: len(received) == 1, timeout=3.0)
        time.sleep(0.8)

        assert len(received) == 1
        assert received[0].fingerprint == _sha(b"second")
        assert fired[0] - t0 >= 0.7
        assert detector.get_statistics()["debounce_resets"] == 1
    finally:
        detector.stop()


def test_handler_filters_unrelated_files(artifact_file: Path) -> None:
    hints: List[object] = []
    target = WatchTarget(artifact_file.parent, artifact_file.name)
    handler = ArtifactEventHandler(target, hints.append)

    handler.on_any_event(FileModifiedEvent(str(artifact_file.parent / "notes.txt")))
    handler.on_any_event(FileModifiedEvent(str(artifact_file.parent / "other.bin")))
    handler.on_any_event(DirModifiedEvent(str(artifact_file.parent)))

    assert hints == []
    assert handler.seen == 2
    assert handler.discarded == 2

    handler.on_any_event(FileModifiedEvent(str(artifact_file)))
    assert len(hints) == 1


def test_handler_accepts_atomic_replace(artifact_file: Path) -> None:
    hints: List[object] = []
    target = WatchTarget(artifact_file.parent, artifact_file.name)
    handler = ArtifactEventHandler(target, hints.append)

    handler.on_any_event(FileMovedEvent(str(artifact_file.parent / "model.bin.tmp"), str(artifact_file)))

    assert len(hints) == 1


def test_missing_artifact_warns_once_and_recovers(
    artifact_file: Path, events: List[ChangeEvent], mock_observer: MagicMock, caplog: pytest.LogCaptureFixture
) -> None:
    detector = _detector(artifact_file, events)
    detector.start()
    try:
        artifact_file.unlink()
        with caplog.at_level(logging.INFO, logger="artifact_reloader.watcher"):
            assert detector.check_now() is None
            assert detector.check_now() is None

            missing = [r for r in caplog.records if "no longer exists" in r.getMessage()]
            assert len(missing) == 1
            assert events == []

            artifact_file.write_bytes(b"v2")
            event = detector.check_now()

        assert event is not None
        assert event.fingerprint == _sha(b"v2")
        assert "available again" in caplog.text
    finally:
        detector.stop()


def test_locked_artifact_with_touched_mtime_emits_nothing(
    artifact_file: Path, events: List[ChangeEvent], mock_observer: MagicMock
) -> None:
    detector = _detector(artifact_file, events)
    detector.start()
    try:
        st = artifact_file.stat()
        os.utime(artifact_file, ns=(st.st_atime_ns, st.st_mtime_ns + 5_000_000_000))

        with patch.object(Path, "open", side_effect=PermissionError("locked")):
            assert detector.check_now() is None
            assert detector.check_now() is None
        assert detector.target.fingerprint == _sha(b"v1")

        # Readable again with the same bytes
        assert detector.check_now() is None
        assert events == []
        assert detector.get_statistics()["deferred"] == 2

        artifact_file.write_bytes(b"v2")
        event = detector.check_now()
        assert event is not None
        assert event.previous_fingerprint == _sha(b"v1")
    finally:
        detector.stop()


def test_unreadable_baseline_is_replaced_by_content_without_event(
    artifact_file: Path, events: List[ChangeEvent], mock_observer: MagicMock
) -> None:
    detector = _detector(artifact_file, events)
    with patch.object(Path, "open", side_effect=PermissionError("locked")):
        detector.start()
    try:
        assert detector.target.fingerprint.startswith("stat:")

        assert detector.check_now() is None
        assert detector.target.fingerprint == _sha(b"v1")
        assert events == []

        artifact_file.write_bytes(b"v2")
        assert detector.check_now() is not None
        assert len(events) == 1
    finally:
        detector.stop()


def test_start_requires_directory(temp_dir: Path, events: List[ChangeEvent]) -> None:
    detector = ChangeDetector(temp_dir / "missing", "model.bin", on_change=events.append)
    with pytest.raises(WatchError, match="Watch directory not found"):
        detector.start()


def test_start_without_artifact_waits_for_creation(
    temp_dir: Path, events: List[ChangeEvent], mock_observer: MagicMock, caplog: pytest.LogCaptureFixture
) -> None:
    detector = ChangeDetector(temp_dir, "model.bin", on_change=events.append, poll_interval=None, deliver_async=False)
    with caplog.at_level(logging.WARNING, logger="artifact_reloader.watcher"):
        detector.start()
    try:
        assert "Waiting for creation" in caplog.text
        assert detector.target.fingerprint is None

        (temp_dir / "model.bin").write_bytes(b"v1")
        event = detector.check_now()

        assert event is not None
        assert event.previous_fingerprint is None
    finally:
        detector.stop()


def test_retarget_rebaselines_without_emitting(
    artifact_file: Path, temp_dir: Path, events: List[ChangeEvent], mock_observer: MagicMock
) -> None:
    other_dir = temp_dir / "other"
    other_dir.mkdir()
    other = other_dir / "model.bin"
    other.write_bytes(b"other-v1")

    detector = _detector(artifact_file, events)
    detector.start()
    try:
        detector.retarget(other_dir)

        assert detector.target.path == other
        assert detector.target.fingerprint == _sha(b"other-v1")
        assert events == []
        assert mock_observer.return_value.schedule.call_count == 2

        # The old location is no longer watched
        artifact_file.write_bytes(b"v2")
        assert detector.check_now() is None

        other.write_bytes(b"other-v2")
        event = detector.check_now()
        assert event is not None
        assert event.path == other
    finally:
        detector.stop()


def test_retarget_keeps_extension_filter(
    artifact_file: Path, temp_dir: Path, events: List[ChangeEvent], mock_observer: MagicMock
) -> None:
    other_dir = temp_dir / "other"
    other_dir.mkdir()
    (other_dir / "model.bin").write_bytes(b"other")

    detector = _detector(artifact_file, events, extension=".tmp")
    assert detector.target.extension == ".tmp"

    detector.retarget(other_dir)
    assert detector.target.extension == ".tmp"

    (other_dir / "weights.dll").write_bytes(b"w")
    detector.retarget(other_dir, "weights.dll")
    assert detector.target.extension == ".dll"


def test_retarget_requires_directory(artifact_file: Path, events: List[ChangeEvent], temp_dir: Path) -> None:
    detector = _detector(artifact_file, events)
    with pytest.raises(WatchError):
        detector.retarget(temp_dir / "missing")


def test_observer_failure_falls_back_to_polling(
    artifact_file: Path,
    events: List[ChangeEvent],
    mock_observer: MagicMock,
    caplog: pytest.LogCaptureFixture,
    wait_for: Callable[..., bool],
) -> None:
    mock_observer.return_value.start.side_effect = OSError("inotify watch limit reached")

    detector = ChangeDetector(
        artifact_file.parent, artifact_file.name, on_change=events.append, poll_interval=0.1, deliver_async=False
    )
    with caplog.at_level(logging.WARNING, logger="artifact_reloader.watcher"):
        detector.start()
    try:
        assert detector.notifications_available is False
        assert "falling back to polling" in caplog.text

        artifact_file.write_bytes(b"v2")
        assert wait_for(lambda: len(events) == 1)
        assert events[0].fingerprint == _sha(b"v2")
    finally:
        detector.stop()


def test_polling_only_detects_change(
    artifact_file: Path, events: List[ChangeEvent], wait_for: Callable[..., bool]
) -> None:
    detector = ChangeDetector(
        artifact_file.parent,
        artifact_file.name,
        on_change=events.append,
        poll_interval=0.1,
        use_notifications=False,
        deliver_async=False,
    )
    detector.start()
    try:
        artifact_file.write_bytes(b"v1")
        time.sleep(0.3)
        assert events == []

        artifact_file.write_bytes(b"v2")
        assert wait_for(lambda: len(events) == 1)
        time.sleep(0.3)
        assert len(events) == 1
    finally:
        detector.stop()


def test_stat_based_observer_delivers_hints(
    artifact_file: Path, events: List[ChangeEvent], wait_for: Callable[..., bool]
) -> None:
    detector = _detector(
        artifact_file,
        events,
        debounce_seconds=0.05,
        observer_factory=polling_observer_factory(timeout=0.1),
    )
    detector.start()
    try:
        assert detector.notifications_available
        artifact_file.write_bytes(b"v2")
        assert wait_for(lambda: len(events) == 1)
        assert detector.notifications > 0
    finally:
        detector.stop()


def test_callback_error_is_logged(
    artifact_file: Path, mock_observer: MagicMock, caplog: pytest.LogCaptureFixture
) -> None:
    def broken(event: ChangeEvent) -> None:
        raise RuntimeError("boom")

    detector = ChangeDetector(
        artifact_file.parent, artifact_file.name, on_change=broken, poll_interval=None, deliver_async=False
    )
    detector.start()
    try:
        artifact_file.write_bytes(b"v2")
        with caplog.at_level(logging.ERROR, logger="artifact_reloader.watcher"):
            event = detector.check_now()

        assert event is not None
        assert "Change handler failed" in caplog.text
    finally:
        detector.stop()


def test_async_delivery_runs_on_other_thread(
    artifact_file: Path, mock_observer: MagicMock, wait_for: Callable[..., bool]
) -> None:
    threads: List[threading.Thread] = []
    detector = ChangeDetector(
        artifact_file.parent,
        artifact_file.name,
        on_change=lambda e: threads.append(threading.current_thread()),
        poll_interval=None,
    )
    detector.start()
    try:
        artifact_file.write_bytes(b"v2")
        detector.check_now()
        assert wait_for(lambda: len(threads) == 1)
        assert threads[0] is not threading.current_thread()
    finally:
        detector.stop()


def test_dead_observer_is_restarted(
    artifact_file: Path, events: List[ChangeEvent], mock_observer: MagicMock, caplog: pytest.LogCaptureFixture
) -> None:
    detector = _detector(artifact_file, events)
    detector.start()
    try:
        mock_observer.return_value.is_alive.return_value = False
        detector._last_observer_restart_attempt = 0.0

        with caplog.at_level(logging.CRITICAL, logger="artifact_reloader.watcher"):
            detector._check_observer_health()

        assert "Attempting to restart observer" in caplog.text
        assert mock_observer.call_count == 2

        # Rate limited: a second dead check right away does nothing
        detector._check_observer_health()
        assert mock_observer.call_count == 2
    finally:
        detector.stop()


def test_debounce_timer_coalesces(wait_for: Callable[..., bool]) -> None:
    calls: List[float] = []
    timer = DebounceTimer(0.2, lambda: calls.append(time.monotonic()))

    timer.schedule()
    timer.schedule()
    timer.schedule()
    assert timer.pending

    assert wait_for(lambda: len(calls) == 1, timeout=2.0)
    time.sleep(0.3)
    assert len(calls) == 1
    assert timer.resets == 2
    assert not timer.pending


def test_debounce_timer_cancel_and_stop() -> None:
    calls: List[int] = []
    timer = DebounceTimer(0.1, lambda: calls.append(1))

    timer.schedule()
    timer.cancel()
    time.sleep(0.25)
    assert calls == []

    timer.stop()
    timer.schedule()
    assert not timer.pending
    time.sleep(0.2)
    assert calls == []
