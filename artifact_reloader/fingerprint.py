"""Content fingerprinting for the watched artifact.

A fingerprint is the hex SHA-256 digest of the full byte stream. It is the only
thing the watcher trusts when deciding whether the artifact really changed:
timestamps and notification types are never consulted for that decision.

When the file cannot be read (locked by a writer, vanished mid-rename,
permission denied) a synthetic ``stat:`` fingerprint built from the
modification time and size is returned instead. If even ``stat`` fails the
artifact is considered unavailable and ``None`` is returned. Failures are
logged and never propagated.
"""

from __future__ import annotations

import hashlib
import logging
import time
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

CHUNK_SIZE = 1024 * 1024
SYNTHETIC_PREFIX = "stat:"

__all__ = ["ContentFingerprinter", "compute_fingerprint", "is_synthetic", "short_fingerprint"]


def is_synthetic(fingerprint: Optional[str]) -> bool:
    """Return True if the fingerprint was derived from metadata rather than content."""
    return bool(fingerprint) and fingerprint.startswith(SYNTHETIC_PREFIX)  # type: ignore[union-attr]


def short_fingerprint(fingerprint: Optional[str]) -> str:
    """Return an 8 character prefix suitable for log lines."""
    if fingerprint is None:
        return "<none>"
    if is_synthetic(fingerprint):
        return fingerprint
    return fingerprint[:8]


class ContentFingerprinter:
    """Compute stable content fingerprints, degrading gracefully on I/O errors.

    Attributes:
        algorithm (str): Name of the ``hashlib`` algorithm (default: sha256).
        chunk_size (int): Read size in bytes.
    """

    __slots__ = ("algorithm", "chunk_size", "_last_error_log_time", "failures")

    def __init__(self, algorithm: str = "sha256", chunk_size: int = CHUNK_SIZE) -> None:
        # Fail fast on an unknown algorithm
        hashlib.new(algorithm)
        self.algorithm = algorithm
        self.chunk_size = chunk_size
        self._last_error_log_time = 0.0
        self.failures = 0

    def compute(self, path: Union[str, Path]) -> Optional[str]:
        """Fingerprint the file at ``path``.

        The file is opened read-only; on POSIX and on Windows (Python opens with
        ``FILE_SHARE_READ | FILE_SHARE_WRITE``) this does not block a concurrent
        writer.

        Args:
            path (Union[str, Path]): File to fingerprint.

        Returns:
            Optional[str]: Hex digest of the content, a synthetic ``stat:`` value
            if the content could not be read, or None if the file is unavailable.
        """
        path = Path(path)
        digest = hashlib.new(self.algorithm)
        try:
            with path.open("rb") as f:
                for chunk in iter(lambda: f.read(self.chunk_size), b""):
                    digest.update(chunk)
            return digest.hexdigest()
        except OSError as e:
            self.failures += 1
            self._log_failure(f"Failed to compute hash for {path}: {e}")
            return self._synthetic(path)

    def _synthetic(self, path: Path) -> Optional[str]:
        try:
            st = path.stat()
        except OSError as e:
            logger.debug(f"Stat fallback failed for {path}: {e}")
            return None
        return f"{SYNTHETIC_PREFIX}{st.st_mtime_ns}:{st.st_size}"

    def _log_failure(self, message: str) -> None:
        # One warning per minute, the rest at DEBUG
        now = time.monotonic()
        if now - self._last_error_log_time > 60.0:
            logger.warning(message)
            self._last_error_log_time = now
        else:
            logger.debug(message)

    def __repr__(self) -> str:
        return f"<ContentFingerprinter algorithm={self.algorithm}>"


_default = ContentFingerprinter()


def compute_fingerprint(path: Union[str, Path]) -> Optional[str]:
    """Fingerprint ``path`` with the module-level SHA-256 fingerprinter."""
    return _default.compute(path)
